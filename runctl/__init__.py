"""runctl - drive the Cloud Run control plane from Python.

Example:

    from runctl import GoogleAuth, RunClient, RevisionConfig, new_service, wait_for_condition

    async with RunClient("my-project", "us-central1", auth=GoogleAuth()) as client:
        await client.create_service(new_service("hello", RevisionConfig("hello-v1", image)))
        await wait_for_condition(client, "hello", "Ready", timeout=120)
"""

from loguru import logger

from runctl.client import RunClient
from runctl.config import DemoConfig, RunConfig, load_config, resolve_config
from runctl.errors import (
    ApiError,
    AuthError,
    ConditionFailedError,
    ConfigError,
    ConflictError,
    FetchError,
    NotFoundError,
    RunError,
    TrafficSplitError,
    TransportError,
    WaitTimeoutError,
)
from runctl.infra import BearerAuth, GoogleAuth
from runctl.model import (
    Condition,
    Policy,
    RevisionConfig,
    Service,
    ServiceName,
    TrafficTarget,
    new_service,
)
from runctl.ops import (
    delete_service,
    grant_invoker,
    rollout_revision,
    service_exists,
    update_service,
)
from runctl.wait import wait_for_absence, wait_for_condition, wait_for_conditions

# Library behaviour: silent until the application opts in.
logger.disable("runctl")

__all__ = [
    "ApiError",
    "AuthError",
    "BearerAuth",
    "Condition",
    "ConditionFailedError",
    "ConfigError",
    "ConflictError",
    "DemoConfig",
    "FetchError",
    "GoogleAuth",
    "NotFoundError",
    "Policy",
    "RevisionConfig",
    "RunClient",
    "RunConfig",
    "RunError",
    "Service",
    "ServiceName",
    "TrafficSplitError",
    "TrafficTarget",
    "TransportError",
    "WaitTimeoutError",
    "delete_service",
    "grant_invoker",
    "load_config",
    "new_service",
    "resolve_config",
    "rollout_revision",
    "service_exists",
    "update_service",
    "wait_for_absence",
    "wait_for_condition",
    "wait_for_conditions",
]
