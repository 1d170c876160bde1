"""Async client for the Cloud Run control plane.

Services live on the regional Knative endpoint
(``https://{region}-run.googleapis.com``). IAM policies live on the global
endpoint. Both share one auth provider.
"""

from __future__ import annotations

import json
from typing import Any

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from runctl.config import RunConfig
from runctl.errors import ApiError, ConflictError, NotFoundError, RunError, TransportError
from runctl.infra.http import Auth, GoogleAuth, HttpClient, HttpError
from runctl.model import DeleteStatus, Policy, Service, ServiceName

KNATIVE_PREFIX = "/apis/serving.knative.dev/v1"

_RETRYABLE = frozenset({429, 503})


def _is_retryable(e: BaseException) -> bool:
    return isinstance(e, HttpError) and e.status in _RETRYABLE


def _error_message(body: str) -> str:
    """Pull ``error.message`` out of a Google error envelope, else the raw body."""
    try:
        data = json.loads(body)
    except (ValueError, TypeError):
        return body
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if data.get("message"):
            return str(data["message"])
    return body


def _translate(e: HttpError) -> RunError:
    message = _error_message(e.body)
    match e.status:
        case 0:
            return TransportError(message)
        case 404:
            return NotFoundError(e.status, message)
        case 409:
            return ConflictError(e.status, message)
        case _:
            return ApiError(e.status, message)


class RunClient:
    """Control-plane client: get/create/replace/delete services, get/set IAM."""

    def __init__(
        self,
        project: str,
        region: str,
        *,
        auth: Auth | None = None,
        endpoint: str | None = None,
        iam_endpoint: str | None = None,
        request_timeout: float = 30.0,
        max_attempts: int = 5,
        retry_base_delay: float = 0.5,
    ) -> None:
        defaults = RunConfig()
        self.project = project
        self.region = region
        self._regional = HttpClient(
            (endpoint or defaults.endpoint).format(region=region),
            auth,
            timeout=request_timeout,
        )
        self._global = HttpClient(
            iam_endpoint or defaults.iam_endpoint, auth, timeout=request_timeout,
        )
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._log = logger.bind(component="client", project=project, region=region)

    @classmethod
    def from_config(cls, config: RunConfig, project: str, *, auth: Auth | None = None) -> RunClient:
        return cls(
            project,
            config.region,
            auth=auth if auth is not None else GoogleAuth(config.credentials_file),
            endpoint=config.endpoint,
            iam_endpoint=config.iam_endpoint,
            request_timeout=config.request_timeout,
            max_attempts=config.max_attempts,
        )

    async def __aenter__(self) -> RunClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._regional.close()
        await self._global.close()

    def name(self, service: str) -> ServiceName:
        return ServiceName(project=self.project, name=service)

    async def _request(
        self,
        http: HttpClient,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> Any:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_base_delay, max=30),
            before_sleep=lambda state: self._log.warning(
                "Retry {n}/{max} for {method} {path} after {err}",
                n=state.attempt_number, max=self._max_attempts,
                method=method, path=path, err=state.outcome.exception(),
            ),
            reraise=True,
        )
        result: Any = None
        try:
            async for attempt in retrying:
                with attempt:
                    result = await http.request(method, path, json=json)
        except HttpError as e:
            error = _translate(e)
            if not isinstance(error, NotFoundError):
                self._log.warning(
                    "{method} {path} failed: {err}", method=method, path=path, err=error,
                )
            raise error from e
        return result

    # =========================================================================
    # Services (regional endpoint)
    # =========================================================================

    async def get_service(self, service: str) -> Service:
        name = self.name(service)
        return await self._request(self._regional, "GET", f"{KNATIVE_PREFIX}/{name.path}")

    async def list_services(self) -> list[Service]:
        name = self.name("")
        result = await self._request(self._regional, "GET", f"{KNATIVE_PREFIX}/{name.collection}")
        return (result or {}).get("items", [])

    async def create_service(self, service: Service) -> Service:
        name = self.name(service["metadata"]["name"])
        self._log.info("Creating service {name}", name=name.name)
        return await self._request(
            self._regional, "POST", f"{KNATIVE_PREFIX}/{name.collection}", json=dict(service),
        )

    async def replace_service(self, service: str, body: Service) -> Service:
        """Write the whole object. A stale ``resourceVersion`` raises ``ConflictError``."""
        name = self.name(service)
        self._log.info("Replacing service {name}", name=name.name)
        return await self._request(
            self._regional, "PUT", f"{KNATIVE_PREFIX}/{name.path}", json=dict(body),
        )

    async def delete_service(self, service: str) -> DeleteStatus:
        name = self.name(service)
        self._log.info("Deleting service {name}", name=name.name)
        result = await self._request(self._regional, "DELETE", f"{KNATIVE_PREFIX}/{name.path}")
        return result or {}

    # =========================================================================
    # IAM (global endpoint)
    # =========================================================================

    async def get_iam_policy(self, service: str) -> Policy:
        resource = self.name(service).resource(self.region)
        result = await self._request(self._global, "GET", f"/v1/{resource}:getIamPolicy")
        return Policy.from_dict(result)

    async def set_iam_policy(self, service: str, policy: Policy) -> Policy:
        resource = self.name(service).resource(self.region)
        result = await self._request(
            self._global, "POST", f"/v1/{resource}:setIamPolicy",
            json={"policy": policy.to_dict()},
        )
        return Policy.from_dict(result)
