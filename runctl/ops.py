"""Orchestration steps built on ``RunClient``.

Each helper is a single step of a rollout: check existence, update with
optimistic concurrency, roll out a revision with a traffic split, grant
public access, delete.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from runctl.client import RunClient
from runctl.errors import ConflictError, NotFoundError
from runctl.model import (
    ALL_USERS,
    INVOKER_ROLE,
    DeleteStatus,
    Policy,
    RevisionConfig,
    Service,
    apply_revision,
    apply_traffic,
    clone,
    resource_version,
    validate_traffic,
)
from runctl.wait import DEFAULT_INTERVAL, DEFAULT_TIMEOUT, wait_for_absence

log = logger.bind(component="ops")

type Mutation = Callable[[Service], None]


async def service_exists(client: RunClient, name: str) -> bool:
    """True if the service exists, False on 404. Any other error propagates."""
    try:
        await client.get_service(name)
    except NotFoundError:
        return False
    return True


async def update_service(
    client: RunClient,
    name: str,
    mutate: Mutation,
    *,
    attempts: int = 1,
    conflict_delay: float = 1.0,
) -> Service:
    """Read the freshest copy, apply ``mutate`` to it, and replace the whole object.

    The server's ``resourceVersion`` travels with the write, so a write
    that raced a concurrent update fails with ``ConflictError``. With
    ``attempts > 1`` the read-modify-write is repeated on conflict.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")

    async def _read_modify_write() -> Service:
        current = await client.get_service(name)
        desired = clone(current)
        mutate(desired)
        log.debug(
            "Replacing {name} at resourceVersion {version}",
            name=name, version=resource_version(current),
        )
        return await client.replace_service(name, desired)

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(ConflictError),
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(conflict_delay),
        before_sleep=lambda state: log.warning(
            "Conflict updating {name}, retrying ({n}/{max})",
            name=name, n=state.attempt_number, max=attempts,
        ),
        reraise=True,
    )
    return await retrying(_read_modify_write)


async def rollout_revision(
    client: RunClient,
    name: str,
    revision: RevisionConfig,
    *,
    traffic: Mapping[str, int] | None = None,
    attempts: int = 1,
) -> Service:
    """Point the template at a new revision and, optionally, split traffic.

    Without ``traffic`` the new revision takes whatever the service's
    existing traffic targets route to it.
    """
    if traffic is not None:
        validate_traffic(traffic)

    def _mutate(service: Service) -> None:
        apply_revision(service, revision)
        if traffic is not None:
            apply_traffic(service, traffic)

    log.info(
        "Rolling out revision {revision} ({image}) to {name}",
        revision=revision.name, image=revision.image, name=name,
    )
    return await update_service(client, name, _mutate, attempts=attempts)


async def grant_invoker(
    client: RunClient,
    name: str,
    member: str = ALL_USERS,
    *,
    role: str = INVOKER_ROLE,
) -> Policy:
    """Add ``member`` to ``role`` on the service's IAM policy.

    The policy is read first and written back with its etag, so existing
    bindings survive and a concurrent policy change is rejected.
    """
    current = await client.get_iam_policy(name)
    desired = current.with_member(role, member)
    if desired is current:
        log.info("{member} already has {role} on {name}", member=member, role=role, name=name)
        return current

    log.info("Granting {role} to {member} on {name}", role=role, member=member, name=name)
    return await client.set_iam_policy(name, desired)


async def delete_service(
    client: RunClient,
    name: str,
    *,
    wait: bool = False,
    timeout: float = DEFAULT_TIMEOUT,
    interval: float = DEFAULT_INTERVAL,
) -> DeleteStatus:
    """Request deletion. With ``wait`` block until the service is gone."""
    status = await client.delete_service(name)
    log.info(
        "Delete of {name} accepted: {status}",
        name=name, status=status.get("status", "unknown"),
    )
    if wait:
        await wait_for_absence(client, name, timeout=timeout, interval=interval)
    return status
