"""Readiness watcher.

Polls a service until a named status condition settles. ``True`` succeeds,
``False`` fails immediately, ``Unknown`` or a missing condition keeps the
loop going. The whole loop, in-flight requests included, runs under one
deadline.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from loguru import logger

from runctl.errors import (
    ConditionFailedError,
    FetchError,
    NotFoundError,
    WaitTimeoutError,
)
from runctl.model import Condition, Service, find_condition

DEFAULT_TIMEOUT = 120.0
DEFAULT_INTERVAL = 5.0

ABSENT = "Absent"


@runtime_checkable
class ServiceReader(Protocol):
    async def get_service(self, service: str) -> Service: ...


def _deadline(
    timeout: float | None, deadline: float | None,
) -> tuple[asyncio.Timeout, float]:
    """Build the timeout scope plus the budget in seconds (for error messages)."""
    if timeout is not None and deadline is not None:
        raise ValueError("pass either timeout or deadline, not both")
    if deadline is not None:
        budget = deadline - asyncio.get_running_loop().time()
        return asyncio.timeout_at(deadline), max(budget, 0.0)
    budget = DEFAULT_TIMEOUT if timeout is None else timeout
    return asyncio.timeout(budget), budget


async def wait_for_condition(
    client: ServiceReader,
    name: str,
    condition: str = "Ready",
    *,
    timeout: float | None = None,
    deadline: float | None = None,
    interval: float = DEFAULT_INTERVAL,
) -> Service:
    """Wait until ``condition`` on service ``name`` reports ``True``.

    Args:
        client: Anything that can fetch the service (usually ``RunClient``).
        name: Service name.
        condition: Condition type to watch, e.g. ``Ready`` or ``RoutesReady``.
        timeout: Relative budget in seconds. Defaults to 120.
        deadline: Absolute event-loop time, as for ``asyncio.timeout_at``.
        interval: Seconds between polls. The first poll happens after one interval.

    Returns:
        The service as fetched on the poll that observed ``True``.

    Raises:
        ConditionFailedError: The condition reported ``False``.
        FetchError: Fetching the service failed; polling stops at once.
        WaitTimeoutError: The deadline passed without a terminal signal.
    """
    scope, budget = _deadline(timeout, deadline)
    log = logger.bind(component="watcher", name=name, condition=condition)
    log.debug("Waiting up to {budget:.1f}s, polling every {interval}s", budget=budget, interval=interval)

    polls = 0
    try:
        async with scope:
            while True:
                await asyncio.sleep(interval)
                polls += 1

                try:
                    service = await client.get_service(name)
                except Exception as e:
                    log.warning("Poll {n} failed: {err}", n=polls, err=e)
                    raise FetchError(name, e) from e

                match find_condition(service, condition):
                    case Condition(status="True"):
                        log.info("Condition {condition} is True after {n} poll(s)", condition=condition, n=polls)
                        return service
                    case Condition(status="False", reason=reason, message=message):
                        log.warning(
                            "Condition {condition} is False: {reason} {message}",
                            condition=condition, reason=reason, message=message,
                        )
                        raise ConditionFailedError(name, condition, reason, message)
                    case Condition(status=status, reason=reason):
                        log.debug("Poll {n}: {status} ({reason})", n=polls, status=status, reason=reason)
                    case None:
                        log.debug("Poll {n}: condition not reported yet", n=polls)
    except TimeoutError:
        if not scope.expired():
            raise
        log.warning("Gave up after {n} poll(s)", n=polls)
        raise WaitTimeoutError(name, condition, budget) from None


async def wait_for_conditions(
    client: ServiceReader,
    name: str,
    conditions: Sequence[str] = ("Ready",),
    *,
    timeout: float = DEFAULT_TIMEOUT,
    interval: float = DEFAULT_INTERVAL,
) -> Service:
    """Await each condition in order, each with its own ``timeout`` budget."""
    if not conditions:
        raise ValueError("at least one condition is required")

    service: Service = {}
    for condition in conditions:
        service = await wait_for_condition(
            client, name, condition, timeout=timeout, interval=interval,
        )
    return service


async def wait_for_absence(
    client: ServiceReader,
    name: str,
    *,
    timeout: float | None = None,
    deadline: float | None = None,
    interval: float = DEFAULT_INTERVAL,
) -> None:
    """Wait until fetching service ``name`` answers not-found.

    Deletion is asynchronous server-side, so a delete call returning only
    means it was accepted.
    """
    scope, budget = _deadline(timeout, deadline)
    log = logger.bind(component="watcher", name=name, condition=ABSENT)

    polls = 0
    try:
        async with scope:
            while True:
                await asyncio.sleep(interval)
                polls += 1

                try:
                    await client.get_service(name)
                except NotFoundError:
                    log.info("Service is gone after {n} poll(s)", n=polls)
                    return
                except Exception as e:
                    log.warning("Poll {n} failed: {err}", n=polls, err=e)
                    raise FetchError(name, e) from e

                log.debug("Poll {n}: service still present", n=polls)
    except TimeoutError:
        if not scope.expired():
            raise
        raise WaitTimeoutError(name, ABSENT, budget) from None
