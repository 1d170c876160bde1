"""End-to-end walkthrough of the control plane.

1. Check whether the service exists.
2. Create it with a first revision (``<service>-v1``).
3. Wait for it to become ``Ready``.
4. Make it public by granting ``allUsers`` the invoker role.
5. Roll out ``<service>-v2`` with new env/limits and split traffic v1/v2.
6. Wait for ``Ready`` and then ``RoutesReady``.
7. Delete the service (optionally waiting until it is gone).

Authentication comes from the environment: ``gcloud auth
application-default login`` on a laptop, the attached service account on
GCP compute, or a key file via ``GOOGLE_APPLICATION_CREDENTIALS`` /
``credentials_file`` anywhere else.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from runctl.client import RunClient
from runctl.config import DemoConfig, RunConfig
from runctl.errors import RunError
from runctl.model import RevisionConfig, new_service, service_url, traffic_split
from runctl.ops import delete_service, grant_invoker, rollout_revision, service_exists
from runctl.wait import wait_for_condition, wait_for_conditions

log = logger.bind(component="demo")


@dataclass(frozen=True, slots=True)
class DemoResult:
    existed: bool
    url: str | None
    split: dict[str, int]
    delete_status: str


async def run_demo(run: RunConfig, demo: DemoConfig, client: RunClient) -> DemoResult:
    name = run.service
    v1 = f"{name}-v1"
    v2 = f"{name}-v2"

    existed = await service_exists(client, name)
    log.info("Service exists?: {existed}", existed=existed)
    if existed:
        raise RunError(
            f"service {name!r} already exists in {client.project}/{client.region}; "
            "delete it or pick another name"
        )

    await client.create_service(new_service(name, RevisionConfig(name=v1, image=demo.image_v1)))
    log.info("Service create call completed, waiting for it to become ready")

    await wait_for_condition(
        client, name, "Ready", timeout=run.ready_timeout, interval=run.poll_interval,
    )
    log.info("Service is ready and serving traffic")

    if demo.make_public:
        await grant_invoker(client, name)

    # The URL is only populated once the service has been reconciled.
    service = await client.get_service(name)
    url = service_url(service)
    log.info("Service is deployed at: {url}", url=url)

    split_v1, split_v2 = demo.split
    await rollout_revision(
        client,
        name,
        RevisionConfig(name=v2, image=demo.image_v2, env=demo.env, limits=demo.limits),
        traffic={v1: split_v1, v2: split_v2},
    )
    log.info("Deployed an update, it might not be ready yet")

    service = await wait_for_conditions(
        client, name, ("Ready", "RoutesReady"),
        timeout=run.ready_timeout, interval=run.poll_interval,
    )
    split = traffic_split(service)
    log.info("Updated service is ready and serving with traffic split {split}", split=split)

    status = await delete_service(
        client, name,
        wait=demo.wait_for_deletion,
        timeout=run.ready_timeout,
        interval=run.poll_interval,
    )
    log.info("Deleted service")

    return DemoResult(
        existed=existed,
        url=url,
        split=split,
        delete_status=status.get("status", ""),
    )
