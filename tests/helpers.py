from __future__ import annotations

import copy
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web

from runctl.errors import NotFoundError

PROJECT = "demo-project"
REGION = "us-central1"

_SERVICES = "/apis/serving.knative.dev/v1/namespaces/{ns}/services"
_SERVICE = _SERVICES + "/{name}"
_IAM = "/v1/projects/{project}/locations/{region}/services/{name:[^/:]+}"


def _google_error(status: int, message: str) -> web.Response:
    return web.json_response(
        {"error": {"code": status, "message": message, "status": "ERROR"}}, status=status,
    )


@dataclass
class FakeControlPlane:
    """In-memory Knative + IAM API.

    After each create/replace the service reports ``Unknown`` conditions
    for ``ready_after`` GETs, then flips them to ``True`` (or to ``False``
    for revisions listed in ``failing_revisions``). Deletes take effect
    after ``gone_after`` GETs.
    """

    ready_after: int = 1
    gone_after: int = 0
    failing_revisions: set[str] = field(default_factory=set)
    fail_get_with: int | None = None
    transient_failures: list[int] = field(default_factory=list)
    stale_writes: int = 0

    services: dict[str, dict[str, Any]] = field(default_factory=dict)
    policies: dict[str, dict[str, Any]] = field(default_factory=dict)
    pending: dict[str, int] = field(default_factory=dict)
    deleting: dict[str, int] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    _version: int = 0

    def _bump(self) -> str:
        self._version += 1
        return str(self._version)

    def _reconcile(self, name: str) -> None:
        service = self.services[name]
        revision = service["spec"]["template"]["metadata"]["name"]
        if revision in self.failing_revisions:
            conds = [
                {"type": "Ready", "status": "False", "reason": "ContainerMissing",
                 "message": f"Image for revision {revision} not found."},
                {"type": "RoutesReady", "status": "False", "reason": "RevisionFailed"},
            ]
        else:
            conds = [{"type": "Ready", "status": "True"}, {"type": "RoutesReady", "status": "True"}]
            url = f"https://{name}-abc123-uc.a.run.app"
            service["status"]["url"] = url
            service["status"]["address"] = {"url": url}
            service["status"]["latestReadyRevisionName"] = revision
        service["status"]["conditions"] = conds
        service["status"]["traffic"] = copy.deepcopy(
            service["spec"].get("traffic") or [{"revisionName": revision, "percent": 100}]
        )

    def _accept(self, name: str, body: dict[str, Any], generation: int) -> dict[str, Any]:
        body = copy.deepcopy(body)
        body.setdefault("metadata", {})
        body["metadata"].update(
            namespace=PROJECT, resourceVersion=self._bump(), generation=generation,
        )
        body["status"] = {
            "observedGeneration": generation,
            "latestCreatedRevisionName": body["spec"]["template"]["metadata"]["name"],
            "conditions": [
                {"type": "Ready", "status": "Unknown", "reason": "Deploying"},
                {"type": "RoutesReady", "status": "Unknown"},
            ],
        }
        self.services[name] = body
        self.pending[name] = self.ready_after
        if self.ready_after <= 0:
            self._reconcile(name)
        return copy.deepcopy(body)

    # ─── handlers ────────────────────────────────────────────────

    async def get(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        self.calls.append(("GET", name))
        if self.transient_failures:
            return _google_error(self.transient_failures.pop(0), "try again")
        if self.fail_get_with is not None:
            return _google_error(self.fail_get_with, "Permission denied on resource")
        if name in self.deleting:
            self.deleting[name] -= 1
            if self.deleting[name] < 0:
                del self.deleting[name]
                del self.services[name]
        if name not in self.services:
            return _google_error(404, f"Resource '{name}' of kind 'SERVICE' does not exist.")
        if self.pending.get(name, 0) > 0:
            self.pending[name] -= 1
            if self.pending[name] == 0:
                self._reconcile(name)
        return web.json_response(self.services[name])

    async def list(self, request: web.Request) -> web.Response:
        return web.json_response({"items": list(self.services.values())})

    async def create(self, request: web.Request) -> web.Response:
        body = await request.json()
        name = body["metadata"]["name"]
        self.calls.append(("POST", name))
        if name in self.services:
            return _google_error(409, f"Resource '{name}' already exists.")
        return web.json_response(self._accept(name, body, generation=1))

    async def replace(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        body = await request.json()
        self.calls.append(("PUT", name))
        if name not in self.services:
            return _google_error(404, f"Resource '{name}' does not exist.")
        current = self.services[name]
        if self.stale_writes > 0:
            self.stale_writes -= 1
            current["metadata"]["resourceVersion"] = self._bump()
        sent = body.get("metadata", {}).get("resourceVersion")
        if sent != current["metadata"]["resourceVersion"]:
            return _google_error(409, "the object has been modified; please apply your changes to the latest version")
        return web.json_response(
            self._accept(name, body, generation=current["metadata"]["generation"] + 1),
        )

    async def delete(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        self.calls.append(("DELETE", name))
        if name not in self.services:
            return _google_error(404, f"Resource '{name}' does not exist.")
        self.deleting[name] = self.gone_after
        if self.gone_after <= 0:
            del self.services[name]
            del self.deleting[name]
        return web.json_response({
            "apiVersion": "v1", "kind": "Status", "status": "Success",
            "details": {"name": name, "kind": "services"},
        })

    async def get_iam(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        return web.json_response(self.policies.get(name, {"etag": "BwAAAA=="}))

    async def set_iam(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        policy = (await request.json())["policy"]
        current = self.policies.get(name, {"etag": "BwAAAA=="})
        if policy.get("etag") != current.get("etag"):
            return _google_error(409, "There were concurrent policy changes.")
        policy = dict(policy, etag=f"BwAAA{len(self.policies) + 1}=")
        self.policies[name] = policy
        return web.json_response(policy)

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(_SERVICE, self.get)
        app.router.add_put(_SERVICE, self.replace)
        app.router.add_delete(_SERVICE, self.delete)
        app.router.add_get(_SERVICES, self.list)
        app.router.add_post(_SERVICES, self.create)
        app.router.add_get(_IAM + ":getIamPolicy", self.get_iam)
        app.router.add_post(_IAM + ":setIamPolicy", self.set_iam)
        return app


# ─── Scripted reader for watcher tests ───────────────────────────────


def service_with(*conditions: dict[str, str]) -> dict[str, Any]:
    return {
        "apiVersion": "serving.knative.dev/v1",
        "kind": "Service",
        "metadata": {"name": "hello", "resourceVersion": "1"},
        "status": {"conditions": list(conditions)},
    }


class ScriptedReader:
    """Answers ``get_service`` from a script; the last entry repeats.

    An entry that is an exception instance is raised instead of returned.
    """

    def __init__(self, script: Sequence[dict[str, Any] | Exception | None]) -> None:
        self._script = list(script)
        self.polls = 0

    async def get_service(self, service: str) -> dict[str, Any] | None:
        entry = self._script[min(self.polls, len(self._script) - 1)]
        self.polls += 1
        if isinstance(entry, Exception):
            raise entry
        return entry


class GoneAfter:
    """Present for ``polls`` reads, then not found."""

    def __init__(self, polls: int) -> None:
        self._remaining = polls
        self.polls = 0

    async def get_service(self, service: str) -> dict[str, Any]:
        self.polls += 1
        if self._remaining <= 0:
            raise NotFoundError(404, "gone")
        self._remaining -= 1
        return service_with()


def unknown(types: Iterable[str] = ("Ready",)) -> dict[str, Any]:
    return service_with(*({"type": t, "status": "Unknown"} for t in types))
