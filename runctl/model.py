"""Cloud Run (Knative serving v1) resource model.

Wire objects are TypedDicts over the JSON the API speaks, so a service read
from the server can be mutated and written back without dropping fields we
do not model. Small value types (conditions, names, traffic targets, IAM
bindings) are frozen dataclasses parsed from those dicts.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, NotRequired, TypedDict

from runctl.errors import TrafficSplitError

API_VERSION = "serving.knative.dev/v1"
KIND = "Service"

INVOKER_ROLE = "roles/run.invoker"
ALL_USERS = "allUsers"

type ConditionStatus = Literal["True", "False", "Unknown"]


# =============================================================================
# Wire types
# =============================================================================


class ObjectMeta(TypedDict, total=False):
    name: str
    namespace: str
    resourceVersion: str
    generation: int
    uid: str
    labels: dict[str, str]
    annotations: dict[str, str]


class EnvVar(TypedDict):
    name: str
    value: str


class ResourceRequirements(TypedDict, total=False):
    limits: dict[str, str]
    requests: dict[str, str]


class ContainerSpec(TypedDict, total=False):
    image: str
    env: list[EnvVar]
    resources: ResourceRequirements


class RevisionSpec(TypedDict, total=False):
    containers: list[ContainerSpec]
    containerConcurrency: int
    timeoutSeconds: int


class RevisionTemplate(TypedDict, total=False):
    metadata: ObjectMeta
    spec: RevisionSpec


class TrafficTargetDict(TypedDict, total=False):
    revisionName: str
    latestRevision: bool
    percent: int
    tag: str


class ServiceSpec(TypedDict, total=False):
    template: RevisionTemplate
    traffic: list[TrafficTargetDict]


class ConditionDict(TypedDict):
    type: str
    status: NotRequired[str]
    reason: NotRequired[str]
    message: NotRequired[str]
    lastTransitionTime: NotRequired[str]


class Addressable(TypedDict, total=False):
    url: str


class ServiceStatus(TypedDict, total=False):
    conditions: list[ConditionDict]
    observedGeneration: int
    url: str
    address: Addressable
    latestCreatedRevisionName: str
    latestReadyRevisionName: str
    traffic: list[TrafficTargetDict]


class Service(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: ObjectMeta
    spec: ServiceSpec
    status: ServiceStatus


class StatusDetails(TypedDict, total=False):
    name: str
    kind: str
    uid: str


class DeleteStatus(TypedDict, total=False):
    """Knative ``Status`` object answered by a delete call."""

    status: str
    message: str
    reason: str
    code: int
    details: StatusDetails


# =============================================================================
# Value types
# =============================================================================


@dataclass(frozen=True, slots=True)
class ServiceName:
    """Composite key of a service: the project (namespace) plus its name."""

    project: str
    name: str

    @property
    def collection(self) -> str:
        return f"namespaces/{self.project}/services"

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.name}"

    def resource(self, region: str) -> str:
        """Fully qualified name used by the global (IAM) endpoint."""
        return f"projects/{self.project}/locations/{region}/services/{self.name}"


@dataclass(frozen=True, slots=True)
class Condition:
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""

    @property
    def is_true(self) -> bool:
        return self.status == "True"

    @property
    def is_false(self) -> bool:
        return self.status == "False"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Condition:
        status = raw.get("status", "Unknown")
        if status not in ("True", "False"):
            status = "Unknown"
        return cls(
            type=raw["type"],
            status=status,
            reason=raw.get("reason", ""),
            message=raw.get("message", ""),
        )


@dataclass(frozen=True, slots=True)
class TrafficTarget:
    revision: str
    percent: int

    def to_dict(self) -> TrafficTargetDict:
        return {"revisionName": self.revision, "percent": self.percent}


@dataclass(frozen=True, slots=True)
class Binding:
    role: str
    members: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Policy:
    """IAM policy. ``etag`` guards against overwriting a concurrent change."""

    bindings: tuple[Binding, ...] = ()
    etag: str | None = None
    version: int | None = None

    def members(self, role: str) -> tuple[str, ...]:
        return tuple(m for b in self.bindings if b.role == role for m in b.members)

    def with_member(self, role: str, member: str) -> Policy:
        """Return a copy with ``member`` bound to ``role`` (no duplicates)."""
        if member in self.members(role):
            return self

        bindings = list(self.bindings)
        for i, binding in enumerate(bindings):
            if binding.role == role:
                bindings[i] = Binding(role=role, members=(*binding.members, member))
                break
        else:
            bindings.append(Binding(role=role, members=(member,)))
        return Policy(bindings=tuple(bindings), etag=self.etag, version=self.version)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "bindings": [{"role": b.role, "members": list(b.members)} for b in self.bindings],
        }
        if self.etag is not None:
            data["etag"] = self.etag
        if self.version is not None:
            data["version"] = self.version
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> Policy:
        raw = raw or {}
        return cls(
            bindings=tuple(
                Binding(role=b["role"], members=tuple(b.get("members", ())))
                for b in raw.get("bindings", ())
            ),
            etag=raw.get("etag"),
            version=raw.get("version"),
        )


@dataclass(frozen=True, slots=True)
class RevisionConfig:
    """Desired configuration of a revision's single container."""

    name: str
    image: str
    env: Mapping[str, str] = field(default_factory=dict)
    limits: Mapping[str, str] = field(default_factory=dict)


# =============================================================================
# Builders and accessors
# =============================================================================


def new_service(name: str, revision: RevisionConfig) -> Service:
    """Build the body of a create call for a single-revision service."""
    service: Service = {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "metadata": {"name": name},
        "spec": {"template": {}},
    }
    apply_revision(service, revision)
    return service


def apply_revision(service: Service, revision: RevisionConfig) -> None:
    """Point the service template at a new named revision, in place.

    Only the first container is touched. Its image, env and limits are
    replaced by the revision's (empty env or limits clear them); any other
    template fields the server returned are preserved.
    """
    spec = service.setdefault("spec", {})
    template = spec.setdefault("template", {})
    template.setdefault("metadata", {})["name"] = revision.name
    containers = template.setdefault("spec", {}).setdefault("containers", [])
    if not containers:
        containers.append({})

    container = containers[0]
    container["image"] = revision.image

    if revision.env:
        container["env"] = [{"name": k, "value": v} for k, v in revision.env.items()]
    else:
        container.pop("env", None)

    resources = container.setdefault("resources", {})
    if revision.limits:
        resources["limits"] = dict(revision.limits)
    else:
        resources.pop("limits", None)
    if not resources:
        del container["resources"]


def validate_traffic(allocations: Mapping[str, int]) -> tuple[TrafficTarget, ...]:
    """Check a revision -> percent split and return it as targets."""
    if not allocations:
        raise TrafficSplitError("traffic split must name at least one revision")

    for revision, percent in allocations.items():
        if not revision:
            raise TrafficSplitError("traffic split has an empty revision name")
        if isinstance(percent, bool) or not isinstance(percent, int):
            raise TrafficSplitError(f"percent for {revision!r} must be an integer, got {percent!r}")
        if not 0 <= percent <= 100:
            raise TrafficSplitError(f"percent for {revision!r} out of range: {percent}")

    total = sum(allocations.values())
    if total != 100:
        raise TrafficSplitError(f"traffic percentages must sum to 100, got {total}")

    return tuple(TrafficTarget(revision=r, percent=p) for r, p in allocations.items())


def apply_traffic(service: Service, allocations: Mapping[str, int]) -> None:
    """Replace the service's traffic targets, in place."""
    targets = validate_traffic(allocations)
    service.setdefault("spec", {})["traffic"] = [t.to_dict() for t in targets]


def traffic_split(service: Service) -> dict[str, int]:
    """Desired split by revision name, from ``spec.traffic``."""
    split: dict[str, int] = {}
    for target in service.get("spec", {}).get("traffic", []):
        key = target.get("revisionName") or ("LATEST" if target.get("latestRevision") else "")
        split[key] = split.get(key, 0) + target.get("percent", 0)
    return split


def conditions(service: Service | None) -> list[Condition]:
    """Parsed status conditions. A missing or null status reports none."""
    status = (service or {}).get("status") or {}
    return [Condition.from_dict(c) for c in status.get("conditions") or []]


def find_condition(service: Service | None, condition_type: str) -> Condition | None:
    for condition in conditions(service):
        if condition.type == condition_type:
            return condition
    return None


def service_url(service: Service | None) -> str | None:
    status = (service or {}).get("status") or {}
    return (status.get("address") or {}).get("url") or status.get("url")


def resource_version(service: Service) -> str | None:
    return service.get("metadata", {}).get("resourceVersion")


def clone(service: Service) -> Service:
    return copy.deepcopy(service)
