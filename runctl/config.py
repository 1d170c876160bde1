"""TOML-based configuration.

Loads ~/.runctl/defaults.toml (global) and runctl.toml (project), merges
them, and resolves the ``[run]`` and ``[demo]`` sections into immutable
config objects. Command-line overrides win over both files.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from runctl.errors import ConfigError

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".runctl" / "defaults.toml"
PROJECT_CONFIG_NAME = "runctl.toml"

REGIONAL_ENDPOINT = "https://{region}-run.googleapis.com"
GLOBAL_ENDPOINT = "https://run.googleapis.com"


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Where and how to talk to the control plane.

    Args:
        project: GCP project ID. Resolved from the environment or ADC if None.
        region: Cloud Run region. Templated into the regional endpoint.
        service: Name of the service the CLI and demo operate on.
        endpoint: Regional endpoint template, ``{region}`` is substituted.
        iam_endpoint: Global endpoint used for IAM policy calls.
        credentials_file: Service account key or ADC file. None means ADC.
        request_timeout: Per-request timeout in seconds.
        poll_interval: Seconds between readiness polls.
        ready_timeout: Budget in seconds for each readiness wait.
        max_attempts: Attempts per request on 429/503.
    """

    project: str | None = None
    region: str = "us-central1"
    service: str = "hello"
    endpoint: str = REGIONAL_ENDPOINT
    iam_endpoint: str = GLOBAL_ENDPOINT
    credentials_file: str | None = None
    request_timeout: float = 30.0
    poll_interval: float = 5.0
    ready_timeout: float = 120.0
    max_attempts: int = 5

    @property
    def regional_endpoint(self) -> str:
        return self.endpoint.format(region=self.region)


@dataclass(frozen=True, slots=True)
class DemoConfig:
    """The two revisions and the split rolled out by ``runctl demo``."""

    image_v1: str = "gcr.io/google-samples/hello-app:1.0"
    image_v2: str = "gcr.io/google-samples/hello-app:2.0"
    env: Mapping[str, str] = field(default_factory=lambda: {"FOO": "bar"})
    limits: Mapping[str, str] = field(default_factory=lambda: {"cpu": "2", "memory": "1Gi"})
    split: tuple[int, int] = (90, 10)
    make_public: bool = True
    wait_for_deletion: bool = False


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    config_file: Path | None = None,
) -> RawConfig:
    """Merge global and project files. An explicit ``config_file`` replaces the project file."""
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    if config_file is not None:
        if not config_file.is_file():
            raise ConfigError(f"Config file not found: {config_file}")
        project_cfg = _read_toml(config_file)
    else:
        project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("run", {})
    merged.setdefault("demo", {})
    return merged


def _build[C](cls: type[C], section: str, raw: RawConfig) -> C:
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    if unknown := sorted(set(raw) - known):
        raise ConfigError(
            f"Unknown key(s) in [{section}]: {', '.join(unknown)}. "
            f"Valid: {', '.join(sorted(known))}"
        )
    try:
        return cls(**raw)
    except TypeError as e:
        raise ConfigError(f"Invalid [{section}] section: {e}") from e


_RUN_TYPES: dict[str, tuple[type, ...]] = {
    "project": (str,),
    "region": (str,),
    "service": (str,),
    "endpoint": (str,),
    "iam_endpoint": (str,),
    "credentials_file": (str,),
    "request_timeout": (int, float),
    "poll_interval": (int, float),
    "ready_timeout": (int, float),
    "max_attempts": (int,),
}

_DEMO_TYPES: dict[str, tuple[type, ...]] = {
    "image_v1": (str,),
    "image_v2": (str,),
    "env": (dict,),
    "limits": (dict,),
    "split": (list, tuple),
    "make_public": (bool,),
    "wait_for_deletion": (bool,),
}


def _check_types(section: str, raw: RawConfig, expected: dict[str, tuple[type, ...]]) -> None:
    for key, types in expected.items():
        if key not in raw:
            continue
        value = raw[key]
        # TOML booleans are ints to isinstance.
        if (isinstance(value, bool) and bool not in types) or not isinstance(value, types):
            names = " or ".join(t.__name__ for t in types)
            raise ConfigError(f"[{section}] {key} must be {names}, got {value!r}")


def resolve_config(
    raw: RawConfig,
    **overrides: Any,
) -> tuple[RunConfig, DemoConfig]:
    """Build configs from merged TOML, applying non-None ``overrides`` to ``[run]``."""
    run_raw = dict(raw.get("run", {}))
    run_raw.update({k: v for k, v in overrides.items() if v is not None})

    demo_raw = dict(raw.get("demo", {}))
    _check_types("run", run_raw, _RUN_TYPES)
    _check_types("demo", demo_raw, _DEMO_TYPES)
    if "split" in demo_raw:
        demo_raw["split"] = tuple(demo_raw["split"])

    run = _build(RunConfig, "run", run_raw)
    demo = _build(DemoConfig, "demo", demo_raw)

    if run.poll_interval <= 0:
        raise ConfigError(f"poll_interval must be positive, got {run.poll_interval}")
    if run.ready_timeout <= 0:
        raise ConfigError(f"ready_timeout must be positive, got {run.ready_timeout}")
    if run.max_attempts < 1:
        raise ConfigError(f"max_attempts must be at least 1, got {run.max_attempts}")
    if len(demo.split) != 2:
        raise ConfigError(f"demo split must have two entries (v1, v2), got {list(demo.split)}")

    return run, demo


def resolve_project(explicit: str | None) -> str:
    """Resolve GCP project: explicit > env > ADC."""
    if explicit:
        return explicit

    if env_project := os.environ.get("GOOGLE_CLOUD_PROJECT"):
        return env_project

    if env_project := os.environ.get("GCLOUD_PROJECT"):
        return env_project

    import google.auth
    from google.auth.exceptions import DefaultCredentialsError

    try:
        _, project = google.auth.default()
    except DefaultCredentialsError:
        project = None
    if project:
        return project

    raise ConfigError(
        "No GCP project found. Set GOOGLE_CLOUD_PROJECT, pass --project, "
        "set project in runctl.toml, or configure Application Default Credentials."
    )
