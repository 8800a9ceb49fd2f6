"""TOML-based job configuration.

Loads ~/.oneshot/defaults.toml (global) and oneshot.toml (project),
merges them, and resolves the result into immutable settings.

Example oneshot.toml:

    [aws]
    region = "eu-central-1"
    instance_type = "t3.micro"

    [job]
    prefix = "nightly"

    [timeouts]
    boot = 900
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from oneshot.constants import (
    AL2023_IMAGE_PARAMETER,
    BOOT_TIMEOUT,
    DEFAULT_ACCESS_RANGE,
    DEFAULT_INSTANCE_TYPE,
    DEFAULT_PREFIX,
    DEFAULT_REGION,
    DEFAULT_USERNAME,
    DEFAULT_WORKDIR,
    POLL_INTERVAL,
    PROGRAM_ATTEMPTS,
    PROMPT_ATTEMPTS,
    PROMPT_INTERVAL,
    SHUTDOWN_TIMEOUT,
    SSH_CONNECT_ATTEMPTS,
    SSH_SETTLE_DELAY,
    SYNC_ATTEMPTS,
    OneshotTag,
)
from oneshot.exceptions import ConfigurationError

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".oneshot" / "defaults.toml"
PROJECT_CONFIG_NAME = "oneshot.toml"


@dataclass(frozen=True, slots=True)
class AWS:
    """AWS connection and instance settings.

    Args:
        region: Region for the instance and the bucket.
        profile: Named credentials profile. None uses the default chain.
        ami: Image id. If None, resolved from image_parameter via SSM.
        image_parameter: Public SSM parameter holding the image id.
        instance_type: EC2 instance type.
        username: SSH login user of the image.
        access_range: Source CIDR allowed to reach port 22.
        instance_profile: IAM instance profile name granting S3 access.
            When unset, local credentials are copied to the instance.
    """

    region: str = DEFAULT_REGION
    profile: str | None = None
    ami: str | None = None
    image_parameter: str = AL2023_IMAGE_PARAMETER
    instance_type: str = DEFAULT_INSTANCE_TYPE
    username: str = DEFAULT_USERNAME
    access_range: str = DEFAULT_ACCESS_RANGE
    instance_profile: str | None = None


@dataclass(frozen=True, slots=True)
class Job:
    """Per-job naming and local file locations."""

    prefix: str = DEFAULT_PREFIX
    bucket: str | None = None
    workdir: str = DEFAULT_WORKDIR
    results_dir: Path | None = None
    tag_key: str = OneshotTag.JOB
    key_dir: Path = Path("~/.oneshot/keys")
    credentials_dir: Path | None = Path("~/.aws")
    install_aws_cli: bool = False


_OPTIONAL_DURATIONS = ("boot", "shutdown")
_COUNTS = frozenset({"connect_attempts", "prompt_attempts", "program_attempts", "sync_attempts"})


@dataclass(frozen=True, slots=True)
class Timeouts:
    """Polling intervals and budgets, in seconds unless stated otherwise.

    boot and shutdown accept None (or 0 in TOML) for an unbounded wait.
    """

    poll_interval: float = POLL_INTERVAL
    boot: float | None = BOOT_TIMEOUT
    shutdown: float | None = SHUTDOWN_TIMEOUT
    settle: float = SSH_SETTLE_DELAY
    connect_attempts: int = SSH_CONNECT_ATTEMPTS
    prompt_interval: float = PROMPT_INTERVAL
    prompt_attempts: int = PROMPT_ATTEMPTS
    program_attempts: int = PROGRAM_ATTEMPTS
    sync_attempts: int = SYNC_ATTEMPTS

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _OPTIONAL_DURATIONS and value is None:
                continue
            expected = int if f.name in _COUNTS else (int, float)
            if isinstance(value, bool) or not isinstance(value, expected):
                kind = "an integer" if expected is int else "a number"
                raise ConfigurationError(f"timeouts.{f.name} must be {kind}, got {value!r}")

        for name in _OPTIONAL_DURATIONS:
            value = getattr(self, name)
            if value is not None and value <= 0:
                object.__setattr__(self, name, None)
        if min(self.prompt_attempts, self.program_attempts, self.sync_attempts) < 1:
            raise ConfigurationError("prompt_attempts, program_attempts and sync_attempts must be >= 1")


@dataclass(frozen=True, slots=True)
class OneshotConfig:
    aws: AWS = field(default_factory=AWS)
    job: Job = field(default_factory=Job)
    timeouts: Timeouts = field(default_factory=Timeouts)


_PATH_FIELDS = frozenset({"results_dir", "key_dir", "credentials_dir"})
_OPTIONAL_PATH_FIELDS = frozenset({"results_dir", "credentials_dir"})


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
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    path: Path | None = None,
) -> RawConfig:
    """Read and merge the global and project configuration files.

    An explicit path replaces the project file and must exist.
    """
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)

    if path is not None:
        if not path.is_file():
            raise ConfigurationError(f"Config file not found: {path}")
        project_cfg = _read_toml(path)
    else:
        project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)

    return _deep_merge(global_cfg, project_cfg)


def _path_or_value(key: str, value: Any) -> Any:
    if key not in _PATH_FIELDS or not isinstance(value, str):
        return value
    if not value and key in _OPTIONAL_PATH_FIELDS:
        return None
    return Path(value)


def _build_section[T](cls: type[T], section: str, raw: Any) -> T:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Section [{section}] must be a table")

    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in [{section}]: {', '.join(sorted(unknown))}. "
            f"Valid: {', '.join(sorted(known))}"
        )

    return cls(**{k: _path_or_value(k, v) for k, v in raw.items()})


def resolve_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    path: Path | None = None,
) -> OneshotConfig:
    raw = load_config(project_dir=project_dir, global_path=global_path, path=path)

    sections = {"aws": AWS, "job": Job, "timeouts": Timeouts}
    unknown = set(raw) - set(sections)
    if unknown:
        raise ConfigurationError(
            f"Unknown section(s): {', '.join(sorted(unknown))}. Valid: {', '.join(sections)}"
        )

    return OneshotConfig(
        aws=_build_section(AWS, "aws", raw.get("aws")),
        job=_build_section(Job, "job", raw.get("job")),
        timeouts=_build_section(Timeouts, "timeouts", raw.get("timeouts")),
    )
