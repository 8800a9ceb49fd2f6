"""Value types describing the resources of one job."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType

from oneshot.constants import InstanceState, OneshotTag


@dataclass(frozen=True, slots=True)
class Tag:
    """Key/value label attached to provisioned resources."""

    key: str
    value: str

    def to_aws(self) -> dict[str, str]:
        return {"Key": self.key, "Value": self.value}

    def __str__(self) -> str:
        return f"{self.key}={self.value}"


@dataclass(frozen=True, slots=True)
class JobNames:
    """Provider-side names of the resources owned by one job."""

    job_id: str
    security_group: str
    key_pair: str
    bucket: str

    @classmethod
    def for_job(cls, prefix: str, job_id: str, bucket: str | None = None) -> JobNames:
        return cls(
            job_id=job_id,
            security_group=f"{prefix}-{job_id}-sg",
            key_pair=f"{prefix}-{job_id}-key",
            bucket=bucket or f"{prefix}-{job_id}",
        )

    def tag(self, key: str = OneshotTag.JOB) -> Tag:
        return Tag(key, self.job_id)


# =============================================================================
# Compute
# =============================================================================


@dataclass(frozen=True, slots=True)
class LaunchedInstance:
    """An instance the provider accepted but that is not reachable yet."""

    instance_id: str
    security_group_id: str
    key_name: str
    key_path: Path
    state: InstanceState = InstanceState.PENDING

    def running(self, public_ip: str, tag: Tag) -> ComputeInstance:
        return ComputeInstance(
            instance_id=self.instance_id,
            security_group_id=self.security_group_id,
            key_name=self.key_name,
            key_path=self.key_path,
            public_ip=public_ip,
            tag=tag,
        )


@dataclass(frozen=True, slots=True)
class ComputeInstance:
    """A running instance with a public address."""

    instance_id: str
    security_group_id: str
    key_name: str
    key_path: Path
    public_ip: str
    tag: Tag
    state: InstanceState = InstanceState.RUNNING


# =============================================================================
# Storage
# =============================================================================


@dataclass(frozen=True, slots=True)
class StoredObject:
    key: str
    local_path: Path | None = None
    size: int = 0


@dataclass(frozen=True, slots=True)
class ObjectStoreBucket:
    """A bucket and the objects this job knows about."""

    name: str
    tag: Tag
    objects: Mapping[str, StoredObject] = field(default_factory=dict)
    downloaded: tuple[Path, ...] = ()
    failed: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "objects", MappingProxyType(dict(self.objects)))

    def with_object(self, obj: StoredObject) -> ObjectStoreBucket:
        return replace(self, objects={**self.objects, obj.key: obj})

    def without(self, *keys: str) -> ObjectStoreBucket:
        return replace(self, objects={k: v for k, v in self.objects.items() if k not in keys})
