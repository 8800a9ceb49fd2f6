"""Provisioning record: which resources a job has actually created.

Every successful creation step registers an undo action here. Teardown
walks the record in reverse creation order and only ever touches
resources that exist, so a failure halfway through provisioning never
triggers deletes against resources that were never created.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Iterator
from dataclasses import dataclass, field
from enum import StrEnum

from loguru import logger

log = logger.bind(component="record")


class Resource(StrEnum):
    """Kinds of resources a job creates."""

    SECURITY_GROUP = "security_group"
    KEY_PAIR = "key_pair"
    KEY_FILE = "key_file"
    INSTANCE = "instance"
    INSTANCE_TAG = "instance_tag"
    BUCKET = "bucket"
    BUCKET_TAG = "bucket_tag"
    UPLOAD = "upload"


COMPUTE_RESOURCES: frozenset[Resource] = frozenset({
    Resource.SECURITY_GROUP,
    Resource.KEY_PAIR,
    Resource.KEY_FILE,
    Resource.INSTANCE,
    Resource.INSTANCE_TAG,
})

STORAGE_RESOURCES: frozenset[Resource] = frozenset({
    Resource.BUCKET,
    Resource.BUCKET_TAG,
    Resource.UPLOAD,
})


@dataclass(frozen=True, slots=True)
class RecordEntry:
    resource: Resource
    identifier: str
    undo: Callable[[], None]

    def __str__(self) -> str:
        return f"{self.resource}:{self.identifier}"


@dataclass(frozen=True, slots=True)
class CleanupFailure:
    """A teardown step that raised."""

    resource: Resource
    identifier: str
    error: Exception

    def __str__(self) -> str:
        return f"{self.resource}:{self.identifier} ({self.error})"


@dataclass(frozen=True, slots=True)
class CleanupReport:
    """Outcome of an unwind: which entries were removed and which failed."""

    succeeded: tuple[RecordEntry, ...] = ()
    failed: tuple[CleanupFailure, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def merge(self, other: CleanupReport) -> CleanupReport:
        return CleanupReport(
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
        )

    def summary(self) -> str:
        if not self.failed:
            return f"{len(self.succeeded)} removed"
        failures = ", ".join(str(f) for f in self.failed)
        return f"{len(self.succeeded)} removed, {len(self.failed)} failed: {failures}"


@dataclass(slots=True)
class ProvisioningRecord:
    """Ordered checklist of created resources and how to remove them."""

    _entries: list[RecordEntry] = field(default_factory=list)

    def mark(self, resource: Resource, identifier: str, undo: Callable[[], None]) -> None:
        """Record that a resource now exists."""
        log.debug(f"Created {resource}: {identifier}")
        self._entries.append(RecordEntry(resource, identifier, undo))

    def checkpoint(self) -> int:
        """Position to unwind back to when a multi-step operation fails."""
        return len(self._entries)

    def unwind(
        self,
        *,
        since: int = 0,
        only: Collection[Resource] | None = None,
    ) -> CleanupReport:
        """Undo recorded resources in reverse creation order.

        Every selected entry is attempted exactly once and then removed
        from the record, whether its undo succeeded or not. Failures are
        collected instead of aborting the remaining steps.

        Args:
            since: Only consider entries recorded at or after this checkpoint.
            only: Restrict the unwind to these resource kinds.

        Returns:
            Report of removed and failed entries.
        """
        selected = [
            e for e in self._entries[since:]
            if only is None or e.resource in only
        ]
        succeeded: list[RecordEntry] = []
        failed: list[CleanupFailure] = []

        for entry in reversed(selected):
            self._entries = [e for e in self._entries if e is not entry]
            try:
                entry.undo()
            except Exception as e:
                log.warning(f"Cleanup of {entry} failed: {e}")
                failed.append(CleanupFailure(entry.resource, entry.identifier, e))
            else:
                log.debug(f"Removed {entry}")
                succeeded.append(entry)

        return CleanupReport(succeeded=tuple(succeeded), failed=tuple(failed))

    def __iter__(self) -> Iterator[RecordEntry]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)
