"""The program a job uploads and runs."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from oneshot.exceptions import ValidationError


@dataclass(frozen=True, slots=True)
class InputArtifact:
    """A local file and the bucket key it is stored under."""

    key: str
    path: Path

    @classmethod
    def from_path(cls, raw: str | Path) -> InputArtifact:
        """Validate a user-supplied path.

        Raises:
            ValidationError: If the path does not point to a regular file.
        """
        path = Path(raw).expanduser()
        if not path.exists():
            raise ValidationError(f"File at given path was not found: {raw}")
        if not path.is_file():
            raise ValidationError(f"Not a regular file: {raw}")
        path = path.resolve()
        return cls(key=path.name, path=path)

    @property
    def size(self) -> int:
        return self.path.stat().st_size
