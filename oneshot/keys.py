"""Scoped storage of single-use SSH private keys."""

from __future__ import annotations

import os
import stat
from pathlib import Path

from loguru import logger

PRIVATE_KEY_MODE = stat.S_IRUSR  # 0400


def write_private_key(key_dir: Path, key_name: str, material: str) -> Path:
    """Persist key material readable by the current user only.

    The file is created with restrictive permissions from the start so the
    key is never world-readable, even briefly.

    Args:
        key_dir: Directory holding job keys. Created with mode 0700.
        key_name: Provider key pair name, used as the file stem.
        material: PEM-encoded private key.

    Returns:
        Path of the written key.
    """
    key_dir = key_dir.expanduser()
    key_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    path = key_dir / f"{key_name}.pem"
    if path.exists():
        remove_private_key(path)

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(material)
    path.chmod(PRIVATE_KEY_MODE)

    logger.debug(f"Private key written to {path}")
    return path


def remove_private_key(path: Path) -> None:
    """Delete a key file. Missing files are fine."""
    if not path.exists():
        return
    path.unlink()
    logger.debug(f"Private key removed: {path}")
