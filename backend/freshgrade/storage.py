"""Filesystem and object key helpers."""

from __future__ import annotations

import uuid
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Create directory if needed and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def image_key(assignment_id: int, filename: str) -> str:
    """Return the object key for an image stored under an assignment."""
    clean = Path(filename).name
    if not clean or clean in {".", ".."}:
        raise ValueError(f"Invalid image filename: {filename!r}")
    return f"{assignment_id}/{clean}"


def new_image_filename(extension: str = "png") -> str:
    return f"{uuid.uuid4()}.{extension.lstrip('.')}"
