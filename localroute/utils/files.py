from __future__ import annotations

import os
import tempfile
from pathlib import Path


def stage_file(path: Path, content: bytes, mode: int = 0o644) -> Path:
    """Write ``content`` to a synced temp file next to ``path`` and return the temp path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(mode="wb", dir=str(path.parent), prefix=f".{path.name}.", delete=False) as tmp_file:
        tmp_file.write(content)
        tmp_file.flush()
        os.fsync(tmp_file.fileno())
        temp_path = Path(tmp_file.name)

    try:
        os.chmod(temp_path, mode)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise
    return temp_path


def write_file_atomic(path: Path, content: bytes, mode: int = 0o644) -> None:
    temp_path = stage_file(path, content, mode)
    try:
        os.replace(temp_path, path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise
