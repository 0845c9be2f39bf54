"""Atomic file replacement.

Content is written to a temporary file in the target directory and renamed
over the target. ``mkstemp`` creates the temporary file with mode 0o600 and
the final mode is applied before the rename, so readers only ever see the
old file or the complete new one, never a partial or over-permissive file.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write(path: Path, data: bytes, mode: int = 0o644) -> None:
    """Atomically replace path with data.

    Args:
        path: Target file. The parent directory is created if missing.
        data: File content.
        mode: Permission bits of the final file.

    Raises:
        OSError: Any filesystem failure. The temporary file is removed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
