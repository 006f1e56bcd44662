"""Atomic file replacement shared by the secret store and certificate rotation."""

import os
import tempfile
from pathlib import Path
from typing import Union


def atomic_write(path: Path, content: Union[str, bytes], mode: int = 0o600):
    """
    Replace path with content so readers see either the old or the new file.

    Writes a temp file in the same directory (same filesystem, so the rename
    is atomic), applies mode before any data lands, fsyncs, then renames.
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "wb" if isinstance(content, bytes) else "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
