"""Atomic writes for small state files such as the toggle's pid record.

The data goes to a randomly named sibling temp file which is fsynced and
then renamed over the target, so a concurrent reader sees either the old
record or the new one, never a partial pid.  Symlinks at the target are
refused rather than followed.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Union


class SecurityError(Exception):
    """Raised when a file I/O operation would be unsafe."""


def atomic_write_sync(
    target_path: Union[str, Path],
    data: Union[bytes, str],
    mode: int = 0o600,
) -> None:
    """Replace *target_path* with *data* in one rename.

    ``str`` data is encoded as UTF-8.  The file ends up with permission
    bits *mode* (``0o600`` unless told otherwise).

    Raises:
        SecurityError: If *target_path* is a symlink.
    """
    target = Path(target_path)
    if target.is_symlink():
        raise SecurityError(
            f"Refusing to write to symlink: {target} -> {os.readlink(target)}"
        )
    payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)

    fd, tmp_name = tempfile.mkstemp(
        dir=target.parent, prefix=f".{target.name}.", suffix=".tmp",
    )
    try:
        if hasattr(os, "fchmod"):
            os.fchmod(fd, mode)
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_text_sync(
    target_path: Union[str, Path],
    text: str,
    mode: int = 0o600,
    encoding: str = "utf-8",
) -> None:
    atomic_write_sync(target_path, text.encode(encoding), mode)
