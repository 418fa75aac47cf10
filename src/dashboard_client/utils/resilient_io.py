# src/dashboard_client/utils/resilient_io.py

"""
File helpers that never raise.

The credential file and downloaded attachments are written atomically: the
content goes to a hidden temp file in the destination directory, which is
then moved over the target, so a crash mid-write never leaves a truncated
file behind. Failures are logged and reported through the return value.
"""

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

PathLike = Union[str, Path]


def _replace_atomically(target: Path, content: bytes, owner_only: bool) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=target.parent, prefix=f".{target.name}.", suffix=".part"
    )
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(content)
        if owner_only:
            try:
                os.chmod(tmp_name, 0o600)
            except (OSError, NotImplementedError):
                # chmod is a no-op on some platforms (Windows)
                pass
        shutil.move(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def safe_read_json(
    path: PathLike,
    logger: logging.Logger,
    default: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Load a JSON object from `path`.

    A missing file, unreadable file, invalid JSON or a top-level value that
    is not an object all yield a copy of `default` (an empty dict when None).
    """
    path = Path(path)
    if not path.is_file():
        return dict(default or {})
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable '{path.name}': {e}")
        return dict(default or {})
    if not isinstance(data, dict):
        logger.warning(f"Ignoring '{path.name}': top-level value is not an object")
        return dict(default or {})
    return data


def safe_write_json(
    path: PathLike,
    data: Dict[str, Any],
    logger: logging.Logger,
    secure_permissions: bool = False,
) -> bool:
    """
    Atomically replace `path` with `data` as indented JSON.

    Args:
        secure_permissions: Restrict the file to its owner (0o600)

    Returns:
        True when the file was written
    """
    path = Path(path)
    try:
        content = json.dumps(data, indent=2).encode("utf-8")
        _replace_atomically(path, content, secure_permissions)
    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"Could not save '{path}': {e}")
        return False
    return True


def safe_write_bytes(path: PathLike, content: bytes, logger: logging.Logger) -> bool:
    """Atomically replace `path` with `content`; True when written."""
    path = Path(path)
    try:
        _replace_atomically(path, content, owner_only=False)
    except OSError as e:
        logger.warning(f"Could not save {len(content)} bytes to '{path}': {e}")
        return False
    return True
