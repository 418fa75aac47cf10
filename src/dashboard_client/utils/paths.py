# src/dashboard_client/utils/paths.py

"""
Where the client keeps its files.

    <root>/credentials.json   persisted token pair
    <root>/logs/failures.log  failed-call records
    <root>/.env               CLI settings

<root> is DASHBOARD_DATA_DIR (via ClientConfig.data_dir) when set. Otherwise
it is the folder holding the executable for frozen (PyInstaller) builds, and
the current working directory for everything else.
"""

import sys
from pathlib import Path
from typing import Optional, Union


def get_default_root() -> Path:
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path.cwd()


def _root(root: Optional[Union[Path, str]]) -> Path:
    return Path(root) if root else get_default_root()


def get_logs_dir(root: Optional[Union[Path, str]] = None) -> Path:
    """The logs/ folder under `root`, created on demand."""
    logs_dir = _root(root) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def get_data_file(filename: str, root: Optional[Union[Path, str]] = None) -> Path:
    """Path of `filename` directly under `root`; the file is not created."""
    return _root(root) / filename
