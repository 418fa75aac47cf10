# src/dashboard_client/utils/__init__.py

from .paths import (
    get_default_root,
    get_logs_dir,
    get_data_file,
)
from .resilient_io import (
    safe_read_json,
    safe_write_json,
    safe_write_bytes,
)

__all__ = [
    "get_default_root",
    "get_logs_dir",
    "get_data_file",
    "safe_read_json",
    "safe_write_json",
    "safe_write_bytes",
]
