"""
Central path configuration for Cloud Relay.

All filesystem paths are derived from a single base directory. On balena the
default sits on the persistent /data volume so provisioning output survives
container restarts.

Path Structure:
    /data/cloud-relay/
    ├── data/              (Persistent data)
    │   ├── cloud_credentials.json
    │   └── cloud_credentials.json.lock
    └── certs/             (PEM files materialized for TLS clients)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True, slots=True)
class Paths:
    """Immutable container for all filesystem paths used by the relay."""

    base_dir: Path
    data_dir: Path
    credentials_path: Path
    certs_dir: Path


def build_paths(base_dir: Optional[Path] = None) -> Paths:
    """
    Build Paths object from base directory.

    Args:
        base_dir: Base directory for all relay files.
                  Defaults to /data/cloud-relay.
                  Can be overridden via RELAY_BASE_DIR env var.
    """
    if base_dir is None:
        base_str = os.environ.get("RELAY_BASE_DIR", "/data/cloud-relay")
        base_dir = Path(base_str)

    return Paths(
        base_dir=base_dir,
        data_dir=base_dir / "data",
        credentials_path=base_dir / "data" / "cloud_credentials.json",
        certs_dir=base_dir / "certs",
    )


def ensure_dirs(paths: Paths) -> None:
    """
    Create all required directories if they don't exist.

    data_dir and certs_dir hold credentials and are created 0o700.

    Raises:
        OSError: If directory creation fails due to permissions or other issues.
    """
    for dir_path, mode in [
        (paths.base_dir, 0o755),
        (paths.data_dir, 0o700),
        (paths.certs_dir, 0o700),
    ]:
        dir_path.mkdir(parents=True, exist_ok=True)
        # mkdir may apply umask
        dir_path.chmod(mode)


_paths: Optional[Paths] = None


def get_paths() -> Paths:
    """Return the process-wide Paths, building it from defaults on first call."""
    global _paths
    if _paths is None:
        _paths = build_paths()
    return _paths


def set_paths(paths: Paths) -> None:
    global _paths
    _paths = paths


def reset_paths() -> None:
    """Force get_paths() to rebuild from defaults on next call."""
    global _paths
    _paths = None
