"""
Persisted cloud credentials for Cloud Relay.

Stores the connection assigned by DPS provisioning at
{base_dir}/data/cloud_credentials.json with atomic writes, so the next run
observes the device as registered. In-memory caching avoids redundant I/O.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from cloud_relay.errors import CredentialStoreError
from cloud_relay.paths import get_paths

logger = logging.getLogger(__name__)


ALLOWED_KEYS = {
    "connection_string": str,
    "assigned_hub": str,
    "device_id": str,
    "provisioned_ts": str,
}

CONNECTION_FIELDS = ("HostName", "DeviceId")


def _fsync_dir(path: Path) -> None:
    """Ensure directory metadata is flushed for durability."""
    fd = os.open(str(path), os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_connection_string(assigned_hub: str, device_id: str) -> str:
    return f"HostName={assigned_hub};DeviceId={device_id};x509=true"


def parse_connection_string(value: str) -> dict[str, str]:
    """'HostName=h;DeviceId=d;x509=true' -> {'HostName': 'h', 'DeviceId': 'd', 'x509': 'true'}"""
    fields: dict[str, str] = {}
    for part in value.split(";"):
        key, sep, val = part.partition("=")
        if sep and key.strip():
            fields[key.strip()] = val.strip()
    return fields


class CredentialStore:
    """
    Persistent credential store with atomic writes and caching.

    Written once per successful DPS provisioning, read at the start of each run.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        if path is None:
            self.path = get_paths().credentials_path
        else:
            self.path = Path(path)
        self._cache: Optional[dict[str, Any]] = None

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def load(self) -> dict[str, Any]:
        """
        Load credentials from disk and cache them.

        A missing, corrupted or invalid file yields an empty dict (unregistered).

        Raises:
            CredentialStoreError: If the directory or file cannot be accessed
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError as exc:
            logger.error("Cannot create credentials directory %s: %s", self.path.parent, exc)
            raise CredentialStoreError(f"Permission denied creating {self.path.parent}") from exc

        if not self.path.exists():
            logger.info("No stored cloud credentials at %s", self.path)
            self._cache = {}
            return {}

        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                logger.warning("Credentials file is not a dict, ignoring")
                self._cache = {}
                return {}

            ok, error = self.validate(data)
            if not ok:
                logger.warning("Credentials validation failed: %s, ignoring", error)
                self._cache = {}
                return {}

            self._cache = data
            logger.info("Loaded cloud credentials from %s (hub=%s)", self.path, data.get("assigned_hub"))
            return data

        except json.JSONDecodeError as exc:
            logger.error("Credentials file is corrupted: %s", exc)
            self._cache = {}
            return {}
        except OSError as exc:
            logger.error("Failed to read credentials: %s", exc)
            raise CredentialStoreError(f"Failed to read {self.path}") from exc

    def save(self, data: dict[str, Any]) -> None:
        """
        Save credentials to disk atomically (temp + fsync + rename under flock).

        Raises:
            CredentialStoreError: If validation fails or write fails
        """
        ok, error = self.validate(data)
        if not ok:
            raise CredentialStoreError(f"Invalid credentials: {error}")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError as exc:
            raise CredentialStoreError(f"Permission denied creating {self.path.parent}") from exc

        try:
            # Lazy import: only Linux has fcntl
            import fcntl  # type: ignore

            with self.lock_path.open("w") as lockf:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)

                with tempfile.NamedTemporaryFile(
                    mode="w",
                    encoding="utf-8",
                    delete=False,
                    dir=str(self.path.parent),
                ) as tf:
                    json.dump(data, tf, indent=2, sort_keys=True)
                    tf.flush()
                    os.fsync(tf.fileno())
                    tmp_path = Path(tf.name)

                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
                _fsync_dir(self.path.parent)

                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

            self._cache = dict(data)
            logger.info("Saved cloud credentials to %s", self.path)

        except Exception as exc:
            logger.exception("Failed to save credentials")
            raise CredentialStoreError(f"Failed to save credentials: {exc}") from exc

    def validate(self, data: dict[str, Any]) -> tuple[bool, Optional[str]]:
        if not isinstance(data, dict):
            return False, "credentials must be a dict"

        for key, value in data.items():
            if key not in ALLOWED_KEYS:
                return False, f"unknown credentials key: {key}"
            expected_type = ALLOWED_KEYS[key]
            if not isinstance(value, expected_type):
                return False, f"{key} must be {expected_type.__name__}, got {type(value).__name__}"

        return True, None

    def save_connection(self, assigned_hub: str, device_id: str) -> str:
        """Persist a DPS assignment as a connection-string credential; returns the string."""
        connection_string = build_connection_string(assigned_hub, device_id)
        self.save(
            {
                "connection_string": connection_string,
                "assigned_hub": assigned_hub,
                "device_id": device_id,
                "provisioned_ts": _utc_iso(),
            }
        )
        return connection_string

    def get_cached(self) -> dict[str, Any]:
        """Return cached credentials without I/O; loads once if needed."""
        if self._cache is None:
            self.load()
        return dict(self._cache or {})

    def connection_fields(self) -> dict[str, Optional[str]]:
        """
        The fields registration is judged on: HostName and DeviceId of the stored
        connection string, None where absent.
        """
        raw = self.get_cached().get("connection_string") or ""
        parsed = parse_connection_string(raw)
        return {name: parsed.get(name) or None for name in CONNECTION_FIELDS}
