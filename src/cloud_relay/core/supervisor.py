"""
balena Supervisor client.

The supervisor owns the device's environment variables. When the backend has
already provisioned this device but the container still runs with stale env
vars, a forced update makes the supervisor restart the service with fresh ones.
"""

from __future__ import annotations

import json
import logging
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_S = 10


class SupervisorClient:
    def __init__(self, address: Optional[str], api_key: Optional[str], *, timeout_s: float = REQUEST_TIMEOUT_S) -> None:
        self.address = address.rstrip("/") if address else None
        self.api_key = api_key
        self.timeout_s = timeout_s

    def update_url(self) -> Optional[str]:
        if not self.address or not self.api_key:
            return None
        return f"{self.address}/v1/update?apikey={quote(self.api_key, safe='')}"

    def request_update(self, *, force: bool = True) -> bool:
        """
        POST /v1/update to refresh environment variables.

        Returns True on a 2xx response. Failures are logged, never raised.
        """
        url = self.update_url()
        if url is None:
            logger.warning("Supervisor address or API key not set; cannot refresh environment")
            return False

        req = Request(
            url,
            data=json.dumps({"force": force}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.timeout_s) as resp:
                status = resp.status
        except HTTPError as exc:
            logger.warning("Supervisor update rejected: %s", exc.code)
            return False
        except (URLError, OSError) as exc:
            logger.warning("Supervisor update failed: %s", exc)
            return False

        logger.info("Supervisor updated: %s", status)
        return 200 <= status < 300
