"""
HTTP client for the live (Docker-hosted) backend.

Every call carries a timeout; timeouts and connection errors are reported as
LiveBackendUnreachable so callers can fall back instead of hanging.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests

from panel.errors import LiveBackendUnreachable

logger = logging.getLogger(__name__)


@dataclass
class LiveResponse:
    status_code: int
    payload: Any
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class LiveBackendClient:
    def __init__(self, timeout_seconds: float = 5.0, session: Optional[requests.Session] = None):
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def request(self, method: str, base_url: str, path: str, json_body: Any = None) -> LiveResponse:
        """
        Issue one request against the live backend.

        Raises:
            LiveBackendUnreachable: on timeout or any transport failure
        """
        url = f"{base_url.rstrip('/')}{path}"
        kwargs = {"timeout": self.timeout_seconds, "headers": {"Content-Type": "application/json"}}
        if json_body is not None and method not in ("GET", "DELETE"):
            kwargs["json"] = json_body

        logger.debug(f"Live backend call: {method} {url}")
        try:
            resp = self._session.request(method, url, **kwargs)
        except requests.exceptions.Timeout as exc:
            raise LiveBackendUnreachable(f"Timed out after {self.timeout_seconds}s: {method} {url}") from exc
        except requests.exceptions.RequestException as exc:
            raise LiveBackendUnreachable(f"{method} {url} failed: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        return LiveResponse(status_code=resp.status_code, payload=payload, text=resp.text)

    def get_json(self, base_url: str, path: str) -> Optional[Any]:
        """GET and decode JSON; None on any failure or non-2xx answer."""
        try:
            resp = self.request("GET", base_url, path)
        except LiveBackendUnreachable as exc:
            logger.info(f"Live backend unavailable: {exc}")
            return None
        if not resp.ok:
            logger.info(f"Live backend answered {resp.status_code} for GET {path}")
            return None
        return resp.payload

    def close(self):
        self._session.close()
