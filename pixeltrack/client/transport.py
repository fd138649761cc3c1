from __future__ import annotations
import http.client
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from ..errors import BatchRejected, TransientDeliveryError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://127.0.0.1:3000/api/events"


class HttpTransport:
    """POSTs one batch as a JSON array to the ingestion endpoint."""

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = 10.0,
        unload_timeout: float = 2.0,
        user_agent: Optional[str] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        # keepalive sends happen while the process is shutting down, keep them short
        self.unload_timeout = unload_timeout
        self.user_agent = user_agent or "pixeltrack-python"

    def send(self, events: List[Dict[str, Any]], keepalive: bool = False) -> Dict[str, Any]:
        data = json.dumps(events).encode("utf-8")
        req = urllib.request.Request(
            self.endpoint,
            data=data,
            method="POST",
            headers={"Content-Type": "application/json", "User-Agent": self.user_agent},
        )
        timeout = self.unload_timeout if keepalive else self.timeout
        try:
            with urllib.request.urlopen(req, timeout=timeout) as r:
                body = r.read()
        except urllib.error.HTTPError as e:
            detail = _read_detail(e)
            if 400 <= e.code < 500:
                raise BatchRejected(e.code, detail) from e
            raise TransientDeliveryError(f"HTTP {e.code}: {detail}") from e
        except (OSError, http.client.HTTPException) as e:
            # URLError, timeouts, refused connections, truncated or garbled responses
            raise TransientDeliveryError(str(e)) from e

        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError as e:
            raise TransientDeliveryError(f"undecodable response: {body[:100]!r}") from e


def _read_detail(err: urllib.error.HTTPError) -> str:
    try:
        return err.read().decode("utf-8", "replace")[:200]
    except (OSError, http.client.HTTPException):
        return ""
