"""HTTP client for the bridge status API."""

import json
import os
import urllib.error
import urllib.request
from typing import Optional

# Default API endpoint
DEFAULT_API_URL = "http://127.0.0.1:8430"
API_TIMEOUT = 2  # seconds


class BridgeClient:
    """Client for the bridge status API."""

    def __init__(self, api_url: Optional[str] = None):
        """
        Args:
            api_url: Base URL for API (default: $CHATBRIDGE_API_URL or http://127.0.0.1:8430)
        """
        self.api_url = (api_url or os.environ.get("CHATBRIDGE_API_URL", DEFAULT_API_URL)).rstrip("/")

    def _request(self, method: str, path: str, data: Optional[dict] = None, timeout: Optional[float] = None) -> tuple[Optional[dict], bool, bool]:
        """
        Make an HTTP request.

        Returns:
            Tuple of (response_data, success, unavailable)
            - success=True, unavailable=False: Request succeeded
            - success=False, unavailable=True: Connection error (bridge not running)
            - success=False, unavailable=False: API error (4xx, 5xx response)
        """
        url = f"{self.api_url}{path}"
        request_timeout = timeout if timeout is not None else API_TIMEOUT

        headers = {"Content-Type": "application/json"}
        body = json.dumps(data).encode() if data is not None else None
        req = urllib.request.Request(url, data=body, headers=headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=request_timeout) as response:
                return json.loads(response.read().decode()), True, False
        except urllib.error.HTTPError as e:
            # API responded with an error status
            try:
                detail = json.loads(e.read().decode())
            except ValueError:
                detail = None
            return detail, False, False
        except (urllib.error.URLError, OSError):
            return None, False, True
        except ValueError:
            # Not JSON; something else is listening on the port
            return None, False, True

    def status(self) -> tuple[Optional[dict], bool, bool]:
        return self._request("GET", "/status")

    def health(self) -> tuple[Optional[dict], bool, bool]:
        return self._request("GET", "/health")

    def list_sessions(self) -> tuple[Optional[dict], bool, bool]:
        return self._request("GET", "/sessions")

    def dedup_stats(self) -> tuple[Optional[dict], bool, bool]:
        return self._request("GET", "/dedup/stats")

    def send_input(self, text: str) -> tuple[Optional[dict], bool, bool]:
        """Route text like a chat message. Replies come back in ``data['replies']``."""
        return self._request("POST", "/input", {"text": text}, timeout=10)
