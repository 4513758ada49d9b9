from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_API_URLS = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "mistral": "https://api.mistral.ai/v1",
}


@dataclass(frozen=True)
class ProviderClient:
    api_url: str
    api_key: str
    provider: str = "openai"
    timeout_seconds: int = 10

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Authorization": f"Bearer {self.api_key}"}
        if self.provider == "anthropic":
            headers["x-api-key"] = self.api_key
            headers["anthropic-version"] = "2023-06-01"
        return headers

    def list_models(self) -> dict[str, Any]:
        url = self.api_url.rstrip("/") + "/models"
        req = urllib.request.Request(url, method="GET")
        for k, v in self._headers().items():
            req.add_header(k, v)
        with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
            raw = resp.read()
        data = json.loads(raw.decode("utf-8") or "{}")
        return data if isinstance(data, dict) else {"data": data}

    def test_connection(self) -> dict[str, Any]:
        """GET <api_url>/models. Always returns {success, message}; never raises."""
        try:
            data = self.list_models()
        except urllib.error.HTTPError as e:
            logger.warning("AI provider test failed: HTTP %s from %s", e.code, self.api_url)
            return {"success": False, "message": f"Connection failed: HTTP {e.code}"}
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            logger.warning("AI provider unreachable at %s: %s", self.api_url, e)
            return {"success": False, "message": f"Connection failed: {e}"}
        except ValueError:
            return {"success": False, "message": "Connection failed: invalid JSON response"}
        models = data.get("data")
        count = len(models) if isinstance(models, list) else None
        message = "Connection successful." if count is None else f"Connection successful ({count} models available)."
        return {"success": True, "message": message}
