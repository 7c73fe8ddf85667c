import json
import logging
from typing import Any, Dict, Optional

import httpx

from .base import GenerationProvider

logger = logging.getLogger(__name__)


class MissingApiKeyError(Exception):
    pass


class UpstreamError(Exception):
    def __init__(self, message: Optional[str], status_code: int, headers: Dict[str, str]):
        super().__init__(message or f"upstream returned {status_code}")
        self.message = message
        self.status_code = status_code
        self.headers = headers

    def __str__(self) -> str:
        return f"UpstreamError(status_code={self.status_code}, message={self.message!r})"


class GeminiProvider(GenerationProvider):
    """Google Gemini ``generateContent`` client.

    The API key is server-held and sent as ``x-goog-api-key``; callers never
    see it. A missing key is only reported when a request is forwarded.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gemini-2.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client  # may be injected for tests
        if not self._api_key:
            logger.warning("GEMINI_KEY not set; /generate will fail until configured.")

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def generate(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self._api_key:
            raise MissingApiKeyError("GEMINI_KEY is not configured")

        client = self._get_client()
        resp = await client.post(
            f"/models/{self._model}:generateContent",
            headers=self._headers(),
            content=json.dumps(body),
        )
        if resp.is_success:
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError("Gemini returned a non-object JSON body")
            return data

        message = _error_message(resp)
        logger.error("Gemini API error (%s): %s", resp.status_code, message)
        raise UpstreamError(message, resp.status_code, dict(resp.headers))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _error_message(resp: httpx.Response) -> Optional[str]:
    try:
        data = resp.json()
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        message = data["error"].get("message")
        if isinstance(message, str) and message:
            return message
    return None
