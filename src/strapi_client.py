"""HTTP client for the Strapi REST API."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx

from strapi_config import StrapiConfig

logger = logging.getLogger("strapi-mcp-server")


@dataclass(frozen=True)
class JsonBody:
    """A response body that decoded as JSON."""
    data: Any

    def to_json(self) -> Any:
        return self.data


@dataclass(frozen=True)
class RawBody:
    """A response body that was not JSON (HTML error pages, proxies, empty bodies)."""
    text: str

    def to_json(self) -> dict:
        return {"raw": self.text}


DecodedBody = Union[JsonBody, RawBody]


def decode_body(text: str) -> DecodedBody:
    try:
        return JsonBody(json.loads(text))
    except ValueError:
        return RawBody(text)


class StrapiAPIError(Exception):
    """Raised for any non-2xx response from Strapi."""

    def __init__(self, status: int, body: Any):
        self.status = status
        self.body = body
        super().__init__(f"Strapi API Error ({status}): {json.dumps(body)}")


class StrapiClient:
    """Issues single requests against the configured Strapi base URL.

    Each call opens its own `httpx.AsyncClient` so concurrent tool invocations
    share nothing. Requests have no timeout.
    """

    def __init__(self, config: StrapiConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.token:
            headers["Authorization"] = f"Bearer {self._config.token}"
        return headers

    async def request(self, path: str, method: str = "GET", body: Any = None) -> Any:
        """Call `base_url + path` and return the decoded body.

        Non-JSON bodies come back as `{"raw": text}`. Raises StrapiAPIError when
        the status is outside the 2xx range.
        """
        url = f"{self._config.base_url}{path}"
        content = json.dumps(body) if body is not None else None

        logger.info(f"Request: {method} {url}")
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=None) as client:
                response = await client.request(method, url, headers=self._headers(), content=content)
        except httpx.HTTPError as e:
            logger.error(f"Error: {method} {url} failed: {e}")
            raise

        decoded = decode_body(response.text).to_json()
        if not response.is_success:
            error = StrapiAPIError(response.status_code, decoded)
            logger.error(f"Error: {error}")
            raise error
        return decoded
