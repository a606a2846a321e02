"""
Shared HTTP helpers for the provisioning service clients.
"""

import logging
import re
from typing import Any, Dict, Optional, Type

import httpx
from jose.utils import base64url_decode, base64url_encode

from ..errors import UpstreamError

logger = logging.getLogger(__name__)

_B64URL = re.compile(r"[A-Za-z0-9_-]*")


def b64_encode(data: bytes) -> str:
    """Unpadded base64url, the binary encoding used on every provisioning API."""
    return base64url_encode(data).decode("ascii")


def b64_decode(value: str) -> bytes:
    """
    Decode unpadded base64url.

    Raises:
        ValueError: If value is not a string of base64url characters
    """
    if not isinstance(value, str) or not _B64URL.fullmatch(value) or len(value) % 4 == 1:
        raise ValueError("illegal base64 data")
    return base64url_decode(value.encode("ascii"))


def bearer_headers(access_token: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = {"Authorization": f"Bearer {access_token}"}
    if extra:
        headers.update(extra)
    return headers


async def send(
    http_client: httpx.AsyncClient,
    method: str,
    url: str,
    error_cls: Type[UpstreamError],
    action: str,
    json: Any = None,
    params: Optional[Dict[str, str]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> httpx.Response:
    """
    Send one request and map transport failures and non-2xx replies.

    Args:
        http_client: Pooled HTTP client
        method: HTTP method
        url: Absolute URL
        error_cls: UpstreamError subclass raised on failure
        action: Short description used in error messages, e.g. "create key"
        json: JSON body
        params: Query parameters
        headers: Request headers

    Returns:
        The successful response

    Raises:
        UpstreamError: error_cls for transport errors and non-2xx status codes
    """
    try:
        response = await http_client.request(method, url, json=json, params=params, headers=headers)
    except httpx.HTTPError as e:
        raise error_cls(f"failed to {action}: {type(e).__name__}: {e}") from e

    if not response.is_success:
        logger.warning(
            f"Upstream rejected {action}: {response.status_code}",
            extra={"url": url, "status_code": response.status_code},
        )
        raise error_cls(
            f"failed to {action}: status {response.status_code}: {response.text[:200]}"
        )

    return response


def json_body(response: httpx.Response, error_cls: Type[UpstreamError], action: str) -> Dict[str, Any]:
    """Parse a JSON object response body, mapping decode errors to error_cls."""
    try:
        body = response.json()
    except ValueError as e:
        raise error_cls(f"unmarshal {action} resp: {e}") from e

    if not isinstance(body, dict):
        raise error_cls(f"unmarshal {action} resp: expected a JSON object")
    return body
