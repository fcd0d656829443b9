"""Third-party JSON data sources."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from src.utils.extract import extract

from .errors import ApiFetchError, ExtractionError

logger = logging.getLogger(__name__)

DEFAULT_API_TIMEOUT = 10.0
USER_AGENT = "api-oracle-agent/0.1"


async def fetch_json(
    url: str,
    timeout: float = DEFAULT_API_TIMEOUT,
    client: Optional[httpx.AsyncClient] = None,
    oracle_id: Optional[str] = None,
) -> Any:
    """
    GET ``url`` and decode the JSON body.

    Raises:
        ApiFetchError: On transport failures, timeouts, non-2xx responses or
            bodies that are not JSON
    """
    headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    try:
        if client is not None:
            response = await client.get(url, headers=headers, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as owned:
                response = await owned.get(url, headers=headers)
    except httpx.HTTPError as exc:
        raise ApiFetchError(f"Failed to fetch {url}: {exc.__class__.__name__}: {exc}", oracle_id) from exc

    if not response.is_success:
        raise ApiFetchError(
            f"API request failed: {response.status_code} {response.reason_phrase}", oracle_id
        )
    try:
        return response.json()
    except ValueError as exc:
        raise ApiFetchError(f"API response from {url} is not valid JSON: {exc}", oracle_id) from exc


async def probe_data_source(
    api_endpoint: str,
    data_path: Optional[str] = None,
    timeout: float = DEFAULT_API_TIMEOUT,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """Check that an endpoint answers with JSON and, optionally, that ``data_path`` yields a number."""
    if not api_endpoint.startswith(("http://", "https://")):
        return {"success": False, "error": "API endpoint must start with http:// or https://"}

    try:
        document = await fetch_json(api_endpoint, timeout=timeout, client=client)
    except ApiFetchError as exc:
        return {"success": False, "error": exc.message}

    result: Dict[str, Any] = {"success": True, "apiEndpoint": api_endpoint, "data": document}
    if data_path:
        result["dataPath"] = data_path
        try:
            value = extract(document, data_path)
        except ExtractionError as exc:
            result["success"] = False
            result["error"] = exc.message
        else:
            result["value"] = str(value) if isinstance(value, Decimal) else value
    return result
