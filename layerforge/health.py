"""Liveness client for a running image.

The composed image declares a probe that fetches ``/health`` and passes
only when the JSON body carries ``"status": true``.  ``check_liveness``
applies the same rule from the host side.
"""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_URL = "http://localhost:8080/health"


def check_liveness(
    url: str = DEFAULT_HEALTH_URL,
    timeout: float = 10.0,
    *,
    transport: httpx.BaseTransport | None = None,
) -> bool:
    """True iff *url* answers 2xx with a JSON body whose ``status`` is ``true``."""
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            response = client.get(url)
    except httpx.HTTPError as exc:
        logger.info("Liveness probe %s unreachable: %s", url, exc)
        return False

    if not response.is_success:
        logger.info("Liveness probe %s returned HTTP %d", url, response.status_code)
        return False
    try:
        body = response.json()
    except ValueError:
        logger.info("Liveness probe %s returned a non-JSON body", url)
        return False
    return isinstance(body, dict) and body.get("status") is True
