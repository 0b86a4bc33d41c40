import logging

import httpx

from ..errors import IntegrationError

logger = logging.getLogger(__name__)


def json_body(r: httpx.Response, error: str):
    """Decoded JSON of a 2xx response; anything else is an IntegrationError."""
    try:
        return r.json()
    except ValueError as e:
        logger.error("%s %s returned non-JSON body: %.200s",
                     r.request.method, r.request.url, r.text)
        raise IntegrationError(error) from e
