import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from ..errors import LoadError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


async def request_json(url: str, headers: Optional[Dict[str, str]] = None,
                       session: Optional[requests.Session] = None,
                       timeout: float = DEFAULT_TIMEOUT) -> Any:
    """Fetches and decodes a JSON document without blocking the event loop.

    Args:
        url: Document url.
        headers: Optional request headers.
        session: Optional requests.Session for connection reuse.
        timeout: Request timeout in seconds.

    Returns:
        The decoded JSON document.

    Raises:
        LoadError: On connection errors, HTTP error codes or invalid JSON.
    """
    get = session.get if session is not None else requests.get
    log.debug("Requesting %s", url)
    try:
        response = await asyncio.to_thread(get, url, headers=headers, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except requests.RequestException as e:
        raise LoadError(f"Failed to load '{url}': {e}", url=url) from e
    except ValueError as e:
        raise LoadError(f"Invalid JSON document at '{url}': {e}", url=url) from e
