"""
Open a label's source location in a running IDE.

JetBrains IDEs expose ``/api/file/<path>:<line>`` on their built-in web
server (port 63342 by default).  The request is fire-and-forget: when no
IDE is listening nothing happens.
"""

import logging
from urllib.parse import quote

import httpx

from querytrail.core.labels import label_location

logger = logging.getLogger(__name__)

DEFAULT_EDITOR_URL = "http://localhost:63342"


def editor_url_for(label: str, base_url: str = DEFAULT_EDITOR_URL) -> str | None:
    """The IDE URL for *label*, or ``None`` when it has no location."""
    location = label_location(label)
    if location is None:
        return None
    return f"{base_url.rstrip('/')}/api/file/{quote(location, safe='/:')}"


def open_in_editor(label: str, base_url: str = DEFAULT_EDITOR_URL,
                   timeout: float = 2.0) -> bool:
    """Ask the IDE to open *label*'s file at its line. Returns True on a 2xx reply."""
    url = editor_url_for(label, base_url)
    if url is None:
        logger.debug(f"No location in label: {label}")
        return False
    try:
        resp = httpx.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        logger.debug(f"Editor request to {url} failed: {e}")
        return False
    if resp.is_success:
        return True
    logger.debug(f"Editor returned HTTP {resp.status_code} for {url}")
    return False
