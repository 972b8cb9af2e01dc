"""
Model Weight Fetch

Byte-exact retrieval of model files from an HTTP(S) URL or a local path.

A failed fetch raises FetchFailure. The caller (one backend's lazy
initialization) decides what that means; other backends are unaffected.
"""

import logging
import os
import time
from pathlib import Path
from typing import Dict, Tuple

import requests

from .env_config import mask_url_credentials
from .errors import FetchFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60


def is_remote(source: str) -> bool:
    return source.lower().startswith(("http://", "https://"))


def _fetch_remote(url: str, timeout: int) -> bytes:
    safe_url = mask_url_credentials(url)

    try:
        response = requests.get(url, timeout=timeout)
    except requests.exceptions.Timeout:
        raise FetchFailure(safe_url, f"request timed out after {timeout}s")
    except requests.exceptions.RequestException as e:
        raise FetchFailure(safe_url, f"could not connect: {e}")

    if response.status_code != 200:
        raise FetchFailure(
            safe_url,
            response.reason or "non-OK status",
            status_code=response.status_code,
        )

    content = response.content
    if not content:
        raise FetchFailure(safe_url, "empty response body", status_code=response.status_code)

    return content


def _fetch_local(path: str) -> bytes:
    file_path = Path(path)
    if not file_path.is_file():
        raise FetchFailure(path, "file not found")

    try:
        content = file_path.read_bytes()
    except OSError as e:
        raise FetchFailure(path, f"could not read file: {e}")

    if not content:
        raise FetchFailure(path, "file is empty")

    return content


def fetch_model_bytes(source: str, timeout: int = DEFAULT_TIMEOUT) -> Tuple[bytes, Dict]:
    """
    Fetch model bytes.

    Args:
        source: http(s) URL or filesystem path
        timeout: Request timeout in seconds (remote only)

    Returns:
        Tuple of (model_bytes, metadata_dict)

    Raises:
        FetchFailure: Non-OK status, transport error, missing or empty file
    """
    if not source:
        raise FetchFailure("<empty>", "no model source configured")

    start_time = time.time()
    remote = is_remote(source)

    logger.info("[FETCH] Loading model from %s", mask_url_credentials(source) if remote else source)
    content = _fetch_remote(source, timeout) if remote else _fetch_local(os.path.expanduser(source))

    elapsed = time.time() - start_time
    metadata = {
        "source": mask_url_credentials(source) if remote else source,
        "remote": remote,
        "size_bytes": len(content),
        "fetch_time_ms": round(elapsed * 1000, 1),
    }
    logger.info("[FETCH] Model loaded: %d bytes in %.0fms", len(content), elapsed * 1000)

    return content, metadata
