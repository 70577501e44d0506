"""
Shared Ollama utilities: base URL resolution and model availability check.
"""

import logging
import os

import requests

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama server URL: explicit value, OLLAMA_HOST, or default.

    OLLAMA_HOST may be a bare host:port; a scheme is added when missing.
    """
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if "://" not in url:
        url = f"http://{url}"
    return url.rstrip("/")


def ollama_has_model(base_url: str, model: str, timeout: float = 2.0) -> bool:
    """Check if an Ollama server is reachable and has ``model`` installed.

    Never raises: any connection or protocol problem reads as "not available".
    Unlike a pull, this check is cheap enough to run before every request.
    """
    # Normalize model name for comparison, Ollama strips :latest
    bare = model.split(":")[0] if ":" in model else model

    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=timeout)
        resp.raise_for_status()
        installed = {m["name"] for m in resp.json().get("models", [])}
    except (requests.RequestException, ValueError, KeyError, TypeError) as e:
        logger.debug("Ollama at %s not usable: %s", base_url, e)
        return False

    # Ollama lists models as "name:tag", check both exact and bare+:latest
    return bool(
        model in installed or f"{model}:latest" in installed or
        bare in installed or f"{bare}:latest" in installed
    )
