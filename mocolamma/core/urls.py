"""
Host normalization for Ollama endpoints.
"""

HTTPS_PREFIX = "https://"
HTTP_PREFIX = "http://"


def normalize_host(host: str) -> tuple[str, str]:
    """
    Split a user-entered host into scheme and bare host.

    The scheme is https only when the host was entered with an https:// prefix.

    Args:
        host: Host string such as "localhost:11434" or "https://example.com"

    Returns:
        tuple[str, str]: (scheme, host without scheme)
    """
    host = host.strip()
    scheme = "https" if host.startswith(HTTPS_PREFIX) else "http"
    bare = host.replace(HTTPS_PREFIX, "").replace(HTTP_PREFIX, "").rstrip("/")
    return scheme, bare


def build_api_url(host: str, path: str) -> str:
    """
    Build a full endpoint URL for the given host.

    Args:
        host: Host string, with or without scheme
        path: API path (e.g. "/api/tags")

    Returns:
        str: Absolute URL

    Raises:
        ValueError: If the host is empty
    """
    scheme, bare = normalize_host(host)
    if not bare or any(ch.isspace() for ch in bare):
        raise ValueError(f"Invalid API host: {host!r}")
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{scheme}://{bare}{path}"
