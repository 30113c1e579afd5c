from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """
    Normalize a URL into the form used as cache and registry key:
    lower-case scheme and host, default port dropped, empty path as "/",
    query parameters sorted, fragment removed.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ValueError(f"expected an absolute http(s) URL, got {url!r}")
    if not parts.hostname:
        raise ValueError(f"URL has no host: {url!r}")

    host = parts.hostname.lower()
    if ":" in host:
        # IPv6 literal
        host = f"[{host}]"
    try:
        port = parts.port
    except ValueError as e:
        raise ValueError(f"invalid port in URL {url!r}") from e
    if port is not None and port != DEFAULT_PORTS[scheme]:
        host = f"{host}:{port}"

    path = parts.path or "/"
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, host, path, query, ""))


def host_of(url: str) -> str:
    """Host (with non-default port) of an already-normalized URL."""
    return urlsplit(url).netloc
