from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid", "gh_src", "lever-source", "lever-origin"}


def normalize_source_url(raw_url: str) -> str:
    """Return the stable identity form of a provider listing URL.

    Scheme and host are lowercased, default ports and fragments are dropped,
    tracking query params are stripped and the remaining ones sorted. Path case
    is preserved because providers treat it as significant.
    """
    parsed = urlparse(raw_url.strip())
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"not an absolute url: {raw_url!r}")

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key.lower())
    ]
    query_pairs.sort(key=lambda pair: pair[0])
    return urlunparse((scheme, netloc, path, "", urlencode(query_pairs, doseq=True), ""))


def _is_tracking_param(key: str) -> bool:
    return key.startswith("utm_") or key in TRACKING_KEYS
