from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlparse

TRACKING_PARAM_RE = re.compile(r"^(utm_|gclid|fbclid|mc_cid|mc_eid)", re.IGNORECASE)


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def extract_domain(url: str) -> str:
    """Lowercased hostname without a leading www."""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def _clean_query(query: str) -> str:
    pairs = [
        (key, value)
        for key, value in parse_qsl(query, keep_blank_values=True)
        if not TRACKING_PARAM_RE.match(key)
    ]
    pairs.sort()
    return urlencode(pairs)


def _clean_path(path: str) -> str:
    if len(path) > 1 and path.endswith("/"):
        return path.rstrip("/") or "/"
    return path


def dedupe_key_for_url(url: str) -> str:
    """Protocol-less key used to decide whether two URLs name the same page."""
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return url.lower()
    if not parsed.netloc:
        return url.lower()
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    key = host + _clean_path(parsed.path)
    query = _clean_query(parsed.query)
    if query:
        key = f"{key}?{query}"
    return key


def robots_txt_url(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}/robots.txt"


def host_matches(hostname: str, pattern: str) -> bool:
    """True when hostname equals pattern or is a subdomain of it.

    Patterns starting with "." match by suffix, so ".gov" matches "sec.gov".
    """
    host = hostname.lower().strip()
    base = pattern.lower().strip()
    if not host or not base:
        return False
    if host.startswith("www."):
        host = host[4:]
    if base.startswith("."):
        return host.endswith(base)
    return host == base or host.endswith("." + base)
