"""Hostname normalization.

Request headers and destination URLs carry hosts in many shapes:
    - "Promo.Example.com:8443, other.com" (X-Forwarded-Host list with a port)
    - "[2001:db8::1]:443" (bracketed IPv6 with a port)
    - "promo.example.com." (fully qualified with a trailing dot)

Every comparison in the platform is made on the canonical form returned by
normalize_host(). Malformed input normalizes to "", which callers treat as
"no host".
"""

from __future__ import annotations

import re
from ipaddress import IPv6Address, ip_address
from urllib.parse import urlsplit

_HOSTNAME_RE = re.compile(r"^[a-z0-9_](?:[a-z0-9_.-]*[a-z0-9_])?$")
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def normalize_host(raw: str | None) -> str:
    """Canonicalize a raw Host / X-Forwarded-Host value.

    Examples:
        >>> normalize_host("Promo.Example.com:8443, other.com")
        'promo.example.com'
        >>> normalize_host("[2001:DB8::1]:443")
        '[2001:db8::1]'
        >>> normalize_host("bad host")
        ''
    """
    if not raw:
        return ""

    host = raw.split(",")[0].strip().lower()
    if not host:
        return ""

    if host.startswith("["):
        end = host.find("]")
        if end <= 1:
            return ""
        rest = host[end + 1 :]
        if rest and not (rest.startswith(":") and rest[1:].isdigit()):
            return ""
        literal = host[1:end]
        return f"[{literal}]" if _is_ipv6(literal) else ""

    if host.count(":") > 1:
        return f"[{host}]" if _is_ipv6(host) else ""

    if ":" in host:
        host, _, port = host.partition(":")
        if not port.isdigit():
            return ""

    host = host.rstrip(".")
    if not host or len(host) > 253 or not _HOSTNAME_RE.match(host) or ".." in host:
        return ""
    return host


def ensure_scheme(url: str | None) -> str | None:
    """Return the URL with an https:// scheme prefixed when it has none.

    Blank values return None.
    """
    value = (url or "").strip()
    if not value:
        return None
    return value if _SCHEME_RE.match(value) else f"https://{value}"


def host_of_url(url: str) -> str:
    """Return the normalized host component of a URL, or "" if unparsable."""
    try:
        netloc = urlsplit(url).netloc
    except ValueError:
        return ""
    # userinfo never takes part in host comparison
    return normalize_host(netloc.rpartition("@")[2])


def _is_ipv6(value: str) -> bool:
    try:
        return isinstance(ip_address(value), IPv6Address)
    except ValueError:
        return False
