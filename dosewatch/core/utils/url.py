# dosewatch/core/utils/url.py
"""URL helpers for safe logging of store connection strings."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def mask_database_url(url: str) -> str:
    """Mask the password in a database URL before it reaches a log line.

    Falls back to string manipulation if the URL cannot be parsed.
    """
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.netloc.replace(f':{parsed.password}@', ':***@')
            return urlunparse(parsed._replace(netloc=netloc))
        return url
    except Exception:
        if '@' not in url:
            return url
        pre, post = url.split('@', 1)
        scheme_user = pre.rsplit(':', 1)[0]
        return f'{scheme_user}:***@{post}'


def url_scheme(url: str) -> str:
    """Return the scheme part of a URL (``postgresql+psycopg``), or a short prefix."""
    return url.split('://')[0] if '://' in url else url[:20]
