# cadenza/core/utils/url.py
"""URL helpers for safe logging and driver URL normalization."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def mask_database_url(url: str) -> str:
    """Replace the password in a database URL with ``***``."""
    try:
        parsed = urlparse(url)
    except ValueError:
        parsed = None

    if parsed is not None:
        if not parsed.password:
            return url
        netloc = parsed.netloc.replace(f':{parsed.password}@', ':***@')
        return urlunparse(parsed._replace(netloc=netloc))

    if '@' not in url:
        return url
    pre, post = url.split('@', 1)
    scheme_user = pre.rsplit(':', 1)[0]
    return f'{scheme_user}:***@{post}'


def to_psycopg_url(url: str) -> str:
    """Strip the SQLAlchemy driver suffix so psycopg can connect directly.

    ``postgresql+psycopg://...`` becomes ``postgresql://...``; anything else is
    returned unchanged.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return url.replace('+psycopg', '')
    base, sep, driver = parsed.scheme.partition('+')
    if sep and base in {'postgresql', 'postgres'} and driver == 'psycopg':
        return urlunparse(parsed._replace(scheme=base))
    return url
