"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without an Alembic context.
DATABASE_URL may be a URL or a libpq ``key=value`` DSN; both become a
``postgresql+psycopg2://`` SQLAlchemy URL. DB_PASSWORD fills in a missing
password in either form.
"""

from __future__ import annotations

import os
import shlex
from urllib.parse import quote_plus, urlsplit, urlunsplit

SQLALCHEMY_SCHEME = "postgresql+psycopg2"


def parse_libpq_dsn(dsn: str) -> dict[str, str]:
    """Split a libpq DSN into its keywords.

    Values may be single-quoted; a backslash escapes the next character.
    """
    lexer = shlex.shlex(dsn, posix=True)
    lexer.whitespace_split = True
    lexer.quotes = "'"
    lexer.escapedquotes = "'"
    lexer.commenters = ""
    params: dict[str, str] = {}
    for token in lexer:
        key, sep, value = token.partition("=")
        if sep:
            params[key.strip()] = value
    return params


def libpq_dsn_to_url(dsn: str) -> str:
    params = parse_libpq_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD", "")
    user = quote_plus(params.get("user", ""))
    credentials = f"{user}:{quote_plus(password)}" if password else user
    dbname = quote_plus(params.get("dbname", ""))
    host = params.get("host", "localhost")

    if host.startswith("/"):
        # Unix socket directory goes in the query string
        return f"{SQLALCHEMY_SCHEME}://{credentials}@/{dbname}?host={quote_plus(host)}"
    port = params.get("port", "5432")
    return f"{SQLALCHEMY_SCHEME}://{credentials}@{host}:{port}/{dbname}"


def _normalize_url(url: str) -> str:
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            url = f"{SQLALCHEMY_SCHEME}://{url[len(prefix):]}"
            break

    db_password = os.environ.get("DB_PASSWORD", "")
    parts = urlsplit(url)
    if not db_password or parts.password:
        return url

    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{quote_plus(parts.username or '')}:{quote_plus(db_password)}@{host}"
    return urlunsplit(parts._replace(netloc=netloc))


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" in url:
        return _normalize_url(url)
    return libpq_dsn_to_url(url)
