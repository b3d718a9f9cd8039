# cadenza/core/utils/db.py
"""Classifying transient database errors."""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """True when SQLAlchemy flagged the error as a lost connection."""
    return bool(getattr(exc, 'connection_invalidated', False)) or bool(
        getattr(exc, 'is_disconnect', False)
    )


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Check whether an exception is a transient connection error worth retrying."""
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case ConnectionError() | TimeoutError():
            return True
        case _:
            return False
