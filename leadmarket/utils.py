"""Small shared helpers."""

from datetime import datetime, timezone

import bleach


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return a timezone-aware UTC datetime.

    SQLite returns naive datetimes; Postgres returns aware ones.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(str(text), tags=[], strip=True).strip()


def conditional_update(stmt):
    """Run a conditional UPDATE and report whether it matched a row.

    This is the compare-and-swap primitive for ServiceRequest writes: the
    WHERE clause carries the precondition, so two concurrent writers cannot
    both win. Pending ORM changes are flushed first and every loaded
    instance is expired afterwards, so the next attribute access re-reads
    the row.
    """
    from leadmarket.extensions import db

    db.session.flush()
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    db.session.expire_all()
    return result.rowcount > 0
