"""
Storage layer: the shared SQLAlchemy handle and the transaction boundary.

Every multi-entity mutation in the core runs inside ``atomic()`` (or its
function form ``with_transaction``). The outermost block commits on success
and rolls back on any exception; nested blocks join the outer transaction.
Unique-constraint violations surface as ``ConflictError`` so that the loser
of a race sees a normal validation failure.
"""

import logging
from contextlib import contextmanager

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError

from errors import ConflictError

logger = logging.getLogger(__name__)

db = SQLAlchemy()

_DEPTH_KEY = 'atomic_depth'


@contextmanager
def atomic(conflict_message='Conflicting update, record already exists'):
    """Run the enclosed block as one all-or-nothing transaction"""
    session = db.session
    depth = session.info.get(_DEPTH_KEY, 0)

    if depth:
        # Joined an outer block, which owns commit and rollback
        session.info[_DEPTH_KEY] = depth + 1
        try:
            yield session
        finally:
            session.info[_DEPTH_KEY] = depth
        return

    session.info[_DEPTH_KEY] = 1
    try:
        yield session
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.warning(f"Transaction rolled back on integrity error: {e.orig}")
        raise ConflictError(conflict_message) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.info[_DEPTH_KEY] = 0


def with_transaction(fn, *args, conflict_message=None, **kwargs):
    """Call ``fn`` inside ``atomic()`` and return its result"""
    if conflict_message:
        with atomic(conflict_message):
            return fn(*args, **kwargs)
    with atomic():
        return fn(*args, **kwargs)
