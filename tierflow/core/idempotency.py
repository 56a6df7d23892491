"""
tierflow/core/idempotency.py
Idempotency key management for retried operations (admin overrides, checkout).

A key is claimed before the guarded operation runs and its result is stored
afterwards, so a retry with the same key replays the stored result instead of
repeating side effects.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from tierflow.core.database import get_db_session, idempotency_keys

# In-memory fallback (no DATABASE_URL configured)
_in_memory_keys: Dict[str, Optional[Dict[str, Any]]] = {}


def _use_database() -> bool:
    return bool(os.getenv('DATABASE_URL') or os.getenv('TEST_DATABASE_URL'))


def check_and_set(key: str, operation: str = "generic") -> bool:
    """
    Check if idempotency key exists, and set it if not (atomic).

    Args:
        key: Idempotency key string
        operation: Operation type (stored as scope for debugging/monitoring)

    Returns:
        True if key was already seen (duplicate request)
        False if key is new (first time seeing it)
    """
    if _use_database():
        try:
            with get_db_session() as session:
                session.execute(
                    idempotency_keys.insert().values(
                        key=key,
                        scope=operation,
                        created_at=datetime.now(timezone.utc),
                    )
                )
            return False  # First time (insert succeeded)
        except IntegrityError:
            return True  # Already seen
    else:
        if key in _in_memory_keys:
            return True
        _in_memory_keys[key] = None
        return False


def get_result(key: str) -> Optional[Dict[str, Any]]:
    """Return the stored result for a key, or None if absent or still in flight."""
    if _use_database():
        with get_db_session() as session:
            row = session.execute(
                select(idempotency_keys.c.result_json).where(
                    idempotency_keys.c.key == key
                )
            ).first()
            return row.result_json if row else None
    return _in_memory_keys.get(key)


def store_result(key: str, result: Dict[str, Any]) -> None:
    """Attach the outcome of the guarded operation to a claimed key."""
    if _use_database():
        with get_db_session() as session:
            session.execute(
                update(idempotency_keys)
                .where(idempotency_keys.c.key == key)
                .values(result_json=result)
            )
    else:
        _in_memory_keys[key] = result


def release(key: str) -> None:
    """Forget a claimed key whose operation failed, so a retry may run it again."""
    if _use_database():
        with get_db_session() as session:
            session.execute(delete(idempotency_keys).where(idempotency_keys.c.key == key))
    else:
        _in_memory_keys.pop(key, None)


def clear_all_keys() -> None:
    """Clear all idempotency keys (testing only)."""
    if _use_database():
        with get_db_session() as session:
            session.execute(idempotency_keys.delete())
    _in_memory_keys.clear()
