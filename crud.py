import json
from typing import Any, Optional, TypeVar

import structlog
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session

import models

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# --- Key/value store ---
def get_value(
    db: Session, key: str, default: T, adapter: Optional[TypeAdapter] = None
) -> T:
    """Read the JSON document stored under `key`.

    Missing keys, corrupt JSON and documents the adapter rejects all yield
    `default`; callers never see a deserialization error.
    """
    entry = db.query(models.KeyValueEntry).filter(models.KeyValueEntry.key == key).first()
    if entry is None:
        return default

    try:
        raw = json.loads(entry.value)
        if adapter is not None:
            return adapter.validate_python(raw)
        return raw
    except (json.JSONDecodeError, ValidationError, TypeError) as exc:
        logger.warning("Discarding unreadable store entry", key=key, error=str(exc))
        return default


def set_value(
    db: Session, key: str, value: Any, adapter: Optional[TypeAdapter] = None
) -> None:
    """Serialize `value` to JSON and upsert it under `key`."""
    if adapter is not None:
        payload = adapter.dump_json(value, by_alias=True).decode("utf-8")
    else:
        payload = json.dumps(value)

    entry = db.query(models.KeyValueEntry).filter(models.KeyValueEntry.key == key).first()
    if entry is None:
        entry = models.KeyValueEntry(key=key, value=payload)
    else:
        entry.value = payload
    db.add(entry)  # add works for updates too
    db.commit()
