"""Idempotency keys for booking creation."""

import hashlib
import json
from datetime import datetime
from typing import Any
from uuid import UUID


def generate_idempotency_key(
    operation: str,
    requester_id: UUID | str,
    params: dict[str, Any] | None = None,
) -> str:
    """Generate a deterministic idempotency key.

    Args:
        operation: Operation name (e.g., "create_booking")
        requester_id: User issuing the request
        params: Request parameters that identify a duplicate

    Returns:
        SHA256 hash of operation + requester + params
    """
    key_data = {
        "operation": operation,
        "requester_id": str(requester_id),
        "params": params or {},
    }
    key_str = json.dumps(key_data, sort_keys=True, default=_json_default)
    return hashlib.sha256(key_str.encode()).hexdigest()


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Cannot serialize {type(value).__name__} into an idempotency key")
