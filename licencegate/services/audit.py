from __future__ import annotations

import dataclasses
from datetime import date, datetime, timezone
from decimal import Decimal
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from licencegate.core.errors import DatabaseError
from licencegate.domain.compliance import AuditRecord, TargetRef
from licencegate.persistence.store import ComplianceStore


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "signature"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def to_jsonable(value: Any) -> Any:
    """Convert domain dataclasses and scalars into JSON-safe structures."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {item.name: to_jsonable(getattr(value, item.name)) for item in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (frozenset, set)):
        return sorted(to_jsonable(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


async def record_event(
    store: ComplianceStore,
    *,
    event_type: str,
    actor_id: str | None,
    target: TargetRef,
    outcome: str,
    before: Any | None = None,
    after: Any | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
    occurred_at: datetime | None = None,
    best_effort: bool = True,
) -> None:
    # Append audit rows in a best-effort manner so the decision path never breaks on audit failures.
    sanitized_metadata = sanitize_metadata(metadata or {})
    if request_id:
        sanitized_metadata["request_id"] = request_id
    record = AuditRecord(
        event_type=event_type,
        actor_id=actor_id,
        target=target,
        outcome=outcome,
        occurred_at=occurred_at or datetime.now(timezone.utc),
        before=sanitize_metadata(to_jsonable(before)) if before is not None else None,
        after=sanitize_metadata(to_jsonable(after)) if after is not None else None,
        metadata=sanitized_metadata,
    )
    try:
        await store.append_audit(record)
    except (SQLAlchemyError, DatabaseError) as exc:
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s target=%s:%s request_id=%s",
            event_type,
            target.kind,
            target.id,
            request_id,
            exc_info=exc,
        )
