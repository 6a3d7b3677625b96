from __future__ import annotations


class LicenceGateError(Exception):
    """Base error for LicenceGate."""


class DatabaseError(LicenceGateError):
    """Database layer failure."""


class NotFoundError(LicenceGateError):
    """Referenced entity does not exist in the backing store."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type} '{entity_id}' not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class StructuralValidationError(LicenceGateError):
    """Malformed request or record; never retried automatically."""


class EvaluationTimeoutError(LicenceGateError):
    """Reference data lookups did not complete before the caller deadline."""


class ConcurrencyConflictError(LicenceGateError):
    """Optimistic version check failed; no write was applied."""

    def __init__(
        self,
        *,
        entity_type: str,
        entity_id: str,
        expected_version: str | None,
        current_version: str | None,
        conflicting_fields: list[str] | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.current_version = current_version
        self.conflicting_fields = list(conflicting_fields or [])
        field_info = f" Conflicting fields: {', '.join(self.conflicting_fields)}." if self.conflicting_fields else ""
        super().__init__(
            f"Concurrency conflict for {entity_type} '{entity_id}'. "
            f"Expected version: {expected_version or 'unknown'}, "
            f"current version: {current_version or 'unknown'}.{field_info}"
        )

    def to_details(self) -> dict[str, object]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "expected_version": self.expected_version,
            "current_version": self.current_version,
            "conflicting_fields": self.conflicting_fields,
        }
