from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable

from licencegate.core.errors import ConcurrencyConflictError, LicenceGateError, NotFoundError
from licencegate.persistence.store import ComplianceStore, Versioned


logger = logging.getLogger(__name__)


def diff_fields(local: Any, remote: Any) -> list[str]:
    """Return the dataclass field names whose values differ between two records."""
    if local is None or remote is None or not dataclasses.is_dataclass(local):
        return []
    return [
        item.name
        for item in dataclasses.fields(local)
        if getattr(local, item.name, None) != getattr(remote, item.name, None)
    ]


class ConcurrencyGuard:
    """Optimistic write guard over versioned compliance records.

    Every update names the version it was based on. A stale version fails with
    ``ConcurrencyConflictError`` and nothing is written; the guard never
    retries or merges, the caller decides whether to reload and resubmit.
    """

    def __init__(self, store: ComplianceStore) -> None:
        self._store = store

    async def read(self, entity_type: str, entity_id: str) -> Versioned[Any]:
        current = await self._store.load(entity_type, entity_id)
        if current is None:
            raise NotFoundError(entity_type, entity_id)
        return current

    async def compare_and_swap(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: str,
        mutator: Callable[[Any], Any],
        *,
        base: Any | None = None,
    ) -> Versioned[Any]:
        current = await self.read(entity_type, entity_id)
        if current.version != str(expected_version):
            raise self._conflict(entity_type, entity_id, expected_version, current, mutator, base)

        updated = mutator(current.entity)
        try:
            new_version = await self._store.swap(entity_type, entity_id, current.version, updated)
        except ConcurrencyConflictError:
            # Another writer landed between the read and the swap; report against its state.
            latest = await self._store.load(entity_type, entity_id)
            raise self._conflict(
                entity_type, entity_id, expected_version, latest, mutator, base or current.entity
            ) from None
        logger.debug(
            "guarded_write entity_type=%s entity_id=%s version=%s->%s",
            entity_type,
            entity_id,
            current.version,
            new_version,
        )
        return Versioned(entity=updated, version=new_version)

    def _conflict(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: str,
        current: Versioned[Any] | None,
        mutator: Callable[[Any], Any],
        base: Any | None,
    ) -> ConcurrencyConflictError:
        conflicting: list[str] = []
        if current is not None:
            # Without the caller's base, apply the intended change to the stored row instead.
            try:
                intended = mutator(base if base is not None else current.entity)
            except LicenceGateError:
                intended = None
            conflicting = diff_fields(intended, current.entity)
        logger.info(
            "concurrency_conflict entity_type=%s entity_id=%s expected=%s current=%s",
            entity_type,
            entity_id,
            expected_version,
            current.version if current else None,
        )
        return ConcurrencyConflictError(
            entity_type=entity_type,
            entity_id=entity_id,
            expected_version=str(expected_version),
            current_version=current.version if current else None,
            conflicting_fields=conflicting,
        )
