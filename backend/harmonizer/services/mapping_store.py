"""
Mapping Store — persistence of confirmed control mappings.

- Single create rejects self-mapping and any existing mapping on the
  unordered pair (A->B blocks B->A) with ConflictError.
- Bulk create is per-row tolerant: every row is inserted inside its own
  savepoint and a unique-constraint violation counts as "skipped". The
  database constraint is the arbiter, so two callers racing on the same pair
  cannot both insert it, and re-running a bulk save is idempotent.
- A lock conflict with a concurrent writer (SQLite "database is locked", a
  MySQL deadlock) rolls back and retries the whole batch, so the later caller
  sees the earlier caller's rows as duplicates.
- A connectivity failure aborts the whole batch (rollback + PersistenceError).
- Listing joins both controls and honours tenant scope: a mapping is visible
  only when both of its controls are global or belong to the caller's tenant.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from harmonizer.middleware.request_context import get_request_user
from harmonizer.models.control import Control
from harmonizer.models.control_mapping import (
    MAPPING_SOURCES,
    MAPPING_TYPES,
    ControlMapping,
    unordered_pair,
)
from harmonizer.services.catalog import ControlCatalog
from harmonizer.services.exceptions import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from harmonizer.services.matcher import MappingSuggestion

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20

# Whole-batch attempts when another writer holds the database lock
LOCK_RETRIES = 3

_LOCK_MARKERS = ("database is locked", "database table is locked", "deadlock", "lock wait timeout")


@dataclass
class MappingInput:
    source_control_id: int
    target_control_id: int
    mapping_type: str = "equivalent"
    confidence: str | None = None
    notes: str | None = None
    mapping_source: str = "manual"


@dataclass
class BulkCreateResult:
    created: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def add_error(self, message: str):
        self.skipped += 1
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(message)


@dataclass
class MappingRecord:
    """A mapping joined with the identity of both controls."""
    id: int
    source_control_id: int
    target_control_id: int
    mapping_type: str
    confidence: str | None
    notes: str | None
    mapping_source: str
    created_by: int | None
    created_at: datetime
    source_control_code: str
    source_control_name: str
    source_framework: str
    target_control_code: str
    target_control_name: str
    target_framework: str


@dataclass
class EquivalentControl:
    """A counterpart of a control across one mapping, in either direction."""
    id: int
    control_id: str
    name: str
    framework: str
    mapping_id: int
    mapping_type: str
    direction: str  # "outgoing": queried control is the source


def normalize_confidence(value) -> str | None:
    """Validate a 0-100 confidence and return its canonical string form."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValidationError(f"Confidence must be a number between 0 and 100, got {value!r}") from e
    if not number.is_finite() or number < 0 or number > 100:
        raise ValidationError(f"Confidence must be between 0 and 100, got {value!r}")
    if number == number.to_integral_value():
        return str(int(number))
    return format(number.normalize(), "f")


def validate_input(item: MappingInput) -> MappingInput:
    """Check one mapping input; raises ValidationError."""
    if item.source_control_id is None or item.target_control_id is None:
        raise ValidationError("source_control_id and target_control_id are required")
    if item.source_control_id == item.target_control_id:
        raise ValidationError(f"Control {item.source_control_id} cannot be mapped to itself")
    if item.mapping_type not in MAPPING_TYPES:
        raise ValidationError(
            f"Invalid mapping_type '{item.mapping_type}'. Must be one of: {', '.join(MAPPING_TYPES)}"
        )
    if item.mapping_source not in MAPPING_SOURCES:
        raise ValidationError(
            f"Invalid mapping_source '{item.mapping_source}'. Must be one of: {', '.join(MAPPING_SOURCES)}"
        )
    item.confidence = normalize_confidence(item.confidence)
    return item


def pick_selected(items: Sequence, selected_indices: Iterable[int] | None) -> list:
    """The reviewed subset of ``items`` by position; None selects everything."""
    if selected_indices is None:
        return list(items)
    indices = sorted(set(selected_indices))
    bad = [i for i in indices if i < 0 or i >= len(items)]
    if bad:
        raise ValidationError(f"Selected index out of range: {bad}")
    return [items[i] for i in indices]


def suggestions_to_inputs(
    suggestions: Sequence[MappingSuggestion],
    selected_indices: Iterable[int] | None = None,
) -> list[MappingInput]:
    """Turn reviewed suggestions into auto-sourced mapping inputs."""
    chosen = pick_selected(suggestions, selected_indices)
    return [
        MappingInput(
            source_control_id=s.source_id,
            target_control_id=s.target_id,
            mapping_type=s.mapping_type.value,
            confidence=str(s.confidence),
            notes=f"Auto-mapped (similarity: {s.confidence}%)",
            mapping_source="auto",
        )
        for s in chosen
    ]


def _is_lock_conflict(error: OperationalError) -> bool:
    message = str(error.orig if error.orig is not None else error).lower()
    return any(marker in message for marker in _LOCK_MARKERS)


def _visible(alias, client_id: int | None):
    if client_id is None:
        return alias.client_id.is_(None)
    return or_(alias.client_id.is_(None), alias.client_id == client_id)


class MappingStore:
    """CRUD and listing for control mappings."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.catalog = ControlCatalog(session)

    async def _existing_pair_id(self, a: int, b: int) -> int | None:
        low, high = unordered_pair(a, b)
        q = select(ControlMapping.id).where(
            ControlMapping.pair_low == low,
            ControlMapping.pair_high == high,
        )
        return (await self.session.execute(q)).scalar_one_or_none()

    def _build(self, item: MappingInput, created_by: int | None) -> ControlMapping:
        return ControlMapping(
            source_control_id=item.source_control_id,
            target_control_id=item.target_control_id,
            mapping_type=item.mapping_type,
            confidence=item.confidence,
            notes=item.notes,
            mapping_source=item.mapping_source,
            created_by=created_by,
        )

    async def create(
        self,
        source_control_id: int,
        target_control_id: int,
        mapping_type: str = "equivalent",
        confidence: str | None = None,
        notes: str | None = None,
        *,
        mapping_source: str = "manual",
        created_by: int | None = None,
    ) -> ControlMapping:
        item = validate_input(MappingInput(
            source_control_id=source_control_id,
            target_control_id=target_control_id,
            mapping_type=mapping_type,
            confidence=confidence,
            notes=notes,
            mapping_source=mapping_source,
        ))
        controls = await self.catalog.get_controls_by_ids([source_control_id, target_control_id])
        missing = [cid for cid in (source_control_id, target_control_id) if cid not in controls]
        if missing:
            raise ValidationError(f"Unknown control id(s): {missing}")

        existing_id = await self._existing_pair_id(source_control_id, target_control_id)
        if existing_id is not None:
            raise ConflictError(
                f"Controls {source_control_id} and {target_control_id} are already mapped",
                existing_id=existing_id,
            )

        mapping = self._build(item, created_by if created_by is not None else get_request_user())
        self.session.add(mapping)
        try:
            await self.session.commit()
        except IntegrityError as e:
            # Lost a race with a concurrent writer on the same pair
            await self.session.rollback()
            existing_id = await self._existing_pair_id(source_control_id, target_control_id)
            if existing_id is None:
                raise
            raise ConflictError(
                f"Controls {source_control_id} and {target_control_id} are already mapped",
                existing_id=existing_id,
            ) from e
        await self.session.refresh(mapping)
        return mapping

    async def bulk_create(
        self,
        items: Sequence[MappingInput],
        *,
        created_by: int | None = None,
    ) -> BulkCreateResult:
        """Insert every valid, non-duplicate item; count the rest as skipped."""
        if not items:
            return BulkCreateResult()
        if created_by is None:
            created_by = get_request_user()

        for attempt in range(1, LOCK_RETRIES + 1):
            try:
                result = await self._bulk_attempt(items, created_by)
                break
            except OperationalError as e:
                await self.session.rollback()
                if not _is_lock_conflict(e) or attempt == LOCK_RETRIES:
                    logger.exception("Bulk create aborted")
                    raise PersistenceError(f"Bulk create failed, no mappings were saved: {e}") from e
                logger.warning("Bulk create hit a lock conflict, retrying (attempt %d): %s", attempt, e)
                await asyncio.sleep(0.05 * attempt)
            except DBAPIError as e:
                await self.session.rollback()
                logger.exception("Bulk create aborted")
                raise PersistenceError(f"Bulk create failed, no mappings were saved: {e}") from e

        logger.info("Bulk create: %d created, %d skipped", result.created, result.skipped)
        return result

    async def _bulk_attempt(self, items: Sequence[MappingInput], created_by: int | None) -> BulkCreateResult:
        """One transaction over the whole batch; DB errors propagate to the caller."""
        result = BulkCreateResult()
        controls = await self.catalog.get_controls_by_ids(
            cid for item in items for cid in (item.source_control_id, item.target_control_id)
            if cid is not None
        )
        for index, item in enumerate(items):
            try:
                validate_input(item)
            except ValidationError as e:
                result.add_error(f"Item {index}: {e}")
                continue
            missing = [
                cid for cid in (item.source_control_id, item.target_control_id) if cid not in controls
            ]
            if missing:
                result.add_error(f"Item {index}: unknown control id(s) {missing}")
                continue

            try:
                async with self.session.begin_nested():
                    self.session.add(self._build(item, created_by))
                    await self.session.flush()
            except IntegrityError:
                if await self._existing_pair_id(item.source_control_id, item.target_control_id):
                    result.skipped += 1
                else:
                    result.add_error(f"Item {index}: rejected by database constraints")
                continue
            result.created += 1

        await self.session.commit()
        return result

    async def delete(self, mapping_id: int) -> None:
        mapping = await self.session.get(ControlMapping, mapping_id)
        if not mapping:
            raise NotFoundError(f"Mapping {mapping_id} not found")
        await self.session.delete(mapping)
        await self.session.commit()

    async def _records(self, q) -> list[MappingRecord]:
        records = []
        for m, s_code, s_name, s_fw, t_code, t_name, t_fw in (await self.session.execute(q)).all():
            records.append(MappingRecord(
                id=m.id,
                source_control_id=m.source_control_id,
                target_control_id=m.target_control_id,
                mapping_type=m.mapping_type,
                confidence=m.confidence,
                notes=m.notes,
                mapping_source=m.mapping_source,
                created_by=m.created_by,
                created_at=m.created_at,
                source_control_code=s_code,
                source_control_name=s_name,
                source_framework=s_fw,
                target_control_code=t_code,
                target_control_name=t_name,
                target_framework=t_fw,
            ))
        return records

    def _joined(self):
        src = aliased(Control)
        tgt = aliased(Control)
        q = (
            select(
                ControlMapping,
                src.control_id, src.name, src.framework,
                tgt.control_id, tgt.name, tgt.framework,
            )
            .join(src, ControlMapping.source_control_id == src.id)
            .join(tgt, ControlMapping.target_control_id == tgt.id)
        )
        return q, src, tgt

    async def get_record(self, mapping_id: int) -> MappingRecord | None:
        q, _, _ = self._joined()
        records = await self._records(q.where(ControlMapping.id == mapping_id))
        return records[0] if records else None

    async def list(
        self,
        client_id: int | None = None,
        *,
        control_id: int | None = None,
        framework: str | None = None,
        mapping_type: str | None = None,
    ) -> list[MappingRecord]:
        """Mappings enriched with both controls, in creation order.

        ``control_id`` matches either side of a mapping; ``framework`` matches
        either control's framework.
        """
        q, src, tgt = self._joined()
        q = q.where(_visible(src, client_id), _visible(tgt, client_id))
        if control_id is not None:
            q = q.where(or_(
                ControlMapping.source_control_id == control_id,
                ControlMapping.target_control_id == control_id,
            ))
        if framework:
            q = q.where(or_(src.framework == framework, tgt.framework == framework))
        if mapping_type:
            q = q.where(ControlMapping.mapping_type == mapping_type)
        return await self._records(q.order_by(ControlMapping.id))

    async def list_equivalents(self, control_id: int, client_id: int | None = None) -> list[EquivalentControl]:
        """Direct counterparts of a control, whichever side originated the mapping."""
        result = []
        for r in await self.list(client_id, control_id=control_id):
            if r.source_control_id == control_id:
                result.append(EquivalentControl(
                    id=r.target_control_id,
                    control_id=r.target_control_code,
                    name=r.target_control_name,
                    framework=r.target_framework,
                    mapping_id=r.id,
                    mapping_type=r.mapping_type,
                    direction="outgoing",
                ))
            else:
                result.append(EquivalentControl(
                    id=r.source_control_id,
                    control_id=r.source_control_code,
                    name=r.source_control_name,
                    framework=r.source_framework,
                    mapping_id=r.id,
                    mapping_type=r.mapping_type,
                    direction="incoming",
                ))
        return result

    async def stats(self, client_id: int | None = None) -> dict:
        records = await self.list(client_id)
        return {
            "total_mappings": len(records),
            "by_mapping_type": dict(Counter(r.mapping_type for r in records)),
            "by_source": dict(Counter(r.mapping_source for r in records)),
            "framework_pairs": len({frozenset((r.source_framework, r.target_framework)) for r in records}),
        }
