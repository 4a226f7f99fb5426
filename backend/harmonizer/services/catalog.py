"""
Control Catalog — read access to framework controls for the matcher, plus the
manual create/delete lifecycle used by the catalog endpoints.

Every listing is ordered by ``control_id`` (then ``id``) so that matching and
scoring are reproducible across runs.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from harmonizer.models.control import Control
from harmonizer.models.control_mapping import ControlMapping
from harmonizer.services.exceptions import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def visible_to(client_id: int | None):
    """WHERE clause: global controls plus the tenant's own controls."""
    if client_id is None:
        return Control.client_id.is_(None)
    return or_(Control.client_id.is_(None), Control.client_id == client_id)


class ControlCatalog:
    """Catalog of controls, scoped per tenant."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_controls_by_framework(self, framework: str, client_id: int | None = None) -> list[Control]:
        q = (
            select(Control)
            .where(Control.framework == framework, visible_to(client_id))
            .order_by(Control.control_id, Control.id)
        )
        return list((await self.session.execute(q)).scalars().all())

    async def list_frameworks(self, client_id: int | None = None) -> list[str]:
        """Distinct framework names visible to the tenant, sorted by name."""
        q = (
            select(Control.framework)
            .where(visible_to(client_id))
            .distinct()
            .order_by(Control.framework)
        )
        return list((await self.session.execute(q)).scalars().all())

    async def framework_exists(self, framework: str) -> bool:
        """True if any control in any scope belongs to ``framework``."""
        q = select(func.count()).select_from(Control).where(Control.framework == framework)
        return ((await self.session.execute(q)).scalar() or 0) > 0

    async def get_controls_by_ids(self, ids: Iterable[int]) -> dict[int, Control]:
        ids = set(ids)
        if not ids:
            return {}
        q = select(Control).where(Control.id.in_(ids))
        return {c.id: c for c in (await self.session.execute(q)).scalars().all()}

    async def create_control(
        self,
        *,
        control_id: str,
        name: str,
        framework: str,
        description: str | None = None,
        category: str | None = None,
        client_id: int | None = None,
    ) -> Control:
        if not control_id.strip() or not name.strip() or not framework.strip():
            raise ValidationError("control_id, name and framework are required")

        # The unique constraint does not cover NULL client_id on most engines
        dup_q = select(Control.id).where(
            Control.framework == framework,
            Control.control_id == control_id,
            Control.client_id.is_(None) if client_id is None else Control.client_id == client_id,
        )
        existing_id = (await self.session.execute(dup_q)).scalar_one_or_none()
        if existing_id is not None:
            raise ConflictError(
                f"Control {control_id} already exists in {framework}", existing_id=existing_id,
            )

        control = Control(
            control_id=control_id,
            name=name,
            description=description,
            framework=framework,
            category=category,
            client_id=client_id,
        )
        self.session.add(control)
        await self.session.commit()
        await self.session.refresh(control)
        return control

    async def delete_control(self, control_pk: int, cascade: bool = False) -> int:
        """Delete a control. Returns the number of mappings removed with it.

        Without ``cascade`` a control that is referenced by any mapping is
        rejected with ConflictError.
        """
        control = await self.session.get(Control, control_pk)
        if not control:
            raise NotFoundError(f"Control {control_pk} not found")

        refs = or_(
            ControlMapping.source_control_id == control_pk,
            ControlMapping.target_control_id == control_pk,
        )
        count_q = select(func.count()).select_from(ControlMapping).where(refs)
        referenced = (await self.session.execute(count_q)).scalar() or 0
        if referenced and not cascade:
            raise ConflictError(f"Control {control_pk} is referenced by {referenced} mapping(s)")

        if referenced:
            await self.session.execute(delete(ControlMapping).where(refs))
        await self.session.delete(control)
        await self.session.commit()
        logger.info("Deleted control %s (%s mappings removed)", control_pk, referenced)
        return referenced
