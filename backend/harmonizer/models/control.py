"""
Control Catalog model — compliance requirements grouped by framework.

A control belongs to exactly one framework. ``client_id`` NULL marks a
system (global) catalog entry, a non-NULL value scopes it to one tenant.
"""
from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, validates

from .base import Base


class Control(Base):
    """A single requirement of a compliance framework (e.g. ISO 27001 A.5.1)."""

    __tablename__ = "controls"
    __table_args__ = (
        UniqueConstraint("framework", "control_id", "client_id", name="uq_controls_fw_code_client"),
        Index("ix_controls_framework", "framework"),
        Index("ix_controls_client", "client_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    control_id: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    framework: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str | None] = mapped_column(String(255))
    client_id: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    @validates("framework", "client_id")
    def _freeze_scope(self, key, value):
        # Re-scoping a persisted control requires delete + recreate
        if self.id is not None and getattr(self, key) != value:
            raise ValueError(f"Control.{key} cannot be changed after creation")
        return value

    @property
    def match_text(self) -> str:
        """Text handed to the similarity scorer."""
        return f"{self.name} {self.description or ''}".strip()
