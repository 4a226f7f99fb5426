"""
Cross-framework control mapping model.

A mapping links two controls (usually from different frameworks). Uniqueness is
enforced on the *unordered* pair: ``pair_low``/``pair_high`` hold
min/max of the two control ids and carry the unique constraint, so A->B and
B->A collide. Rows are never updated in place; an edit is delete + recreate.
"""
import enum
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class MappingType(str, enum.Enum):
    EQUIVALENT = "equivalent"
    PARTIAL = "partial"
    RELATED = "related"


MAPPING_TYPES = tuple(t.value for t in MappingType)

# Types treated as bidirectional when browsing from the target side
SYMMETRIC_TYPES = (MappingType.EQUIVALENT.value, MappingType.RELATED.value)

MAPPING_SOURCES = ("manual", "auto")


def unordered_pair(a: int, b: int) -> tuple[int, int]:
    return (a, b) if a <= b else (b, a)


class ControlMapping(Base):
    """Directed equivalence link between two controls."""

    __tablename__ = "control_mappings"
    __table_args__ = (
        UniqueConstraint("pair_low", "pair_high", name="uq_cm_pair"),
        CheckConstraint("source_control_id <> target_control_id", name="ck_cm_no_self"),
        Index("ix_cm_source", "source_control_id"),
        Index("ix_cm_target", "target_control_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_control_id: Mapped[int] = mapped_column(
        ForeignKey("controls.id", ondelete="CASCADE"), nullable=False,
    )
    target_control_id: Mapped[int] = mapped_column(
        ForeignKey("controls.id", ondelete="CASCADE"), nullable=False,
    )
    pair_low: Mapped[int] = mapped_column(Integer, nullable=False)
    pair_high: Mapped[int] = mapped_column(Integer, nullable=False)

    mapping_type: Mapped[str] = mapped_column(String(20), default=MappingType.EQUIVALENT.value, nullable=False)
    # String-encoded integer percentage 0-100, NULL for manual mappings
    confidence: Mapped[str | None] = mapped_column(String(10))
    notes: Mapped[str | None] = mapped_column(Text)

    mapping_source: Mapped[str] = mapped_column(String(20), default="manual", nullable=False)
    created_by: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    # relationships
    source_control: Mapped["Control"] = relationship(foreign_keys=[source_control_id])
    target_control: Mapped["Control"] = relationship(foreign_keys=[target_control_id])

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.source_control_id is not None and self.target_control_id is not None:
            self.pair_low, self.pair_high = unordered_pair(self.source_control_id, self.target_control_id)


# Resolve forward references
from .control import Control  # noqa: F401, E402
