"""Pydantic schemas for control mappings and harmonization."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from harmonizer.models.control_mapping import MappingType


# ═══ Control Mapping ═══


class ControlMappingOut(BaseModel):
    id: int
    source_control_id: int
    target_control_id: int
    mapping_type: str
    confidence: str | None = None
    notes: str | None = None
    mapping_source: str
    created_by: int | None = None
    created_at: datetime
    source_control_code: str | None = None
    source_control_name: str | None = None
    source_framework: str | None = None
    target_control_code: str | None = None
    target_control_name: str | None = None
    target_framework: str | None = None
    model_config = {"from_attributes": True}


class ControlMappingCreate(BaseModel):
    source_control_id: int
    target_control_id: int
    mapping_type: MappingType = MappingType.EQUIVALENT
    confidence: str | None = Field(None, max_length=10)
    notes: str | None = None


class ControlMappingBulkCreate(BaseModel):
    items: list[ControlMappingCreate]
    # Reviewed subset to persist, by position in ``items``; None persists all
    selected_indices: set[int] | None = None


class BulkCreateOut(BaseModel):
    count: int
    created: int
    skipped: int
    errors: list[str] = []


class EquivalentControlOut(BaseModel):
    id: int
    control_id: str
    name: str
    framework: str
    mapping_id: int
    mapping_type: str
    direction: str
    depth: int = 1
    via_control_id: int | None = None
    model_config = {"from_attributes": True}


class MappingStatsOut(BaseModel):
    total_mappings: int
    by_mapping_type: dict[str, int]
    by_source: dict[str, int]
    framework_pairs: int


# ═══ Harmonized Groups ═══


class GroupControlOut(BaseModel):
    id: int
    code: str
    name: str
    framework: str
    model_config = {"from_attributes": True}


class GroupTargetOut(BaseModel):
    mapping_id: int
    control: GroupControlOut
    mapping_type: str
    confidence: str | None = None
    notes: str | None = None
    reverse: bool = False
    model_config = {"from_attributes": True}


class HarmonizedGroupOut(BaseModel):
    source: GroupControlOut
    targets: list[GroupTargetOut]
    model_config = {"from_attributes": True}


# ═══ Auto-map ═══


class AutoMapRequest(BaseModel):
    source_framework: str = Field(..., min_length=1, max_length=255)
    target_framework: str = Field(..., min_length=1, max_length=255)
    client_id: int | None = None
    save: bool = False


class MappingSuggestionOut(BaseModel):
    source_id: int
    target_id: int
    mapping_type: MappingType
    confidence: int
    source_code: str
    source_name: str
    source_framework: str
    target_code: str
    target_name: str
    target_framework: str
    model_config = {"from_attributes": True}


class AutoMapOut(BaseModel):
    source_framework: str
    target_framework: str
    count: int
    suggestions: list[MappingSuggestionOut]
    source_count: int
    target_count: int
    compared_pairs: int
    skipped_pairs: int
    timed_out_pairs: int
    warnings: list[str] = []
    saved: BulkCreateOut | None = None


class HarmonizeAllRequest(BaseModel):
    source_framework: str = Field(..., min_length=1, max_length=255)
    client_id: int | None = None


class FrameworkErrorOut(BaseModel):
    framework: str
    cause: str
    model_config = {"from_attributes": True}


class HarmonizeAllOut(BaseModel):
    source_framework: str
    status: str  # "complete" | "partial"
    count: int
    suggestions: list[MappingSuggestionOut]
    frameworks_processed: list[str]
    frameworks_failed: list[str]
    processed_count: int
    failed_count: int
    errors: list[FrameworkErrorOut]
    skipped_pairs: int
    warnings: list[str] = []
