"""Pydantic schemas for the Control Catalog."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ControlOut(BaseModel):
    id: int
    control_id: str
    name: str
    description: str | None = None
    framework: str
    category: str | None = None
    client_id: int | None = None
    created_at: datetime
    model_config = {"from_attributes": True}


class ControlCreate(BaseModel):
    control_id: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    framework: str = Field(..., min_length=1, max_length=255)
    category: str | None = Field(None, max_length=255)
    client_id: int | None = None


class ControlDeleteOut(BaseModel):
    id: int
    mappings_deleted: int
