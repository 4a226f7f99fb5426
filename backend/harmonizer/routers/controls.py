"""
Control Catalog — /api/v1/controls

Listing by framework and tenant, framework enumeration, manual entry and
deletion. Deleting a control that mappings still reference is rejected unless
``cascade=true``.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from harmonizer.database import get_session
from harmonizer.routers.errors import http_error
from harmonizer.schemas.control import ControlCreate, ControlDeleteOut, ControlOut
from harmonizer.services.catalog import ControlCatalog
from harmonizer.services.exceptions import HarmonizationError

router = APIRouter(prefix="/api/v1/controls", tags=["Control Catalog"])


@router.get("/", response_model=list[ControlOut])
async def list_controls(
    framework: str = Query(..., min_length=1),
    client_id: int | None = None,
    s: AsyncSession = Depends(get_session),
):
    return await ControlCatalog(s).list_controls_by_framework(framework, client_id)


@router.get("/frameworks", response_model=list[str])
async def list_frameworks(client_id: int | None = None, s: AsyncSession = Depends(get_session)):
    return await ControlCatalog(s).list_frameworks(client_id)


@router.post("/", response_model=ControlOut, status_code=201)
async def create_control(body: ControlCreate, s: AsyncSession = Depends(get_session)):
    try:
        return await ControlCatalog(s).create_control(**body.model_dump())
    except HarmonizationError as e:
        raise http_error(e)


@router.delete("/{control_pk}", response_model=ControlDeleteOut)
async def delete_control(
    control_pk: int,
    cascade: bool = Query(False, description="Also delete mappings referencing the control"),
    s: AsyncSession = Depends(get_session),
):
    try:
        removed = await ControlCatalog(s).delete_control(control_pk, cascade=cascade)
    except HarmonizationError as e:
        raise http_error(e)
    return ControlDeleteOut(id=control_pk, mappings_deleted=removed)
