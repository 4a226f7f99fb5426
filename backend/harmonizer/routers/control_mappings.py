"""
Cross-Framework Control Harmonization — /api/v1/control-mappings

- Mapping CRUD: list (enriched with both controls), create, bulk create, delete
- Auto-map: similarity-scored suggestions between two frameworks, optionally saved
- Harmonize-all: auto-map one framework against every other known framework
- Views: master-control groups, equivalents of a control, statistics
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from harmonizer.config import settings
from harmonizer.database import async_session, get_session
from harmonizer.models.control_mapping import MappingType
from harmonizer.routers.errors import http_error
from harmonizer.schemas.mapping import (
    AutoMapOut,
    AutoMapRequest,
    BulkCreateOut,
    ControlMappingBulkCreate,
    ControlMappingCreate,
    ControlMappingOut,
    EquivalentControlOut,
    FrameworkErrorOut,
    HarmonizeAllOut,
    HarmonizeAllRequest,
    HarmonizedGroupOut,
    MappingStatsOut,
    MappingSuggestionOut,
)
from harmonizer.services.aggregator import expand_equivalents, group_by_source
from harmonizer.services.catalog import ControlCatalog
from harmonizer.services.exceptions import HarmonizationError
from harmonizer.services.mapping_store import (
    MappingInput,
    MappingStore,
    pick_selected,
    suggestions_to_inputs,
)
from harmonizer.services.matcher import Matcher
from harmonizer.services.orchestrator import Orchestrator
from harmonizer.services.scorers import SimilarityScorer, get_similarity_scorer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/control-mappings", tags=["Control Harmonization"])


# ─── Helpers ───────────────────────────────────────────────────


def get_session_factory():
    """Session factory for work that needs one session per concurrent task."""
    return async_session


def _matcher_options() -> dict:
    return {
        "min_confidence": settings.AUTO_MAP_MIN_CONFIDENCE,
        "equivalent_confidence": settings.AUTO_MAP_EQUIVALENT_CONFIDENCE,
        "max_workers": settings.MATCH_MAX_WORKERS,
        "timeout": settings.SCORER_TIMEOUT_SECONDS,
        "result_limit": settings.AUTO_MAP_RESULT_LIMIT,
    }


def _bulk_out(result) -> BulkCreateOut:
    return BulkCreateOut(
        count=result.created,
        created=result.created,
        skipped=result.skipped,
        errors=result.errors,
    )


# ═══ Mappings CRUD ══════════════════════════════════════════════


@router.get("/", response_model=list[ControlMappingOut])
async def list_mappings(
    client_id: int | None = None,
    control_id: int | None = Query(None, description="Mappings where this control is either side"),
    framework: str | None = None,
    mapping_type: MappingType | None = None,
    s: AsyncSession = Depends(get_session),
):
    return await MappingStore(s).list(
        client_id,
        control_id=control_id,
        framework=framework,
        mapping_type=mapping_type.value if mapping_type else None,
    )


@router.post("/", response_model=ControlMappingOut, status_code=201)
async def create_mapping(body: ControlMappingCreate, s: AsyncSession = Depends(get_session)):
    store = MappingStore(s)
    try:
        m = await store.create(
            body.source_control_id,
            body.target_control_id,
            body.mapping_type.value,
            body.confidence,
            body.notes,
        )
    except HarmonizationError as e:
        raise http_error(e)

    return await store.get_record(m.id)


@router.post("/bulk", response_model=BulkCreateOut)
async def bulk_create_mappings(body: ControlMappingBulkCreate, s: AsyncSession = Depends(get_session)):
    """Bulk save reviewed mappings. Duplicates (in the batch or already stored) are skipped."""
    try:
        inputs = [
            MappingInput(
                source_control_id=item.source_control_id,
                target_control_id=item.target_control_id,
                mapping_type=item.mapping_type.value,
                confidence=item.confidence,
                notes=item.notes,
            )
            for item in pick_selected(body.items, body.selected_indices)
        ]
        result = await MappingStore(s).bulk_create(inputs)
    except HarmonizationError as e:
        raise http_error(e)
    return _bulk_out(result)


@router.delete("/{mapping_id}", status_code=204)
async def delete_mapping(mapping_id: int, s: AsyncSession = Depends(get_session)):
    try:
        await MappingStore(s).delete(mapping_id)
    except HarmonizationError as e:
        raise http_error(e)


# ═══ Views ══════════════════════════════════════════════════════


@router.get("/grouped", response_model=list[HarmonizedGroupOut])
async def grouped_mappings(
    client_id: int | None = None,
    symmetric: bool = Query(False, description="Also list controls reachable only as targets"),
    s: AsyncSession = Depends(get_session),
):
    """Master controls with their mapped requirements in other frameworks."""
    mappings = await MappingStore(s).list(client_id)
    return group_by_source(mappings, symmetric=symmetric)


@router.get("/equivalents/{control_id}", response_model=list[EquivalentControlOut])
async def control_equivalents(
    control_id: int,
    client_id: int | None = None,
    transitive: bool = Query(False, description="Follow mappings across several hops"),
    s: AsyncSession = Depends(get_session),
):
    store = MappingStore(s)
    if not transitive:
        return await store.list_equivalents(control_id, client_id)

    mappings = await store.list(client_id)
    controls = {}
    for m in mappings:
        controls[m.source_control_id] = (m.source_control_code, m.source_control_name, m.source_framework)
        controls[m.target_control_id] = (m.target_control_code, m.target_control_name, m.target_framework)
    by_id = {m.id: m for m in mappings}

    out = []
    for reached in expand_equivalents(mappings, [control_id]):
        code, name, framework = controls[reached.control_id]
        via = by_id[reached.via_mapping_id]
        out.append(EquivalentControlOut(
            id=reached.control_id,
            control_id=code,
            name=name,
            framework=framework,
            mapping_id=reached.via_mapping_id,
            mapping_type=reached.mapping_type,
            direction="outgoing" if via.source_control_id == reached.via_control_id else "incoming",
            depth=reached.depth,
            via_control_id=reached.via_control_id,
        ))
    return out


@router.get("/stats", response_model=MappingStatsOut)
async def mapping_statistics(client_id: int | None = None, s: AsyncSession = Depends(get_session)):
    return await MappingStore(s).stats(client_id)


# ═══ Auto-map & Harmonize ═══════════════════════════════════════


@router.post("/auto-map", response_model=AutoMapOut)
async def auto_map(
    body: AutoMapRequest,
    s: AsyncSession = Depends(get_session),
    scorer: SimilarityScorer = Depends(get_similarity_scorer),
):
    """Suggest mappings between two frameworks.

    With ``save=false`` (the common case) nothing is persisted; the caller
    reviews the suggestions and bulk-saves the accepted ones.
    """
    matcher = Matcher(ControlCatalog(s), scorer, **_matcher_options())
    try:
        result = await matcher.auto_map(body.source_framework, body.target_framework, body.client_id)
        saved = None
        if body.save and result.suggestions:
            saved = _bulk_out(await MappingStore(s).bulk_create(suggestions_to_inputs(result.suggestions)))
    except HarmonizationError as e:
        raise http_error(e)

    return AutoMapOut(
        source_framework=result.source_framework,
        target_framework=result.target_framework,
        count=len(result.suggestions),
        suggestions=[MappingSuggestionOut.model_validate(sug) for sug in result.suggestions],
        source_count=result.source_count,
        target_count=result.target_count,
        compared_pairs=result.compared_pairs,
        skipped_pairs=result.skipped_pairs,
        timed_out_pairs=result.timed_out_pairs,
        warnings=result.warnings,
        saved=saved,
    )


@router.post("/harmonize-all", response_model=HarmonizeAllOut)
async def harmonize_all(
    body: HarmonizeAllRequest,
    scorer: SimilarityScorer = Depends(get_similarity_scorer),
    session_factory=Depends(get_session_factory),
):
    """Auto-map one framework against every other framework.

    Frameworks that fail are listed in ``errors``; suggestions from the rest
    are still returned.
    """
    orchestrator = Orchestrator(
        session_factory,
        scorer,
        max_concurrency=settings.HARMONIZE_MAX_CONCURRENCY,
        matcher_options=_matcher_options(),
    )
    try:
        result = await orchestrator.harmonize_all(body.source_framework, body.client_id)
    except HarmonizationError as e:
        raise http_error(e)

    if result.is_partial:
        logger.warning(
            "Harmonize-all %s returned partial results, failed: %s",
            result.source_framework, ", ".join(result.frameworks_failed),
        )
    return HarmonizeAllOut(
        source_framework=result.source_framework,
        status="partial" if result.is_partial else "complete",
        count=len(result.suggestions),
        suggestions=[MappingSuggestionOut.model_validate(sug) for sug in result.suggestions],
        frameworks_processed=result.frameworks_processed,
        frameworks_failed=result.frameworks_failed,
        processed_count=len(result.frameworks_processed),
        failed_count=len(result.errors),
        errors=[FrameworkErrorOut.model_validate(e) for e in result.errors],
        skipped_pairs=result.skipped_pairs,
        warnings=result.warnings,
    )
