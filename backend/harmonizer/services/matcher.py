"""
Matcher — pairwise auto-mapping of controls between two frameworks.

For a (source framework, target framework) pair every source control is scored
against every target control through the similarity scorer. Scores are turned
into integer confidences, pairs below the acceptance floor are dropped, and
the relationship type is inferred from the confidence:

    confidence >= 90        -> equivalent
    75 <= confidence < 90   -> partial
    confidence < 75         -> not suggested ("related" is manual only)

The scorer is warmed up once with every control text before any pair is
dispatched (model load, batch encoding). Scoring calls then run concurrently
behind a semaphore with a per-pair timeout. A
failing or slow pair is skipped and counted, it never aborts the batch. The
final list is sorted after all scores are in, so dispatch order does not
affect the output.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field

from harmonizer.models.control import Control
from harmonizer.models.control_mapping import MappingType
from harmonizer.services.catalog import ControlCatalog
from harmonizer.services.exceptions import ScorerFailure, ScorerTimeoutError, ValidationError
from harmonizer.services.scorers import SimilarityScorer

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 75
EQUIVALENT_CONFIDENCE = 90

# Tolerance for floating point noise around the [0, 1] bounds (e.g. cosine 1.0000001)
_SCORE_EPSILON = 1e-6


@dataclass(frozen=True)
class MappingSuggestion:
    source_id: int
    target_id: int
    mapping_type: MappingType
    confidence: int
    source_code: str = ""
    source_name: str = ""
    source_framework: str = ""
    target_code: str = ""
    target_name: str = ""
    target_framework: str = ""


@dataclass
class MatchResult:
    source_framework: str
    target_framework: str
    suggestions: list[MappingSuggestion] = field(default_factory=list)
    source_count: int = 0
    target_count: int = 0
    compared_pairs: int = 0
    skipped_pairs: int = 0
    timed_out_pairs: int = 0
    truncated: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def scorer_unavailable(self) -> bool:
        """Every compared pair failed in the scorer."""
        return self.compared_pairs > 0 and self.skipped_pairs == self.compared_pairs


def to_confidence(score) -> int:
    """Convert a raw [0, 1] score into an integer percentage, rounding half up."""
    try:
        value = float(score)
    except (TypeError, ValueError) as e:
        raise ScorerFailure(f"Scorer returned a non-numeric score: {score!r}") from e
    if not math.isfinite(value) or value < -_SCORE_EPSILON or value > 1 + _SCORE_EPSILON:
        raise ScorerFailure(f"Scorer returned an out-of-range score: {score!r}")
    value = min(max(value, 0.0), 1.0)
    return int(math.floor(value * 100 + 0.5))


def classify_confidence(
    confidence: int,
    min_confidence: int = MIN_CONFIDENCE,
    equivalent_confidence: int = EQUIVALENT_CONFIDENCE,
) -> MappingType | None:
    """Map a confidence to the relationship type, or None below the floor."""
    if confidence >= equivalent_confidence:
        return MappingType.EQUIVALENT
    if confidence >= min_confidence:
        return MappingType.PARTIAL
    return None


def _suggestion_order(s: MappingSuggestion):
    return (-s.confidence, s.source_code, s.target_code, s.source_id, s.target_id)


class Matcher:
    """Compares the controls of two frameworks and emits ranked suggestions."""

    def __init__(
        self,
        catalog: ControlCatalog,
        scorer: SimilarityScorer,
        *,
        min_confidence: int = MIN_CONFIDENCE,
        equivalent_confidence: int = EQUIVALENT_CONFIDENCE,
        max_workers: int = 8,
        timeout: float | None = 10.0,
        result_limit: int | None = None,
    ):
        if not 0 <= min_confidence <= equivalent_confidence <= 100:
            raise ValueError("Expected 0 <= min_confidence <= equivalent_confidence <= 100")
        self.catalog = catalog
        self.scorer = scorer
        self.min_confidence = min_confidence
        self.equivalent_confidence = equivalent_confidence
        self.max_workers = max(1, max_workers)
        self.timeout = timeout
        self.result_limit = result_limit

    async def _score(self, a: Control, b: Control) -> int:
        try:
            raw = await asyncio.wait_for(
                self.scorer.score(a.match_text, b.match_text), timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ScorerTimeoutError(f"Scoring {a.control_id} <-> {b.control_id} timed out") from e
        except ScorerFailure:
            raise
        except Exception as e:
            raise ScorerFailure(f"Scoring {a.control_id} <-> {b.control_id} failed: {e}") from e
        return to_confidence(raw)

    async def _score_pair(self, sem: asyncio.Semaphore, a: Control, b: Control):
        """Returns (confidence, None) or (None, failure)."""
        async with sem:
            try:
                return await self._score(a, b), None
            except ScorerFailure as e:
                logger.debug("Skipping pair: %s", e)
                return None, e

    async def _validate(self, source_framework: str, target_framework: str):
        if not source_framework or not target_framework:
            raise ValidationError("source_framework and target_framework are required")
        if source_framework == target_framework:
            raise ValidationError("Source and target framework must differ")
        for framework in (source_framework, target_framework):
            if not await self.catalog.framework_exists(framework):
                raise ValidationError(f"Unknown framework: {framework}")

    async def auto_map(
        self,
        source_framework: str,
        target_framework: str,
        client_id: int | None = None,
    ) -> MatchResult:
        """Generate mapping suggestions from ``source_framework`` to ``target_framework``."""
        source_framework = (source_framework or "").strip()
        target_framework = (target_framework or "").strip()
        await self._validate(source_framework, target_framework)

        sources = await self.catalog.list_controls_by_framework(source_framework, client_id)
        targets = await self.catalog.list_controls_by_framework(target_framework, client_id)
        result = MatchResult(
            source_framework=source_framework,
            target_framework=target_framework,
            source_count=len(sources),
            target_count=len(targets),
        )
        logger.info(
            "Auto-map %s -> %s: %d source and %d target controls",
            source_framework, target_framework, len(sources), len(targets),
        )
        if not sources or not targets:
            return result

        pairs = [(a, b) for a in sources for b in targets if a.id != b.id]
        try:
            await self.scorer.prepare([c.match_text for c in (*sources, *targets)])
        except Exception as e:
            # Pairs are still scored one by one and fail individually
            logger.warning("Scorer warm-up failed: %s", e)
            result.warnings.append(f"Scorer warm-up failed: {e}")

        sem = asyncio.Semaphore(self.max_workers)
        outcomes = await asyncio.gather(*(self._score_pair(sem, a, b) for a, b in pairs))
        result.compared_pairs = len(pairs)

        seen: set[tuple[int, int]] = set()
        suggestions: list[MappingSuggestion] = []
        for (a, b), (confidence, failure) in zip(pairs, outcomes):
            if failure is not None:
                result.skipped_pairs += 1
                if isinstance(failure, ScorerTimeoutError):
                    result.timed_out_pairs += 1
                continue
            mapping_type = classify_confidence(confidence, self.min_confidence, self.equivalent_confidence)
            if mapping_type is None or (a.id, b.id) in seen:
                continue
            seen.add((a.id, b.id))
            suggestions.append(MappingSuggestion(
                source_id=a.id,
                target_id=b.id,
                mapping_type=mapping_type,
                confidence=confidence,
                source_code=a.control_id,
                source_name=a.name,
                source_framework=a.framework,
                target_code=b.control_id,
                target_name=b.name,
                target_framework=b.framework,
            ))

        suggestions.sort(key=_suggestion_order)
        if self.result_limit is not None and len(suggestions) > self.result_limit:
            result.truncated = True
            result.warnings.append(
                f"Showing the top {self.result_limit} of {len(suggestions)} suggestions"
            )
            suggestions = suggestions[:self.result_limit]
        result.suggestions = suggestions

        if result.skipped_pairs:
            logger.warning(
                "Auto-map %s -> %s: skipped %d of %d pairs (%d timed out)",
                source_framework, target_framework,
                result.skipped_pairs, result.compared_pairs, result.timed_out_pairs,
            )
            result.warnings.append(
                f"{result.skipped_pairs} of {result.compared_pairs} control pairs could not be scored"
                f" ({result.timed_out_pairs} timed out)"
            )
        logger.info(
            "Auto-map %s -> %s: %d suggestions",
            source_framework, target_framework, len(result.suggestions),
        )
        return result
