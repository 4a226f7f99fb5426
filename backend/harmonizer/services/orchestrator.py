"""
Multi-Framework Orchestrator — "harmonize against all frameworks".

Runs the matcher from one source framework against every other framework
visible to the tenant. Framework pairs run concurrently up to a fixed limit,
each with its own database session. A failing pair is recorded as a
FrameworkError and the remaining pairs continue; only when every pair failed
is PartialHarmonizationFailure raised, because then no result exists.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from harmonizer.services.catalog import ControlCatalog
from harmonizer.services.exceptions import PartialHarmonizationFailure, ValidationError
from harmonizer.services.matcher import MappingSuggestion, Matcher, MatchResult
from harmonizer.services.scorers import SimilarityScorer

logger = logging.getLogger(__name__)


@dataclass
class FrameworkError:
    framework: str
    cause: str


@dataclass
class HarmonizationResult:
    source_framework: str
    suggestions: list[MappingSuggestion] = field(default_factory=list)
    errors: list[FrameworkError] = field(default_factory=list)
    frameworks_processed: list[str] = field(default_factory=list)
    skipped_pairs: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def frameworks_failed(self) -> list[str]:
        return [e.framework for e in self.errors]

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)


class Orchestrator:
    """Drives the matcher across every other known framework."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        scorer: SimilarityScorer,
        *,
        max_concurrency: int = 3,
        matcher_options: dict | None = None,
    ):
        self.session_factory = session_factory
        self.scorer = scorer
        self.max_concurrency = max(1, max_concurrency)
        self.matcher_options = matcher_options or {}

    async def _match_one(
        self,
        sem: asyncio.Semaphore,
        source_framework: str,
        target_framework: str,
        client_id: int | None,
    ) -> MatchResult | FrameworkError:
        async with sem:
            try:
                async with self.session_factory() as session:
                    matcher = Matcher(ControlCatalog(session), self.scorer, **self.matcher_options)
                    result = await matcher.auto_map(source_framework, target_framework, client_id)
            except Exception as e:
                # Any failure of one pair is reported, the other pairs keep running
                logger.warning("Harmonize %s -> %s failed: %s", source_framework, target_framework, e)
                return FrameworkError(framework=target_framework, cause=str(e) or e.__class__.__name__)

        if result.scorer_unavailable:
            logger.warning("Harmonize %s -> %s: scorer unavailable", source_framework, target_framework)
            return FrameworkError(
                framework=target_framework,
                cause=f"Scorer unavailable: all {result.compared_pairs} control pairs failed",
            )
        return result

    async def harmonize_all(self, source_framework: str, client_id: int | None = None) -> HarmonizationResult:
        source_framework = (source_framework or "").strip()
        if not source_framework:
            raise ValidationError("source_framework is required")

        async with self.session_factory() as session:
            catalog = ControlCatalog(session)
            if not await catalog.framework_exists(source_framework):
                raise ValidationError(f"Unknown framework: {source_framework}")
            frameworks = await catalog.list_frameworks(client_id)

        targets = [fw for fw in frameworks if fw != source_framework]
        result = HarmonizationResult(source_framework=source_framework)
        if not targets:
            result.warnings.append("No other frameworks to harmonize against")
            return result

        sem = asyncio.Semaphore(self.max_concurrency)
        outcomes = await asyncio.gather(
            *(self._match_one(sem, source_framework, fw, client_id) for fw in targets)
        )

        for fw, outcome in zip(targets, outcomes):
            if isinstance(outcome, FrameworkError):
                result.errors.append(outcome)
                continue
            result.frameworks_processed.append(fw)
            result.suggestions.extend(outcome.suggestions)
            result.skipped_pairs += outcome.skipped_pairs
            result.warnings.extend(f"{fw}: {w}" for w in outcome.warnings)

        logger.info(
            "Harmonize %s: %d frameworks processed, %d failed, %d suggestions",
            source_framework, len(result.frameworks_processed), len(result.errors), len(result.suggestions),
        )
        if not result.frameworks_processed:
            raise PartialHarmonizationFailure(
                f"Harmonization of {source_framework} failed for every target framework",
                errors=result.errors,
            )
        return result
