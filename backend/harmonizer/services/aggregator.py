"""
Harmonization Aggregator — "master control" views over the flat mapping list.

group_by_source groups mappings by their source control, keeping the
first-seen order of sources and the query order of targets. With
``symmetric=True`` every equivalent/related mapping is also mirrored under its
target control, so browsing any control shows all of its counterparts
whichever side created the link.

expand_equivalents walks the bidirectional mapping graph from a set of seed
controls (breadth first) and reports every control reachable from them.
"""
from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from harmonizer.models.control_mapping import SYMMETRIC_TYPES
from harmonizer.services.mapping_store import MappingRecord


@dataclass
class GroupControl:
    id: int
    code: str
    name: str
    framework: str


@dataclass
class GroupTarget:
    mapping_id: int
    control: GroupControl
    mapping_type: str
    confidence: str | None = None
    notes: str | None = None
    reverse: bool = False


@dataclass
class HarmonizedGroup:
    source: GroupControl
    targets: list[GroupTarget] = field(default_factory=list)


@dataclass
class ReachedControl:
    control_id: int
    via_control_id: int
    via_mapping_id: int
    mapping_type: str
    depth: int


def _source_of(m: MappingRecord) -> GroupControl:
    return GroupControl(m.source_control_id, m.source_control_code, m.source_control_name, m.source_framework)


def _target_of(m: MappingRecord) -> GroupControl:
    return GroupControl(m.target_control_id, m.target_control_code, m.target_control_name, m.target_framework)


def group_by_source(mappings: Sequence[MappingRecord], symmetric: bool = False) -> list[HarmonizedGroup]:
    groups: dict[int, HarmonizedGroup] = {}

    for m in mappings:
        group = groups.get(m.source_control_id)
        if group is None:
            group = groups[m.source_control_id] = HarmonizedGroup(source=_source_of(m))
        group.targets.append(GroupTarget(
            mapping_id=m.id,
            control=_target_of(m),
            mapping_type=m.mapping_type,
            confidence=m.confidence,
            notes=m.notes,
        ))

    if symmetric:
        for m in mappings:
            if m.mapping_type not in SYMMETRIC_TYPES:
                continue
            group = groups.get(m.target_control_id)
            if group is None:
                group = groups[m.target_control_id] = HarmonizedGroup(source=_target_of(m))
            group.targets.append(GroupTarget(
                mapping_id=m.id,
                control=_source_of(m),
                mapping_type=m.mapping_type,
                confidence=m.confidence,
                notes=m.notes,
                reverse=True,
            ))

    return list(groups.values())


def expand_equivalents(mappings: Iterable[MappingRecord], seed_ids: Iterable[int]) -> list[ReachedControl]:
    """Controls reachable from ``seed_ids`` over mappings in either direction.

    Seeds themselves are not reported. Each control is reported once, through
    the first hop that reached it.
    """
    graph: dict[int, list[tuple[int, MappingRecord]]] = {}
    for m in mappings:
        graph.setdefault(m.source_control_id, []).append((m.target_control_id, m))
        graph.setdefault(m.target_control_id, []).append((m.source_control_id, m))

    seeds = list(dict.fromkeys(seed_ids))
    visited = set(seeds)
    queue = deque((seed, 0) for seed in seeds)
    reached: list[ReachedControl] = []

    while queue:
        current, depth = queue.popleft()
        for neighbor, m in graph.get(current, []):
            if neighbor in visited:
                continue
            visited.add(neighbor)
            reached.append(ReachedControl(
                control_id=neighbor,
                via_control_id=current,
                via_mapping_id=m.id,
                mapping_type=m.mapping_type,
                depth=depth + 1,
            ))
            queue.append((neighbor, depth + 1))

    return reached
