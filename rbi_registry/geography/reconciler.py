"""
Hierarchy Consistency Maintainer — reconcile the live tree with a reference set.

A run has two phases:

1. RELINK  — nodes present in the reference set whose live parent differs
             from the reference parent are re-pointed (non-destructive).
2. PRUNE   — bottom-up: barangays, then cities, then provinces, then
             regions. Before each level the set of surviving parents is
             recomputed from the live tables, because earlier steps in the
             same run change what is valid downstream.

Deletes run in bounded batches, one transaction per batch. A batch that
was already applied is a no-op when repeated, so an interrupted or
cancelled run converges when re-run with the same reference set. Running
twice in a row with the same set changes nothing the second time.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterator

from rbi_registry.core.errors import (
    HierarchyReconciliationPartial,
    ReconciliationCancelled,
)
from rbi_registry.core.schema import GeoLevel, ReferenceSet, parent_level
from rbi_registry.geography.hierarchy import HierarchyStore

logger = logging.getLogger(__name__)

RELINK_ORDER = (GeoLevel.PROVINCE, GeoLevel.CITY, GeoLevel.BARANGAY)
PRUNE_ORDER = (GeoLevel.BARANGAY, GeoLevel.CITY, GeoLevel.PROVINCE)

Links = dict[GeoLevel, dict[str, "str | None"]]


@dataclass
class ReconciliationPlan:
    """What a run would change, computed without touching the database."""

    reference_version: str
    relinks: dict[str, dict[str, str]] = field(default_factory=dict)
    unresolved_relinks: list[str] = field(default_factory=list)
    deletions: dict[str, list[str]] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not any(self.relinks.values()) and not any(self.deletions.values())


@dataclass
class ReconciliationReport:
    """Outcome of a reconciliation run."""

    reference_version: str
    relinked: dict[str, int] = field(
        default_factory=lambda: {level.value: 0 for level in RELINK_ORDER}
    )
    deleted: dict[str, int] = field(
        default_factory=lambda: {level.value: 0 for level in GeoLevel}
    )
    unresolved_relinks: list[str] = field(default_factory=list)
    orphaned_reference_nodes: list[str] = field(default_factory=list)
    batches_committed: int = 0

    @property
    def changed(self) -> bool:
        return any(self.relinked.values()) or any(self.deleted.values())


# ════════════════════════════════════════════════════════════════
# Pure planning helpers
# ════════════════════════════════════════════════════════════════


def plan_relinks(
    links: Links, reference_set: ReferenceSet
) -> tuple[dict[GeoLevel, dict[str, str]], list[str]]:
    """
    Nodes in the reference set whose live parent pointer is wrong.

    A relink is only possible when the reference parent exists live;
    otherwise the node is reported as unresolved.
    """
    relinks: dict[GeoLevel, dict[str, str]] = {}
    unresolved: list[str] = []
    for level in RELINK_ORDER:
        wanted = reference_set.parent_map(level)
        parents_live = set(links.get(parent_level(level), {}))
        level_relinks: dict[str, str] = {}
        for code, live_parent in sorted(links.get(level, {}).items()):
            target = wanted.get(code)
            if target is None or live_parent == target:
                continue
            if target in parents_live:
                level_relinks[code] = target
            else:
                unresolved.append(code)
        relinks[level] = level_relinks
    return relinks, unresolved


def surviving_codes(links: Links, reference_set: ReferenceSet) -> dict[GeoLevel, set[str]]:
    """
    Live codes that remain after a prune, per level.

    A node survives when it is in the reference set and its parent survives.
    """
    survivors: dict[GeoLevel, set[str]] = {
        GeoLevel.REGION: set(links.get(GeoLevel.REGION, {})) & reference_set.codes(GeoLevel.REGION)
    }
    for level in (GeoLevel.PROVINCE, GeoLevel.CITY, GeoLevel.BARANGAY):
        valid = reference_set.codes(level)
        parents = survivors[parent_level(level)]
        survivors[level] = {
            code
            for code, parent in links.get(level, {}).items()
            if code in valid and parent in parents
        }
    return survivors


def regions_to_delete(
    links: Links,
    reference_set: ReferenceSet,
    prune_empty_regions: bool,
) -> list[str]:
    """
    Regions absent from the reference set, plus (when pruning) regions with
    no live provinces and no provinces listed under them in the reference set.

    Depends only on the reference set and the live tree, so a resumed run
    reaches the same result as an uninterrupted one.
    """
    live_regions = set(links.get(GeoLevel.REGION, {}))
    still_parent = {p for p in links.get(GeoLevel.PROVINCE, {}).values() if p is not None}
    doomed = live_regions - reference_set.codes(GeoLevel.REGION)
    if prune_empty_regions:
        expected_parent = set(reference_set.parent_map(GeoLevel.PROVINCE).values())
        doomed |= live_regions - expected_parent
    return sorted(doomed - still_parent)


def _batches(codes: list[str], size: int) -> Iterator[list[str]]:
    for i in range(0, len(codes), size):
        yield codes[i:i + size]


# ════════════════════════════════════════════════════════════════
# Maintainer
# ════════════════════════════════════════════════════════════════


class HierarchyMaintainer:
    """
    Repairs the hierarchy against an authoritative reference set.

    Usage:
        maintainer = HierarchyMaintainer(store, batch_size=500)
        report = maintainer.reconcile(reference_set)
    """

    def __init__(
        self,
        store: HierarchyStore,
        batch_size: int = 500,
        prune_empty_regions: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.batch_size = batch_size
        self.prune_empty_regions = prune_empty_regions
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        """
        Request reconciliation to stop before its next batch.

        Applies to the run in progress, or to the next run if none is.
        """
        self.cancel_event.set()

    def _live_links(self, levels: tuple[GeoLevel, ...] = tuple(GeoLevel)) -> Links:
        return {level: self.store.parent_links(level) for level in levels}

    # ── Dry run ────────────────────────────────────────────────

    def plan(self, reference_set: ReferenceSet) -> ReconciliationPlan:
        """
        Compute the relinks and deletions a run would perform.

        Raises:
            ReferenceSetError: if the reference set is malformed.
        """
        reference_set.validate_set()
        links = self._live_links()
        relinks, unresolved = plan_relinks(links, reference_set)

        # Simulate the relink phase on the snapshot
        for level, moves in relinks.items():
            links[level] = {**links[level], **moves}

        survivors = surviving_codes(links, reference_set)

        deletions: dict[str, list[str]] = {}
        for level in PRUNE_ORDER:
            doomed = sorted(set(links[level]) - survivors[level])
            deletions[level.value] = doomed
            links[level] = {c: p for c, p in links[level].items() if c in survivors[level]}
        deletions[GeoLevel.REGION.value] = regions_to_delete(
            links, reference_set, self.prune_empty_regions
        )

        return ReconciliationPlan(
            reference_version=reference_set.version,
            relinks={level.value: moves for level, moves in relinks.items()},
            unresolved_relinks=unresolved,
            deletions=deletions,
        )

    # ── Apply ──────────────────────────────────────────────────

    def reconcile(self, reference_set: ReferenceSet) -> ReconciliationReport:
        """
        Bring the live hierarchy into agreement with ``reference_set``.

        Returns:
            ReconciliationReport with per-level counts.

        Raises:
            ReferenceSetError: malformed set; nothing was changed.
            ReconciliationCancelled: cancel() was called before or during the
                run; committed batches stand.
            HierarchyReconciliationPartial: a batch failed; safe to re-run.
        """
        reference_set.validate_set()
        try:
            return self._reconcile(reference_set)
        finally:
            # A pending cancel is consumed by the run it stopped
            self.cancel_event.clear()

    def _reconcile(self, reference_set: ReferenceSet) -> ReconciliationReport:
        report = ReconciliationReport(reference_version=reference_set.version)
        logger.info(
            "Reconciliation started: reference=%s entries=%d batch_size=%d",
            reference_set.version, len(reference_set.nodes), self.batch_size,
        )

        self._relink_phase(reference_set, report)

        reference_codes = {n.code for n in reference_set.nodes}
        for level in PRUNE_ORDER:
            # Live recompute: earlier levels of this run changed validity
            links = self._live_links()
            survivors = surviving_codes(links, reference_set)
            doomed = sorted(set(links[level]) - survivors[level])
            orphaned = [c for c in doomed if c in reference_codes]
            if orphaned:
                logger.warning(
                    "Removing %d %s nodes listed in the reference set whose parent "
                    "could not be resolved: %s",
                    len(orphaned), level.value, orphaned[:10],
                )
                report.orphaned_reference_nodes.extend(orphaned)
            self._delete_in_batches(level, doomed, report)

        links = self._live_links((GeoLevel.REGION, GeoLevel.PROVINCE))
        doomed_regions = regions_to_delete(links, reference_set, self.prune_empty_regions)
        self._delete_in_batches(GeoLevel.REGION, doomed_regions, report)

        logger.info(
            "Reconciliation finished: reference=%s relinked=%s deleted=%s batches=%d",
            reference_set.version, report.relinked, report.deleted, report.batches_committed,
        )
        return report

    def _relink_phase(self, reference_set: ReferenceSet, report: ReconciliationReport) -> None:
        links = self._live_links()
        relinks, unresolved = plan_relinks(links, reference_set)
        if unresolved:
            logger.warning(
                "%d nodes reference parents missing from the live tree: %s",
                len(unresolved), unresolved[:10],
            )
            report.unresolved_relinks.extend(unresolved)

        for level in RELINK_ORDER:
            moves = relinks.get(level, {})
            codes = sorted(moves)
            last_range: tuple[str, str] | None = None
            for batch in _batches(codes, self.batch_size):
                self._check_cancelled(level, last_range, report)
                try:
                    with self.store.db.session() as session:
                        changed = sum(
                            1 for code in batch
                            if self.store.relink(code, moves[code], session=session)
                        )
                except Exception as exc:
                    logger.error(
                        "Relink batch failed at %s %s..%s: %s",
                        level.value, batch[0], batch[-1], exc,
                    )
                    raise HierarchyReconciliationPartial(
                        level.value, last_range, report, cause=exc
                    ) from exc
                report.relinked[level.value] += changed
                report.batches_committed += 1
                last_range = (batch[0], batch[-1])

    def _delete_in_batches(
        self, level: GeoLevel, codes: list[str], report: ReconciliationReport
    ) -> None:
        if not codes:
            return
        logger.info("Deleting %d %s nodes", len(codes), level.value)
        last_range: tuple[str, str] | None = None
        for index, batch in enumerate(_batches(codes, self.batch_size), start=1):
            self._check_cancelled(level, last_range, report)
            try:
                with self.store.db.session() as session:
                    deleted = self.store.delete_codes(batch, session)
            except Exception as exc:
                logger.error(
                    "Delete batch %d failed at %s %s..%s (last completed: %s): %s",
                    index, level.value, batch[0], batch[-1], last_range, exc,
                )
                raise HierarchyReconciliationPartial(
                    level.value, last_range, report, cause=exc
                ) from exc
            report.deleted[level.value] += deleted
            report.batches_committed += 1
            last_range = (batch[0], batch[-1])
            logger.info(
                "Deleted %s batch %d: %s..%s (%d rows)",
                level.value, index, batch[0], batch[-1], deleted,
            )

    def _check_cancelled(
        self,
        level: GeoLevel,
        last_range: tuple[str, str] | None,
        report: ReconciliationReport,
    ) -> None:
        if self.cancel_event.is_set():
            logger.warning(
                "Reconciliation cancelled at %s; last completed batch %s",
                level.value, last_range,
            )
            raise ReconciliationCancelled(level.value, last_range, report)
