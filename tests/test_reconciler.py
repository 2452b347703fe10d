"""
Tests for the Hierarchy Consistency Maintainer.

Validates:
- Bottom-up removal of a province absent from the reference set
- Region pruning only for regions left with no provinces, live or listed
- Relinking is preferred over delete + recreate
- A second run with the same set is a no-op
- Cancellation and batch failures leave a resumable, consistent tree
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select, update

from rbi_registry.core.errors import (
    HierarchyReconciliationPartial,
    ReconciliationCancelled,
    ReferenceSetError,
)
from rbi_registry.core.schema import GeoLevel, ReferenceSet
from rbi_registry.geography.hierarchy import HierarchyStore
from rbi_registry.geography.reconciler import (
    HierarchyMaintainer,
    regions_to_delete,
    surviving_codes,
)
from rbi_registry.store.models import GeoNodeDB
from tests.factories import SAMPLE_TREE, make_db, reference, seed

WITHOUT_1538 = [c for c in SAMPLE_TREE if not c.startswith("1538")]


class TestPureHelpers:
    def test_surviving_codes_require_surviving_parent(self):
        links = {
            GeoLevel.REGION: {"01": None},
            GeoLevel.PROVINCE: {"0102": "01"},
            GeoLevel.CITY: {"010203": "0102"},
            GeoLevel.BARANGAY: {"010203004": "010203"},
        }
        survivors = surviving_codes(links, reference(["01", "0102"]))
        assert survivors[GeoLevel.PROVINCE] == {"0102"}
        assert survivors[GeoLevel.CITY] == set()
        assert survivors[GeoLevel.BARANGAY] == set()

    def test_regions_to_delete_keeps_parents(self):
        links = {
            GeoLevel.REGION: {"01": None, "15": None, "16": None},
            GeoLevel.PROVINCE: {"0102": "01"},
        }
        # 16 has a province in the reference set that is not live yet
        ref = reference(["01", "0102", "15", "16", "1601"])
        assert regions_to_delete(links, ref, True) == ["15"]
        assert regions_to_delete(links, ref, False) == []

    def test_regions_absent_from_reference_deleted(self):
        links = {GeoLevel.REGION: {"01": None, "99": None}, GeoLevel.PROVINCE: {"0102": "01"}}
        assert regions_to_delete(links, reference(["01", "0102"]), False) == ["99"]


class TestReconcile:
    def setup_method(self):
        self.db = make_db()
        self.store = HierarchyStore(self.db)
        seed(self.store, SAMPLE_TREE)
        self.maintainer = HierarchyMaintainer(self.store, batch_size=2)

    def _references_to(self, prefix: str) -> int:
        with self.db.session() as session:
            return session.execute(
                select(func.count())
                .select_from(GeoNodeDB)
                .where(
                    GeoNodeDB.code.startswith(prefix)
                    | GeoNodeDB.parent_code.startswith(prefix)
                )
            ).scalar_one()

    def test_removed_province_deleted_bottom_up(self):
        report = self.maintainer.reconcile(reference(WITHOUT_1538))
        assert self._references_to("1538") == 0
        assert report.deleted == {"region": 1, "province": 1, "city": 2, "barangay": 3}
        # Region 15 lost its only province
        assert self.store.get_node("15") is None
        assert self.store.verify_integrity() == []

    def test_region_with_other_provinces_kept(self):
        seed(self.store, ["1536", "153601", "153601001"])
        ref = reference(WITHOUT_1538 + ["1536", "153601", "153601001"])
        report = self.maintainer.reconcile(ref)
        assert self.store.get_node("15") is not None
        assert report.deleted["region"] == 0
        assert self._references_to("1538") == 0

    def test_second_run_is_noop(self):
        ref = reference(WITHOUT_1538)
        self.maintainer.reconcile(ref)
        before = self.store.count_by_level()
        report = self.maintainer.reconcile(ref)
        assert not report.changed
        assert report.batches_committed == 0
        assert self.store.count_by_level() == before

    def test_matching_set_changes_nothing(self):
        report = self.maintainer.reconcile(reference(SAMPLE_TREE))
        assert not report.changed

    def test_single_barangay_removed(self):
        ref = reference([c for c in SAMPLE_TREE if c != "010203005"])
        report = self.maintainer.reconcile(ref)
        assert report.deleted["barangay"] == 1
        assert self.store.get_node("010203005") is None
        assert self.store.get_node("010203") is not None

    def test_relink_preferred_over_delete(self):
        with self.db.session() as session:
            session.execute(
                update(GeoNodeDB).where(GeoNodeDB.code == "0104").values(parent_code="15")
            )
        report = self.maintainer.reconcile(reference(SAMPLE_TREE))
        assert report.relinked["province"] == 1
        assert not any(report.deleted.values())
        assert self.store.get_node("0104").parent_code == "01"
        assert self.store.verify_integrity() == []

    def test_malformed_reference_rejected_before_mutation(self):
        bad = ReferenceSet.from_rows([{"code": "0102", "parent_code": "01", "level": "province"}])
        with pytest.raises(ReferenceSetError):
            self.maintainer.reconcile(bad)
        assert self.store.count_by_level()["barangay"] == 6

    def test_plan_is_dry_run(self):
        plan = self.maintainer.plan(reference(WITHOUT_1538))
        assert plan.deletions["province"] == ["1538"]
        assert plan.deletions["region"] == ["15"]
        assert sorted(plan.deletions["barangay"]) == ["153801001", "153801002", "153802001"]
        assert self.store.get_node("1538") is not None

    def test_plan_noop(self):
        assert self.maintainer.plan(reference(SAMPLE_TREE)).is_noop

    def test_prune_disabled_keeps_empty_region(self):
        maintainer = HierarchyMaintainer(self.store, prune_empty_regions=False)
        maintainer.reconcile(reference(WITHOUT_1538))
        assert self.store.get_node("15") is not None

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            HierarchyMaintainer(self.store, batch_size=0)


class TestReconcileInterruption:
    def setup_method(self):
        self.db = make_db()
        self.store = HierarchyStore(self.db)
        seed(self.store, SAMPLE_TREE)
        self.maintainer = HierarchyMaintainer(self.store, batch_size=1)
        self.ref = reference(WITHOUT_1538)

    def test_cancel_between_batches(self, monkeypatch):
        original = self.store.delete_codes

        def delete_then_cancel(codes, session):
            deleted = original(codes, session)
            self.maintainer.cancel()
            return deleted

        monkeypatch.setattr(self.store, "delete_codes", delete_then_cancel)
        with pytest.raises(ReconciliationCancelled) as exc_info:
            self.maintainer.reconcile(self.ref)
        assert exc_info.value.level == "barangay"
        assert exc_info.value.last_completed_range == ("153801001", "153801001")
        assert self.store.verify_integrity() == []

        monkeypatch.setattr(self.store, "delete_codes", original)
        self.maintainer.reconcile(self.ref)
        assert self._count_1538() == 0

    def test_cancel_after_last_province_converges(self, monkeypatch):
        baseline_db = make_db()
        baseline = HierarchyStore(baseline_db)
        seed(baseline, SAMPLE_TREE)
        HierarchyMaintainer(baseline, batch_size=1).reconcile(self.ref)

        original = self.store.delete_codes

        def cancel_after_province(codes, session):
            deleted = original(codes, session)
            if codes == ["1538"]:
                self.maintainer.cancel()
            return deleted

        monkeypatch.setattr(self.store, "delete_codes", cancel_after_province)
        with pytest.raises(ReconciliationCancelled) as exc_info:
            self.maintainer.reconcile(self.ref)
        assert exc_info.value.level == "region"
        # Region 15 is empty but not yet pruned
        assert self.store.get_node("15") is not None

        monkeypatch.setattr(self.store, "delete_codes", original)
        report = self.maintainer.reconcile(self.ref)
        assert report.deleted["region"] == 1
        assert self.store.get_node("15") is None
        assert self.store.count_by_level() == baseline.count_by_level()
        assert self.store.verify_integrity() == []

    def test_cancel_before_run_is_honored(self):
        self.maintainer.cancel()
        with pytest.raises(ReconciliationCancelled) as exc_info:
            self.maintainer.reconcile(self.ref)
        assert exc_info.value.last_completed_range is None
        assert self._count_1538() == 3

        # The stopped run consumed the request
        self.maintainer.reconcile(self.ref)
        assert self._count_1538() == 0

    def test_failed_batch_is_resumable(self, monkeypatch):
        original = self.store.delete_codes
        calls = []

        def flaky(codes, session):
            calls.append(list(codes))
            if len(calls) == 2:
                raise RuntimeError("connection reset")
            return original(codes, session)

        monkeypatch.setattr(self.store, "delete_codes", flaky)
        with pytest.raises(HierarchyReconciliationPartial) as exc_info:
            self.maintainer.reconcile(self.ref)
        assert not isinstance(exc_info.value, ReconciliationCancelled)
        assert exc_info.value.last_completed_range == ("153801001", "153801001")
        assert isinstance(exc_info.value.cause, RuntimeError)
        # The failed batch rolled back
        assert self.store.get_node("153801002") is not None

        monkeypatch.setattr(self.store, "delete_codes", original)
        report = self.maintainer.reconcile(self.ref)
        assert report.deleted["barangay"] == 2
        assert self._count_1538() == 0
        assert self.store.get_node("15") is None

    def _count_1538(self) -> int:
        return sum(1 for c in self.store.codes_at_level(GeoLevel.BARANGAY) if c.startswith("1538"))
