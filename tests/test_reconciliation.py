"""
Tests for the allocation ledger: reconciler and feed builder.
"""
from decimal import Decimal

import pytest

from model import (
    AllocationRecord,
    AllocationView,
    ApprovedSnapshot,
    Project,
    ProjectRef,
    ProjectState,
    ResourceAllocation,
    WorkPackage,
    WorkPackageRef,
)
from service import AllocationFeedBuilder, AllocationReconciler, group_by_project


REAL = AllocationView.REAL
SUBMITTED = AllocationView.SUBMITTED

P1 = ProjectRef(id="p1", name="Alpha", state=ProjectState.IN_DEVELOPMENT)
P2 = ProjectRef(id="p2", name="Beta", state=ProjectState.APPROVED)
WP1 = WorkPackageRef(id="wp1", name="Research")
WP2 = WorkPackageRef(id="wp2", name="Pilot")
WP3 = WorkPackageRef(id="wp3", name="Rollout")


def record(wp, project, month, occupancy, year=2024):
    return AllocationRecord(
        year=year, month=month, occupancy=Decimal(occupancy), workpackage=wp, project=project
    )


@pytest.fixture
def reconciler():
    """wp1/u1 January 2024: real 0.5, submitted 0.6."""
    return AllocationReconciler(
        real=[record(WP1, P1, 1, "0.5")],
        submitted=[record(WP1, P1, 1, "0.6")],
        year=2024,
    )


class TestGrouping:
    """Tests for grouping records by project."""

    def test_first_seen_order_and_distinct_workpackages(self):
        records = [
            record(WP2, P2, 1, "0.1"),
            record(WP1, P1, 1, "0.2"),
            record(WP2, P2, 2, "0.3"),
            record(WP3, P2, 1, "0.4"),
        ]
        groups = group_by_project(records)
        assert [g.project.id for g in groups] == ["p2", "p1"]
        assert [wp.id for wp in groups[0].workpackages] == ["wp2", "wp3"]
        assert [wp.id for wp in groups[1].workpackages] == ["wp1"]

    def test_reconciler_groups_both_feeds(self, reconciler):
        groups = reconciler.group_by_project()
        assert len(groups) == 1
        assert groups[0].workpackages == (WP1,)


class TestValuesAndTotals:
    """Tests for cell values and monthly totals."""

    def test_value_for(self, reconciler):
        assert reconciler.value_for(REAL, "wp1", 1) == Decimal("0.5")
        assert reconciler.value_for(SUBMITTED, "wp1", 1) == Decimal("0.6")
        assert reconciler.value_for(REAL, "wp1", 2) == Decimal("0")
        assert reconciler.value_for(REAL, "wp1", 1, year=2023) == Decimal("0")

    def test_totals_only_count_selected_year(self):
        rec = AllocationReconciler(
            real=[record(WP1, P1, 1, "0.5"), record(WP1, P1, 1, "0.3", year=2023)],
            submitted=[],
            year=2024,
        )
        assert rec.total_for(REAL, 1) == Decimal("0.5")
        rec.select_year(2023)
        assert rec.total_for(REAL, 1) == Decimal("0.3")

    def test_staged_edit_changes_only_real_total(self, reconciler):
        assert reconciler.stage_edit("wp1", 1, "0,8")
        assert reconciler.total_for(REAL, 1) == Decimal("0.8")
        assert reconciler.total_for(SUBMITTED, 1) == Decimal("0.6")

    def test_submitted_total_invariant_under_edits(self, reconciler):
        before = [reconciler.total_for(SUBMITTED, m) for m in range(1, 13)]
        reconciler.stage_edit("wp1", 1, "1")
        reconciler.stage_edit("wp1", 5, "0,25")
        after = [reconciler.total_for(SUBMITTED, m) for m in range(1, 13)]
        assert before == after

    def test_edit_without_committed_record_adds_to_total(self, reconciler):
        reconciler.stage_edit("wp1", 3, "0,4")
        assert reconciler.total_for(REAL, 3) == Decimal("0.4")

    def test_edits_of_other_years_are_ignored(self, reconciler):
        reconciler.stage_edit("wp1", 1, "0,9")
        reconciler.select_year(2025)
        assert reconciler.total_for(REAL, 1) == Decimal("0")

    def test_difference(self, reconciler):
        assert reconciler.difference("wp1", 1) == Decimal("-0.1")


class TestStaging:
    """Tests for staging raw cell edits."""

    @pytest.mark.parametrize("text", ["2", "1,5", "abc", "0,123"])
    def test_rejected_text_keeps_previous_edit(self, reconciler, text):
        reconciler.stage_edit("wp1", 1, "0,7")
        assert not reconciler.stage_edit("wp1", 1, text)
        assert reconciler.staged_value("wp1", 1) == "0,7"

    def test_partial_input_counts_as_zero(self, reconciler):
        assert reconciler.stage_edit("wp1", 1, "0,")
        assert reconciler.total_for(REAL, 1) == Decimal("0")

    def test_unknown_workpackage_rejected(self, reconciler):
        assert not reconciler.stage_edit("wp9", 1, "0,5")
        assert not reconciler.has_pending_edits

    def test_discard(self, reconciler):
        reconciler.stage_edit("wp1", 1, "0,5")
        reconciler.discard_edits()
        assert reconciler.staged_edits == {}


class TestBalance:
    """Tests for the month filter and the balance check."""

    def test_months_filter(self, reconciler):
        assert reconciler.months() == list(range(1, 13))
        reconciler.select_month(3)
        assert reconciler.months() == [3]
        reconciler.select_month(None)
        assert len(reconciler.months()) == 12

    def test_unbalanced_until_edit_matches(self, reconciler):
        assert not reconciler.is_balanced()
        reconciler.stage_edit("wp1", 1, "0,6")
        assert reconciler.is_balanced()

    def test_only_displayed_months_are_checked(self, reconciler):
        reconciler.select_month(2)
        assert reconciler.is_balanced()


class TestCommit:
    """Tests for folding edits into the real feed."""

    def test_commit_replaces_existing_record(self, reconciler):
        reconciler.stage_edit("wp1", 1, "0,6")
        changed = reconciler.commit()
        assert len(changed) == 1
        assert changed[0].occupancy == Decimal("0.6")
        assert reconciler.value_for(REAL, "wp1", 1) == Decimal("0.6")
        assert not reconciler.has_pending_edits
        assert reconciler.value_for(SUBMITTED, "wp1", 1) == Decimal("0.6")

    def test_commit_creates_missing_record(self, reconciler):
        reconciler.stage_edit("wp1", 4, "0,25")
        (created,) = reconciler.commit()
        assert created.workpackage == WP1
        assert created.project == P1
        assert (created.month, created.year) == (4, 2024)
        assert len(reconciler.real) == 2

    def test_empty_edit_commits_zero(self, reconciler):
        reconciler.stage_edit("wp1", 1, "")
        reconciler.commit()
        assert reconciler.value_for(REAL, "wp1", 1) == Decimal("0")


class TestFeedBuilder:
    """Tests for AllocationFeedBuilder."""

    def projects(self, approved_project):
        pending = Project(
            id="p2",
            name="Beta",
            state=ProjectState.PENDING,
            workpackages=(
                WorkPackage(
                    id="wp2",
                    name="Pilot",
                    allocations=(ResourceAllocation("u1", 3, 2025, Decimal("0.2")),),
                ),
            ),
        )
        draft = Project(
            id="p3",
            name="Gamma",
            state=ProjectState.DRAFT,
            workpackages=(
                WorkPackage(
                    id="wp3",
                    allocations=(ResourceAllocation("u1", 1, 2024, Decimal("1")),),
                ),
            ),
        )
        return [approved_project, pending, draft]

    def test_feeds(self, approved_project):
        feed = AllocationFeedBuilder().build("u1", self.projects(approved_project))
        assert [(r.project.id, r.occupancy) for r in feed.real] == [("p1", Decimal("0.5"))]
        assert [(r.project.id, r.occupancy) for r in feed.submitted] == [("p1", Decimal("0.6"))]
        assert [r.project.id for r in feed.pending] == ["p2"]
        assert feed.available_years == (2025, 2024)

    def test_other_users_are_excluded(self, approved_project):
        feed = AllocationFeedBuilder().build("u2", self.projects(approved_project))
        assert feed.real == () and feed.submitted == () and feed.available_years == ()

    def test_year_filter(self, approved_project):
        feed = AllocationFeedBuilder().build("u1", self.projects(approved_project), year=2025)
        assert feed.real == ()
        assert len(feed.pending) == 1

    def test_submitted_is_aggregated_and_rounded(self):
        snapshot_wp = WorkPackage(
            id="wp1",
            name="Research",
            allocations=(
                ResourceAllocation("u1", 1, 2024, Decimal("0.3333")),
                ResourceAllocation("u1", 1, 2024, Decimal("0.3333")),
            ),
        )
        project = Project(
            id="p1",
            name="Alpha",
            state=ProjectState.APPROVED,
            approved=ApprovedSnapshot(project=Project(id="p1", workpackages=(snapshot_wp,))),
        )
        feed = AllocationFeedBuilder(rounding_places=3).build("u1", [project])
        assert len(feed.submitted) == 1
        assert feed.submitted[0].occupancy == Decimal("0.667")
        assert feed.submitted[0].project.name == "Alpha"

    def test_feed_drives_reconciler(self, approved_project):
        feed = AllocationFeedBuilder().build("u1", [approved_project])
        rec = AllocationReconciler.from_feed(feed)
        assert rec.year == 2024
        assert rec.total_for(REAL, 1) == Decimal("0.5")
        assert rec.total_for(SUBMITTED, 1) == Decimal("0.6")

    def test_totals_by_project(self, approved_project):
        totals = AllocationFeedBuilder().totals_by_project(self.projects(approved_project))
        assert len(totals) == 1
        assert totals[0].project_id == "p1"
        assert totals[0].real_total == Decimal("0.5")
        assert totals[0].submitted_total == Decimal("0.6")
