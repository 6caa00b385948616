"""
Tests for snapshot selection and approval.
"""
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from model import AllocationView, Project, ProjectState, WorkPackage
from service import ApprovalService, SnapshotSelector


selector = SnapshotSelector()
approval = ApprovalService()


class TestSnapshotSelector:
    """Tests for SnapshotSelector."""

    def test_real_view_is_unchanged(self, approved_project):
        assert selector.select_view(approved_project, AllocationView.REAL) is approved_project

    def test_submitted_view_uses_snapshot_structure(self, approved_project):
        view = selector.select_view(approved_project, AllocationView.SUBMITTED)
        assert view.id == approved_project.id
        assert view.state is ProjectState.IN_DEVELOPMENT
        assert view.approved is approved_project.approved
        assert view.workpackages[0].allocations[0].occupancy == Decimal("0.6")

    def test_non_approved_project_returned_unchanged(self, approved_project):
        pending = replace(approved_project, state=ProjectState.PENDING)
        assert selector.select_view(pending, "submitted") is pending
        assert not selector.has_submitted_view(pending)

    def test_approved_without_snapshot(self):
        project = Project(id="p1", state=ProjectState.APPROVED)
        assert not selector.has_submitted_view(project)
        assert selector.select_view(project, AllocationView.SUBMITTED) is project

    def test_has_submitted_view(self, approved_project):
        assert selector.has_submitted_view(approved_project)
        completed = replace(approved_project, state=ProjectState.COMPLETED)
        assert selector.has_submitted_view(completed)


class TestApprovalService:
    """Tests for ApprovalService."""

    def pending(self, start):
        return Project(
            id="p1",
            name="Alpha",
            start_date=start,
            end_date=date(2030, 12, 31),
            state=ProjectState.PENDING,
            workpackages=(WorkPackage(id="wp1", name="Research"),),
        )

    def test_started_project_goes_in_development(self):
        project = approval.approve(self.pending(date(2024, 1, 1)), today=date(2024, 1, 1))
        assert project.state is ProjectState.IN_DEVELOPMENT

    def test_future_project_is_approved(self):
        project = approval.approve(self.pending(date(2024, 6, 1)), today=date(2024, 1, 1))
        assert project.state is ProjectState.APPROVED

    def test_snapshot_copies_structure(self):
        when = datetime(2024, 1, 2, tzinfo=timezone.utc)
        source = self.pending(date(2024, 6, 1))
        project = approval.approve(source, today=date(2024, 1, 1), approved_at=when)
        assert project.approved.approved_at == when
        assert project.approved.project.workpackages == source.workpackages
        assert project.approved.project.approved is None

    def test_only_pending_can_be_approved(self, approved_project):
        with pytest.raises(ValueError):
            approval.approve(approved_project)

    def test_reject(self, approved_project):
        source = self.pending(date(2024, 6, 1))
        assert approval.reject(source) is source
        with pytest.raises(ValueError):
            approval.reject(approved_project)
