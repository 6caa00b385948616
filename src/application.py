"""
application.py

Application layer for the project draft & allocation ledger.

Overview
--------
The application layer sits between the presentation layer (API / editing
session) and the service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data the
     presentation layer needs; Decimals leave as strings, dates as ISO-8601.
  2. Declaring abstract Repository interfaces so that the application layer
     remains fully persistence-agnostic (implementations live in
     infrastructure.py).
  3. Declaring the UnitOfWork abstraction so that several repository writes
     inside one use case form a single unit.
  4. Implementing Use Case handlers, one class per user-facing operation.
  5. DraftSession: the client-side editing session that drives the draft
     store and talks to the use cases as its remote boundary.

Structure
---------
DTOs
    DraftDTO, CompletionDTO
    ProjectSummaryDTO, ProjectDTO, WorkPackageDTO, TaskDTO, DeliverableDTO,
    MaterialDTO, AllocationDTO
    AllocationRecordDTO, AllocationFeedDTO, ProjectAllocationTotalsDTO
    SubmissionResultDTO, ValidationResultDTO

Repository interfaces
    AbstractDraftRepository
    AbstractProjectRepository

Unit of Work
    AbstractUnitOfWork

Use Cases
    --- Drafts ---
    SaveDraftUseCase
    UpdateDraftUseCase
    DeleteDraftUseCase
    GetDraftUseCase
    ListDraftsUseCase
    EvaluateDraftUseCase

    --- Projects ---
    SubmitProjectUseCase
    ValidateProjectUseCase
    GetProjectViewUseCase
    ListProjectsUseCase

    --- Allocations ---
    GetAllocationsUseCase
    SaveAllocationsUseCase
    GetProjectAllocationTotalsUseCase

Editing session
    DraftSession

Design notes
------------
- Use cases return DTOs only; no domain objects cross the application
  boundary.
- Each use case accepts a UnitOfWork as its sole dependency.
- Errors bubble up as ApplicationError (business) or NotFoundError.
- DraftSession never raises for remote failures: it returns a failed
  OperationResult and keeps the draft in memory.
"""

from __future__ import annotations

import abc
import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from coercion import decimal_to_str, is_acceptable_occupancy_text
from config import get_config
from model import (
    AddResourceAllocation,
    AllocationFeed,
    AllocationRecord,
    AllocationView,
    Draft,
    Phase,
    Project,
    ProjectState,
    UpdateResourceAllocation,
    new_entity_id,
)
from serialization import DraftContentError, DraftSerializer, SubmissionPayloadBuilder
from service import (
    AllocationFeedBuilder,
    AllocationReconciler,
    ApprovalService,
    DraftError,
    ErrorKind,
    OperationResult,
    PhaseCompletion,
    PhaseCompletionEvaluator,
    PhaseNavigator,
    ProjectAllocationTotals,
    ProjectDraftStore,
    SnapshotSelector,
    reduce_draft,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return decimal_to_str(value)


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Draft DTOs
# ---------------------------------------------------------------------------

@dataclass
class DraftDTO:
    id: str
    owner_id: str
    title: str
    content: Dict[str, Any]
    created_at: str
    updated_at: str


@dataclass
class CompletionDTO:
    basic_info: bool
    finance: bool
    structure: bool
    resources: bool
    summary: bool
    warnings: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Project DTOs
# ---------------------------------------------------------------------------

@dataclass
class DeliverableDTO:
    id: str
    name: str
    description: Optional[str]
    due_date: Optional[str]
    completed: bool
    attachment: Optional[str]


@dataclass
class TaskDTO:
    id: str
    name: str
    description: Optional[str]
    start_date: Optional[str]
    end_date: Optional[str]
    completed: bool
    deliverables: List[DeliverableDTO]


@dataclass
class MaterialDTO:
    id: int
    name: str
    unit_price: str
    quantity: int
    total_cost: str
    category: str
    year: int
    month: int
    description: Optional[str]
    completed: bool


@dataclass
class AllocationDTO:
    user_id: str
    month: int
    year: int
    occupancy: str


@dataclass
class WorkPackageDTO:
    id: str
    name: str
    description: Optional[str]
    start_date: Optional[str]
    end_date: Optional[str]
    completed: bool
    resource_count: int
    tasks: List[TaskDTO]
    materials: List[MaterialDTO]
    allocations: List[AllocationDTO]


@dataclass
class ProjectSummaryDTO:
    id: str
    name: str
    state: str
    start_date: Optional[str]
    end_date: Optional[str]
    progress: float
    workpackage_count: int
    has_submitted_view: bool


@dataclass
class ProjectDTO:
    """Full project tree as shown in one of the two views."""
    id: str
    name: str
    description: Optional[str]
    start_date: Optional[str]
    end_date: Optional[str]
    state: str
    view: str
    has_submitted_view: bool
    approved_at: Optional[str]
    overhead: Optional[str]
    funding_rate: Optional[str]
    hourly_rate: Optional[str]
    funding_source_id: Optional[str]
    responsible_id: Optional[str]
    progress: float
    task_count: int
    deliverable_count: int
    resource_count: int
    material_cost: str
    workpackages: List[WorkPackageDTO]


@dataclass
class SubmissionResultDTO:
    project_id: str
    state: str


@dataclass
class ValidationResultDTO:
    success: bool
    project_remains: bool
    state: Optional[str]


# ---------------------------------------------------------------------------
# Allocation DTOs
# ---------------------------------------------------------------------------

@dataclass
class AllocationRecordDTO:
    year: int
    month: int
    occupancy: str
    workpackage_id: str
    workpackage_name: str
    project_id: str
    project_name: str
    project_state: Optional[str]


@dataclass
class AllocationFeedDTO:
    user_id: str
    real: List[AllocationRecordDTO]
    submitted: List[AllocationRecordDTO]
    pending: List[AllocationRecordDTO]
    available_years: List[int]


@dataclass
class ProjectAllocationTotalsDTO:
    project_id: str
    name: str
    real_total: str
    submitted_total: str


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def draft(d: Draft) -> DraftDTO:
        return DraftDTO(
            id=d.id,
            owner_id=d.owner_id,
            title=d.title,
            content=dict(d.content),
            created_at=_fmt(d.created_at),
            updated_at=_fmt(d.updated_at),
        )

    @staticmethod
    def completion(c: PhaseCompletion, warnings: Optional[List[str]] = None) -> CompletionDTO:
        return CompletionDTO(
            basic_info=c.basic_info,
            finance=c.finance,
            structure=c.structure,
            resources=c.resources,
            summary=c.summary,
            warnings=list(warnings or []),
        )

    @staticmethod
    def project_summary(p: Project) -> ProjectSummaryDTO:
        return ProjectSummaryDTO(
            id=p.id,
            name=p.name,
            state=p.state.value,
            start_date=_fmt_date(p.start_date),
            end_date=_fmt_date(p.end_date),
            progress=round(float(p.progress), 4),
            workpackage_count=len(p.workpackages),
            has_submitted_view=_selector.has_submitted_view(p),
        )

    @staticmethod
    def project(p: Project, view: AllocationView, has_submitted_view: bool) -> ProjectDTO:
        return ProjectDTO(
            id=p.id,
            name=p.name,
            description=p.description,
            start_date=_fmt_date(p.start_date),
            end_date=_fmt_date(p.end_date),
            state=p.state.value,
            view=view.value,
            has_submitted_view=has_submitted_view,
            approved_at=_fmt(p.approved.approved_at) if p.approved else None,
            overhead=_dec(p.overhead),
            funding_rate=_dec(p.funding_rate),
            hourly_rate=_dec(p.hourly_rate),
            funding_source_id=p.funding_source_id,
            responsible_id=p.responsible_id,
            progress=round(float(p.progress), 4),
            task_count=p.task_count,
            deliverable_count=p.deliverable_count,
            resource_count=p.resource_count,
            material_cost=_dec(p.material_cost),
            workpackages=[
                WorkPackageDTO(
                    id=wp.id,
                    name=wp.name,
                    description=wp.description,
                    start_date=_fmt_date(wp.start_date),
                    end_date=_fmt_date(wp.end_date),
                    completed=wp.completed,
                    resource_count=wp.resource_count,
                    tasks=[
                        TaskDTO(
                            id=t.id,
                            name=t.name,
                            description=t.description,
                            start_date=_fmt_date(t.start_date),
                            end_date=_fmt_date(t.end_date),
                            completed=t.completed,
                            deliverables=[
                                DeliverableDTO(
                                    id=d.id,
                                    name=d.name,
                                    description=d.description,
                                    due_date=_fmt_date(d.due_date),
                                    completed=d.completed,
                                    attachment=d.attachment,
                                )
                                for d in t.deliverables
                            ],
                        )
                        for t in wp.tasks
                    ],
                    materials=[
                        MaterialDTO(
                            id=m.id,
                            name=m.name,
                            unit_price=_dec(m.unit_price),
                            quantity=m.quantity,
                            total_cost=_dec(m.total_cost),
                            category=m.category.value,
                            year=m.year,
                            month=m.month,
                            description=m.description,
                            completed=m.completed,
                        )
                        for m in wp.materials
                    ],
                    allocations=[
                        AllocationDTO(
                            user_id=a.user_id,
                            month=a.month,
                            year=a.year,
                            occupancy=_dec(a.occupancy),
                        )
                        for a in wp.allocations
                    ],
                )
                for wp in p.workpackages
            ],
        )

    @staticmethod
    def allocation_record(r: AllocationRecord) -> AllocationRecordDTO:
        return AllocationRecordDTO(
            year=r.year,
            month=r.month,
            occupancy=_dec(r.occupancy),
            workpackage_id=r.workpackage.id,
            workpackage_name=r.workpackage.name,
            project_id=r.project.id,
            project_name=r.project.name,
            project_state=r.project.state.value if r.project.state else None,
        )

    @staticmethod
    def feed(user_id: str, f: AllocationFeed) -> AllocationFeedDTO:
        return AllocationFeedDTO(
            user_id=user_id,
            real=[_Assembler.allocation_record(r) for r in f.real],
            submitted=[_Assembler.allocation_record(r) for r in f.submitted],
            pending=[_Assembler.allocation_record(r) for r in f.pending],
            available_years=list(f.available_years),
        )

    @staticmethod
    def totals(t: ProjectAllocationTotals) -> ProjectAllocationTotalsDTO:
        return ProjectAllocationTotalsDTO(
            project_id=t.project_id,
            name=t.name,
            real_total=_dec(t.real_total),
            submitted_total=_dec(t.submitted_total),
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractDraftRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, draft_id: str) -> Optional[Draft]: ...
    @abc.abstractmethod
    def list_for_owner(self, owner_id: str) -> List[Draft]: ...
    @abc.abstractmethod
    def save(self, draft: Draft) -> None: ...
    @abc.abstractmethod
    def delete(self, draft_id: str) -> None: ...


class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, project_id: str) -> Optional[Project]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Project]: ...
    @abc.abstractmethod
    def save(self, project: Project) -> None: ...
    @abc.abstractmethod
    def delete(self, project_id: str) -> None: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.projects.save(project)
            uow.commit()
    """
    drafts: AbstractDraftRepository
    projects: AbstractProjectRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_evaluator = PhaseCompletionEvaluator()
_selector = SnapshotSelector()
_approval_svc = ApprovalService()
_serializer = DraftSerializer()
_payloads = SubmissionPayloadBuilder()


def _feed_builder() -> AllocationFeedBuilder:
    return AllocationFeedBuilder(rounding_places=get_config().rounding_places)


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_draft_or_raise(uow: AbstractUnitOfWork, draft_id: str, owner_id: str) -> Draft:
    draft = uow.drafts.get(draft_id)
    # Someone else's draft is reported exactly like a missing one.
    if draft is None or draft.owner_id != owner_id:
        raise NotFoundError(f"Draft {draft_id} not found.")
    return draft


def _get_project_or_raise(uow: AbstractUnitOfWork, project_id: str) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _read_content(content: Mapping[str, Any]) -> Project:
    try:
        return _serializer.from_content(content)
    except DraftContentError as exc:
        raise ApplicationError(str(exc)) from exc


def _require_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise ApplicationError("Draft title must not be empty.")
    return title


def _with_server_ids(project: Project) -> Project:
    """Fresh ids for every WorkPackage, Task and Deliverable of a submitted project."""
    return replace(
        project,
        workpackages=tuple(
            replace(
                wp,
                id=new_entity_id(),
                tasks=tuple(
                    replace(
                        task,
                        id=new_entity_id(),
                        deliverables=tuple(
                            replace(d, id=new_entity_id()) for d in task.deliverables
                        ),
                    )
                    for task in wp.tasks
                ),
            )
            for wp in project.workpackages
        ),
    )


# ===========================================================================
# USE CASES: DRAFTS
# ===========================================================================

@dataclass
class SaveDraftCommand:
    owner_id: str
    title: str
    content: Dict[str, Any]


class SaveDraftUseCase:
    """Store a new draft.  The content must describe a readable project."""

    def execute(self, cmd: SaveDraftCommand, uow: AbstractUnitOfWork) -> DraftDTO:
        with uow:
            _read_content(cmd.content)
            draft = Draft(
                owner_id=cmd.owner_id,
                title=_require_title(cmd.title),
                content=dict(cmd.content),
            )
            uow.drafts.save(draft)
            uow.commit()
            logger.info("Saved draft %s for %s", draft.id, cmd.owner_id)
            return _Assembler.draft(draft)


@dataclass
class UpdateDraftCommand:
    draft_id: str
    owner_id: str
    title: str
    content: Dict[str, Any]


class UpdateDraftUseCase:
    def execute(self, cmd: UpdateDraftCommand, uow: AbstractUnitOfWork) -> DraftDTO:
        with uow:
            draft = _get_draft_or_raise(uow, cmd.draft_id, cmd.owner_id)
            _read_content(cmd.content)
            draft = replace(
                draft,
                title=_require_title(cmd.title),
                content=dict(cmd.content),
                updated_at=datetime.now(timezone.utc),
            )
            uow.drafts.save(draft)
            uow.commit()
            return _Assembler.draft(draft)


@dataclass
class DeleteDraftCommand:
    draft_id: str
    owner_id: str


class DeleteDraftUseCase:
    def execute(self, cmd: DeleteDraftCommand, uow: AbstractUnitOfWork) -> None:
        with uow:
            _get_draft_or_raise(uow, cmd.draft_id, cmd.owner_id)
            uow.drafts.delete(cmd.draft_id)
            uow.commit()


class GetDraftUseCase:
    def execute(self, draft_id: str, owner_id: str, uow: AbstractUnitOfWork) -> DraftDTO:
        with uow:
            return _Assembler.draft(_get_draft_or_raise(uow, draft_id, owner_id))


class ListDraftsUseCase:
    """Drafts of one owner, most recently created first."""

    def execute(self, owner_id: str, uow: AbstractUnitOfWork) -> List[DraftDTO]:
        with uow:
            drafts = sorted(
                uow.drafts.list_for_owner(owner_id),
                key=lambda d: d.created_at,
                reverse=True,
            )
            return [_Assembler.draft(d) for d in drafts]


class EvaluateDraftUseCase:
    """Phase completion flags (plus period warnings) for unsaved draft content."""

    def execute(self, content: Mapping[str, Any]) -> CompletionDTO:
        project = _read_content(content)
        return _Assembler.completion(
            _evaluator.evaluate(project), _evaluator.period_warnings(project)
        )


# ===========================================================================
# USE CASES: PROJECTS
# ===========================================================================

@dataclass
class SubmitProjectCommand:
    owner_id: str
    payload: Dict[str, Any]
    draft_id: Optional[str] = None     # Deleted once the project is stored


class SubmitProjectUseCase:
    """
    Store a finished project as PENDING.

    Incomplete projects are refused.  The project and its work packages,
    tasks and deliverables receive server ids, so two submissions of the same
    content never share a WorkPackage row in the allocation ledger.
    """

    def execute(self, cmd: SubmitProjectCommand, uow: AbstractUnitOfWork) -> SubmissionResultDTO:
        with uow:
            project = _read_content(cmd.payload)
            completion = _evaluator.evaluate(project)
            if not completion.summary:
                missing = [
                    name for name, done in completion.as_dict().items()
                    if name != Phase.SUMMARY.value and not done
                ]
                raise ApplicationError(
                    "Project is incomplete; unfinished phases: " + ", ".join(missing) + "."
                )
            project = replace(
                _with_server_ids(project),
                id=new_entity_id(),
                state=ProjectState.PENDING,
                approved=None,
            )
            uow.projects.save(project)
            if cmd.draft_id:
                draft = uow.drafts.get(cmd.draft_id)
                if draft is not None and draft.owner_id == cmd.owner_id:
                    uow.drafts.delete(cmd.draft_id)
            uow.commit()
            logger.info("Project %s submitted by %s", project.id, cmd.owner_id)
            return SubmissionResultDTO(project_id=project.id, state=project.state.value)


@dataclass
class ValidateProjectCommand:
    project_id: str
    approve: bool
    today: Optional[date] = None


class ValidateProjectUseCase:
    """
    Approve or reject a PENDING project.

    Approval captures the snapshot the submitted view shows from then on.
    Rejection deletes the project.
    """

    def execute(self, cmd: ValidateProjectCommand, uow: AbstractUnitOfWork) -> ValidationResultDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            try:
                if cmd.approve:
                    project = _approval_svc.approve(project, today=cmd.today)
                else:
                    _approval_svc.reject(project)
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc

            if cmd.approve:
                uow.projects.save(project)
            else:
                uow.projects.delete(project.id)
            uow.commit()
            logger.info(
                "Project %s %s", cmd.project_id, "approved" if cmd.approve else "rejected"
            )
            return ValidationResultDTO(
                success=True,
                project_remains=cmd.approve,
                state=project.state.value if cmd.approve else None,
            )


class GetProjectViewUseCase:
    def execute(
        self,
        project_id: str,
        uow: AbstractUnitOfWork,
        mode: AllocationView = AllocationView.REAL,
    ) -> ProjectDTO:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            view = AllocationView(mode)
            has_submitted = _selector.has_submitted_view(project)
            selected = _selector.select_view(project, view)
            # A project without a snapshot is always shown as its real view.
            shown = view if has_submitted else AllocationView.REAL
            return _Assembler.project(selected, shown, has_submitted)


class ListProjectsUseCase:
    def execute(
        self,
        uow: AbstractUnitOfWork,
        state: Optional[ProjectState] = None,
    ) -> List[ProjectSummaryDTO]:
        with uow:
            projects = uow.projects.list_all()
            if state is not None:
                projects = [p for p in projects if p.state is ProjectState(state)]
            return [_Assembler.project_summary(p) for p in projects]


# ===========================================================================
# USE CASES: ALLOCATIONS
# ===========================================================================

class GetAllocationsUseCase:
    """The real, submitted and pending allocation feeds of one user."""

    def execute(
        self,
        user_id: str,
        uow: AbstractUnitOfWork,
        year: Optional[int] = None,
    ) -> AllocationFeedDTO:
        with uow:
            feed = _feed_builder().build(user_id, uow.projects.list_all(), year=year)
            return _Assembler.feed(user_id, feed)


@dataclass
class AllocationEdit:
    workpackage_id: str
    month: int
    value: str       # Raw cell text, e.g. "0,75"


@dataclass
class SaveAllocationsCommand:
    user_id: str
    year: int
    edits: List[AllocationEdit]
    month: Optional[int] = None     # Month filter in effect when the edits were made


class SaveAllocationsUseCase:
    """
    Stage raw cell edits on the user's ledger, commit them and write the
    committed values back into the live work packages.

    When allocations.require_balanced_totals is set, the edits are refused
    unless every displayed month still balances against the submitted view.
    """

    def execute(self, cmd: SaveAllocationsCommand, uow: AbstractUnitOfWork) -> AllocationFeedDTO:
        config = get_config()
        with uow:
            builder = _feed_builder()
            feed = builder.build(cmd.user_id, uow.projects.list_all())
            reconciler = AllocationReconciler.from_feed(
                feed, year=cmd.year, tolerance=config.balance_tolerance
            )
            reconciler.select_month(cmd.month)

            for edit in cmd.edits:
                if not is_acceptable_occupancy_text(edit.value):
                    raise ApplicationError(
                        f"Invalid occupancy {edit.value!r}; use 0, 1 or 0,dd."
                    )
                if not reconciler.stage_edit(edit.workpackage_id, edit.month, edit.value):
                    raise NotFoundError(
                        f"No allocation row for WorkPackage {edit.workpackage_id} "
                        f"in month {edit.month}."
                    )

            if config.require_balanced_totals and not reconciler.is_balanced():
                raise ApplicationError(
                    "Real and submitted totals differ; allocations were not saved."
                )

            changed = reconciler.commit()
            self._write_back(cmd.user_id, changed, uow)
            uow.commit()
            logger.info("Saved %d allocation(s) for %s", len(changed), cmd.user_id)

            return _Assembler.feed(
                cmd.user_id, builder.build(cmd.user_id, uow.projects.list_all())
            )

    @staticmethod
    def _write_back(
        user_id: str,
        records: List[AllocationRecord],
        uow: AbstractUnitOfWork,
    ) -> None:
        by_project: "OrderedDict[str, List[AllocationRecord]]" = OrderedDict()
        for record in records:
            by_project.setdefault(record.project.id, []).append(record)

        for project_id, project_records in by_project.items():
            project = _get_project_or_raise(uow, project_id)
            for record in project_records:
                wp = project.find_workpackage(record.workpackage.id)
                if wp is None:
                    raise NotFoundError(
                        f"WorkPackage {record.workpackage.id} no longer exists "
                        f"in Project {project_id}."
                    )
                exists = any(
                    a.key == (user_id, record.month, record.year) for a in wp.allocations
                )
                if exists:
                    action = UpdateResourceAllocation(
                        workpackage_id=wp.id,
                        user_id=user_id,
                        month=record.month,
                        year=record.year,
                        data={"occupancy": record.occupancy},
                    )
                else:
                    action = AddResourceAllocation(
                        workpackage_id=wp.id,
                        data={
                            "user_id": user_id,
                            "month": record.month,
                            "year": record.year,
                            "occupancy": record.occupancy,
                        },
                    )
                try:
                    project = reduce_draft(project, action)
                except DraftError as exc:
                    raise ApplicationError(str(exc)) from exc
            uow.projects.save(project)


class GetProjectAllocationTotalsUseCase:
    def execute(
        self,
        uow: AbstractUnitOfWork,
        year: Optional[int] = None,
    ) -> List[ProjectAllocationTotalsDTO]:
        with uow:
            totals = _feed_builder().totals_by_project(uow.projects.list_all(), year=year)
            return [_Assembler.totals(t) for t in totals]


# ===========================================================================
# EDITING SESSION
# ===========================================================================

class DraftSession:
    """
    One user's project creation session.

    Wraps a ProjectDraftStore and a PhaseNavigator and uses the draft and
    submission use cases as its remote boundary.  Every remote call returns an
    OperationResult; a failure never drops the in-memory draft.
    """

    def __init__(
        self,
        owner_id: str,
        uow_factory: Callable[[], AbstractUnitOfWork],
        project: Optional[Project] = None,
    ) -> None:
        self.owner_id = owner_id
        self._uow_factory = uow_factory
        self._store = ProjectDraftStore(project)
        self._navigator = PhaseNavigator()
        self.draft_id: Optional[str] = None

    @property
    def state(self) -> Project:
        return self._store.state

    @property
    def completion(self) -> PhaseCompletion:
        return self._store.completion

    @property
    def navigator(self) -> PhaseNavigator:
        return self._navigator

    def dispatch(self, action) -> OperationResult:
        return self._store.dispatch(action)

    def save_draft(self, title: str) -> OperationResult:
        """Create the stored draft on first save, update it afterwards."""
        content = _serializer.to_content(self._store.state)
        try:
            if self.draft_id is None:
                dto = SaveDraftUseCase().execute(
                    SaveDraftCommand(owner_id=self.owner_id, title=title, content=content),
                    self._uow_factory(),
                )
            else:
                dto = UpdateDraftUseCase().execute(
                    UpdateDraftCommand(
                        draft_id=self.draft_id,
                        owner_id=self.owner_id,
                        title=title,
                        content=content,
                    ),
                    self._uow_factory(),
                )
        except NotFoundError as exc:
            logger.warning("Saving draft failed: %s", exc)
            return OperationResult.failure(str(exc), ErrorKind.TRANSPORT)
        except ApplicationError as exc:
            return OperationResult.failure(str(exc), ErrorKind.VALIDATION)
        self.draft_id = dto.id
        return OperationResult.success(dto, message="Draft saved.")

    def restore(self, draft_id: str) -> OperationResult:
        """Replace the session aggregate with a stored draft."""
        try:
            dto = GetDraftUseCase().execute(draft_id, self.owner_id, self._uow_factory())
        except ApplicationError as exc:
            return OperationResult.failure(str(exc), ErrorKind.TRANSPORT)
        try:
            project = _serializer.from_content(dto.content)
        except DraftContentError as exc:
            return OperationResult.failure(str(exc), ErrorKind.VALIDATION)
        self._store.load(project)
        self._navigator = PhaseNavigator()
        self.draft_id = dto.id
        return OperationResult.success(project, message="Draft restored.")

    def submit(self) -> OperationResult:
        gate = self._navigator.submit(self._store.completion)
        if not gate.ok:
            return gate
        payload = _payloads.build(self._store.state)
        try:
            result = SubmitProjectUseCase().execute(
                SubmitProjectCommand(
                    owner_id=self.owner_id, payload=payload, draft_id=self.draft_id
                ),
                self._uow_factory(),
            )
        except ApplicationError as exc:
            logger.warning("Submission failed: %s", exc)
            return OperationResult.failure(str(exc), ErrorKind.TRANSPORT)
        self.discard()
        return OperationResult.success(result, message="Project submitted.")

    def discard(self) -> None:
        self._store.reset()
        self._navigator = PhaseNavigator()
        self.draft_id = None
