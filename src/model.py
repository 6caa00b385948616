"""
model.py

Domain model for the project draft & monthly resource-allocation ledger.

Entities
--------
- Project
- WorkPackage
- Task
- Deliverable
- Material
- ResourceAllocation
- ApprovedSnapshot
- Draft (a saved, unfinished project)
- AllocationRecord (read model used by the allocation ledger)

Draft actions
-------------
One frozen dataclass per entity/operation pair, grouped in the DraftAction
union and applied by service.reduce_draft.

All entities are frozen dataclasses whose child collections are tuples, so an
aggregate can be shared freely: every edit builds a new Project and reuses
every branch it did not touch.  Money, rates and occupancy are Decimals.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Tuple, Union


def new_entity_id() -> str:
    """Client-side identity for WorkPackages, Tasks and Deliverables."""
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProjectState(str, Enum):
    """Lifecycle state of a project."""
    DRAFT = "draft"
    PENDING = "pending"                 # Submitted, awaiting approval
    APPROVED = "approved"
    IN_DEVELOPMENT = "in_development"   # Approved and already started
    COMPLETED = "completed"


# States whose allocations count as committed ("real") and that may carry a snapshot
APPROVED_STATES = frozenset(
    {ProjectState.APPROVED, ProjectState.IN_DEVELOPMENT, ProjectState.COMPLETED}
)


class ExpenseCategory(str, Enum):
    """Budget heading a material expense is booked under."""
    MATERIALS = "materials"
    THIRD_PARTY_SERVICES = "third_party_services"
    OTHER_SERVICES = "other_services"
    TRAVEL_AND_SUBSISTENCE = "travel_and_subsistence"
    OTHER_COSTS = "other_costs"
    STRUCTURE_COSTS = "structure_costs"


class Phase(str, Enum):
    """Steps of the project creation workflow."""
    BASIC_INFO = "basic_info"
    FINANCE = "finance"
    STRUCTURE = "structure"
    RESOURCES = "resources"
    SUMMARY = "summary"


PHASE_ORDER: Tuple[Phase, ...] = (
    Phase.BASIC_INFO,
    Phase.FINANCE,
    Phase.STRUCTURE,
    Phase.RESOURCES,
    Phase.SUMMARY,
)


class AllocationView(str, Enum):
    """Which allocation feed / project view is being looked at."""
    REAL = "real"
    SUBMITTED = "submitted"


# ---------------------------------------------------------------------------
# Project tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Deliverable:
    """An output of a task.  Has no storage slot of its own outside the Task."""
    id: str = field(default_factory=new_entity_id)
    name: str = ""
    description: Optional[str] = None
    due_date: Optional[date] = None
    completed: bool = False
    attachment: Optional[str] = None    # Reference to an uploaded file


@dataclass(frozen=True)
class Task:
    id: str = field(default_factory=new_entity_id)
    name: str = ""
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    completed: bool = False
    deliverables: Tuple[Deliverable, ...] = ()


@dataclass(frozen=True)
class Material:
    """
    A purchased item or service booked against a work package.

    `id` is a per-project integer counter (Project.last_material_id), not a UUID.
    """
    id: int = 0
    name: str = ""
    unit_price: Decimal = Decimal("0")
    quantity: int = 0
    category: ExpenseCategory = ExpenseCategory.MATERIALS
    year: int = 0
    month: int = 1
    description: Optional[str] = None
    completed: bool = False

    @property
    def total_cost(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class ResourceAllocation:
    """
    Share of a person's monthly capacity assigned to a work package.

    Keyed by (user_id, month, year).  `occupancy` is conceptually in [0, 1]
    but is not clamped here.
    """
    user_id: str
    month: int
    year: int
    occupancy: Decimal = Decimal("0")

    @property
    def key(self) -> Tuple[str, int, int]:
        return (self.user_id, self.month, self.year)


@dataclass(frozen=True)
class WorkPackage:
    id: str = field(default_factory=new_entity_id)
    name: str = ""
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    completed: bool = False
    tasks: Tuple[Task, ...] = ()
    materials: Tuple[Material, ...] = ()
    allocations: Tuple[ResourceAllocation, ...] = ()

    def find_task(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.tasks if t.id == task_id), None)

    def allocations_for_user(self, user_id: str) -> Tuple[ResourceAllocation, ...]:
        return tuple(a for a in self.allocations if a.user_id == user_id)

    @property
    def resource_count(self) -> int:
        """Number of distinct people allocated to this work package."""
        return len({a.user_id for a in self.allocations})


@dataclass(frozen=True)
class Project:
    """
    The aggregate root edited during a project creation session.

    `id` stays None until the server persists the project.  The finance fields
    are None until the user fills them in.  `approved` carries the snapshot
    taken at approval time; it is never modified afterwards.
    """
    id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    state: ProjectState = ProjectState.DRAFT

    # Finance
    overhead: Optional[Decimal] = None
    funding_rate: Optional[Decimal] = None
    hourly_rate: Optional[Decimal] = None       # Value of one full-time-equivalent hour
    funding_source_id: Optional[str] = None
    responsible_id: Optional[str] = None

    workpackages: Tuple[WorkPackage, ...] = ()

    # Highest Material.id handed out in this aggregate; only ever grows
    last_material_id: int = 0

    approved: Optional["ApprovedSnapshot"] = None

    def find_workpackage(self, workpackage_id: str) -> Optional[WorkPackage]:
        return next((wp for wp in self.workpackages if wp.id == workpackage_id), None)

    @property
    def task_count(self) -> int:
        return sum(len(wp.tasks) for wp in self.workpackages)

    @property
    def deliverable_count(self) -> int:
        return sum(len(t.deliverables) for wp in self.workpackages for t in wp.tasks)

    @property
    def resource_count(self) -> int:
        return len({a.user_id for wp in self.workpackages for a in wp.allocations})

    @property
    def material_cost(self) -> Decimal:
        return sum(
            (m.total_cost for wp in self.workpackages for m in wp.materials),
            Decimal("0"),
        )

    @property
    def progress(self) -> Decimal:
        """Share of completed tasks, in [0, 1].  Zero when there are no tasks."""
        total = self.task_count
        if not total:
            return Decimal("0")
        done = sum(1 for wp in self.workpackages for t in wp.tasks if t.completed)
        return Decimal(done) / Decimal(total)


@dataclass(frozen=True)
class ApprovedSnapshot:
    """
    Structural copy of a Project captured when it was approved.

    The copied project never carries a snapshot of its own.
    """
    project: Project
    approved_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Draft:
    """A saved, unfinished project: a title plus opaque JSON content."""
    owner_id: str
    title: str
    content: Mapping[str, Any]
    id: str = field(default_factory=new_entity_id)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Allocation ledger read model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkPackageRef:
    id: str
    name: str


@dataclass(frozen=True)
class ProjectRef:
    id: str
    name: str
    state: Optional[ProjectState] = None


@dataclass(frozen=True)
class AllocationRecord:
    """One month of one user's occupancy on one work package, as shown in the ledger."""
    year: int
    month: int
    occupancy: Decimal
    workpackage: WorkPackageRef
    project: ProjectRef

    @property
    def key(self) -> Tuple[str, int, int]:
        return (self.workpackage.id, self.month, self.year)


@dataclass(frozen=True)
class AllocationFeed:
    """Everything the ledger needs for one user: both feeds plus the years on record."""
    real: Tuple[AllocationRecord, ...] = ()
    submitted: Tuple[AllocationRecord, ...] = ()
    pending: Tuple[AllocationRecord, ...] = ()
    available_years: Tuple[int, ...] = ()


# ---------------------------------------------------------------------------
# Draft actions
# ---------------------------------------------------------------------------
# `data` / `changes` hold raw field values keyed by entity attribute name;
# the reducer coerces them.  Creation actions carry a pre-generated id so
# applying the same action object always yields the same result.


@dataclass(frozen=True)
class UpdateProject:
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class ResetDraft:
    pass


@dataclass(frozen=True)
class AddWorkPackage:
    data: Mapping[str, Any]
    id: str = field(default_factory=new_entity_id)


@dataclass(frozen=True)
class UpdateWorkPackage:
    workpackage_id: str
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class RemoveWorkPackage:
    workpackage_id: str


@dataclass(frozen=True)
class AddTask:
    workpackage_id: str
    data: Mapping[str, Any]
    id: str = field(default_factory=new_entity_id)


@dataclass(frozen=True)
class UpdateTask:
    workpackage_id: str
    task_id: str
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class RemoveTask:
    workpackage_id: str
    task_id: str


@dataclass(frozen=True)
class AddMaterial:
    workpackage_id: str
    data: Mapping[str, Any]


@dataclass(frozen=True)
class UpdateMaterial:
    workpackage_id: str
    material_id: int
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class RemoveMaterial:
    workpackage_id: str
    material_id: int


@dataclass(frozen=True)
class AddDeliverable:
    workpackage_id: str
    task_id: str
    data: Mapping[str, Any]
    id: str = field(default_factory=new_entity_id)


@dataclass(frozen=True)
class UpdateDeliverable:
    workpackage_id: str
    task_id: str
    deliverable_id: str
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class RemoveDeliverable:
    workpackage_id: str
    task_id: str
    deliverable_id: str


@dataclass(frozen=True)
class AddResourceAllocation:
    workpackage_id: str
    data: Mapping[str, Any]


@dataclass(frozen=True)
class UpdateResourceAllocation:
    workpackage_id: str
    user_id: str
    month: int
    year: int
    data: Mapping[str, Any]


@dataclass(frozen=True)
class RemoveResourceAllocation:
    workpackage_id: str
    user_id: str
    month: int
    year: int


@dataclass(frozen=True)
class RemoveAllResourceAllocationsForUser:
    workpackage_id: str
    user_id: str


DraftAction = Union[
    UpdateProject,
    ResetDraft,
    AddWorkPackage,
    UpdateWorkPackage,
    RemoveWorkPackage,
    AddTask,
    UpdateTask,
    RemoveTask,
    AddMaterial,
    UpdateMaterial,
    RemoveMaterial,
    AddDeliverable,
    UpdateDeliverable,
    RemoveDeliverable,
    AddResourceAllocation,
    UpdateResourceAllocation,
    RemoveResourceAllocation,
    RemoveAllResourceAllocationsForUser,
]
