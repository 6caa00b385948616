"""
service.py

Service layer for the project draft & allocation ledger.

Responsibilities
----------------
Everything here is pure, synchronous business logic over the frozen domain
model in model.py.  Nothing is persisted; callers hand results to the
application layer.

Services
--------
- reduce_draft / apply_action  – the single reducer entry point for draft edits
- ProjectDraftStore            – holds the current aggregate, dispatches actions
- PhaseCompletionEvaluator     – which creation phases are satisfied
- PhaseNavigator               – step-by-step navigation + submission gate
- AllocationReconciler         – real vs submitted occupancy ledger with staged edits
- AllocationFeedBuilder        – builds the per-user allocation feeds from projects
- SnapshotSelector             – live vs approved structural view of a project
- ApprovalService              – approval snapshot / rejection rules

Design notes
------------
- The aggregate is never mutated.  Every action returns a new Project in which
  only the path from the root to the edited node is rebuilt; untouched
  branches are the very same objects.
- Raw field values are coerced with coercion.py before they enter the tree.
- A missing target raises StructuralError and bad input raises
  DraftValidationError.  apply_action turns both into a logged no-op;
  ProjectDraftStore reports them as a failed OperationResult.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from coercion import (
    CoercionError,
    is_acceptable_occupancy_text,
    parse_localized_fraction,
    to_bool,
    to_date,
    to_decimal,
    to_month,
    to_non_negative_int,
    to_optional_decimal,
    to_optional_text,
    to_text,
    to_year,
)
from model import (
    APPROVED_STATES,
    PHASE_ORDER,
    AddDeliverable,
    AddMaterial,
    AddResourceAllocation,
    AddTask,
    AddWorkPackage,
    AllocationFeed,
    AllocationRecord,
    AllocationView,
    ApprovedSnapshot,
    Deliverable,
    DraftAction,
    ExpenseCategory,
    Material,
    Phase,
    Project,
    ProjectRef,
    ProjectState,
    RemoveAllResourceAllocationsForUser,
    RemoveDeliverable,
    RemoveMaterial,
    RemoveResourceAllocation,
    RemoveTask,
    RemoveWorkPackage,
    ResetDraft,
    ResourceAllocation,
    Task,
    UpdateDeliverable,
    UpdateMaterial,
    UpdateProject,
    UpdateResourceAllocation,
    UpdateTask,
    UpdateWorkPackage,
    WorkPackage,
    WorkPackageRef,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors & results
# ---------------------------------------------------------------------------

class DraftError(Exception):
    """Base class for errors raised while editing a draft."""


class StructuralError(DraftError, LookupError):
    """The action targets a WorkPackage/Task/Deliverable/allocation that does not exist."""


class DraftValidationError(DraftError, ValueError):
    """The action carries invalid field values or breaks a date/ordering rule."""


class ErrorKind(str, Enum):
    STRUCTURAL = "structural"
    VALIDATION = "validation"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class OperationResult:
    """Discriminated success/failure value returned to the calling layer."""
    ok: bool
    message: str = ""
    kind: Optional[ErrorKind] = None
    value: Any = None

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "OperationResult":
        return cls(ok=True, message=message, value=value)

    @classmethod
    def failure(cls, message: str, kind: ErrorKind) -> "OperationResult":
        return cls(ok=False, message=message, kind=kind)


# ---------------------------------------------------------------------------
# Field coercion tables
# ---------------------------------------------------------------------------

def _to_optional_ref(value: Any) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return str(value)


def _to_category(value: Any) -> ExpenseCategory:
    if isinstance(value, ExpenseCategory):
        return value
    try:
        return ExpenseCategory(str(value).lower())
    except ValueError as exc:
        raise CoercionError(f"{value!r} is not a known expense category.") from exc


def _to_user_id(value: Any) -> str:
    text = to_text(value).strip()
    if not text:
        raise CoercionError("user_id must not be empty.")
    return text


def _to_deliverables(value: Any) -> Tuple[Deliverable, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes, Mapping)):
        raise CoercionError("deliverables must be a sequence.")
    result = []
    for item in value:
        if isinstance(item, Deliverable):
            result.append(item)
        elif isinstance(item, Mapping):
            data = dict(item)
            deliverable_id = data.pop("id", None)
            values = _coerce_fields("Deliverable", _DELIVERABLE_FIELDS, data)
            if deliverable_id:
                values["id"] = str(deliverable_id)
            result.append(Deliverable(**values))
        else:
            raise CoercionError(f"Cannot use {item!r} as a deliverable.")
    return tuple(result)


_PROJECT_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "name": to_text,
    "description": to_optional_text,
    "start_date": to_date,
    "end_date": to_date,
    "overhead": to_optional_decimal,
    "funding_rate": to_optional_decimal,
    "hourly_rate": to_optional_decimal,
    "funding_source_id": _to_optional_ref,
    "responsible_id": _to_optional_ref,
}

_WORKPACKAGE_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "name": to_text,
    "description": to_optional_text,
    "start_date": to_date,
    "end_date": to_date,
    "completed": to_bool,
}

_TASK_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "name": to_text,
    "description": to_optional_text,
    "start_date": to_date,
    "end_date": to_date,
    "completed": to_bool,
    "deliverables": _to_deliverables,
}

_DELIVERABLE_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "name": to_text,
    "description": to_optional_text,
    "due_date": to_date,
    "completed": to_bool,
    "attachment": to_optional_text,
}

_MATERIAL_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "name": to_text,
    "unit_price": to_decimal,
    "quantity": to_non_negative_int,
    "category": _to_category,
    "year": to_year,
    "month": to_month,
    "description": to_optional_text,
    "completed": to_bool,
}

_ALLOCATION_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "user_id": _to_user_id,
    "month": to_month,
    "year": to_year,
    "occupancy": to_decimal,
}

_ALLOCATION_UPDATE_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "occupancy": to_decimal,
}


def _coerce_fields(
    entity: str,
    specs: Mapping[str, Callable[[Any], Any]],
    raw: Mapping[str, Any],
) -> Dict[str, Any]:
    """Coerce every present field of ``raw``; unknown names are rejected."""
    values: Dict[str, Any] = {}
    for name, value in raw.items():
        converter = specs.get(name)
        if converter is None:
            raise DraftValidationError(f"Unknown {entity} field '{name}'.")
        try:
            values[name] = converter(value)
        except CoercionError as exc:
            raise DraftValidationError(f"{entity}.{name}: {exc}") from exc
    return values


def _require(entity: str, values: Mapping[str, Any], *names: str) -> None:
    missing = [n for n in names if n not in values]
    if missing:
        raise DraftValidationError(f"{entity} requires: {', '.join(missing)}.")


def _check_name(entity: str, values: Mapping[str, Any]) -> None:
    if "name" in values and not values["name"].strip():
        raise DraftValidationError(f"{entity} name must not be empty.")


def _check_period(
    entity: str,
    start: Optional[date],
    end: Optional[date],
    strict: bool = False,
) -> None:
    if start is None or end is None:
        return
    if strict and end <= start:
        raise DraftValidationError(f"{entity} end_date must be after start_date.")
    if end < start:
        raise DraftValidationError(f"{entity} end_date must not be before start_date.")


# ---------------------------------------------------------------------------
# Tree navigation helpers (structural sharing)
# ---------------------------------------------------------------------------

def _keep_if_equal(old, new):
    """Return ``old`` when nothing changed so unchanged branches keep their identity."""
    return old if new == old else new


def _require_workpackage(state: Project, workpackage_id: str) -> WorkPackage:
    wp = state.find_workpackage(workpackage_id)
    if wp is None:
        raise StructuralError(f"WorkPackage {workpackage_id} not found.")
    return wp


def _require_task(wp: WorkPackage, task_id: str) -> Task:
    task = wp.find_task(task_id)
    if task is None:
        raise StructuralError(f"Task {task_id} not found in WorkPackage {wp.id}.")
    return task


def _map_workpackage(
    state: Project,
    workpackage_id: str,
    transform: Callable[[WorkPackage], WorkPackage],
) -> Project:
    wp = _require_workpackage(state, workpackage_id)
    updated = transform(wp)
    if updated is wp:
        return state
    return replace(
        state,
        workpackages=tuple(updated if w is wp else w for w in state.workpackages),
    )


def _map_task(
    wp: WorkPackage,
    task_id: str,
    transform: Callable[[Task], Task],
) -> WorkPackage:
    task = _require_task(wp, task_id)
    updated = transform(task)
    if updated is task:
        return wp
    return replace(wp, tasks=tuple(updated if t is task else t for t in wp.tasks))


# ---------------------------------------------------------------------------
# Reducer: project
# ---------------------------------------------------------------------------

def _update_project(state: Project, action: UpdateProject) -> Project:
    if not action.changes:
        return state
    values = _coerce_fields("Project", _PROJECT_FIELDS, action.changes)
    updated = replace(state, **values)
    _check_period("Project", updated.start_date, updated.end_date, strict=True)
    return _keep_if_equal(state, updated)


def _reset_draft(state: Project, action: ResetDraft) -> Project:
    return Project()


# ---------------------------------------------------------------------------
# Reducer: work packages
# ---------------------------------------------------------------------------

def _add_workpackage(state: Project, action: AddWorkPackage) -> Project:
    if state.find_workpackage(action.id) is not None:
        raise DraftValidationError(f"WorkPackage {action.id} already exists.")
    values = _coerce_fields("WorkPackage", _WORKPACKAGE_FIELDS, action.data)
    _require("WorkPackage", values, "name")
    _check_name("WorkPackage", values)
    wp = WorkPackage(id=action.id, **values)
    _check_period("WorkPackage", wp.start_date, wp.end_date)
    return replace(state, workpackages=state.workpackages + (wp,))


def _update_workpackage(state: Project, action: UpdateWorkPackage) -> Project:
    if not action.changes:
        _require_workpackage(state, action.workpackage_id)
        return state
    values = _coerce_fields("WorkPackage", _WORKPACKAGE_FIELDS, action.changes)
    _check_name("WorkPackage", values)

    def transform(wp: WorkPackage) -> WorkPackage:
        updated = replace(wp, **values)
        _check_period("WorkPackage", updated.start_date, updated.end_date)
        return _keep_if_equal(wp, updated)

    return _map_workpackage(state, action.workpackage_id, transform)


def _remove_workpackage(state: Project, action: RemoveWorkPackage) -> Project:
    _require_workpackage(state, action.workpackage_id)
    # Tasks, deliverables, materials and allocations live inside the WorkPackage,
    # so dropping it leaves nothing behind.
    return replace(
        state,
        workpackages=tuple(wp for wp in state.workpackages if wp.id != action.workpackage_id),
    )


# ---------------------------------------------------------------------------
# Reducer: tasks
# ---------------------------------------------------------------------------

def _add_task(state: Project, action: AddTask) -> Project:
    values = _coerce_fields("Task", _TASK_FIELDS, action.data)
    _require("Task", values, "name")
    _check_name("Task", values)

    def transform(wp: WorkPackage) -> WorkPackage:
        if wp.find_task(action.id) is not None:
            raise DraftValidationError(f"Task {action.id} already exists.")
        task = Task(id=action.id, **values)
        _check_period("Task", task.start_date, task.end_date)
        return replace(wp, tasks=wp.tasks + (task,))

    return _map_workpackage(state, action.workpackage_id, transform)


def _update_task(state: Project, action: UpdateTask) -> Project:
    values = _coerce_fields("Task", _TASK_FIELDS, action.changes)
    _check_name("Task", values)

    def update(task: Task) -> Task:
        if not values:
            return task
        updated = replace(task, **values)
        _check_period("Task", updated.start_date, updated.end_date)
        return _keep_if_equal(task, updated)

    return _map_workpackage(
        state,
        action.workpackage_id,
        lambda wp: _map_task(wp, action.task_id, update),
    )


def _remove_task(state: Project, action: RemoveTask) -> Project:
    def transform(wp: WorkPackage) -> WorkPackage:
        _require_task(wp, action.task_id)
        return replace(wp, tasks=tuple(t for t in wp.tasks if t.id != action.task_id))

    return _map_workpackage(state, action.workpackage_id, transform)


# ---------------------------------------------------------------------------
# Reducer: deliverables (always a full replacement of Task.deliverables)
# ---------------------------------------------------------------------------

def _locate_task(state: Project, workpackage_id: str, task_id: str) -> Task:
    return _require_task(_require_workpackage(state, workpackage_id), task_id)


def _replace_deliverables(
    state: Project,
    workpackage_id: str,
    task_id: str,
    deliverables: Tuple[Deliverable, ...],
) -> Project:
    return _update_task(
        state,
        UpdateTask(workpackage_id, task_id, {"deliverables": deliverables}),
    )


def _add_deliverable(state: Project, action: AddDeliverable) -> Project:
    task = _locate_task(state, action.workpackage_id, action.task_id)
    if any(d.id == action.id for d in task.deliverables):
        raise DraftValidationError(f"Deliverable {action.id} already exists.")
    values = _coerce_fields("Deliverable", _DELIVERABLE_FIELDS, action.data)
    _require("Deliverable", values, "name")
    _check_name("Deliverable", values)
    deliverable = Deliverable(id=action.id, **values)
    return _replace_deliverables(
        state, action.workpackage_id, action.task_id, task.deliverables + (deliverable,)
    )


def _update_deliverable(state: Project, action: UpdateDeliverable) -> Project:
    task = _locate_task(state, action.workpackage_id, action.task_id)
    current = next((d for d in task.deliverables if d.id == action.deliverable_id), None)
    if current is None:
        raise StructuralError(
            f"Deliverable {action.deliverable_id} not found in Task {action.task_id}."
        )
    values = _coerce_fields("Deliverable", _DELIVERABLE_FIELDS, action.changes)
    _check_name("Deliverable", values)
    updated = _keep_if_equal(current, replace(current, **values))
    if updated is current:
        return state
    return _replace_deliverables(
        state,
        action.workpackage_id,
        action.task_id,
        tuple(updated if d is current else d for d in task.deliverables),
    )


def _remove_deliverable(state: Project, action: RemoveDeliverable) -> Project:
    task = _locate_task(state, action.workpackage_id, action.task_id)
    if not any(d.id == action.deliverable_id for d in task.deliverables):
        raise StructuralError(
            f"Deliverable {action.deliverable_id} not found in Task {action.task_id}."
        )
    return _replace_deliverables(
        state,
        action.workpackage_id,
        action.task_id,
        tuple(d for d in task.deliverables if d.id != action.deliverable_id),
    )


# ---------------------------------------------------------------------------
# Reducer: materials
# ---------------------------------------------------------------------------

def _add_material(state: Project, action: AddMaterial) -> Project:
    values = _coerce_fields("Material", _MATERIAL_FIELDS, action.data)
    _require("Material", values, "name", "unit_price", "quantity", "year")
    _check_name("Material", values)
    material_id = state.last_material_id + 1
    material = Material(id=material_id, **values)
    state = _map_workpackage(
        state,
        action.workpackage_id,
        lambda wp: replace(wp, materials=wp.materials + (material,)),
    )
    return replace(state, last_material_id=material_id)


def _update_material(state: Project, action: UpdateMaterial) -> Project:
    values = _coerce_fields("Material", _MATERIAL_FIELDS, action.changes)
    _check_name("Material", values)

    def transform(wp: WorkPackage) -> WorkPackage:
        current = next((m for m in wp.materials if m.id == action.material_id), None)
        if current is None:
            raise StructuralError(
                f"Material {action.material_id} not found in WorkPackage {wp.id}."
            )
        updated = _keep_if_equal(current, replace(current, **values))
        if updated is current:
            return wp
        return replace(
            wp, materials=tuple(updated if m is current else m for m in wp.materials)
        )

    return _map_workpackage(state, action.workpackage_id, transform)


def _remove_material(state: Project, action: RemoveMaterial) -> Project:
    def transform(wp: WorkPackage) -> WorkPackage:
        if not any(m.id == action.material_id for m in wp.materials):
            raise StructuralError(
                f"Material {action.material_id} not found in WorkPackage {wp.id}."
            )
        return replace(
            wp, materials=tuple(m for m in wp.materials if m.id != action.material_id)
        )

    return _map_workpackage(state, action.workpackage_id, transform)


# ---------------------------------------------------------------------------
# Reducer: resource allocations
# ---------------------------------------------------------------------------

def _add_allocation(state: Project, action: AddResourceAllocation) -> Project:
    values = _coerce_fields("ResourceAllocation", _ALLOCATION_FIELDS, action.data)
    _require("ResourceAllocation", values, "user_id", "month", "year", "occupancy")
    allocation = ResourceAllocation(**values)
    # Duplicate (user, month, year) tuples are the caller's concern.
    return _map_workpackage(
        state,
        action.workpackage_id,
        lambda wp: replace(wp, allocations=wp.allocations + (allocation,)),
    )


def _update_allocation(state: Project, action: UpdateResourceAllocation) -> Project:
    values = _coerce_fields("ResourceAllocation", _ALLOCATION_UPDATE_FIELDS, action.data)
    key = (action.user_id, action.month, action.year)

    def transform(wp: WorkPackage) -> WorkPackage:
        index = next((i for i, a in enumerate(wp.allocations) if a.key == key), None)
        if index is None:
            raise StructuralError(
                f"No allocation for user {action.user_id} in "
                f"{action.month:02d}/{action.year} on WorkPackage {wp.id}."
            )
        if not values:
            return wp
        # Only the first tuple for the key is the one the ledger shows.
        old = wp.allocations[index]
        new = _keep_if_equal(old, replace(old, **values))
        if new is old:
            return wp
        return replace(
            wp, allocations=wp.allocations[:index] + (new,) + wp.allocations[index + 1:]
        )

    return _map_workpackage(state, action.workpackage_id, transform)


def _remove_allocation(state: Project, action: RemoveResourceAllocation) -> Project:
    key = (action.user_id, action.month, action.year)

    def transform(wp: WorkPackage) -> WorkPackage:
        if not any(a.key == key for a in wp.allocations):
            raise StructuralError(
                f"No allocation for user {action.user_id} in "
                f"{action.month:02d}/{action.year} on WorkPackage {wp.id}."
            )
        return replace(wp, allocations=tuple(a for a in wp.allocations if a.key != key))

    return _map_workpackage(state, action.workpackage_id, transform)


def _remove_all_allocations_for_user(
    state: Project, action: RemoveAllResourceAllocationsForUser
) -> Project:
    def transform(wp: WorkPackage) -> WorkPackage:
        if not wp.allocations_for_user(action.user_id):
            return wp
        return replace(
            wp, allocations=tuple(a for a in wp.allocations if a.user_id != action.user_id)
        )

    return _map_workpackage(state, action.workpackage_id, transform)


# ---------------------------------------------------------------------------
# Reducer entry points
# ---------------------------------------------------------------------------

_HANDLERS: Dict[type, Callable[[Project, Any], Project]] = {
    UpdateProject: _update_project,
    ResetDraft: _reset_draft,
    AddWorkPackage: _add_workpackage,
    UpdateWorkPackage: _update_workpackage,
    RemoveWorkPackage: _remove_workpackage,
    AddTask: _add_task,
    UpdateTask: _update_task,
    RemoveTask: _remove_task,
    AddMaterial: _add_material,
    UpdateMaterial: _update_material,
    RemoveMaterial: _remove_material,
    AddDeliverable: _add_deliverable,
    UpdateDeliverable: _update_deliverable,
    RemoveDeliverable: _remove_deliverable,
    AddResourceAllocation: _add_allocation,
    UpdateResourceAllocation: _update_allocation,
    RemoveResourceAllocation: _remove_allocation,
    RemoveAllResourceAllocationsForUser: _remove_all_allocations_for_user,
}


def reduce_draft(state: Project, action: DraftAction) -> Project:
    """
    Apply ``action`` to ``state`` and return the new aggregate.

    Raises StructuralError when the target does not exist and
    DraftValidationError when the payload is invalid.  ``state`` is never
    modified.
    """
    handler = _HANDLERS.get(type(action))
    if handler is None:
        raise TypeError(f"Unsupported draft action: {type(action).__name__}.")
    return handler(state, action)


def apply_action(state: Project, action: DraftAction) -> Project:
    """Like reduce_draft, but a rejected action leaves the state as it was."""
    try:
        return reduce_draft(state, action)
    except DraftError as exc:
        logger.warning("Ignored %s: %s", type(action).__name__, exc)
        return state


class ProjectDraftStore:
    """
    Holds the aggregate of one editing session.

    dispatch() is the only way to change it; the outcome of every action is
    reported as an OperationResult.
    """

    def __init__(
        self,
        initial: Optional[Project] = None,
        evaluator: Optional["PhaseCompletionEvaluator"] = None,
    ) -> None:
        self._state = initial if initial is not None else Project()
        self._evaluator = evaluator or PhaseCompletionEvaluator()

    @property
    def state(self) -> Project:
        return self._state

    @property
    def completion(self) -> "PhaseCompletion":
        return self._evaluator.evaluate(self._state)

    def dispatch(self, action: DraftAction) -> OperationResult:
        try:
            new_state = reduce_draft(self._state, action)
        except StructuralError as exc:
            logger.warning("%s ignored: %s", type(action).__name__, exc)
            return OperationResult.failure(str(exc), ErrorKind.STRUCTURAL)
        except DraftValidationError as exc:
            logger.info("%s rejected: %s", type(action).__name__, exc)
            return OperationResult.failure(str(exc), ErrorKind.VALIDATION)
        self._state = new_state
        return OperationResult.success(new_state)

    def load(self, project: Project) -> None:
        """Replace the whole aggregate, e.g. when a saved draft is restored."""
        self._state = project

    def reset(self) -> None:
        self._state = reduce_draft(self._state, ResetDraft())


# ---------------------------------------------------------------------------
# PhaseCompletionEvaluator
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PhaseCompletion:
    basic_info: bool
    finance: bool
    structure: bool
    resources: bool

    @property
    def summary(self) -> bool:
        return self.basic_info and self.finance and self.structure and self.resources

    def is_complete(self, phase: Phase) -> bool:
        return self.as_dict()[Phase(phase).value]

    def as_dict(self) -> Dict[str, bool]:
        return {
            Phase.BASIC_INFO.value: self.basic_info,
            Phase.FINANCE.value: self.finance,
            Phase.STRUCTURE.value: self.structure,
            Phase.RESOURCES.value: self.resources,
            Phase.SUMMARY.value: self.summary,
        }


class PhaseCompletionEvaluator:
    """
    Derives which creation phases a draft satisfies.

    Stateless; call evaluate() again after every action.
    """

    def evaluate(self, project: Project) -> PhaseCompletion:
        basic_info = bool(
            project.name.strip()
            and project.start_date
            and project.end_date
            and project.end_date > project.start_date
        )
        finance = (
            project.overhead is not None
            and project.funding_rate is not None
            and project.hourly_rate is not None
            and project.funding_source_id is not None
        )
        structure = bool(project.workpackages)
        resources = any(wp.allocations for wp in project.workpackages)
        return PhaseCompletion(
            basic_info=basic_info,
            finance=finance,
            structure=structure,
            resources=resources,
        )

    def period_warnings(self, project: Project) -> List[str]:
        """
        Work packages whose dates fall outside the project period.

        Informational only; the store does not reject such dates.
        """
        if project.start_date is None or project.end_date is None:
            return []
        warnings = []
        for wp in project.workpackages:
            starts_early = wp.start_date is not None and wp.start_date < project.start_date
            ends_late = wp.end_date is not None and wp.end_date > project.end_date
            if starts_early or ends_late:
                warnings.append(
                    f"WorkPackage '{wp.name}' ({wp.id}) falls outside the project period."
                )
        return warnings


# ---------------------------------------------------------------------------
# PhaseNavigator
# ---------------------------------------------------------------------------

class PhaseNavigator:
    """
    Walks the creation phases in order.

    Navigation is never blocked by incomplete phases; only submit() checks the
    summary flag.
    """

    def __init__(self, phases: Tuple[Phase, ...] = PHASE_ORDER) -> None:
        if not phases:
            raise ValueError("PhaseNavigator needs at least one phase.")
        self._phases = tuple(phases)
        self._index = 0

    @property
    def current(self) -> Phase:
        return self._phases[self._index]

    @property
    def step(self) -> int:
        """1-based position of the current phase."""
        return self._index + 1

    @property
    def total_steps(self) -> int:
        return len(self._phases)

    @property
    def is_first(self) -> bool:
        return self._index == 0

    @property
    def is_last(self) -> bool:
        return self._index == len(self._phases) - 1

    def next(self) -> Phase:
        if not self.is_last:
            self._index += 1
        return self.current

    def previous(self) -> Phase:
        if not self.is_first:
            self._index -= 1
        return self.current

    def jump_to(self, phase: Phase) -> Phase:
        self._index = self._phases.index(Phase(phase))
        return self.current

    def submit(self, completion: PhaseCompletion) -> OperationResult:
        if not completion.summary:
            missing = [
                p.value for p in self._phases
                if p is not Phase.SUMMARY and not completion.is_complete(p)
            ]
            return OperationResult.failure(
                "Complete all phases before submitting. Missing: " + ", ".join(missing) + ".",
                ErrorKind.VALIDATION,
            )
        return OperationResult.success(self.current)


# ---------------------------------------------------------------------------
# AllocationReconciler
# ---------------------------------------------------------------------------

EditKey = Tuple[str, int, int]  # (workpackage_id, month, year)


@dataclass(frozen=True)
class ProjectGroup:
    """A ledger row group: one project and the work packages it appears with."""
    project: ProjectRef
    workpackages: Tuple[WorkPackageRef, ...]


def group_by_project(records: Iterable[AllocationRecord]) -> List[ProjectGroup]:
    """
    Partition records by project, in first-seen order.

    A work package is listed only if at least one record references it.
    """
    projects: "OrderedDict[str, ProjectRef]" = OrderedDict()
    workpackages: Dict[str, "OrderedDict[str, WorkPackageRef]"] = {}
    for record in records:
        if record.project.id not in projects:
            projects[record.project.id] = record.project
            workpackages[record.project.id] = OrderedDict()
        workpackages[record.project.id].setdefault(record.workpackage.id, record.workpackage)
    return [
        ProjectGroup(project=ref, workpackages=tuple(workpackages[pid].values()))
        for pid, ref in projects.items()
    ]


class AllocationReconciler:
    """
    Monthly occupancy ledger of one user, comparing the real and submitted feeds.

    Edits typed into the real view are staged as raw text until commit();
    totals of the real view include staged values, the submitted view never
    does.
    """

    def __init__(
        self,
        real: Iterable[AllocationRecord],
        submitted: Iterable[AllocationRecord],
        year: int,
        month: Optional[int] = None,
        available_years: Iterable[int] = (),
        tolerance: Decimal = Decimal("0.001"),
    ) -> None:
        self._real: Tuple[AllocationRecord, ...] = tuple(real)
        self._submitted: Tuple[AllocationRecord, ...] = tuple(submitted)
        self._year = year
        self._month = month
        self._available_years = tuple(available_years)
        self._tolerance = tolerance
        self._edits: Dict[EditKey, str] = {}

    @classmethod
    def from_feed(
        cls,
        feed: AllocationFeed,
        year: Optional[int] = None,
        tolerance: Decimal = Decimal("0.001"),
    ) -> "AllocationReconciler":
        if year is None:
            year = feed.available_years[0] if feed.available_years else date.today().year
        return cls(
            feed.real,
            feed.submitted,
            year=year,
            available_years=feed.available_years,
            tolerance=tolerance,
        )

    # --- Selection ----------------------------------------------------------

    @property
    def year(self) -> int:
        return self._year

    @property
    def month(self) -> Optional[int]:
        return self._month

    @property
    def available_years(self) -> Tuple[int, ...]:
        return self._available_years or (self._year,)

    @property
    def real(self) -> Tuple[AllocationRecord, ...]:
        return self._real

    @property
    def submitted(self) -> Tuple[AllocationRecord, ...]:
        return self._submitted

    @property
    def staged_edits(self) -> Dict[EditKey, str]:
        return dict(self._edits)

    @property
    def has_pending_edits(self) -> bool:
        return bool(self._edits)

    def select_year(self, year: int) -> None:
        self._year = to_year(year)

    def select_month(self, month: Optional[int]) -> None:
        self._month = None if month is None else to_month(month)

    def months(self) -> List[int]:
        """The months on display: the selected one, or all twelve."""
        if self._month is not None:
            return [self._month]
        return list(range(1, 13))

    # --- Reads --------------------------------------------------------------

    def _records(self, view: AllocationView) -> Tuple[AllocationRecord, ...]:
        return self._submitted if AllocationView(view) is AllocationView.SUBMITTED else self._real

    def group_by_project(
        self, records: Optional[Iterable[AllocationRecord]] = None
    ) -> List[ProjectGroup]:
        if records is None:
            records = self._real + self._submitted
        return group_by_project(records)

    def value_for(
        self,
        view: AllocationView,
        workpackage_id: str,
        month: int,
        year: Optional[int] = None,
    ) -> Decimal:
        """Committed occupancy for one cell; 0 when there is no record."""
        key = (workpackage_id, month, self._year if year is None else year)
        return sum(
            (r.occupancy for r in self._records(view) if r.key == key),
            Decimal("0"),
        )

    def staged_value(self, workpackage_id: str, month: int) -> Optional[str]:
        return self._edits.get((workpackage_id, month, self._year))

    def total_for(self, view: AllocationView, month: int) -> Decimal:
        """Sum of one month in the selected year; real totals include staged edits."""
        view = AllocationView(view)
        per_workpackage: Dict[str, Decimal] = {}
        for record in self._records(view):
            if record.year == self._year and record.month == month:
                per_workpackage[record.workpackage.id] = (
                    per_workpackage.get(record.workpackage.id, Decimal("0")) + record.occupancy
                )
        if view is AllocationView.REAL:
            for (workpackage_id, edit_month, edit_year), text in self._edits.items():
                if edit_month == month and edit_year == self._year:
                    per_workpackage[workpackage_id] = parse_localized_fraction(text)
        return sum(per_workpackage.values(), Decimal("0"))

    def difference(self, workpackage_id: str, month: int) -> Decimal:
        """Committed real minus submitted occupancy for one cell."""
        return self.value_for(AllocationView.REAL, workpackage_id, month) - self.value_for(
            AllocationView.SUBMITTED, workpackage_id, month
        )

    def is_balanced(self) -> bool:
        """True when real and submitted totals agree for every displayed month."""
        return all(
            abs(self.total_for(AllocationView.REAL, m) - self.total_for(AllocationView.SUBMITTED, m))
            < self._tolerance
            for m in self.months()
        )

    # --- Edits --------------------------------------------------------------

    def _refs_for(self, workpackage_id: str) -> Optional[AllocationRecord]:
        return next(
            (r for r in self._real + self._submitted if r.workpackage.id == workpackage_id),
            None,
        )

    def stage_edit(self, workpackage_id: str, month: int, text: str) -> bool:
        """
        Stage a raw cell value for the real view.

        Returns False, keeping any earlier staged value, when the text is not
        an acceptable occupancy or the cell does not exist.
        """
        if not is_acceptable_occupancy_text(text):
            return False
        if not 1 <= month <= 12:
            logger.warning("Ignored edit for invalid month %r", month)
            return False
        if self._refs_for(workpackage_id) is None:
            logger.warning("Ignored edit for unknown WorkPackage %s", workpackage_id)
            return False
        self._edits[(workpackage_id, month, self._year)] = text
        return True

    def discard_edits(self) -> None:
        self._edits.clear()

    def commit(self) -> Tuple[AllocationRecord, ...]:
        """
        Fold staged edits into the real feed and clear them.

        Existing records for an edited cell are replaced by a single record
        holding the new value; cells without a real record get one.  Returns
        the records that changed.  The submitted feed is left alone.
        """
        real = list(self._real)
        changed: List[AllocationRecord] = []
        for (workpackage_id, month, year), text in self._edits.items():
            value = parse_localized_fraction(text)
            key = (workpackage_id, month, year)
            positions = [i for i, r in enumerate(real) if r.key == key]
            if positions:
                record = replace(real[positions[0]], occupancy=value)
                real[positions[0]] = record
                for i in reversed(positions[1:]):
                    del real[i]
            else:
                template = self._refs_for(workpackage_id)
                record = AllocationRecord(
                    year=year,
                    month=month,
                    occupancy=value,
                    workpackage=template.workpackage,
                    project=template.project,
                )
                real.append(record)
            changed.append(record)
        self._real = tuple(real)
        self._edits.clear()
        logger.debug("Committed %d allocation edit(s)", len(changed))
        return tuple(changed)


# ---------------------------------------------------------------------------
# AllocationFeedBuilder
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProjectAllocationTotals:
    project_id: str
    name: str
    real_total: Decimal
    submitted_total: Decimal


class AllocationFeedBuilder:
    """
    Builds the per-user allocation feeds from stored projects.

    - real      : live allocations of approved / in-development / completed projects
    - pending   : live allocations of projects awaiting approval
    - submitted : allocations recorded in approval snapshots, summed per
                  (project, work package, month, year)
    """

    def __init__(self, rounding_places: int = 3) -> None:
        self._quantum = Decimal(1).scaleb(-rounding_places)

    def _round(self, value: Decimal) -> Decimal:
        return value.quantize(self._quantum, rounding=ROUND_HALF_UP)

    def build(
        self,
        user_id: str,
        projects: Iterable[Project],
        year: Optional[int] = None,
    ) -> AllocationFeed:
        years = set()
        real: List[AllocationRecord] = []
        pending: List[AllocationRecord] = []
        submitted: "OrderedDict[Tuple[str, str, int, int], AllocationRecord]" = OrderedDict()

        for project in projects:
            if project.id is None:
                continue
            ref = ProjectRef(id=project.id, name=project.name, state=project.state)

            if project.state in APPROVED_STATES:
                target: Optional[List[AllocationRecord]] = real
            elif project.state is ProjectState.PENDING:
                target = pending
            else:
                target = None

            if target is not None:
                for wp in project.workpackages:
                    wp_ref = WorkPackageRef(id=wp.id, name=wp.name)
                    for a in wp.allocations:
                        if a.user_id != user_id or (year is not None and a.year != year):
                            continue
                        years.add(a.year)
                        target.append(
                            AllocationRecord(
                                year=a.year,
                                month=a.month,
                                occupancy=self._round(a.occupancy),
                                workpackage=wp_ref,
                                project=ref,
                            )
                        )

            if project.approved is None:
                continue
            for wp in project.approved.project.workpackages:
                wp_ref = WorkPackageRef(id=wp.id, name=wp.name)
                for a in wp.allocations:
                    if a.user_id != user_id or (year is not None and a.year != year):
                        continue
                    years.add(a.year)
                    key = (project.id, wp.id, a.month, a.year)
                    existing = submitted.get(key)
                    occupancy = a.occupancy if existing is None else existing.occupancy + a.occupancy
                    submitted[key] = AllocationRecord(
                        year=a.year,
                        month=a.month,
                        occupancy=self._round(occupancy),
                        workpackage=wp_ref,
                        project=ref,
                    )

        return AllocationFeed(
            real=tuple(real),
            submitted=tuple(submitted.values()),
            pending=tuple(pending),
            available_years=tuple(sorted(years, reverse=True)),
        )

    def totals_by_project(
        self,
        projects: Iterable[Project],
        year: Optional[int] = None,
    ) -> List[ProjectAllocationTotals]:
        """Real vs submitted occupancy per project, across all users."""
        result = []
        for project in projects:
            if project.id is None or project.state not in APPROVED_STATES:
                continue
            real_total = sum(
                (
                    a.occupancy
                    for wp in project.workpackages
                    for a in wp.allocations
                    if year is None or a.year == year
                ),
                Decimal("0"),
            )
            submitted_total = Decimal("0")
            if project.approved is not None:
                submitted_total = sum(
                    (
                        a.occupancy
                        for wp in project.approved.project.workpackages
                        for a in wp.allocations
                        if year is None or a.year == year
                    ),
                    Decimal("0"),
                )
            result.append(
                ProjectAllocationTotals(
                    project_id=project.id,
                    name=project.name,
                    real_total=real_total,
                    submitted_total=submitted_total,
                )
            )
        return result


# ---------------------------------------------------------------------------
# SnapshotSelector
# ---------------------------------------------------------------------------

class SnapshotSelector:
    """
    Chooses between the live project and its approved structure.

    The submitted view keeps the live identity and lifecycle state, so callers
    always see the canonical project while browsing the approved structure.
    """

    def has_submitted_view(self, project: Project) -> bool:
        return project.state in APPROVED_STATES and project.approved is not None

    def select_view(self, project: Project, mode: AllocationView) -> Project:
        if AllocationView(mode) is AllocationView.REAL or not self.has_submitted_view(project):
            return project
        return replace(
            project.approved.project,
            id=project.id,
            state=project.state,
            approved=project.approved,
        )


# ---------------------------------------------------------------------------
# ApprovalService
# ---------------------------------------------------------------------------

class ApprovalService:
    """Approval and rejection rules for submitted projects."""

    def approve(
        self,
        project: Project,
        today: Optional[date] = None,
        approved_at: Optional[datetime] = None,
    ) -> Project:
        """
        Capture the approval snapshot and advance the lifecycle state.

        A project whose start date is today or earlier goes straight to
        IN_DEVELOPMENT; otherwise it becomes APPROVED.
        """
        if project.state is not ProjectState.PENDING:
            raise ValueError("Only PENDING projects can be approved.")
        today = today or date.today()
        snapshot = ApprovedSnapshot(
            project=replace(project, approved=None),
            approved_at=approved_at or datetime.now(timezone.utc),
        )
        new_state = ProjectState.APPROVED
        if project.start_date is not None and project.start_date <= today:
            new_state = ProjectState.IN_DEVELOPMENT
        return replace(project, state=new_state, approved=snapshot)

    def reject(self, project: Project) -> Project:
        """Validate a rejection; the caller removes the project afterwards."""
        if project.state is not ProjectState.PENDING:
            raise ValueError("Only PENDING projects can be rejected.")
        return project
