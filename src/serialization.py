"""
serialization.py

Conversions between the Project aggregate and plain dictionaries.

- DraftSerializer           – JSON-safe draft content (save / restore a draft)
- SubmissionPayloadBuilder  – the payload sent when a finished draft is submitted

Draft content uses ISO-8601 strings for dates and decimal strings for money,
rates and occupancy, so it survives any JSON store without float drift.
Reading content back goes through coercion.py, which also accepts the
submission payload's native numbers and ``date`` objects.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from coercion import (
    CoercionError,
    decimal_to_number,
    decimal_to_str,
    to_bool,
    to_date,
    to_decimal,
    to_int,
    to_month,
    to_non_negative_int,
    to_optional_decimal,
    to_optional_text,
    to_text,
    to_year,
)
from model import (
    ApprovedSnapshot,
    Deliverable,
    ExpenseCategory,
    Material,
    Project,
    ProjectState,
    ResourceAllocation,
    Task,
    WorkPackage,
)

logger = logging.getLogger(__name__)

CONTENT_VERSION = 1


class DraftContentError(ValueError):
    """Raised when stored draft content cannot be turned back into a Project."""


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _ref(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        result = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        result = datetime.fromisoformat(text)
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


# ---------------------------------------------------------------------------
# DraftSerializer
# ---------------------------------------------------------------------------

class DraftSerializer:
    """Round-trips a Project through JSON-safe draft content."""

    # --- Project -> content -------------------------------------------------

    def to_content(self, project: Project) -> Dict[str, Any]:
        content = self._project(project)
        content["version"] = CONTENT_VERSION
        return content

    def _project(self, p: Project) -> Dict[str, Any]:
        return {
            "id": p.id,
            "name": p.name,
            "description": p.description,
            "start_date": _iso(p.start_date),
            "end_date": _iso(p.end_date),
            "state": p.state.value,
            "overhead": decimal_to_str(p.overhead),
            "funding_rate": decimal_to_str(p.funding_rate),
            "hourly_rate": decimal_to_str(p.hourly_rate),
            "funding_source_id": p.funding_source_id,
            "responsible_id": p.responsible_id,
            "last_material_id": p.last_material_id,
            "workpackages": [self._workpackage(wp) for wp in p.workpackages],
            "approved": self._snapshot(p.approved) if p.approved else None,
        }

    def _snapshot(self, s: ApprovedSnapshot) -> Dict[str, Any]:
        return {
            "approved_at": s.approved_at.isoformat(),
            "project": self._project(s.project),
        }

    def _workpackage(self, wp: WorkPackage) -> Dict[str, Any]:
        return {
            "id": wp.id,
            "name": wp.name,
            "description": wp.description,
            "start_date": _iso(wp.start_date),
            "end_date": _iso(wp.end_date),
            "completed": wp.completed,
            "tasks": [self._task(t) for t in wp.tasks],
            "materials": [self._material(m) for m in wp.materials],
            "allocations": [
                {
                    "user_id": a.user_id,
                    "month": a.month,
                    "year": a.year,
                    "occupancy": decimal_to_str(a.occupancy),
                }
                for a in wp.allocations
            ],
        }

    def _task(self, t: Task) -> Dict[str, Any]:
        return {
            "id": t.id,
            "name": t.name,
            "description": t.description,
            "start_date": _iso(t.start_date),
            "end_date": _iso(t.end_date),
            "completed": t.completed,
            "deliverables": [
                {
                    "id": d.id,
                    "name": d.name,
                    "description": d.description,
                    "due_date": _iso(d.due_date),
                    "completed": d.completed,
                    "attachment": d.attachment,
                }
                for d in t.deliverables
            ],
        }

    def _material(self, m: Material) -> Dict[str, Any]:
        return {
            "id": m.id,
            "name": m.name,
            "unit_price": decimal_to_str(m.unit_price),
            "quantity": m.quantity,
            "category": m.category.value,
            "year": m.year,
            "month": m.month,
            "description": m.description,
            "completed": m.completed,
        }

    # --- content -> Project -------------------------------------------------

    def from_content(self, content: Mapping[str, Any]) -> Project:
        version = content.get("version", CONTENT_VERSION)
        if version != CONTENT_VERSION:
            raise DraftContentError(f"Unsupported draft content version {version!r}.")
        try:
            return self._read_project(content)
        except DraftContentError:
            raise
        except (CoercionError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Unreadable draft content: %s", exc)
            raise DraftContentError(f"Invalid draft content: {exc}") from exc

    def _read_project(self, c: Mapping[str, Any]) -> Project:
        workpackages = tuple(self._read_workpackage(wp) for wp in c.get("workpackages") or ())
        highest_material = max(
            (m.id for wp in workpackages for m in wp.materials), default=0
        )
        approved = c.get("approved")
        return Project(
            id=_ref(c.get("id")),
            name=to_text(c.get("name")),
            description=to_optional_text(c.get("description")),
            start_date=to_date(c.get("start_date")),
            end_date=to_date(c.get("end_date")),
            state=ProjectState(c.get("state") or ProjectState.DRAFT.value),
            overhead=to_optional_decimal(c.get("overhead")),
            funding_rate=to_optional_decimal(c.get("funding_rate")),
            hourly_rate=to_optional_decimal(c.get("hourly_rate")),
            funding_source_id=_ref(c.get("funding_source_id")),
            responsible_id=_ref(c.get("responsible_id")),
            workpackages=workpackages,
            # Older content may lack the counter; never hand out an id already in use.
            last_material_id=max(to_int(c.get("last_material_id") or 0), highest_material),
            approved=self._read_snapshot(approved) if approved else None,
        )

    def _read_snapshot(self, c: Mapping[str, Any]) -> ApprovedSnapshot:
        project = self._read_project(c["project"])
        return ApprovedSnapshot(
            project=replace(project, approved=None),
            approved_at=_to_datetime(c["approved_at"]),
        )

    def _read_workpackage(self, c: Mapping[str, Any]) -> WorkPackage:
        return WorkPackage(
            id=str(c["id"]),
            name=to_text(c.get("name")),
            description=to_optional_text(c.get("description")),
            start_date=to_date(c.get("start_date")),
            end_date=to_date(c.get("end_date")),
            completed=to_bool(c.get("completed")),
            tasks=tuple(self._read_task(t) for t in c.get("tasks") or ()),
            materials=tuple(self._read_material(m) for m in c.get("materials") or ()),
            allocations=tuple(
                ResourceAllocation(
                    user_id=str(a["user_id"]),
                    month=to_month(a["month"]),
                    year=to_year(a["year"]),
                    occupancy=to_decimal(a["occupancy"]),
                )
                for a in c.get("allocations") or ()
            ),
        )

    def _read_task(self, c: Mapping[str, Any]) -> Task:
        return Task(
            id=str(c["id"]),
            name=to_text(c.get("name")),
            description=to_optional_text(c.get("description")),
            start_date=to_date(c.get("start_date")),
            end_date=to_date(c.get("end_date")),
            completed=to_bool(c.get("completed")),
            deliverables=tuple(
                Deliverable(
                    id=str(d["id"]),
                    name=to_text(d.get("name")),
                    description=to_optional_text(d.get("description")),
                    due_date=to_date(d.get("due_date")),
                    completed=to_bool(d.get("completed")),
                    attachment=to_optional_text(d.get("attachment")),
                )
                for d in c.get("deliverables") or ()
            ),
        )

    def _read_material(self, c: Mapping[str, Any]) -> Material:
        return Material(
            id=to_int(c["id"]),
            name=to_text(c.get("name")),
            unit_price=to_decimal(c["unit_price"]),
            quantity=to_non_negative_int(c["quantity"]),
            category=ExpenseCategory(c.get("category") or ExpenseCategory.MATERIALS.value),
            year=to_year(c["year"]),
            month=to_month(c.get("month", 1)),
            description=to_optional_text(c.get("description")),
            completed=to_bool(c.get("completed")),
        )


# ---------------------------------------------------------------------------
# SubmissionPayloadBuilder
# ---------------------------------------------------------------------------

class SubmissionPayloadBuilder:
    """
    Builds the payload for submitting a finished draft.

    Same shape as draft content, except numbers are plain int/float, dates
    stay ``date`` objects and the state is always "pending".  The server-side
    identity and the approval snapshot are left out.
    """

    def build(self, project: Project) -> Dict[str, Any]:
        return {
            "name": project.name,
            "description": project.description,
            "start_date": project.start_date,
            "end_date": project.end_date,
            "state": ProjectState.PENDING.value,
            "overhead": decimal_to_number(project.overhead),
            "funding_rate": decimal_to_number(project.funding_rate),
            "hourly_rate": decimal_to_number(project.hourly_rate),
            "funding_source_id": project.funding_source_id,
            "responsible_id": project.responsible_id,
            "last_material_id": project.last_material_id,
            "workpackages": [self._workpackage(wp) for wp in project.workpackages],
        }

    def _workpackage(self, wp: WorkPackage) -> Dict[str, Any]:
        return {
            "id": wp.id,
            "name": wp.name,
            "description": wp.description,
            "start_date": wp.start_date,
            "end_date": wp.end_date,
            "completed": wp.completed,
            "tasks": [
                {
                    "id": t.id,
                    "name": t.name,
                    "description": t.description,
                    "start_date": t.start_date,
                    "end_date": t.end_date,
                    "completed": t.completed,
                    "deliverables": [
                        {
                            "id": d.id,
                            "name": d.name,
                            "description": d.description,
                            "due_date": d.due_date,
                            "completed": d.completed,
                            "attachment": d.attachment,
                        }
                        for d in t.deliverables
                    ],
                }
                for t in wp.tasks
            ],
            "materials": [
                {
                    "id": m.id,
                    "name": m.name,
                    "unit_price": decimal_to_number(m.unit_price),
                    "quantity": m.quantity,
                    "category": m.category.value,
                    "year": m.year,
                    "month": m.month,
                    "description": m.description,
                    "completed": m.completed,
                }
                for m in wp.materials
            ],
            "allocations": [
                {
                    "user_id": a.user_id,
                    "month": a.month,
                    "year": a.year,
                    "occupancy": decimal_to_number(a.occupancy),
                }
                for a in wp.allocations
            ],
        }

