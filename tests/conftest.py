"""
Shared fixtures for the project ledger tests.
"""
from datetime import date
from decimal import Decimal

import pytest

from config import get_config
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import (
    ApprovedSnapshot,
    Project,
    ProjectState,
    ResourceAllocation,
    WorkPackage,
)


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Every test starts from the repository's projectledger.yaml."""
    monkeypatch.delenv("PROJECTLEDGER_CONFIG", raising=False)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def uow_factory(db):
    return lambda: InMemoryUnitOfWork(db)


@pytest.fixture
def uow(db):
    return InMemoryUnitOfWork(db)


def allocation(user_id, month, year, occupancy):
    return ResourceAllocation(
        user_id=user_id, month=month, year=year, occupancy=Decimal(occupancy)
    )


@pytest.fixture
def complete_project():
    """A draft that satisfies every creation phase."""
    return Project(
        name="Alpha",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 12, 31),
        overhead=Decimal("25"),
        funding_rate=Decimal("0.85"),
        hourly_rate=Decimal("12.5"),
        funding_source_id="fs-1",
        workpackages=(
            WorkPackage(
                id="wp1",
                name="Research",
                start_date=date(2024, 1, 1),
                end_date=date(2024, 6, 30),
                allocations=(allocation("u1", 1, 2024, "0.5"),),
            ),
        ),
    )


@pytest.fixture
def approved_project():
    """
    An approved project: u1 was submitted at 0.6 on wp1 in January 2024 and
    really works 0.5.
    """
    submitted = Project(
        id="p1",
        name="Alpha",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 12, 31),
        state=ProjectState.PENDING,
        workpackages=(
            WorkPackage(
                id="wp1",
                name="Research",
                allocations=(allocation("u1", 1, 2024, "0.6"),),
            ),
        ),
    )
    return Project(
        id="p1",
        name="Alpha",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 12, 31),
        state=ProjectState.IN_DEVELOPMENT,
        workpackages=(
            WorkPackage(
                id="wp1",
                name="Research",
                allocations=(allocation("u1", 1, 2024, "0.5"),),
            ),
        ),
        approved=ApprovedSnapshot(project=submitted),
    )
