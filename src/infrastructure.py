"""
infrastructure.py

In-memory implementation of the repository interfaces and the Unit of Work.

A self-contained backend that stores drafts and projects in plain Python
dicts keyed by id.  Suitable for local development, demos and integration
testing without a real database.

Domain objects are frozen, so storing the object itself is safe: a use case
can only change what is stored by saving a new object.

To swap in a real database later, implement the same Abstract* interfaces
from application.py and override get_uow() in api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)
"""

from __future__ import annotations

from application import (
    AbstractDraftRepository,
    AbstractProjectRepository,
    AbstractUnitOfWork,
)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with typed get/save/delete helpers."""

    def fetch(self, key: str):
        return self.get(key)

    def put(self, obj) -> None:
        self[obj.id] = obj

    def remove(self, key: str) -> None:
        self.pop(key, None)

    def all(self) -> list:
        return list(self.values())


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.drafts:   _Store = _Store()
        self.projects: _Store = _Store()


_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryDraftRepository(AbstractDraftRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, draft_id):          return self._s.fetch(draft_id)
    def list_for_owner(self, owner_id):
        return [d for d in self._s.all() if d.owner_id == owner_id]
    def save(self, draft):            self._s.put(draft)
    def delete(self, draft_id):       self._s.remove(draft_id)


class InMemoryProjectRepository(AbstractProjectRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, project_id):        return self._s.fetch(project_id)
    def list_all(self):               return self._s.all()
    def save(self, project):          self._s.put(project)
    def delete(self, project_id):     self._s.remove(project_id)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps the in-memory repositories.  commit() and rollback() are no-ops
    because dict writes are immediate; there is no transaction to manage.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self.drafts   = InMemoryDraftRepository(db.drafts)
        self.projects = InMemoryProjectRepository(db.projects)

    def commit(self)   -> None: pass   # no-op for in-memory
    def rollback(self) -> None: pass   # no-op for in-memory
