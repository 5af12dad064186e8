"""
infrastructure.py

In-memory implementation of all repository interfaces and the Unit of Work.

This is a self-contained backend that stores everything in plain Python dicts
keyed by UUID.  It is intentionally simple and suitable for local development,
demos, and integration testing without needing a real database.

Signature writes are the one place where ordering matters: they run under the
database lock as a read-modify-write of the stored record, so two parties
signing at the same moment both land and exactly one of them sets the lock.

To swap in a real database later, implement the same Abstract* interfaces
from application.py and override get_uow() in api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)

Nothing in service.py, application.py, or api.py needs to change.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from application import (
    AbstractBaselineVersionRepository,
    AbstractCertificateRepository,
    AbstractDeliverableRepository,
    AbstractMilestoneRepository,
    AbstractPendingChangeStore,
    AbstractPlanItemRepository,
    AbstractProjectMemberRepository,
    AbstractProjectRepository,
    AbstractUnitOfWork,
    AbstractUserRepository,
    AbstractVariationImpactRepository,
    AbstractVariationRefGenerator,
    AbstractVariationRepository,
    SignatureWrite,
)
from model import PendingChange, Signature, SignatoryParty

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with typed get/save/delete helpers."""

    def fetch(self, key: uuid.UUID):
        return self.get(key)

    def put(self, obj) -> None:
        self[obj.id] = obj

    def remove(self, key: uuid.UUID) -> None:
        self.pop(key, None)

    def all(self) -> list:
        return list(self.values())


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.lock = threading.RLock()
        self.projects:          _Store = _Store()
        self.users:             _Store = _Store()
        self.members:           _Store = _Store()
        self.milestones:        _Store = _Store()
        self.baseline_versions: _Store = _Store()
        self.deliverables:      _Store = _Store()
        self.certificates:      _Store = _Store()
        self.variations:        _Store = _Store()
        self.variation_impacts: _Store = _Store()
        self.plan_items:        _Store = _Store()
        # (project_id, user_id) → current PendingChange / batch queue
        self.pending_current: Dict[Tuple[uuid.UUID, uuid.UUID], PendingChange] = {}
        self.pending_batches: Dict[Tuple[uuid.UUID, uuid.UUID], List[PendingChange]] = {}
        # project_id → last issued variation number
        self.variation_counters: Dict[uuid.UUID, int] = {}


# Module-level singleton shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryProjectRepository(AbstractProjectRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, project_id):        return self._s.fetch(project_id)
    def list_all(self):               return self._s.all()
    def save(self, project):          self._s.put(project)


class InMemoryUserRepository(AbstractUserRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, user_id):           return self._s.fetch(user_id)
    def get_by_email(self, email):
        email = email.strip().lower()
        return next((u for u in self._s.all() if u.email == email), None)
    def list_all(self):               return self._s.all()
    def save(self, user):             self._s.put(user)


class InMemoryProjectMemberRepository(AbstractProjectMemberRepository):
    def __init__(self, store: _Store): self._s = store
    def list_for_project(self, project_id):
        return [m for m in self._s.all() if m.project_id == project_id]
    def save(self, member):           self._s.put(member)
    def delete(self, member_id):      self._s.remove(member_id)


class InMemoryMilestoneRepository(AbstractMilestoneRepository):
    def __init__(self, db: InMemoryDatabase):
        self._s = db.milestones
        self._lock = db.lock

    def get(self, milestone_id):      return self._s.fetch(milestone_id)
    def list_for_project(self, project_id):
        return [m for m in self._s.all() if m.project_id == project_id]
    def save(self, milestone):        self._s.put(milestone)

    def apply_baseline_signature(
        self, milestone_id: uuid.UUID, party: SignatoryParty, signature: Signature
    ) -> Optional[SignatureWrite]:
        with self._lock:
            current = self._s.fetch(milestone_id)
            if current is None:
                return None
            if current.baseline_locked:
                return SignatureWrite(current, applied=False, completed=False)
            if party == SignatoryParty.SUPPLIER:
                updated = replace(current, baseline_supplier_signature=signature)
                other = current.baseline_customer_signature
            else:
                updated = replace(current, baseline_customer_signature=signature)
                other = current.baseline_supplier_signature
            completed = other is not None
            if completed:
                updated.baseline_locked = True
                logger.debug("Milestone %s: second signature stored, lock flag set", milestone_id)
            updated.updated_at = signature.signed_at
            self._s.put(updated)
            return SignatureWrite(updated, applied=True, completed=completed)

    def clear_baseline_signatures(self, milestone_id: uuid.UUID):
        with self._lock:
            current = self._s.fetch(milestone_id)
            if current is None:
                return None
            updated = replace(
                current,
                baseline_locked=False,
                baseline_supplier_signature=None,
                baseline_customer_signature=None,
            )
            self._s.put(updated)
            return updated


class InMemoryBaselineVersionRepository(AbstractBaselineVersionRepository):
    def __init__(self, store: _Store): self._s = store
    def list_for_milestone(self, milestone_id):
        return [v for v in self._s.all() if v.milestone_id == milestone_id]
    def save(self, version):          self._s.put(version)


class InMemoryDeliverableRepository(AbstractDeliverableRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, deliverable_id):    return self._s.fetch(deliverable_id)
    def get_milestone_id(self, deliverable_id):
        deliverable = self._s.fetch(deliverable_id)
        return deliverable.milestone_id if deliverable else None
    def list_for_milestone(self, milestone_id):
        return [d for d in self._s.all() if d.milestone_id == milestone_id]
    def list_for_project(self, project_id):
        return [d for d in self._s.all() if d.project_id == project_id]
    def save(self, deliverable):      self._s.put(deliverable)


class InMemoryCertificateRepository(AbstractCertificateRepository):
    def __init__(self, db: InMemoryDatabase):
        self._s = db.certificates
        self._lock = db.lock

    def get(self, certificate_id):    return self._s.fetch(certificate_id)
    def get_for_milestone(self, milestone_id):
        return next((c for c in self._s.all() if c.milestone_id == milestone_id), None)
    def list_for_project(self, project_id):
        return [c for c in self._s.all() if c.project_id == project_id]

    def add(self, certificate) -> bool:
        with self._lock:
            if self.get_for_milestone(certificate.milestone_id) is not None:
                return False
            self._s.put(certificate)
            return True

    def apply_signature(
        self, certificate_id: uuid.UUID, party: SignatoryParty, signature: Signature
    ) -> Optional[SignatureWrite]:
        with self._lock:
            current = self._s.fetch(certificate_id)
            if current is None:
                return None
            if current.supplier_signature and current.customer_signature:
                return SignatureWrite(current, applied=False, completed=False)
            if party == SignatoryParty.SUPPLIER:
                updated = replace(current, supplier_signature=signature)
            else:
                updated = replace(current, customer_signature=signature)
            self._s.put(updated)
            completed = bool(updated.supplier_signature and updated.customer_signature)
            return SignatureWrite(updated, applied=True, completed=completed)


class InMemoryVariationRepository(AbstractVariationRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, variation_id):      return self._s.fetch(variation_id)
    def list_for_project(self, project_id):
        return [v for v in self._s.all() if v.project_id == project_id]
    def add(self, variation):         self._s.put(variation)
    def delete(self, variation_id):   self._s.remove(variation_id)


class InMemoryVariationImpactRepository(AbstractVariationImpactRepository):
    def __init__(self, store: _Store): self._s = store
    def list_for_variation(self, variation_id):
        return [i for i in self._s.all() if i.variation_id == variation_id]
    def add(self, impact):            self._s.put(impact)
    def delete(self, impact_id):      self._s.remove(impact_id)


class InMemoryPlanItemRepository(AbstractPlanItemRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, item_id):           return self._s.fetch(item_id)
    def list_for_project(self, project_id):
        return [i for i in self._s.all() if i.project_id == project_id]
    def save(self, item):             self._s.put(item)


class InMemoryPendingChangeStore(AbstractPendingChangeStore):
    """Session memory for blocked edits.  Lost when the process restarts."""

    def __init__(self, db: InMemoryDatabase):
        self._current = db.pending_current
        self._batches = db.pending_batches

    def get_current(self, project_id, user_id):
        return self._current.get((project_id, user_id))

    def set_current(self, project_id, user_id, change):
        if change is None:
            self._current.pop((project_id, user_id), None)
        else:
            self._current[(project_id, user_id)] = change

    def get_batch(self, project_id, user_id):
        return list(self._batches.get((project_id, user_id), []))

    def append_batch(self, project_id, user_id, change):
        self._batches.setdefault((project_id, user_id), []).append(change)

    def clear_batch(self, project_id, user_id):
        self._batches.pop((project_id, user_id), None)


class InMemoryVariationRefGenerator(AbstractVariationRefGenerator):
    """Sequential VAR-001, VAR-002, … per project."""

    def __init__(self, db: InMemoryDatabase):
        self._counters = db.variation_counters
        self._lock = db.lock

    def generate_variation_ref(self, project_id: uuid.UUID) -> str:
        with self._lock:
            number = self._counters.get(project_id, 0) + 1
            self._counters[project_id] = number
        return f"VAR-{number:03d}"


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.  commit() and rollback() are no-ops
    because dict mutations are immediate and there is no transaction to manage.
    Multi-row sequences that must not leave partial state (variation plus
    impact rows) compensate explicitly in the use case.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self.projects          = InMemoryProjectRepository(db.projects)
        self.users             = InMemoryUserRepository(db.users)
        self.members           = InMemoryProjectMemberRepository(db.members)
        self.milestones        = InMemoryMilestoneRepository(db)
        self.baseline_versions = InMemoryBaselineVersionRepository(db.baseline_versions)
        self.deliverables      = InMemoryDeliverableRepository(db.deliverables)
        self.certificates      = InMemoryCertificateRepository(db)
        self.variations        = InMemoryVariationRepository(db.variations)
        self.variation_impacts = InMemoryVariationImpactRepository(db.variation_impacts)
        self.plan_items        = InMemoryPlanItemRepository(db.plan_items)
        self.pending_changes   = InMemoryPendingChangeStore(db)
        self.variation_refs    = InMemoryVariationRefGenerator(db)

    def commit(self)   -> None: pass   # no-op for in-memory
    def rollback(self) -> None: pass   # no-op for in-memory
