"""
Shared pytest fixtures for the Contract Delivery Tracker test suite.

Provides:
    - db: fresh InMemoryDatabase per test
    - uow: InMemoryUnitOfWork bound to that database
    - users: one User per ProjectRole
    - project: a project on which each of those users holds its role
    - milestone / locked_milestone: milestones with a baseline set
    - client: FastAPI TestClient wired to the same database
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import (
    Milestone,
    Project,
    ProjectMember,
    ProjectRole,
    Signature,
    User,
)


@pytest.fixture()
def db():
    return InMemoryDatabase()


@pytest.fixture()
def uow(db):
    return InMemoryUnitOfWork(db)


@pytest.fixture()
def users(uow):
    """One user per role, keyed by ProjectRole."""
    result = {}
    for role in ProjectRole:
        user = User(full_name=f"{role.value.replace('_', ' ').title()}", email=f"{role.value}@example.com")
        uow.users.save(user)
        result[role] = user
    return result


@pytest.fixture()
def project(uow, users):
    project = Project(reference="PRJ-001", name="Network Upgrade", created_by_id=users[ProjectRole.ADMIN].id)
    uow.projects.save(project)
    for role, user in users.items():
        uow.members.save(ProjectMember(project_id=project.id, user_id=user.id, role=role))
    return project


def make_milestone(uow, project, ref="MS-001", name="Design", **overrides):
    fields = dict(
        project_id=project.id,
        milestone_ref=ref,
        name=name,
        start_date=date(2026, 1, 1),
        end_date=date(2026, 3, 31),
        forecast_end_date=date(2026, 3, 31),
        billable=Decimal("10000"),
        baseline_start_date=date(2026, 1, 1),
        baseline_end_date=date(2026, 3, 31),
        baseline_billable=Decimal("10000"),
    )
    fields.update(overrides)
    milestone = Milestone(**fields)
    uow.milestones.save(milestone)
    return milestone


def lock(uow, milestone, users):
    """Store both signatures and the lock flag directly."""
    now = datetime.now(timezone.utc)
    supplier = users[ProjectRole.SUPPLIER_PM]
    customer = users[ProjectRole.CUSTOMER_PM]
    milestone.baseline_supplier_signature = Signature(supplier.id, supplier.full_name, now)
    milestone.baseline_customer_signature = Signature(customer.id, customer.full_name, now)
    milestone.baseline_locked = True
    uow.milestones.save(milestone)
    return milestone


@pytest.fixture()
def milestone(uow, project):
    return make_milestone(uow, project)


@pytest.fixture()
def locked_milestone(uow, project, users):
    return lock(uow, make_milestone(uow, project, ref="MS-010", name="Build"), users)


@pytest.fixture()
def client(db):
    from fastapi.testclient import TestClient

    from api import app, get_uow

    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(db)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
