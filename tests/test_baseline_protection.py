"""
Baseline protection tests.

Tests cover:
  - Interceptor allow paths (unprotected field, unpublished item, unlocked milestone)
  - Blocking a protected field, directly and through a published deliverable
  - Admin bypass
  - Lookup failures: fail-open by default, GovernanceLookupError when strict
  - EditPlanItemUseCase capturing a PendingChange without writing
  - Discard / queue / clear of pending changes
  - Pending-change calls for unknown projects or users
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from application import (
    ApplicationError,
    AuthorizationError,
    BaselineProtectionInterceptor,
    ClearPendingChangesUseCase,
    DiscardPendingChangeUseCase,
    EditPlanItemCommand,
    EditPlanItemUseCase,
    GovernanceLookupError,
    ListPendingChangesUseCase,
    NotFoundError,
    PendingChangeCommand,
    QueuePendingChangeUseCase,
    StoreError,
)
from infrastructure import InMemoryMilestoneRepository
from model import Deliverable, PlanItem, PlanItemType, ProjectRole


def _published_milestone_item(uow, project, milestone, **overrides):
    fields = dict(
        project_id=project.id,
        item_type=PlanItemType.MILESTONE,
        wbs="1",
        name=milestone.name,
        start_date=date(2026, 1, 1),
        end_date=date(2026, 3, 31),
        billable=Decimal("10000"),
        is_published=True,
        published_milestone_id=milestone.id,
    )
    fields.update(overrides)
    item = PlanItem(**fields)
    uow.plan_items.save(item)
    return item


def _edit(uow, item, field, value, user, **kwargs):
    cmd = EditPlanItemCommand(item_id=item.id, field=field, value=value, acting_user_id=user.id)
    return EditPlanItemUseCase(**kwargs).execute(cmd, uow)


class _UnavailableMilestones(InMemoryMilestoneRepository):
    def get(self, milestone_id):
        raise StoreError("milestone store unavailable")


# ═════════════════════════════════════════════════════════════════════════
# INTERCEPTOR
# ═════════════════════════════════════════════════════════════════════════

class TestInterceptor:
    def test_unprotected_field_is_allowed(self, uow, project, locked_milestone):
        item = _published_milestone_item(uow, project, locked_milestone)
        assert BaselineProtectionInterceptor(uow).check(item, "name") is None

    def test_unpublished_item_is_allowed(self, uow, project, locked_milestone):
        item = _published_milestone_item(uow, project, locked_milestone, is_published=False)
        assert BaselineProtectionInterceptor(uow).check(item, "start_date") is None

    def test_unlocked_milestone_is_allowed(self, uow, project, milestone):
        item = _published_milestone_item(uow, project, milestone)
        assert BaselineProtectionInterceptor(uow).check(item, "end_date") is None

    @pytest.mark.parametrize("field", ["start_date", "end_date", "duration", "cost", "billable"])
    def test_protected_field_on_locked_milestone_is_blocked(self, uow, project, locked_milestone, field):
        item = _published_milestone_item(uow, project, locked_milestone)
        blocking = BaselineProtectionInterceptor(uow).check(item, field)
        assert blocking is not None
        assert blocking.id == locked_milestone.id

    def test_admin_bypasses(self, uow, project, locked_milestone):
        item = _published_milestone_item(uow, project, locked_milestone)
        assert BaselineProtectionInterceptor(uow).check(item, "start_date", [ProjectRole.ADMIN]) is None

    def test_deliverable_item_resolves_through_deliverable(self, uow, project, locked_milestone):
        deliverable = Deliverable(project_id=project.id, milestone_id=locked_milestone.id, name="Build pack")
        uow.deliverables.save(deliverable)
        item = PlanItem(
            project_id=project.id,
            item_type=PlanItemType.DELIVERABLE,
            name="Build pack",
            is_published=True,
            published_deliverable_id=deliverable.id,
        )
        blocking = BaselineProtectionInterceptor(uow).check(item, "end_date")
        assert blocking is not None
        assert blocking.milestone_ref == "MS-010"

    def test_missing_milestone_fails_open(self, uow, project, locked_milestone, caplog):
        item = _published_milestone_item(uow, project, locked_milestone, published_milestone_id=uuid.uuid4())
        assert BaselineProtectionInterceptor(uow, fail_open=True).check(item, "start_date") is None
        assert "allowing edit" in caplog.text

    def test_missing_milestone_strict_raises(self, uow, project, locked_milestone):
        item = _published_milestone_item(uow, project, locked_milestone, published_milestone_id=uuid.uuid4())
        with pytest.raises(GovernanceLookupError):
            BaselineProtectionInterceptor(uow, fail_open=False).check(item, "start_date")

    def test_store_failure_fails_open(self, db, uow, project, locked_milestone):
        item = _published_milestone_item(uow, project, locked_milestone)
        uow.milestones = _UnavailableMilestones(db)
        assert BaselineProtectionInterceptor(uow, fail_open=True).check(item, "start_date") is None

    def test_store_failure_strict_raises(self, db, uow, project, locked_milestone):
        item = _published_milestone_item(uow, project, locked_milestone)
        uow.milestones = _UnavailableMilestones(db)
        with pytest.raises(GovernanceLookupError):
            BaselineProtectionInterceptor(uow, fail_open=False).check(item, "start_date")


# ═════════════════════════════════════════════════════════════════════════
# EDIT PATH
# ═════════════════════════════════════════════════════════════════════════

class TestEditPlanItem:
    def test_blocked_edit_is_captured_not_written(self, uow, users, project, locked_milestone):
        item = _published_milestone_item(uow, project, locked_milestone)
        supplier = users[ProjectRole.SUPPLIER_PM]

        outcome = _edit(uow, item, "start_date", "2026-01-15", supplier)

        assert outcome.blocked is True
        assert outcome.item.start_date == "2026-01-01"
        assert uow.plan_items.get(item.id).start_date == date(2026, 1, 1)
        change = uow.pending_changes.get_current(project.id, supplier.id)
        assert change.field == "start_date"
        assert change.previous_value == date(2026, 1, 1)
        assert change.new_value == date(2026, 1, 15)
        assert change.milestone.id == locked_milestone.id
        assert outcome.pending_change.milestone_ref == "MS-010"
        assert outcome.pending_change.new_value == "2026-01-15"

    def test_allowed_edit_is_written(self, uow, users, project, milestone):
        item = _published_milestone_item(uow, project, milestone)
        outcome = _edit(uow, item, "end_date", "2026-04-30", users[ProjectRole.CONTRIBUTOR])

        assert outcome.blocked is False
        assert outcome.pending_change is None
        assert uow.plan_items.get(item.id).end_date == date(2026, 4, 30)

    def test_unprotected_field_on_locked_item_is_written(self, uow, users, project, locked_milestone):
        item = _published_milestone_item(uow, project, locked_milestone)
        outcome = _edit(uow, item, "name", "Build and integrate", users[ProjectRole.SUPPLIER_PM])
        assert outcome.blocked is False
        assert uow.plan_items.get(item.id).name == "Build and integrate"

    def test_admin_edit_of_locked_item_is_written(self, uow, users, project, locked_milestone):
        item = _published_milestone_item(uow, project, locked_milestone)
        outcome = _edit(uow, item, "cost", "12000", users[ProjectRole.ADMIN])
        assert outcome.blocked is False
        assert uow.plan_items.get(item.id).cost == Decimal("12000")

    def test_strict_lookup_failure_writes_nothing(self, uow, users, project, locked_milestone):
        item = _published_milestone_item(uow, project, locked_milestone, published_milestone_id=uuid.uuid4())
        with pytest.raises(GovernanceLookupError):
            _edit(uow, item, "start_date", "2026-02-01", users[ProjectRole.SUPPLIER_PM], fail_open=False)
        assert uow.plan_items.get(item.id).start_date == date(2026, 1, 1)

    def test_viewer_cannot_edit(self, uow, users, project, milestone):
        item = _published_milestone_item(uow, project, milestone)
        with pytest.raises(AuthorizationError):
            _edit(uow, item, "name", "x", users[ProjectRole.VIEWER])

    def test_unknown_field_rejected(self, uow, users, project, milestone):
        item = _published_milestone_item(uow, project, milestone)
        with pytest.raises(ApplicationError, match="cannot be edited"):
            _edit(uow, item, "is_published", False, users[ProjectRole.SUPPLIER_PM])

    def test_bad_date_rejected(self, uow, users, project, milestone):
        item = _published_milestone_item(uow, project, milestone)
        with pytest.raises(ApplicationError):
            _edit(uow, item, "start_date", "next tuesday", users[ProjectRole.SUPPLIER_PM])


# ═════════════════════════════════════════════════════════════════════════
# PENDING CHANGES
# ═════════════════════════════════════════════════════════════════════════

class TestPendingChanges:
    def _block(self, uow, project, milestone, user, value="2026-01-15"):
        item = _published_milestone_item(uow, project, milestone)
        _edit(uow, item, "start_date", value, user)

    def test_discard_drops_current(self, uow, users, project, locked_milestone):
        supplier = users[ProjectRole.SUPPLIER_PM]
        self._block(uow, project, locked_milestone, supplier)
        state = DiscardPendingChangeUseCase().execute(PendingChangeCommand(project.id, supplier.id), uow)
        assert state.current is None
        assert state.batch == []

    def test_queue_moves_current_to_batch(self, uow, users, project, locked_milestone):
        supplier = users[ProjectRole.SUPPLIER_PM]
        cmd = PendingChangeCommand(project.id, supplier.id)
        self._block(uow, project, locked_milestone, supplier, "2026-01-15")
        QueuePendingChangeUseCase().execute(cmd, uow)
        self._block(uow, project, locked_milestone, supplier, "2026-01-20")
        state = QueuePendingChangeUseCase().execute(cmd, uow)

        assert state.current is None
        assert [c.new_value for c in state.batch] == ["2026-01-15", "2026-01-20"]

        cleared = ClearPendingChangesUseCase().execute(cmd, uow)
        assert cleared.batch == []

    def test_queue_without_current_is_rejected(self, uow, users, project):
        with pytest.raises(ApplicationError):
            QueuePendingChangeUseCase().execute(
                PendingChangeCommand(project.id, users[ProjectRole.SUPPLIER_PM].id), uow
            )

    def test_pending_changes_are_per_user(self, uow, users, project, locked_milestone):
        self._block(uow, project, locked_milestone, users[ProjectRole.SUPPLIER_PM])
        other = ListPendingChangesUseCase().execute(
            PendingChangeCommand(project.id, users[ProjectRole.CONTRIBUTOR].id), uow
        )
        assert other.current is None

    @pytest.mark.parametrize("use_case", [
        ListPendingChangesUseCase,
        DiscardPendingChangeUseCase,
        QueuePendingChangeUseCase,
        ClearPendingChangesUseCase,
    ])
    def test_unknown_project_is_not_found(self, uow, users, use_case):
        missing = uuid.uuid4()
        with pytest.raises(NotFoundError, match="Project"):
            use_case().execute(PendingChangeCommand(missing, users[ProjectRole.SUPPLIER_PM].id), uow)
        assert uow.pending_changes.get_current(missing, users[ProjectRole.SUPPLIER_PM].id) is None

    @pytest.mark.parametrize("use_case", [
        ListPendingChangesUseCase,
        DiscardPendingChangeUseCase,
        ClearPendingChangesUseCase,
    ])
    def test_unknown_user_is_not_found(self, uow, project, use_case):
        with pytest.raises(NotFoundError, match="User"):
            use_case().execute(PendingChangeCommand(project.id, uuid.uuid4()), uow)
