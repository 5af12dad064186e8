"""
Baseline governance tests.

Tests cover:
  - Baseline State Resolver over every signature combination
  - Supplier → customer → admin reset scenario
  - Re-signing before lock, signing after lock
  - Permission refusal with no write
  - Original (v1) baseline version capture, and lock surviving its failure
  - Two signers racing on separate units of work
  - Admin override of locked baseline fields
"""

import threading
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from application import (
    ApplicationError,
    AuthorizationError,
    BaselineProtectedError,
    GetBaselineHistoryUseCase,
    GetBaselineStatusUseCase,
    ResetBaselineCommand,
    ResetBaselineUseCase,
    SignBaselineCommand,
    SignBaselineUseCase,
    StoreError,
    UpdateMilestoneCommand,
    UpdateMilestoneUseCase,
)
from infrastructure import InMemoryBaselineVersionRepository, InMemoryUnitOfWork
from model import BaselineStatus, Milestone, ProjectRole, Signature, SignatoryParty
from service import BaselineService


def _sig(name="Someone"):
    return Signature(uuid.uuid4(), name, datetime.now(timezone.utc))


def _sign(uow, milestone, user, party):
    cmd = SignBaselineCommand(milestone_id=milestone.id, party=party, acting_user_id=user.id)
    return SignBaselineUseCase().execute(cmd, uow)


# ═════════════════════════════════════════════════════════════════════════
# RESOLVER
# ═════════════════════════════════════════════════════════════════════════

class TestBaselineResolver:
    svc = BaselineService()

    def test_no_signatures_is_not_committed(self):
        assert self.svc.resolve_status(Milestone()) == BaselineStatus.NOT_COMMITTED

    def test_supplier_only_awaits_customer(self):
        m = Milestone(baseline_supplier_signature=_sig())
        assert self.svc.resolve_status(m) == BaselineStatus.AWAITING_CUSTOMER

    def test_customer_only_awaits_supplier(self):
        m = Milestone(baseline_customer_signature=_sig())
        assert self.svc.resolve_status(m) == BaselineStatus.AWAITING_SUPPLIER

    def test_both_signatures_lock(self):
        m = Milestone(baseline_supplier_signature=_sig(), baseline_customer_signature=_sig())
        assert self.svc.resolve_status(m) == BaselineStatus.LOCKED

    def test_lock_flag_alone_locks(self):
        assert self.svc.resolve_status(Milestone(baseline_locked=True)) == BaselineStatus.LOCKED

    def test_missing_milestone_is_not_committed(self):
        assert self.svc.resolve_status(None) == BaselineStatus.NOT_COMMITTED

    @pytest.mark.parametrize("supplier,customer", [(False, False), (True, False), (False, True)])
    def test_never_locked_with_fewer_than_two_signatures(self, supplier, customer):
        m = Milestone(
            baseline_supplier_signature=_sig() if supplier else None,
            baseline_customer_signature=_sig() if customer else None,
        )
        assert self.svc.resolve_status(m) != BaselineStatus.LOCKED

    def test_status_follows_stored_fields(self):
        m = Milestone(baseline_supplier_signature=_sig(), baseline_customer_signature=_sig())
        assert self.svc.is_locked(m)
        m.baseline_supplier_signature = None
        assert self.svc.resolve_status(m) == BaselineStatus.AWAITING_SUPPLIER


# ═════════════════════════════════════════════════════════════════════════
# SIGNING WORKFLOW
# ═════════════════════════════════════════════════════════════════════════

class TestSigningWorkflow:
    def test_supplier_then_customer_then_reset(self, uow, users, milestone):
        result = _sign(uow, milestone, users[ProjectRole.SUPPLIER_PM], SignatoryParty.SUPPLIER)
        assert result.status == BaselineStatus.AWAITING_CUSTOMER.value
        assert result.baseline_locked is False

        result = _sign(uow, milestone, users[ProjectRole.CUSTOMER_PM], SignatoryParty.CUSTOMER)
        assert result.status == BaselineStatus.LOCKED.value
        assert result.baseline_locked is True
        assert uow.milestones.get(milestone.id).baseline_locked is True

        cmd = ResetBaselineCommand(milestone_id=milestone.id, acting_user_id=users[ProjectRole.ADMIN].id)
        result = ResetBaselineUseCase().execute(cmd, uow)
        assert result.status == BaselineStatus.NOT_COMMITTED.value
        stored = uow.milestones.get(milestone.id)
        assert stored.baseline_supplier_signature is None
        assert stored.baseline_customer_signature is None
        assert stored.baseline_locked is False

    def test_signature_records_signer(self, uow, users, milestone):
        supplier = users[ProjectRole.SUPPLIER_PM]
        result = _sign(uow, milestone, supplier, SignatoryParty.SUPPLIER)
        assert result.supplier_signature.signer_id == str(supplier.id)
        assert result.supplier_signature.signer_name == supplier.full_name
        assert result.customer_signature is None

    def test_resigning_overwrites_only_own_signature(self, uow, users, milestone):
        _sign(uow, milestone, users[ProjectRole.SUPPLIER_PM], SignatoryParty.SUPPLIER)
        admin = users[ProjectRole.ADMIN]
        result = _sign(uow, milestone, admin, SignatoryParty.SUPPLIER)
        assert result.status == BaselineStatus.AWAITING_CUSTOMER.value
        assert result.supplier_signature.signer_id == str(admin.id)
        assert result.customer_signature is None

    def test_signing_locked_baseline_is_refused(self, uow, users, locked_milestone):
        before = uow.milestones.get(locked_milestone.id).baseline_supplier_signature
        with pytest.raises(ApplicationError, match="already locked"):
            _sign(uow, locked_milestone, users[ProjectRole.SUPPLIER_PM], SignatoryParty.SUPPLIER)
        assert uow.milestones.get(locked_milestone.id).baseline_supplier_signature == before

    def test_wrong_party_role_is_denied_without_write(self, uow, users, milestone):
        with pytest.raises(AuthorizationError):
            _sign(uow, milestone, users[ProjectRole.CUSTOMER_PM], SignatoryParty.SUPPLIER)
        assert uow.milestones.get(milestone.id).baseline_supplier_signature is None

    def test_viewer_cannot_reset(self, uow, users, locked_milestone):
        cmd = ResetBaselineCommand(milestone_id=locked_milestone.id, acting_user_id=users[ProjectRole.VIEWER].id)
        with pytest.raises(AuthorizationError):
            ResetBaselineUseCase().execute(cmd, uow)
        assert uow.milestones.get(locked_milestone.id).baseline_locked is True

    def test_status_reports_actions_open_to_actor(self, uow, users, milestone):
        _sign(uow, milestone, users[ProjectRole.SUPPLIER_PM], SignatoryParty.SUPPLIER)
        status = GetBaselineStatusUseCase().execute(milestone.id, users[ProjectRole.CUSTOMER_PM].id, uow)
        assert status.can_sign_as_customer is True
        assert status.can_sign_as_supplier is False
        assert status.can_reset is False

        status = GetBaselineStatusUseCase().execute(milestone.id, users[ProjectRole.SUPPLIER_PM].id, uow)
        assert status.can_sign_as_supplier is False
        assert status.can_sign_as_customer is False


# ═════════════════════════════════════════════════════════════════════════
# BASELINE VERSIONS
# ═════════════════════════════════════════════════════════════════════════

class _FailingVersions(InMemoryBaselineVersionRepository):
    def save(self, version):
        raise StoreError("baseline_versions unavailable")


class TestOriginalBaselineVersion:
    def test_lock_records_version_one(self, uow, users, milestone):
        _sign(uow, milestone, users[ProjectRole.SUPPLIER_PM], SignatoryParty.SUPPLIER)
        assert GetBaselineHistoryUseCase().execute(milestone.id, uow) == []

        _sign(uow, milestone, users[ProjectRole.CUSTOMER_PM], SignatoryParty.CUSTOMER)
        history = GetBaselineHistoryUseCase().execute(milestone.id, uow)
        assert len(history) == 1
        v1 = history[0]
        assert v1.version == 1
        assert v1.variation_id is None
        assert v1.baseline_start_date == "2026-01-01"
        assert v1.baseline_end_date == "2026-03-31"
        assert v1.baseline_billable == "10000"
        assert v1.supplier_signed_by == str(users[ProjectRole.SUPPLIER_PM].id)
        assert v1.customer_signed_by == str(users[ProjectRole.CUSTOMER_PM].id)

    def test_relock_after_reset_keeps_single_version_one(self, uow, users, milestone):
        for _ in range(2):
            _sign(uow, milestone, users[ProjectRole.SUPPLIER_PM], SignatoryParty.SUPPLIER)
            _sign(uow, milestone, users[ProjectRole.CUSTOMER_PM], SignatoryParty.CUSTOMER)
            ResetBaselineUseCase().execute(
                ResetBaselineCommand(milestone_id=milestone.id, acting_user_id=users[ProjectRole.ADMIN].id),
                uow,
            )
        assert len(GetBaselineHistoryUseCase().execute(milestone.id, uow)) == 1

    def test_version_write_failure_does_not_undo_lock(self, db, uow, users, milestone):
        uow.baseline_versions = _FailingVersions(db.baseline_versions)
        _sign(uow, milestone, users[ProjectRole.SUPPLIER_PM], SignatoryParty.SUPPLIER)
        result = _sign(uow, milestone, users[ProjectRole.CUSTOMER_PM], SignatoryParty.CUSTOMER)
        assert result.status == BaselineStatus.LOCKED.value
        assert uow.milestones.get(milestone.id).baseline_locked is True


# ═════════════════════════════════════════════════════════════════════════
# CONCURRENT SIGNERS
# ═════════════════════════════════════════════════════════════════════════

class TestConcurrentSigners:
    def test_simultaneous_signers_both_land_and_lock(self, db, users, milestone):
        barrier = threading.Barrier(2)
        errors = []

        def sign(role, party):
            try:
                barrier.wait()
                _sign(InMemoryUnitOfWork(db), milestone, users[role], party)
            except Exception as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=sign, args=(ProjectRole.SUPPLIER_PM, SignatoryParty.SUPPLIER)),
            threading.Thread(target=sign, args=(ProjectRole.CUSTOMER_PM, SignatoryParty.CUSTOMER)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        stored = InMemoryUnitOfWork(db).milestones.get(milestone.id)
        assert stored.baseline_supplier_signature is not None
        assert stored.baseline_customer_signature is not None
        assert stored.baseline_locked is True


# ═════════════════════════════════════════════════════════════════════════
# DIRECT MILESTONE EDITS
# ═════════════════════════════════════════════════════════════════════════

class TestMilestoneUpdate:
    def test_supplier_cannot_change_locked_baseline(self, uow, users, locked_milestone):
        cmd = UpdateMilestoneCommand(
            milestone_id=locked_milestone.id,
            changes={"baseline_end_date": date(2026, 6, 30)},
            acting_user_id=users[ProjectRole.SUPPLIER_PM].id,
        )
        with pytest.raises(BaselineProtectedError):
            UpdateMilestoneUseCase().execute(cmd, uow)
        assert uow.milestones.get(locked_milestone.id).baseline_end_date == date(2026, 3, 31)

    def test_admin_override_writes_locked_baseline(self, uow, users, locked_milestone):
        cmd = UpdateMilestoneCommand(
            milestone_id=locked_milestone.id,
            changes={"baseline_billable": Decimal("12500")},
            acting_user_id=users[ProjectRole.ADMIN].id,
        )
        result = UpdateMilestoneUseCase().execute(cmd, uow)
        assert result.baseline_billable == "12500"
        assert result.baseline_status == BaselineStatus.LOCKED.value

    def test_working_plan_stays_editable_when_locked(self, uow, users, locked_milestone):
        cmd = UpdateMilestoneCommand(
            milestone_id=locked_milestone.id,
            changes={"forecast_end_date": date(2026, 4, 15)},
            acting_user_id=users[ProjectRole.SUPPLIER_FINANCE].id,
        )
        result = UpdateMilestoneUseCase().execute(cmd, uow)
        assert result.forecast_end_date == "2026-04-15"

    def test_customer_cannot_edit_milestone(self, uow, users, milestone):
        cmd = UpdateMilestoneCommand(
            milestone_id=milestone.id,
            changes={"name": "Renamed"},
            acting_user_id=users[ProjectRole.CUSTOMER_PM].id,
        )
        with pytest.raises(AuthorizationError):
            UpdateMilestoneUseCase().execute(cmd, uow)
