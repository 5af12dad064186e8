"""
Milestone certificate tests.

Tests cover:
  - Certificate State Resolver and milestone status from deliverables
  - Generation eligibility (no deliverables, partial delivery, existing certificate)
  - Supplier → customer signing flow, signing after Signed
  - Billing view readiness
"""

import re
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from application import (
    ApplicationError,
    AuthorizationError,
    CreateDeliverableCommand,
    CreateDeliverableUseCase,
    GenerateCertificateCommand,
    GenerateCertificateUseCase,
    GetCertificateStatusUseCase,
    ListBillableMilestonesUseCase,
    NotFoundError,
    SignCertificateCommand,
    SignCertificateUseCase,
    UpdateDeliverableStatusCommand,
    UpdateDeliverableStatusUseCase,
)
from conftest import make_milestone
from model import (
    CertificateStatus,
    Deliverable,
    DeliverableStatus,
    MilestoneCertificate,
    MilestoneStatus,
    ProjectRole,
    Signature,
    SignatoryParty,
)
from service import CertificateService


def _sig():
    return Signature(uuid.uuid4(), "Signer", datetime.now(timezone.utc))


def _add_deliverable(uow, milestone, users, name="Design pack", status=DeliverableStatus.NOT_STARTED):
    cmd = CreateDeliverableCommand(
        milestone_id=milestone.id,
        name=name,
        acting_user_id=users[ProjectRole.SUPPLIER_PM].id,
        status=status,
    )
    return CreateDeliverableUseCase().execute(cmd, uow)


def _deliver(uow, deliverable_id, users):
    cmd = UpdateDeliverableStatusCommand(
        deliverable_id=uuid.UUID(deliverable_id),
        status=DeliverableStatus.DELIVERED,
        acting_user_id=users[ProjectRole.SUPPLIER_PM].id,
    )
    return UpdateDeliverableStatusUseCase().execute(cmd, uow)


def _generate(uow, milestone, user):
    cmd = GenerateCertificateCommand(milestone_id=milestone.id, acting_user_id=user.id)
    return GenerateCertificateUseCase().execute(cmd, uow)


def _sign(uow, milestone, user, party):
    cmd = SignCertificateCommand(milestone_id=milestone.id, party=party, acting_user_id=user.id)
    return SignCertificateUseCase().execute(cmd, uow)


@pytest.fixture()
def completed_milestone(uow, users, milestone):
    for name in ("Design pack", "Test report"):
        dto = _add_deliverable(uow, milestone, users, name=name)
        _deliver(uow, dto.id, users)
    return milestone


# ═════════════════════════════════════════════════════════════════════════
# RESOLVERS
# ═════════════════════════════════════════════════════════════════════════

class TestCertificateResolver:
    svc = CertificateService()

    def test_no_certificate(self):
        assert self.svc.resolve_status(None) == CertificateStatus.NONE

    def test_unsigned_is_draft(self):
        assert self.svc.resolve_status(MilestoneCertificate()) == CertificateStatus.DRAFT

    def test_supplier_only_pending_customer(self):
        cert = MilestoneCertificate(supplier_signature=_sig())
        assert self.svc.resolve_status(cert) == CertificateStatus.PENDING_CUSTOMER

    def test_customer_only_pending_supplier(self):
        cert = MilestoneCertificate(customer_signature=_sig())
        assert self.svc.resolve_status(cert) == CertificateStatus.PENDING_SUPPLIER

    def test_both_signed(self):
        cert = MilestoneCertificate(supplier_signature=_sig(), customer_signature=_sig())
        assert self.svc.resolve_status(cert) == CertificateStatus.SIGNED


class TestMilestoneStatus:
    svc = CertificateService()

    def test_no_deliverables_not_started(self):
        assert self.svc.milestone_status([]) == MilestoneStatus.NOT_STARTED

    def test_all_delivered_completed(self):
        ds = [Deliverable(status=DeliverableStatus.DELIVERED) for _ in range(3)]
        assert self.svc.milestone_status(ds) == MilestoneStatus.COMPLETED

    def test_mixed_in_progress(self):
        ds = [Deliverable(status=DeliverableStatus.DELIVERED), Deliverable()]
        assert self.svc.milestone_status(ds) == MilestoneStatus.IN_PROGRESS

    def test_all_not_started(self):
        assert self.svc.milestone_status([Deliverable(), Deliverable()]) == MilestoneStatus.NOT_STARTED

    def test_cannot_generate_without_deliverables(self):
        assert self.svc.can_generate([], None) is False

    def test_cannot_generate_twice(self):
        ds = [Deliverable(status=DeliverableStatus.DELIVERED)]
        assert self.svc.can_generate(ds, None) is True
        assert self.svc.can_generate(ds, MilestoneCertificate()) is False


# ═════════════════════════════════════════════════════════════════════════
# GENERATION
# ═════════════════════════════════════════════════════════════════════════

class TestGenerateCertificate:
    def test_generates_draft_with_snapshot(self, uow, users, completed_milestone):
        cert = _generate(uow, completed_milestone, users[ProjectRole.SUPPLIER_PM])

        assert cert.status == CertificateStatus.DRAFT.value
        assert re.match(r"^CERT-MS-001-[0-9A-Z]+$", cert.certificate_number)
        assert cert.payment_milestone_value == "10000"
        assert [s["name"] for s in cert.deliverables_snapshot] == ["Design pack", "Test report"]
        assert all(s["status"] == "Delivered" for s in cert.deliverables_snapshot)

    def test_delivering_everything_completes_milestone(self, uow, completed_milestone):
        stored = uow.milestones.get(completed_milestone.id)
        assert stored.status == MilestoneStatus.COMPLETED
        assert stored.completion_percentage == 100

    def test_refused_without_deliverables(self, uow, users, milestone):
        with pytest.raises(ApplicationError, match="deliverables must be delivered"):
            _generate(uow, milestone, users[ProjectRole.SUPPLIER_PM])
        assert uow.certificates.get_for_milestone(milestone.id) is None

    def test_refused_when_one_deliverable_outstanding(self, uow, users, milestone):
        done = _add_deliverable(uow, milestone, users, name="Done")
        _deliver(uow, done.id, users)
        _add_deliverable(uow, milestone, users, name="Outstanding", status=DeliverableStatus.IN_PROGRESS)

        with pytest.raises(ApplicationError):
            _generate(uow, milestone, users[ProjectRole.CUSTOMER_PM])

    def test_second_generation_refused(self, uow, users, completed_milestone):
        first = _generate(uow, completed_milestone, users[ProjectRole.SUPPLIER_PM])
        with pytest.raises(ApplicationError, match="already has certificate"):
            _generate(uow, completed_milestone, users[ProjectRole.CUSTOMER_PM])
        assert uow.certificates.get_for_milestone(completed_milestone.id).certificate_number == (
            first.certificate_number
        )

    def test_contributor_cannot_generate(self, uow, users, completed_milestone):
        with pytest.raises(AuthorizationError):
            _generate(uow, completed_milestone, users[ProjectRole.CONTRIBUTOR])

    def test_status_reports_eligibility(self, uow, users, completed_milestone):
        status = GetCertificateStatusUseCase().execute(completed_milestone.id, uow)
        assert status.status == "None"
        assert status.can_generate is True
        assert status.certificate is None


# ═════════════════════════════════════════════════════════════════════════
# SIGNING
# ═════════════════════════════════════════════════════════════════════════

class TestSignCertificate:
    def test_supplier_then_customer_signs(self, uow, users, completed_milestone):
        _generate(uow, completed_milestone, users[ProjectRole.SUPPLIER_PM])

        after_supplier = _sign(
            uow, completed_milestone, users[ProjectRole.SUPPLIER_FINANCE], SignatoryParty.SUPPLIER
        )
        assert after_supplier.status == CertificateStatus.PENDING_CUSTOMER.value
        assert after_supplier.supplier_signature.signer_name == users[ProjectRole.SUPPLIER_FINANCE].full_name

        after_customer = _sign(
            uow, completed_milestone, users[ProjectRole.CUSTOMER_FINANCE], SignatoryParty.CUSTOMER
        )
        assert after_customer.status == CertificateStatus.SIGNED.value

        status = GetCertificateStatusUseCase().execute(completed_milestone.id, uow)
        assert status.status == "Signed"
        assert status.can_generate is False

    def test_signed_certificate_cannot_change(self, uow, users, completed_milestone):
        _generate(uow, completed_milestone, users[ProjectRole.SUPPLIER_PM])
        _sign(uow, completed_milestone, users[ProjectRole.SUPPLIER_PM], SignatoryParty.SUPPLIER)
        _sign(uow, completed_milestone, users[ProjectRole.CUSTOMER_PM], SignatoryParty.CUSTOMER)
        before = uow.certificates.get_for_milestone(completed_milestone.id)

        with pytest.raises(ApplicationError, match="fully signed"):
            _sign(uow, completed_milestone, users[ProjectRole.ADMIN], SignatoryParty.SUPPLIER)
        assert uow.certificates.get_for_milestone(completed_milestone.id) == before

    def test_customer_finance_cannot_sign_for_supplier(self, uow, users, completed_milestone):
        _generate(uow, completed_milestone, users[ProjectRole.SUPPLIER_PM])
        with pytest.raises(AuthorizationError):
            _sign(uow, completed_milestone, users[ProjectRole.CUSTOMER_FINANCE], SignatoryParty.SUPPLIER)
        assert uow.certificates.get_for_milestone(completed_milestone.id).supplier_signature is None

    def test_signing_without_certificate_is_not_found(self, uow, users, milestone):
        with pytest.raises(NotFoundError):
            _sign(uow, milestone, users[ProjectRole.SUPPLIER_PM], SignatoryParty.SUPPLIER)


# ═════════════════════════════════════════════════════════════════════════
# BILLING
# ═════════════════════════════════════════════════════════════════════════

class TestBillingView:
    def test_only_signed_certificates_are_ready_to_bill(self, uow, users, project, completed_milestone):
        make_milestone(uow, project, ref="MS-002", name="Handover", billable=Decimal("5000"))
        make_milestone(uow, project, ref="MS-003", name="Unpriced", billable=Decimal("0"))
        _generate(uow, completed_milestone, users[ProjectRole.SUPPLIER_PM])
        _sign(uow, completed_milestone, users[ProjectRole.SUPPLIER_PM], SignatoryParty.SUPPLIER)
        _sign(uow, completed_milestone, users[ProjectRole.CUSTOMER_PM], SignatoryParty.CUSTOMER)

        rows = ListBillableMilestonesUseCase().execute(project.id, uow)

        assert [r.milestone_ref for r in rows] == ["MS-001", "MS-002"]
        design, handover = rows
        assert design.ready_to_bill is True
        assert design.certificate_status == "Signed"
        assert handover.ready_to_bill is False
        assert handover.certificate_status == "None"
        assert handover.certificate_number is None

    def test_expected_date_follows_latest_deliverable_due_date(self, uow, users, project, milestone):
        supplier = users[ProjectRole.SUPPLIER_PM].id
        for name, due in (("Design pack", date(2026, 3, 15)), ("Test report", date(2026, 4, 20))):
            CreateDeliverableUseCase().execute(
                CreateDeliverableCommand(milestone_id=milestone.id, name=name, acting_user_id=supplier, due_date=due),
                uow,
            )
        make_milestone(uow, project, ref="MS-002", name="Handover", forecast_end_date=date(2026, 5, 31))
        make_milestone(uow, project, ref="MS-003", name="Close", forecast_end_date=None, end_date=date(2026, 6, 30))

        rows = {r.milestone_ref: r for r in ListBillableMilestonesUseCase().execute(project.id, uow)}

        assert rows["MS-001"].forecast_end_date == "2026-03-31"
        assert rows["MS-001"].expected_date == "2026-04-20"
        assert rows["MS-002"].expected_date == "2026-05-31"
        assert rows["MS-003"].expected_date == "2026-06-30"
