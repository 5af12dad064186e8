"""
application.py

Application layer for the Contract Delivery Tracker: baseline governance
and change control.

Overview
--------
Everything between the FastAPI routers and the governance services lives
here:

  1. DTOs: string-formatted dataclasses handed to the API.  Domain objects
     never cross that boundary.
  2. Store ports: one abstract repository per record type.  Signature writes
     are declared as single conditional updates so an implementation can
     make them atomic.
  3. The UnitOfWork grouping those ports.
  4. Use cases, one class per operation.  Each resolves the actor's roles on
     the project before it touches the store.

Structure
---------
DTOs
    UserDTO, ProjectDTO, ProjectMemberDTO, SignatureDTO
    MilestoneDTO, BaselineStatusDTO, BaselineVersionDTO, DeliverableDTO
    CertificateDTO, CertificateStatusDTO, BillableMilestoneDTO
    VariationDTO, VariationImpactDTO, VariationDraftResultDTO
    PlanItemDTO, PendingChangeDTO, PendingChangesDTO, EditOutcomeDTO
    CommitResultDTO, CommitSummaryDTO, BaselineDriftDTO

Repository interfaces
    AbstractProjectRepository, AbstractUserRepository,
    AbstractProjectMemberRepository, AbstractMilestoneRepository,
    AbstractBaselineVersionRepository, AbstractDeliverableRepository,
    AbstractCertificateRepository, AbstractVariationRepository,
    AbstractVariationImpactRepository, AbstractPlanItemRepository,
    AbstractPendingChangeStore, AbstractVariationRefGenerator

Unit of Work
    AbstractUnitOfWork

Interceptor
    BaselineProtectionInterceptor

Use Cases
    --- Users, projects, members ---
    CreateUserUseCase, GetUserUseCase, ListUsersUseCase
    CreateProjectUseCase, GetProjectUseCase, ListProjectsUseCase
    AssignMemberUseCase, ListMembersUseCase

    --- Milestones & deliverables ---
    CreateMilestoneUseCase, GetMilestoneUseCase, ListMilestonesUseCase
    UpdateMilestoneUseCase
    CreateDeliverableUseCase, UpdateDeliverableStatusUseCase,
    ListDeliverablesUseCase

    --- Baseline governance ---
    SignBaselineUseCase, ResetBaselineUseCase
    GetBaselineStatusUseCase, GetBaselineHistoryUseCase

    --- Certificates ---
    GenerateCertificateUseCase, SignCertificateUseCase
    GetCertificateStatusUseCase, ListBillableMilestonesUseCase

    --- Planning ---
    CreatePlanItemUseCase, ListPlanItemsUseCase, EditPlanItemUseCase
    CommitPlanUseCase, GetCommitSummaryUseCase, DetectBaselineDriftUseCase

    --- Pending changes & variations ---
    ListPendingChangesUseCase, DiscardPendingChangeUseCase,
    QueuePendingChangeUseCase, ClearPendingChangesUseCase,
    DraftVariationFromChangeUseCase, DraftVariationFromBatchUseCase,
    GetVariationUseCase, ListVariationsUseCase

Design notes
------------
- Use cases receive and return DTOs only; no domain objects cross the
  application boundary.
- Each use case accepts a UnitOfWork as its sole dependency.
- All timestamps flowing out are ISO-8601 strings (UTC); calendar dates are
  YYYY-MM-DD strings and money is a decimal string.
- Permission checks run before any write.  Service-level PermissionError
  becomes AuthorizationError and ValueError becomes ApplicationError.
- Skips and per-unit failures in batch operations are reported in the result
  DTO, never raised.
"""

from __future__ import annotations

import abc
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from config import get_config
from model import (
    BaselineVersion,
    CertificateStatus,
    Deliverable,
    DeliverableStatus,
    Milestone,
    MilestoneCertificate,
    PendingChange,
    PlanItem,
    PlanItemStatus,
    PlanItemType,
    Project,
    ProjectMember,
    ProjectRole,
    Signature,
    SignatoryParty,
    User,
    Variation,
    VariationMilestoneImpact,
)
from service import (
    BaselinedFieldLockedError,
    BaselineProtectionService,
    BaselineService,
    Capability,
    CertificateService,
    PlanCommitService,
    VariationDraftService,
    can,
    coerce_field_value,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class AuthorizationError(ApplicationError):
    """Raised when the acting user lacks the required role."""


class StoreError(ApplicationError):
    """Raised by a repository when a single store call fails (network, database)."""


class GovernanceLookupError(ApplicationError):
    """Raised by the interceptor in strict mode when the linked milestone cannot be resolved."""


class BaselineProtectedError(ApplicationError):
    """Raised when a locked baseline field is written without override rights."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _fmt_money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _fmt_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _fmt(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (uuid.UUID,)):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    return value


def _fmt_id(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value else None


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Identity DTOs
# ---------------------------------------------------------------------------

@dataclass
class UserDTO:
    id: str
    full_name: str
    email: str
    is_active: bool


@dataclass
class ProjectDTO:
    id: str
    reference: str
    name: str
    description: str
    created_at: str
    created_by_id: Optional[str]


@dataclass
class ProjectMemberDTO:
    id: str
    project_id: str
    user_id: str
    full_name: str
    email: str
    role: str
    assigned_at: str


# ---------------------------------------------------------------------------
# Milestone & baseline DTOs
# ---------------------------------------------------------------------------

@dataclass
class SignatureDTO:
    signer_id: str
    signer_name: str
    signed_at: str


@dataclass
class MilestoneDTO:
    id: str
    project_id: str
    milestone_ref: str
    name: str
    description: str
    status: str
    completion_percentage: int
    start_date: Optional[str]
    end_date: Optional[str]
    actual_start_date: Optional[str]
    forecast_start_date: Optional[str]
    forecast_end_date: Optional[str]
    billable: str
    baseline_start_date: Optional[str]
    baseline_end_date: Optional[str]
    baseline_billable: Optional[str]
    baseline_locked: bool
    baseline_status: str
    baseline_supplier_signature: Optional[SignatureDTO]
    baseline_customer_signature: Optional[SignatureDTO]
    updated_at: str


@dataclass
class BaselineStatusDTO:
    """Baseline status plus the actions currently legal for the requesting actor."""
    milestone_id: str
    status: str
    baseline_locked: bool
    supplier_signature: Optional[SignatureDTO]
    customer_signature: Optional[SignatureDTO]
    can_sign_as_supplier: bool
    can_sign_as_customer: bool
    can_reset: bool


@dataclass
class BaselineVersionDTO:
    id: str
    milestone_id: str
    version: int
    variation_id: Optional[str]
    baseline_start_date: Optional[str]
    baseline_end_date: Optional[str]
    baseline_billable: str
    supplier_signed_by: Optional[str]
    supplier_signed_at: Optional[str]
    customer_signed_by: Optional[str]
    customer_signed_at: Optional[str]
    created_at: str


@dataclass
class DeliverableDTO:
    id: str
    project_id: str
    milestone_id: str
    deliverable_ref: str
    name: str
    description: str
    status: str
    progress: int
    start_date: Optional[str]
    due_date: Optional[str]
    tasks: List[Dict[str, Any]]


# ---------------------------------------------------------------------------
# Certificate DTOs
# ---------------------------------------------------------------------------

@dataclass
class CertificateDTO:
    id: str
    milestone_id: str
    certificate_number: str
    milestone_ref: str
    milestone_name: str
    payment_milestone_value: str
    status: str
    supplier_signature: Optional[SignatureDTO]
    customer_signature: Optional[SignatureDTO]
    deliverables_snapshot: List[Dict[str, Any]]
    generated_by_id: Optional[str]
    generated_at: str


@dataclass
class CertificateStatusDTO:
    milestone_id: str
    status: str
    can_generate: bool
    certificate: Optional[CertificateDTO]


@dataclass
class BillableMilestoneDTO:
    milestone_id: str
    milestone_ref: str
    name: str
    billable: str
    forecast_end_date: Optional[str]
    expected_date: Optional[str]
    certificate_status: str
    certificate_number: Optional[str]
    ready_to_bill: bool


# ---------------------------------------------------------------------------
# Variation DTOs
# ---------------------------------------------------------------------------

@dataclass
class VariationImpactDTO:
    id: str
    variation_id: str
    milestone_id: str
    original_baseline_start: Optional[str]
    original_baseline_end: Optional[str]
    original_baseline_cost: Optional[str]
    new_baseline_start: Optional[str]
    new_baseline_end: Optional[str]
    new_baseline_cost: Optional[str]
    change_rationale: str


@dataclass
class VariationDTO:
    id: str
    project_id: str
    variation_ref: str
    title: str
    variation_type: str
    status: str
    priority: str
    description: str
    form_data: Dict[str, Any]
    created_by_id: Optional[str]
    created_at: str
    impacts: List[VariationImpactDTO] = field(default_factory=list)


@dataclass
class VariationDraftResultDTO:
    """
    Outcome of drafting.  `failed_impacts` is only non-empty when compensation
    is disabled and some impact rows could not be written.
    """
    variation: VariationDTO
    failed_impacts: List[Dict[str, str]]


# ---------------------------------------------------------------------------
# Planning DTOs
# ---------------------------------------------------------------------------

@dataclass
class PlanItemDTO:
    id: str
    project_id: str
    parent_id: Optional[str]
    item_type: str
    wbs: str
    sort_order: int
    name: str
    description: str
    start_date: Optional[str]
    end_date: Optional[str]
    duration: Optional[int]
    billable: Optional[str]
    cost: Optional[str]
    progress: int
    status: str
    is_published: bool
    published_milestone_id: Optional[str]
    published_deliverable_id: Optional[str]
    published_at: Optional[str]


@dataclass
class PendingChangeDTO:
    item_id: str
    item_name: str
    item_wbs: str
    field: str
    previous_value: Any
    new_value: Any
    milestone_id: str
    milestone_ref: str
    milestone_name: str


@dataclass
class PendingChangesDTO:
    current: Optional[PendingChangeDTO]
    batch: List[PendingChangeDTO]


@dataclass
class EditOutcomeDTO:
    """
    Result of a plan-item edit.  When `blocked` the value was not written and
    `pending_change` holds the captured edit awaiting a user decision.
    """
    blocked: bool
    item: PlanItemDTO
    pending_change: Optional[PendingChangeDTO] = None


@dataclass
class CommitResultDTO:
    count: int
    milestones: List[MilestoneDTO]
    deliverables: List[DeliverableDTO]
    tasks_published: int
    skipped: List[Dict[str, str]]
    errors: List[Dict[str, str]]


@dataclass
class CommitSummaryDTO:
    committed: int
    uncommitted: int
    baseline_locked: int


@dataclass
class BaselineDriftDTO:
    plan_item_id: str
    plan_item_name: str
    plan_item_wbs: str
    milestone_id: str
    field: str
    current_value: Any
    baseline_value: Any


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def user(u: User) -> UserDTO:
        return UserDTO(id=str(u.id), full_name=u.full_name, email=u.email, is_active=u.is_active)

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        return ProjectDTO(
            id=str(p.id),
            reference=p.reference,
            name=p.name,
            description=p.description,
            created_at=_fmt(p.created_at),
            created_by_id=_fmt_id(p.created_by_id),
        )

    @staticmethod
    def member(m: ProjectMember, user: User) -> ProjectMemberDTO:
        return ProjectMemberDTO(
            id=str(m.id),
            project_id=str(m.project_id),
            user_id=str(m.user_id),
            full_name=user.full_name,
            email=user.email,
            role=m.role.value,
            assigned_at=_fmt(m.assigned_at),
        )

    @staticmethod
    def signature(s: Optional[Signature]) -> Optional[SignatureDTO]:
        if s is None:
            return None
        return SignatureDTO(signer_id=str(s.signer_id), signer_name=s.signer_name, signed_at=_fmt(s.signed_at))

    @staticmethod
    def milestone(m: Milestone) -> MilestoneDTO:
        return MilestoneDTO(
            id=str(m.id),
            project_id=str(m.project_id),
            milestone_ref=m.milestone_ref,
            name=m.name,
            description=m.description,
            status=m.status.value,
            completion_percentage=m.completion_percentage,
            start_date=_fmt_date(m.start_date),
            end_date=_fmt_date(m.end_date),
            actual_start_date=_fmt_date(m.actual_start_date),
            forecast_start_date=_fmt_date(m.forecast_start_date),
            forecast_end_date=_fmt_date(m.forecast_end_date),
            billable=_fmt_money(m.billable),
            baseline_start_date=_fmt_date(m.baseline_start_date),
            baseline_end_date=_fmt_date(m.baseline_end_date),
            baseline_billable=_fmt_money(m.baseline_billable),
            baseline_locked=m.baseline_locked,
            baseline_status=_baseline_svc.resolve_status(m).value,
            baseline_supplier_signature=_Assembler.signature(m.baseline_supplier_signature),
            baseline_customer_signature=_Assembler.signature(m.baseline_customer_signature),
            updated_at=_fmt(m.updated_at),
        )

    @staticmethod
    def baseline_status(m: Milestone, roles: Iterable[ProjectRole]) -> BaselineStatusDTO:
        roles = list(roles)
        return BaselineStatusDTO(
            milestone_id=str(m.id),
            status=_baseline_svc.resolve_status(m).value,
            baseline_locked=m.baseline_locked,
            supplier_signature=_Assembler.signature(m.baseline_supplier_signature),
            customer_signature=_Assembler.signature(m.baseline_customer_signature),
            can_sign_as_supplier=(
                m.baseline_supplier_signature is None
                and _baseline_svc.can_sign(m, SignatoryParty.SUPPLIER, roles)
            ),
            can_sign_as_customer=(
                m.baseline_customer_signature is None
                and _baseline_svc.can_sign(m, SignatoryParty.CUSTOMER, roles)
            ),
            can_reset=can(roles, Capability.RESET_BASELINE),
        )

    @staticmethod
    def baseline_version(v: BaselineVersion) -> BaselineVersionDTO:
        return BaselineVersionDTO(
            id=str(v.id),
            milestone_id=str(v.milestone_id),
            version=v.version,
            variation_id=_fmt_id(v.variation_id),
            baseline_start_date=_fmt_date(v.baseline_start_date),
            baseline_end_date=_fmt_date(v.baseline_end_date),
            baseline_billable=_fmt_money(v.baseline_billable),
            supplier_signed_by=_fmt_id(v.supplier_signed_by),
            supplier_signed_at=_fmt(v.supplier_signed_at),
            customer_signed_by=_fmt_id(v.customer_signed_by),
            customer_signed_at=_fmt(v.customer_signed_at),
            created_at=_fmt(v.created_at),
        )

    @staticmethod
    def deliverable(d: Deliverable) -> DeliverableDTO:
        return DeliverableDTO(
            id=str(d.id),
            project_id=str(d.project_id),
            milestone_id=str(d.milestone_id),
            deliverable_ref=d.deliverable_ref,
            name=d.name,
            description=d.description,
            status=d.status.value,
            progress=d.progress,
            start_date=_fmt_date(d.start_date),
            due_date=_fmt_date(d.due_date),
            tasks=[dict(t) for t in d.tasks],
        )

    @staticmethod
    def certificate(c: MilestoneCertificate) -> CertificateDTO:
        return CertificateDTO(
            id=str(c.id),
            milestone_id=str(c.milestone_id),
            certificate_number=c.certificate_number,
            milestone_ref=c.milestone_ref,
            milestone_name=c.milestone_name,
            payment_milestone_value=_fmt_money(c.payment_milestone_value),
            status=_certificate_svc.resolve_status(c).value,
            supplier_signature=_Assembler.signature(c.supplier_signature),
            customer_signature=_Assembler.signature(c.customer_signature),
            deliverables_snapshot=[
                {
                    "deliverable_ref": s.deliverable_ref,
                    "name": s.name,
                    "status": s.status.value,
                    "progress": s.progress,
                }
                for s in c.deliverables_snapshot
            ],
            generated_by_id=_fmt_id(c.generated_by_id),
            generated_at=_fmt(c.generated_at),
        )

    @staticmethod
    def impact(i: VariationMilestoneImpact) -> VariationImpactDTO:
        return VariationImpactDTO(
            id=str(i.id),
            variation_id=str(i.variation_id),
            milestone_id=str(i.milestone_id),
            original_baseline_start=_fmt_date(i.original_baseline_start),
            original_baseline_end=_fmt_date(i.original_baseline_end),
            original_baseline_cost=_fmt_money(i.original_baseline_cost),
            new_baseline_start=_fmt_date(i.new_baseline_start),
            new_baseline_end=_fmt_date(i.new_baseline_end),
            new_baseline_cost=_fmt_money(i.new_baseline_cost),
            change_rationale=i.change_rationale,
        )

    @staticmethod
    def variation(v: Variation, impacts: Iterable[VariationMilestoneImpact] = ()) -> VariationDTO:
        return VariationDTO(
            id=str(v.id),
            project_id=str(v.project_id),
            variation_ref=v.variation_ref,
            title=v.title,
            variation_type=v.variation_type.value,
            status=v.status.value,
            priority=v.priority,
            description=v.description,
            form_data=dict(v.form_data),
            created_by_id=_fmt_id(v.created_by_id),
            created_at=_fmt(v.created_at),
            impacts=[_Assembler.impact(i) for i in impacts],
        )

    @staticmethod
    def plan_item(p: PlanItem) -> PlanItemDTO:
        return PlanItemDTO(
            id=str(p.id),
            project_id=str(p.project_id),
            parent_id=_fmt_id(p.parent_id),
            item_type=p.item_type.value,
            wbs=p.wbs,
            sort_order=p.sort_order,
            name=p.name,
            description=p.description,
            start_date=_fmt_date(p.start_date),
            end_date=_fmt_date(p.end_date),
            duration=p.duration,
            billable=_fmt_money(p.billable),
            cost=_fmt_money(p.cost),
            progress=p.progress,
            status=p.status.value,
            is_published=p.is_published,
            published_milestone_id=_fmt_id(p.published_milestone_id),
            published_deliverable_id=_fmt_id(p.published_deliverable_id),
            published_at=_fmt(p.published_at),
        )

    @staticmethod
    def pending_change(c: PendingChange) -> PendingChangeDTO:
        return PendingChangeDTO(
            item_id=str(c.item_id),
            item_name=c.item_name,
            item_wbs=c.item_wbs,
            field=c.field,
            previous_value=_fmt_value(c.previous_value),
            new_value=_fmt_value(c.new_value),
            milestone_id=str(c.milestone.id),
            milestone_ref=c.milestone.milestone_ref,
            milestone_name=c.milestone.name,
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class SignatureWrite(NamedTuple):
    """
    Result of a conditional signature update.

    `applied` is False when the record was already fully signed and nothing
    was written; `completed` is True when this write supplied the second
    signature.
    """
    record: Any
    applied: bool
    completed: bool


class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, project_id: uuid.UUID) -> Optional[Project]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Project]: ...
    @abc.abstractmethod
    def save(self, project: Project) -> None: ...


class AbstractUserRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, user_id: uuid.UUID) -> Optional[User]: ...
    @abc.abstractmethod
    def get_by_email(self, email: str) -> Optional[User]: ...
    @abc.abstractmethod
    def list_all(self) -> List[User]: ...
    @abc.abstractmethod
    def save(self, user: User) -> None: ...


class AbstractProjectMemberRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[ProjectMember]: ...
    @abc.abstractmethod
    def save(self, member: ProjectMember) -> None: ...
    @abc.abstractmethod
    def delete(self, member_id: uuid.UUID) -> None: ...


class AbstractMilestoneRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, milestone_id: uuid.UUID) -> Optional[Milestone]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[Milestone]: ...
    @abc.abstractmethod
    def save(self, milestone: Milestone) -> None: ...

    @abc.abstractmethod
    def apply_baseline_signature(
        self, milestone_id: uuid.UUID, party: SignatoryParty, signature: Signature
    ) -> Optional[SignatureWrite]:
        """
        Atomically: unless the baseline is already locked, set `party`'s
        signature; if the other party's signature is present, also set
        `baseline_locked`.  Returns None if the milestone does not exist.
        """

    @abc.abstractmethod
    def clear_baseline_signatures(self, milestone_id: uuid.UUID) -> Optional[Milestone]:
        """Atomically clear both signatures and the lock flag."""


class AbstractBaselineVersionRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_milestone(self, milestone_id: uuid.UUID) -> List[BaselineVersion]: ...
    @abc.abstractmethod
    def save(self, version: BaselineVersion) -> None: ...


class AbstractDeliverableRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, deliverable_id: uuid.UUID) -> Optional[Deliverable]: ...
    @abc.abstractmethod
    def get_milestone_id(self, deliverable_id: uuid.UUID) -> Optional[uuid.UUID]: ...
    @abc.abstractmethod
    def list_for_milestone(self, milestone_id: uuid.UUID) -> List[Deliverable]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[Deliverable]: ...
    @abc.abstractmethod
    def save(self, deliverable: Deliverable) -> None: ...


class AbstractCertificateRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, certificate_id: uuid.UUID) -> Optional[MilestoneCertificate]: ...
    @abc.abstractmethod
    def get_for_milestone(self, milestone_id: uuid.UUID) -> Optional[MilestoneCertificate]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[MilestoneCertificate]: ...

    @abc.abstractmethod
    def add(self, certificate: MilestoneCertificate) -> bool:
        """Insert unless the milestone already has a certificate.  Returns False on conflict."""

    @abc.abstractmethod
    def apply_signature(
        self, certificate_id: uuid.UUID, party: SignatoryParty, signature: Signature
    ) -> Optional[SignatureWrite]:
        """Atomically set `party`'s signature unless the certificate is already Signed."""


class AbstractVariationRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, variation_id: uuid.UUID) -> Optional[Variation]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[Variation]: ...
    @abc.abstractmethod
    def add(self, variation: Variation) -> None: ...
    @abc.abstractmethod
    def delete(self, variation_id: uuid.UUID) -> None: ...


class AbstractVariationImpactRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_variation(self, variation_id: uuid.UUID) -> List[VariationMilestoneImpact]: ...
    @abc.abstractmethod
    def add(self, impact: VariationMilestoneImpact) -> None: ...
    @abc.abstractmethod
    def delete(self, impact_id: uuid.UUID) -> None: ...


class AbstractPlanItemRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, item_id: uuid.UUID) -> Optional[PlanItem]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[PlanItem]: ...
    @abc.abstractmethod
    def save(self, item: PlanItem) -> None: ...


class AbstractPendingChangeStore(abc.ABC):
    """Session memory for blocked edits, keyed by (project, user)."""

    @abc.abstractmethod
    def get_current(self, project_id: uuid.UUID, user_id: uuid.UUID) -> Optional[PendingChange]: ...
    @abc.abstractmethod
    def set_current(self, project_id: uuid.UUID, user_id: uuid.UUID, change: Optional[PendingChange]) -> None: ...
    @abc.abstractmethod
    def get_batch(self, project_id: uuid.UUID, user_id: uuid.UUID) -> List[PendingChange]: ...
    @abc.abstractmethod
    def append_batch(self, project_id: uuid.UUID, user_id: uuid.UUID, change: PendingChange) -> None: ...
    @abc.abstractmethod
    def clear_batch(self, project_id: uuid.UUID, user_id: uuid.UUID) -> None: ...


class AbstractVariationRefGenerator(abc.ABC):
    @abc.abstractmethod
    def generate_variation_ref(self, project_id: uuid.UUID) -> str: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single boundary.
    Use as a context manager:

        with uow:
            uow.milestones.save(milestone)
            uow.commit()
    """
    projects: AbstractProjectRepository
    users: AbstractUserRepository
    members: AbstractProjectMemberRepository
    milestones: AbstractMilestoneRepository
    baseline_versions: AbstractBaselineVersionRepository
    deliverables: AbstractDeliverableRepository
    certificates: AbstractCertificateRepository
    variations: AbstractVariationRepository
    variation_impacts: AbstractVariationImpactRepository
    plan_items: AbstractPlanItemRepository
    pending_changes: AbstractPendingChangeStore
    variation_refs: AbstractVariationRefGenerator

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_baseline_svc = BaselineService()
_certificate_svc = CertificateService()
_protection_svc = BaselineProtectionService(_baseline_svc)
_draft_svc = VariationDraftService()
_commit_svc = PlanCommitService()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

@dataclass
class Actor:
    """The acting user as seen from one project."""
    user_id: uuid.UUID
    display_name: str
    roles: Tuple[ProjectRole, ...]


def _get_project_or_raise(uow: AbstractUnitOfWork, project_id: uuid.UUID) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _get_milestone_or_raise(uow: AbstractUnitOfWork, milestone_id: uuid.UUID) -> Milestone:
    milestone = uow.milestones.get(milestone_id)
    if milestone is None:
        raise NotFoundError(f"Milestone {milestone_id} not found.")
    return milestone


def _get_plan_item_or_raise(uow: AbstractUnitOfWork, item_id: uuid.UUID) -> PlanItem:
    item = uow.plan_items.get(item_id)
    if item is None:
        raise NotFoundError(f"Plan item {item_id} not found.")
    return item


def _resolve_actor(uow: AbstractUnitOfWork, project_id: uuid.UUID, user_id: uuid.UUID) -> Actor:
    user = uow.users.get(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found.")
    roles = tuple(
        m.role for m in uow.members.list_for_project(project_id) if m.user_id == user_id
    )
    return Actor(user_id=user.id, display_name=user.full_name, roles=roles)


def _authorize(actor: Actor, capability: Capability) -> None:
    if not can(actor.roles, capability):
        raise AuthorizationError(
            f"User {actor.display_name or actor.user_id} may not {capability.value.replace('_', ' ')}."
        )


def _call_service(fn, *args, **kwargs):
    """Run a service call, mapping its exceptions onto the application hierarchy."""
    try:
        return fn(*args, **kwargs)
    except PermissionError as exc:
        raise AuthorizationError(str(exc)) from exc
    except ValueError as exc:
        raise ApplicationError(str(exc)) from exc


def _refresh_milestone_progress(uow: AbstractUnitOfWork, milestone: Milestone) -> Milestone:
    """Recompute status and completion from the milestone's deliverables."""
    deliverables = uow.deliverables.list_for_milestone(milestone.id)
    milestone.status = _certificate_svc.milestone_status(deliverables)
    if deliverables:
        milestone.completion_percentage = round(sum(d.progress for d in deliverables) / len(deliverables))
    else:
        milestone.completion_percentage = 0
    milestone.updated_at = datetime.now(timezone.utc)
    uow.milestones.save(milestone)
    return milestone


def _next_ref(prefix: str, existing: Iterable[str]) -> str:
    numbers = []
    for ref in existing:
        if ref.startswith(prefix):
            tail = ref[len(prefix):]
            if tail.isdigit():
                numbers.append(int(tail))
    return f"{prefix}{(max(numbers) if numbers else 0) + 1:03d}"


# ===========================================================================
# BASELINE PROTECTION INTERCEPTOR
# ===========================================================================

class BaselineProtectionInterceptor:
    """
    Decides whether an edit to a plan item may be written.

    `check(item, field)` returns None to allow, or the locked Milestone that
    blocks the edit.  Lookup failures are allowed (fail-open) unless the
    interceptor was built with `fail_open=False`, in which case they raise
    GovernanceLookupError.
    """

    def __init__(self, uow: AbstractUnitOfWork, fail_open: Optional[bool] = None):
        self._uow = uow
        self._fail_open = get_config().GOVERNANCE_FAIL_OPEN if fail_open is None else fail_open

    def _lookup_failed(self, item: PlanItem, reason: str, exc: Optional[Exception] = None) -> None:
        if not self._fail_open:
            raise GovernanceLookupError(
                f"Cannot verify baseline protection for plan item {item.id}: {reason}"
            ) from exc
        logger.warning("Baseline lookup failed for plan item %s (%s); allowing edit", item.id, reason)

    def resolve_milestone(self, item: PlanItem) -> Optional[Milestone]:
        if item.published_milestone_id is not None:
            milestone = self._uow.milestones.get(item.published_milestone_id)
            if milestone is None:
                raise NotFoundError(f"Milestone {item.published_milestone_id} not found.")
            return milestone
        if item.published_deliverable_id is not None:
            milestone_id = self._uow.deliverables.get_milestone_id(item.published_deliverable_id)
            if milestone_id is None:
                raise NotFoundError(f"Deliverable {item.published_deliverable_id} not found.")
            milestone = self._uow.milestones.get(milestone_id)
            if milestone is None:
                raise NotFoundError(f"Milestone {milestone_id} not found.")
            return milestone
        return None

    def check(
        self,
        item: PlanItem,
        field_name: str,
        roles: Iterable[ProjectRole] = (),
    ) -> Optional[Milestone]:
        if not _protection_svc.needs_lookup(item, field_name, roles):
            return None
        try:
            milestone = self.resolve_milestone(item)
        except (NotFoundError, StoreError) as exc:
            self._lookup_failed(item, str(exc), exc)
            return None
        decision = _protection_svc.decide(milestone)
        if decision.blocked:
            logger.info(
                "Blocked edit of %s on plan item %s: milestone %s baseline locked",
                field_name, item.id, decision.milestone.milestone_ref,
            )
            return decision.milestone
        return None


# ===========================================================================
# USE CASES: USERS, PROJECTS, MEMBERS
# ===========================================================================

@dataclass
class CreateUserCommand:
    full_name: str
    email: str


class CreateUserUseCase:
    def execute(self, cmd: CreateUserCommand, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            if uow.users.get_by_email(cmd.email) is not None:
                raise ApplicationError(f"A user with email '{cmd.email}' already exists.")
            user = User(full_name=cmd.full_name.strip(), email=cmd.email.strip().lower())
            uow.users.save(user)
            uow.commit()
            return _Assembler.user(user)


class GetUserUseCase:
    def execute(self, user_id: uuid.UUID, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            user = uow.users.get(user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found.")
            return _Assembler.user(user)


class ListUsersUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[UserDTO]:
        with uow:
            return [_Assembler.user(u) for u in uow.users.list_all()]


@dataclass
class CreateProjectCommand:
    reference: str
    name: str
    description: str
    acting_user_id: uuid.UUID


class CreateProjectUseCase:
    """Create a project and register the creator as its admin."""

    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            if uow.users.get(cmd.acting_user_id) is None:
                raise NotFoundError(f"User {cmd.acting_user_id} not found.")
            if not cmd.name.strip():
                raise ApplicationError("Project name must not be empty.")
            project = Project(
                reference=cmd.reference.strip(),
                name=cmd.name.strip(),
                description=cmd.description,
                created_by_id=cmd.acting_user_id,
            )
            uow.projects.save(project)
            uow.members.save(
                ProjectMember(project_id=project.id, user_id=cmd.acting_user_id, role=ProjectRole.ADMIN)
            )
            uow.commit()
            logger.info("Project %s created by %s", project.reference or project.id, cmd.acting_user_id)
            return _Assembler.project(project)


class GetProjectUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            return _Assembler.project(_get_project_or_raise(uow, project_id))


class ListProjectsUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[ProjectDTO]:
        with uow:
            return [_Assembler.project(p) for p in uow.projects.list_all()]


@dataclass
class AssignMemberCommand:
    project_id: uuid.UUID
    user_id: uuid.UUID
    role: ProjectRole
    acting_user_id: uuid.UUID


class AssignMemberUseCase:
    def execute(self, cmd: AssignMemberCommand, uow: AbstractUnitOfWork) -> ProjectMemberDTO:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            actor = _resolve_actor(uow, cmd.project_id, cmd.acting_user_id)
            _authorize(actor, Capability.MANAGE_MEMBERS)
            user = uow.users.get(cmd.user_id)
            if user is None:
                raise NotFoundError(f"User {cmd.user_id} not found.")
            existing = uow.members.list_for_project(cmd.project_id)
            if any(m.user_id == cmd.user_id and m.role == cmd.role for m in existing):
                raise ApplicationError(f"User already holds role '{cmd.role.value}' on this project.")
            member = ProjectMember(project_id=cmd.project_id, user_id=cmd.user_id, role=cmd.role)
            uow.members.save(member)
            uow.commit()
            return _Assembler.member(member, user)


class ListMembersUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[ProjectMemberDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            result = []
            for member in uow.members.list_for_project(project_id):
                user = uow.users.get(member.user_id)
                if user is not None:
                    result.append(_Assembler.member(member, user))
            return result


# ===========================================================================
# USE CASES: MILESTONES & DELIVERABLES
# ===========================================================================

@dataclass
class CreateMilestoneCommand:
    project_id: uuid.UUID
    name: str
    acting_user_id: uuid.UUID
    milestone_ref: Optional[str] = None
    description: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    billable: Decimal = Decimal("0")
    baseline_start_date: Optional[date] = None
    baseline_end_date: Optional[date] = None
    baseline_billable: Optional[Decimal] = None


class CreateMilestoneUseCase:
    def execute(self, cmd: CreateMilestoneCommand, uow: AbstractUnitOfWork) -> MilestoneDTO:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            actor = _resolve_actor(uow, cmd.project_id, cmd.acting_user_id)
            _authorize(actor, Capability.EDIT_MILESTONE)
            existing = uow.milestones.list_for_project(cmd.project_id)
            milestone = Milestone(
                project_id=cmd.project_id,
                milestone_ref=cmd.milestone_ref or _next_ref("MS-", (m.milestone_ref for m in existing)),
                name=cmd.name.strip(),
                description=cmd.description,
                start_date=cmd.start_date,
                end_date=cmd.end_date,
                forecast_start_date=cmd.start_date,
                forecast_end_date=cmd.end_date,
                billable=cmd.billable,
                baseline_start_date=cmd.baseline_start_date,
                baseline_end_date=cmd.baseline_end_date,
                baseline_billable=cmd.baseline_billable,
                created_by_id=actor.user_id,
            )
            uow.milestones.save(milestone)
            uow.commit()
            return _Assembler.milestone(milestone)


class GetMilestoneUseCase:
    def execute(self, milestone_id: uuid.UUID, uow: AbstractUnitOfWork) -> MilestoneDTO:
        with uow:
            return _Assembler.milestone(_get_milestone_or_raise(uow, milestone_id))


class ListMilestonesUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[MilestoneDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            milestones = sorted(uow.milestones.list_for_project(project_id), key=lambda m: m.milestone_ref)
            return [_Assembler.milestone(m) for m in milestones]


@dataclass
class UpdateMilestoneCommand:
    milestone_id: uuid.UUID
    changes: Dict[str, Any]
    acting_user_id: uuid.UUID


class UpdateMilestoneUseCase:
    """
    Direct milestone edit.  Touching a baseline field of a locked milestone
    is an admin override and is logged as such; for anyone else it raises
    BaselineProtectedError and nothing is written.
    """

    def execute(self, cmd: UpdateMilestoneCommand, uow: AbstractUnitOfWork) -> MilestoneDTO:
        with uow:
            milestone = _get_milestone_or_raise(uow, cmd.milestone_id)
            actor = _resolve_actor(uow, milestone.project_id, cmd.acting_user_id)
            was_locked = _baseline_svc.is_locked(milestone)
            working = replace(milestone)
            try:
                working = _baseline_svc.apply_milestone_update(working, cmd.changes, actor.roles)
            except BaselinedFieldLockedError as exc:
                raise BaselineProtectedError(str(exc)) from exc
            except PermissionError as exc:
                raise AuthorizationError(str(exc)) from exc
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            uow.milestones.save(working)
            uow.commit()
            if was_locked and any(k.startswith("baseline_") for k in cmd.changes):
                logger.warning(
                    "Admin override of locked baseline on milestone %s by %s: %s",
                    working.milestone_ref, actor.user_id, sorted(cmd.changes),
                )
            return _Assembler.milestone(working)


@dataclass
class CreateDeliverableCommand:
    milestone_id: uuid.UUID
    name: str
    acting_user_id: uuid.UUID
    description: str = ""
    status: DeliverableStatus = DeliverableStatus.NOT_STARTED
    progress: int = 0
    start_date: Optional[date] = None
    due_date: Optional[date] = None


class CreateDeliverableUseCase:
    def execute(self, cmd: CreateDeliverableCommand, uow: AbstractUnitOfWork) -> DeliverableDTO:
        with uow:
            milestone = _get_milestone_or_raise(uow, cmd.milestone_id)
            actor = _resolve_actor(uow, milestone.project_id, cmd.acting_user_id)
            _authorize(actor, Capability.EDIT_MILESTONE)
            existing = uow.deliverables.list_for_project(milestone.project_id)
            deliverable = Deliverable(
                project_id=milestone.project_id,
                milestone_id=milestone.id,
                deliverable_ref=_next_ref("D-", (d.deliverable_ref for d in existing)),
                name=cmd.name.strip(),
                description=cmd.description,
                status=cmd.status,
                progress=cmd.progress,
                start_date=cmd.start_date,
                due_date=cmd.due_date,
                created_by_id=actor.user_id,
            )
            uow.deliverables.save(deliverable)
            _refresh_milestone_progress(uow, milestone)
            uow.commit()
            return _Assembler.deliverable(deliverable)


@dataclass
class UpdateDeliverableStatusCommand:
    deliverable_id: uuid.UUID
    status: DeliverableStatus
    acting_user_id: uuid.UUID
    progress: Optional[int] = None


class UpdateDeliverableStatusUseCase:
    def execute(self, cmd: UpdateDeliverableStatusCommand, uow: AbstractUnitOfWork) -> DeliverableDTO:
        with uow:
            deliverable = uow.deliverables.get(cmd.deliverable_id)
            if deliverable is None:
                raise NotFoundError(f"Deliverable {cmd.deliverable_id} not found.")
            actor = _resolve_actor(uow, deliverable.project_id, cmd.acting_user_id)
            _authorize(actor, Capability.EDIT_MILESTONE)
            deliverable.status = cmd.status
            if cmd.progress is not None:
                deliverable.progress = cmd.progress
            elif cmd.status == DeliverableStatus.DELIVERED:
                deliverable.progress = 100
            uow.deliverables.save(deliverable)
            milestone = uow.milestones.get(deliverable.milestone_id)
            if milestone is not None:
                _refresh_milestone_progress(uow, milestone)
            uow.commit()
            return _Assembler.deliverable(deliverable)


class ListDeliverablesUseCase:
    def execute(self, milestone_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[DeliverableDTO]:
        with uow:
            _get_milestone_or_raise(uow, milestone_id)
            return [_Assembler.deliverable(d) for d in uow.deliverables.list_for_milestone(milestone_id)]


# ===========================================================================
# USE CASES: BASELINE GOVERNANCE
# ===========================================================================

@dataclass
class SignBaselineCommand:
    milestone_id: uuid.UUID
    party: SignatoryParty
    acting_user_id: uuid.UUID


class SignBaselineUseCase:
    """
    Apply one party's baseline signature as a single conditional store update.

    When this signature completes the pair, the original (v1) baseline version
    is recorded.  A failure to write that record is logged and does not undo
    the lock.
    """

    def execute(self, cmd: SignBaselineCommand, uow: AbstractUnitOfWork) -> BaselineStatusDTO:
        with uow:
            milestone = _get_milestone_or_raise(uow, cmd.milestone_id)
            actor = _resolve_actor(uow, milestone.project_id, cmd.acting_user_id)
            signature = _call_service(
                _baseline_svc.prepare_signature,
                milestone, cmd.party, actor.user_id, actor.display_name, actor.roles,
            )
            write = uow.milestones.apply_baseline_signature(milestone.id, cmd.party, signature)
            if write is None:
                raise NotFoundError(f"Milestone {cmd.milestone_id} not found.")
            if not write.applied:
                raise ApplicationError(
                    f"Baseline for milestone {milestone.milestone_ref} is already locked."
                )
            milestone = write.record
            logger.info(
                "Baseline of milestone %s signed by %s as %s",
                milestone.milestone_ref, actor.user_id, cmd.party.value,
            )
            if write.completed:
                logger.info("Baseline of milestone %s locked", milestone.milestone_ref)
                self._record_original_version(uow, milestone)
            uow.commit()
            return _Assembler.baseline_status(milestone, actor.roles)

    @staticmethod
    def _record_original_version(uow: AbstractUnitOfWork, milestone: Milestone) -> None:
        try:
            if any(v.version == 1 for v in uow.baseline_versions.list_for_milestone(milestone.id)):
                return
            uow.baseline_versions.save(_baseline_svc.build_original_version(milestone))
        except StoreError:
            logger.exception("Could not record original baseline version for milestone %s", milestone.id)


@dataclass
class ResetBaselineCommand:
    milestone_id: uuid.UUID
    acting_user_id: uuid.UUID


class ResetBaselineUseCase:
    def execute(self, cmd: ResetBaselineCommand, uow: AbstractUnitOfWork) -> BaselineStatusDTO:
        with uow:
            milestone = _get_milestone_or_raise(uow, cmd.milestone_id)
            actor = _resolve_actor(uow, milestone.project_id, cmd.acting_user_id)
            _call_service(_baseline_svc.validate_reset, actor.roles)
            milestone = uow.milestones.clear_baseline_signatures(milestone.id)
            if milestone is None:
                raise NotFoundError(f"Milestone {cmd.milestone_id} not found.")
            uow.commit()
            logger.info("Baseline of milestone %s reset by %s", milestone.milestone_ref, actor.user_id)
            return _Assembler.baseline_status(milestone, actor.roles)


class GetBaselineStatusUseCase:
    def execute(
        self, milestone_id: uuid.UUID, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> BaselineStatusDTO:
        with uow:
            milestone = _get_milestone_or_raise(uow, milestone_id)
            actor = _resolve_actor(uow, milestone.project_id, acting_user_id)
            return _Assembler.baseline_status(milestone, actor.roles)


class GetBaselineHistoryUseCase:
    def execute(self, milestone_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[BaselineVersionDTO]:
        with uow:
            _get_milestone_or_raise(uow, milestone_id)
            versions = sorted(uow.baseline_versions.list_for_milestone(milestone_id), key=lambda v: v.version)
            return [_Assembler.baseline_version(v) for v in versions]


# ===========================================================================
# USE CASES: CERTIFICATES
# ===========================================================================

@dataclass
class GenerateCertificateCommand:
    milestone_id: uuid.UUID
    acting_user_id: uuid.UUID


class GenerateCertificateUseCase:
    def execute(self, cmd: GenerateCertificateCommand, uow: AbstractUnitOfWork) -> CertificateDTO:
        with uow:
            milestone = _get_milestone_or_raise(uow, cmd.milestone_id)
            actor = _resolve_actor(uow, milestone.project_id, cmd.acting_user_id)
            deliverables = uow.deliverables.list_for_milestone(milestone.id)
            existing = uow.certificates.get_for_milestone(milestone.id)
            certificate = _call_service(
                _certificate_svc.generate,
                milestone, deliverables, existing, actor.user_id, actor.roles,
            )
            if not uow.certificates.add(certificate):
                raise ApplicationError(f"Milestone {milestone.milestone_ref} already has a certificate.")
            uow.commit()
            logger.info("Certificate %s generated for milestone %s", certificate.certificate_number, milestone.id)
            return _Assembler.certificate(certificate)


@dataclass
class SignCertificateCommand:
    milestone_id: uuid.UUID
    party: SignatoryParty
    acting_user_id: uuid.UUID


class SignCertificateUseCase:
    def execute(self, cmd: SignCertificateCommand, uow: AbstractUnitOfWork) -> CertificateDTO:
        with uow:
            milestone = _get_milestone_or_raise(uow, cmd.milestone_id)
            actor = _resolve_actor(uow, milestone.project_id, cmd.acting_user_id)
            certificate = uow.certificates.get_for_milestone(milestone.id)
            if certificate is None:
                raise NotFoundError(f"Milestone {milestone.milestone_ref} has no certificate.")
            signature = _call_service(
                _certificate_svc.prepare_signature,
                certificate, cmd.party, actor.user_id, actor.display_name, actor.roles,
            )
            write = uow.certificates.apply_signature(certificate.id, cmd.party, signature)
            if write is None:
                raise NotFoundError(f"Certificate {certificate.id} not found.")
            if not write.applied:
                raise ApplicationError(
                    f"Certificate {certificate.certificate_number} is fully signed and can no longer change."
                )
            uow.commit()
            logger.info(
                "Certificate %s signed by %s as %s",
                certificate.certificate_number, actor.user_id, cmd.party.value,
            )
            return _Assembler.certificate(write.record)


class GetCertificateStatusUseCase:
    def execute(self, milestone_id: uuid.UUID, uow: AbstractUnitOfWork) -> CertificateStatusDTO:
        with uow:
            _get_milestone_or_raise(uow, milestone_id)
            certificate = uow.certificates.get_for_milestone(milestone_id)
            deliverables = uow.deliverables.list_for_milestone(milestone_id)
            return CertificateStatusDTO(
                milestone_id=str(milestone_id),
                status=_certificate_svc.resolve_status(certificate).value,
                can_generate=_certificate_svc.can_generate(deliverables, certificate),
                certificate=_Assembler.certificate(certificate) if certificate else None,
            )


class ListBillableMilestonesUseCase:
    """Billing view: every milestone carrying a value, with its certificate state."""

    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[BillableMilestoneDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            result = []
            milestones = sorted(uow.milestones.list_for_project(project_id), key=lambda m: m.milestone_ref)
            for m in milestones:
                if not m.billable or m.billable <= 0:
                    continue
                certificate = uow.certificates.get_for_milestone(m.id)
                status = _certificate_svc.resolve_status(certificate)
                deliverables = uow.deliverables.list_for_milestone(m.id)
                result.append(
                    BillableMilestoneDTO(
                        milestone_id=str(m.id),
                        milestone_ref=m.milestone_ref,
                        name=m.name,
                        billable=_fmt_money(m.billable),
                        forecast_end_date=_fmt_date(m.forecast_end_date),
                        expected_date=_fmt_date(_certificate_svc.expected_date(m, deliverables)),
                        certificate_status=status.value,
                        certificate_number=certificate.certificate_number if certificate else None,
                        ready_to_bill=status == CertificateStatus.SIGNED,
                    )
                )
            return result


# ===========================================================================
# USE CASES: PLANNING
# ===========================================================================

_EDITABLE_PLAN_FIELDS = frozenset({
    "name", "description", "wbs", "sort_order", "start_date", "end_date",
    "duration", "billable", "cost", "progress", "status",
})


@dataclass
class CreatePlanItemCommand:
    project_id: uuid.UUID
    item_type: PlanItemType
    name: str
    acting_user_id: uuid.UUID
    parent_id: Optional[uuid.UUID] = None
    wbs: str = ""
    sort_order: int = 0
    description: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    duration: Optional[int] = None
    billable: Optional[Decimal] = None
    cost: Optional[Decimal] = None
    progress: int = 0
    status: PlanItemStatus = PlanItemStatus.NOT_STARTED


class CreatePlanItemUseCase:
    def execute(self, cmd: CreatePlanItemCommand, uow: AbstractUnitOfWork) -> PlanItemDTO:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            actor = _resolve_actor(uow, cmd.project_id, cmd.acting_user_id)
            _authorize(actor, Capability.EDIT_PLAN)
            if cmd.parent_id is not None:
                parent = _get_plan_item_or_raise(uow, cmd.parent_id)
                if parent.project_id != cmd.project_id:
                    raise ApplicationError("Parent plan item belongs to a different project.")
            item = PlanItem(
                project_id=cmd.project_id,
                parent_id=cmd.parent_id,
                item_type=cmd.item_type,
                wbs=cmd.wbs,
                sort_order=cmd.sort_order,
                name=cmd.name,
                description=cmd.description,
                start_date=cmd.start_date,
                end_date=cmd.end_date,
                duration=cmd.duration,
                billable=cmd.billable,
                cost=cmd.cost,
                progress=cmd.progress,
                status=cmd.status,
            )
            uow.plan_items.save(item)
            uow.commit()
            return _Assembler.plan_item(item)


class ListPlanItemsUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[PlanItemDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            items = sorted(uow.plan_items.list_for_project(project_id), key=lambda i: i.sort_order)
            return [_Assembler.plan_item(i) for i in items]


@dataclass
class EditPlanItemCommand:
    item_id: uuid.UUID
    field: str
    value: Any
    acting_user_id: uuid.UUID


class EditPlanItemUseCase:
    """
    The normal edit path for plan items, guarded by the interceptor.

    A blocked edit is not written; it becomes the actor's current
    PendingChange and is returned with `blocked=True`.
    """

    def __init__(self, fail_open: Optional[bool] = None):
        self._fail_open = fail_open

    def execute(self, cmd: EditPlanItemCommand, uow: AbstractUnitOfWork) -> EditOutcomeDTO:
        with uow:
            item = _get_plan_item_or_raise(uow, cmd.item_id)
            actor = _resolve_actor(uow, item.project_id, cmd.acting_user_id)
            _authorize(actor, Capability.EDIT_PLAN)
            if cmd.field not in _EDITABLE_PLAN_FIELDS:
                raise ApplicationError(f"Field '{cmd.field}' cannot be edited on a plan item.")
            value = self._coerce(cmd.field, cmd.value)

            interceptor = BaselineProtectionInterceptor(uow, fail_open=self._fail_open)
            milestone = interceptor.check(item, cmd.field, actor.roles)
            if milestone is not None:
                change = PendingChange(
                    item_id=item.id,
                    field=cmd.field,
                    previous_value=getattr(item, cmd.field),
                    new_value=value,
                    milestone=milestone,
                    item_name=item.name,
                    item_wbs=item.wbs,
                )
                uow.pending_changes.set_current(item.project_id, actor.user_id, change)
                return EditOutcomeDTO(
                    blocked=True,
                    item=_Assembler.plan_item(item),
                    pending_change=_Assembler.pending_change(change),
                )

            setattr(item, cmd.field, value)
            uow.plan_items.save(item)
            uow.commit()
            return EditOutcomeDTO(blocked=False, item=_Assembler.plan_item(item))

    @staticmethod
    def _coerce(field_name: str, value: Any) -> Any:
        try:
            if field_name == "status":
                return PlanItemStatus(value)
            if field_name in ("progress", "sort_order"):
                return int(value)
            if field_name in ("name", "description", "wbs"):
                return "" if value is None else str(value)
            return coerce_field_value(field_name, value)
        except (TypeError, ValueError) as exc:
            raise ApplicationError(str(exc)) from exc


@dataclass
class CommitPlanCommand:
    project_id: uuid.UUID
    acting_user_id: uuid.UUID


class CommitPlanUseCase:
    """
    Promote unpublished milestone/deliverable plan items into the tracker.

    Milestones are created first so that deliverables committed in the same
    run can attach to them.  A failure creating one item is recorded in
    `errors` and processing continues.
    """

    def execute(self, cmd: CommitPlanCommand, uow: AbstractUnitOfWork) -> CommitResultDTO:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            actor = _resolve_actor(uow, cmd.project_id, cmd.acting_user_id)
            _authorize(actor, Capability.COMMIT_PLAN)

            items = uow.plan_items.list_for_project(cmd.project_id)
            candidates = _commit_svc.eligible(items)
            valid, skipped = _commit_svc.filter_valid(candidates, items)
            logger.info(
                "Committing plan for project %s: %d eligible, %d valid, %d skipped",
                cmd.project_id, len(candidates), len(valid), len(skipped),
            )
            for skip in skipped:
                logger.info("Skipped plan item %s (%s): %s", skip.item.id, skip.item.name, skip.reason)

            items_by_id = {i.id: i for i in items}
            committed: Dict[uuid.UUID, uuid.UUID] = {}
            milestones: List[Milestone] = []
            deliverables: List[Deliverable] = []
            errors: List[Dict[str, str]] = []
            tasks_published = 0

            milestone_refs = [m.milestone_ref for m in uow.milestones.list_for_project(cmd.project_id)]
            for item in (i for i in valid if i.item_type == PlanItemType.MILESTONE):
                try:
                    ref = _next_ref("MS-", milestone_refs)
                    milestone = _commit_svc.build_milestone(item, ref, actor.user_id)
                    uow.milestones.save(milestone)
                    milestone_refs.append(ref)
                    published = _commit_svc.mark_published(item, milestone_id=milestone.id)
                    uow.plan_items.save(published)
                except (StoreError, ValueError) as exc:
                    logger.warning("Failed to commit milestone item %s: %s", item.id, exc)
                    errors.append({"item_id": str(item.id), "name": item.name, "error": str(exc)})
                    continue
                items_by_id[item.id] = published
                committed[item.id] = milestone.id
                milestones.append(milestone)

            deliverable_refs = [d.deliverable_ref for d in uow.deliverables.list_for_project(cmd.project_id)]
            for item in (i for i in valid if i.item_type == PlanItemType.DELIVERABLE):
                milestone_id = _commit_svc.resolve_parent_milestone(item, items_by_id, committed)
                if milestone_id is None:
                    errors.append({
                        "item_id": str(item.id),
                        "name": item.name,
                        "error": "Parent milestone was not committed",
                    })
                    continue
                try:
                    tasks = _commit_svc.collect_tasks(item, list(items_by_id.values()))
                    ref = _next_ref("D-", deliverable_refs)
                    deliverable = _commit_svc.build_deliverable(item, milestone_id, ref, tasks, actor.user_id)
                    uow.deliverables.save(deliverable)
                    deliverable_refs.append(ref)
                    uow.plan_items.save(_commit_svc.mark_published(item, deliverable_id=deliverable.id))
                    for task in tasks:
                        published_task = _commit_svc.mark_published(task, deliverable_id=deliverable.id)
                        uow.plan_items.save(published_task)
                        items_by_id[task.id] = published_task
                except (StoreError, ValueError) as exc:
                    logger.warning("Failed to commit deliverable item %s: %s", item.id, exc)
                    errors.append({"item_id": str(item.id), "name": item.name, "error": str(exc)})
                    continue
                tasks_published += len(tasks)
                deliverables.append(deliverable)

            uow.commit()
            count = len(milestones) + len(deliverables) + tasks_published
            logger.info(
                "Plan commit for project %s finished: %d committed, %d skipped, %d failed",
                cmd.project_id, count, len(skipped), len(errors),
            )
            return CommitResultDTO(
                count=count,
                milestones=[_Assembler.milestone(m) for m in milestones],
                deliverables=[_Assembler.deliverable(d) for d in deliverables],
                tasks_published=tasks_published,
                skipped=[
                    {"item_id": str(s.item.id), "name": s.item.name, "reason": s.reason}
                    for s in skipped
                ],
                errors=errors,
            )


class GetCommitSummaryUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> CommitSummaryDTO:
        with uow:
            _get_project_or_raise(uow, project_id)
            items = uow.plan_items.list_for_project(project_id)
            locked = {
                m.id for m in uow.milestones.list_for_project(project_id)
                if _baseline_svc.is_locked(m)
            }
            summary = _commit_svc.summary(items, locked)
            return CommitSummaryDTO(**summary)


class DetectBaselineDriftUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[BaselineDriftDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            items = sorted(uow.plan_items.list_for_project(project_id), key=lambda i: i.sort_order)
            milestones = {m.id: m for m in uow.milestones.list_for_project(project_id)}
            return [
                BaselineDriftDTO(
                    plan_item_id=str(d["plan_item_id"]),
                    plan_item_name=d["plan_item_name"],
                    plan_item_wbs=d["plan_item_wbs"],
                    milestone_id=str(d["milestone_id"]),
                    field=d["field"],
                    current_value=_fmt_value(d["current_value"]),
                    baseline_value=_fmt_value(d["baseline_value"]),
                )
                for d in _commit_svc.detect_baseline_drift(items, milestones, _baseline_svc)
            ]


# ===========================================================================
# USE CASES: PENDING CHANGES & VARIATIONS
# ===========================================================================

def _pending_state(uow: AbstractUnitOfWork, project_id: uuid.UUID, user_id: uuid.UUID) -> PendingChangesDTO:
    current = uow.pending_changes.get_current(project_id, user_id)
    return PendingChangesDTO(
        current=_Assembler.pending_change(current) if current else None,
        batch=[_Assembler.pending_change(c) for c in uow.pending_changes.get_batch(project_id, user_id)],
    )


@dataclass
class PendingChangeCommand:
    project_id: uuid.UUID
    acting_user_id: uuid.UUID


class ListPendingChangesUseCase:
    def execute(self, cmd: PendingChangeCommand, uow: AbstractUnitOfWork) -> PendingChangesDTO:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            _resolve_actor(uow, cmd.project_id, cmd.acting_user_id)
            return _pending_state(uow, cmd.project_id, cmd.acting_user_id)


class DiscardPendingChangeUseCase:
    def execute(self, cmd: PendingChangeCommand, uow: AbstractUnitOfWork) -> PendingChangesDTO:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            _resolve_actor(uow, cmd.project_id, cmd.acting_user_id)
            uow.pending_changes.set_current(cmd.project_id, cmd.acting_user_id, None)
            return _pending_state(uow, cmd.project_id, cmd.acting_user_id)


class QueuePendingChangeUseCase:
    """Move the current blocked edit onto the batch queue."""

    def execute(self, cmd: PendingChangeCommand, uow: AbstractUnitOfWork) -> PendingChangesDTO:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            _resolve_actor(uow, cmd.project_id, cmd.acting_user_id)
            current = uow.pending_changes.get_current(cmd.project_id, cmd.acting_user_id)
            if current is None:
                raise ApplicationError("There is no blocked change awaiting a decision.")
            uow.pending_changes.append_batch(cmd.project_id, cmd.acting_user_id, current)
            uow.pending_changes.set_current(cmd.project_id, cmd.acting_user_id, None)
            return _pending_state(uow, cmd.project_id, cmd.acting_user_id)


class ClearPendingChangesUseCase:
    def execute(self, cmd: PendingChangeCommand, uow: AbstractUnitOfWork) -> PendingChangesDTO:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            _resolve_actor(uow, cmd.project_id, cmd.acting_user_id)
            uow.pending_changes.clear_batch(cmd.project_id, cmd.acting_user_id)
            return _pending_state(uow, cmd.project_id, cmd.acting_user_id)


def _with_current_milestones(
    uow: AbstractUnitOfWork, changes: List[PendingChange]
) -> List[PendingChange]:
    """
    Re-read the milestone behind each pending change.  A change can sit in
    session state for a long time, so impacts are built from the baseline as
    it stands now.  A milestone that is gone or no longer locked cannot be
    varied; the change stays pending for the user to discard or re-apply.
    """
    current: Dict[uuid.UUID, Milestone] = {}
    refreshed = []
    for change in changes:
        milestone_id = change.milestone.id
        if milestone_id not in current:
            milestone = uow.milestones.get(milestone_id)
            if milestone is None:
                raise ApplicationError(
                    f"Milestone {change.milestone.milestone_ref} no longer exists; discard the pending change."
                )
            if not _baseline_svc.is_locked(milestone):
                raise ApplicationError(
                    f"Baseline of {milestone.milestone_ref} is no longer locked; "
                    "discard the pending change and edit the plan directly."
                )
            current[milestone_id] = milestone
        refreshed.append(replace(change, milestone=current[milestone_id]))
    return refreshed


class _DraftVariationBase:
    """
    Shared persistence for both drafting paths: obtain a reference (falling
    back to a timestamp reference if the generator fails), insert the
    Variation, then its impact rows.  If an impact row fails and rollback is
    enabled the rows already written and the Variation are deleted and a
    StoreError is raised; otherwise the Variation is kept and the failures
    are reported.
    """

    def __init__(self, rollback_on_impact_failure: Optional[bool] = None):
        settings = get_config()
        self._rollback = (
            settings.VARIATION_ROLLBACK_ON_IMPACT_FAILURE
            if rollback_on_impact_failure is None
            else rollback_on_impact_failure
        )
        self._fallback_prefix = settings.VARIATION_REF_FALLBACK_PREFIX

    def _variation_ref(self, uow: AbstractUnitOfWork, project_id: uuid.UUID) -> str:
        try:
            return uow.variation_refs.generate_variation_ref(project_id)
        except StoreError as exc:
            ref = _draft_svc.fallback_ref(self._fallback_prefix)
            logger.warning("Variation ref generator failed (%s); using fallback %s", exc, ref)
            return ref

    def _persist(
        self,
        uow: AbstractUnitOfWork,
        variation: Variation,
        impacts: List[VariationMilestoneImpact],
    ) -> VariationDraftResultDTO:
        uow.variations.add(variation)
        written: List[VariationMilestoneImpact] = []
        failed: List[Dict[str, str]] = []
        for impact in impacts:
            try:
                uow.variation_impacts.add(impact)
            except StoreError as exc:
                failed.append({"milestone_id": str(impact.milestone_id), "error": str(exc)})
                continue
            written.append(impact)

        if failed and self._rollback:
            for impact in written:
                uow.variation_impacts.delete(impact.id)
            uow.variations.delete(variation.id)
            logger.error(
                "Variation %s rolled back after %d impact row(s) failed",
                variation.variation_ref, len(failed),
            )
            raise StoreError(
                f"Could not record impacts for variation {variation.variation_ref}; nothing was saved."
            )
        if failed:
            logger.error(
                "Variation %s saved with %d missing impact row(s)", variation.variation_ref, len(failed)
            )
        else:
            logger.info("Variation %s drafted with %d impact row(s)", variation.variation_ref, len(written))
        return VariationDraftResultDTO(
            variation=_Assembler.variation(variation, written),
            failed_impacts=failed,
        )


class DraftVariationFromChangeUseCase(_DraftVariationBase):
    """Single-change path: draft from the actor's current blocked edit."""

    def execute(self, cmd: PendingChangeCommand, uow: AbstractUnitOfWork) -> VariationDraftResultDTO:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            actor = _resolve_actor(uow, cmd.project_id, cmd.acting_user_id)
            _authorize(actor, Capability.CREATE_VARIATION)
            change = uow.pending_changes.get_current(cmd.project_id, actor.user_id)
            if change is None:
                raise ApplicationError("There is no blocked change to draft a variation from.")
            (change,) = _with_current_milestones(uow, [change])
            ref = self._variation_ref(uow, cmd.project_id)
            variation, impacts = _call_service(
                _draft_svc.draft_single, cmd.project_id, change, ref, actor.user_id, actor.roles
            )
            result = self._persist(uow, variation, impacts)
            uow.pending_changes.set_current(cmd.project_id, actor.user_id, None)
            uow.commit()
            return result


class DraftVariationFromBatchUseCase(_DraftVariationBase):
    """Batch path: one variation, one impact row per distinct milestone in the queue."""

    def execute(self, cmd: PendingChangeCommand, uow: AbstractUnitOfWork) -> VariationDraftResultDTO:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            actor = _resolve_actor(uow, cmd.project_id, cmd.acting_user_id)
            _authorize(actor, Capability.CREATE_VARIATION)
            changes = uow.pending_changes.get_batch(cmd.project_id, actor.user_id)
            if not changes:
                raise ApplicationError("There are no pending changes to draft a variation from.")
            changes = _with_current_milestones(uow, changes)
            ref = self._variation_ref(uow, cmd.project_id)
            variation, impacts = _call_service(
                _draft_svc.draft_batch, cmd.project_id, changes, ref, actor.user_id, actor.roles
            )
            result = self._persist(uow, variation, impacts)
            uow.pending_changes.clear_batch(cmd.project_id, actor.user_id)
            uow.commit()
            return result


class GetVariationUseCase:
    def execute(self, variation_id: uuid.UUID, uow: AbstractUnitOfWork) -> VariationDTO:
        with uow:
            variation = uow.variations.get(variation_id)
            if variation is None:
                raise NotFoundError(f"Variation {variation_id} not found.")
            return _Assembler.variation(variation, uow.variation_impacts.list_for_variation(variation_id))


class ListVariationsUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[VariationDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            variations = sorted(uow.variations.list_for_project(project_id), key=lambda v: v.created_at)
            return [
                _Assembler.variation(v, uow.variation_impacts.list_for_variation(v.id))
                for v in variations
            ]
