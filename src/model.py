"""
model.py

Domain models for the Contract Delivery Tracker: baseline governance and
change control.

Entities
--------
- Project
- User
- ProjectMember
- Milestone
- Signature
- BaselineVersion
- Deliverable
- MilestoneCertificate
- DeliverableSnapshot
- Variation
- VariationMilestoneImpact
- PlanItem
- PendingChange          (transient, never persisted)

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC; schedule fields are calendar dates and
money is carried as Decimal in the project's single reporting currency.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProjectRole(str, Enum):
    """Roles a user may hold on a project.  A user may hold several."""
    ADMIN = "admin"
    SUPPLIER_PM = "supplier_pm"
    SUPPLIER_FINANCE = "supplier_finance"
    CUSTOMER_PM = "customer_pm"
    CUSTOMER_FINANCE = "customer_finance"
    CONTRIBUTOR = "contributor"
    VIEWER = "viewer"


class SignatoryParty(str, Enum):
    """The two contracting parties that sign baselines and certificates."""
    SUPPLIER = "supplier"
    CUSTOMER = "customer"


class BaselineStatus(str, Enum):
    """Commitment status of a milestone baseline (always derived, never stored)."""
    NOT_COMMITTED = "Not Committed"
    AWAITING_SUPPLIER = "Awaiting Supplier"
    AWAITING_CUSTOMER = "Awaiting Customer"
    LOCKED = "Locked"


class CertificateStatus(str, Enum):
    """
    Acceptance status of a milestone certificate.

    NONE is only ever returned by the resolver when no certificate row exists.
    """
    NONE = "None"
    DRAFT = "Draft"
    PENDING_SUPPLIER = "Pending Supplier Signature"
    PENDING_CUSTOMER = "Pending Customer Signature"
    SIGNED = "Signed"


class MilestoneStatus(str, Enum):
    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    AT_RISK = "At Risk"
    COMPLETED = "Completed"


class DeliverableStatus(str, Enum):
    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    SUBMITTED_FOR_REVIEW = "Submitted for Review"
    RETURNED_FOR_MORE_WORK = "Returned for More Work"
    REVIEW_COMPLETE = "Review Complete"
    DELIVERED = "Delivered"


class VariationType(str, Enum):
    """Classification of a change request, inferred from the fields it touches."""
    TIME_EXTENSION = "time_extension"
    COST_ADJUSTMENT = "cost_adjustment"
    COMBINED = "combined"


class VariationStatus(str, Enum):
    """
    Variation workflow status.  This system only creates DRAFT variations;
    the remaining states are driven by the approval process elsewhere.
    """
    DRAFT = "draft"
    SUBMITTED = "submitted"
    AWAITING_CUSTOMER = "awaiting_customer"
    APPROVED = "approved"
    APPLIED = "applied"
    REJECTED = "rejected"


class PlanItemType(str, Enum):
    PHASE = "phase"
    MILESTONE = "milestone"
    DELIVERABLE = "deliverable"
    TASK = "task"


class PlanItemStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Project & Identity Entities
# ---------------------------------------------------------------------------


@dataclass
class Project:
    """A services contract being tracked.  Owns milestones, plan items and variations."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    reference: str = ""
    name: str = ""
    description: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    created_by_id: Optional[uuid.UUID] = None   # FK → User.id


@dataclass
class User:
    """
    A person known to the identity provider.

    Users are global to the system; their role within a specific project is
    defined by the ProjectMember join entity.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    full_name: str = ""
    email: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class ProjectMember:
    """Associates a User with a Project and assigns them one role."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Project.id
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)      # FK → User.id
    role: ProjectRole = ProjectRole.VIEWER
    assigned_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Milestone & Baseline Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Signature:
    """One party's sign-off on a baseline or certificate."""
    signer_id: uuid.UUID
    signer_name: str
    signed_at: datetime


@dataclass
class Milestone:
    """
    Schedule/cost container and the unit of baseline governance.

    The `baseline_*` fields are the committed plan.  Once both parties have
    signed, `baseline_locked` is set and the protected fields may only change
    through an admin override or an applied Variation.  The working plan
    (`start_date`, `end_date`, `forecast_end_date`, `billable`) remains editable.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Project.id
    milestone_ref: str = ""
    name: str = ""
    description: str = ""
    status: MilestoneStatus = MilestoneStatus.NOT_STARTED
    completion_percentage: int = 0

    # Working plan
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    actual_start_date: Optional[date] = None
    forecast_start_date: Optional[date] = None
    forecast_end_date: Optional[date] = None
    billable: Decimal = Decimal("0")

    # Committed plan
    baseline_start_date: Optional[date] = None
    baseline_end_date: Optional[date] = None
    baseline_billable: Optional[Decimal] = None

    # Governance
    baseline_locked: bool = False
    baseline_supplier_signature: Optional[Signature] = None
    baseline_customer_signature: Optional[Signature] = None

    created_by_id: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class BaselineVersion:
    """
    Write-once record of a committed baseline.

    Version 1 is the original commitment captured at the moment the second
    signature locks the baseline; later versions come from applied variations.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    milestone_id: uuid.UUID = field(default_factory=uuid.uuid4)
    version: int = 1
    variation_id: Optional[uuid.UUID] = None
    baseline_start_date: Optional[date] = None
    baseline_end_date: Optional[date] = None
    baseline_billable: Decimal = Decimal("0")
    supplier_signed_by: Optional[uuid.UUID] = None
    supplier_signed_at: Optional[datetime] = None
    customer_signed_by: Optional[uuid.UUID] = None
    customer_signed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Deliverable:
    """A unit of work delivered under exactly one milestone."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    milestone_id: uuid.UUID = field(default_factory=uuid.uuid4)  # FK → Milestone.id
    deliverable_ref: str = ""
    name: str = ""
    description: str = ""
    status: DeliverableStatus = DeliverableStatus.NOT_STARTED
    progress: int = 0
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    tasks: List[Dict[str, Any]] = field(default_factory=list)    # checklist entries
    created_by_id: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Certificate Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeliverableSnapshot:
    """Immutable copy of a deliverable as it stood when a certificate was generated."""
    deliverable_ref: str
    name: str
    status: DeliverableStatus
    progress: int


@dataclass
class MilestoneCertificate:
    """
    Delivery-acceptance record, at most one per milestone.

    There is deliberately no stored status column: the status is recomputed
    from the two signature fields every time it is read.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    milestone_id: uuid.UUID = field(default_factory=uuid.uuid4)  # FK → Milestone.id (unique)
    certificate_number: str = ""
    milestone_ref: str = ""
    milestone_name: str = ""
    payment_milestone_value: Decimal = Decimal("0")
    supplier_signature: Optional[Signature] = None
    customer_signature: Optional[Signature] = None
    deliverables_snapshot: Tuple[DeliverableSnapshot, ...] = ()
    generated_by_id: Optional[uuid.UUID] = None
    generated_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Change Control Entities
# ---------------------------------------------------------------------------


@dataclass
class Variation:
    """
    A formal change request against one or more milestone baselines.

    `form_data` carries a machine-readable record of the source change(s)
    so the variation form can be pre-filled and audited.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    variation_ref: str = ""
    title: str = ""
    variation_type: VariationType = VariationType.COMBINED
    status: VariationStatus = VariationStatus.DRAFT
    priority: str = "M"
    description: str = ""
    form_data: Dict[str, Any] = field(default_factory=dict)
    created_by_id: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class VariationMilestoneImpact:
    """Before/after baseline values for one milestone affected by a variation."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    variation_id: uuid.UUID = field(default_factory=uuid.uuid4)  # FK → Variation.id
    milestone_id: uuid.UUID = field(default_factory=uuid.uuid4)  # FK → Milestone.id
    original_baseline_start: Optional[date] = None
    original_baseline_end: Optional[date] = None
    original_baseline_cost: Optional[Decimal] = None
    new_baseline_start: Optional[date] = None
    new_baseline_end: Optional[date] = None
    new_baseline_cost: Optional[Decimal] = None
    change_rationale: str = ""


# ---------------------------------------------------------------------------
# Planning Entities
# ---------------------------------------------------------------------------


@dataclass
class PlanItem:
    """
    A row in the planning tool's work breakdown.

    Milestone and deliverable rows are promoted into the tracker by a plan
    commit; once promoted, `is_published` and the matching `published_*_id`
    are set and the row is excluded from later commits.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    parent_id: Optional[uuid.UUID] = None                       # FK → PlanItem.id
    item_type: PlanItemType = PlanItemType.TASK
    wbs: str = ""
    sort_order: int = 0
    name: str = ""
    description: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    duration: Optional[int] = None
    billable: Optional[Decimal] = None
    cost: Optional[Decimal] = None
    progress: int = 0
    status: PlanItemStatus = PlanItemStatus.NOT_STARTED

    is_published: bool = False
    published_milestone_id: Optional[uuid.UUID] = None
    published_deliverable_id: Optional[uuid.UUID] = None
    published_at: Optional[datetime] = None


@dataclass(frozen=True)
class PendingChange:
    """
    An edit the baseline interceptor refused to write.

    Lives only in session memory until the user discards it, queues it into a
    batch, or drafts a variation from it.
    """
    item_id: uuid.UUID
    field: str
    previous_value: Any
    new_value: Any
    milestone: Milestone
    item_name: str = ""
    item_wbs: str = ""
