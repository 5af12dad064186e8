"""
service.py

Service layer for the Contract Delivery Tracker: baseline governance and
change control.

Responsibilities
----------------
Each service class encapsulates all business logic for its domain.
Services receive and return domain model instances (from model.py).
No persistence is handled here; callers are responsible for storing
and retrieving models via the repositories exposed by the Unit of Work.

Services
--------
- capability matrix       – `can` / `require_capability`, the single place
                             where role gating is decided
- BaselineService         – Baseline State Resolver, signatures, reset,
                             protected-field rules, original version capture
- CertificateService      – Certificate State Resolver, eligibility, generation
- VariationDraftService   – Variation drafting from one or many PendingChanges
- PlanCommitService       – Plan → tracker promotion rules

Design notes
------------
- Status values (baseline and certificate) are never stored; they are pure
  functions of the signature fields and are recomputed on every read.
- Business rule violations raise a ValueError with a descriptive message.
- Capability failures raise PermissionError; the application layer maps
  both onto its own exception hierarchy.
- Methods that would normally persist data return the new or mutated
  object(s) so the caller can hand them to a repository.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from model import (
    BaselineStatus,
    BaselineVersion,
    CertificateStatus,
    Deliverable,
    DeliverableSnapshot,
    DeliverableStatus,
    Milestone,
    MilestoneCertificate,
    MilestoneStatus,
    PendingChange,
    PlanItem,
    PlanItemStatus,
    PlanItemType,
    ProjectRole,
    Signature,
    SignatoryParty,
    Variation,
    VariationMilestoneImpact,
    VariationStatus,
    VariationType,
)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


# ---------------------------------------------------------------------------
# Field vocabulary
# ---------------------------------------------------------------------------

# Fields that cannot be edited through the normal path once the linked
# milestone's baseline is locked.
PROTECTED_FIELDS: FrozenSet[str] = frozenset(
    {"start_date", "end_date", "duration", "cost", "billable"}
)
DATE_FIELDS: FrozenSet[str] = frozenset({"start_date", "end_date"})
COST_FIELDS: FrozenSet[str] = frozenset({"billable", "cost"})

# Milestone attributes that hold the committed plan.
MILESTONE_BASELINE_FIELDS: FrozenSet[str] = frozenset(
    {"baseline_start_date", "baseline_end_date", "baseline_billable"}
)


def is_protected_field(field_name: str) -> bool:
    return field_name in PROTECTED_FIELDS


def coerce_field_value(field_name: str, value: Any) -> Any:
    """
    Normalise a raw edit value (typically a JSON string) into the type held
    by the model: calendar dates for date fields, Decimal for money fields,
    int for duration.  None passes through untouched.
    """
    if value is None:
        return None
    try:
        if field_name in DATE_FIELDS or field_name.endswith("_date"):
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, date):
                return value
            return date.fromisoformat(str(value))
        if field_name in COST_FIELDS or field_name == "baseline_billable":
            return Decimal(str(value))
        if field_name == "duration":
            return int(value)
    except (ValueError, InvalidOperation) as exc:
        raise ValueError(f"Invalid value {value!r} for field '{field_name}'.") from exc
    return value


def _display(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


# ---------------------------------------------------------------------------
# Capability matrix
# ---------------------------------------------------------------------------

class Capability(str, Enum):
    """Every governed action.  Call sites ask `can(roles, action)` and nothing else."""
    SIGN_BASELINE_AS_SUPPLIER = "sign_baseline_as_supplier"
    SIGN_BASELINE_AS_CUSTOMER = "sign_baseline_as_customer"
    RESET_BASELINE = "reset_baseline"
    OVERRIDE_BASELINE = "override_baseline"
    EDIT_MILESTONE = "edit_milestone"
    GENERATE_CERTIFICATE = "generate_certificate"
    SIGN_CERTIFICATE_AS_SUPPLIER = "sign_certificate_as_supplier"
    SIGN_CERTIFICATE_AS_CUSTOMER = "sign_certificate_as_customer"
    CREATE_VARIATION = "create_variation"
    COMMIT_PLAN = "commit_plan"
    EDIT_PLAN = "edit_plan"
    MANAGE_MEMBERS = "manage_members"


_R = ProjectRole
_SUPPLIER_SIDE = frozenset({_R.ADMIN, _R.SUPPLIER_PM, _R.SUPPLIER_FINANCE})
_CUSTOMER_SIDE = frozenset({_R.ADMIN, _R.CUSTOMER_PM, _R.CUSTOMER_FINANCE})
_MANAGERS = frozenset({_R.ADMIN, _R.SUPPLIER_PM, _R.CUSTOMER_PM})
_ADMIN_ONLY = frozenset({_R.ADMIN})

PERMISSION_MATRIX: Mapping[Capability, FrozenSet[ProjectRole]] = {
    Capability.SIGN_BASELINE_AS_SUPPLIER: frozenset({_R.ADMIN, _R.SUPPLIER_PM}),
    Capability.SIGN_BASELINE_AS_CUSTOMER: frozenset({_R.ADMIN, _R.CUSTOMER_PM}),
    Capability.RESET_BASELINE: _ADMIN_ONLY,
    Capability.OVERRIDE_BASELINE: _ADMIN_ONLY,
    Capability.EDIT_MILESTONE: _SUPPLIER_SIDE,
    Capability.GENERATE_CERTIFICATE: _MANAGERS,
    Capability.SIGN_CERTIFICATE_AS_SUPPLIER: _SUPPLIER_SIDE,
    Capability.SIGN_CERTIFICATE_AS_CUSTOMER: _CUSTOMER_SIDE,
    Capability.CREATE_VARIATION: frozenset({_R.ADMIN, _R.SUPPLIER_PM}),
    Capability.COMMIT_PLAN: frozenset({_R.ADMIN, _R.SUPPLIER_PM}),
    Capability.EDIT_PLAN: frozenset({_R.ADMIN, _R.SUPPLIER_PM, _R.CONTRIBUTOR}),
    Capability.MANAGE_MEMBERS: _ADMIN_ONLY,
}


def can(roles: Iterable[ProjectRole], action: Capability) -> bool:
    """True if any of the actor's roles grants the action."""
    allowed = PERMISSION_MATRIX.get(action, frozenset())
    return any(role in allowed for role in roles)


def require_capability(roles: Iterable[ProjectRole], action: Capability) -> None:
    """Raise PermissionError if none of the roles grants the action."""
    roles = list(roles)
    if not can(roles, action):
        raise PermissionError(
            f"Roles {sorted(r.value for r in roles)} may not perform '{action.value}'."
        )


def is_admin(roles: Iterable[ProjectRole]) -> bool:
    return ProjectRole.ADMIN in set(roles)


# ---------------------------------------------------------------------------
# BaselineService
# ---------------------------------------------------------------------------

class BaselinedFieldLockedError(ValueError):
    """A protected baseline field was written while the baseline is locked."""


class BaselineService:
    """
    Baseline commitment rules for a single milestone.

    A baseline moves NOT_COMMITTED → AWAITING_{other party} → LOCKED as the
    two parties sign, and returns to NOT_COMMITTED only through an admin
    reset that clears both signatures together.
    """

    _SIGN_CAPABILITY = {
        SignatoryParty.SUPPLIER: Capability.SIGN_BASELINE_AS_SUPPLIER,
        SignatoryParty.CUSTOMER: Capability.SIGN_BASELINE_AS_CUSTOMER,
    }

    def resolve_status(self, milestone: Optional[Milestone]) -> BaselineStatus:
        """
        Baseline State Resolver.  Deterministic; derived only from the stored
        lock flag and signature fields.
        """
        if milestone is None:
            return BaselineStatus.NOT_COMMITTED
        supplier = milestone.baseline_supplier_signature
        customer = milestone.baseline_customer_signature
        if milestone.baseline_locked or (supplier and customer):
            return BaselineStatus.LOCKED
        if supplier:
            return BaselineStatus.AWAITING_CUSTOMER
        if customer:
            return BaselineStatus.AWAITING_SUPPLIER
        return BaselineStatus.NOT_COMMITTED

    def is_locked(self, milestone: Optional[Milestone]) -> bool:
        return self.resolve_status(milestone) == BaselineStatus.LOCKED

    def capability_for(self, party: SignatoryParty) -> Capability:
        return self._SIGN_CAPABILITY[party]

    def can_sign(
        self,
        milestone: Milestone,
        party: SignatoryParty,
        roles: Iterable[ProjectRole],
    ) -> bool:
        """Whether the "sign" action should be offered to this actor right now."""
        if self.is_locked(milestone):
            return False
        return can(roles, self.capability_for(party))

    def prepare_signature(
        self,
        milestone: Milestone,
        party: SignatoryParty,
        signer_id: uuid.UUID,
        signer_name: str,
        roles: Iterable[ProjectRole],
    ) -> Signature:
        """
        Validate a signing request and build the Signature to apply.

        The store applies it with a conditional update so that the lock flag
        is set in the same write when the other party has already signed.
        """
        require_capability(roles, self.capability_for(party))
        if self.is_locked(milestone):
            raise ValueError(f"Baseline for milestone {milestone.milestone_ref or milestone.id} is already locked.")
        return Signature(signer_id=signer_id, signer_name=signer_name, signed_at=_utcnow())

    def validate_reset(self, roles: Iterable[ProjectRole]) -> None:
        require_capability(roles, Capability.RESET_BASELINE)

    def build_original_version(self, milestone: Milestone) -> BaselineVersion:
        """Capture the v1 commitment of a milestone whose baseline just locked."""
        supplier = milestone.baseline_supplier_signature
        customer = milestone.baseline_customer_signature
        billable = milestone.baseline_billable
        if billable is None:
            billable = milestone.billable or Decimal("0")
        return BaselineVersion(
            milestone_id=milestone.id,
            version=1,
            variation_id=None,
            baseline_start_date=milestone.baseline_start_date,
            baseline_end_date=milestone.baseline_end_date,
            baseline_billable=billable,
            supplier_signed_by=supplier.signer_id if supplier else None,
            supplier_signed_at=supplier.signed_at if supplier else None,
            customer_signed_by=customer.signer_id if customer else None,
            customer_signed_at=customer.signed_at if customer else None,
            created_at=_utcnow(),
        )

    def apply_milestone_update(
        self,
        milestone: Milestone,
        changes: Mapping[str, Any],
        roles: Iterable[ProjectRole],
    ) -> Milestone:
        """
        Apply field-level updates to a milestone.

        Writing a baseline field on a locked milestone is only possible for
        holders of the override capability; everyone else gets
        BaselinedFieldLockedError and nothing is written.
        """
        roles = list(roles)
        require_capability(roles, Capability.EDIT_MILESTONE)
        touches_baseline = MILESTONE_BASELINE_FIELDS.intersection(changes)
        if touches_baseline and self.is_locked(milestone) and not can(roles, Capability.OVERRIDE_BASELINE):
            raise BaselinedFieldLockedError(
                f"Baseline is locked; fields {sorted(touches_baseline)} require a variation."
            )
        editable = {
            "name", "description", "start_date", "end_date", "actual_start_date",
            "forecast_start_date", "forecast_end_date", "billable",
        } | MILESTONE_BASELINE_FIELDS
        unknown = set(changes) - editable
        if unknown:
            raise ValueError(f"Fields {sorted(unknown)} cannot be edited on a milestone.")
        for name, value in changes.items():
            setattr(milestone, name, coerce_field_value(name, value))
        milestone.updated_at = _utcnow()
        return milestone

    def variance(self, forecast: Optional[Decimal], baseline: Optional[Decimal]) -> Dict[str, Any]:
        """Forecast vs baseline variance as amount, rounded percentage and direction."""
        amount = (forecast or Decimal("0")) - (baseline or Decimal("0"))
        percentage = int(round(amount / baseline * 100)) if baseline else 0
        direction = "on"
        if amount > 0:
            direction = "over"
        elif amount < 0:
            direction = "under"
        return {"amount": amount, "percentage": percentage, "direction": direction}


# ---------------------------------------------------------------------------
# CertificateService
# ---------------------------------------------------------------------------

class CertificateService:
    """
    Delivery-acceptance certificates.  One per milestone, generated once the
    milestone is Completed, then signed by both parties.
    """

    _SIGN_CAPABILITY = {
        SignatoryParty.SUPPLIER: Capability.SIGN_CERTIFICATE_AS_SUPPLIER,
        SignatoryParty.CUSTOMER: Capability.SIGN_CERTIFICATE_AS_CUSTOMER,
    }

    def resolve_status(self, certificate: Optional[MilestoneCertificate]) -> CertificateStatus:
        """Certificate State Resolver."""
        if certificate is None:
            return CertificateStatus.NONE
        supplier = certificate.supplier_signature
        customer = certificate.customer_signature
        if supplier and customer:
            return CertificateStatus.SIGNED
        if supplier:
            return CertificateStatus.PENDING_CUSTOMER
        if customer:
            return CertificateStatus.PENDING_SUPPLIER
        return CertificateStatus.DRAFT

    def milestone_status(self, deliverables: Sequence[Deliverable]) -> MilestoneStatus:
        """
        Milestone status computed from its deliverables:
        none or all Not Started → Not Started, all Delivered → Completed,
        anything else → In Progress.
        """
        if not deliverables:
            return MilestoneStatus.NOT_STARTED
        if all(d.status == DeliverableStatus.DELIVERED for d in deliverables):
            return MilestoneStatus.COMPLETED
        if all(d.status == DeliverableStatus.NOT_STARTED for d in deliverables):
            return MilestoneStatus.NOT_STARTED
        return MilestoneStatus.IN_PROGRESS

    def can_generate(
        self,
        deliverables: Sequence[Deliverable],
        certificate: Optional[MilestoneCertificate],
    ) -> bool:
        if self.resolve_status(certificate) != CertificateStatus.NONE:
            return False
        return self.milestone_status(deliverables) == MilestoneStatus.COMPLETED

    def expected_date(self, milestone: Milestone, deliverables: Sequence[Deliverable]) -> Optional[date]:
        """Latest deliverable due date, else the forecast end, else the plan end."""
        due = [d.due_date for d in deliverables if d.due_date is not None]
        if due:
            return max(due)
        return milestone.forecast_end_date or milestone.end_date

    def certificate_number(self, milestone_ref: str, now: Optional[datetime] = None) -> str:
        now = now or _utcnow()
        return f"CERT-{milestone_ref}-{_base36(int(now.timestamp() * 1000))}"

    def generate(
        self,
        milestone: Milestone,
        deliverables: Sequence[Deliverable],
        existing: Optional[MilestoneCertificate],
        generated_by_id: uuid.UUID,
        roles: Iterable[ProjectRole],
    ) -> MilestoneCertificate:
        """Create (unsaved) the Draft certificate for a completed milestone."""
        require_capability(roles, Capability.GENERATE_CERTIFICATE)
        if existing is not None:
            raise ValueError(
                f"Milestone {milestone.milestone_ref} already has certificate {existing.certificate_number}."
            )
        if not self.can_generate(deliverables, existing):
            raise ValueError(
                "Cannot generate certificate: all deliverables must be delivered first."
            )
        now = _utcnow()
        snapshot = tuple(
            DeliverableSnapshot(
                deliverable_ref=d.deliverable_ref,
                name=d.name,
                status=d.status,
                progress=d.progress,
            )
            for d in deliverables
        )
        return MilestoneCertificate(
            project_id=milestone.project_id,
            milestone_id=milestone.id,
            certificate_number=self.certificate_number(milestone.milestone_ref, now),
            milestone_ref=milestone.milestone_ref,
            milestone_name=milestone.name,
            payment_milestone_value=milestone.billable or Decimal("0"),
            deliverables_snapshot=snapshot,
            generated_by_id=generated_by_id,
            generated_at=now,
        )

    def prepare_signature(
        self,
        certificate: MilestoneCertificate,
        party: SignatoryParty,
        signer_id: uuid.UUID,
        signer_name: str,
        roles: Iterable[ProjectRole],
    ) -> Signature:
        require_capability(roles, self._SIGN_CAPABILITY[party])
        if self.resolve_status(certificate) == CertificateStatus.SIGNED:
            raise ValueError(
                f"Certificate {certificate.certificate_number} is fully signed and can no longer change."
            )
        return Signature(signer_id=signer_id, signer_name=signer_name, signed_at=_utcnow())


# ---------------------------------------------------------------------------
# Baseline protection decision
# ---------------------------------------------------------------------------

class ProtectionDecision(NamedTuple):
    blocked: bool
    milestone: Optional[Milestone]
    reason: str


class BaselineProtectionService:
    """
    The pure half of the Baseline Protection Interceptor: given whatever the
    store lookups produced, decide allow or block.
    """

    def __init__(self, baseline_service: Optional[BaselineService] = None):
        self._baseline = baseline_service or BaselineService()

    def needs_lookup(self, item: PlanItem, field_name: str, roles: Iterable[ProjectRole] = ()) -> bool:
        """False when the edit is allowed without touching the store."""
        if is_admin(roles):
            return False
        if not is_protected_field(field_name):
            return False
        return item.is_published

    def decide(self, milestone: Optional[Milestone]) -> ProtectionDecision:
        if milestone is None:
            return ProtectionDecision(False, None, "no linked milestone")
        if not self._baseline.is_locked(milestone):
            return ProtectionDecision(False, milestone, "baseline not locked")
        return ProtectionDecision(True, milestone, "baseline locked")


# ---------------------------------------------------------------------------
# VariationDraftService
# ---------------------------------------------------------------------------

class VariationDraftService:
    """
    Turns blocked edits into draft Variations with per-milestone impact rows.
    """

    def infer_type(self, fields: Iterable[str]) -> VariationType:
        """
        Date-only changes are a time extension, cost-only changes a cost
        adjustment; anything else (mixed, or neither) is combined.
        """
        fields = set(fields)
        has_dates = bool(fields & DATE_FIELDS)
        has_costs = bool(fields & COST_FIELDS)
        if has_dates and not has_costs:
            return VariationType.TIME_EXTENSION
        if has_costs and not has_dates:
            return VariationType.COST_ADJUSTMENT
        return VariationType.COMBINED

    def rationale_line(self, change: PendingChange) -> str:
        return f"{change.field}: {_display(change.previous_value)} → {_display(change.new_value)}"

    def fallback_ref(self, prefix: str = "VAR-", now_ms: Optional[int] = None) -> str:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return f"{prefix}{now_ms}"

    def build_impact(
        self,
        variation_id: uuid.UUID,
        milestone: Milestone,
        changes: Sequence[PendingChange],
    ) -> VariationMilestoneImpact:
        """
        One impact row: the milestone's current baseline as "original", the
        same values with every queued field change folded in as "new".
        """
        impact = VariationMilestoneImpact(
            variation_id=variation_id,
            milestone_id=milestone.id,
            original_baseline_start=milestone.baseline_start_date,
            original_baseline_end=milestone.baseline_end_date,
            original_baseline_cost=milestone.baseline_billable,
            new_baseline_start=milestone.baseline_start_date,
            new_baseline_end=milestone.baseline_end_date,
            new_baseline_cost=milestone.baseline_billable,
            change_rationale="; ".join(self.rationale_line(c) for c in changes),
        )
        for change in changes:
            value = coerce_field_value(change.field, change.new_value)
            if change.field == "start_date":
                impact.new_baseline_start = value
            elif change.field == "end_date":
                impact.new_baseline_end = value
            elif change.field in COST_FIELDS:
                impact.new_baseline_cost = value
        return impact

    def group_by_milestone(
        self, changes: Sequence[PendingChange]
    ) -> List[Tuple[Milestone, List[PendingChange]]]:
        """Group changes by milestone id, preserving first-seen order."""
        groups: Dict[uuid.UUID, Tuple[Milestone, List[PendingChange]]] = {}
        for change in changes:
            entry = groups.setdefault(change.milestone.id, (change.milestone, []))
            entry[1].append(change)
        return list(groups.values())

    def draft_single(
        self,
        project_id: uuid.UUID,
        change: PendingChange,
        variation_ref: str,
        created_by_id: uuid.UUID,
        roles: Iterable[ProjectRole],
    ) -> Tuple[Variation, List[VariationMilestoneImpact]]:
        require_capability(roles, Capability.CREATE_VARIATION)
        item_label = f"{change.item_wbs} {change.item_name}".strip()
        variation = Variation(
            project_id=project_id,
            variation_ref=variation_ref,
            title=f"Schedule Change: {change.item_name or 'Plan Item'}",
            variation_type=self.infer_type([change.field]),
            status=VariationStatus.DRAFT,
            description=(
                "Change proposed via Planning Tool.\n\n"
                f"Item: {item_label}\n"
                f"Field: {change.field}\n"
                f"From: {_display(change.previous_value)}\n"
                f"To: {_display(change.new_value)}"
            ),
            form_data={
                "source": "planning_tool",
                "plan_item_id": str(change.item_id),
                "change": {
                    "id": str(change.item_id),
                    "field": change.field,
                    "previous_value": _display(change.previous_value),
                    "value": _display(change.new_value),
                },
            },
            created_by_id=created_by_id,
            created_at=_utcnow(),
        )
        impact = self.build_impact(variation.id, change.milestone, [change])
        return variation, [impact]

    def draft_batch(
        self,
        project_id: uuid.UUID,
        changes: Sequence[PendingChange],
        variation_ref: str,
        created_by_id: uuid.UUID,
        roles: Iterable[ProjectRole],
    ) -> Tuple[Variation, List[VariationMilestoneImpact]]:
        require_capability(roles, Capability.CREATE_VARIATION)
        if not changes:
            raise ValueError("There are no pending changes to draft a variation from.")
        groups = self.group_by_milestone(changes)
        n = len(groups)
        variation = Variation(
            project_id=project_id,
            variation_ref=variation_ref,
            title=f"Plan Update: {n} milestone{'s' if n != 1 else ''} affected",
            variation_type=self.infer_type(c.field for c in changes),
            status=VariationStatus.DRAFT,
            description=(
                "Changes proposed via Planning Tool.\n\n"
                f"{len(changes)} change(s) across {n} milestone(s)."
            ),
            form_data={
                "source": "planning_tool",
                "changes": [
                    {
                        "plan_item_id": str(c.item_id),
                        "field": c.field,
                        "from": _display(c.previous_value),
                        "to": _display(c.new_value),
                    }
                    for c in changes
                ],
            },
            created_by_id=created_by_id,
            created_at=_utcnow(),
        )
        impacts = [
            self.build_impact(variation.id, milestone, grouped)
            for milestone, grouped in groups
        ]
        return variation, impacts


# ---------------------------------------------------------------------------
# PlanCommitService
# ---------------------------------------------------------------------------

PLAN_TO_TRACKER_STATUS: Mapping[PlanItemStatus, MilestoneStatus] = {
    PlanItemStatus.NOT_STARTED: MilestoneStatus.NOT_STARTED,
    PlanItemStatus.IN_PROGRESS: MilestoneStatus.IN_PROGRESS,
    PlanItemStatus.COMPLETED: MilestoneStatus.COMPLETED,
    PlanItemStatus.ON_HOLD: MilestoneStatus.AT_RISK,
    PlanItemStatus.CANCELLED: MilestoneStatus.NOT_STARTED,
}

COMMITTABLE_TYPES: FrozenSet[PlanItemType] = frozenset(
    {PlanItemType.MILESTONE, PlanItemType.DELIVERABLE}
)

_MAX_ANCESTOR_HOPS = 100


class SkippedItem(NamedTuple):
    item: PlanItem
    reason: str


class PlanCommitService:
    """
    Rules for promoting planning items into tracked milestones/deliverables.

    Idempotency comes solely from the eligibility filter: once an item is
    published it is never eligible again.
    """

    def map_status(self, status: Optional[PlanItemStatus]) -> MilestoneStatus:
        return PLAN_TO_TRACKER_STATUS.get(status, MilestoneStatus.NOT_STARTED)

    def eligible(self, items: Iterable[PlanItem]) -> List[PlanItem]:
        """Unpublished milestone/deliverable items, in plan order."""
        return sorted(
            (i for i in items if i.item_type in COMMITTABLE_TYPES and not i.is_published),
            key=lambda i: i.sort_order,
        )

    def _walk_to(
        self,
        item: PlanItem,
        items_by_id: Mapping[uuid.UUID, PlanItem],
        targets: Set[uuid.UUID],
    ) -> Optional[uuid.UUID]:
        """Return the first ancestor id found in `targets`, bounded to avoid cycles."""
        current = item.parent_id
        hops = 0
        while current is not None and hops < _MAX_ANCESTOR_HOPS:
            hops += 1
            if current in targets:
                return current
            parent = items_by_id.get(current)
            current = parent.parent_id if parent else None
        return None

    def filter_valid(
        self,
        candidates: Sequence[PlanItem],
        all_items: Sequence[PlanItem],
    ) -> Tuple[List[PlanItem], List[SkippedItem]]:
        """
        Split eligible items into committable ones and ValidationSkips.

        A deliverable is valid only when an ancestor is either a milestone
        being committed in this run or a milestone item already published.
        """
        valid: List[PlanItem] = []
        skipped: List[SkippedItem] = []
        items_by_id = {i.id: i for i in all_items}

        milestone_ids: Set[uuid.UUID] = {
            i.id for i in all_items
            if i.item_type == PlanItemType.MILESTONE and i.is_published and i.published_milestone_id
        }
        for item in candidates:
            if item.item_type != PlanItemType.MILESTONE:
                continue
            if not (item.name or "").strip():
                skipped.append(SkippedItem(item, "Milestone has no name"))
            elif not item.start_date or not item.end_date:
                skipped.append(SkippedItem(item, "Milestone missing start or end date"))
            elif item.start_date > item.end_date:
                skipped.append(SkippedItem(item, "Milestone start date after end date"))
            else:
                valid.append(item)
                milestone_ids.add(item.id)

        for item in candidates:
            if item.item_type != PlanItemType.DELIVERABLE:
                continue
            if not (item.name or "").strip():
                skipped.append(SkippedItem(item, "Deliverable has no name"))
            elif item.parent_id is None:
                skipped.append(SkippedItem(item, "Deliverable has no parent"))
            elif self._walk_to(item, items_by_id, milestone_ids) is None:
                skipped.append(SkippedItem(item, "Deliverable not under a valid milestone"))
            else:
                valid.append(item)

        return valid, skipped

    def resolve_parent_milestone(
        self,
        item: PlanItem,
        items_by_id: Mapping[uuid.UUID, PlanItem],
        committed: Mapping[uuid.UUID, uuid.UUID],
    ) -> Optional[uuid.UUID]:
        """
        Tracker milestone id for a deliverable item: the nearest milestone
        ancestor committed in this run, else an already-published one.
        """
        targets = set(committed)
        targets.update(
            i.id for i in items_by_id.values()
            if i.item_type == PlanItemType.MILESTONE and i.published_milestone_id
        )
        ancestor = self._walk_to(item, items_by_id, targets)
        if ancestor is None:
            return None
        if ancestor in committed:
            return committed[ancestor]
        return items_by_id[ancestor].published_milestone_id

    def collect_tasks(self, deliverable_item: PlanItem, all_items: Sequence[PlanItem]) -> List[PlanItem]:
        """Unpublished named task items anywhere beneath a deliverable item."""
        items_by_id = {i.id: i for i in all_items}
        return sorted(
            (
                i for i in all_items
                if i.item_type == PlanItemType.TASK
                and not i.is_published
                and (i.name or "").strip()
                and self._walk_to(i, items_by_id, {deliverable_item.id}) is not None
            ),
            key=lambda i: i.sort_order,
        )

    def build_milestone(
        self,
        item: PlanItem,
        milestone_ref: str,
        created_by_id: uuid.UUID,
    ) -> Milestone:
        value = item.billable if item.billable is not None else (item.cost or Decimal("0"))
        return Milestone(
            project_id=item.project_id,
            milestone_ref=milestone_ref,
            name=item.name,
            description=item.description or "",
            status=self.map_status(item.status),
            completion_percentage=item.progress or 0,
            start_date=item.start_date,
            end_date=item.end_date,
            forecast_start_date=item.start_date,
            forecast_end_date=item.end_date,
            baseline_start_date=item.start_date,
            baseline_end_date=item.end_date,
            billable=value,
            baseline_billable=value,
            created_by_id=created_by_id,
        )

    def build_deliverable(
        self,
        item: PlanItem,
        milestone_id: uuid.UUID,
        deliverable_ref: str,
        tasks: Sequence[PlanItem],
        created_by_id: uuid.UUID,
    ) -> Deliverable:
        checklist = [
            {
                "id": f"task_{task.id.hex[:12]}",
                "name": task.name,
                "completed": task.status == PlanItemStatus.COMPLETED,
                "order": index,
            }
            for index, task in enumerate(tasks, start=1)
        ]
        return Deliverable(
            project_id=item.project_id,
            milestone_id=milestone_id,
            deliverable_ref=deliverable_ref,
            name=item.name,
            description=item.description or "",
            status=DeliverableStatus.NOT_STARTED,
            progress=item.progress or 0,
            start_date=item.start_date,
            due_date=item.end_date,
            tasks=checklist,
            created_by_id=created_by_id,
        )

    def mark_published(
        self,
        item: PlanItem,
        milestone_id: Optional[uuid.UUID] = None,
        deliverable_id: Optional[uuid.UUID] = None,
    ) -> PlanItem:
        return replace(
            item,
            is_published=True,
            published_milestone_id=milestone_id or item.published_milestone_id,
            published_deliverable_id=deliverable_id or item.published_deliverable_id,
            published_at=_utcnow(),
        )

    def summary(
        self,
        items: Sequence[PlanItem],
        locked_milestone_ids: Set[uuid.UUID],
    ) -> Dict[str, int]:
        committable = [i for i in items if i.item_type in COMMITTABLE_TYPES]
        referenced = {i.published_milestone_id for i in committable if i.published_milestone_id}
        return {
            "committed": sum(1 for i in committable if i.is_published),
            "uncommitted": sum(1 for i in committable if not i.is_published),
            "baseline_locked": len(referenced & locked_milestone_ids),
        }

    def detect_baseline_drift(
        self,
        items: Sequence[PlanItem],
        milestones: Mapping[uuid.UUID, Milestone],
        baseline_service: BaselineService,
    ) -> List[Dict[str, Any]]:
        """
        Compare published plan items against their locked milestone's
        baseline and list every field that has drifted.
        """
        pairs = (
            ("start_date", "baseline_start_date"),
            ("end_date", "baseline_end_date"),
            ("billable", "baseline_billable"),
        )
        drift: List[Dict[str, Any]] = []
        for item in items:
            if not item.is_published or item.published_milestone_id is None:
                continue
            milestone = milestones.get(item.published_milestone_id)
            if milestone is None or not baseline_service.is_locked(milestone):
                continue
            for plan_field, baseline_field in pairs:
                plan_value = getattr(item, plan_field)
                baseline_value = getattr(milestone, baseline_field)
                if plan_value is not None and baseline_value is not None and plan_value != baseline_value:
                    drift.append(
                        {
                            "plan_item_id": item.id,
                            "plan_item_name": item.name,
                            "plan_item_wbs": item.wbs,
                            "milestone_id": milestone.id,
                            "field": plan_field,
                            "current_value": plan_value,
                            "baseline_value": baseline_value,
                        }
                    )
        return drift
