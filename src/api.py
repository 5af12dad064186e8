"""
api.py

REST API layer for the Contract Delivery Tracker: baseline governance and
change control.

Framework : FastAPI
Auth      : Bearer token; the token is the acting user's UUID and is
            resolved by the get_current_user_id dependency.  Requests
            without a token act as the seeded system user.  Roles are
            resolved per project by the use cases, never by the API.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /users                                   - user registration
  ├── /projects                                - project CRUD
  │   ├── /{project_id}/members                - role assignment
  │   ├── /{project_id}/milestones             - create / list milestones
  │   │   └── /billing                         - billing view
  │   ├── /{project_id}/plan                   - plan items, commit, summary, drift
  │   ├── /{project_id}/pending-changes        - blocked-edit decisions
  │   └── /{project_id}/variations             - drafted variations
  ├── /milestones/{milestone_id}               - milestone detail & edit
  │   ├── /baseline                            - status, sign, reset, history
  │   ├── /certificate                         - status, generate, sign
  │   └── /deliverables                        - deliverables under a milestone
  ├── /deliverables/{deliverable_id}/status    - delivery progress
  ├── /plan-items/{item_id}                    - intercepted field edit
  └── /variations/{variation_id}               - variation with impact rows

Error handling
--------------
  NotFoundError           → 404
  AuthorizationError      → 403
  BaselineProtectedError  → 409
  GovernanceLookupError   → 409
  StoreError              → 503
  ApplicationError        → 422
  ValueError              → 422
  Blocked plan-item edit  → 409 with the PendingChange in the body
  Unhandled               → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn api:app --reload

Dependencies (install via pip)
-------------------------------
  fastapi>=0.110
  uvicorn[standard]>=0.29
  pydantic[email]>=2.0
  fastapi-mcp
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Path, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi_mcp import FastApiMCP
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, field_validator

from infrastructure import InMemoryUnitOfWork
from application import (
    # Exceptions
    ApplicationError,
    AuthorizationError,
    BaselineProtectedError,
    GovernanceLookupError,
    NotFoundError,
    StoreError,
    # Use-case commands
    AssignMemberCommand,
    CreateMilestoneCommand,
    CreatePlanItemCommand,
    CreateProjectCommand,
    EditPlanItemCommand,
    PendingChangeCommand,
    UpdateMilestoneCommand,
    # Use-case classes
    AssignMemberUseCase,
    CreateMilestoneUseCase,
    CreatePlanItemUseCase,
    CreateProjectUseCase,
    EditPlanItemUseCase,
    UpdateMilestoneUseCase,
    AbstractUnitOfWork,
)
from config import get_config
from model import DeliverableStatus, PlanItemStatus, PlanItemType, ProjectRole, SignatoryParty, User

logger = logging.getLogger(__name__)

# System user UUID used when no Authorization header is sent
SYSTEM_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Contract Delivery Tracker: Baseline Governance API",
    version="1.0.0",
    description=(
        "REST API for milestone baseline governance on a services contract: "
        "dual-party baseline signing, protected-field interception, variation "
        "drafting, delivery certificates, and plan-to-tracker commit."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in get_config().CORS_ORIGINS.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def seed_system_user():
    """
    Ensure the SYSTEM_USER exists in the store so requests without an
    Authorization header resolve to a known actor.
    """
    uow = app.dependency_overrides.get(get_uow, get_uow)()
    if uow.users.get(SYSTEM_USER_ID) is None:
        uow.users.save(
            User(
                id=SYSTEM_USER_ID,
                full_name="System User",
                email="system@tracker.internal",
                is_active=True,
            )
        )
        logger.info("System user seeded: %s", SYSTEM_USER_ID)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def authorization_handler(request, exc: AuthorizationError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(BaselineProtectedError)
async def baseline_protected_handler(request, exc: BaselineProtectedError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(GovernanceLookupError)
async def governance_lookup_handler(request, exc: GovernanceLookupError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StoreError)
async def store_error_handler(request, exc: StoreError):
    logger.error("Store failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


def get_current_user_id(authorization: Optional[str] = Header(default=None)) -> uuid.UUID:
    """Resolve `Authorization: Bearer <user-uuid>`; no header means the system user."""
    if not authorization:
        return SYSTEM_USER_ID
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Expected 'Authorization: Bearer <user-id>'.")
    try:
        return uuid.UUID(token.strip())
    except ValueError:
        raise HTTPException(status_code=401, detail="Bearer token is not a valid user id.")


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if hasattr(data, "__dataclass_fields__"):
        import dataclasses
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        import dataclasses
        return {
            "data": [
                dataclasses.asdict(item) if hasattr(item, "__dataclass_fields__") else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

def _one_of(enum_cls, v: str, label: str) -> str:
    valid = {e.value for e in enum_cls}
    if v not in valid:
        raise ValueError(f"{label} must be one of: {sorted(valid)}")
    return v


# ---------------------------------------------------------------------------
# Identity schemas
# ---------------------------------------------------------------------------

class CreateUserRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr


class CreateProjectRequest(BaseModel):
    reference: str = Field(default="", max_length=50)
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="")


class AssignMemberRequest(BaseModel):
    user_id: uuid.UUID
    role: str = Field(..., description="One of the ProjectRole enum values.")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        return _one_of(ProjectRole, v, "role")


# ---------------------------------------------------------------------------
# Milestone schemas
# ---------------------------------------------------------------------------

class CreateMilestoneRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    milestone_ref: Optional[str] = Field(default=None, max_length=50)
    description: str = Field(default="")
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    billable: Decimal = Field(default=Decimal("0"), ge=0)
    baseline_start_date: Optional[date] = None
    baseline_end_date: Optional[date] = None
    baseline_billable: Optional[Decimal] = Field(default=None, ge=0)


class UpdateMilestoneRequest(BaseModel):
    """Only the fields present in the request body are written."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    actual_start_date: Optional[date] = None
    forecast_start_date: Optional[date] = None
    forecast_end_date: Optional[date] = None
    billable: Optional[Decimal] = Field(default=None, ge=0)
    baseline_start_date: Optional[date] = None
    baseline_end_date: Optional[date] = None
    baseline_billable: Optional[Decimal] = Field(default=None, ge=0)


class SignRequest(BaseModel):
    party: str = Field(..., description="supplier or customer")

    @field_validator("party")
    @classmethod
    def validate_party(cls, v: str) -> str:
        return _one_of(SignatoryParty, v, "party")


# ---------------------------------------------------------------------------
# Deliverable schemas
# ---------------------------------------------------------------------------

class CreateDeliverableRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="")
    status: str = Field(default=DeliverableStatus.NOT_STARTED.value)
    progress: int = Field(default=0, ge=0, le=100)
    start_date: Optional[date] = None
    due_date: Optional[date] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _one_of(DeliverableStatus, v, "status")


class UpdateDeliverableStatusRequest(BaseModel):
    status: str
    progress: Optional[int] = Field(default=None, ge=0, le=100)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _one_of(DeliverableStatus, v, "status")


# ---------------------------------------------------------------------------
# Planning schemas
# ---------------------------------------------------------------------------

class CreatePlanItemRequest(BaseModel):
    item_type: str = Field(..., description="phase, milestone, deliverable or task")
    name: str = Field(default="", max_length=200)
    parent_id: Optional[uuid.UUID] = None
    wbs: str = Field(default="")
    sort_order: int = Field(default=0)
    description: str = Field(default="")
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    duration: Optional[int] = Field(default=None, ge=0)
    billable: Optional[Decimal] = Field(default=None, ge=0)
    cost: Optional[Decimal] = Field(default=None, ge=0)
    progress: int = Field(default=0, ge=0, le=100)
    status: str = Field(default=PlanItemStatus.NOT_STARTED.value)

    @field_validator("item_type")
    @classmethod
    def validate_item_type(cls, v: str) -> str:
        return _one_of(PlanItemType, v, "item_type")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _one_of(PlanItemStatus, v, "status")


class EditPlanItemRequest(BaseModel):
    field: str = Field(..., min_length=1)
    value: Any = None


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

user_router = APIRouter(prefix="/users", tags=["Users"])


@user_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
    response_description="The created user.",
)
def create_user(
    body: CreateUserRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Register a new person in the system.  A user must exist before they can
    be given a role on a project.  The returned id is the Bearer token.
    """
    from application import CreateUserUseCase, CreateUserCommand
    cmd = CreateUserCommand(full_name=body.full_name, email=str(body.email))
    result = CreateUserUseCase().execute(cmd, uow)
    return _ok(result)


@user_router.get("", summary="List all users")
def list_users(uow: AbstractUnitOfWork = Depends(get_uow)):
    from application import ListUsersUseCase
    return _ok(ListUsersUseCase().execute(uow))


@user_router.get("/{user_id}", summary="Get a user by ID")
def get_user(
    user_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetUserUseCase
    return _ok(GetUserUseCase().execute(user_id, uow))


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a new contract project",
)
def create_project(
    body: CreateProjectRequest,
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """Creates the project and assigns the requesting user the admin role on it."""
    cmd = CreateProjectCommand(
        reference=body.reference,
        name=body.name,
        description=body.description,
        acting_user_id=current_user_id,
    )
    result = CreateProjectUseCase().execute(cmd, uow)
    return _ok(result)


@project_router.get("", summary="List all projects")
def list_projects(uow: AbstractUnitOfWork = Depends(get_uow)):
    from application import ListProjectsUseCase
    return _ok(ListProjectsUseCase().execute(uow))


@project_router.get("/{project_id}", summary="Get a project by ID")
def get_project(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetProjectUseCase
    return _ok(GetProjectUseCase().execute(project_id, uow))


# ---------------------------------------------------------------------------
# Project Members
# ---------------------------------------------------------------------------

member_router = APIRouter(prefix="/projects/{project_id}/members", tags=["Project Members"])


@member_router.get("", summary="List role assignments on a project")
def list_members(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListMembersUseCase
    return _ok(ListMembersUseCase().execute(project_id, uow))


@member_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Give a user a role on a project",
)
def assign_member(
    body: AssignMemberRequest,
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = AssignMemberCommand(
        project_id=project_id,
        user_id=body.user_id,
        role=ProjectRole(body.role),
        acting_user_id=current_user_id,
    )
    return _ok(AssignMemberUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Milestones (project scoped)
# ---------------------------------------------------------------------------

project_milestone_router = APIRouter(
    prefix="/projects/{project_id}/milestones",
    tags=["Milestones"],
)


@project_milestone_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a milestone",
)
def create_milestone(
    body: CreateMilestoneRequest,
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateMilestoneCommand(
        project_id=project_id,
        name=body.name,
        milestone_ref=body.milestone_ref,
        description=body.description,
        start_date=body.start_date,
        end_date=body.end_date,
        billable=body.billable,
        baseline_start_date=body.baseline_start_date,
        baseline_end_date=body.baseline_end_date,
        baseline_billable=body.baseline_billable,
        acting_user_id=current_user_id,
    )
    return _ok(CreateMilestoneUseCase().execute(cmd, uow))


@project_milestone_router.get("", summary="List milestones of a project")
def list_milestones(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListMilestonesUseCase
    return _ok(ListMilestonesUseCase().execute(project_id, uow))


@project_milestone_router.get(
    "/billing",
    summary="Billing view: billable milestones with certificate status",
)
def list_billable_milestones(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListBillableMilestonesUseCase
    return _ok(ListBillableMilestonesUseCase().execute(project_id, uow))


# ---------------------------------------------------------------------------
# Milestone detail, baseline & certificate
# ---------------------------------------------------------------------------

milestone_router = APIRouter(prefix="/milestones/{milestone_id}", tags=["Milestones"])
baseline_router = APIRouter(prefix="/milestones/{milestone_id}/baseline", tags=["Baseline Governance"])
certificate_router = APIRouter(prefix="/milestones/{milestone_id}/certificate", tags=["Certificates"])


@milestone_router.get("", summary="Get a milestone by ID")
def get_milestone(
    milestone_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetMilestoneUseCase
    return _ok(GetMilestoneUseCase().execute(milestone_id, uow))


@milestone_router.patch(
    "",
    summary="Update milestone fields (baseline fields of a locked milestone need admin)",
)
def update_milestone(
    body: UpdateMilestoneRequest,
    milestone_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateMilestoneCommand(
        milestone_id=milestone_id,
        changes=body.model_dump(exclude_unset=True),
        acting_user_id=current_user_id,
    )
    return _ok(UpdateMilestoneUseCase().execute(cmd, uow))


@milestone_router.get("/deliverables", summary="List deliverables under a milestone")
def list_deliverables(
    milestone_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListDeliverablesUseCase
    return _ok(ListDeliverablesUseCase().execute(milestone_id, uow))


@milestone_router.post(
    "/deliverables",
    status_code=status.HTTP_201_CREATED,
    summary="Add a deliverable to a milestone",
)
def create_deliverable(
    body: CreateDeliverableRequest,
    milestone_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import CreateDeliverableUseCase, CreateDeliverableCommand
    cmd = CreateDeliverableCommand(
        milestone_id=milestone_id,
        name=body.name,
        description=body.description,
        status=DeliverableStatus(body.status),
        progress=body.progress,
        start_date=body.start_date,
        due_date=body.due_date,
        acting_user_id=current_user_id,
    )
    return _ok(CreateDeliverableUseCase().execute(cmd, uow))


@baseline_router.get("", summary="Baseline status and the actions open to the caller")
def get_baseline_status(
    milestone_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetBaselineStatusUseCase
    return _ok(GetBaselineStatusUseCase().execute(milestone_id, current_user_id, uow))


@baseline_router.post("/sign", summary="Sign the baseline as supplier or customer")
def sign_baseline(
    body: SignRequest,
    milestone_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Records the caller's signature for the given party.  When the other party
    has already signed, the baseline locks in the same update.
    """
    from application import SignBaselineUseCase, SignBaselineCommand
    cmd = SignBaselineCommand(
        milestone_id=milestone_id,
        party=SignatoryParty(body.party),
        acting_user_id=current_user_id,
    )
    return _ok(SignBaselineUseCase().execute(cmd, uow))


@baseline_router.post("/reset", summary="Clear both baseline signatures (admin only)")
def reset_baseline(
    milestone_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ResetBaselineUseCase, ResetBaselineCommand
    cmd = ResetBaselineCommand(milestone_id=milestone_id, acting_user_id=current_user_id)
    return _ok(ResetBaselineUseCase().execute(cmd, uow))


@baseline_router.get("/history", summary="Recorded baseline versions")
def get_baseline_history(
    milestone_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetBaselineHistoryUseCase
    return _ok(GetBaselineHistoryUseCase().execute(milestone_id, uow))


@certificate_router.get("", summary="Certificate status and generation eligibility")
def get_certificate_status(
    milestone_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetCertificateStatusUseCase
    return _ok(GetCertificateStatusUseCase().execute(milestone_id, uow))


@certificate_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Generate the delivery certificate for a completed milestone",
)
def generate_certificate(
    milestone_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GenerateCertificateUseCase, GenerateCertificateCommand
    cmd = GenerateCertificateCommand(milestone_id=milestone_id, acting_user_id=current_user_id)
    return _ok(GenerateCertificateUseCase().execute(cmd, uow))


@certificate_router.post("/sign", summary="Sign the certificate as supplier or customer")
def sign_certificate(
    body: SignRequest,
    milestone_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import SignCertificateUseCase, SignCertificateCommand
    cmd = SignCertificateCommand(
        milestone_id=milestone_id,
        party=SignatoryParty(body.party),
        acting_user_id=current_user_id,
    )
    return _ok(SignCertificateUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Deliverables
# ---------------------------------------------------------------------------

deliverable_router = APIRouter(prefix="/deliverables", tags=["Deliverables"])


@deliverable_router.patch("/{deliverable_id}/status", summary="Record deliverable status and progress")
def update_deliverable_status(
    body: UpdateDeliverableStatusRequest,
    deliverable_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import UpdateDeliverableStatusUseCase, UpdateDeliverableStatusCommand
    cmd = UpdateDeliverableStatusCommand(
        deliverable_id=deliverable_id,
        status=DeliverableStatus(body.status),
        progress=body.progress,
        acting_user_id=current_user_id,
    )
    return _ok(UpdateDeliverableStatusUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

plan_router = APIRouter(prefix="/projects/{project_id}/plan", tags=["Planning"])


@plan_router.post(
    "/items",
    status_code=status.HTTP_201_CREATED,
    summary="Add a plan item",
)
def create_plan_item(
    body: CreatePlanItemRequest,
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreatePlanItemCommand(
        project_id=project_id,
        item_type=PlanItemType(body.item_type),
        name=body.name,
        parent_id=body.parent_id,
        wbs=body.wbs,
        sort_order=body.sort_order,
        description=body.description,
        start_date=body.start_date,
        end_date=body.end_date,
        duration=body.duration,
        billable=body.billable,
        cost=body.cost,
        progress=body.progress,
        status=PlanItemStatus(body.status),
        acting_user_id=current_user_id,
    )
    return _ok(CreatePlanItemUseCase().execute(cmd, uow))


@plan_router.get("/items", summary="List plan items in plan order")
def list_plan_items(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListPlanItemsUseCase
    return _ok(ListPlanItemsUseCase().execute(project_id, uow))


@plan_router.post("/commit", summary="Commit unpublished milestones and deliverables to the tracker")
def commit_plan(
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Returns `count`, the created milestones and deliverables, and per-item
    `skipped` (validation) and `errors` (creation failures).  Running it again
    without plan edits commits nothing.
    """
    from application import CommitPlanUseCase, CommitPlanCommand
    cmd = CommitPlanCommand(project_id=project_id, acting_user_id=current_user_id)
    return _ok(CommitPlanUseCase().execute(cmd, uow))


@plan_router.get("/summary", summary="Committed / uncommitted / baseline-locked counts")
def get_commit_summary(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetCommitSummaryUseCase
    return _ok(GetCommitSummaryUseCase().execute(project_id, uow))


@plan_router.get("/drift", summary="Published plan values that differ from locked baselines")
def get_baseline_drift(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import DetectBaselineDriftUseCase
    return _ok(DetectBaselineDriftUseCase().execute(project_id, uow))


plan_item_router = APIRouter(prefix="/plan-items", tags=["Planning"])


@plan_item_router.patch(
    "/{item_id}",
    summary="Edit one plan item field (intercepted when the baseline is locked)",
    responses={409: {"description": "Edit blocked; the pending change is returned."}},
)
def edit_plan_item(
    body: EditPlanItemRequest,
    item_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = EditPlanItemCommand(
        item_id=item_id,
        field=body.field,
        value=body.value,
        acting_user_id=current_user_id,
    )
    outcome = EditPlanItemUseCase().execute(cmd, uow)
    if outcome.blocked:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_ok(outcome))
    return _ok(outcome)


# ---------------------------------------------------------------------------
# Pending changes
# ---------------------------------------------------------------------------

pending_router = APIRouter(prefix="/projects/{project_id}/pending-changes", tags=["Pending Changes"])


def _pending_cmd(project_id: uuid.UUID, user_id: uuid.UUID) -> PendingChangeCommand:
    return PendingChangeCommand(project_id=project_id, acting_user_id=user_id)


@pending_router.get("", summary="The caller's blocked change and batch queue")
def list_pending_changes(
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListPendingChangesUseCase
    return _ok(ListPendingChangesUseCase().execute(_pending_cmd(project_id, current_user_id), uow))


@pending_router.post("/discard", summary="Discard the blocked change")
def discard_pending_change(
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import DiscardPendingChangeUseCase
    return _ok(DiscardPendingChangeUseCase().execute(_pending_cmd(project_id, current_user_id), uow))


@pending_router.post("/queue", summary="Add the blocked change to the batch")
def queue_pending_change(
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import QueuePendingChangeUseCase
    return _ok(QueuePendingChangeUseCase().execute(_pending_cmd(project_id, current_user_id), uow))


@pending_router.post("/clear", summary="Empty the batch")
def clear_pending_changes(
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ClearPendingChangesUseCase
    return _ok(ClearPendingChangesUseCase().execute(_pending_cmd(project_id, current_user_id), uow))


@pending_router.post(
    "/draft-variation",
    status_code=status.HTTP_201_CREATED,
    summary="Draft a variation from the blocked change",
)
def draft_variation_from_change(
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import DraftVariationFromChangeUseCase
    return _ok(DraftVariationFromChangeUseCase().execute(_pending_cmd(project_id, current_user_id), uow))


@pending_router.post(
    "/batch/draft-variation",
    status_code=status.HTTP_201_CREATED,
    summary="Draft one variation from every change in the batch",
)
def draft_variation_from_batch(
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import DraftVariationFromBatchUseCase
    return _ok(DraftVariationFromBatchUseCase().execute(_pending_cmd(project_id, current_user_id), uow))


# ---------------------------------------------------------------------------
# Variations
# ---------------------------------------------------------------------------

project_variation_router = APIRouter(prefix="/projects/{project_id}/variations", tags=["Variations"])
variation_router = APIRouter(prefix="/variations", tags=["Variations"])


@project_variation_router.get("", summary="List variations of a project")
def list_variations(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListVariationsUseCase
    return _ok(ListVariationsUseCase().execute(project_id, uow))


@variation_router.get("/{variation_id}", summary="Get a variation with its milestone impacts")
def get_variation(
    variation_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetVariationUseCase
    return _ok(GetVariationUseCase().execute(variation_id, uow))


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(user_router)
api_v1.include_router(project_router)
api_v1.include_router(member_router)
api_v1.include_router(project_milestone_router)
api_v1.include_router(milestone_router)
api_v1.include_router(baseline_router)
api_v1.include_router(certificate_router)
api_v1.include_router(deliverable_router)
api_v1.include_router(plan_router)
api_v1.include_router(plan_item_router)
api_v1.include_router(pending_router)
api_v1.include_router(project_variation_router)
api_v1.include_router(variation_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP Server: exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ===========================================================================
# OPENAPI CUSTOMISATION: tag order and descriptions
# ===========================================================================

tags_metadata = [
    {"name": "Health", "description": "Liveness probe."},
    {
        "name": "Users",
        "description": "People known to the system.  A user's id is their Bearer token.",
    },
    {
        "name": "Projects",
        "description": "Contract projects.  The creator becomes the project admin.",
    },
    {
        "name": "Project Members",
        "description": "Role assignments.  A user may hold several roles on one project.",
    },
    {
        "name": "Milestones",
        "description": (
            "Schedule/cost containers.  Baseline fields of a locked milestone can "
            "only be changed by an admin override."
        ),
    },
    {
        "name": "Baseline Governance",
        "description": (
            "Dual-party baseline signing.  The status is always derived from the "
            "two signatures; the second signature locks the baseline."
        ),
    },
    {
        "name": "Certificates",
        "description": (
            "Delivery-acceptance certificates, one per completed milestone, signed "
            "by both parties before billing."
        ),
    },
    {"name": "Deliverables", "description": "Units of work delivered under a milestone."},
    {
        "name": "Planning",
        "description": (
            "Planning-tool items, the intercepted edit path, and commit of "
            "milestones/deliverables into the tracker."
        ),
    },
    {
        "name": "Pending Changes",
        "description": (
            "Edits blocked by a locked baseline: discard, queue into a batch, "
            "or draft a variation."
        ),
    },
    {
        "name": "Variations",
        "description": "Draft change requests with per-milestone before/after baselines.",
    },
]
app.openapi_tags = tags_metadata
