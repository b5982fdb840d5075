"""
FastAPI application exposing the referral lifecycle service.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from referral_workflow.config import get_settings
from referral_workflow.errors import ReferralWorkflowError
from referral_workflow.models import init_db
from referral_workflow.services.lifecycle_service import (
    ReferralLifecycleService,
    get_lifecycle_service,
)

ERROR_STATUS_CODES = {
    "ValidationError": 422,
    "GuardFailure": 409,
    "InvalidTransition": 409,
    "NotFoundError": 404,
    "PersistenceError": 500,
}


# ============================================================================
# Pydantic Schemas
# ============================================================================
class ReferralCreate(BaseModel):
    """Schema for creating a referral."""

    patient_id: str
    provider_id: str
    specialty_type: str
    referral_reason: str
    specialist_id: Optional[str] = None
    encounter_id: Optional[str] = None
    clinical_notes: Optional[str] = None
    stat_justification: Optional[str] = None
    icd_codes: list[str] = Field(default_factory=list)
    cpt_codes: list[str] = Field(default_factory=list)
    urgency_level: str = "routine"
    appointment_type: str = "consultation"
    expected_duration: Optional[str] = None
    preferred_appointment_time: Optional[str] = None
    authorization_required: bool = False
    authorization_number: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    follow_up_required: bool = True
    follow_up_instructions: Optional[str] = None


class ReferralResponse(BaseModel):
    """Schema for referral response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    referral_number: str
    status: str
    patient_id: str
    provider_id: str
    specialist_id: Optional[str] = None
    specialty_type: str
    referral_reason: str
    clinical_notes: Optional[str] = None
    urgency_level: str
    appointment_type: str
    authorization_required: bool
    authorization_status: Optional[str] = None
    authorization_number: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PaginationResponse(BaseModel):
    """Schema for listing pagination."""

    total: int
    limit: int
    offset: int
    total_pages: int
    current_page: int


class ReferralListResponse(BaseModel):
    """Schema for a page of referrals."""

    referrals: list[ReferralResponse]
    pagination: PaginationResponse


class ReferralStatsResponse(BaseModel):
    """Schema for referral statistics."""

    total: int
    open_referrals: int
    by_status: dict[str, int]
    by_urgency: dict[str, int]
    average_completion_days: Optional[float] = None


class ValidateRequest(BaseModel):
    """Schema for validating raw referral data."""

    referral_data: dict[str, Any]
    validation_type: str = "create"


class TransitionRequest(BaseModel):
    """Schema for a status transition."""

    status: str
    notes: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    outcome_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    follow_up_instructions: Optional[str] = None
    patient_satisfaction_score: Optional[float] = None


class StatusHistoryResponse(BaseModel):
    """Schema for a status history row."""

    previous_status: Optional[str] = None
    new_status: str
    reason: Optional[str] = None
    changed_by: Optional[str] = None
    changed_at: datetime


class ValidationResponse(BaseModel):
    """Schema for a validation result."""

    isValid: bool
    errors: list[str]
    warnings: list[str]
    complianceIssues: list[str]


class EscalationRequest(BaseModel):
    """Schema for a manual escalation."""

    reason: str
    level: int = 1
    assigned_to: Optional[str] = None


class EscalationResponse(BaseModel):
    """Schema for an escalation."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    referral_id: int
    reason: str
    level: int
    escalated_by: Optional[str] = None
    assigned_to: Optional[str] = None
    status: str
    created_at: datetime


class AuthorizationRequest(BaseModel):
    """Schema for opening an authorization request."""

    clinical_justification: Optional[str] = None


class AuthorizationResponse(BaseModel):
    """Schema for an authorization request."""

    id: int
    referral_id: int
    status: str
    authorization_number: Optional[str] = None
    approved_visits: Optional[int] = None
    expiry_date: Optional[date] = None


class AuthorizationUpdate(BaseModel):
    """Schema for a payer authorization decision."""

    status: str
    authorization_number: Optional[str] = None
    approved_visits: Optional[int] = None
    expiry_date: Optional[datetime] = None


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _referral_to_response(referral) -> ReferralResponse:
    """Convert a referral model to its response schema."""
    return ReferralResponse(
        id=referral.id,
        referral_number=referral.referral_number,
        status=referral.status.value,
        patient_id=referral.patient_id,
        provider_id=referral.provider_id,
        specialist_id=referral.specialist_id,
        specialty_type=referral.specialty_type,
        referral_reason=referral.referral_reason,
        clinical_notes=referral.clinical_notes,
        urgency_level=referral.urgency_level.value,
        appointment_type=referral.appointment_type.value,
        authorization_required=bool(referral.authorization_required),
        authorization_status=_enum_value(referral.authorization_status),
        authorization_number=referral.authorization_number,
        scheduled_date=referral.scheduled_date,
        completed_date=referral.completed_date,
        sent_at=referral.sent_at,
        scheduled_at=referral.scheduled_at,
        completed_at=referral.completed_at,
        cancelled_at=referral.cancelled_at,
        created_at=referral.created_at,
        updated_at=referral.updated_at,
    )


# ============================================================================
# Application Setup
# ============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup: Initialize database
    init_db()
    yield


async def workflow_error_handler(request: Request, exc: ReferralWorkflowError) -> JSONResponse:
    """Translate workflow errors into their structured failure payload."""
    return JSONResponse(
        status_code=ERROR_STATUS_CODES.get(exc.kind, 500),
        content=exc.to_response(),
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Referral lifecycle state machine",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ReferralWorkflowError, workflow_error_handler)

    return app


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================
def get_service() -> ReferralLifecycleService:
    """Dependency for the lifecycle service."""
    return get_lifecycle_service()


# ============================================================================
# API Routes - Referrals
# ============================================================================
@app.post("/api/referrals", response_model=ReferralResponse, status_code=201)
def create_referral(
    data: ReferralCreate,
    request: Request,
    x_user: Optional[str] = Header(None),
    service: ReferralLifecycleService = Depends(get_service),
):
    """Create a new draft referral."""
    referral = service.create_referral(
        data.model_dump(),
        actor=x_user or "api",
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return _referral_to_response(referral)


@app.get("/api/referrals", response_model=ReferralListResponse)
def list_referrals(
    provider_id: Optional[str] = Query(None),
    patient_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="One status or a comma-separated list"),
    specialty_type: Optional[str] = Query(None),
    urgency_level: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
    service: ReferralLifecycleService = Depends(get_service),
):
    """List referrals with optional filtering."""
    page = service.list_referrals(
        provider_id=provider_id,
        patient_id=patient_id,
        status=status,
        specialty_type=specialty_type,
        urgency_level=urgency_level,
        created_from=start_date,
        created_to=end_date,
        search=search,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        descending=sort_order.lower() != "asc",
    )
    return ReferralListResponse(
        referrals=[_referral_to_response(r) for r in page.referrals],
        pagination=PaginationResponse(
            total=page.total,
            limit=page.limit,
            offset=page.offset,
            total_pages=page.total_pages,
            current_page=page.current_page,
        ),
    )


@app.get("/api/referrals/stats", response_model=ReferralStatsResponse)
def get_referral_stats(
    provider_id: Optional[str] = Query(None),
    service: ReferralLifecycleService = Depends(get_service),
):
    """Get referral statistics."""
    stats = service.get_statistics(provider_id=provider_id)
    return ReferralStatsResponse(
        total=stats.total,
        open_referrals=stats.open_referrals,
        by_status=stats.by_status,
        by_urgency=stats.by_urgency,
        average_completion_days=stats.average_completion_days,
    )


@app.post("/api/referrals/validate", response_model=ValidationResponse)
def validate_referral_data(
    data: ValidateRequest,
    service: ReferralLifecycleService = Depends(get_service),
):
    """Validate referral data without creating anything."""
    result = service.validate_referral(data.referral_data, data.validation_type)
    return ValidationResponse(**result.to_dict())


@app.get("/api/referrals/{referral_id}", response_model=ReferralResponse)
def get_referral(
    referral_id: int,
    service: ReferralLifecycleService = Depends(get_service),
):
    """Get a specific referral."""
    return _referral_to_response(service.get_referral(referral_id))


@app.post("/api/referrals/{referral_id}/transition", response_model=ReferralResponse)
def transition_referral(
    referral_id: int,
    data: TransitionRequest,
    x_user: Optional[str] = Header(None),
    service: ReferralLifecycleService = Depends(get_service),
):
    """Move a referral to a new status."""
    options = data.model_dump(exclude={"status", "notes"}, exclude_none=True)
    referral = service.transition(
        referral_id,
        data.status,
        notes=data.notes,
        actor=x_user or "api",
        options=options,
    )
    return _referral_to_response(referral)


@app.get("/api/referrals/{referral_id}/history", response_model=list[StatusHistoryResponse])
def get_referral_history(
    referral_id: int,
    service: ReferralLifecycleService = Depends(get_service),
):
    """Get the status history for a referral."""
    return [
        StatusHistoryResponse(
            previous_status=_enum_value(row.previous_status),
            new_status=row.new_status.value,
            reason=row.reason,
            changed_by=row.changed_by,
            changed_at=row.changed_at,
        )
        for row in service.get_status_history(referral_id)
    ]


@app.get("/api/referrals/{referral_id}/validate/{action}", response_model=ValidationResponse)
def validate_for_action(
    referral_id: int,
    action: str,
    service: ReferralLifecycleService = Depends(get_service),
):
    """Check whether a workflow action is allowed for a referral."""
    return ValidationResponse(**service.validate_for_action(referral_id, action).to_dict())


@app.post("/api/referrals/{referral_id}/escalate", response_model=EscalationResponse)
def escalate_referral(
    referral_id: int,
    data: EscalationRequest,
    x_user: Optional[str] = Header(None),
    service: ReferralLifecycleService = Depends(get_service),
):
    """Escalate a referral by hand."""
    escalation = service.escalate(
        referral_id,
        data.reason,
        actor=x_user or "api",
        level=data.level,
        assigned_to=data.assigned_to,
    )
    return EscalationResponse(
        id=escalation.id,
        referral_id=escalation.referral_id,
        reason=escalation.reason,
        level=escalation.level,
        escalated_by=escalation.escalated_by,
        assigned_to=escalation.assigned_to,
        status=escalation.status.value,
        created_at=escalation.created_at,
    )


@app.post("/api/referrals/{referral_id}/authorization/request", response_model=AuthorizationResponse)
def request_authorization(
    referral_id: int,
    data: AuthorizationRequest,
    x_user: Optional[str] = Header(None),
    service: ReferralLifecycleService = Depends(get_service),
):
    """Open a payer authorization request for a referral."""
    authorization = service.request_authorization(
        referral_id,
        actor=x_user or "api",
        clinical_justification=data.clinical_justification,
    )
    return AuthorizationResponse(
        id=authorization.id,
        referral_id=authorization.referral_id,
        status=authorization.status.value,
        authorization_number=authorization.authorization_number,
        approved_visits=authorization.approved_visits,
        expiry_date=authorization.expiry_date,
    )


@app.post("/api/referrals/{referral_id}/authorization", response_model=ReferralResponse)
def update_authorization(
    referral_id: int,
    data: AuthorizationUpdate,
    x_user: Optional[str] = Header(None),
    service: ReferralLifecycleService = Depends(get_service),
):
    """Record a payer authorization decision."""
    referral = service.update_authorization(
        referral_id,
        data.status,
        actor=x_user or "api",
        authorization_number=data.authorization_number,
        approved_visits=data.approved_visits,
        expiry_date=data.expiry_date,
    )
    return _referral_to_response(referral)


@app.post("/api/sla/sweep", response_model=list[EscalationResponse])
def sweep_overdue(service: ReferralLifecycleService = Depends(get_service)):
    """Escalate open referrals that have exceeded their urgency SLA."""
    return [
        EscalationResponse(
            id=e.id,
            referral_id=e.referral_id,
            reason=e.reason,
            level=e.level,
            escalated_by=e.escalated_by,
            assigned_to=e.assigned_to,
            status=e.status.value,
            created_at=e.created_at,
        )
        for e in service.sweep_overdue()
    ]
