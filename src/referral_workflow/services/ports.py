"""
Collaborator ports consumed by the workflow core.

The core talks to storage, the practice directory, notification delivery,
letter rendering and the audit store only through these protocols. SQL and
HTTP implementations live in the sibling service modules.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session

from referral_workflow.models import OPEN_STATUSES, Referral, StatusHistory


# =============================================================================
# VALUE OBJECTS
# =============================================================================


@dataclass(frozen=True)
class ReferralSnapshot:
    """Detached copy of a committed referral, safe to hand to worker threads."""

    id: int
    referral_number: str
    status: str
    patient_id: str
    provider_id: str
    specialist_id: Optional[str]
    encounter_id: Optional[str]
    specialty_type: str
    referral_reason: str
    clinical_notes: Optional[str]
    urgency_level: str
    appointment_type: str
    authorization_required: bool
    authorization_status: Optional[str]
    scheduled_date: Optional[datetime]
    follow_up_required: bool
    follow_up_instructions: Optional[str]
    created_at: datetime
    sent_at: Optional[datetime]
    completed_at: Optional[datetime]

    @classmethod
    def from_model(cls, referral: Referral) -> "ReferralSnapshot":
        return cls(
            id=referral.id,
            referral_number=referral.referral_number,
            status=referral.status.value,
            patient_id=referral.patient_id,
            provider_id=referral.provider_id,
            specialist_id=referral.specialist_id,
            encounter_id=referral.encounter_id,
            specialty_type=referral.specialty_type,
            referral_reason=referral.referral_reason,
            clinical_notes=referral.clinical_notes,
            urgency_level=referral.urgency_level.value,
            appointment_type=referral.appointment_type.value,
            authorization_required=bool(referral.authorization_required),
            authorization_status=(
                referral.authorization_status.value
                if referral.authorization_status
                else None
            ),
            scheduled_date=referral.scheduled_date,
            follow_up_required=bool(referral.follow_up_required),
            follow_up_instructions=referral.follow_up_instructions,
            created_at=referral.created_at,
            sent_at=referral.sent_at,
            completed_at=referral.completed_at,
        )


@dataclass(frozen=True)
class AuthorizationRecord:
    """Read-only view of an authorization for validation."""

    authorization_number: str
    status: str
    expiry_date: Optional[date]


@dataclass(frozen=True)
class SpecialistSummary:
    """Read-only view of a specialist for suggestions."""

    id: str
    name: str
    practice_name: Optional[str]
    specialty_primary: str
    accepting_new: bool


@dataclass
class Notification:
    """Message handed to the notification collaborator."""

    kind: str
    recipient: str
    subject: str
    body: str = ""
    referral_id: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditEventRecord:
    """Audit trail entry before it is stored."""

    action: str
    entity_type: str
    entity_id: Optional[str]
    actor: Optional[str]
    old_values: dict[str, Any] = field(default_factory=dict)
    new_values: dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class WorkflowEventRecord:
    """Workflow event before it is stored."""

    referral_id: int
    event_type: str
    event_data: dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None


@dataclass
class ReferralFilters:
    """Search criteria for referral listings. Unset fields do not filter."""

    provider_id: Optional[str] = None
    patient_id: Optional[str] = None
    statuses: tuple[str, ...] = ()
    specialty_type: Optional[str] = None
    urgency_level: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    search: Optional[str] = None


@dataclass
class ReferralPage:
    """One page of a referral listing."""

    referrals: list[Referral]
    total: int
    limit: int
    offset: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0

    @property
    def current_page(self) -> int:
        return self.offset // self.limit + 1 if self.limit else 1


@dataclass
class ReferralStats:
    """Referral counts plus the mean completion cycle."""

    total: int
    by_status: dict[str, int]
    by_urgency: dict[str, int]
    average_completion_days: Optional[float] = None

    @property
    def open_referrals(self) -> int:
        return sum(self.by_status.get(status.value, 0) for status in OPEN_STATUSES)


# =============================================================================
# PORTS
# =============================================================================


class ReferralStore(Protocol):
    """Transactional persistence for referrals and their lifecycle rows."""

    def transaction(self) -> AbstractContextManager[Session]:
        ...

    def get_referral(
        self, session: Session, referral_id: int, for_update: bool = False
    ) -> Optional[Referral]:
        ...

    def add(self, session: Session, referral: Referral) -> Referral:
        ...

    def next_referral_number(self, session: Session) -> str:
        ...

    def open_referral_ids(self, session: Session) -> list[int]:
        ...

    def list_referrals(
        self,
        session: Session,
        filters: ReferralFilters,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> ReferralPage:
        ...

    def referral_stats(self, session: Session, provider_id: Optional[str] = None) -> ReferralStats:
        ...

    def get_status_history(self, session: Session, referral_id: int) -> list[StatusHistory]:
        ...

    def has_active_escalation(self, session: Session, referral_id: int, reason: str) -> bool:
        ...


class Directory(Protocol):
    """Read-only lookups against the practice directory."""

    def patient_is_active(self, patient_id: str) -> bool:
        ...

    def provider_is_active(self, provider_id: str) -> bool:
        ...

    def specialist_is_active(self, specialist_id: str) -> bool:
        ...

    def encounter_exists(self, encounter_id: str) -> bool:
        ...

    def specialist_accepts(self, specialist_id: str, specialty_type: Optional[str]) -> bool:
        ...

    def has_active_insurance(self, patient_id: Optional[str], on: date) -> bool:
        ...

    def has_patient_consent(self, patient_id: Optional[str]) -> bool:
        ...

    def provider_credentials_valid(self, provider_id: Optional[str], on: date) -> bool:
        ...

    def find_authorization(self, authorization_number: str) -> Optional[AuthorizationRecord]:
        ...

    def count_referrals_since(
        self,
        since: datetime,
        patient_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        urgency_level: Optional[str] = None,
    ) -> int:
        ...

    def has_recent_specialty_referral(
        self, patient_id: str, specialty_type: str, since: datetime
    ) -> bool:
        ...

    def specialists_for_specialty(
        self, specialty_type: str, exclude_id: Optional[str] = None, limit: int = 3
    ) -> list[SpecialistSummary]:
        ...


class Notifier(Protocol):
    """Best-effort message delivery."""

    def send(self, notification: Notification) -> None:
        ...


class LetterRenderer(Protocol):
    """Renders referral letter content for a template."""

    def render(self, referral: ReferralSnapshot, template_id: str) -> str:
        ...


class AuditSink(Protocol):
    """Append-only store for audit and workflow events."""

    def append_audit(self, event: AuditEventRecord) -> None:
        ...

    def append_workflow(self, event: WorkflowEventRecord) -> None:
        ...
