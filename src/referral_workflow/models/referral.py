"""
Core referral and lifecycle models.

This module contains:
- Referral: The core referral record
- StatusHistory: Append-only log of status changes
- Authorization: Payer pre-approval requests
- Escalation: SLA breach and manual escalation records
- Supporting models (DocumentSequence, FollowUpTask)
"""

from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from referral_workflow.models.base import Base, utcnow
from referral_workflow.models.enums import (
    AppointmentType,
    AuthorizationStatus,
    EscalationStatus,
    FollowUpStatus,
    ReferralStatus,
    UrgencyLevel,
)


# =============================================================================
# REFERRAL MODEL
# =============================================================================


class Referral(Base):
    """
    Core referral record.

    The status column is only written by the state machine; the
    authorization workflow and escalation path touch their own fields.
    Referrals are never physically deleted.
    """

    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_number: Mapped[str] = mapped_column(
        String(20), unique=True, nullable=False, index=True
    )

    # =========================================================================
    # SUBJECT REFERENCES
    # =========================================================================
    patient_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    specialist_id: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    encounter_id: Mapped[Optional[str]] = mapped_column(String(50))

    # =========================================================================
    # CLINICAL PAYLOAD
    # =========================================================================
    specialty_type: Mapped[str] = mapped_column(String(100), nullable=False)
    referral_reason: Mapped[str] = mapped_column(Text, nullable=False)
    clinical_notes: Mapped[Optional[str]] = mapped_column(Text)
    stat_justification: Mapped[Optional[str]] = mapped_column(Text)
    icd_codes: Mapped[Optional[list]] = mapped_column(JSON)
    cpt_codes: Mapped[Optional[list]] = mapped_column(JSON)

    # =========================================================================
    # CLASSIFICATION
    # =========================================================================
    urgency_level: Mapped[UrgencyLevel] = mapped_column(
        Enum(UrgencyLevel), default=UrgencyLevel.ROUTINE, index=True
    )
    appointment_type: Mapped[AppointmentType] = mapped_column(
        Enum(AppointmentType), default=AppointmentType.CONSULTATION
    )
    expected_duration: Mapped[Optional[str]] = mapped_column(String(100))
    preferred_appointment_time: Mapped[Optional[str]] = mapped_column(String(100))

    # =========================================================================
    # STATUS & AUTHORIZATION
    # =========================================================================
    status: Mapped[ReferralStatus] = mapped_column(
        Enum(ReferralStatus), default=ReferralStatus.DRAFT, index=True
    )
    authorization_required: Mapped[bool] = mapped_column(Boolean, default=False)
    authorization_status: Mapped[Optional[AuthorizationStatus]] = mapped_column(
        Enum(AuthorizationStatus)
    )
    authorization_number: Mapped[Optional[str]] = mapped_column(String(100))

    # =========================================================================
    # SCHEDULING & OUTCOME
    # =========================================================================
    scheduled_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    follow_up_required: Mapped[bool] = mapped_column(Boolean, default=True)
    follow_up_instructions: Mapped[Optional[str]] = mapped_column(Text)
    outcome_notes: Mapped[Optional[str]] = mapped_column(Text)
    outcome_received: Mapped[bool] = mapped_column(Boolean, default=False)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)

    # =========================================================================
    # LETTER
    # =========================================================================
    letter_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    letter_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_by: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    # Optimistic concurrency: a stale writer fails with StaleDataError
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    # =========================================================================
    # RELATIONSHIPS
    # =========================================================================
    status_history: Mapped[list["StatusHistory"]] = relationship(
        "StatusHistory",
        back_populates="referral",
        order_by="StatusHistory.changed_at",
    )
    authorizations: Mapped[list["Authorization"]] = relationship(
        "Authorization", back_populates="referral"
    )
    escalations: Mapped[list["Escalation"]] = relationship(
        "Escalation", back_populates="referral"
    )

    def as_dict(self) -> dict[str, Any]:
        """Plain field mapping in the shape the validator consumes."""
        return {
            "id": self.id,
            "referral_number": self.referral_number,
            "patient_id": self.patient_id,
            "provider_id": self.provider_id,
            "specialist_id": self.specialist_id,
            "encounter_id": self.encounter_id,
            "specialty_type": self.specialty_type,
            "referral_reason": self.referral_reason,
            "clinical_notes": self.clinical_notes,
            "stat_justification": self.stat_justification,
            "icd_codes": list(self.icd_codes or []),
            "cpt_codes": list(self.cpt_codes or []),
            "urgency_level": self.urgency_level.value if self.urgency_level else None,
            "appointment_type": self.appointment_type.value if self.appointment_type else None,
            "status": self.status.value if self.status else None,
            "authorization_required": self.authorization_required,
            "authorization_status": (
                self.authorization_status.value if self.authorization_status else None
            ),
            "authorization_number": self.authorization_number,
            "scheduled_date": self.scheduled_date,
            "completed_date": self.completed_date,
            "follow_up_required": self.follow_up_required,
            "sent_at": self.sent_at,
            "created_at": self.created_at,
        }

    def __repr__(self) -> str:
        return (
            f"<Referral(id={self.id}, number={self.referral_number}, "
            f"status={self.status.value})>"
        )


# =============================================================================
# STATUS HISTORY MODEL
# =============================================================================


class StatusHistory(Base):
    """Append-only record of every status a referral has held."""

    __tablename__ = "referral_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_id: Mapped[int] = mapped_column(
        ForeignKey("referrals.id"), nullable=False, index=True
    )
    previous_status: Mapped[Optional[ReferralStatus]] = mapped_column(
        Enum(ReferralStatus)
    )  # NULL only on the creation row
    new_status: Mapped[ReferralStatus] = mapped_column(
        Enum(ReferralStatus), nullable=False
    )
    reason: Mapped[Optional[str]] = mapped_column(Text)
    changed_by: Mapped[Optional[str]] = mapped_column(String(255))
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    referral: Mapped["Referral"] = relationship(
        "Referral", back_populates="status_history"
    )

    def __repr__(self) -> str:
        previous = self.previous_status.value if self.previous_status else None
        return (
            f"<StatusHistory(referral={self.referral_id}, "
            f"{previous}->{self.new_status.value})>"
        )


# =============================================================================
# AUTHORIZATION MODEL
# =============================================================================


class Authorization(Base):
    """Prior authorization request for a referral."""

    __tablename__ = "referral_authorizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_id: Mapped[int] = mapped_column(
        ForeignKey("referrals.id"), nullable=False, index=True
    )
    authorization_type: Mapped[str] = mapped_column(String(50), default="referral")
    status: Mapped[AuthorizationStatus] = mapped_column(
        Enum(AuthorizationStatus), default=AuthorizationStatus.PENDING
    )
    request_date: Mapped[date] = mapped_column(Date, default=lambda: utcnow().date())
    requested_services: Mapped[Optional[list]] = mapped_column(JSON)
    clinical_justification: Mapped[Optional[str]] = mapped_column(Text)
    authorization_number: Mapped[Optional[str]] = mapped_column(
        String(100), index=True
    )
    approved_visits: Mapped[Optional[int]] = mapped_column(Integer)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date)
    submitted_method: Mapped[Optional[str]] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    referral: Mapped["Referral"] = relationship(
        "Referral", back_populates="authorizations"
    )

    @property
    def is_expired(self) -> bool:
        """Check if the approval window has passed."""
        if self.expiry_date is None:
            return False
        return self.expiry_date < utcnow().date()


# =============================================================================
# ESCALATION MODEL
# =============================================================================


class Escalation(Base):
    """Raised when a referral breaches its SLA or is escalated by hand."""

    __tablename__ = "referral_escalations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_id: Mapped[int] = mapped_column(
        ForeignKey("referrals.id"), nullable=False, index=True
    )
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=1)
    escalated_by: Mapped[Optional[str]] = mapped_column(String(255))
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[EscalationStatus] = mapped_column(
        Enum(EscalationStatus), default=EscalationStatus.ACTIVE, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    referral: Mapped["Referral"] = relationship(
        "Referral", back_populates="escalations"
    )

    def __repr__(self) -> str:
        return (
            f"<Escalation(id={self.id}, referral={self.referral_id}, "
            f"reason='{self.reason}', status={self.status.value})>"
        )


# =============================================================================
# SUPPORTING MODELS
# =============================================================================


class DocumentSequence(Base):
    """Named counters for human-facing sequential numbers."""

    __tablename__ = "document_sequences"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    prefix: Mapped[str] = mapped_column(String(10), default="")
    current_number: Mapped[int] = mapped_column(Integer, default=0)


class FollowUpTask(Base):
    """Follow-up reminder created by the automated actions."""

    __tablename__ = "referral_follow_up_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_id: Mapped[int] = mapped_column(
        ForeignKey("referrals.id"), nullable=False, index=True
    )
    task_type: Mapped[str] = mapped_column(String(50), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[FollowUpStatus] = mapped_column(
        Enum(FollowUpStatus), default=FollowUpStatus.OPEN
    )
    instructions: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
