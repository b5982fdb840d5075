"""
Specialist and quality metric tables written by the automated actions.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from referral_workflow.models.base import Base, utcnow


class SpecialistMetric(Base):
    """Daily referral counters per specialist."""

    __tablename__ = "referral_specialist_metrics"
    __table_args__ = (UniqueConstraint("specialist_id", "metric_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    specialist_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    referrals_received: Mapped[int] = mapped_column(Integer, default=0)
    referrals_completed: Mapped[int] = mapped_column(Integer, default=0)
    referrals_cancelled: Mapped[int] = mapped_column(Integer, default=0)
    referrals_expired: Mapped[int] = mapped_column(Integer, default=0)


class SpecialistRating(Base):
    """Running patient-satisfaction average per specialist."""

    __tablename__ = "referral_specialist_ratings"

    specialist_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    completed_referrals: Mapped[int] = mapped_column(Integer, default=0)
    rated_referrals: Mapped[int] = mapped_column(Integer, default=0)
    patient_satisfaction_score: Mapped[Optional[float]] = mapped_column(Float)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class QualityMetric(Base):
    """Cycle-time record captured when a referral completes."""

    __tablename__ = "referral_quality_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_id: Mapped[int] = mapped_column(
        ForeignKey("referrals.id"), nullable=False, index=True
    )
    total_cycle_days: Mapped[int] = mapped_column(Integer, nullable=False)
    appointment_kept: Mapped[bool] = mapped_column(Boolean, default=True)
    outcome_received: Mapped[bool] = mapped_column(Boolean, default=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
