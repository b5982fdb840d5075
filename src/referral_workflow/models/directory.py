"""
Directory models: patients, providers, specialists, encounters.

The workflow core only reads these tables (through the Directory port);
they are maintained by the surrounding practice-management system.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from referral_workflow.models.base import Base, utcnow


# =============================================================================
# PATIENT MODELS
# =============================================================================


class Patient(Base):
    """Patient registered with the practice."""

    __tablename__ = "patients"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    consent_on_file: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    insurances: Mapped[list["PatientInsurance"]] = relationship(
        "PatientInsurance", back_populates="patient"
    )

    @property
    def full_name(self) -> str:
        """Get patient's full name."""
        parts = [self.first_name, self.last_name]
        return " ".join(p for p in parts if p)


class PatientInsurance(Base):
    """Insurance coverage held by a patient."""

    __tablename__ = "patient_insurance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(
        ForeignKey("patients.id"), nullable=False, index=True
    )
    payer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    member_id: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    termination_date: Mapped[Optional[date]] = mapped_column(Date)

    patient: Mapped["Patient"] = relationship("Patient", back_populates="insurances")


# =============================================================================
# PROVIDER MODEL
# =============================================================================


class Provider(Base):
    """Referring provider."""

    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(100))
    npi: Mapped[Optional[str]] = mapped_column(String(20), unique=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    credentials_verified: Mapped[bool] = mapped_column(Boolean, default=True)
    license_expires_on: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# =============================================================================
# SPECIALIST MODEL
# =============================================================================


class Specialist(Base):
    """Specialist who receives referrals."""

    __tablename__ = "referral_specialists"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    practice_name: Mapped[Optional[str]] = mapped_column(String(255))
    specialty_primary: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    specialties_secondary: Mapped[Optional[list]] = mapped_column(JSON)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    fax: Mapped[Optional[str]] = mapped_column(String(50))
    accepting_new: Mapped[bool] = mapped_column(Boolean, default=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def accepts(self, specialty_type: Optional[str]) -> bool:
        """Check whether the specialist lists the given specialty."""
        if not specialty_type:
            return False
        wanted = specialty_type.strip().lower()
        listed = [self.specialty_primary] + list(self.specialties_secondary or [])
        return any(s and s.strip().lower() == wanted for s in listed)


# =============================================================================
# ENCOUNTER MODEL
# =============================================================================


class Encounter(Base):
    """Clinical encounter a referral may originate from."""

    __tablename__ = "encounters"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    patient_id: Mapped[str] = mapped_column(
        ForeignKey("patients.id"), nullable=False, index=True
    )
    provider_id: Mapped[Optional[str]] = mapped_column(ForeignKey("providers.id"))
    encounter_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
