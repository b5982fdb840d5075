"""
SQLAlchemy implementation of the read-only Directory port.

Each lookup opens its own short session so the validator never shares a
transaction with the write it gates.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import sessionmaker

from referral_workflow.models import (
    Authorization,
    Encounter,
    Patient,
    PatientInsurance,
    Provider,
    Referral,
    Specialist,
    UrgencyLevel,
)
from referral_workflow.services.ports import AuthorizationRecord, SpecialistSummary


class SqlDirectory:
    """Directory lookups backed by the practice database."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # =========================================================================
    # EXISTENCE
    # =========================================================================

    def patient_is_active(self, patient_id: str) -> bool:
        with self.session_factory() as session:
            patient = session.get(Patient, patient_id)
            return patient is not None and bool(patient.is_active)

    def provider_is_active(self, provider_id: str) -> bool:
        with self.session_factory() as session:
            provider = session.get(Provider, provider_id)
            return provider is not None and bool(provider.is_active)

    def specialist_is_active(self, specialist_id: str) -> bool:
        with self.session_factory() as session:
            specialist = session.get(Specialist, specialist_id)
            return specialist is not None and bool(specialist.is_active)

    def encounter_exists(self, encounter_id: str) -> bool:
        with self.session_factory() as session:
            encounter = session.get(Encounter, encounter_id)
            return encounter is not None and bool(encounter.is_active)

    def specialist_accepts(self, specialist_id: str, specialty_type: Optional[str]) -> bool:
        with self.session_factory() as session:
            specialist = session.get(Specialist, specialist_id)
            return specialist is not None and specialist.accepts(specialty_type)

    # =========================================================================
    # COVERAGE & COMPLIANCE
    # =========================================================================

    def has_active_insurance(self, patient_id: Optional[str], on: date) -> bool:
        if not patient_id:
            return False
        with self.session_factory() as session:
            coverage = (
                session.query(PatientInsurance.id)
                .filter(
                    PatientInsurance.patient_id == patient_id,
                    PatientInsurance.is_active == True,
                    or_(
                        PatientInsurance.termination_date.is_(None),
                        PatientInsurance.termination_date > on,
                    ),
                )
                .first()
            )
            return coverage is not None

    def has_patient_consent(self, patient_id: Optional[str]) -> bool:
        if not patient_id:
            return False
        with self.session_factory() as session:
            patient = session.get(Patient, patient_id)
            return patient is not None and bool(patient.consent_on_file)

    def provider_credentials_valid(self, provider_id: Optional[str], on: date) -> bool:
        if not provider_id:
            return False
        with self.session_factory() as session:
            provider = session.get(Provider, provider_id)
            if provider is None or not provider.credentials_verified:
                return False
            return provider.license_expires_on is None or provider.license_expires_on >= on

    def find_authorization(self, authorization_number: str) -> Optional[AuthorizationRecord]:
        with self.session_factory() as session:
            authorization = (
                session.query(Authorization)
                .filter(Authorization.authorization_number == authorization_number)
                .order_by(Authorization.id.desc())
                .first()
            )
            if authorization is None:
                return None
            return AuthorizationRecord(
                authorization_number=authorization.authorization_number,
                status=authorization.status.value,
                expiry_date=authorization.expiry_date,
            )

    # =========================================================================
    # REFERRAL COUNTS
    # =========================================================================

    def count_referrals_since(
        self,
        since: datetime,
        patient_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        urgency_level: Optional[str] = None,
    ) -> int:
        with self.session_factory() as session:
            query = session.query(func.count(Referral.id)).filter(Referral.created_at >= since)
            if patient_id:
                query = query.filter(Referral.patient_id == patient_id)
            if provider_id:
                query = query.filter(Referral.provider_id == provider_id)
            if urgency_level:
                query = query.filter(Referral.urgency_level == UrgencyLevel(urgency_level))
            return query.scalar() or 0

    def has_recent_specialty_referral(
        self, patient_id: str, specialty_type: str, since: datetime
    ) -> bool:
        with self.session_factory() as session:
            match = (
                session.query(Referral.id)
                .filter(
                    Referral.patient_id == patient_id,
                    func.lower(Referral.specialty_type) == specialty_type.lower(),
                    Referral.created_at > since,
                )
                .first()
            )
            return match is not None

    def specialists_for_specialty(
        self, specialty_type: str, exclude_id: Optional[str] = None, limit: int = 3
    ) -> list[SpecialistSummary]:
        """Active specialists accepting new patients, primary matches first."""
        with self.session_factory() as session:
            candidates = (
                session.query(Specialist)
                .filter(Specialist.is_active == True, Specialist.accepting_new == True)
                .order_by(Specialist.name)
                .all()
            )
            matches = [
                s for s in candidates if s.id != exclude_id and s.accepts(specialty_type)
            ]
            matches.sort(
                key=lambda s: s.specialty_primary.strip().lower() != specialty_type.strip().lower()
            )
            return [
                SpecialistSummary(
                    id=s.id,
                    name=s.name,
                    practice_name=s.practice_name,
                    specialty_primary=s.specialty_primary,
                    accepting_new=s.accepting_new,
                )
                for s in matches[:limit]
            ]
