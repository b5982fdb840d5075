"""
Shared fixtures: a throwaway SQLite database, a seeded directory and a
lifecycle service wired with inline actions and a controllable clock.
"""

from datetime import date, datetime, timedelta

import pytest

from referral_workflow.config import Settings
from referral_workflow.models import (
    Base,
    Patient,
    PatientInsurance,
    Provider,
    Specialist,
    build_engine,
    build_session_factory,
    init_db,
    session_scope,
)
from referral_workflow.services import build_lifecycle_service, seed_queues


NOW = datetime(2026, 3, 2, 9, 0, 0)

CARDIAC_NOTES = (
    "Intermittent chest pain on exertion for three weeks, suspected cardiac origin. "
    "Family history of heart disease."
)


class FakeClock:
    """Clock the tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    """Keeps every notification instead of delivering it."""

    def __init__(self):
        self.sent = []

    def send(self, notification) -> None:
        self.sent.append(notification)

    def kinds(self) -> list[str]:
        return [n.kind for n in self.sent]


class RecordingLetterRenderer:
    def __init__(self):
        self.rendered = []

    def render(self, referral, template_id: str) -> str:
        self.rendered.append((referral.referral_number, template_id))
        return f"Letter {template_id} for {referral.referral_number}"


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'referrals.db'}")
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def letters():
    return RecordingLetterRenderer()


@pytest.fixture
def directory_data(session_factory):
    """Patients, providers and specialists the referrals point at."""
    with session_scope(session_factory) as session:
        session.add_all(
            [
                Patient(
                    id="PAT_001",
                    first_name="Dana",
                    last_name="Reyes",
                    email="dana.reyes@example.com",
                    consent_on_file=True,
                ),
                Patient(id="PAT_002", first_name="Lee", last_name="Park", consent_on_file=False),
                Patient(id="PAT_OLD", first_name="Inactive", is_active=False),
                Provider(id="DR_001", name="Dr. Amara Osei", email="osei@clinic.example.com"),
                Provider(
                    id="DR_LAPSED",
                    name="Dr. Lapsed License",
                    license_expires_on=date(2025, 12, 31),
                ),
                Specialist(
                    id="SPEC_001",
                    name="Heart Partners",
                    specialty_primary="cardiology",
                    email="intake@heartpartners.example.com",
                ),
                Specialist(
                    id="SPEC_002",
                    name="Valley Cardiology",
                    practice_name="Valley Cardiology Group",
                    specialty_primary="cardiology",
                ),
                Specialist(
                    id="SPEC_003",
                    name="Bone & Joint",
                    specialty_primary="orthopedics",
                    specialties_secondary=["sports_medicine"],
                ),
            ]
        )
        session.flush()
        session.add(PatientInsurance(patient_id="PAT_001", payer_name="Acme Health", member_id="M-1"))


@pytest.fixture
def settings():
    return Settings(action_workers=0, action_max_attempts=2, transition_max_attempts=2)


@pytest.fixture
def service(session_factory, directory_data, settings, notifier, letters, clock):
    with session_scope(session_factory) as session:
        seed_queues(session)
    service = build_lifecycle_service(
        session_factory=session_factory,
        settings=settings,
        notifier=notifier,
        letters=letters,
        clock=clock,
    )
    yield service
    service.shutdown(wait=True)


@pytest.fixture
def referral_data():
    """Complete routine cardiology referral."""
    return {
        "patient_id": "PAT_001",
        "provider_id": "DR_001",
        "specialist_id": "SPEC_001",
        "specialty_type": "Cardiology",
        "referral_reason": "chest pain",
        "clinical_notes": CARDIAC_NOTES,
        "icd_codes": ["R07.9"],
        "cpt_codes": ["93000"],
        "urgency_level": "routine",
    }
