"""
Tests for ReferralValidator rules and workflow action pre-checks.
"""

from datetime import datetime, timedelta

import pytest

from referral_workflow.errors import ValidationError
from referral_workflow.models import Authorization, AuthorizationStatus, Encounter, session_scope
from referral_workflow.services import ReferralValidator, SqlDirectory, ValidationResult

from conftest import NOW


@pytest.fixture
def validator(session_factory, directory_data, clock):
    return ReferralValidator(SqlDirectory(session_factory), clock=clock)


class TestRequiredFieldsAndFormats:
    def test_complete_referral_is_valid(self, validator, referral_data):
        result = validator.validate(referral_data)
        assert result.is_valid
        assert result.errors == []
        assert result.compliance_issues == []

    def test_missing_fields_are_reported_by_name(self, validator):
        result = validator.validate({"patient_id": "PAT_001"})
        assert "Required field missing: provider_id" in result.errors
        assert "Required field missing: specialty_type" in result.errors
        assert "Required field missing: referral_reason" in result.errors

    def test_required_fields_depend_on_status(self, validator, referral_data):
        data = {**referral_data, "status": "scheduled"}
        result = validator.validate(data)
        assert "Required field missing: scheduled_date" in result.errors

    def test_update_requires_id(self, validator, referral_data):
        result = validator.validate(referral_data, "update")
        assert "Referral ID is required for updates" in result.errors

    def test_identifier_format(self, validator, referral_data):
        result = validator.validate({**referral_data, "patient_id": "p-1"})
        assert "Invalid format for patient_id: p-1" in result.errors

    def test_enumerated_values(self, validator, referral_data):
        result = validator.validate({**referral_data, "urgency_level": "whenever"})
        assert any(e.startswith("Invalid value for urgency_level: whenever") for e in result.errors)

    def test_stat_needs_justification(self, validator, referral_data):
        result = validator.validate({**referral_data, "urgency_level": "stat"})
        assert "STAT justification is required for STAT referrals" in result.errors

        justified = validator.validate(
            {**referral_data, "urgency_level": "stat", "stat_justification": "Troponin rising"}
        )
        assert justified.is_valid

    def test_scheduled_date_in_past(self, validator, referral_data):
        result = validator.validate(
            {**referral_data, "scheduled_date": NOW - timedelta(days=1)}
        )
        assert "Scheduled date cannot be in the past" in result.errors

    def test_scheduled_date_far_out_is_a_warning(self, validator, referral_data):
        result = validator.validate(
            {**referral_data, "scheduled_date": (NOW + timedelta(days=400)).isoformat()}
        )
        assert result.is_valid
        assert "Scheduled date is more than 1 year in the future" in result.warnings

    def test_short_notes_warn_long_notes_fail(self, validator, referral_data):
        short = validator.validate({**referral_data, "clinical_notes": "heart murmur"})
        assert short.is_valid
        assert any("at least 50 characters" in w for w in short.warnings)

        long = validator.validate({**referral_data, "clinical_notes": "heart " * 1000})
        assert "Clinical notes exceed maximum length of 5000 characters" in long.errors


class TestClinicalRules:
    def test_surgery_without_authorization_is_an_error(self, validator, referral_data):
        """Scenario: surgical referrals block instead of warn."""
        result = validator.validate(
            {**referral_data, "specialty_type": "Surgery", "authorization_required": False}
        )
        assert "Surgical referrals require prior authorization" in result.errors
        assert not result.is_valid

    def test_cardiology_heuristic_is_only_a_warning(self, validator, referral_data):
        result = validator.validate({**referral_data, "clinical_notes": "x" * 60})
        assert result.is_valid
        assert (
            "Cardiology referrals should include cardiac-related symptoms or findings"
            in result.warnings
        )

    def test_orthopedic_notes_should_mention_pain_or_injury(self, validator, referral_data):
        data = {**referral_data, "specialty_type": "orthopedics", "specialist_id": "SPEC_003"}
        warning = "Orthopedic referrals should document pain or injury details"

        vague = validator.validate({**data, "clinical_notes": "Follow-up requested. " * 4})
        assert vague.is_valid
        assert warning in vague.warnings

        documented = validator.validate(
            {**data, "clinical_notes": "Knee injury during a fall, swelling and pain on load-bearing."}
        )
        assert warning not in documented.warnings

    def test_stat_mental_health_needs_crisis_indicators(self, validator, referral_data):
        data = {
            **referral_data,
            "specialty_type": "mental_health",
            "specialist_id": None,
            "urgency_level": "stat",
            "stat_justification": "Acute decompensation",
        }
        warning = "STAT mental health referrals should document crisis indicators"

        result = validator.validate({**data, "clinical_notes": "Severe low mood for two weeks. " * 2})
        assert warning in result.warnings

        crisis = validator.validate(
            {**data, "clinical_notes": "Patient reports suicidal ideation with a plan since Friday."}
        )
        assert warning not in crisis.warnings

        routine = validator.validate(
            {**data, "urgency_level": "routine", "clinical_notes": "Low mood for two weeks. " * 3}
        )
        assert warning not in routine.warnings

    def test_code_formats(self, validator, referral_data):
        result = validator.validate(
            {**referral_data, "icd_codes": ["R07.9", "chest"], "cpt_codes": ["93000", "9300"]}
        )
        assert result.errors == ["Invalid ICD code: chest", "Invalid CPT code: 9300"]

    def test_authorization_specialty_hint(self, validator, referral_data):
        result = validator.validate({**referral_data, "specialty_type": "mri"})
        assert "Authorization is typically required for mri referrals" in result.warnings


class TestDirectoryRules:
    def test_unknown_or_inactive_parties(self, validator, referral_data):
        result = validator.validate(
            {**referral_data, "patient_id": "PAT_OLD", "specialist_id": "SPEC_999"}
        )
        assert "Patient not found or inactive" in result.errors
        assert "Specialist not found or inactive" in result.errors

    def test_encounter_must_exist(self, validator, referral_data, session_factory):
        with session_scope(session_factory) as session:
            session.add(Encounter(id="ENC_001", patient_id="PAT_001", provider_id="DR_001"))

        missing = validator.validate({**referral_data, "encounter_id": "ENC_404"})
        assert "Encounter not found" in missing.errors

        known = validator.validate({**referral_data, "encounter_id": "ENC_001"})
        assert known.is_valid

    def test_specialist_specialty_mismatch_warns(self, validator, referral_data):
        result = validator.validate({**referral_data, "specialist_id": "SPEC_003"})
        assert result.is_valid
        assert "Specialist may not accept Cardiology referrals" in result.warnings

    def test_missing_consent_is_compliance_issue(self, validator, referral_data):
        result = validator.validate({**referral_data, "patient_id": "PAT_002"})
        assert result.is_valid
        assert "Patient consent for referral sharing not documented" in result.compliance_issues

    def test_missing_notes_is_compliance_issue(self, validator, referral_data):
        data = dict(referral_data)
        del data["clinical_notes"]
        result = validator.validate(data)
        assert result.is_valid
        assert "Medical necessity must be documented in clinical notes" in result.compliance_issues

    def test_expired_provider_license(self, validator, referral_data):
        result = validator.validate({**referral_data, "provider_id": "DR_LAPSED"})
        assert "Provider credentials are not valid or expired" in result.errors

    def test_authorization_needs_insurance(self, validator, referral_data):
        result = validator.validate(
            {**referral_data, "patient_id": "PAT_002", "authorization_required": True}
        )
        assert (
            "Patient must have active insurance for authorization-required referrals"
            in result.errors
        )

    def test_unknown_authorization_number(self, validator, referral_data):
        result = validator.validate(
            {**referral_data, "authorization_required": True, "authorization_number": "AUTH-404"}
        )
        assert "Invalid authorization: Authorization number not found" in result.errors

    def test_expired_authorization(self, validator, service, referral_data, session_factory):
        referral = service.create_referral(referral_data)
        with session_scope(session_factory) as session:
            session.add(
                Authorization(
                    referral_id=referral.id,
                    status=AuthorizationStatus.APPROVED,
                    authorization_number="AUTH-OLD",
                    expiry_date=(NOW - timedelta(days=2)).date(),
                )
            )
        result = validator.validate(
            {**referral_data, "authorization_required": True, "authorization_number": "AUTH-OLD"}
        )
        assert "Invalid authorization: Authorization expired" in result.errors


class TestQuotas:
    def test_sixth_referral_for_patient_in_a_day(self, service, referral_data):
        for _ in range(5):
            service.create_referral(referral_data)

        with pytest.raises(ValidationError) as exc_info:
            service.create_referral(referral_data)

        assert "Patient has reached daily referral limit of 5" in exc_info.value.result.errors

    def test_quota_resets_at_midnight(self, service, referral_data, clock):
        for _ in range(5):
            service.create_referral(referral_data)

        clock.now = datetime(NOW.year, NOW.month, NOW.day) + timedelta(days=1, minutes=1)
        assert service.create_referral(referral_data).referral_number == "REF000006"

    def test_urgent_limit_per_provider(self, service, referral_data):
        urgent = {**referral_data, "urgency_level": "urgent"}
        for patient in ("PAT_001", "PAT_002"):
            for _ in range(5):
                service.create_referral({**urgent, "patient_id": patient})

        result = service.validator.validate({**urgent, "specialty_type": "orthopedics"})
        assert "Provider has reached daily urgent referral limit of 10" in result.errors

        other_provider = service.validator.validate({**urgent, "provider_id": "DR_LAPSED"})
        assert "Provider has reached daily urgent referral limit of 10" not in other_provider.errors

    def test_stat_limit_per_provider(self, service, referral_data):
        stat = {**referral_data, "urgency_level": "stat", "stat_justification": "Acute MI suspected"}
        for patient in ("PAT_001", "PAT_001", "PAT_002"):
            service.create_referral({**stat, "patient_id": patient})

        result = service.validator.validate({**stat, "patient_id": "PAT_002"})
        assert "Provider has reached daily STAT referral limit of 3" in result.errors

    def test_same_specialty_within_a_day_warns(self, service, referral_data):
        service.create_referral(referral_data)
        result = service.validator.validate(referral_data)
        assert "Patient has a recent Cardiology referral within 24 hours" in result.warnings


class TestIdempotency:
    def test_validate_twice_gives_same_result(self, validator, referral_data):
        data = {**referral_data, "clinical_notes": "short", "patient_id": "PAT_002"}
        snapshot = dict(data)

        first = validator.validate(data)
        second = validator.validate(data)

        assert first == second
        assert data == snapshot

    def test_result_to_dict(self):
        result = ValidationResult(errors=["a"], warnings=["b"], compliance_issues=["c"])
        assert result.to_dict() == {
            "isValid": False,
            "errors": ["a"],
            "warnings": ["b"],
            "complianceIssues": ["c"],
        }


class TestWorkflowActions:
    def test_send_requires_approved_authorization(self, validator, referral_data):
        data = {**referral_data, "status": "pending", "authorization_required": True}
        result = validator.validate_for_action(data, "send")
        assert result.errors == ["Authorization required before sending referral"]

        approved = {**data, "authorization_status": "approved"}
        assert validator.validate_for_action(approved, "send").is_valid

    def test_schedule_requires_sent(self, validator, referral_data):
        result = validator.validate_for_action({**referral_data, "status": "pending"}, "schedule")
        assert result.errors == ["Referral must be sent before scheduling"]

    def test_schedule_rejects_a_past_date(self, validator, referral_data, clock):
        data = {**referral_data, "status": "sent"}

        past = validator.validate_for_action(
            {**data, "scheduled_date": clock.now - timedelta(days=1)}, "schedule"
        )
        assert past.errors == ["Scheduled date cannot be in the past"]

        future = validator.validate_for_action(
            {**data, "scheduled_date": (clock.now + timedelta(days=7)).isoformat()}, "schedule"
        )
        assert future.is_valid

    def test_complete_requires_scheduled(self, validator, referral_data):
        result = validator.validate_for_action({**referral_data, "status": "sent"}, "complete")
        assert result.errors == ["Referral must be scheduled before completion"]

    @pytest.mark.parametrize("status", ["completed", "cancelled"])
    def test_cancel_closed_referral(self, validator, referral_data, status):
        result = validator.validate_for_action({**referral_data, "status": status}, "cancel")
        assert result.errors == ["Cannot cancel completed or already cancelled referral"]

    def test_unknown_action(self, validator, referral_data):
        result = validator.validate_for_action(referral_data, "archive")
        assert result.errors == ["Unknown workflow action: archive"]

    def test_lifecycle_validate_for_action(self, service, referral_data):
        referral = service.create_referral(referral_data)
        assert service.validate_for_action(referral.id, "send").is_valid
        assert not service.validate_for_action(referral.id, "complete").is_valid
