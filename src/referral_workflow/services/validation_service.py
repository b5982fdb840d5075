"""
Business and clinical rule validation for referrals.

The validator never writes. It reads stored state only through the
Directory port and takes "now" from an injectable clock, so the same
input against the same directory always yields the same result.

Checks run in a fixed order:
1. Required fields (by status)
2. Data formats
3. Business quotas
4. Clinical data
5. Authorization
6. Compliance
7. Cross-references
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from referral_workflow.models import utcnow
from referral_workflow.services.ports import Directory

logger = logging.getLogger(__name__)


# =============================================================================
# RULE TABLES
# =============================================================================

_DRAFT_FIELDS = ("patient_id", "provider_id", "specialty_type", "referral_reason")

REQUIRED_FIELDS = MappingProxyType(
    {
        "draft": _DRAFT_FIELDS,
        "pending": _DRAFT_FIELDS + ("clinical_notes",),
        "sent": _DRAFT_FIELDS + ("clinical_notes", "specialist_id"),
        "scheduled": _DRAFT_FIELDS
        + ("clinical_notes", "specialist_id", "scheduled_date"),
        "completed": _DRAFT_FIELDS
        + ("clinical_notes", "specialist_id", "scheduled_date", "completed_date"),
    }
)

FORMAT_PATTERNS = MappingProxyType(
    {
        "patient_id": re.compile(r"^[A-Z0-9_]{3,50}$"),
        "provider_id": re.compile(r"^[A-Z0-9_]{3,50}$"),
        "specialist_id": re.compile(r"^[A-Z0-9_]{3,50}$"),
        "referral_number": re.compile(r"^REF\d{6,}$"),
    }
)

ALLOWED_VALUES = MappingProxyType(
    {
        "urgency_level": ("routine", "urgent", "stat"),
        "appointment_type": ("consultation", "treatment", "second_opinion", "procedure"),
        "status": ("draft", "pending", "sent", "scheduled", "completed", "cancelled", "expired"),
    }
)

ICD_PATTERN = re.compile(r"^[A-Z]\d{2}(\.\d{1,3})?$")
CPT_PATTERN = re.compile(r"^\d{5}$")

MAX_REFERRALS_PER_PATIENT_PER_DAY = 5
MAX_URGENT_PER_PROVIDER_PER_DAY = 10
MAX_STAT_PER_PROVIDER_PER_DAY = 3
SAME_SPECIALTY_COOLDOWN_HOURS = 24
MIN_CLINICAL_NOTES_LENGTH = 50
MAX_CLINICAL_NOTES_LENGTH = 5000

AUTHORIZATION_SPECIALTIES = frozenset(
    {
        "surgery",
        "orthopedic_surgery",
        "neurosurgery",
        "cardiac_surgery",
        "mri",
        "ct_scan",
        "pet_scan",
        "nuclear_medicine",
    }
)

WORKFLOW_ACTIONS = frozenset({"send", "schedule", "complete", "cancel"})


@dataclass
class ValidationResult:
    """Outcome of a validation run. Only errors make it invalid."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    compliance_issues: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "complianceIssues": list(self.compliance_issues),
        }


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


def as_datetime(value: Any) -> Optional[datetime]:
    """Accept datetime, date or ISO-8601 text; None when unparseable."""
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    return None


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class ReferralValidator:
    """
    Validates referral data against field, business and clinical rules.

    Args:
        directory: Read-only directory lookups
        clock: Returns the current naive-UTC time
    """

    def __init__(self, directory: Directory, clock: Callable[[], datetime] = utcnow):
        self.directory = directory
        self.clock = clock

    def validate(
        self, referral_data: Mapping[str, Any], validation_type: str = "create"
    ) -> ValidationResult:
        """Run every check and collect errors, warnings and compliance issues."""
        data = {key: _enum_value(value) for key, value in referral_data.items()}
        now = self.clock()
        result = ValidationResult()

        self._check_required_fields(data, validation_type, result)
        self._check_formats(data, now, result)
        self._check_business_rules(data, now, result)
        self._check_clinical_data(data, result)
        self._check_authorization(data, now, result)
        self._check_compliance(data, now, result)
        self._check_cross_references(data, result)

        if not result.is_valid:
            logger.debug(
                f"Validation ({validation_type}) found {len(result.errors)} error(s)"
            )
        return result

    # =========================================================================
    # CHECKS
    # =========================================================================

    def _check_required_fields(
        self, data: dict[str, Any], validation_type: str, result: ValidationResult
    ) -> None:
        status = data.get("status") or "draft"
        for field_name in REQUIRED_FIELDS.get(status, ()):
            if _is_blank(data.get(field_name)):
                result.errors.append(f"Required field missing: {field_name}")

        if validation_type == "update" and not data.get("id"):
            result.errors.append("Referral ID is required for updates")

        if data.get("urgency_level") == "stat" and _is_blank(data.get("stat_justification")):
            result.errors.append("STAT justification is required for STAT referrals")

    def _check_formats(
        self, data: dict[str, Any], now: datetime, result: ValidationResult
    ) -> None:
        for field_name, pattern in FORMAT_PATTERNS.items():
            value = data.get(field_name)
            if value and not pattern.match(str(value)):
                result.errors.append(f"Invalid format for {field_name}: {value}")

        for field_name, allowed in ALLOWED_VALUES.items():
            value = data.get(field_name)
            if value and value not in allowed:
                result.errors.append(
                    f"Invalid value for {field_name}: {value}. "
                    f"Must be one of: {', '.join(allowed)}"
                )

        if data.get("scheduled_date"):
            scheduled = as_datetime(data["scheduled_date"])
            if scheduled is None:
                result.errors.append(f"Invalid format for scheduled_date: {data['scheduled_date']}")
            else:
                if scheduled < now:
                    result.errors.append("Scheduled date cannot be in the past")
                if scheduled > now + timedelta(days=365):
                    result.warnings.append("Scheduled date is more than 1 year in the future")

        notes = data.get("clinical_notes")
        if notes:
            if len(notes) < MIN_CLINICAL_NOTES_LENGTH:
                result.warnings.append(
                    f"Clinical notes should be at least {MIN_CLINICAL_NOTES_LENGTH} "
                    "characters for adequate documentation"
                )
            if len(notes) > MAX_CLINICAL_NOTES_LENGTH:
                result.errors.append(
                    f"Clinical notes exceed maximum length of {MAX_CLINICAL_NOTES_LENGTH} characters"
                )

    def _check_business_rules(
        self, data: dict[str, Any], now: datetime, result: ValidationResult
    ) -> None:
        start_of_day = datetime(now.year, now.month, now.day)
        patient_id = data.get("patient_id")
        provider_id = data.get("provider_id")
        urgency = data.get("urgency_level")
        specialty = data.get("specialty_type")

        if patient_id:
            count = self.directory.count_referrals_since(start_of_day, patient_id=patient_id)
            if count >= MAX_REFERRALS_PER_PATIENT_PER_DAY:
                result.errors.append(
                    "Patient has reached daily referral limit of "
                    f"{MAX_REFERRALS_PER_PATIENT_PER_DAY}"
                )

        if provider_id and urgency == "urgent":
            count = self.directory.count_referrals_since(
                start_of_day, provider_id=provider_id, urgency_level="urgent"
            )
            if count >= MAX_URGENT_PER_PROVIDER_PER_DAY:
                result.errors.append(
                    "Provider has reached daily urgent referral limit of "
                    f"{MAX_URGENT_PER_PROVIDER_PER_DAY}"
                )

        if provider_id and urgency == "stat":
            count = self.directory.count_referrals_since(
                start_of_day, provider_id=provider_id, urgency_level="stat"
            )
            if count >= MAX_STAT_PER_PROVIDER_PER_DAY:
                result.errors.append(
                    "Provider has reached daily STAT referral limit of "
                    f"{MAX_STAT_PER_PROVIDER_PER_DAY}"
                )

        if patient_id and specialty:
            since = now - timedelta(hours=SAME_SPECIALTY_COOLDOWN_HOURS)
            if self.directory.has_recent_specialty_referral(patient_id, specialty, since):
                result.warnings.append(
                    f"Patient has a recent {specialty} referral within "
                    f"{SAME_SPECIALTY_COOLDOWN_HOURS} hours"
                )

        if specialty and specialty.lower() in AUTHORIZATION_SPECIALTIES:
            if not data.get("authorization_required"):
                result.warnings.append(
                    f"Authorization is typically required for {specialty} referrals"
                )

    def _check_clinical_data(self, data: dict[str, Any], result: ValidationResult) -> None:
        for code in data.get("icd_codes") or ():
            if not ICD_PATTERN.match(str(code)):
                result.errors.append(f"Invalid ICD code: {code}")

        for code in data.get("cpt_codes") or ():
            if not CPT_PATTERN.match(str(code)):
                result.errors.append(f"Invalid CPT code: {code}")

        specialty = (data.get("specialty_type") or "").lower()
        notes = data.get("clinical_notes") or ""

        if specialty == "cardiology":
            if "cardiac" not in notes and "heart" not in notes:
                result.warnings.append(
                    "Cardiology referrals should include cardiac-related symptoms or findings"
                )
        elif specialty == "orthopedics":
            if "pain" not in notes and "injury" not in notes:
                result.warnings.append(
                    "Orthopedic referrals should document pain or injury details"
                )
        elif specialty in ("mental_health", "psychiatry"):
            if data.get("urgency_level") == "stat" and "suicidal" not in notes:
                result.warnings.append(
                    "STAT mental health referrals should document crisis indicators"
                )
        elif specialty == "surgery":
            if not data.get("authorization_required"):
                result.errors.append("Surgical referrals require prior authorization")

    def _check_authorization(
        self, data: dict[str, Any], now: datetime, result: ValidationResult
    ) -> None:
        if not data.get("authorization_required"):
            return

        if not self.directory.has_active_insurance(data.get("patient_id"), now.date()):
            result.errors.append(
                "Patient must have active insurance for authorization-required referrals"
            )

        number = data.get("authorization_number")
        if number:
            reason = self._authorization_problem(number, now.date())
            if reason:
                result.errors.append(f"Invalid authorization: {reason}")

    def _authorization_problem(self, number: str, today: date) -> Optional[str]:
        record = self.directory.find_authorization(number)
        if record is None:
            return "Authorization number not found"
        if record.status != "approved":
            return "Authorization not approved"
        if record.expiry_date and record.expiry_date < today:
            return "Authorization expired"
        return None

    def _check_compliance(
        self, data: dict[str, Any], now: datetime, result: ValidationResult
    ) -> None:
        patient_id = data.get("patient_id")
        provider_id = data.get("provider_id")

        if patient_id and not self.directory.has_patient_consent(patient_id):
            result.compliance_issues.append("Patient consent for referral sharing not documented")

        if provider_id and not self.directory.provider_credentials_valid(provider_id, now.date()):
            result.errors.append("Provider credentials are not valid or expired")

        if _is_blank(data.get("clinical_notes")):
            result.compliance_issues.append(
                "Medical necessity must be documented in clinical notes"
            )

    def _check_cross_references(self, data: dict[str, Any], result: ValidationResult) -> None:
        if data.get("patient_id") and not self.directory.patient_is_active(data["patient_id"]):
            result.errors.append("Patient not found or inactive")

        if data.get("provider_id") and not self.directory.provider_is_active(data["provider_id"]):
            result.errors.append("Provider not found or inactive")

        specialist_id = data.get("specialist_id")
        if specialist_id:
            if not self.directory.specialist_is_active(specialist_id):
                result.errors.append("Specialist not found or inactive")
            elif not self.directory.specialist_accepts(specialist_id, data.get("specialty_type")):
                result.warnings.append(
                    f"Specialist may not accept {data.get('specialty_type')} referrals"
                )

        if data.get("encounter_id") and not self.directory.encounter_exists(data["encounter_id"]):
            result.errors.append("Encounter not found")

    # =========================================================================
    # WORKFLOW ACTION PRE-CHECKS
    # =========================================================================

    def validate_for_action(
        self, referral_data: Mapping[str, Any], action: str
    ) -> ValidationResult:
        """
        Check a stored referral against the preconditions of a workflow action.

        Actions: send, schedule, complete, cancel.
        """
        data = {key: _enum_value(value) for key, value in referral_data.items()}
        result = ValidationResult()
        status = data.get("status")

        if action not in WORKFLOW_ACTIONS:
            result.errors.append(f"Unknown workflow action: {action}")
        elif action == "send":
            if not data.get("specialist_id") and not data.get("specialty_type"):
                result.errors.append("Specialist or specialty type required to send referral")
            if data.get("authorization_required") and data.get("authorization_status") != "approved":
                result.errors.append("Authorization required before sending referral")
        elif action == "schedule":
            if status != "sent":
                result.errors.append("Referral must be sent before scheduling")
            if not data.get("specialist_id"):
                result.errors.append("Specialist required for scheduling")
            scheduled = as_datetime(data.get("scheduled_date"))
            if scheduled is not None and scheduled < self.clock():
                result.errors.append("Scheduled date cannot be in the past")
        elif action == "complete":
            if status != "scheduled":
                result.errors.append("Referral must be scheduled before completion")
        elif action == "cancel":
            if status in ("completed", "cancelled"):
                result.errors.append("Cannot cancel completed or already cancelled referral")

        return result
