"""
Tests for authorization handling in the lifecycle service.
"""

from datetime import date, timedelta

import pytest

from referral_workflow.errors import GuardFailure, NotFoundError, ValidationError
from referral_workflow.models import (
    AuditEvent,
    Authorization,
    AuthorizationStatus,
    ReferralStatus,
    session_scope,
)


def _pending_imaging_referral(service, referral_data):
    """Referral that picked up an authorization requirement on entering pending."""
    referral = service.create_referral({**referral_data, "specialty_type": "mri"})
    service.transition(referral.id, "pending")
    return referral


class TestCreateWithAuthorization:
    def test_required_authorization_opens_a_request(self, service, session_factory, referral_data):
        referral = service.create_referral({**referral_data, "authorization_required": True})

        assert referral.authorization_status == AuthorizationStatus.PENDING
        with session_scope(session_factory) as session:
            request = session.query(Authorization).filter_by(referral_id=referral.id).one()
            assert request.status == AuthorizationStatus.PENDING
            assert request.requested_services == ["93000"]
            actions = [a.action for a in session.query(AuditEvent).order_by(AuditEvent.id)]
            assert actions == ["REFERRAL_CREATED", "AUTHORIZATION_REQUESTED"]

    def test_approved_number_counts_as_approved(self, service, session_factory, referral_data):
        first = service.create_referral({**referral_data, "authorization_required": True})
        service.update_authorization(first.id, "approved", authorization_number="AUTH-900")

        second = service.create_referral(
            {
                **referral_data,
                "patient_id": "PAT_001",
                "authorization_required": True,
                "authorization_number": "AUTH-900",
            }
        )
        assert second.authorization_status == AuthorizationStatus.APPROVED
        with session_scope(session_factory) as session:
            assert session.query(Authorization).filter_by(referral_id=second.id).count() == 0


class TestRequestAuthorization:
    def test_request_is_idempotent(self, service, referral_data):
        referral = service.create_referral(referral_data)

        first = service.request_authorization(
            referral.id, actor="coordinator", clinical_justification="Abnormal ECG"
        )
        second = service.request_authorization(referral.id, actor="coordinator")

        assert first.id == second.id
        assert first.clinical_justification == "Abnormal ECG"
        stored = service.get_referral(referral.id)
        assert stored.authorization_required is True
        assert stored.authorization_status == AuthorizationStatus.PENDING

    def test_unknown_referral(self, service):
        with pytest.raises(NotFoundError):
            service.request_authorization(12345)


class TestUpdateAuthorization:
    def test_approval_advances_pending_referral_to_sent(self, service, referral_data, notifier):
        referral = _pending_imaging_referral(service, referral_data)
        assert service.get_referral(referral.id).authorization_required is True

        updated = service.update_authorization(
            referral.id,
            "approved",
            actor="payer-desk",
            authorization_number="AUTH-321",
            approved_visits=3,
            expiry_date=date(2026, 6, 30),
        )

        assert updated.status == ReferralStatus.SENT
        assert updated.authorization_status == AuthorizationStatus.APPROVED
        assert updated.authorization_number == "AUTH-321"
        history = service.get_status_history(referral.id)
        assert history[-1].reason == "Authorization approved"
        assert history[-1].changed_by == "payer-desk"
        assert "referral_sent" in notifier.kinds()

    def test_denial_leaves_referral_pending(self, service, session_factory, referral_data):
        referral = _pending_imaging_referral(service, referral_data)

        updated = service.update_authorization(referral.id, "denied")

        assert updated.status == ReferralStatus.PENDING
        assert updated.authorization_status == AuthorizationStatus.DENIED
        with session_scope(session_factory) as session:
            request = session.query(Authorization).filter_by(referral_id=referral.id).one()
            assert request.status == AuthorizationStatus.DENIED

    def test_rejected_advance_keeps_the_decision(self, service, session_factory, referral_data):
        referral = _pending_imaging_referral(service, referral_data)
        with session_scope(session_factory) as session:
            stored = service.store.get_referral(session, referral.id)
            stored.specialty_type = ""
            stored.specialist_id = None

        updated = service.update_authorization(referral.id, "approved", authorization_number="AUTH-9")

        assert updated.status == ReferralStatus.PENDING
        assert updated.authorization_status == AuthorizationStatus.APPROVED

    def test_approval_of_draft_does_not_transition(self, service, referral_data):
        referral = service.create_referral({**referral_data, "authorization_required": True})
        updated = service.update_authorization(referral.id, "approved", authorization_number="AUTH-1")
        assert updated.status == ReferralStatus.DRAFT
        assert len(service.get_status_history(referral.id)) == 1

    def test_invalid_status(self, service, referral_data):
        referral = service.create_referral(referral_data)
        with pytest.raises(ValidationError) as exc_info:
            service.update_authorization(referral.id, "maybe")
        assert exc_info.value.result.errors == ["Invalid authorization status: maybe"]


class TestCancellationReleasesAuthorization:
    def test_reactivated_referral_needs_a_fresh_approval(
        self, service, session_factory, referral_data
    ):
        referral = service.create_referral({**referral_data, "authorization_required": True})
        service.update_authorization(referral.id, "approved", authorization_number="AUTH-610")
        service.transition(referral.id, "pending")
        service.transition(referral.id, "cancelled", notes="Patient declined")

        assert service.get_referral(referral.id).authorization_status == AuthorizationStatus.CANCELLED

        service.transition(referral.id, "draft", notes="Patient changed their mind")
        with pytest.raises(GuardFailure) as exc_info:
            service.transition(referral.id, "pending")
        assert exc_info.value.guard_name == "guard_complete"

        renewed = service.request_authorization(referral.id)
        assert renewed.status == AuthorizationStatus.PENDING
        service.update_authorization(referral.id, "approved", authorization_number="AUTH-611")

        assert service.transition(referral.id, "pending").status == ReferralStatus.PENDING
        with session_scope(session_factory) as session:
            statuses = [
                a.status
                for a in session.query(Authorization)
                .filter_by(referral_id=referral.id)
                .order_by(Authorization.id)
            ]
        assert statuses == [AuthorizationStatus.CANCELLED, AuthorizationStatus.APPROVED]

    def test_cancellation_without_authorization_leaves_status_unset(self, service, referral_data):
        referral = service.create_referral(referral_data)
        service.transition(referral.id, "cancelled")
        assert service.get_referral(referral.id).authorization_status is None


class TestListings:
    def _seed(self, service, referral_data, clock):
        first = service.create_referral(referral_data)
        clock.advance(minutes=1)
        second = service.create_referral(
            {**referral_data, "patient_id": "PAT_002", "urgency_level": "urgent"}
        )
        clock.advance(minutes=1)
        third = service.create_referral(
            {
                **referral_data,
                "specialty_type": "orthopedics",
                "specialist_id": "SPEC_003",
                "referral_reason": "knee injury",
            }
        )
        service.transition(second.id, "pending")
        return first, second, third

    def test_newest_first_with_pagination(self, service, referral_data, clock):
        first, second, third = self._seed(service, referral_data, clock)

        page = service.list_referrals(limit=2)
        assert [r.id for r in page.referrals] == [third.id, second.id]
        assert (page.total, page.total_pages, page.current_page) == (3, 2, 1)

        rest = service.list_referrals(limit=2, offset=2)
        assert [r.id for r in rest.referrals] == [first.id]
        assert rest.current_page == 2

    def test_filters(self, service, referral_data, clock):
        first, second, third = self._seed(service, referral_data, clock)

        by_patient = service.list_referrals(patient_id="PAT_001", descending=False)
        assert [r.id for r in by_patient.referrals] == [first.id, third.id]

        assert [r.id for r in service.list_referrals(status="pending").referrals] == [second.id]
        drafts_or_pending = service.list_referrals(status="draft, pending", provider_id="DR_001")
        assert drafts_or_pending.total == 3

        urgent = service.list_referrals(urgency_level="URGENT")
        assert [r.id for r in urgent.referrals] == [second.id]

        assert [r.id for r in service.list_referrals(search="knee").referrals] == [third.id]
        assert service.list_referrals(provider_id="DR_LAPSED").total == 0

    def test_unknown_filter_values_are_rejected(self, service):
        with pytest.raises(ValidationError) as exc_info:
            service.list_referrals(status="archived", urgency_level="eventually")
        assert exc_info.value.result.errors == [
            "Invalid status: archived",
            "Invalid urgency level: eventually",
        ]

    def test_statistics(self, service, referral_data, clock):
        first, second, third = self._seed(service, referral_data, clock)
        service.transition(first.id, "pending")
        service.transition(first.id, "sent")
        service.transition(
            first.id, "scheduled", options={"scheduled_date": clock.now + timedelta(days=3)}
        )
        clock.advance(days=3, hours=12)
        service.transition(first.id, "completed")
        service.transition(third.id, "cancelled")

        stats = service.get_statistics()
        assert stats.total == 3
        assert stats.by_status == {"completed": 1, "pending": 1, "cancelled": 1}
        assert stats.by_urgency == {"routine": 2, "urgent": 1}
        assert stats.open_referrals == 1
        assert stats.average_completion_days == pytest.approx(4.0)

        assert service.get_statistics(provider_id="DR_LAPSED").total == 0

    def test_standalone_validation_stores_nothing(self, service, referral_data):
        result = service.validate_referral({**referral_data, "patient_id": "PAT_OLD"})
        assert "Patient not found or inactive" in result.errors
        assert service.list_referrals().total == 0
