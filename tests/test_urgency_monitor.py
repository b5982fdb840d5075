"""
Tests for SLA escalation.
"""

import pytest

from referral_workflow.errors import NotFoundError
from referral_workflow.models import (
    AuditEvent,
    Escalation,
    EscalationStatus,
    ReferralStatus,
    UrgencyLevel,
    WorkflowEvent,
    session_scope,
)
from referral_workflow.services import DEFAULT_POLICIES, TIME_LIMIT_EXCEEDED, UrgencyMonitor
from referral_workflow.services.urgency_monitor import raised_urgency


@pytest.fixture
def stat_data(referral_data):
    return {**referral_data, "urgency_level": "stat", "stat_justification": "Troponin rising"}


def _escalations(session_factory, referral_id):
    with session_scope(session_factory) as session:
        return (
            session.query(Escalation)
            .filter(Escalation.referral_id == referral_id)
            .order_by(Escalation.id)
            .all()
        )


class TestPolicies:
    def test_policy_table(self):
        assert DEFAULT_POLICIES[UrgencyLevel.STAT].max_processing_hours == 2
        assert DEFAULT_POLICIES[UrgencyLevel.URGENT].max_processing_hours == 24
        assert DEFAULT_POLICIES[UrgencyLevel.ROUTINE].auto_escalation is False
        assert DEFAULT_POLICIES[UrgencyLevel.STAT].required_approvals == ("attending_physician",)

    def test_raised_urgency(self):
        assert raised_urgency(UrgencyLevel.ROUTINE) == UrgencyLevel.URGENT
        assert raised_urgency(UrgencyLevel.URGENT) == UrgencyLevel.URGENT
        assert raised_urgency(UrgencyLevel.STAT) == UrgencyLevel.STAT

    def test_every_tier_needs_a_policy(self, service, notifier):
        partial = {UrgencyLevel.STAT: DEFAULT_POLICIES[UrgencyLevel.STAT]}
        with pytest.raises(ValueError):
            UrgencyMonitor(service.store, notifier, service.audit, policies=partial)


class TestAutomaticEscalation:
    def test_overdue_stat_referral_is_escalated(
        self, service, session_factory, stat_data, clock, notifier
    ):
        """Scenario: stat referral still sent three hours after creation."""
        referral = service.create_referral(stat_data)
        service.transition(referral.id, "pending")
        service.transition(referral.id, "sent")

        clock.advance(hours=3)
        created = service.sweep_overdue()

        assert [e.referral_id for e in created] == [referral.id]
        escalation = created[0]
        assert escalation.reason == TIME_LIMIT_EXCEEDED
        assert escalation.escalated_by == "system"
        assert escalation.status == EscalationStatus.ACTIVE
        assert service.get_referral(referral.id).urgency_level == UrgencyLevel.STAT

        notice = [n for n in notifier.sent if n.kind == "escalation"]
        assert len(notice) == 1
        assert notice[0].metadata["required_approvals"] == ["attending_physician"]

        with session_scope(session_factory) as session:
            assert session.query(AuditEvent).filter_by(action="REFERRAL_ESCALATED").count() == 1
            assert session.query(WorkflowEvent).filter_by(event_type="ESCALATION_CREATED").count() == 1

    def test_within_sla_is_left_alone(self, service, session_factory, stat_data, clock):
        referral = service.create_referral(stat_data)
        clock.advance(hours=2)
        assert service.sweep_overdue() == []
        assert _escalations(session_factory, referral.id) == []

    def test_no_duplicate_while_active(self, service, session_factory, stat_data, clock):
        referral = service.create_referral(stat_data)
        clock.advance(hours=3)

        assert len(service.sweep_overdue()) == 1
        assert service.sweep_overdue() == []
        clock.advance(hours=5)
        assert service.sweep_overdue() == []
        assert len(_escalations(session_factory, referral.id)) == 1

    def test_resolved_escalation_allows_a_new_one(self, service, session_factory, stat_data, clock):
        referral = service.create_referral(stat_data)
        clock.advance(hours=3)
        service.sweep_overdue()

        with session_scope(session_factory) as session:
            for escalation in session.query(Escalation).filter_by(referral_id=referral.id):
                escalation.status = EscalationStatus.RESOLVED
                escalation.resolved_at = clock.now

        assert len(service.sweep_overdue()) == 1

    def test_transition_triggers_the_check(self, service, session_factory, stat_data, clock):
        referral = service.create_referral(stat_data)
        service.transition(referral.id, "pending")
        clock.advance(hours=4)

        service.transition(referral.id, "sent")

        escalations = _escalations(session_factory, referral.id)
        assert [e.reason for e in escalations] == [TIME_LIMIT_EXCEEDED]

    def test_routine_never_auto_escalates(self, service, referral_data, clock):
        service.create_referral(referral_data)
        clock.advance(days=10)
        assert service.sweep_overdue() == []

    def test_completed_referral_is_not_overdue(self, service, stat_data, clock):
        referral = service.create_referral(stat_data)
        service.transition(referral.id, "pending")
        service.transition(referral.id, "sent")
        service.transition(
            referral.id, "scheduled", options={"scheduled_date": clock.now.replace(hour=15)}
        )
        service.transition(referral.id, "completed")

        clock.advance(hours=6)
        stored = service.get_referral(referral.id)
        assert stored.status == ReferralStatus.COMPLETED
        assert not service.monitor.is_overdue(stored)
        assert service.sweep_overdue() == []

    def test_cancelled_referral_is_not_overdue(self, service, session_factory, stat_data, clock):
        referral = service.create_referral(stat_data)
        clock.advance(hours=3)
        service.transition(referral.id, "cancelled", notes="Patient admitted")

        stored = service.get_referral(referral.id)
        assert not service.monitor.is_overdue(stored)
        assert service.sweep_overdue() == []
        assert _escalations(session_factory, referral.id) == []

    def test_expiry_does_not_escalate(self, service, session_factory, stat_data, clock):
        referral = service.create_referral(stat_data)
        service.transition(referral.id, "pending")
        service.transition(referral.id, "sent")
        # Escalated once while still sent
        clock.advance(hours=3)
        assert len(service.sweep_overdue()) == 1

        with session_scope(session_factory) as session:
            for escalation in session.query(Escalation).filter_by(referral_id=referral.id):
                escalation.status = EscalationStatus.RESOLVED
                escalation.resolved_at = clock.now

        clock.advance(days=30)
        service.transition(referral.id, "expired")

        stored = service.get_referral(referral.id)
        assert stored.status == ReferralStatus.EXPIRED
        assert not service.monitor.is_overdue(stored)
        assert service.sweep_overdue() == []
        assert len(_escalations(session_factory, referral.id)) == 1

    def test_notifier_failure_does_not_block_escalation(
        self, service, session_factory, stat_data, clock
    ):
        class DownNotifier:
            def send(self, notification):
                raise ConnectionError("smtp down")

        referral = service.create_referral(stat_data)
        service.monitor.notifier = DownNotifier()
        clock.advance(hours=3)

        assert len(service.sweep_overdue()) == 1
        assert len(_escalations(session_factory, referral.id)) == 1


class TestManualEscalation:
    def test_manual_escalation_raises_routine_to_urgent(self, service, referral_data):
        referral = service.create_referral(referral_data)

        escalation = service.escalate(
            referral.id, "Patient called twice", actor="nurse.kim", level=2, assigned_to="supervisor"
        )

        assert escalation.level == 2
        assert escalation.assigned_to == "supervisor"
        assert escalation.escalated_by == "nurse.kim"
        assert service.get_referral(referral.id).urgency_level == UrgencyLevel.URGENT

    def test_manual_escalations_are_not_deduplicated(self, service, session_factory, referral_data):
        referral = service.create_referral(referral_data)
        service.escalate(referral.id, "First call", actor="nurse.kim")
        service.escalate(referral.id, "Second call", actor="nurse.kim")
        assert len(_escalations(session_factory, referral.id)) == 2

    def test_unknown_referral(self, service):
        with pytest.raises(NotFoundError):
            service.escalate(404, "Missing", actor="nurse.kim")
