"""
Tests for the automated actions that run after each transition.
"""

from datetime import datetime

import pytest

from referral_workflow.models import (
    Authorization,
    AuthorizationStatus,
    FollowUpTask,
    QualityMetric,
    QueueItem,
    QueueItemStatus,
    ReferralStatus,
    SpecialistMetric,
    SpecialistRating,
    WorkflowEvent,
    WorkQueue,
    session_scope,
)
from referral_workflow.services import (
    STATUS_ACTIONS,
    ActionPipeline,
    AutomatedAction,
    ReferralSnapshot,
    build_status_actions,
)


class FlakyNotifier:
    """Fails the first ``failures`` sends, then records."""

    def __init__(self, failures: int):
        self.failures = failures
        self.sent = []

    def send(self, notification) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("webhook unreachable")
        self.sent.append(notification)


def _snapshot(service, referral_id):
    return ReferralSnapshot.from_model(service.get_referral(referral_id))


class TestRegistry:
    def test_every_status_has_an_entry(self):
        assert set(STATUS_ACTIONS) == set(ReferralStatus)
        assert STATUS_ACTIONS[ReferralStatus.DRAFT] == ()

    def test_pending_actions_in_order(self):
        assert STATUS_ACTIONS[ReferralStatus.PENDING] == (
            AutomatedAction.CHECK_AUTHORIZATION_REQUIREMENT,
            AutomatedAction.VALIDATE_INSURANCE_ELIGIBILITY,
            AutomatedAction.ASSIGN_TO_PRIORITY_QUEUE,
        )

    def test_registry_is_read_only(self):
        with pytest.raises(TypeError):
            build_status_actions()[ReferralStatus.SENT] = ()


class TestPendingActions:
    def test_routine_referral_goes_to_priority_three_queue(self, service, session_factory, referral_data):
        referral = service.create_referral(referral_data)
        service.transition(referral.id, "pending")

        with session_scope(session_factory) as session:
            item = session.query(QueueItem).filter(QueueItem.referral_id == referral.id).one()
            queue = session.get(WorkQueue, item.queue_id)
            assert queue.name == "referral_queue_priority_3"
            assert item.status == QueueItemStatus.PENDING
            assert item.due_at is not None

    def test_stat_referral_goes_to_priority_one_queue(self, service, session_factory, referral_data):
        referral = service.create_referral(
            {**referral_data, "urgency_level": "stat", "stat_justification": "Suspected MI"}
        )
        service.transition(referral.id, "pending")

        # Re-running the pending actions does not queue the referral twice
        report = service.pipeline.run(_snapshot(service, referral.id))
        assert report.ok
        assert "queue" not in report.outputs

        with session_scope(session_factory) as session:
            items = session.query(QueueItem).filter(QueueItem.referral_id == referral.id).all()
            assert len(items) == 1
            assert session.get(WorkQueue, items[0].queue_id).name == "referral_queue_priority_1"

    def test_imaging_referral_gets_an_authorization_request(self, service, session_factory, referral_data):
        referral = service.create_referral({**referral_data, "specialty_type": "mri"})
        service.transition(referral.id, "pending")

        stored = service.get_referral(referral.id)
        assert stored.authorization_required is True
        assert stored.authorization_status == AuthorizationStatus.PENDING
        with session_scope(session_factory) as session:
            requests = session.query(Authorization).filter(Authorization.referral_id == referral.id).all()
            assert [a.status for a in requests] == [AuthorizationStatus.PENDING]
            assert requests[0].submitted_method == "automated"

    def test_missing_queue_is_recorded_and_transition_still_succeeds(
        self, service, session_factory, referral_data
    ):
        with session_scope(session_factory) as session:
            session.query(WorkQueue).delete()

        referral = service.create_referral(referral_data)
        updated = service.transition(referral.id, "pending", actor="coordinator")
        assert updated.status == ReferralStatus.PENDING

        with session_scope(session_factory) as session:
            event = (
                session.query(WorkflowEvent)
                .filter(WorkflowEvent.event_type == "AUTOMATED_ACTION_FAILED")
                .one()
            )
            assert event.referral_id == referral.id
            assert event.event_data["action"] == "assign_to_priority_queue"
            assert "seed_queues()" in event.event_data["error"]
            assert event.created_by == "coordinator"


class TestSentActions:
    def test_letter_notification_follow_up_and_metric(
        self, service, session_factory, referral_data, notifier, letters, clock
    ):
        referral = service.create_referral(referral_data)
        service.transition(referral.id, "pending")
        service.transition(referral.id, "sent")

        assert letters.rendered == [(referral.referral_number, "standard_referral")]
        sent = [n for n in notifier.sent if n.kind == "referral_sent"]
        assert len(sent) == 1
        assert sent[0].recipient == "intake@heartpartners.example.com"
        assert sent[0].body == f"Letter standard_referral for {referral.referral_number}"

        assert service.get_referral(referral.id).letter_generated is True
        with session_scope(session_factory) as session:
            task = session.query(FollowUpTask).filter(FollowUpTask.referral_id == referral.id).one()
            assert task.due_at == datetime(2026, 3, 16, 9, 0)
            metric = session.query(SpecialistMetric).filter_by(specialist_id="SPEC_001").one()
            assert metric.referrals_received == 1

    def test_metric_counter_increments_in_place(self, service, session_factory, referral_data):
        for patient in ("PAT_001", "PAT_002"):
            referral = service.create_referral({**referral_data, "patient_id": patient})
            service.transition(referral.id, "pending")
            service.transition(referral.id, "sent")

        with session_scope(session_factory) as session:
            metrics = session.query(SpecialistMetric).filter_by(specialist_id="SPEC_001").all()
            assert [m.referrals_received for m in metrics] == [2]

    def test_failed_action_does_not_stop_the_rest(
        self, service, session_factory, referral_data, letters, clock
    ):
        referral = service.create_referral(referral_data)
        service.transition(referral.id, "pending")
        service.transition(referral.id, "sent")

        flaky = FlakyNotifier(failures=10)
        pipeline = ActionPipeline(
            session_factory,
            flaky,
            letters,
            service.pipeline.directory,
            service.audit,
            workers=0,
            max_attempts=3,
            clock=clock,
        )
        report = pipeline.run(_snapshot(service, referral.id), actor="system")

        assert not report.ok
        assert list(report.failed) == ["send_notifications"]
        assert report.attempts["send_notifications"] == 3
        assert report.succeeded == [
            "generate_letter",
            "schedule_follow_up",
            "update_specialist_received_metric",
        ]

    def test_transient_failure_is_retried(self, service, session_factory, referral_data, letters, clock):
        referral = service.create_referral(referral_data)
        service.transition(referral.id, "pending")
        service.transition(referral.id, "sent")

        flaky = FlakyNotifier(failures=1)
        pipeline = ActionPipeline(
            session_factory,
            flaky,
            letters,
            service.pipeline.directory,
            service.audit,
            workers=0,
            max_attempts=2,
            clock=clock,
        )
        report = pipeline.run(_snapshot(service, referral.id))

        assert report.ok
        assert report.attempts["send_notifications"] == 2
        assert len(flaky.sent) == 1

    def test_threaded_dispatch_returns_report(self, service, session_factory, referral_data, letters, notifier, clock):
        referral = service.create_referral(referral_data)
        service.transition(referral.id, "pending")
        service.transition(referral.id, "sent")

        pipeline = ActionPipeline(
            session_factory,
            notifier,
            letters,
            service.pipeline.directory,
            service.audit,
            workers=2,
            clock=clock,
        )
        try:
            report = pipeline.dispatch(_snapshot(service, referral.id)).result(timeout=10)
        finally:
            pipeline.shutdown(wait=True)
        assert report.status == "sent"
        assert report.ok


class TestLaterActions:
    def test_completion_records_quality_rating_and_follow_up(
        self, service, session_factory, referral_data, clock
    ):
        referral = service.create_referral(referral_data)
        service.transition(referral.id, "pending")
        service.transition(referral.id, "sent")
        service.transition(
            referral.id, "scheduled", options={"scheduled_date": datetime(2026, 3, 10, 8, 0)}
        )
        clock.advance(days=9)
        service.transition(
            referral.id,
            "completed",
            options={"patient_satisfaction_score": 4.0, "outcome_notes": "Echo normal"},
        )

        with session_scope(session_factory) as session:
            quality = session.query(QualityMetric).filter_by(referral_id=referral.id).one()
            assert quality.total_cycle_days == 9
            assert quality.outcome_received is True

            rating = session.get(SpecialistRating, "SPEC_001")
            assert rating.completed_referrals == 1
            assert rating.patient_satisfaction_score == pytest.approx(4.0)

            tasks = session.query(FollowUpTask).filter_by(referral_id=referral.id).all()
            assert {t.task_type for t in tasks} == {"sent_follow_up", "post_completion_follow_up"}

    def test_rating_is_a_running_average(self, service, session_factory, referral_data):
        for patient, score in (("PAT_001", 5.0), ("PAT_002", 3.0)):
            referral = service.create_referral({**referral_data, "patient_id": patient})
            service.transition(referral.id, "pending")
            service.transition(referral.id, "sent")
            service.transition(
                referral.id, "scheduled", options={"scheduled_date": datetime(2026, 3, 10, 8, 0)}
            )
            service.transition(
                referral.id, "completed", options={"patient_satisfaction_score": score}
            )

        with session_scope(session_factory) as session:
            rating = session.get(SpecialistRating, "SPEC_001")
            assert rating.completed_referrals == 2
            assert rating.rated_referrals == 2
            assert rating.patient_satisfaction_score == pytest.approx(4.0)

    def test_cancellation_releases_queue_and_authorizations(
        self, service, session_factory, referral_data, notifier
    ):
        referral = service.create_referral({**referral_data, "authorization_required": True})
        service.update_authorization(referral.id, "approved", authorization_number="AUTH-501")
        service.transition(referral.id, "pending")
        service.transition(referral.id, "cancelled", notes="Patient declined")

        with session_scope(session_factory) as session:
            item = session.query(QueueItem).filter_by(referral_id=referral.id).one()
            assert item.status == QueueItemStatus.COMPLETED
            statuses = [
                a.status for a in session.query(Authorization).filter_by(referral_id=referral.id)
            ]
            assert statuses == [AuthorizationStatus.CANCELLED]
            metric = session.query(SpecialistMetric).filter_by(specialist_id="SPEC_001").one()
            assert metric.referrals_cancelled == 1

        recipients = [n.recipient for n in notifier.sent if n.kind == "referral_cancelled"]
        assert recipients == ["osei@clinic.example.com", "intake@heartpartners.example.com"]

    def test_expiry_suggests_alternative_specialists(
        self, service, referral_data, notifier, clock
    ):
        referral = service.create_referral(referral_data)
        service.transition(referral.id, "pending")
        service.transition(referral.id, "sent")
        clock.advance(days=30)
        service.transition(referral.id, "expired")

        suggestions = [n for n in notifier.sent if n.kind == "alternative_specialists"]
        assert len(suggestions) == 1
        assert suggestions[0].metadata["specialist_ids"] == ["SPEC_002"]
        assert "referral_expired" in notifier.kinds()
