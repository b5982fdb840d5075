"""
Notification and letter adapters.

Notifiers deliver messages produced by the automated actions and the
urgency monitor. Delivery errors propagate to the caller, which decides
whether they are retried or contained.
"""

import logging
from dataclasses import asdict
from typing import Optional

import httpx

from referral_workflow.config import get_settings
from referral_workflow.services.ports import Notification, Notifier, ReferralSnapshot

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Writes notifications to the log. Default when no webhook is configured."""

    def send(self, notification: Notification) -> None:
        logger.info(
            f"[{notification.kind}] to {notification.recipient}: {notification.subject}"
        )


class WebhookNotifier:
    """POSTs each notification as JSON to a webhook endpoint."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.url, json=asdict(notification))
            response.raise_for_status()
        logger.debug(f"Delivered {notification.kind} notification to webhook")


def get_notifier(webhook_url: Optional[str] = None) -> Notifier:
    """Build the notifier selected by configuration."""
    settings = get_settings()
    url = webhook_url or settings.notification_webhook_url
    if url:
        return WebhookNotifier(url, timeout=settings.notification_timeout_seconds)
    return LoggingNotifier()


# =============================================================================
# LETTERS
# =============================================================================


class PlainLetterRenderer:
    """Fixed-layout plain-text referral letter. Template ids only pick the title."""

    TITLES = {
        "standard_referral": "Referral for Specialist Consultation",
        "urgent_referral": "URGENT Referral for Specialist Consultation",
    }

    def render(self, referral: ReferralSnapshot, template_id: str) -> str:
        title = self.TITLES.get(template_id, self.TITLES["standard_referral"])
        lines = [
            title,
            "",
            f"Referral number: {referral.referral_number}",
            f"Patient: {referral.patient_id}",
            f"Referring provider: {referral.provider_id}",
            f"Specialty: {referral.specialty_type}",
            f"Urgency: {referral.urgency_level}",
            f"Appointment type: {referral.appointment_type}",
            "",
            "Reason for referral:",
            referral.referral_reason,
        ]
        if referral.clinical_notes:
            lines += ["", "Clinical notes:", referral.clinical_notes]
        return "\n".join(lines) + "\n"
