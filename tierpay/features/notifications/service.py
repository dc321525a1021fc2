"""
Notifier (collaborator).

The orchestrator only needs send(recipient, subject, template, category, data).
Rendering and delivery belong to the mail service; LoggingNotifier is the
default wiring and RecordingNotifier is used by tests.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

logger = logging.getLogger("tierpay.notifications")


class MailTemplates:
    SUBSCRIPTION_CONFIRMATION = "subscription_confirmation"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


class Notifier(Protocol):
    def send(
        self,
        recipient: str,
        subject: str,
        template: str,
        category: str,
        data: Dict[str, Any],
    ) -> None:
        ...


class LoggingNotifier:
    """Hands messages to the log stream for the mail relay to pick up."""

    def send(self, recipient: str, subject: str, template: str, category: str, data: Dict[str, Any]) -> None:
        logger.info(
            "notify.queued",
            extra={"event_type": template, "recipient": recipient, "subject": subject, "category": category},
        )


@dataclass
class SentMessage:
    recipient: str
    subject: str
    template: str
    category: str
    data: Dict[str, Any]


@dataclass
class RecordingNotifier:
    sent: List[SentMessage] = field(default_factory=list)

    def send(self, recipient: str, subject: str, template: str, category: str, data: Dict[str, Any]) -> None:
        self.sent.append(SentMessage(recipient, subject, template, category, dict(data)))
