from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Union

from payauth.logging import get_logger
from payauth.service.email import EmailService
from payauth.storage.models import RecoveryKind

logger = get_logger(__name__)


@dataclass(frozen=True)
class UserRegistered:
    user_id: str
    email: str
    occurred_at: datetime


@dataclass(frozen=True)
class RecoveryCodeIssued:
    user_id: str
    email: str
    kind: RecoveryKind
    recovery_id: str
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class AccountBlocked:
    user_id: str
    email: str
    occurred_at: datetime


@dataclass(frozen=True)
class PasswordChanged:
    user_id: str
    email: str
    occurred_at: datetime


DomainEvent = Union[UserRegistered, RecoveryCodeIssued, AccountBlocked, PasswordChanged]


class EventDispatcher:
    """Delivers domain events returned by the auth services to their consumers.

    Services never send notifications themselves; they hand back event values
    and the caller passes them here. Delivery failures are logged and reported
    as ``False`` so that a notification outage cannot undo an auth decision.
    """

    def __init__(self, email: EmailService) -> None:
        self.email = email

    def dispatch(self, event: DomainEvent) -> bool:
        if isinstance(event, RecoveryCodeIssued):
            if event.kind == RecoveryKind.DEVICE:
                sent = self.email.send_device_recovery_code(event.email, event.code)
            else:
                sent = self.email.send_password_recovery_code(event.email, event.code)
        elif isinstance(event, AccountBlocked):
            sent = self.email.send_account_blocked(event.email)
        elif isinstance(event, PasswordChanged):
            sent = self.email.send_password_changed(event.email)
        elif isinstance(event, UserRegistered):
            sent = self.email.send_welcome(event.email)
        else:
            logger.warning("event_unhandled", event_type=type(event).__name__)
            return False
        if not sent:
            logger.warning(
                "event_delivery_failed",
                event_type=type(event).__name__,
                user_id=getattr(event, "user_id", None),
            )
        return sent

    def dispatch_all(self, events: Iterable[DomainEvent]) -> int:
        return sum(1 for event in events if self.dispatch(event))
