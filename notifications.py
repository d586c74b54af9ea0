"""
Domain events and the notifier collaborator.

The core collects events while it works and hands them to a Notifier only
after the business transaction has committed. Delivery is the notifier's
concern; a delivery failure is logged and never undoes committed state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from database import db
from models import Notification

logger = logging.getLogger(__name__)

PROPOSAL_RECEIVED = 'proposal.received'
OFFER_SENT = 'offer.sent'
OFFER_ACCEPTED = 'offer.accepted'
OFFER_REJECTED = 'offer.rejected'
MESSAGE_UNREAD_COUNT_CHANGED = 'message.unread_count_changed'


@dataclass(frozen=True)
class DomainEvent:
    type: str
    recipient_user_id: int
    job_title: str
    related_entity_id: Optional[int] = None
    context: Optional[str] = None
    link: str = '/contracts'

    @property
    def dedup_key(self):
        return (self.recipient_user_id, self.type, self.link)


EVENT_TEMPLATES = {
    PROPOSAL_RECEIVED: ('New Proposal Received', 'You received a new proposal for "{title}"'),
    OFFER_SENT: ('You Received an Offer!', 'You received an offer for "{title}"'),
    OFFER_ACCEPTED: ('Offer Accepted - Contract Created', 'The offer for "{title}" has been accepted. Contract created.'),
    OFFER_REJECTED: ('Offer Rejected', 'Your offer for "{title}" was rejected'),
    MESSAGE_UNREAD_COUNT_CHANGED: ('New Message', 'You have unread messages about "{title}"'),
}


def render(event):
    """Title and message text for an event"""
    title, template = EVENT_TEMPLATES[event.type]
    message = template.format(title=event.job_title)
    if event.context:
        message = f"{message} - {event.context}"
    return title, message


def dedupe(events):
    """Drop repeats of the same (user, type, link) within one batch"""
    seen = set()
    unique = []
    for event in events:
        if event.dedup_key in seen:
            continue
        seen.add(event.dedup_key)
        unique.append(event)
    return unique


class Notifier:
    """Interface the core publishes domain events to"""

    def publish(self, events: Iterable[DomainEvent]) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Notifier that only writes events to the log"""

    def publish(self, events):
        for event in dedupe(events):
            title, message = render(event)
            logger.info(f"Event {event.type} for user {event.recipient_user_id}: {message}")


class DatabaseNotifier(Notifier):
    """
    Stores in-app notifications, one row per event.

    An event is skipped when the same (user, type, link) was already stored
    within ``dedup_seconds``.
    """

    def __init__(self, dedup_seconds=5):
        self.dedup_seconds = dedup_seconds

    def _recently_sent(self, event):
        cutoff = datetime.utcnow() - timedelta(seconds=self.dedup_seconds)
        return Notification.query.filter(
            Notification.user_id == event.recipient_user_id,
            Notification.type == event.type,
            Notification.link == event.link,
            Notification.created_at >= cutoff
        ).first() is not None

    def publish(self, events):
        stored = 0
        for event in dedupe(events):
            if self._recently_sent(event):
                logger.info(f"Duplicate {event.type} notification for user {event.recipient_user_id} suppressed")
                continue
            title, message = render(event)
            db.session.add(Notification(
                user_id=event.recipient_user_id,
                type=event.type,
                title=title,
                message=message,
                link=event.link,
                related_entity_id=str(event.related_entity_id) if event.related_entity_id is not None else None
            ))
            stored += 1
        db.session.commit()
        return stored


def dispatch(notifier, events: List[DomainEvent]):
    """Publish committed events, logging rather than raising on failure"""
    if not events or notifier is None:
        return
    try:
        notifier.publish(events)
    except Exception as e:
        db.session.rollback()
        logger.error(f"Notifier failed for {len(events)} event(s): {e}", exc_info=True)
