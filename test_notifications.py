"""Tests for domain events and the notifier collaborators"""

from datetime import datetime, timedelta

from database import db
from models import Notification
from notifications import (
    DatabaseNotifier, DomainEvent, LoggingNotifier, Notifier, OFFER_ACCEPTED, OFFER_SENT,
    PROPOSAL_RECEIVED, dedupe, dispatch, render
)
from permissions import Actor, Role
from proposal_lifecycle import notify


def test_render_uses_job_title_and_context():
    title, message = render(DomainEvent(OFFER_SENT, 10, 'Logo design', context='Reply within 2 days'))

    assert title == 'You Received an Offer!'
    assert message == 'You received an offer for "Logo design" - Reply within 2 days'


def test_dedupe_drops_same_user_type_and_link():
    events = [
        DomainEvent(OFFER_ACCEPTED, 1, 'Job', 5),
        DomainEvent(OFFER_ACCEPTED, 1, 'Job', 6),
        DomainEvent(OFFER_ACCEPTED, 2, 'Job', 5),
        DomainEvent(OFFER_ACCEPTED, 1, 'Job', 5, link='/contracts/5'),
    ]

    assert [(e.recipient_user_id, e.link) for e in dedupe(events)] == [
        (1, '/contracts'), (2, '/contracts'), (1, '/contracts/5')
    ]


def test_database_notifier_stores_rows(app):
    notifier = DatabaseNotifier(dedup_seconds=5)

    stored = notifier.publish([
        DomainEvent(PROPOSAL_RECEIVED, 1, 'Landing page', 7, link='/jobs/3/proposals'),
        DomainEvent(OFFER_ACCEPTED, 10, 'Landing page', 2),
    ])

    assert stored == 2
    row = Notification.query.filter_by(user_id=1).one()
    assert row.type == PROPOSAL_RECEIVED
    assert row.title == 'New Proposal Received'
    assert row.related_entity_id == '7'
    assert row.is_read is False


def test_database_notifier_suppresses_repeats_within_window(app):
    notifier = DatabaseNotifier(dedup_seconds=5)
    event = DomainEvent(OFFER_SENT, 10, 'Landing page', 2)

    assert notifier.publish([event]) == 1
    assert notifier.publish([event]) == 0

    old = Notification.query.one()
    old.created_at = datetime.utcnow() - timedelta(seconds=30)
    db.session.commit()

    assert notifier.publish([event]) == 1
    assert Notification.query.count() == 2


def test_dispatch_swallows_notifier_failures(app, caplog):
    class BrokenNotifier(Notifier):
        def publish(self, events):
            raise RuntimeError('transport down')

    dispatch(BrokenNotifier(), [DomainEvent(OFFER_SENT, 10, 'Job')])

    assert any('Notifier failed' in r.getMessage() for r in caplog.records)


def test_dispatch_ignores_empty_batches():
    dispatch(None, [DomainEvent(OFFER_SENT, 10, 'Job')])
    dispatch(LoggingNotifier(), [])


def test_notify_skips_the_acting_user():
    class Collecting(Notifier):
        def __init__(self):
            self.events = []

        def publish(self, events):
            self.events.extend(events)

    collector = Collecting()
    notify(collector, Actor(10, Role.FREELANCER), [
        DomainEvent(OFFER_ACCEPTED, 10, 'Job', 1),
        DomainEvent(OFFER_ACCEPTED, 1, 'Job', 1),
    ])

    assert [e.recipient_user_id for e in collector.events] == [1]
