"""
Shared fixtures: an app on in-memory SQLite, a scripted payment gateway,
a notifier that records events, and helpers that walk a job through its
lifecycle.
"""

from decimal import Decimal

import pytest

from app import create_app
from config import TestConfig
from database import db
from notifications import Notifier
from payment_gateway import (
    PaymentGateway, PaymentInitResult, PaymentVerification, normalize_status
)
from permissions import Actor, Role


class FakeGateway(PaymentGateway):
    """Gateway whose verdicts are set per tx_ref by the test"""

    def __init__(self):
        self.statuses = {}
        self.default_status = 'success'
        self.error = None
        self.valid_signature = True
        self.initialized = []
        self.verify_calls = []
        self.reported = {}

    def initialize_payment(self, amount, currency, reference, return_url, callback_url, payer_info):
        if self.error:
            raise self.error
        self.initialized.append({
            'amount': amount,
            'currency': currency,
            'reference': reference,
            'return_url': return_url,
            'callback_url': callback_url,
            'payer_info': payer_info
        })
        return PaymentInitResult(checkout_url=f'https://checkout.test/{reference}', external_ref=reference)

    def verify_payment(self, external_ref):
        self.verify_calls.append(external_ref)
        if self.error:
            raise self.error
        raw = self.statuses.get(external_ref, self.default_status)
        amount, currency = self.reported.get(external_ref, (None, None))
        return PaymentVerification(
            normalized_status=normalize_status(raw), amount=amount, currency=currency, raw_status=raw
        )

    def verify_webhook_signature(self, body, signature):
        return self.valid_signature


class RecordingNotifier(Notifier):

    def __init__(self):
        self.events = []

    def publish(self, events):
        self.events.extend(events)

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(gateway, notifier):
    app = create_app(TestConfig, gateway=gateway, notifier=notifier)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def market(app):
    return app.extensions['marketplace']


@pytest.fixture
def client_user():
    return Actor(1, Role.CLIENT)


@pytest.fixture
def other_client():
    return Actor(2, Role.CLIENT)


@pytest.fixture
def freelancer():
    return Actor(10, Role.FREELANCER)


@pytest.fixture
def other_freelancer():
    return Actor(11, Role.FREELANCER)


@pytest.fixture
def admin():
    return Actor(99, Role.ADMIN)


@pytest.fixture
def open_job(market, client_user):
    """Factory for a published job owned by ``client_user``"""
    def make(budget='1000', title='Build a landing page'):
        job = market.jobs.create_job(client_user, title, 'Responsive single page site', budget=budget)
        return market.jobs.publish(job.id, client_user)
    return make


@pytest.fixture
def contracted_job(market, open_job, client_user, freelancer):
    """Factory for a job whose offer to ``freelancer`` was accepted"""
    def make(budget='1000', proposed_amount='900'):
        job = open_job(budget=budget)
        proposal = market.proposals.submit(freelancer, job.id, 'I can do this', proposed_amount)
        market.proposals.send_offer(proposal.id, client_user)
        contract = market.contracts.accept_offer(proposal.id, freelancer)
        return job, contract
    return make


@pytest.fixture
def funded_job(market, contracted_job, client_user):
    """Factory for a contracted job with a PAID escrow"""
    def make(budget='1000', proposed_amount='900'):
        job, contract = contracted_job(budget, proposed_amount)
        escrow = market.escrow.initialize(job.id, client_user)
        escrow = market.escrow.confirm(escrow.tx_ref)
        assert escrow.amount == Decimal(proposed_amount or budget)
        return job, contract, escrow
    return make
