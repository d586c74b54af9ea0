"""Tests for offer acceptance and contract creation"""

from decimal import Decimal

import pytest

from database import db
from errors import ConflictError, ForbiddenError, ValidationError
from models import Contract, ContractStatus, JobStatus, Proposal, ProposalStatus
from notifications import OFFER_ACCEPTED
from permissions import Actor, Role


def _offered(market, job, client_user, freelancer, amount=None):
    proposal = market.proposals.submit(freelancer, job.id, 'Proposal', amount)
    return market.proposals.send_offer(proposal.id, client_user)


def test_accept_uses_proposed_amount(market, open_job, client_user, freelancer):
    job = open_job(budget='1000')
    proposal = _offered(market, job, client_user, freelancer, '900')

    contract = market.contracts.accept_offer(proposal.id, freelancer)

    assert contract.agreed_amount == Decimal('900.00')
    assert contract.status == ContractStatus.ACTIVE
    assert contract.client_id == client_user.id
    assert contract.freelancer_id == freelancer.id
    assert market.jobs.get_job(job.id).status == JobStatus.CONTRACTED
    assert market.proposals.get_proposal(proposal.id).status == ProposalStatus.ACCEPTED


def test_accept_falls_back_to_job_budget(market, open_job, client_user, freelancer):
    job = open_job(budget='750')
    proposal = _offered(market, job, client_user, freelancer)

    contract = market.contracts.accept_offer(proposal.id, freelancer)

    assert contract.agreed_amount == Decimal('750.00')


def test_accept_without_any_amount_fails_atomically(market, open_job, client_user, freelancer, other_freelancer):
    job = open_job(budget=None)
    proposal = _offered(market, job, client_user, freelancer)
    sibling = market.proposals.submit(other_freelancer, job.id, 'Me too')

    with pytest.raises(ValidationError):
        market.contracts.accept_offer(proposal.id, freelancer)

    assert Contract.query.count() == 0
    assert market.proposals.get_proposal(proposal.id).status == ProposalStatus.OFFERED
    assert market.proposals.get_proposal(sibling.id).status == ProposalStatus.PENDING
    assert market.jobs.get_job(job.id).status == JobStatus.OPEN


def test_accept_rejects_every_sibling(market, open_job, client_user, freelancer, other_freelancer):
    job = open_job()
    winner = _offered(market, job, client_user, freelancer, '900')
    offered_sibling = _offered(market, job, client_user, other_freelancer, '950')
    pending_sibling = market.proposals.submit(Actor(12, Role.FREELANCER), job.id, 'Late', '800')

    market.contracts.accept_offer(winner.id, freelancer)

    statuses = {p.id: p.status for p in Proposal.query.filter_by(job_id=job.id)}
    assert statuses == {
        winner.id: ProposalStatus.ACCEPTED,
        offered_sibling.id: ProposalStatus.REJECTED,
        pending_sibling.id: ProposalStatus.REJECTED,
    }


def test_accept_requires_offer_and_owner(market, open_job, client_user, freelancer, other_freelancer):
    job = open_job()
    proposal = market.proposals.submit(freelancer, job.id, 'Not offered yet')

    with pytest.raises(ValidationError):
        market.contracts.accept_offer(proposal.id, freelancer)

    market.proposals.send_offer(proposal.id, client_user)
    with pytest.raises(ForbiddenError):
        market.contracts.accept_offer(proposal.id, other_freelancer)
    with pytest.raises(ForbiddenError):
        market.contracts.accept_offer(proposal.id, client_user)


def test_accept_notifies_client_and_freelancer(market, notifier, open_job, client_user, freelancer):
    job = open_job()
    proposal = _offered(market, job, client_user, freelancer, '900')

    contract = market.contracts.accept_offer(proposal.id, freelancer)

    events = notifier.of_type(OFFER_ACCEPTED)
    assert sorted(e.recipient_user_id for e in events) == [client_user.id, freelancer.id]
    assert all(e.related_entity_id == contract.id for e in events)


def test_second_accept_after_commit_is_rejected(market, open_job, client_user, freelancer, other_freelancer):
    job = open_job()
    first = _offered(market, job, client_user, freelancer, '900')
    second = _offered(market, job, client_user, other_freelancer, '950')

    market.contracts.accept_offer(first.id, freelancer)

    with pytest.raises((ConflictError, ValidationError)):
        market.contracts.accept_offer(second.id, other_freelancer)
    assert Contract.query.filter_by(job_id=job.id).count() == 1
    assert market.jobs.get_job(job.id).status == JobStatus.CONTRACTED


def test_racing_accept_loses_on_unique_contract(market, open_job, client_user, freelancer, other_freelancer, monkeypatch):
    job = open_job()
    first = _offered(market, job, client_user, freelancer, '900')
    second = _offered(market, job, client_user, other_freelancer, '950')

    market.contracts.accept_offer(first.id, freelancer)

    # The loser read both the job and its offer before the winner committed
    stale = Proposal.query.filter_by(id=second.id).first()
    stale.status = ProposalStatus.OFFERED
    db.session.commit()
    monkeypatch.setattr(market.proposals, 'check_job_accepting', lambda job, verb=None: None)

    with pytest.raises(ConflictError, match='Job already has a contract'):
        market.contracts.accept_offer(second.id, other_freelancer)

    contracts = Contract.query.filter_by(job_id=job.id).all()
    assert len(contracts) == 1
    assert contracts[0].freelancer_id == freelancer.id
    assert market.jobs.get_job(job.id).status == JobStatus.CONTRACTED
    assert market.proposals.get_proposal(first.id).status == ProposalStatus.ACCEPTED


def test_list_and_view_contracts(market, contracted_job, client_user, other_client, freelancer, admin):
    job, contract = contracted_job()

    assert [c.id for c in market.contracts.list_contracts(client_user)] == [contract.id]
    assert [c.id for c in market.contracts.list_contracts(freelancer)] == [contract.id]
    assert market.contracts.list_contracts(other_client) == []
    assert market.contracts.get_contract_for_job(job.id).id == contract.id

    assert market.contracts.can_perform(freelancer, 'view', contract)
    assert market.contracts.can_perform(admin, 'view', contract)
    assert not market.contracts.can_perform(other_client, 'view', contract)
    assert not market.contracts.can_perform(client_user, 'delete', contract)
