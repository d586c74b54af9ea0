"""
Contract creation at offer acceptance, and contract lookups.

Accepting an offer is a single transaction: the proposal is accepted, its
siblings are rejected, the contract is created and the job becomes
CONTRACTED. The unique constraint on ``contracts.job_id`` decides races.
"""

import logging

from database import db, with_transaction
from errors import NotFoundError, ValidationError
from models import Contract, ContractStatus, JobStatus, Proposal, ProposalStatus
from notifications import DomainEvent, OFFER_ACCEPTED, dispatch
from permissions import Role, require
from proposal_lifecycle import notify

logger = logging.getLogger(__name__)

CONTRACT_EXISTS = 'Job already has a contract'


class ContractManager:

    def __init__(self, jobs, proposals, notifier=None):
        self.jobs = jobs
        self.proposals = proposals
        self.notifier = notifier

    def can_perform(self, actor, action, contract=None):
        if action == 'delete':
            return False
        is_participant = actor.id in (contract.client_id, contract.freelancer_id)
        if action == 'view':
            return is_participant or actor.is_admin
        if action in ('message', 'review'):
            return is_participant
        return False

    def get_contract(self, contract_id):
        contract = Contract.query.filter_by(id=contract_id).first()
        if not contract:
            raise NotFoundError('Contract not found')
        return contract

    def get_contract_for_job(self, job_id):
        return Contract.query.filter_by(job_id=job_id).first()

    def list_contracts(self, actor):
        """Contracts the actor takes part in, newest first"""
        q = Contract.query
        if actor.role == Role.CLIENT:
            q = q.filter(Contract.client_id == actor.id)
        elif actor.role == Role.FREELANCER:
            q = q.filter(Contract.freelancer_id == actor.id)
        return q.order_by(Contract.created_at.desc(), Contract.id.desc()).all()

    @staticmethod
    def resolve_agreed_amount(proposal, job):
        """The proposal's amount, falling back to the job budget"""
        if proposal.proposed_amount is not None:
            return proposal.proposed_amount
        if job.budget is not None:
            return job.budget
        raise ValidationError('Cannot accept offer: neither the proposal nor the job has an amount')

    def accept_offer(self, proposal_id, actor):
        require(actor.role == Role.FREELANCER, 'Only freelancers can accept offers')
        proposal = self.proposals.get_proposal(proposal_id)
        require(self.proposals.can_perform(actor, 'accept', proposal),
                'You can only accept offers for your own proposals')
        if proposal.status != ProposalStatus.OFFERED:
            raise ValidationError(
                f'Can only accept proposals that have been offered. Current status: {proposal.status.value}'
            )
        self.proposals.check_job_accepting(proposal.job, 'accept offers')

        contract = with_transaction(self._accept, proposal_id, conflict_message=CONTRACT_EXISTS)

        job = contract.job
        logger.info(f"Contract {contract.id} created for job {job.id} from proposal {proposal_id}")
        # The accepting freelancer gets a confirmation of their own action
        dispatch(self.notifier, [DomainEvent(OFFER_ACCEPTED, contract.freelancer_id, job.title, contract.id)])
        notify(self.notifier, actor, [DomainEvent(OFFER_ACCEPTED, contract.client_id, job.title, contract.id)])
        return contract

    def _accept(self, proposal_id):
        proposal = self.proposals.get_proposal(proposal_id, lock=True)
        job = self.jobs.get_job(proposal.job_id, lock=True)

        # Re-checked under lock; a racing accept that slipped past both
        # checks fails on the unique contracts.job_id at flush
        self.proposals.check_transition(proposal, ProposalStatus.ACCEPTED)
        self.proposals.check_job_accepting(job, 'accept offers')

        proposal.status = ProposalStatus.ACCEPTED
        Proposal.query.filter(
            Proposal.job_id == job.id,
            Proposal.id != proposal.id,
            Proposal.status.in_([ProposalStatus.PENDING, ProposalStatus.OFFERED])
        ).update({Proposal.status: ProposalStatus.REJECTED}, synchronize_session='fetch')

        contract = Contract(
            job_id=job.id,
            proposal_id=proposal.id,
            client_id=job.client_id,
            freelancer_id=proposal.freelancer_id,
            agreed_amount=self.resolve_agreed_amount(proposal, job),
            status=ContractStatus.ACTIVE
        )
        db.session.add(contract)
        job.status = JobStatus.CONTRACTED
        db.session.flush()
        return contract
