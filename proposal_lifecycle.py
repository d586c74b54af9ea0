"""
Proposal state machine: PENDING -> OFFERED -> ACCEPTED | REJECTED.

Acceptance itself is owned by the contract manager because it creates the
contract and closes out competing proposals in the same transaction.
"""

import logging

from database import db, atomic
from errors import ConflictError, NotFoundError, ValidationError
from job_lifecycle import parse_amount
from models import Contract, JobStatus, Proposal, ProposalStatus
from notifications import DomainEvent, OFFER_REJECTED, OFFER_SENT, PROPOSAL_RECEIVED, dispatch
from permissions import Role, require

logger = logging.getLogger(__name__)

# status -> statuses reachable from it through this module
TRANSITIONS = {
    ProposalStatus.PENDING: {ProposalStatus.OFFERED},
    ProposalStatus.OFFERED: {ProposalStatus.ACCEPTED, ProposalStatus.REJECTED},
    ProposalStatus.ACCEPTED: set(),
    ProposalStatus.REJECTED: set(),
}

DUPLICATE_PROPOSAL = 'You have already submitted a proposal for this job'


def notify(notifier, actor, events):
    """Publish committed events, never to the actor who caused them"""
    dispatch(notifier, [e for e in events if e.recipient_user_id != actor.id])


class ProposalLifecycle:

    def __init__(self, jobs, notifier=None):
        self.jobs = jobs
        self.notifier = notifier

    def can_perform(self, actor, action, proposal=None):
        if action == 'submit':
            return actor.role == Role.FREELANCER
        if action == 'view':
            return (actor.is_admin or proposal.freelancer_id == actor.id
                    or proposal.job.client_id == actor.id)
        if action == 'offer':
            return actor.role == Role.CLIENT and proposal.job.client_id == actor.id
        if action in ('accept', 'reject', 'withdraw'):
            return actor.role == Role.FREELANCER and proposal.freelancer_id == actor.id
        return False

    def get_proposal(self, proposal_id, lock=False):
        q = Proposal.query.filter_by(id=proposal_id)
        if lock:
            q = q.with_for_update()
        proposal = q.first()
        if not proposal:
            raise NotFoundError('Proposal not found')
        return proposal

    def list_proposals(self, job_id=None, freelancer_id=None, status=None):
        q = Proposal.query
        if job_id is not None:
            q = q.filter(Proposal.job_id == job_id)
        if freelancer_id is not None:
            q = q.filter(Proposal.freelancer_id == freelancer_id)
        if status is not None:
            if not isinstance(status, ProposalStatus):
                try:
                    status = ProposalStatus(str(status).upper())
                except ValueError:
                    raise ValidationError(f'Unknown proposal status: {status}')
            q = q.filter(Proposal.status == status)
        return q.order_by(Proposal.created_at.desc(), Proposal.id.desc()).all()

    def check_transition(self, proposal, target):
        if target not in TRANSITIONS[proposal.status]:
            raise ValidationError(
                f'Invalid proposal transition from {proposal.status.value} to {target.value}'
            )

    def check_job_accepting(self, job, verb='accept proposals'):
        """Shared precondition for submit, offer and accept: OPEN and no contract yet"""
        if Contract.query.filter_by(job_id=job.id).first():
            raise ValidationError('This job already has an accepted proposal and contract')
        if job.status != JobStatus.OPEN:
            raise ValidationError(f'Can only {verb} for OPEN jobs')

    def submit(self, actor, job_id, message, proposed_amount=None):
        require(self.can_perform(actor, 'submit'), 'Only freelancers can submit proposals')

        job = self.jobs.get_job(job_id)
        if job.client_id == actor.id:
            raise ValidationError('You cannot submit a proposal to your own job')
        self.check_job_accepting(job, 'submit proposals')

        message = (message or '').strip()
        if not message:
            raise ValidationError('Proposal message is required')
        amount = parse_amount(proposed_amount, 'proposed_amount')

        if Proposal.query.filter_by(job_id=job.id, freelancer_id=actor.id).first():
            raise ConflictError(DUPLICATE_PROPOSAL)

        # A concurrent duplicate is caught by unique_proposal_per_job
        with atomic(DUPLICATE_PROPOSAL):
            proposal = Proposal(
                job_id=job.id,
                freelancer_id=actor.id,
                message=message,
                proposed_amount=amount,
                status=ProposalStatus.PENDING
            )
            db.session.add(proposal)

        logger.info(f"Proposal {proposal.id} submitted on job {job.id} by freelancer {actor.id}")
        notify(self.notifier, actor, [
            DomainEvent(PROPOSAL_RECEIVED, job.client_id, job.title, proposal.id,
                        link=f'/jobs/{job.id}/proposals')
        ])
        return proposal

    def send_offer(self, proposal_id, actor):
        require(actor.role == Role.CLIENT, 'Only clients can send offers')
        proposal = self.get_proposal(proposal_id)
        require(self.can_perform(actor, 'offer', proposal), 'You can only send offers for your own jobs')

        with atomic():
            proposal = self.get_proposal(proposal_id, lock=True)
            if proposal.status != ProposalStatus.PENDING:
                raise ValidationError('Can only send offers to PENDING proposals')
            self.check_job_accepting(self.jobs.get_job(proposal.job_id, lock=True), 'send offers')
            self.check_transition(proposal, ProposalStatus.OFFERED)
            proposal.status = ProposalStatus.OFFERED

        job = proposal.job
        logger.info(f"Offer sent on proposal {proposal.id} for job {job.id}")
        notify(self.notifier, actor, [
            DomainEvent(OFFER_SENT, proposal.freelancer_id, job.title, proposal.id)
        ])
        return proposal

    def reject_offer(self, proposal_id, actor):
        require(actor.role == Role.FREELANCER, 'Only freelancers can reject offers')
        proposal = self.get_proposal(proposal_id)
        require(self.can_perform(actor, 'reject', proposal), 'You can only reject offers for your own proposals')

        with atomic():
            proposal = self.get_proposal(proposal_id, lock=True)
            if proposal.status != ProposalStatus.OFFERED:
                raise ValidationError(
                    f'Can only reject proposals that have been offered. Current status: {proposal.status.value}'
                )
            proposal.status = ProposalStatus.REJECTED

        job = proposal.job
        notify(self.notifier, actor, [
            DomainEvent(OFFER_REJECTED, job.client_id, job.title, proposal.id)
        ])
        return proposal

    def withdraw(self, proposal_id, actor):
        require(actor.role == Role.FREELANCER, 'Only freelancers can withdraw proposals')
        proposal = self.get_proposal(proposal_id)
        require(self.can_perform(actor, 'withdraw', proposal), 'You can only withdraw your own proposals')

        with atomic():
            proposal = self.get_proposal(proposal_id, lock=True)
            if proposal.status != ProposalStatus.PENDING:
                raise ValidationError('Can only withdraw PENDING proposals')
            db.session.delete(proposal)

        logger.info(f"Proposal {proposal_id} withdrawn by freelancer {actor.id}")
