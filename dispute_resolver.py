"""
Disputes and refund requests raised by contract participants.

A dispute freezes a PAID escrow as DISPUTED until an admin releases,
refunds or rejects it through the escrow ledger. A client refund request
before work starts is settled immediately and kept as a resolved record.
"""

import logging
from datetime import datetime

from database import db, atomic
from errors import NotFoundError, ValidationError
from models import DisputeStatus, DisputeType, EscrowDispute, EscrowStatus
from permissions import Role, require

logger = logging.getLogger(__name__)


class DisputeResolver:

    def __init__(self, jobs, contracts, escrow):
        self.jobs = jobs
        self.contracts = contracts
        self.escrow = escrow

    def can_perform(self, actor, action, contract=None):
        if action == 'open':
            return actor.id in (contract.client_id, contract.freelancer_id)
        if action == 'request_refund':
            return actor.role == Role.CLIENT and contract.client_id == actor.id
        if action == 'view':
            return actor.is_admin or actor.id in (contract.client_id, contract.freelancer_id)
        return False

    def _job_and_contract(self, job_id):
        job = self.jobs.get_job(job_id)
        contract = self.contracts.get_contract_for_job(job.id)
        if not contract:
            raise NotFoundError('Job or contract not found')
        return job, contract

    def open_dispute(self, job_id, actor, reason=None):
        job, contract = self._job_and_contract(job_id)
        require(self.can_perform(actor, 'open', contract), 'You are not part of this contract')

        with atomic():
            escrow = self.escrow.get_paid_for_job(job.id, lock=True)
            if not escrow:
                raise ValidationError('No funded escrow available for this job')
            dispute = EscrowDispute(
                escrow_payment_id=escrow.id,
                job_id=job.id,
                contract_id=contract.id,
                raised_by_id=actor.id,
                type=DisputeType.DISPUTE,
                status=DisputeStatus.OPEN,
                reason=reason
            )
            db.session.add(dispute)
            escrow.status = EscrowStatus.DISPUTED

        logger.warning(f"Dispute {dispute.id} opened on escrow {escrow.id} for job {job.id} by user {actor.id}")
        return dispute

    def request_refund(self, job_id, actor, reason=None):
        require(actor.role == Role.CLIENT, 'Only clients can request a refund')
        job, contract = self._job_and_contract(job_id)
        require(self.can_perform(actor, 'request_refund', contract),
                'You can only request a refund for your own jobs')

        with atomic():
            escrow = self.escrow.get_paid_for_job(job.id, lock=True)
            if not escrow:
                raise ValidationError('No funded escrow available for this job')
            self.escrow.apply_refund(escrow)
            db.session.add(EscrowDispute(
                escrow_payment_id=escrow.id,
                job_id=job.id,
                contract_id=contract.id,
                raised_by_id=actor.id,
                type=DisputeType.REFUND_REQUEST,
                status=DisputeStatus.RESOLVED,
                reason=reason,
                resolved_at=datetime.utcnow()
            ))

        logger.info(f"Escrow {escrow.id} refunded to client {actor.id} for job {job.id}")
        return escrow

    def get_dispute(self, dispute_id):
        dispute = EscrowDispute.query.filter_by(id=dispute_id).first()
        if not dispute:
            raise NotFoundError('Dispute not found')
        return dispute

    def get_open_dispute(self, escrow_id):
        return EscrowDispute.query.filter_by(
            escrow_payment_id=escrow_id, status=DisputeStatus.OPEN
        ).order_by(EscrowDispute.created_at.desc()).first()

    def list_disputes(self, job_id=None, status=None):
        q = EscrowDispute.query
        if job_id is not None:
            q = q.filter(EscrowDispute.job_id == job_id)
        if status is not None:
            if not isinstance(status, DisputeStatus):
                try:
                    status = DisputeStatus(str(status).upper())
                except ValueError:
                    raise ValidationError(f'Unknown dispute status: {status}')
            q = q.filter(EscrowDispute.status == status)
        return q.order_by(EscrowDispute.created_at.desc(), EscrowDispute.id.desc()).all()
