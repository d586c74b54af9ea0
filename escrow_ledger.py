"""
Escrow ledger: funding, confirmation, release and refund of contract money.

Escrow lifecycle:
- PENDING -> PAID      gateway confirms the deposit (poll or webhook)
- PENDING -> FAILED    gateway reports a terminal non-success, a mismatched
                       amount, or another checkout for the job was paid
- PAID/HELD/DISPUTED -> RELEASED   payout credited to the freelancer wallet
- PAID/HELD/DISPUTED -> REFUNDED   only before work starts; job reopens
- PENDING/PAID/DISPUTED -> HELD    admin hold
- HELD/DISPUTED -> PAID            admin rejects the open dispute

Gateway calls happen outside any database transaction. Every state change
commits together with its wallet, contract, job, dispute and audit updates.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from urllib.parse import urlencode, urlsplit, urlunsplit

from audit_log import AuditAction
from config import ESCROW_CURRENCY, PLATFORM_FEE_RATE
from database import db, atomic
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    Contract, ContractStatus, DisputeStatus, EscrowDispute, EscrowPayment,
    EscrowStatus, JobStatus
)
from payment_gateway import STATUS_PENDING, STATUS_SUCCESS
from permissions import Role, require

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')
SUPERSEDED = 'superseded'

# Money has reached the platform for these
FUNDED_STATUSES = (EscrowStatus.PAID, EscrowStatus.HELD, EscrowStatus.DISPUTED, EscrowStatus.RELEASED)
SETTLEABLE_STATUSES = (EscrowStatus.PAID, EscrowStatus.HELD, EscrowStatus.DISPUTED)
HOLDABLE_STATUSES = (EscrowStatus.PENDING, EscrowStatus.PAID, EscrowStatus.DISPUTED)
ADMIN_ACTIONS = {'release', 'refund', 'hold', 'reject_dispute'}


def calculate_platform_fee(amount):
    """Platform commission on an escrow amount, rounded half-up to cents"""
    return (Decimal(amount) * PLATFORM_FEE_RATE).quantize(CENTS, rounding=ROUND_HALF_UP)


def build_return_url(base, tx_ref, job_id):
    """Append tx_ref and jobId to the checkout return URL"""
    parts = urlsplit(base)
    query = urlencode({'tx_ref': tx_ref, 'jobId': job_id})
    if parts.query:
        query = f"{parts.query}&{query}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def new_tx_ref(job_id):
    return f"escrow_{job_id}_{uuid.uuid4().hex}"


class EscrowLedger:

    def __init__(self, jobs, contracts, wallets, audit, gateway,
                 return_url='http://localhost:3000/payments/chapa/return',
                 callback_url='http://localhost:5000/api/payments/chapa/webhook'):
        self.jobs = jobs
        self.contracts = contracts
        self.wallets = wallets
        self.audit = audit
        self.gateway = gateway
        self.return_url = return_url
        self.callback_url = callback_url

    def can_perform(self, actor, action, escrow=None):
        if action in ADMIN_ACTIONS:
            return actor.is_admin
        if action == 'initialize':
            return actor.role == Role.CLIENT
        if action == 'verify':
            return actor.is_admin or escrow.client_id == actor.id
        if action == 'view':
            return actor.is_admin or actor.id in (escrow.client_id, escrow.freelancer_id)
        return False

    # Queries

    def get_by_tx_ref(self, tx_ref, lock=False):
        q = EscrowPayment.query.filter_by(tx_ref=tx_ref)
        if lock:
            q = q.with_for_update()
        escrow = q.first()
        if not escrow:
            raise NotFoundError('Escrow payment not found')
        return escrow

    def get_latest_for_job(self, job_id, lock=False):
        q = EscrowPayment.query.filter_by(job_id=job_id)
        if lock:
            q = q.with_for_update()
        return q.order_by(EscrowPayment.created_at.desc(), EscrowPayment.id.desc()).first()

    def get_paid_for_job(self, job_id, lock=False):
        q = EscrowPayment.query.filter_by(job_id=job_id, status=EscrowStatus.PAID)
        if lock:
            q = q.with_for_update()
        return q.order_by(EscrowPayment.created_at.desc(), EscrowPayment.id.desc()).first()

    def get_funded_for_job(self, job_id):
        return EscrowPayment.query.filter(
            EscrowPayment.job_id == job_id,
            EscrowPayment.status.in_(FUNDED_STATUSES)
        ).first()

    def list_pending(self, older_than=None):
        """PENDING escrows, optionally only those created more than ``older_than`` ago"""
        q = EscrowPayment.query.filter_by(status=EscrowStatus.PENDING)
        if older_than is not None:
            q = q.filter(EscrowPayment.created_at <= datetime.utcnow() - older_than)
        return q.order_by(EscrowPayment.created_at).all()

    def get_current_for_job(self, job_id):
        """The escrow that received the job's money, else the latest checkout"""
        escrow = EscrowPayment.query.filter(
            EscrowPayment.job_id == job_id,
            EscrowPayment.paid_at.isnot(None)
        ).order_by(EscrowPayment.paid_at.desc(), EscrowPayment.id.desc()).first()
        return escrow or self.get_latest_for_job(job_id)

    def _admin_target(self, job_id):
        """Escrow an admin action applies to: the unsettled funded one, else the latest"""
        escrow = EscrowPayment.query.filter(
            EscrowPayment.job_id == job_id,
            EscrowPayment.status.in_(SETTLEABLE_STATUSES)
        ).order_by(EscrowPayment.created_at.desc(), EscrowPayment.id.desc()).with_for_update().first()
        if not escrow:
            escrow = self.get_latest_for_job(job_id, lock=True)
        if not escrow:
            raise NotFoundError('Escrow payment not found')
        return escrow

    # Funding

    def initialize(self, job_id, actor, payer_info=None):
        """Create a PENDING escrow for the contract amount and a gateway checkout"""
        require(self.can_perform(actor, 'initialize'), 'Only clients can fund escrow')
        job = self.jobs.get_job(job_id)
        require(self.jobs.can_perform(actor, 'fund', job), 'You can only fund escrow for your own jobs')

        contract = self.contracts.get_contract_for_job(job.id)
        if job.status != JobStatus.CONTRACTED or not contract:
            raise ValidationError('Escrow can only be funded for contracted jobs')
        if self.get_funded_for_job(job.id):
            raise ConflictError('Escrow is already funded for this job')

        amount = contract.agreed_amount
        platform_fee = calculate_platform_fee(amount)
        tx_ref = new_tx_ref(job.id)

        payer = dict(payer_info or {})
        payer.setdefault('title', 'Escrow')
        payer.setdefault('description', f'Escrow funding for job {job.title}')
        result = self.gateway.initialize_payment(
            amount=amount,
            currency=ESCROW_CURRENCY,
            reference=tx_ref,
            return_url=build_return_url(self.return_url, tx_ref, job.id),
            callback_url=self.callback_url,
            payer_info=payer
        )

        with atomic():
            escrow = EscrowPayment(
                job_id=job.id,
                contract_id=contract.id,
                client_id=job.client_id,
                freelancer_id=contract.freelancer_id,
                amount=amount,
                platform_fee=platform_fee,
                currency=ESCROW_CURRENCY,
                status=EscrowStatus.PENDING,
                tx_ref=tx_ref,
                checkout_url=result.checkout_url
            )
            db.session.add(escrow)

        logger.info(f"Escrow {escrow.id} initialized for job {job.id}: {amount} {ESCROW_CURRENCY} (fee {platform_fee})")
        return escrow

    def _reported_mismatch(self, escrow, verification):
        """Describe a gateway amount/currency that disagrees with the escrow, if any"""
        if verification.amount is not None and verification.amount.quantize(CENTS) != escrow.amount:
            return f'amount mismatch: gateway {verification.amount}, escrow {escrow.amount}'
        if verification.currency and verification.currency.upper() != escrow.currency:
            return f'currency mismatch: gateway {verification.currency}, escrow {escrow.currency}'
        return None

    def confirm(self, tx_ref):
        """
        Settle a PENDING escrow from the gateway's verdict.

        Idempotent: an escrow that already left PENDING is returned unchanged.
        A gateway "pending" leaves it PENDING; a terminal failure, or a
        success for a different amount or currency, is persisted as FAILED
        and then raised as ValidationError. Once paid, the job's other
        PENDING checkouts are superseded.
        """
        escrow = self.get_by_tx_ref(tx_ref)
        if escrow.status != EscrowStatus.PENDING:
            logger.info(f"Escrow {escrow.id} already {escrow.status.value}, skipping confirmation")
            return escrow

        verification = self.gateway.verify_payment(escrow.tx_ref)

        if verification.normalized_status == STATUS_PENDING:
            logger.info(f"Escrow {escrow.id} still pending at gateway ({verification.raw_status})")
            return escrow

        if verification.normalized_status == STATUS_SUCCESS:
            failure = self._reported_mismatch(escrow, verification)
            if failure:
                logger.error(f"Escrow {escrow.id} reported paid with {failure}")
        else:
            failure = verification.raw_status or 'failed'

        if failure:
            with atomic():
                escrow = self.get_by_tx_ref(tx_ref, lock=True)
                if escrow.status != EscrowStatus.PENDING:
                    return escrow
                escrow.status = EscrowStatus.FAILED
                escrow.failure_reason = failure
            logger.warning(f"Escrow {escrow.id} payment failed at gateway ({failure})")
            raise ValidationError('Payment not completed')

        with atomic():
            escrow = self.get_by_tx_ref(tx_ref, lock=True)
            if escrow.status != EscrowStatus.PENDING:
                return escrow
            other = EscrowPayment.query.filter(
                EscrowPayment.job_id == escrow.job_id,
                EscrowPayment.id != escrow.id,
                EscrowPayment.status.in_(FUNDED_STATUSES)
            ).first()
            if other:
                raise ConflictError('Another escrow for this job is already funded')
            escrow.status = EscrowStatus.PAID
            escrow.paid_at = datetime.utcnow()
            superseded = EscrowPayment.query.filter(
                EscrowPayment.job_id == escrow.job_id,
                EscrowPayment.id != escrow.id,
                EscrowPayment.status == EscrowStatus.PENDING
            ).update({
                EscrowPayment.status: EscrowStatus.FAILED,
                EscrowPayment.failure_reason: SUPERSEDED
            }, synchronize_session='fetch')

        logger.info(f"Escrow {escrow.id} confirmed PAID for job {escrow.job_id}")
        if superseded:
            logger.info(f"Superseded {superseded} pending escrow(s) for job {escrow.job_id}")
        return escrow

    def confirm_for_client(self, tx_ref, actor):
        """Client-initiated verification after returning from checkout"""
        escrow = self.get_by_tx_ref(tx_ref)
        require(self.can_perform(actor, 'verify', escrow), 'You can only verify your own escrow payments')
        return self.confirm(tx_ref)

    def handle_webhook(self, payload, raw_body=b'', signature=None):
        """Gateway callback: check the signature, find tx_ref, confirm"""
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Rejected payment webhook with invalid signature")
            raise ValidationError('Invalid webhook signature')

        if not isinstance(payload, dict):
            raise ValidationError('Missing tx_ref')
        data = payload.get('data')
        tx_ref = payload.get('tx_ref') or (data.get('tx_ref') if isinstance(data, dict) else None)
        if not tx_ref:
            raise ValidationError('Missing tx_ref')
        return self.confirm(tx_ref)

    # Settlement

    def _resolve_open_disputes(self, escrow):
        now = datetime.utcnow()
        for dispute in EscrowDispute.query.filter_by(escrow_payment_id=escrow.id, status=DisputeStatus.OPEN):
            dispute.status = DisputeStatus.RESOLVED
            dispute.resolved_at = now

    def _apply_release(self, escrow, admin_override=False):
        if escrow.status not in SETTLEABLE_STATUSES:
            raise ValidationError('Escrow cannot be released in its current status')
        if escrow.paid_at is None:
            raise ValidationError('Escrow was never paid')
        contract = Contract.query.filter_by(id=escrow.contract_id).with_for_update().first()
        job = self.jobs.get_job(escrow.job_id, lock=True)
        if contract.status != ContractStatus.ACTIVE:
            raise ValidationError('Escrow cannot be released for an inactive contract')

        now = datetime.utcnow()
        self.wallets.credit(
            escrow.freelancer_id,
            escrow.payout_amount,
            escrow.currency,
            reference=escrow.tx_ref,
            metadata={
                'job_id': escrow.job_id,
                'contract_id': escrow.contract_id,
                'platform_fee': str(escrow.platform_fee),
                'admin_override': admin_override
            }
        )
        escrow.status = EscrowStatus.RELEASED
        escrow.released_at = now
        contract.status = ContractStatus.COMPLETED
        contract.completed_at = now
        job.status = JobStatus.COMPLETED
        self._resolve_open_disputes(escrow)

    def apply_refund(self, escrow):
        """Refund core; callers hold the transaction and have authorized the actor"""
        if escrow.status not in SETTLEABLE_STATUSES:
            raise ValidationError('Escrow cannot be refunded in its current status')
        if escrow.paid_at is None:
            raise ValidationError('Escrow was never paid')
        job = self.jobs.get_job(escrow.job_id, lock=True)
        if job.status != JobStatus.CONTRACTED:
            raise ValidationError('Refunds are only available before work starts')
        contract = Contract.query.filter_by(id=escrow.contract_id).with_for_update().first()

        escrow.status = EscrowStatus.REFUNDED
        escrow.refunded_at = datetime.utcnow()
        contract.status = ContractStatus.CANCELLED
        job.status = JobStatus.OPEN
        self._resolve_open_disputes(escrow)

    def release_on_completion(self, job, actor):
        """Owner completion path; only a PAID escrow is released without an admin"""
        with atomic():
            escrow = self.get_paid_for_job(job.id, lock=True)
            if not escrow:
                raise ValidationError('No funded escrow available for this job')
            self._apply_release(escrow)
        logger.info(f"Escrow {escrow.id} released on completion of job {job.id} by client {actor.id}")
        return escrow

    def release(self, job_id, actor, reason=None):
        require(self.can_perform(actor, 'release'), 'Forbidden - Admin access required')
        with atomic():
            escrow = self._admin_target(job_id)
            self._apply_release(escrow, admin_override=True)
            self.audit.record(actor.id, AuditAction.ESCROW_RELEASED, 'EscrowPayment', escrow.id,
                              {'job_id': job_id, 'reason': reason})
        logger.warning(f"Admin {actor.id} released escrow {escrow.id} for job {job_id}")
        return escrow

    def refund(self, job_id, actor, reason=None):
        require(self.can_perform(actor, 'refund'), 'Forbidden - Admin access required')
        with atomic():
            escrow = self._admin_target(job_id)
            self.apply_refund(escrow)
            self.audit.record(actor.id, AuditAction.ESCROW_REFUNDED, 'EscrowPayment', escrow.id,
                              {'job_id': job_id, 'reason': reason})
        logger.warning(f"Admin {actor.id} refunded escrow {escrow.id} for job {job_id}")
        return escrow

    def admin_hold(self, job_id, actor, reason=None):
        require(self.can_perform(actor, 'hold'), 'Forbidden - Admin access required')
        with atomic():
            escrow = self._admin_target(job_id)
            if escrow.status not in HOLDABLE_STATUSES:
                raise ValidationError('Escrow cannot be held in its current status')
            escrow.status = EscrowStatus.HELD
            self.audit.record(actor.id, AuditAction.ESCROW_HELD, 'EscrowPayment', escrow.id,
                              {'job_id': job_id, 'reason': reason})
        logger.warning(f"Admin {actor.id} put escrow {escrow.id} for job {job_id} on hold")
        return escrow

    def admin_reject_dispute(self, job_id, actor, reason=None):
        require(self.can_perform(actor, 'reject_dispute'), 'Forbidden - Admin access required')
        with atomic():
            escrow = self._admin_target(job_id)
            dispute = EscrowDispute.query.filter_by(
                escrow_payment_id=escrow.id, status=DisputeStatus.OPEN
            ).order_by(EscrowDispute.created_at.desc()).with_for_update().first()
            if not dispute:
                raise ValidationError('No open dispute found for this escrow')
            if escrow.status not in (EscrowStatus.HELD, EscrowStatus.DISPUTED):
                raise ValidationError('Escrow is not under dispute')

            dispute.status = DisputeStatus.REJECTED
            dispute.reason = reason or dispute.reason
            dispute.resolved_at = datetime.utcnow()
            escrow.status = EscrowStatus.PAID
            self.audit.record(actor.id, AuditAction.ESCROW_DISPUTE_REJECTED, 'EscrowPayment', escrow.id,
                              {'job_id': job_id, 'dispute_id': dispute.id, 'reason': reason})
        logger.warning(f"Admin {actor.id} rejected dispute on escrow {escrow.id} for job {job_id}")
        return escrow
