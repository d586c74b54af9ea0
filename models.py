"""Database models for jobs, proposals, contracts, escrow, wallets and audit"""

import enum
from datetime import datetime

from database import db


class JobStatus(enum.Enum):
    DRAFT = 'DRAFT'
    OPEN = 'OPEN'
    CONTRACTED = 'CONTRACTED'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'


class JobCategory(enum.Enum):
    WEB_DEVELOPMENT = 'WEB_DEVELOPMENT'
    MOBILE_DEVELOPMENT = 'MOBILE_DEVELOPMENT'
    DESIGN = 'DESIGN'
    WRITING = 'WRITING'
    MARKETING = 'MARKETING'
    DATA = 'DATA'
    OTHER = 'OTHER'


class ProposalStatus(enum.Enum):
    PENDING = 'PENDING'
    OFFERED = 'OFFERED'
    ACCEPTED = 'ACCEPTED'
    REJECTED = 'REJECTED'


class ContractStatus(enum.Enum):
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


class EscrowStatus(enum.Enum):
    PENDING = 'PENDING'
    PAID = 'PAID'
    HELD = 'HELD'
    DISPUTED = 'DISPUTED'
    RELEASED = 'RELEASED'
    REFUNDED = 'REFUNDED'
    FAILED = 'FAILED'


class DisputeType(enum.Enum):
    DISPUTE = 'DISPUTE'
    REFUND_REQUEST = 'REFUND_REQUEST'


class DisputeStatus(enum.Enum):
    OPEN = 'OPEN'
    RESOLVED = 'RESOLVED'
    REJECTED = 'REJECTED'


class WalletTransactionType(enum.Enum):
    CREDIT = 'CREDIT'
    DEBIT = 'DEBIT'


def _money(value):
    return str(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value else None


def _enum_column(enum_cls, **kwargs):
    return db.Column(db.Enum(enum_cls, native_enum=False, length=20), **kwargs)


class Job(db.Model):
    __tablename__ = 'jobs'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    budget = db.Column(db.Numeric(12, 2))
    category = _enum_column(JobCategory, nullable=False, default=JobCategory.OTHER)
    status = _enum_column(JobStatus, nullable=False, default=JobStatus.DRAFT, index=True)
    client_id = db.Column(db.Integer, nullable=False, index=True)
    is_hidden = db.Column(db.Boolean, nullable=False, default=False)
    hidden_reason = db.Column(db.Text)
    hidden_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'budget': _money(self.budget),
            'category': self.category.value,
            'status': self.status.value,
            'client_id': self.client_id,
            'is_hidden': self.is_hidden,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class Proposal(db.Model):
    __tablename__ = 'proposals'
    __table_args__ = (
        db.UniqueConstraint('job_id', 'freelancer_id', name='unique_proposal_per_job'),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('jobs.id'), nullable=False, index=True)
    freelancer_id = db.Column(db.Integer, nullable=False, index=True)
    message = db.Column(db.Text, nullable=False)
    proposed_amount = db.Column(db.Numeric(12, 2))
    status = _enum_column(ProposalStatus, nullable=False, default=ProposalStatus.PENDING)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    job = db.relationship('Job', backref=db.backref('proposals', lazy='dynamic'))

    def to_dict(self):
        return {
            'id': self.id,
            'job_id': self.job_id,
            'freelancer_id': self.freelancer_id,
            'message': self.message,
            'proposed_amount': _money(self.proposed_amount),
            'status': self.status.value,
            'created_at': _iso(self.created_at)
        }


class Contract(db.Model):
    __tablename__ = 'contracts'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('jobs.id'), nullable=False, unique=True)
    proposal_id = db.Column(db.Integer, db.ForeignKey('proposals.id'), nullable=False, unique=True)
    client_id = db.Column(db.Integer, nullable=False, index=True)
    freelancer_id = db.Column(db.Integer, nullable=False, index=True)
    agreed_amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = _enum_column(ContractStatus, nullable=False, default=ContractStatus.ACTIVE)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)

    job = db.relationship('Job', backref=db.backref('contract', uselist=False))

    def to_dict(self):
        return {
            'id': self.id,
            'job_id': self.job_id,
            'proposal_id': self.proposal_id,
            'client_id': self.client_id,
            'freelancer_id': self.freelancer_id,
            'agreed_amount': _money(self.agreed_amount),
            'status': self.status.value,
            'created_at': _iso(self.created_at),
            'completed_at': _iso(self.completed_at)
        }


class EscrowPayment(db.Model):
    """Funds held for a contract until released to the freelancer or refunded"""
    __tablename__ = 'escrow_payments'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('jobs.id'), nullable=False, index=True)
    contract_id = db.Column(db.Integer, db.ForeignKey('contracts.id'), nullable=False)
    client_id = db.Column(db.Integer, nullable=False)
    freelancer_id = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    platform_fee = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = _enum_column(EscrowStatus, nullable=False, default=EscrowStatus.PENDING, index=True)
    tx_ref = db.Column(db.String(100), nullable=False, unique=True)
    checkout_url = db.Column(db.String(500))
    failure_reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    paid_at = db.Column(db.DateTime)
    released_at = db.Column(db.DateTime)
    refunded_at = db.Column(db.DateTime)

    @property
    def payout_amount(self):
        return self.amount - self.platform_fee

    def to_dict(self):
        """Convert escrow to dictionary for JSON response"""
        return {
            'id': self.id,
            'job_id': self.job_id,
            'contract_id': self.contract_id,
            'client_id': self.client_id,
            'freelancer_id': self.freelancer_id,
            'amount': _money(self.amount),
            'platform_fee': _money(self.platform_fee),
            'payout_amount': _money(self.payout_amount),
            'currency': self.currency,
            'status': self.status.value,
            'tx_ref': self.tx_ref,
            'checkout_url': self.checkout_url,
            'created_at': _iso(self.created_at),
            'paid_at': _iso(self.paid_at),
            'released_at': _iso(self.released_at),
            'refunded_at': _iso(self.refunded_at)
        }


class EscrowDispute(db.Model):
    __tablename__ = 'escrow_disputes'

    id = db.Column(db.Integer, primary_key=True)
    escrow_payment_id = db.Column(db.Integer, db.ForeignKey('escrow_payments.id'), nullable=False, index=True)
    job_id = db.Column(db.Integer, db.ForeignKey('jobs.id'), nullable=False)
    contract_id = db.Column(db.Integer, db.ForeignKey('contracts.id'), nullable=False)
    raised_by_id = db.Column(db.Integer, nullable=False)
    type = _enum_column(DisputeType, nullable=False, default=DisputeType.DISPUTE)
    status = _enum_column(DisputeStatus, nullable=False, default=DisputeStatus.OPEN)
    reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    resolved_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'escrow_payment_id': self.escrow_payment_id,
            'job_id': self.job_id,
            'contract_id': self.contract_id,
            'raised_by_id': self.raised_by_id,
            'type': self.type.value,
            'status': self.status.value,
            'reason': self.reason,
            'created_at': _iso(self.created_at),
            'resolved_at': _iso(self.resolved_at)
        }


class Wallet(db.Model):
    __tablename__ = 'wallets'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, unique=True)
    balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='wallet_balance_non_negative'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'balance': _money(self.balance),
            'currency': self.currency,
            'updated_at': _iso(self.updated_at)
        }


class WalletTransaction(db.Model):
    """Append-only ledger row; a wallet's balance is the signed sum of these"""
    __tablename__ = 'wallet_transactions'

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey('wallets.id'), nullable=False, index=True)
    type = _enum_column(WalletTransactionType, nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    reference = db.Column(db.String(100))
    meta = db.Column('metadata', db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def signed_amount(self):
        return self.amount if self.type == WalletTransactionType.CREDIT else -self.amount

    def to_dict(self):
        return {
            'id': self.id,
            'wallet_id': self.wallet_id,
            'type': self.type.value,
            'amount': _money(self.amount),
            'currency': self.currency,
            'reference': self.reference,
            'metadata': self.meta,
            'created_at': _iso(self.created_at)
        }


class AuditLogEntry(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.Integer, nullable=False, index=True)
    action = db.Column(db.String(50), nullable=False)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(50), index=True)
    meta = db.Column('metadata', db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'actor_id': self.actor_id,
            'action': self.action,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'metadata': self.meta,
            'created_at': _iso(self.created_at)
        }


class Notification(db.Model):
    """In-app notification written by the database notifier"""
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    link = db.Column(db.String(500))
    related_entity_id = db.Column(db.String(50))
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'link': self.link,
            'is_read': self.is_read,
            'created_at': _iso(self.created_at)
        }
