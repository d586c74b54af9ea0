"""
Job lifecycle: DRAFT -> OPEN -> CONTRACTED -> IN_PROGRESS -> COMPLETED.

Only the owning client publishes, advances, edits or deletes a job. The
OPEN -> CONTRACTED step belongs to the contract manager, and the escrow
ledger moves a job back to OPEN on refund or on to COMPLETED on release.
"""

import logging
import math
from datetime import datetime
from decimal import Decimal, InvalidOperation

from audit_log import AuditAction
from database import db, atomic
from errors import NotFoundError, ValidationError
from models import Contract, ContractStatus, Job, JobCategory, JobStatus, Proposal
from permissions import Role, require

logger = logging.getLogger(__name__)

# (from, to) -> trigger allowed to perform it
TRANSITIONS = {
    (JobStatus.DRAFT, JobStatus.OPEN): 'publish',
    (JobStatus.CONTRACTED, JobStatus.IN_PROGRESS): 'advance',
    (JobStatus.IN_PROGRESS, JobStatus.COMPLETED): 'advance',
}

OWNER_ACTIONS = {'edit', 'delete', 'publish', 'advance', 'fund', 'view_proposals'}
MAX_PAGE_SIZE = 100


def parse_amount(value, field='amount'):
    """Optional non-negative money value as Decimal"""
    if value is None or value == '':
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f'Invalid {field} format')
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f'Invalid {field}')
    if amount > Decimal('1000000000'):
        raise ValidationError(f'{field.capitalize()} too high')
    return amount.quantize(Decimal('0.01'))


def parse_category(value):
    if value is None or value == '':
        return JobCategory.OTHER
    if isinstance(value, JobCategory):
        return value
    try:
        return JobCategory(str(value).upper())
    except ValueError:
        raise ValidationError(f'Unknown job category: {value}')


def parse_status(value):
    if isinstance(value, JobStatus):
        return value
    try:
        return JobStatus(str(value).upper())
    except ValueError:
        raise ValidationError(f'Unknown job status: {value}')


class JobLifecycle:

    def __init__(self, audit):
        self.audit = audit
        # Set by the marketplace container; completion releases escrow
        self.escrow = None

    def can_perform(self, actor, action, job=None):
        if action == 'create':
            return actor.role == Role.CLIENT
        if action in ('hide', 'unhide'):
            return actor.is_admin
        if action == 'view':
            return not job.is_hidden or actor.is_admin or job.client_id == actor.id
        if action in OWNER_ACTIONS:
            return actor.role == Role.CLIENT and job.client_id == actor.id
        return False

    def get_job(self, job_id, lock=False):
        q = Job.query.filter_by(id=job_id)
        if lock:
            q = q.with_for_update()
        job = q.first()
        if not job:
            raise NotFoundError('Job not found')
        return job

    def proposal_count(self, job_id):
        return Proposal.query.filter_by(job_id=job_id).count()

    def check_transition(self, job, target, trigger):
        if TRANSITIONS.get((job.status, target)) != trigger:
            raise ValidationError(f'Invalid status transition from {job.status.value} to {target.value}')

    def _check_editable(self, job, message):
        # Editable while DRAFT, or later as long as nobody has proposed yet
        if job.status != JobStatus.DRAFT and self.proposal_count(job.id) > 0:
            raise ValidationError(message)

    def create_job(self, actor, title, description, budget=None, category=None):
        require(self.can_perform(actor, 'create'), 'Only clients can create jobs')

        title = (title or '').strip()
        description = (description or '').strip()
        if not title or not description:
            raise ValidationError('Title and description are required')
        if len(title) > 200:
            raise ValidationError('Title must be at most 200 characters')

        with atomic():
            job = Job(
                title=title,
                description=description,
                budget=parse_amount(budget, 'budget'),
                category=parse_category(category),
                status=JobStatus.DRAFT,
                client_id=actor.id
            )
            db.session.add(job)

        logger.info(f"Job {job.id} created by client {actor.id}")
        return job

    def update_job(self, job_id, actor, title=None, description=None, budget=None, category=None):
        job = self.get_job(job_id)
        require(self.can_perform(actor, 'edit', job), 'You can only update your own jobs')
        self._check_editable(job, 'Cannot update job that has proposals. Only DRAFT jobs can be updated.')

        with atomic():
            if title is not None:
                title = title.strip()
                if not title or len(title) > 200:
                    raise ValidationError('Title must be between 1 and 200 characters')
                job.title = title
            if description is not None:
                if not description.strip():
                    raise ValidationError('Description cannot be empty')
                job.description = description.strip()
            if budget is not None:
                job.budget = parse_amount(budget, 'budget')
            if category is not None:
                job.category = parse_category(category)
        return job

    def delete_job(self, job_id, actor):
        job = self.get_job(job_id)
        require(self.can_perform(actor, 'delete', job), 'You can only delete your own jobs')
        self._check_editable(job, 'Cannot delete job that has proposals')

        with atomic():
            db.session.delete(job)
        logger.info(f"Job {job_id} deleted by client {actor.id}")

    def publish(self, job_id, actor):
        job = self.get_job(job_id)
        require(self.can_perform(actor, 'publish', job), 'You can only publish your own jobs')

        with atomic():
            job = self.get_job(job_id, lock=True)
            self.check_transition(job, JobStatus.OPEN, 'publish')
            job.status = JobStatus.OPEN
        return job

    def advance(self, job_id, actor, target):
        """Owner-driven move to IN_PROGRESS (escrow funded) or COMPLETED (release)"""
        target = parse_status(target)
        job = self.get_job(job_id)
        require(self.can_perform(actor, 'advance', job), 'You can only update your own jobs')

        with atomic():
            job = self.get_job(job_id, lock=True)
            self.check_transition(job, target, 'advance')
            contract = Contract.query.filter_by(job_id=job.id).first()

            if target == JobStatus.IN_PROGRESS:
                if not contract:
                    raise ValidationError('Cannot move to IN_PROGRESS: Job must have an accepted contract')
                if not self.escrow.get_funded_for_job(job.id):
                    raise ValidationError('Escrow not funded. Please complete payment before starting work.')
                job.status = JobStatus.IN_PROGRESS

            elif target == JobStatus.COMPLETED:
                if not contract or contract.status != ContractStatus.ACTIVE:
                    raise ValidationError('Cannot complete job: Job must have an active contract')
                # Sets job and contract to COMPLETED alongside the wallet credit
                self.escrow.release_on_completion(job, actor)

        logger.info(f"Job {job.id} moved to {job.status.value} by client {actor.id}")
        return job

    def list_jobs(self, status=None, client_id=None, category=None, min_budget=None,
                  max_budget=None, page=1, limit=20):
        """Structured job listing; free-text search lives in the search service"""
        page = max(int(page or 1), 1)
        limit = min(max(int(limit or 20), 1), MAX_PAGE_SIZE)

        # Public browsing defaults to open, visible jobs
        if status is None and client_id is None:
            status = JobStatus.OPEN

        q = Job.query
        if status is not None:
            q = q.filter(Job.status == parse_status(status))
        if client_id is not None:
            q = q.filter(Job.client_id == client_id)
        else:
            q = q.filter(Job.is_hidden.is_(False))
        if category is not None:
            q = q.filter(Job.category == parse_category(category))
        if min_budget is not None:
            q = q.filter(Job.budget >= parse_amount(min_budget, 'min_budget'))
        if max_budget is not None:
            q = q.filter(Job.budget <= parse_amount(max_budget, 'max_budget'))

        total = q.count()
        jobs = q.order_by(Job.created_at.desc(), Job.id.desc()).offset((page - 1) * limit).limit(limit).all()
        return {
            'jobs': jobs,
            'pagination': {
                'total': total,
                'page': page,
                'limit': limit,
                'total_pages': math.ceil(total / limit) if total else 0,
                'has_more': (page - 1) * limit + len(jobs) < total
            }
        }

    def hide_job(self, job_id, actor, reason=None):
        require(self.can_perform(actor, 'hide'), 'Forbidden - Admin access required')
        with atomic():
            job = self.get_job(job_id, lock=True)
            job.is_hidden = True
            job.hidden_reason = reason
            job.hidden_at = datetime.utcnow()
            self.audit.record(actor.id, AuditAction.JOB_HIDDEN, 'Job', job.id, {'reason': reason})
        return job

    def unhide_job(self, job_id, actor, reason=None):
        require(self.can_perform(actor, 'unhide'), 'Forbidden - Admin access required')
        with atomic():
            job = self.get_job(job_id, lock=True)
            job.is_hidden = False
            job.hidden_reason = None
            job.hidden_at = None
            self.audit.record(actor.id, AuditAction.JOB_UNHIDDEN, 'Job', job.id, {'reason': reason})
        return job
