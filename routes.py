"""
JSON API over the marketplace core.

Session issuance is handled elsewhere; these routes only read the
authenticated ``user_id`` and ``role`` from the session. Domain errors are
turned into responses by the handlers registered in ``app.py``.
"""

from functools import wraps

from flask import Blueprint, current_app, jsonify, request, session

from errors import NotFoundError
from models import JobStatus
from permissions import Actor, require

api = Blueprint('api', __name__, url_prefix='/api')


def marketplace():
    return current_app.extensions['marketplace']


def current_actor():
    if 'user_id' not in session or 'role' not in session:
        return None
    return Actor.from_session(session['user_id'], session['role'])


def login_required(f):
    """Decorator to require user authentication for API routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if current_actor() is None:
            return jsonify({'error': 'Unauthorized - Please login'}), 401
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """Decorator to require admin authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = current_actor()
        if actor is None:
            return jsonify({'error': 'Unauthorized - Please login'}), 401
        if not actor.is_admin:
            return jsonify({'error': 'Forbidden - Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated_function


def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# Jobs

@api.route('/jobs', methods=['GET'])
def list_jobs():
    result = marketplace().jobs.list_jobs(
        status=request.args.get('status') or None,
        client_id=request.args.get('client_id', type=int),
        category=request.args.get('category') or None,
        min_budget=request.args.get('min_budget') or None,
        max_budget=request.args.get('max_budget') or None,
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 20, type=int)
    )
    return jsonify({
        'jobs': [j.to_dict() for j in result['jobs']],
        'pagination': result['pagination']
    })


@api.route('/jobs', methods=['POST'])
@login_required
def create_job():
    data = _body()
    job = marketplace().jobs.create_job(
        current_actor(),
        title=data.get('title'),
        description=data.get('description'),
        budget=data.get('budget'),
        category=data.get('category')
    )
    return jsonify(job.to_dict()), 201


@api.route('/jobs/<int:job_id>', methods=['GET'])
def get_job(job_id):
    jobs = marketplace().jobs
    job = jobs.get_job(job_id)
    actor = current_actor()
    if job.is_hidden and (actor is None or not jobs.can_perform(actor, 'view', job)):
        raise NotFoundError('Job not found')
    result = job.to_dict()
    result['proposal_count'] = jobs.proposal_count(job.id)
    return jsonify(result)


@api.route('/jobs/<int:job_id>', methods=['PUT'])
@login_required
def update_job(job_id):
    data = _body()
    fields = {k: data[k] for k in ('title', 'description', 'budget', 'category') if k in data}
    job = marketplace().jobs.update_job(job_id, current_actor(), **fields)
    return jsonify(job.to_dict())


@api.route('/jobs/<int:job_id>', methods=['DELETE'])
@login_required
def delete_job(job_id):
    marketplace().jobs.delete_job(job_id, current_actor())
    return jsonify({'message': 'Job deleted'})


@api.route('/jobs/<int:job_id>/publish', methods=['POST'])
@login_required
def publish_job(job_id):
    job = marketplace().jobs.publish(job_id, current_actor())
    return jsonify(job.to_dict())


@api.route('/jobs/<int:job_id>/status', methods=['POST'])
@login_required
def advance_job(job_id):
    target = _body().get('status') or JobStatus.IN_PROGRESS.value
    job = marketplace().jobs.advance(job_id, current_actor(), target)
    return jsonify(job.to_dict())


# Proposals

@api.route('/jobs/<int:job_id>/proposals', methods=['GET'])
@login_required
def list_job_proposals(job_id):
    m = marketplace()
    actor = current_actor()
    job = m.jobs.get_job(job_id)
    require(actor.is_admin or m.jobs.can_perform(actor, 'view_proposals', job),
            'You can only view proposals for your own jobs')
    proposals = m.proposals.list_proposals(job_id=job.id, status=request.args.get('status') or None)
    return jsonify([p.to_dict() for p in proposals])


@api.route('/jobs/<int:job_id>/proposals', methods=['POST'])
@login_required
def submit_proposal(job_id):
    data = _body()
    proposal = marketplace().proposals.submit(
        current_actor(),
        job_id,
        message=data.get('message'),
        proposed_amount=data.get('proposed_amount')
    )
    return jsonify(proposal.to_dict()), 201


@api.route('/proposals/mine', methods=['GET'])
@login_required
def my_proposals():
    proposals = marketplace().proposals.list_proposals(
        freelancer_id=current_actor().id,
        status=request.args.get('status') or None
    )
    return jsonify([p.to_dict() for p in proposals])


@api.route('/proposals/<int:proposal_id>', methods=['GET'])
@login_required
def get_proposal(proposal_id):
    proposals = marketplace().proposals
    proposal = proposals.get_proposal(proposal_id)
    require(proposals.can_perform(current_actor(), 'view', proposal), 'You cannot view this proposal')
    return jsonify(proposal.to_dict())


@api.route('/proposals/<int:proposal_id>/offer', methods=['POST'])
@login_required
def send_offer(proposal_id):
    proposal = marketplace().proposals.send_offer(proposal_id, current_actor())
    return jsonify(proposal.to_dict())


@api.route('/proposals/<int:proposal_id>/accept', methods=['POST'])
@login_required
def accept_offer(proposal_id):
    contract = marketplace().contracts.accept_offer(proposal_id, current_actor())
    return jsonify(contract.to_dict()), 201


@api.route('/proposals/<int:proposal_id>/reject', methods=['POST'])
@login_required
def reject_offer(proposal_id):
    proposal = marketplace().proposals.reject_offer(proposal_id, current_actor())
    return jsonify(proposal.to_dict())


@api.route('/proposals/<int:proposal_id>', methods=['DELETE'])
@login_required
def withdraw_proposal(proposal_id):
    marketplace().proposals.withdraw(proposal_id, current_actor())
    return jsonify({'message': 'Proposal withdrawn'})


# Contracts

@api.route('/contracts', methods=['GET'])
@login_required
def list_contracts():
    contracts = marketplace().contracts.list_contracts(current_actor())
    return jsonify([c.to_dict() for c in contracts])


@api.route('/contracts/<int:contract_id>', methods=['GET'])
@login_required
def get_contract(contract_id):
    contracts = marketplace().contracts
    contract = contracts.get_contract(contract_id)
    require(contracts.can_perform(current_actor(), 'view', contract), 'You are not part of this contract')
    return jsonify(contract.to_dict())


# Escrow

@api.route('/jobs/<int:job_id>/escrow', methods=['POST'])
@login_required
def fund_escrow(job_id):
    data = _body()
    payer_info = {k: data[k] for k in ('email', 'first_name', 'last_name') if data.get(k)}
    escrow = marketplace().escrow.initialize(job_id, current_actor(), payer_info)
    return jsonify({'checkout_url': escrow.checkout_url, 'tx_ref': escrow.tx_ref}), 201


@api.route('/jobs/<int:job_id>/escrow', methods=['GET'])
@login_required
def get_escrow(job_id):
    ledger = marketplace().escrow
    escrow = ledger.get_current_for_job(job_id)
    if not escrow:
        raise NotFoundError('Escrow payment not found')
    require(ledger.can_perform(current_actor(), 'view', escrow), 'You are not part of this contract')
    return jsonify(escrow.to_dict())


@api.route('/payments/chapa/verify', methods=['POST'])
@login_required
def verify_payment():
    tx_ref = _body().get('tx_ref') or request.args.get('tx_ref')
    if not tx_ref:
        return jsonify({'error': 'tx_ref is required'}), 400
    escrow = marketplace().escrow.confirm_for_client(tx_ref, current_actor())
    return jsonify(escrow.to_dict())


@api.route('/payments/chapa/webhook', methods=['POST'])
def payment_webhook():
    signature = request.headers.get('Chapa-Signature') or request.headers.get('X-Chapa-Signature')
    escrow = marketplace().escrow.handle_webhook(_body(), request.get_data(), signature)
    current_app.logger.info(f"Payment webhook processed for escrow {escrow.id} ({escrow.status.value})")
    return jsonify({'status': escrow.status.value})


@api.route('/jobs/<int:job_id>/escrow/dispute', methods=['POST'])
@login_required
def open_dispute(job_id):
    dispute = marketplace().disputes.open_dispute(job_id, current_actor(), _body().get('reason'))
    return jsonify(dispute.to_dict()), 201


@api.route('/jobs/<int:job_id>/escrow/refund', methods=['POST'])
@login_required
def request_refund(job_id):
    escrow = marketplace().disputes.request_refund(job_id, current_actor(), _body().get('reason'))
    return jsonify(escrow.to_dict())


# Wallet

@api.route('/wallet', methods=['GET'])
@login_required
def get_wallet():
    wallet = marketplace().wallets.get_wallet(current_actor().id)
    return jsonify(wallet.to_dict())


@api.route('/wallet/transactions', methods=['GET'])
@login_required
def wallet_transactions():
    result = marketplace().wallets.list_transactions(
        current_actor().id,
        limit=request.args.get('limit', 50, type=int),
        offset=request.args.get('offset', 0, type=int)
    )
    return jsonify({
        'wallet': result['wallet'].to_dict(),
        'transactions': [t.to_dict() for t in result['transactions']],
        'pagination': result['pagination']
    })


# Admin

@api.route('/admin/jobs/<int:job_id>/hide', methods=['POST'])
@admin_required
def hide_job(job_id):
    job = marketplace().jobs.hide_job(job_id, current_actor(), _body().get('reason'))
    return jsonify(job.to_dict())


@api.route('/admin/jobs/<int:job_id>/unhide', methods=['POST'])
@admin_required
def unhide_job(job_id):
    job = marketplace().jobs.unhide_job(job_id, current_actor(), _body().get('reason'))
    return jsonify(job.to_dict())


ADMIN_ESCROW_ACTIONS = {
    'hold': 'admin_hold',
    'release': 'release',
    'refund': 'refund',
    'reject-dispute': 'admin_reject_dispute',
}


@api.route('/admin/escrow/<int:job_id>/<action>', methods=['POST'])
@admin_required
def admin_escrow_action(job_id, action):
    if action not in ADMIN_ESCROW_ACTIONS:
        raise NotFoundError('Unknown escrow action')
    operation = getattr(marketplace().escrow, ADMIN_ESCROW_ACTIONS[action])
    escrow = operation(job_id, current_actor(), _body().get('reason'))
    return jsonify(escrow.to_dict())


@api.route('/admin/disputes', methods=['GET'])
@admin_required
def admin_disputes():
    disputes = marketplace().disputes.list_disputes(
        job_id=request.args.get('job_id', type=int),
        status=request.args.get('status') or None
    )
    return jsonify([d.to_dict() for d in disputes])


@api.route('/admin/audit-logs', methods=['GET'])
@admin_required
def admin_audit_logs():
    entries = marketplace().audit.query(
        entity_type=request.args.get('entity_type') or None,
        entity_id=request.args.get('entity_id') or None,
        actor_id=request.args.get('actor_id', type=int),
        limit=request.args.get('limit', 100, type=int)
    )
    return jsonify([e.to_dict() for e in entries])


@api.route('/admin/wallets/<int:user_id>/verify', methods=['GET'])
@admin_required
def admin_verify_wallet(user_id):
    return jsonify({'user_id': user_id, 'consistent': marketplace().wallets.verify_balance(user_id)})
