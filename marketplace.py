"""Wires the marketplace components together for one application"""

import logging

from audit_log import AuditLog
from contract_manager import ContractManager
from dispute_resolver import DisputeResolver
from escrow_ledger import EscrowLedger
from job_lifecycle import JobLifecycle
from notifications import DatabaseNotifier
from payment_gateway import ChapaGateway
from proposal_lifecycle import ProposalLifecycle
from wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)


class Marketplace:
    """
    Holds one instance of each component, sharing the same collaborators.

    ``gateway`` and ``notifier`` may be injected (tests pass fakes); by
    default they are built from the Flask config.
    """

    def __init__(self, config, gateway=None, notifier=None):
        self.gateway = gateway or ChapaGateway.from_config(config)
        self.notifier = notifier or DatabaseNotifier(config.get('NOTIFICATION_DEDUP_SECONDS', 5))

        self.audit = AuditLog()
        self.wallets = WalletLedger()
        self.jobs = JobLifecycle(self.audit)
        self.proposals = ProposalLifecycle(self.jobs, self.notifier)
        self.contracts = ContractManager(self.jobs, self.proposals, self.notifier)
        self.escrow = EscrowLedger(
            self.jobs,
            self.contracts,
            self.wallets,
            self.audit,
            self.gateway,
            return_url=config.get('CHAPA_RETURN_URL'),
            callback_url=config.get('CHAPA_WEBHOOK_URL')
        )
        self.jobs.escrow = self.escrow
        self.disputes = DisputeResolver(self.jobs, self.contracts, self.escrow)

        if isinstance(self.gateway, ChapaGateway) and not self.gateway.is_available():
            logger.warning("CHAPA_SECRET_KEY not set - escrow funding will be rejected")
