"""
Wallet ledger: per-user balance backed by an append-only transaction log.

A wallet is only ever changed by appending a WalletTransaction, and the
balance always equals the signed sum of that wallet's transactions.
"""

import logging
from decimal import Decimal

from config import ESCROW_CURRENCY
from database import db, atomic
from errors import NotFoundError, ValidationError
from models import Wallet, WalletTransaction, WalletTransactionType

logger = logging.getLogger(__name__)


class WalletLedger:

    def get_wallet(self, user_id, lock=False):
        """Return the user's wallet, creating an empty one on first read"""
        q = Wallet.query.filter_by(user_id=user_id)
        if lock:
            q = q.with_for_update()
        wallet = q.first()
        if not wallet:
            with atomic():
                wallet = Wallet(user_id=user_id, balance=Decimal('0'), currency=ESCROW_CURRENCY)
                db.session.add(wallet)
                db.session.flush()
        return wallet

    def credit(self, user_id, amount, currency, reference=None, metadata=None):
        """Increase balance and append a CREDIT transaction"""
        return self._apply(user_id, WalletTransactionType.CREDIT, amount, currency, reference, metadata)

    def debit(self, user_id, amount, currency, reference=None, metadata=None):
        """Decrease balance and append a DEBIT transaction (e.g. a platform clawback)"""
        return self._apply(user_id, WalletTransactionType.DEBIT, amount, currency, reference, metadata)

    def _apply(self, user_id, tx_type, amount, currency, reference, metadata):
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError('Wallet transaction amount must be positive')

        with atomic():
            wallet = self.get_wallet(user_id, lock=True)
            if wallet.currency != currency:
                raise ValidationError(f'Wallet currency is {wallet.currency}, not {currency}')

            if tx_type == WalletTransactionType.DEBIT:
                if wallet.balance < amount:
                    raise ValidationError('Insufficient wallet balance')
                wallet.balance = wallet.balance - amount
            else:
                wallet.balance = wallet.balance + amount

            tx = WalletTransaction(
                wallet_id=wallet.id,
                type=tx_type,
                amount=amount,
                currency=currency,
                reference=reference,
                meta=metadata
            )
            db.session.add(tx)
            db.session.flush()

        logger.info(f"Wallet {wallet.id} {tx_type.value} {amount} {currency} (ref {reference})")
        return tx

    def list_transactions(self, user_id, limit=50, offset=0):
        wallet = Wallet.query.filter_by(user_id=user_id).first()
        if not wallet:
            raise NotFoundError('Wallet not found')

        limit = min(limit or 50, 100)
        offset = offset or 0
        q = WalletTransaction.query.filter_by(wallet_id=wallet.id)
        total = q.count()
        transactions = (
            q.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return {
            'wallet': wallet,
            'transactions': transactions,
            'pagination': {
                'total': total,
                'limit': limit,
                'offset': offset,
                'has_more': offset + len(transactions) < total
            }
        }

    def replay_balance(self, wallet):
        """Rebuild a balance from the transaction log alone"""
        balance = Decimal('0')
        for tx in WalletTransaction.query.filter_by(wallet_id=wallet.id).order_by(WalletTransaction.id):
            balance += tx.signed_amount
        return balance

    def verify_balance(self, user_id):
        """True when the stored balance matches the replayed transaction log"""
        wallet = Wallet.query.filter_by(user_id=user_id).first()
        if not wallet:
            raise NotFoundError('Wallet not found')
        replayed = self.replay_balance(wallet)
        if replayed != wallet.balance:
            logger.error(f"Wallet {wallet.id} balance {wallet.balance} does not match ledger {replayed}")
            return False
        return True
