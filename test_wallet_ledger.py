"""Tests for the append-only wallet ledger"""

from decimal import Decimal

import pytest

from errors import NotFoundError, ValidationError
from models import Wallet, WalletTransaction, WalletTransactionType


def test_get_wallet_creates_empty_wallet_once(market):
    wallet = market.wallets.get_wallet(42)
    again = market.wallets.get_wallet(42)

    assert wallet.id == again.id
    assert wallet.balance == Decimal('0')
    assert wallet.currency == 'ETB'
    assert Wallet.query.count() == 1


def test_credit_and_debit_keep_balance_equal_to_ledger(market):
    market.wallets.credit(7, Decimal('810.00'), 'ETB', reference='escrow_1_a')
    market.wallets.credit(7, Decimal('45.50'), 'ETB', reference='escrow_2_b')
    tx = market.wallets.debit(7, Decimal('100.25'), 'ETB', reference='clawback_1')

    wallet = market.wallets.get_wallet(7)
    assert tx.type == WalletTransactionType.DEBIT
    assert tx.signed_amount == Decimal('-100.25')
    assert wallet.balance == Decimal('755.25')
    assert market.wallets.replay_balance(wallet) == wallet.balance
    assert market.wallets.verify_balance(7) is True


def test_debit_rejects_overdraft(market):
    market.wallets.credit(7, Decimal('10.00'), 'ETB')

    with pytest.raises(ValidationError, match='Insufficient'):
        market.wallets.debit(7, Decimal('10.01'), 'ETB')

    assert market.wallets.get_wallet(7).balance == Decimal('10.00')
    assert WalletTransaction.query.count() == 1


@pytest.mark.parametrize('amount', [Decimal('0'), Decimal('-5')])
def test_non_positive_amounts_rejected(market, amount):
    with pytest.raises(ValidationError):
        market.wallets.credit(7, amount, 'ETB')


def test_currency_mismatch_rejected(market):
    with pytest.raises(ValidationError):
        market.wallets.credit(7, Decimal('5'), 'USD')
    assert WalletTransaction.query.count() == 0


def test_verify_balance_detects_tampering(market):
    market.wallets.credit(7, Decimal('50'), 'ETB')
    wallet = market.wallets.get_wallet(7)
    wallet.balance = Decimal('60')

    assert market.wallets.verify_balance(7) is False


def test_list_transactions_paginates_newest_first(market):
    for amount in ('1', '2', '3'):
        market.wallets.credit(7, Decimal(amount), 'ETB')

    result = market.wallets.list_transactions(7, limit=2)

    assert [t.amount for t in result['transactions']] == [Decimal('3.00'), Decimal('2.00')]
    assert result['pagination'] == {'total': 3, 'limit': 2, 'offset': 0, 'has_more': True}

    rest = market.wallets.list_transactions(7, limit=2, offset=2)
    assert rest['pagination']['has_more'] is False
    assert market.wallets.list_transactions(7, limit=500)['pagination']['limit'] == 100


def test_list_transactions_without_wallet(market):
    with pytest.raises(NotFoundError):
        market.wallets.list_transactions(404)
