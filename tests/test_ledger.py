"""Tests for transfer signing and the in-memory ledger."""

import pytest
from eth_account import Account

from turnstile.errors import LedgerIndexUnavailable, LedgerUnavailableError, TransactionRejectedError
from turnstile.ledger import ConfirmationStatus, LocalLedger, sign_transfer


@pytest.fixture
def sender(ledger):
    account = Account.create()
    ledger.set_balance(account.address, 10**18)
    return account


def transfer(account, ledger, value=10**17, nonce=0, gas_limit=21_000):
    return sign_transfer(
        account,
        to=Account.create().address,
        value=value,
        nonce=nonce,
        gas_limit=gas_limit,
        gas_price=ledger.gas_price,
        chain_id=ledger.chain_id,
    )


class TestSignTransfer:
    def test_signature_recovers_sender(self, sender, ledger):
        signed = transfer(sender, ledger)
        assert Account.recover_transaction(signed.raw_transaction) == sender.address
        assert signed.tx_ref.startswith("0x") and len(signed.tx_ref) == 66

    def test_max_fee(self, sender):
        signed = sign_transfer(sender, sender.address, 1, 0, 21_000, 7, 1)
        assert signed.max_fee == 147_000


class TestLocalLedger:
    def test_deposit_credits_and_indexes(self, ledger):
        address = Account.create().address
        tx = ledger.deposit(address, 500)
        assert ledger.get_balance(address) == 500
        assert ledger.get_balance(address.lower()) == 500
        assert tx.delta_for(address) == 500
        assert ledger.get_recent_transactions(address, 10) == [tx]
        assert ledger.get_transaction(tx.ref.upper().replace("0X", "0x")) is tx

    def test_failed_deposit_moves_nothing(self, ledger):
        address = Account.create().address
        ledger.deposit(address, 500, success=False)
        assert ledger.get_balance(address) == 0

    def test_recent_is_newest_first_and_limited(self, ledger):
        address = Account.create().address
        txs = [ledger.deposit(address, i + 1) for i in range(5)]
        recent = ledger.get_recent_transactions(address, 3)
        assert recent == list(reversed(txs))[:3]

    def test_submit_moves_funds_and_bumps_nonce(self, ledger, sender):
        signed = transfer(sender, ledger)
        ref = ledger.submit_transaction(signed)
        assert ref == signed.tx_ref
        assert ledger.get_balance(sender.address) == 9 * 10**17
        assert ledger.get_balance(signed.to) == 10**17
        assert ledger.get_nonce(sender.address) == 1
        assert ledger.confirm(ref, timeout=1) == ConfirmationStatus.CONFIRMED

    def test_submit_charges_fee(self, clock):
        ledger = LocalLedger(gas_price=10, clock=clock)
        account = Account.create()
        ledger.set_balance(account.address, 1_000_000)
        ledger.submit_transaction(transfer(account, ledger, value=100))
        assert ledger.get_balance(account.address) == 1_000_000 - 100 - 210_000

    def test_wrong_nonce_rejected(self, ledger, sender):
        with pytest.raises(TransactionRejectedError, match="Nonce"):
            ledger.submit_transaction(transfer(sender, ledger, nonce=3))

    def test_replayed_transaction_rejected(self, ledger, sender):
        signed = transfer(sender, ledger)
        ledger.submit_transaction(signed)
        with pytest.raises(TransactionRejectedError):
            ledger.submit_transaction(signed)

    def test_insufficient_funds_rejected(self, ledger, sender):
        with pytest.raises(TransactionRejectedError, match="Insufficient"):
            ledger.submit_transaction(transfer(sender, ledger, value=2 * 10**18))

    def test_forged_sender_rejected(self, ledger, sender):
        signed = transfer(Account.create(), ledger)
        signed.sender = sender.address
        with pytest.raises(TransactionRejectedError, match="Signature"):
            ledger.submit_transaction(signed)

    def test_unknown_transaction_times_out(self, ledger):
        assert ledger.confirm("0x" + "ab" * 32, timeout=1) == ConfirmationStatus.TIMEOUT
        assert ledger.get_transaction("0x" + "ab" * 32) is None

    def test_failure_modes(self, ledger):
        address = Account.create().address
        ledger.index_available = False
        with pytest.raises(LedgerIndexUnavailable):
            ledger.get_recent_transactions(address, 5)
        assert ledger.get_balance(address) == 0

        ledger.online = False
        with pytest.raises(LedgerUnavailableError):
            ledger.get_balance(address)
