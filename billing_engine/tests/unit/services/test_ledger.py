"""
Tests for the Ledger Reconciler.
"""

import threading
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from billing_engine.services.billing.errors import (
    InvalidPaymentError,
    InvalidStatusTransition,
    InvoiceNotFoundError,
    LedgerIntegrityError,
    RepresentativeNotFoundError,
)
from billing_engine.services.billing.ledger import LedgerReconciler, RepresentativeLocks, classify_balance
from billing_engine.services.billing.models import (
    BalanceStatus, ImportBatch, BatchSource, InvoiceStatus, TransactionType,
)
from billing_engine.tests.factories import ISSUED_AT, make_invoice


@pytest.fixture
def ledger(storage, fixed_clock):
    return LedgerReconciler(storage, clock=fixed_clock)


def store_invoices(storage, *invoices):
    storage.persist_import_result(ImportBatch(
        batch_id="batch-1",
        source=BatchSource.STRUCTURED,
        processed_at=ISSUED_AT,
        total_rows=len(invoices),
        processed_rows=len(invoices),
        skipped_rows=0,
        no_charge_rows=0,
        errors=(),
        notices=(),
        invoices=tuple(invoices),
    ))


class TestClassifyBalance:

    @pytest.mark.parametrize("balance, expected", [
        (Decimal("1"), BalanceStatus.DEBTOR),
        (Decimal("-0.01"), BalanceStatus.CREDITOR),
        (Decimal("0"), BalanceStatus.SETTLED),
    ])
    def test_classification(self, balance, expected):
        assert classify_balance(balance) == expected


class TestPosting:

    def test_invoice_is_a_debit(self, ledger, alice):
        balance = ledger.post_invoice(alice.representative_id, make_invoice(alice.representative_id, "INV-1", "15000"))

        assert balance == Decimal("15000")
        entry = ledger.get_snapshot(alice.representative_id).transactions[0]
        assert entry.transaction_type == TransactionType.INVOICE
        assert entry.amount == Decimal("15000")
        assert entry.reference_number == "INV-1"
        assert entry.sequence == 1

    def test_payment_is_a_credit(self, ledger, alice):
        ledger.post_invoice(alice.representative_id, make_invoice(alice.representative_id, "INV-1", "15000"))

        balance = ledger.post_payment(alice.representative_id, Decimal("20000"), reference="TX-9")

        assert balance == Decimal("-5000")
        snapshot = ledger.get_snapshot(alice.representative_id)
        assert snapshot.balance_status == BalanceStatus.CREDITOR
        assert snapshot.transactions[-1].amount == Decimal("-20000")
        assert snapshot.transactions[-1].reference_number == "TX-9"

    def test_running_balance_chain(self, storage, alice, fixed_clock):
        ledger = LedgerReconciler(storage, clock=fixed_clock, currency_minor_unit=Decimal("0.01"))
        rep = alice.representative_id
        ledger.post_invoice(rep, make_invoice(rep, "INV-1", "1000"))
        ledger.post_payment(rep, "400")
        ledger.post_invoice(rep, make_invoice(rep, "INV-2", "250.50"))
        ledger.post_payment(rep, 850)
        ledger.post_payment(rep, "0.50")

        entries = ledger.get_snapshot(rep).transactions

        assert entries[0].running_balance == entries[0].amount
        for previous, entry in zip(entries, entries[1:]):
            assert entry.running_balance == previous.running_balance + entry.amount
            assert entry.sequence == previous.sequence + 1
        assert ledger.get_current_balance(rep) == Decimal("0")
        assert ledger.get_snapshot(rep).balance_status == BalanceStatus.SETTLED

    def test_empty_ledger(self, ledger, alice):
        snapshot = ledger.get_snapshot(alice.representative_id)

        assert ledger.get_current_balance(alice.representative_id) == Decimal("0")
        assert snapshot.transactions == ()
        assert snapshot.balance_status == BalanceStatus.SETTLED

    def test_snapshot_to_dict(self, ledger, alice):
        rep = alice.representative_id
        ledger.post_invoice(rep, make_invoice(rep, "INV-1", "300"))

        data = ledger.get_snapshot(rep).to_dict()

        assert data["current_balance"] == "300"
        assert data["balance_status"] == "debtor"
        assert data["transactions"][0]["transaction_type"] == "invoice"


class TestIntegrity:

    def test_invoice_cannot_be_posted_twice(self, ledger, alice):
        rep = alice.representative_id
        invoice = make_invoice(rep, "INV-1", "100")
        ledger.post_invoice(rep, invoice)

        with pytest.raises(LedgerIntegrityError):
            ledger.post_invoice(rep, invoice)
        assert len(ledger.get_snapshot(rep).transactions) == 1

    def test_invoice_of_another_representative(self, ledger, alice, bob):
        with pytest.raises(LedgerIntegrityError):
            ledger.post_invoice(alice.representative_id, make_invoice(bob.representative_id, "INV-1", "100"))

    def test_backdated_entry_is_rejected(self, ledger, alice):
        rep = alice.representative_id
        ledger.post_invoice(rep, make_invoice(rep, "INV-1", "100"))

        with pytest.raises(LedgerIntegrityError):
            ledger.post_payment(rep, "50", transaction_date=ISSUED_AT - timedelta(days=1))
        assert ledger.get_current_balance(rep) == Decimal("100")

    def test_occupied_slot_cannot_be_rewritten(self, ledger, storage, alice):
        rep = alice.representative_id
        ledger.post_invoice(rep, make_invoice(rep, "INV-1", "100"))
        original = storage.get_last_ledger_entry(rep)

        with pytest.raises(LedgerIntegrityError):
            storage.append_ledger_entry(rep, replace(original, amount=Decimal("1"), running_balance=Decimal("1")))
        assert storage.get_ledger_entries(rep) == [original]

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "NaN", Decimal("-0.01")])
    def test_invalid_payment(self, ledger, alice, amount):
        with pytest.raises(InvalidPaymentError):
            ledger.post_payment(alice.representative_id, amount)

    def test_payment_for_unknown_representative(self, ledger):
        with pytest.raises(RepresentativeNotFoundError):
            ledger.post_payment("nobody", "10")

    def test_payment_finer_than_currency_unit(self, ledger, alice):
        with pytest.raises(InvalidPaymentError):
            ledger.post_payment(alice.representative_id, "0.5")
        assert ledger.get_snapshot(alice.representative_id).transactions == ()

    def test_future_dated_payment_is_rejected(self, ledger, alice):
        with pytest.raises(InvalidPaymentError):
            ledger.post_payment(alice.representative_id, "100", transaction_date=ISSUED_AT + timedelta(seconds=1))
        assert ledger.get_snapshot(alice.representative_id).transactions == ()

    def test_rolled_back_invoice_can_be_posted_again(self, ledger, storage, alice):
        rep = alice.representative_id
        invoice = make_invoice(rep, "INV-1", "100")

        with pytest.raises(RuntimeError):
            with storage.transaction():
                ledger.post_invoice(rep, invoice)
                raise RuntimeError("abort")

        assert not storage.ledger_reference_exists(rep, TransactionType.INVOICE, "INV-1")
        assert ledger.post_invoice(rep, invoice) == Decimal("100")
        assert storage.ledger_reference_exists(rep, TransactionType.INVOICE, "INV-1")

    def test_reconcile_accepts_a_clean_chain(self, ledger, alice):
        rep = alice.representative_id
        ledger.post_invoice(rep, make_invoice(rep, "INV-1", "100"))
        ledger.post_payment(rep, "30")

        snapshot = ledger.reconcile(rep)

        assert snapshot.current_balance == Decimal("70")
        assert snapshot.balance_status == BalanceStatus.DEBTOR

    def test_reconcile_detects_a_broken_chain(self, ledger, storage, alice):
        rep = alice.representative_id
        ledger.post_invoice(rep, make_invoice(rep, "INV-1", "100"))
        ledger.post_payment(rep, "30")
        # Corrupt the stored chain behind the ledger's back
        storage._ledger[rep][1] = replace(storage._ledger[rep][1], running_balance=Decimal("99"))

        with pytest.raises(LedgerIntegrityError):
            ledger.reconcile(rep)


class TestStatusChanges:

    def test_transition_and_idempotent_repeat(self, ledger, storage, alice):
        rep = alice.representative_id
        store_invoices(storage, make_invoice(rep, "INV-1", "100"))

        assert ledger.apply_status_change("INV-1", InvoiceStatus.OVERDUE).status == InvoiceStatus.OVERDUE
        assert ledger.apply_status_change("INV-1", "overdue").status == InvoiceStatus.OVERDUE
        assert ledger.apply_status_change("INV-1", "paid").status == InvoiceStatus.PAID
        assert storage.get_invoice("INV-1").status == InvoiceStatus.PAID

    def test_status_change_does_not_touch_the_ledger(self, ledger, storage, alice):
        rep = alice.representative_id
        store_invoices(storage, make_invoice(rep, "INV-1", "100"))

        ledger.apply_status_change("INV-1", "cancelled")

        assert ledger.get_snapshot(rep).transactions == ()

    @pytest.mark.parametrize("start, target", [
        ("paid", "pending"),
        ("paid", "cancelled"),
        ("cancelled", "paid"),
        ("overdue", "pending"),
    ])
    def test_illegal_transitions(self, ledger, storage, alice, start, target):
        store_invoices(storage, make_invoice(alice.representative_id, "INV-1", "100"))
        if start == "paid" or start == "cancelled":
            ledger.apply_status_change("INV-1", start)
        else:
            ledger.apply_status_change("INV-1", "overdue")

        with pytest.raises(InvalidStatusTransition):
            ledger.apply_status_change("INV-1", target)

    def test_unknown_invoice(self, ledger):
        with pytest.raises(InvoiceNotFoundError):
            ledger.apply_status_change("INV-404", "paid")


class TestConcurrency:

    def test_parallel_payments_keep_the_chain_intact(self, storage, alice, fixed_clock):
        ledger = LedgerReconciler(storage, RepresentativeLocks(), clock=fixed_clock)
        rep = alice.representative_id
        ledger.post_invoice(rep, make_invoice(rep, "INV-1", "1000"))

        def pay():
            for _ in range(25):
                ledger.post_payment(rep, "5")

        threads = [threading.Thread(target=pay) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        snapshot = ledger.reconcile(rep)
        assert len(snapshot.transactions) == 201
        assert snapshot.current_balance == Decimal("0")

    def test_locks_acquire_multiple_keys(self):
        locks = RepresentativeLocks()

        with locks.hold("b", "a", "a"):
            with locks.hold("a"):
                pass
