"""
Unit Tests for the Balance Ledger

Tests cover:
1. Debit (purchase) flow
2. Recharge flow
3. Cancellation and refund
4. Settlement
5. Rejected compensations recorded as audit entries
6. Rollback when the ledger cannot be written
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from giftcards.exceptions import (
    CompanyNotFoundError,
    IdentifierNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    StorageError,
)
from giftcards.models import TransactionType
from giftcards.service import GiftCardService
from giftcards.storage import InMemoryStore, Storage, TransactionStore

from conftest import make_company


class FlakyStore(InMemoryStore):
    """In-memory store whose writes can be switched off."""

    fail = False

    def save_all(self, items):
        if self.fail:
            raise StorageError("Error saving transactions.json")
        super().save_all(items)


def balance_of(service, company_id="001"):
    return service.admin.get_company(company_id).balance


def ledger(service):
    return service.storage.transactions.load_all()


class TestDebitFlow:
    """Tests for purchases against a gift card."""

    def test_debit_reduces_balance_and_records_purchase(self, service):
        transaction = service.debit("acmeco_0", Decimal("300"))

        assert balance_of(service) == Decimal("700")
        assert ledger(service) == [transaction]
        assert transaction.type == TransactionType.PURCHASE
        assert transaction.amount == Decimal("-300")
        assert transaction.card_id == "acmeco_0"
        assert transaction.user_id == "a@x.com"
        assert transaction.company_id == "001"
        assert transaction.error is None

    def test_debit_records_member_behind_index(self, service):
        transaction = service.debit("acmeco_1", Decimal("10"), request_id="req-1")

        assert transaction.user_id == "b@x.com"
        assert transaction.request_id == "req-1"

    def test_debit_whole_balance(self, service):
        service.debit("globex_0", Decimal("500"))

        assert balance_of(service, "002") == Decimal("0")

    def test_insufficient_balance_changes_nothing(self, service):
        with pytest.raises(InsufficientBalanceError):
            service.debit("acmeco_0", Decimal("1000.01"))

        assert balance_of(service) == Decimal("1000")
        assert ledger(service) == []

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("NaN")])
    def test_invalid_amount_rejected(self, service, amount):
        with pytest.raises(InvalidAmountError):
            service.debit("acmeco_0", amount)

        assert ledger(service) == []

    def test_unknown_identifier(self, service):
        with pytest.raises(IdentifierNotFoundError):
            service.debit("unknownslug_0", Decimal("10"))

    def test_index_out_of_range(self, service):
        with pytest.raises(IdentifierNotFoundError):
            service.debit("acmeco_2", Decimal("10"))

        assert balance_of(service) == Decimal("1000")

    def test_concurrent_debits_never_overdraw(self, service):
        """Parallel purchases are serialized per company."""
        def attempt(_):
            try:
                service.debit("acmeco_0", Decimal("10"))
                return True
            except InsufficientBalanceError:
                return False

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(attempt, range(120)))

        assert results.count(True) == 100
        assert balance_of(service) == Decimal("0")
        assert len(ledger(service)) == 100


class TestRechargeFlow:
    """Tests for crediting a company."""

    def test_recharge_adds_balance_and_records_transaction(self, service):
        response = service.recharge("002", Decimal("250"))

        assert response.success
        assert response.company.balance == Decimal("750")
        assert balance_of(service, "002") == Decimal("750")
        assert response.transaction.type == TransactionType.RECHARGE
        assert response.transaction.amount == Decimal("250")
        assert response.transaction.user_id == "admin"
        assert response.transaction.card_id is None

    def test_recharge_records_acting_user(self, service):
        response = service.recharge("001", Decimal("1"), user_id="ops@x.com")

        assert response.transaction.user_id == "ops@x.com"

    def test_unknown_company(self, service):
        with pytest.raises(CompanyNotFoundError):
            service.recharge("999", Decimal("10"))

        assert ledger(service) == []

    def test_unknown_companies_leave_no_locks(self, service):
        for i in range(50):
            with pytest.raises(CompanyNotFoundError):
                service.recharge(f"bogus{i}", Decimal("1"))

        assert len(service.locks) == 0

    def test_invalid_amount(self, service):
        with pytest.raises(InvalidAmountError):
            service.recharge("001", Decimal("0"))

        assert balance_of(service) == Decimal("1000")


class TestCancellationFlow:
    """Tests for cancelling a purchase and refunding it."""

    def test_cancel_restores_balance_and_records_refund(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))

        result = service.cancel("acmeco_0", purchase.id, 300)

        assert result.succeeded
        assert balance_of(service) == Decimal("1000")

        entries = ledger(service)
        assert [t.type for t in entries] == [
            TransactionType.PURCHASE,
            TransactionType.CANCELATION,
            TransactionType.REFUND,
        ]
        cancelation, refund = entries[1], entries[2]
        assert cancelation == result.transaction
        assert refund == result.refund
        assert cancelation.amount == refund.amount == Decimal("300")
        assert cancelation.original_transaction_id == refund.original_transaction_id == purchase.id
        assert refund.company_id == "001"
        assert refund.user_id == "a@x.com"

    def test_amount_mismatch_rejected(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))

        result = service.cancel("acmeco_0", purchase.id, 301)

        assert not result.succeeded
        assert result.error == "Amount mismatch. Expected: 300, Received: 301"
        assert balance_of(service) == Decimal("700")

        failed = ledger(service)[-1]
        assert failed.type == TransactionType.CANCELATION
        assert failed.amount == Decimal("0")
        assert failed.error == result.error
        assert failed.original_transaction_id == purchase.id
        assert failed.company_id == "001"

    def test_amount_within_tolerance_accepted(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))

        result = service.cancel("acmeco_0", purchase.id, 300.005)

        assert result.succeeded

    def test_cancel_recharge_rejected(self, service):
        recharge = service.recharge("001", Decimal("50")).transaction

        result = service.cancel("acmeco_0", recharge.id, 50)

        assert not result.succeeded
        assert result.transaction.amount == Decimal("0")
        assert result.transaction.error
        assert balance_of(service) == Decimal("1050")

    def test_cancel_non_purchase_rejected(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))
        settlement = service.settle("acmeco_0", purchase.id, 300).transaction

        result = service.cancel("acmeco_0", settlement.id, 300)

        assert result.error == "Transaction is not a purchase. Only purchase transactions can be cancelled"
        assert balance_of(service) == Decimal("700")

    def test_cancel_through_other_card_rejected(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))

        result = service.cancel("acmeco_1", purchase.id, 300)

        assert result.error == "Transaction does not correspond to the specified gift card"
        assert balance_of(service) == Decimal("700")

    def test_unknown_card(self, service):
        result = service.cancel("unknownslug_0", "t1", 10)

        assert result.error == "Gift card not found"
        assert ledger(service)[-1].original_transaction_id == "t1"

    def test_unknown_transaction(self, service):
        result = service.cancel("acmeco_1", "missing", 10)

        assert result.error == "Transaction not found"
        assert result.transaction.user_id == "b@x.com"
        assert result.transaction.company_id == "001"

    @pytest.mark.parametrize("value", [None, "300", True, 0, -1, float("nan"), float("inf")])
    def test_invalid_value_recorded(self, service, value):
        purchase = service.debit("acmeco_0", Decimal("300"))

        result = service.cancel("acmeco_0", purchase.id, value)

        assert result.error == "Invalid value in request body"
        assert result.transaction.amount == Decimal("0")
        assert result.transaction.original_transaction_id == purchase.id
        assert balance_of(service) == Decimal("700")

    def test_second_cancellation_rejected(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))
        service.cancel("acmeco_0", purchase.id, 300)

        result = service.cancel("acmeco_0", purchase.id, 300)

        assert result.error == "Transaction already cancelled"
        assert balance_of(service) == Decimal("1000")
        refunds = [t for t in ledger(service) if t.type == TransactionType.REFUND]
        assert len(refunds) == 1

    def test_cancel_after_company_removed(self, service):
        purchase = service.debit("globex_0", Decimal("100"))
        service.admin.delete_company("002")

        result = service.cancel("globex_0", purchase.id, 100)

        assert result.error == "Gift card not found"


class TestSettlementFlow:
    """Tests for settling a purchase."""

    def test_settle_records_without_balance_change(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))

        result = service.settle("acmeco_0", purchase.id, 300, request_id="cap-1")

        assert result.succeeded
        assert balance_of(service) == Decimal("700")
        assert result.transaction.type == TransactionType.SETTLEMENT
        assert result.transaction.amount == Decimal("300")
        assert result.transaction.original_transaction_id == purchase.id
        assert result.transaction.user_id == "a@x.com"
        assert result.transaction.request_id == "cap-1"
        assert result.refund is None

    def test_settle_failure_never_changes_balance(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))

        for value in (299, "x", None):
            result = service.settle("acmeco_0", purchase.id, value)
            assert not result.succeeded

        assert balance_of(service) == Decimal("700")
        assert [t.amount for t in ledger(service)[1:]] == [Decimal("0")] * 3

    def test_settle_unknown_transaction(self, service):
        result = service.settle("acmeco_0", "missing", 10)

        assert result.error == "Transaction not found"
        assert result.transaction.user_id == ""
        assert result.transaction.company_id == ""

    def test_settle_with_unresolvable_card_reports_mismatch(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))

        result = service.settle("ghost_0", purchase.id, 300)

        assert result.error == "Transaction does not correspond to the specified gift card"
        assert result.transaction.company_id == "001"

    def test_cancel_after_settlement_rejected(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))
        service.settle("acmeco_0", purchase.id, 300)

        result = service.cancel("acmeco_0", purchase.id, 300)

        assert result.error == "Transaction already settled"
        assert balance_of(service) == Decimal("700")

    def test_settle_after_cancellation_rejected(self, service):
        purchase = service.debit("acmeco_0", Decimal("300"))
        service.cancel("acmeco_0", purchase.id, 300)

        result = service.settle("acmeco_0", purchase.id, 300)

        assert result.error == "Transaction already cancelled"


class TestLedgerWriteFailure:
    """Balance changes are undone when the ledger cannot be written."""

    def make_service(self, settings):
        ledger_backend = FlakyStore()
        storage = Storage(
            companies=InMemoryStore([make_company()]),
            transactions=TransactionStore(ledger_backend),
        )
        return GiftCardService(storage=storage, settings=settings), ledger_backend

    def test_debit_rolled_back(self, settings):
        service, backend = self.make_service(settings)
        backend.fail = True

        with pytest.raises(StorageError):
            service.debit("acmeco_0", Decimal("300"))

        assert balance_of(service) == Decimal("1000")

    def test_recharge_rolled_back(self, settings):
        service, backend = self.make_service(settings)
        backend.fail = True

        with pytest.raises(StorageError):
            service.recharge("001", Decimal("300"))

        assert balance_of(service) == Decimal("1000")

    def test_cancellation_rolled_back(self, settings):
        service, backend = self.make_service(settings)
        purchase = service.debit("acmeco_0", Decimal("300"))
        backend.fail = True

        with pytest.raises(StorageError):
            service.cancel("acmeco_0", purchase.id, 300)

        assert balance_of(service) == Decimal("700")
        backend.fail = False
        assert ledger(service) == [purchase]


class TestCardViews:
    """Tests for card search and detail views."""

    def test_search_by_email(self, service):
        cards = service.search_by_email("b@x.com")

        assert len(cards) == 1
        assert cards[0].id == "acmeco_1"
        assert cards[0].provider == "credit_gift"
        assert cards[0].balance == Decimal("1000")
        assert cards[0].self_.href == "/api/giftcards/acmeco_1"

    def test_search_with_base_url(self, service):
        cards = service.search_by_email("g@x.com", "https://cards.example.com")

        assert cards[0].self_.href == "https://cards.example.com/api/giftcards/globex_0"

    def test_search_unknown_email(self, service):
        assert service.search_by_email("nobody@x.com") == []

    def test_get_card(self, service):
        card = service.get_card("acmeco_1")

        assert card.redemption_token == "token-001-1"
        assert card.redemption_code == "CODE0011"
        assert card.balance == Decimal("1000")
        assert card.currency_code == "COP"
        assert card.transactions.href == "/cards/acmeco_1/transactions"

    def test_get_card_falls_back_to_identifier(self, settings):
        company = make_company()
        company.members[0].redemption_token = ""
        service = GiftCardService(storage=Storage.in_memory([company]), settings=settings)

        assert service.get_card("acmeco_0").redemption_token == "acmeco_0"

    def test_get_unknown_card(self, service):
        with pytest.raises(IdentifierNotFoundError):
            service.get_card("acmeco_9")

    def test_company_transactions_newest_first(self, service):
        first = service.debit("acmeco_0", Decimal("1"))
        service.debit("globex_0", Decimal("1"))
        second = service.recharge("001", Decimal("5")).transaction

        entries = service.company_transactions("001")

        assert [t.id for t in entries] == [second.id, first.id]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
