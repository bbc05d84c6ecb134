"""
Balance ledger for company gift-card credit.

Every balance change is paired with a ledger entry:
- debit: a purchase against a member's gift card
- recharge: credit added to a company
- settlement: record-only capture confirmation of an earlier transaction
- cancellation: voids a purchase and refunds its amount to the company

Settlements and cancellations never raise for a bad request. Each rejected
attempt is written to the ledger as a zero-amount entry carrying the error, so
every attempt leaves a trace.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from .admin import CompanyAdmin
from .config import Settings, get_settings
from .directory import Directory, locate_company, locate_identifier
from .exceptions import (
    AlreadyCompensatedError,
    AmountMismatchError,
    CompanyNotFoundError,
    GiftCardServiceError,
    IdentifierNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    StorageError,
    TransactionMismatchError,
    TransactionNotFoundError,
    TransactionTypeInvalidError,
)
from .models import (
    CardDetail,
    CardSummary,
    CompensationResult,
    Link,
    RechargeResponse,
    Transaction,
    TransactionType,
    format_amount,
)
from .storage import CompanyLocks, Storage, build_storage

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


def _new_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_amount(value: Any) -> Optional[Decimal]:
    """Accept finite positive numbers only; booleans and strings are rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return None
    amount = Decimal(str(value))
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


def _require_positive(amount: Decimal) -> Decimal:
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError("Valid amount (> 0) is required")
    return amount


class GiftCardService:
    def __init__(self, storage: Optional[Storage] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.storage = storage or build_storage(self.settings)
        self.directory = Directory(self.storage.companies)
        self.locks = CompanyLocks()
        self.admin = CompanyAdmin(self.storage, self.locks)

    # Card views

    def search_by_email(self, email: str, base_url: str = "") -> list[CardSummary]:
        holder = self.directory.find_by_email(email)
        if holder is None:
            return []

        card_id = holder.identifier
        return [
            CardSummary(
                id=card_id,
                provider=self.settings.card_provider,
                balance=holder.company.balance,
                self_=Link(href=f"{base_url}/api/giftcards/{card_id}"),
            )
        ]

    def get_card(self, card_id: str) -> CardDetail:
        holder = self.directory.find_by_identifier(card_id)
        if holder is None:
            raise IdentifierNotFoundError("Gift card not found")

        member = holder.member
        return CardDetail(
            id=card_id,
            redemption_token=member.redemption_token or card_id,
            redemption_code=member.redemption_code or card_id,
            balance=holder.company.balance,
            emission_date=self.settings.card_emission_date,
            expiring_date=self.settings.card_expiring_date,
            currency_code=self.settings.currency_code,
            transactions=Link(href=f"/cards/{card_id}/transactions"),
        )

    def company_transactions(self, company_id: str) -> list[Transaction]:
        return self.storage.transactions.for_company(company_id)

    # Debit and credit

    def debit(self, card_id: str, amount: Decimal, request_id: Optional[str] = None) -> Transaction:
        """Charge a purchase of ``amount`` to the company behind ``card_id``.

        Nothing is written when validation fails.
        """
        amount = _require_positive(amount)
        holder = self.directory.find_by_identifier(card_id)
        if holder is None:
            raise IdentifierNotFoundError("Gift card not found")
        company_id = holder.company.id

        with self.locks.hold(company_id):
            def apply(companies):
                current = locate_identifier(companies, card_id)
                if current is None or current.company.id != company_id:
                    raise IdentifierNotFoundError("Gift card not found")
                company = current.company
                if company.balance < amount:
                    raise InsufficientBalanceError(
                        f"Insufficient balance. Available: {format_amount(company.balance)}, "
                        f"Requested: {format_amount(amount)}"
                    )
                company.balance -= amount
                return current.member

            member = self.storage.companies.update(apply)
            transaction = Transaction(
                id=_new_id(),
                date=_now(),
                amount=-amount,
                type=TransactionType.PURCHASE,
                user_id=member.id,
                company_id=company_id,
                card_id=card_id,
                request_id=request_id,
            )
            self._append_or_restore([transaction], company_id, amount)

        logger.info("Purchase %s of %s on card %s", transaction.id, format_amount(amount), card_id)
        return transaction

    def recharge(self, company_id: str, amount: Decimal, user_id: Optional[str] = None) -> RechargeResponse:
        amount = _require_positive(amount)

        with self.locks.hold(company_id):
            def apply(companies):
                company = locate_company(companies, company_id)
                if company is None:
                    raise CompanyNotFoundError("Company not found")
                company.balance += amount
                return company

            company = self.storage.companies.update(apply)
            transaction = Transaction(
                id=_new_id(),
                date=_now(),
                amount=amount,
                type=TransactionType.RECHARGE,
                user_id=user_id or self.settings.operator_user_id,
                company_id=company_id,
            )
            self._append_or_restore([transaction], company_id, -amount)

        logger.info("Recharged company %s with %s", company_id, format_amount(amount))
        return RechargeResponse(company=company, transaction=transaction)

    # Compensations

    def settle(self, card_id: str, original_id: str, value: Any, request_id: Optional[str] = None) -> CompensationResult:
        return self._compensate(TransactionType.SETTLEMENT, card_id, original_id, value, request_id)

    def cancel(self, card_id: str, original_id: str, value: Any, request_id: Optional[str] = None) -> CompensationResult:
        return self._compensate(TransactionType.CANCELATION, card_id, original_id, value, request_id)

    def _compensate(
        self,
        kind: TransactionType,
        card_id: str,
        original_id: str,
        value: Any,
        request_id: Optional[str],
    ) -> CompensationResult:
        def reject(error, user_id="", company_id=""):
            return self._reject(kind, card_id, original_id, error, user_id, company_id, request_id)

        amount = _coerce_amount(value)
        if amount is None:
            return reject("Invalid value in request body")

        holder = self.directory.find_by_identifier(card_id)
        if holder is None and kind == TransactionType.CANCELATION:
            return reject("Gift card not found")

        try:
            original = self._find_transaction(original_id)
        except TransactionNotFoundError as e:
            # only cancellations attribute the failure to the card holder
            if holder is None or kind == TransactionType.SETTLEMENT:
                return reject(str(e))
            return reject(str(e), holder.member.id, holder.company.id)

        with self.locks.hold(original.company_id):
            try:
                self._validate_compensation(kind, card_id, original, amount)
            except GiftCardServiceError as e:
                return reject(str(e), original.user_id, original.company_id)

            if kind == TransactionType.SETTLEMENT:
                return self._record_settlement(card_id, original, amount, request_id)
            return self._record_cancellation(card_id, original, amount, request_id)

    def _find_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.storage.transactions.get(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError("Transaction not found")
        return transaction

    def _validate_compensation(
        self,
        kind: TransactionType,
        card_id: str,
        original: Transaction,
        amount: Decimal,
    ) -> None:
        if original.card_id != card_id:
            raise TransactionMismatchError("Transaction does not correspond to the specified gift card")

        if kind == TransactionType.CANCELATION and original.type != TransactionType.PURCHASE:
            raise TransactionTypeInvalidError(
                "Transaction is not a purchase. Only purchase transactions can be cancelled"
            )

        expected = abs(original.amount)
        if abs(amount - expected) > AMOUNT_TOLERANCE:
            raise AmountMismatchError(
                f"Amount mismatch. Expected: {format_amount(expected)}, Received: {format_amount(amount)}"
            )

        prior = self.storage.transactions.compensations_of(original.id)
        if prior:
            state = "settled" if prior[0].type == TransactionType.SETTLEMENT else "cancelled"
            raise AlreadyCompensatedError(f"Transaction already {state}")

        if kind == TransactionType.CANCELATION and self.directory.find_company(original.company_id) is None:
            raise CompanyNotFoundError("Company not found")

    def _record_settlement(
        self,
        card_id: str,
        original: Transaction,
        amount: Decimal,
        request_id: Optional[str],
    ) -> CompensationResult:
        settlement = Transaction(
            id=_new_id(),
            date=_now(),
            amount=amount,
            type=TransactionType.SETTLEMENT,
            user_id=original.user_id,
            company_id=original.company_id,
            card_id=card_id,
            original_transaction_id=original.id,
            request_id=request_id,
        )
        self.storage.transactions.append(settlement)

        logger.info("Settled transaction %s as %s", original.id, settlement.id)
        return CompensationResult(transaction=settlement)

    def _record_cancellation(
        self,
        card_id: str,
        original: Transaction,
        amount: Decimal,
        request_id: Optional[str],
    ) -> CompensationResult:
        date = _now()
        cancelation = Transaction(
            id=_new_id(),
            date=date,
            amount=amount,
            type=TransactionType.CANCELATION,
            user_id=original.user_id,
            company_id=original.company_id,
            card_id=card_id,
            original_transaction_id=original.id,
            request_id=request_id,
        )
        refund = Transaction(
            id=_new_id(),
            date=date,
            amount=amount,
            type=TransactionType.REFUND,
            user_id=original.user_id,
            company_id=original.company_id,
            card_id=card_id,
            original_transaction_id=original.id,
        )

        def apply(companies):
            company = locate_company(companies, original.company_id)
            if company is None:
                raise CompanyNotFoundError("Company not found")
            company.balance += amount

        self.storage.companies.update(apply)
        self._append_or_restore([cancelation, refund], original.company_id, -amount)

        logger.info(
            "Cancelled transaction %s; refunded %s to company %s",
            original.id, format_amount(amount), original.company_id,
        )
        return CompensationResult(transaction=cancelation, refund=refund)

    def _reject(
        self,
        kind: TransactionType,
        card_id: str,
        original_id: str,
        error: str,
        user_id: str,
        company_id: str,
        request_id: Optional[str],
    ) -> CompensationResult:
        failed = Transaction(
            id=_new_id(),
            date=_now(),
            amount=Decimal("0"),
            type=kind,
            user_id=user_id,
            company_id=company_id,
            card_id=card_id,
            error=error,
            original_transaction_id=original_id,
            request_id=request_id,
        )
        self.storage.transactions.append(failed)

        logger.warning("Rejected %s of %s on card %s: %s", kind.value, original_id, card_id, error)
        return CompensationResult(transaction=failed, error=error)

    # Cross-store consistency

    def _append_or_restore(self, transactions: list[Transaction], company_id: str, balance_delta: Decimal) -> None:
        """Append ``transactions``; if the ledger write fails, undo the balance change."""
        try:
            self.storage.transactions.append_many(transactions)
        except StorageError:
            logger.error("Ledger write failed, restoring balance of company %s", company_id)
            self._restore_balance(company_id, balance_delta)
            raise

    def _restore_balance(self, company_id: str, balance_delta: Decimal) -> None:
        def apply(companies):
            company = locate_company(companies, company_id)
            if company is not None:
                company.balance += balance_delta

        try:
            self.storage.companies.update(apply)
        except StorageError:
            logger.exception(
                "Could not restore balance of company %s; balance and ledger have diverged", company_id
            )
