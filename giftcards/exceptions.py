class GiftCardServiceError(Exception):
    """Base class for every error the ledger reports to its callers."""

    status_code = 400


class InvalidAmountError(GiftCardServiceError):
    pass


class InvalidRequestError(GiftCardServiceError):
    pass


class IdentifierNotFoundError(GiftCardServiceError):
    status_code = 404


class CompanyNotFoundError(GiftCardServiceError):
    status_code = 404


class MemberNotFoundError(GiftCardServiceError):
    status_code = 404


class ConflictError(GiftCardServiceError):
    """Raised when a company name, slug or member email is already taken."""
    pass


class InsufficientBalanceError(GiftCardServiceError):
    pass


class TransactionNotFoundError(GiftCardServiceError):
    status_code = 404


class TransactionMismatchError(GiftCardServiceError):
    """The original transaction belongs to a different gift card."""
    pass


class TransactionTypeInvalidError(GiftCardServiceError):
    pass


class AmountMismatchError(GiftCardServiceError):
    pass


class AlreadyCompensatedError(GiftCardServiceError):
    pass


class StorageError(GiftCardServiceError):
    """Raised when a store cannot be read or written."""

    status_code = 500
