"""
Corporate Gift-Card Credit Ledger

This package provides:
- Gift-card identifiers (``<slug>_<index>``) mapped to company members
- Company balances debited by purchases and credited by recharges
- Settlement and cancellation/refund of purchases against an append-only ledger
- Audit records for every rejected settlement or cancellation attempt
"""

from .identifiers import build_identifier, parse_identifier, slugify_company_name
from .models import (
    Company,
    Member,
    Transaction,
    TransactionType,
)
from .service import GiftCardService

__all__ = [
    "Company",
    "Member",
    "Transaction",
    "TransactionType",
    "GiftCardService",
    "build_identifier",
    "parse_identifier",
    "slugify_company_name",
]
