"""
Resolve gift-card identifiers and member emails to a company and member index.

Lookups scan companies and their members in storage order, so when two
companies share a slug (or an email) the first one stored wins.
"""

from typing import NamedTuple, Optional, Sequence

from .identifiers import build_identifier, parse_identifier, slugify_company_name
from .models import Company, Member
from .storage import CollectionStore


class CardHolder(NamedTuple):
    company: Company
    member_index: int

    @property
    def member(self) -> Member:
        return self.company.members[self.member_index]

    @property
    def identifier(self) -> str:
        return build_identifier(self.company.company_name, self.member_index)


def locate_email(companies: Sequence[Company], email: str) -> Optional[CardHolder]:
    for company in companies:
        index = company.member_index(email)
        if index is not None:
            return CardHolder(company, index)
    return None


def locate_identifier(companies: Sequence[Company], identifier: str) -> Optional[CardHolder]:
    parsed = parse_identifier(identifier)
    if parsed is None:
        return None

    for company in companies:
        if slugify_company_name(company.company_name) != parsed.slug:
            continue
        # A slug match with too few members keeps scanning; a later company
        # with the same slug may still satisfy the index.
        if parsed.index < len(company.members):
            return CardHolder(company, parsed.index)
    return None


def locate_company(companies: Sequence[Company], company_id: str) -> Optional[Company]:
    for company in companies:
        if company.id == company_id:
            return company
    return None


class Directory:
    def __init__(self, companies: CollectionStore[Company]):
        self.companies = companies

    def find_by_email(self, email: str) -> Optional[CardHolder]:
        return locate_email(self.companies.load_all(), email)

    def find_by_identifier(self, identifier: str) -> Optional[CardHolder]:
        return locate_identifier(self.companies.load_all(), identifier)

    def find_company(self, company_id: str) -> Optional[Company]:
        return locate_company(self.companies.load_all(), company_id)
