"""
Company and member administration.

Company balances are not editable here: they only move through the ledger
(debit, recharge, cancellation) in ``service.py``.
"""

import logging
import re
from decimal import Decimal
from typing import Optional, Sequence
from uuid import uuid4

from .directory import locate_company
from .exceptions import (
    CompanyNotFoundError,
    ConflictError,
    InvalidRequestError,
    MemberNotFoundError,
)
from .identifiers import slugify_company_name
from .models import (
    AddMemberRequest,
    Company,
    CreateCompanyRequest,
    DeleteResponse,
    Member,
    StatsResponse,
    UpdateCompanyRequest,
    UpdateMemberRequest,
)
from .storage import CompanyLocks, Storage

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email) is not None


def _next_company_id(companies: Sequence[Company]) -> str:
    ids = [int(c.id) for c in companies if c.id.isdigit()]
    return f"{max(ids, default=0) + 1:03d}"


def _check_name_available(companies: Sequence[Company], name: str, exclude_id: Optional[str] = None) -> None:
    slug = slugify_company_name(name)
    if not slug:
        raise InvalidRequestError("Company name must contain letters or digits")

    for company in companies:
        if company.id == exclude_id:
            continue
        if company.company_name == name:
            raise ConflictError("Company name already exists")
        # Identifiers are built from the slug, so two companies sharing one
        # would make the later company's cards unreachable.
        if slugify_company_name(company.company_name) == slug:
            raise ConflictError(f"Company name collides with '{company.company_name}' in gift card identifiers")


def _new_member(
    company: Company,
    email: str,
    redemption_token: Optional[str] = None,
    redemption_code: Optional[str] = None,
) -> Member:
    token = redemption_token or uuid4().hex
    code = redemption_code or (
        f"{company.company_name.upper()[:4]}{company.id}MBR{len(company.members) + 1:02d}"
    )
    return Member(id=email, redemption_token=token, redemption_code=code)


def _require_company(companies: Sequence[Company], company_id: str) -> Company:
    company = locate_company(companies, company_id)
    if company is None:
        raise CompanyNotFoundError("Company not found")
    return company


class CompanyAdmin:
    def __init__(self, storage: Storage, locks: CompanyLocks):
        self.storage = storage
        self.locks = locks

    def list_companies(self) -> list[Company]:
        return self.storage.companies.load_all()

    def get_company(self, company_id: str) -> Company:
        return _require_company(self.storage.companies.load_all(), company_id)

    def create_company(self, request: CreateCompanyRequest) -> Company:
        name = request.company_name.strip()
        if not name:
            raise InvalidRequestError("Company name is required")
        if not request.balance.is_finite() or request.balance < 0:
            raise InvalidRequestError("Valid balance (>= 0) is required")

        seen = set()
        for member in request.members:
            if not is_valid_email(member.id):
                raise InvalidRequestError(f"Invalid email for member: {member.id}")
            if member.id in seen:
                raise ConflictError(f"Duplicate member: {member.id}")
            seen.add(member.id)

        def apply(companies):
            _check_name_available(companies, name)
            company = Company(id=_next_company_id(companies), company_name=name, balance=request.balance)
            for member in request.members:
                company.members.append(
                    _new_member(company, member.id, member.redemption_token, member.redemption_code)
                )
            companies.append(company)
            return company

        company = self.storage.companies.update(apply)
        logger.info("Created company %s (%s) with %d member(s)", company.id, company.company_name, len(company.members))
        return company

    def update_company(self, company_id: str, request: UpdateCompanyRequest) -> Company:
        with self.locks.hold(company_id):
            def apply(companies):
                company = _require_company(companies, company_id)
                if request.company_name is not None:
                    name = request.company_name.strip()
                    if not name:
                        raise InvalidRequestError("Invalid company name")
                    if name != company.company_name:
                        _check_name_available(companies, name, exclude_id=company.id)
                        if slugify_company_name(name) != slugify_company_name(company.company_name):
                            logger.warning(
                                "Renaming company %s changes the identifiers of its %d gift card(s)",
                                company.id, len(company.members),
                            )
                        company.company_name = name
                return company

            return self.storage.companies.update(apply)

    def delete_company(self, company_id: str) -> DeleteResponse:
        with self.locks.hold(company_id):
            def apply(companies):
                companies.remove(_require_company(companies, company_id))

            self.storage.companies.update(apply)

        logger.info("Deleted company %s", company_id)
        return DeleteResponse(success=True, message="Company deleted")

    # Members

    def list_members(self, company_id: str) -> list[Member]:
        return self.get_company(company_id).members

    def add_member(self, company_id: str, request: AddMemberRequest) -> Member:
        if not is_valid_email(request.user_id):
            raise InvalidRequestError("Valid email is required")

        with self.locks.hold(company_id):
            def apply(companies):
                company = _require_company(companies, company_id)
                if company.member_index(request.user_id) is not None:
                    raise ConflictError("User already exists in this company")
                member = _new_member(company, request.user_id, request.redemption_token, request.redemption_code)
                company.members.append(member)
                return member

            return self.storage.companies.update(apply)

    def update_member(self, company_id: str, request: UpdateMemberRequest) -> Member:
        if not request.user_id:
            raise InvalidRequestError("User ID (email) is required")

        with self.locks.hold(company_id):
            def apply(companies):
                company = _require_company(companies, company_id)
                index = company.member_index(request.user_id)
                if index is None:
                    raise MemberNotFoundError("Member not found")
                member = company.members[index]

                if request.new_user_id is not None:
                    if not is_valid_email(request.new_user_id):
                        raise InvalidRequestError("Invalid email format")
                    if request.new_user_id != request.user_id and company.member_index(request.new_user_id) is not None:
                        raise ConflictError("Email already exists in this company")
                    member.id = request.new_user_id
                if request.redemption_token is not None:
                    member.redemption_token = request.redemption_token
                if request.redemption_code is not None:
                    member.redemption_code = request.redemption_code
                return member

            return self.storage.companies.update(apply)

    def remove_member(self, company_id: str, user_id: Optional[str]) -> DeleteResponse:
        if not user_id:
            raise InvalidRequestError("User ID (email) is required as query parameter")

        with self.locks.hold(company_id):
            def apply(companies):
                company = _require_company(companies, company_id)
                index = company.member_index(user_id)
                if index is None:
                    raise MemberNotFoundError("Member not found")
                del company.members[index]
                return len(company.members) - index

            shifted = self.storage.companies.update(apply)

        if shifted:
            logger.warning(
                "Removed %s from company %s; %d later gift card identifier(s) now point to a different member",
                user_id, company_id, shifted,
            )
        return DeleteResponse(success=True, message="Member deleted")

    def stats(self) -> StatsResponse:
        companies = self.storage.companies.load_all()
        return StatsResponse(
            total_companies=len(companies),
            total_balance=sum((c.balance for c in companies), Decimal("0")),
            total_members=sum(len(c.members) for c in companies),
            companies=companies,
        )
