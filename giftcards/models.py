from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel


def _amount_to_number(value: Decimal) -> Union[int, float]:
    if value == value.to_integral_value():
        return int(value)
    return float(value)


# Decimal in memory, plain JSON number on the wire and on disk. Non-integral
# amounts go through float, so they keep 15 significant digits.
Amount = Annotated[
    Decimal,
    PlainSerializer(_amount_to_number, return_type=Union[int, float], when_used="json"),
]


def format_amount(value: Decimal) -> str:
    return str(_amount_to_number(value))


def _require_number(value):
    """Request amounts must arrive as JSON numbers, never as strings or booleans."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValueError("must be a number")
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    RECHARGE = "recharge"
    SETTLEMENT = "settlement"
    CANCELATION = "cancelation"
    REFUND = "refund"


class Member(CamelModel):
    id: str = Field(..., description="Member email, unique within a company")
    redemption_token: str = ""
    redemption_code: str = ""


class Company(CamelModel):
    id: str
    company_name: str
    balance: Amount = Decimal("0")
    members: list[Member] = Field(default_factory=list)

    def member_index(self, email: str) -> Optional[int]:
        for index, member in enumerate(self.members):
            if member.id == email:
                return index
        return None


class Transaction(CamelModel):
    id: str
    date: datetime
    amount: Amount
    type: TransactionType
    user_id: str = ""
    company_id: str = ""
    card_id: Optional[str] = None
    error: Optional[str] = None
    original_transaction_id: Optional[str] = None
    request_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def succeeded(self) -> bool:
        return self.error is None


class Link(BaseModel):
    href: str


# Requests

class DebitRequest(CamelModel):
    value: Amount
    request_id: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def check_value(cls, v):
        return _require_number(v)

    model_config = ConfigDict(json_schema_extra={
        "example": {"value": 300, "requestId": "a1b2c3"}
    })


class RechargeRequest(CamelModel):
    amount: Amount
    user_id: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, v):
        return _require_number(v)


class MemberInput(CamelModel):
    id: str
    redemption_token: Optional[str] = None
    redemption_code: Optional[str] = None


class CreateCompanyRequest(CamelModel):
    company_name: str
    balance: Amount
    members: list[MemberInput] = Field(default_factory=list)

    @field_validator("balance", mode="before")
    @classmethod
    def check_balance(cls, v):
        return _require_number(v)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "companyName": "Acme Co",
            "balance": 1000,
            "members": [{"id": "a@x.com"}],
        }
    })


class UpdateCompanyRequest(CamelModel):
    company_name: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class AddMemberRequest(CamelModel):
    user_id: str
    redemption_token: Optional[str] = None
    redemption_code: Optional[str] = None


class UpdateMemberRequest(CamelModel):
    user_id: str
    new_user_id: Optional[str] = None
    redemption_token: Optional[str] = None
    redemption_code: Optional[str] = None


# Responses

class DebitResponse(CamelModel):
    card_id: str
    id: str
    self_: Link = Field(..., alias="_self")


class CardSummary(CamelModel):
    id: str
    provider: str
    balance: Amount
    self_: Link = Field(..., alias="_self")


class CardDetail(CamelModel):
    id: str
    redemption_token: str
    redemption_code: str
    balance: Amount
    emission_date: str
    expiring_date: str
    currency_code: str
    transactions: Link


class CompensationResult(BaseModel):
    """Outcome of a settlement or cancellation attempt.

    ``transaction`` is always the entry written to the ledger; on rejection it
    is the zero-amount record carrying ``error``.
    """
    transaction: Transaction
    refund: Optional[Transaction] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class CompensationResponse(BaseModel):
    oid: str
    value: Amount
    date: datetime


class ErrorResponse(BaseModel):
    error: str


class RechargeResponse(BaseModel):
    success: bool = True
    company: Company
    transaction: Transaction


class StatsResponse(CamelModel):
    total_companies: int
    total_balance: Amount
    total_members: int
    companies: list[Company]


class DeleteResponse(BaseModel):
    success: bool
    message: str
