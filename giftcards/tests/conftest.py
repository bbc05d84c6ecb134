from decimal import Decimal

import pytest

from giftcards.config import Settings
from giftcards.models import Company, Member
from giftcards.service import GiftCardService
from giftcards.storage import Storage


def make_company(company_id="001", name="Acme Co", balance=1000, members=("a@x.com", "b@x.com")):
    return Company(
        id=company_id,
        company_name=name,
        balance=Decimal(str(balance)),
        members=[
            Member(id=email, redemption_token=f"token-{company_id}-{i}", redemption_code=f"CODE{company_id}{i}")
            for i, email in enumerate(members)
        ],
    )


@pytest.fixture
def settings():
    return Settings(storage_backend="memory")


@pytest.fixture
def storage():
    return Storage.in_memory([
        make_company(),
        make_company("002", "Globex", 500, ("g@x.com",)),
    ])


@pytest.fixture
def service(storage, settings):
    return GiftCardService(storage=storage, settings=settings)
