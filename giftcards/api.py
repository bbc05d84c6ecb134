import logging
import time
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .config import get_settings
from .exceptions import GiftCardServiceError
from .models import (
    AddMemberRequest,
    CardDetail,
    CardSummary,
    Company,
    CompensationResponse,
    CompensationResult,
    CreateCompanyRequest,
    DebitRequest,
    DebitResponse,
    DeleteResponse,
    ErrorResponse,
    Link,
    Member,
    RechargeRequest,
    RechargeResponse,
    StatsResponse,
    Transaction,
    UpdateCompanyRequest,
    UpdateMemberRequest,
)
from .service import GiftCardService

settings = get_settings()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "x-provider-api-appkey",
    "x-provider-api-apptoken",
}

CARD_HEADERS = {
    "X-VTEX-Provider-Authentication": "validated",
    "Cache-Control": "no-cache, no-store, must-revalidate",
}

app = FastAPI(
    title="Gift Card Credit API",
    description="Company credit redeemable by members through gift-card identifiers, backed by an append-only ledger",
    version="2.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

router = APIRouter(prefix="/api")

_service: Optional[GiftCardService] = None


def get_service() -> GiftCardService:
    global _service
    if _service is None:
        _service = GiftCardService(settings=settings)
    return _service


def _mask_headers(headers: dict[str, str]) -> dict[str, str]:
    return {k: "***masked***" if k.lower() in SENSITIVE_HEADERS else v for k, v in headers.items()}


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    logger.info({
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": int((time.time() - start_time) * 1000),
        "client": request.client.host if request.client else None,
        "headers": _mask_headers(dict(request.headers)),
    })
    return response


@app.exception_handler(GiftCardServiceError)
async def service_error_handler(request: Request, exc: GiftCardServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []) if loc != "body")
    message = first_error.get("msg", "Validation error")
    logger.warning("Validation error on %s: %s (%s)", request.url.path, message, field)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": f"Invalid value for '{field}': {message}"},
    )


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return {}


def _base_url(request: Request) -> str:
    host = request.headers.get("host", "localhost:3000")
    if "localhost" in host:
        return ""
    protocol = request.headers.get("x-forwarded-proto", "http")
    return f"{protocol}://{host}"


def _compensation_body(result: CompensationResult) -> Union[CompensationResponse, ErrorResponse]:
    if not result.succeeded:
        return ErrorResponse(error=result.error)
    return CompensationResponse(
        oid=result.transaction.id,
        value=result.transaction.amount,
        date=result.transaction.date,
    )


async def _compensate(action, card_id: str, transaction_id: str, request: Request):
    body = await _read_json(request)
    if not isinstance(body, dict):
        body = {}
    result = await run_in_threadpool(action, card_id, transaction_id, body.get("value"), body.get("requestId"))
    return _compensation_body(result)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "giftcards"}


@router.get("", tags=["System"])
def index():
    return {"message": "Welcome to Gift Cards API", "status": "online", "version": app.version}


# Gift cards

@router.post("/giftcards/_search", response_model=list[CardSummary], tags=["Gift cards"])
async def search_gift_cards(request: Request, response: Response, service: GiftCardService = Depends(get_service)):
    body = await _read_json(request)
    client = body.get("client") if isinstance(body, dict) else None
    email = client.get("email") if isinstance(client, dict) else None
    if not isinstance(email, str) or not email:
        return []

    response.headers.update(CARD_HEADERS)
    return await run_in_threadpool(service.search_by_email, email, _base_url(request))


@router.get("/giftcards/{card_id}", response_model=CardDetail, tags=["Gift cards"])
def get_gift_card(card_id: str, response: Response, service: GiftCardService = Depends(get_service)):
    card = service.get_card(card_id)
    response.headers.update(CARD_HEADERS)
    return card


@router.post("/giftcards/{card_id}/transactions", response_model=DebitResponse, tags=["Gift cards"])
def create_purchase(card_id: str, request: DebitRequest, service: GiftCardService = Depends(get_service)):
    transaction = service.debit(card_id, request.value, request.request_id)
    href = f"{service.settings.transaction_href_prefix}/giftcards/{card_id}/transactions/{transaction.id}"
    return DebitResponse(card_id=card_id, id=transaction.id, self_=Link(href=href))


@router.post(
    "/giftcards/{card_id}/transactions/{transaction_id}/settlements",
    response_model=Union[CompensationResponse, ErrorResponse],
    tags=["Gift cards"],
)
async def create_settlement(
    card_id: str,
    transaction_id: str,
    request: Request,
    service: GiftCardService = Depends(get_service),
):
    return await _compensate(service.settle, card_id, transaction_id, request)


@router.post(
    "/giftcards/{card_id}/transactions/{transaction_id}/cancellations",
    response_model=Union[CompensationResponse, ErrorResponse],
    tags=["Gift cards"],
)
async def create_cancellation(
    card_id: str,
    transaction_id: str,
    request: Request,
    service: GiftCardService = Depends(get_service),
):
    return await _compensate(service.cancel, card_id, transaction_id, request)


# Administration

@router.get("/admin/companies", response_model=list[Company], tags=["Admin"])
def list_companies(service: GiftCardService = Depends(get_service)):
    return service.admin.list_companies()


@router.post("/admin/companies", response_model=Company, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def create_company(request: CreateCompanyRequest, service: GiftCardService = Depends(get_service)):
    return service.admin.create_company(request)


@router.get("/admin/companies/{company_id}", response_model=Company, tags=["Admin"])
def get_company(company_id: str, service: GiftCardService = Depends(get_service)):
    return service.admin.get_company(company_id)


@router.put("/admin/companies/{company_id}", response_model=Company, tags=["Admin"])
def update_company(company_id: str, request: UpdateCompanyRequest, service: GiftCardService = Depends(get_service)):
    return service.admin.update_company(company_id, request)


@router.delete("/admin/companies/{company_id}", response_model=DeleteResponse, tags=["Admin"])
def delete_company(company_id: str, service: GiftCardService = Depends(get_service)):
    return service.admin.delete_company(company_id)


@router.post("/admin/companies/{company_id}/recharge", response_model=RechargeResponse,
             response_model_exclude_none=True, tags=["Admin"])
def recharge_company(company_id: str, request: RechargeRequest, service: GiftCardService = Depends(get_service)):
    return service.recharge(company_id, request.amount, request.user_id)


@router.get("/admin/companies/{company_id}/transactions", response_model=list[Transaction],
            response_model_exclude_none=True, tags=["Admin"])
def list_company_transactions(company_id: str, service: GiftCardService = Depends(get_service)):
    return service.company_transactions(company_id)


@router.get("/admin/companies/{company_id}/members", response_model=list[Member], tags=["Admin"])
def list_members(company_id: str, service: GiftCardService = Depends(get_service)):
    return service.admin.list_members(company_id)


@router.post("/admin/companies/{company_id}/members", response_model=Member,
             status_code=status.HTTP_201_CREATED, tags=["Admin"])
def add_member(company_id: str, request: AddMemberRequest, service: GiftCardService = Depends(get_service)):
    return service.admin.add_member(company_id, request)


@router.put("/admin/companies/{company_id}/members", response_model=Member, tags=["Admin"])
def update_member(company_id: str, request: UpdateMemberRequest, service: GiftCardService = Depends(get_service)):
    return service.admin.update_member(company_id, request)


@router.delete("/admin/companies/{company_id}/members", response_model=DeleteResponse, tags=["Admin"])
def remove_member(
    company_id: str,
    user_id: Optional[str] = Query(default=None, alias="userId"),
    service: GiftCardService = Depends(get_service),
):
    return service.admin.remove_member(company_id, user_id)


@router.get("/admin/stats", response_model=StatsResponse, tags=["Admin"])
def get_stats(service: GiftCardService = Depends(get_service)):
    return service.admin.stats()


app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
