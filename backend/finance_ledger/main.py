import logging
from datetime import date
from typing import Any
from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, File, Header, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException

from .bootstrap import Services, build_services
from .config import Settings
from .config import settings as default_settings
from .errors import LedgerError, Unauthorized
from .log_setup import setup_logging
from .mailer import send_quietly
from .schemas import (
    AccountBalanceResponse,
    AccountCreate,
    AccountPeriodBalanceResponse,
    AccountResponse,
    AccountUpdate,
    ApiErrorDetail,
    ApiErrorResponse,
    BalancesRequest,
    CategoryCreate,
    CategoryResponse,
    CategoryUpdate,
    HealthResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PeriodBounds,
    ReceiptResponse,
    RegisterRequest,
    TransactionCreate,
    TransactionResponse,
    TransactionUpdate,
    TransferCreate,
    TransferResponse,
)
from .services.balance import day_bounds

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def _token_from_header(authorization: str | None) -> str:
    if not authorization:
        raise Unauthorized("missing Authorization header")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise Unauthorized("invalid Authorization header")
    return parts[1].strip()


def current_user(
    services: Services = Depends(get_services),
    authorization: str | None = Header(default=None),
) -> UUID:
    return services.auth.authenticate(_token_from_header(authorization))


def _account_response(row: dict[str, Any]) -> AccountResponse:
    return AccountResponse(
        id=row["id"],
        name=row["name"],
        accountType=row["account_type"],
        initialBalance=row["initial_balance"],
        currentBalance=row["current_balance"],
        color=row.get("color"),
        icon=row.get("icon"),
        createdAt=row["created_at"],
    )


def _category_response(row: dict[str, Any]) -> CategoryResponse:
    return CategoryResponse(id=row["id"], name=row["name"], createdAt=row["created_at"])


def _transaction_response(row: dict[str, Any]) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        description=row["description"],
        amount=row["amount"],
        type=row["type"],
        date=row["transaction_at"],
        categoryId=row["category_id"],
        accountId=row["account_id"],
        transferGroupId=row.get("transfer_group_id"),
        createdAt=row["created_at"],
    )


def content_disposition(filename: str, disposition: str = "inline") -> str:
    """RFC 6266 header value: an ASCII fallback plus the UTF-8 encoded name."""
    fallback = filename.encode("ascii", "replace").decode("ascii")
    fallback = "".join("_" if ch in '"\\?' or not 32 <= ord(ch) < 127 else ch for ch in fallback) or "receipt"
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def _period_response(services: Services, user_id: UUID, account_id: UUID, start_date: date | None, end_date: date | None) -> AccountPeriodBalanceResponse:
    start, end = day_bounds(start_date, end_date)
    account, balance, period = services.engine.period_balance(user_id, account_id, start, end)
    return AccountPeriodBalanceResponse(
        accountId=account["id"],
        accountName=account["name"],
        balance=balance,
        openingBalance=period.opening,
        closingBalance=period.closing,
        netChange=period.net,
        inflow=period.inflow,
        outflow=period.outflow,
        period=PeriodBounds(start=start_date, end=end_date),
    )


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.post("/auth/register", response_model=MessageResponse)
def auth_register(
    payload: RegisterRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> MessageResponse:
    message = services.auth.register(payload)
    background_tasks.add_task(send_quietly, services.mailer, message)
    return MessageResponse(message="User registered. Please check your e-mail to confirm the account.")


@router.get("/auth/verify", response_model=MessageResponse)
def auth_verify(token: str, services: Services = Depends(get_services)) -> MessageResponse:
    if services.auth.verify(token):
        return MessageResponse(message="E-mail verified successfully.")
    return MessageResponse(message="E-mail already verified.")


@router.post("/auth/login", response_model=LoginResponse)
def auth_login(payload: LoginRequest, services: Services = Depends(get_services)) -> LoginResponse:
    token, user = services.auth.login(payload.email, payload.password)
    return LoginResponse(token=token, id=user["id"], name=user["name"], email=user["email"])


@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    payload: AccountCreate,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> AccountResponse:
    return _account_response(services.persistence.create_account(user_id, payload))


@router.get("/accounts", response_model=list[AccountResponse])
def list_accounts(
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> list[AccountResponse]:
    return [_account_response(row) for row in services.persistence.list_accounts(user_id)]


@router.post("/accounts/transfer", response_model=TransferResponse, status_code=201)
def create_transfer(
    payload: TransferCreate,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> TransferResponse:
    result = services.transfers.transfer(user_id, payload)
    return TransferResponse(
        message="Transfer completed successfully.",
        transferGroupId=result["transferGroupId"],
        outgoing=_transaction_response(result["outgoing"]),
        incoming=_transaction_response(result["incoming"]),
    )


@router.get("/accounts/balance", response_model=list[AccountBalanceResponse])
def account_balances(
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> list[AccountBalanceResponse]:
    return [
        AccountBalanceResponse(
            accountId=account["id"],
            accountName=account["name"],
            balance=balance,
            cachedBalance=account["current_balance"],
        )
        for account, balance in services.engine.account_balances(user_id)
    ]


@router.get("/accounts/balance/{account_id}", response_model=AccountPeriodBalanceResponse)
def account_period_balance(
    account_id: UUID,
    startDate: date | None = None,
    endDate: date | None = None,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> AccountPeriodBalanceResponse:
    return _period_response(services, user_id, account_id, startDate, endDate)


@router.post("/accounts/balances", response_model=list[AccountPeriodBalanceResponse])
def account_period_balances(
    payload: BalancesRequest,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> list[AccountPeriodBalanceResponse]:
    return [
        _period_response(services, user_id, account_id, payload.startDate, payload.endDate)
        for account_id in payload.accountIds
    ]


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> AccountResponse:
    return _account_response(services.persistence.get_account(user_id, account_id))


@router.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: UUID,
    payload: AccountUpdate,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> AccountResponse:
    return _account_response(services.persistence.update_account(user_id, account_id, payload))


@router.delete("/accounts/{account_id}", response_model=MessageResponse)
def delete_account(
    account_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> MessageResponse:
    services.persistence.delete_account(user_id, account_id)
    return MessageResponse(message="Account deleted successfully.")


@router.post("/categories", response_model=CategoryResponse, status_code=201)
def create_category(
    payload: CategoryCreate,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> CategoryResponse:
    return _category_response(services.persistence.create_category(user_id, payload))


@router.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> list[CategoryResponse]:
    return [_category_response(row) for row in services.persistence.list_categories(user_id)]


@router.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: UUID,
    payload: CategoryUpdate,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> CategoryResponse:
    return _category_response(services.persistence.update_category(user_id, category_id, payload))


@router.delete("/categories/{category_id}", response_model=MessageResponse)
def delete_category(
    category_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> MessageResponse:
    services.persistence.delete_category(user_id, category_id)
    return MessageResponse(message="Category deleted successfully.")


@router.post("/expenses", response_model=TransactionResponse, status_code=201)
def create_expense(
    payload: TransactionCreate,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> TransactionResponse:
    return _transaction_response(services.transactions.create(user_id, payload))


@router.get("/expenses", response_model=list[TransactionResponse])
def list_expenses(
    startDate: date | None = None,
    endDate: date | None = None,
    accountId: UUID | None = None,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> list[TransactionResponse]:
    rows = services.transactions.list_transactions(user_id, account_id=accountId, start_date=startDate, end_date=endDate)
    return [_transaction_response(row) for row in rows]


@router.put("/expenses/{transaction_id}", response_model=TransactionResponse)
def update_expense(
    transaction_id: UUID,
    payload: TransactionUpdate,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> TransactionResponse:
    return _transaction_response(services.transactions.update(user_id, transaction_id, payload))


@router.delete("/expenses/{transaction_id}", response_model=MessageResponse)
def delete_expense(
    transaction_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> MessageResponse:
    removed = services.transactions.delete(user_id, transaction_id)
    if len(removed) > 1:
        return MessageResponse(message="Transfer deleted successfully.")
    return MessageResponse(message="Expense deleted successfully.")


@router.post("/expenses/{transaction_id}/receipt", response_model=ReceiptResponse, status_code=201)
async def upload_receipt(
    transaction_id: UUID,
    file: UploadFile = File(...),
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> ReceiptResponse:
    content = await file.read()
    receipt = await run_in_threadpool(
        services.transactions.attach_receipt,
        user_id,
        transaction_id,
        content,
        file.filename or "receipt",
        file.content_type or "application/octet-stream",
    )
    return ReceiptResponse(
        transactionId=transaction_id,
        filename=receipt.filename,
        contentType=receipt.content_type,
        size=receipt.size,
    )


@router.get("/expenses/{transaction_id}/receipt")
def download_receipt(
    transaction_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> Response:
    receipt = services.transactions.get_receipt(user_id, transaction_id)
    return Response(
        content=receipt.content,
        media_type=receipt.content_type,
        headers={"Content-Disposition": content_disposition(receipt.filename)},
    )


@router.delete("/expenses/{transaction_id}/receipt", response_model=MessageResponse)
def delete_receipt(
    transaction_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
) -> MessageResponse:
    services.transactions.remove_receipt(user_id, transaction_id)
    return MessageResponse(message="Receipt deleted successfully.")


def build_error_response(status_code: int, message: str, details: list[ApiErrorDetail] | None = None) -> JSONResponse:
    payload = ApiErrorResponse(error=message, details=details or None)
    return JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return build_error_response(exc.status_code, exc.message)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return build_error_response(exc.status_code, str(exc.detail))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(400, "Invalid request payload", details)


async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return build_error_response(500, "Internal server error")


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings.log_level, settings.log_file)
    app = FastAPI(
        title="Finance Ledger API",
        version="0.1.0",
        description="Personal finance ledger: accounts, categories, transactions, transfers and balance reports.",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )
    app.state.services = services or build_services(settings)
    app.include_router(router)
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unexpected_exception_handler)

    @app.on_event("shutdown")
    def close_services() -> None:
        app.state.services.close()

    return app


app = create_app()
