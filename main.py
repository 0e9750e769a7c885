from fastapi import APIRouter, FastAPI, HTTPException, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import List, Optional
import logging
import structlog
import sys
import time
from contextlib import asynccontextmanager

from config import Settings, get_settings
from errors import TransactionError
from models import Account, ErrorResponse, HealthResponse, TransactionEntry, TransactionRequest, TransactionResponse
from repositories import AccountLockRegistry, SqlAccountRepository, SqlTransactionLogRepository
from services import TransactionService, get_transaction_service
from storage import Database

logger = structlog.get_logger()


def configure_logging(settings: Settings) -> None:
    """Configure structured logging for the whole process."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout)
    logging.getLogger().setLevel(level)

    if settings.log_format == "text":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    database: Database = app.state.database

    # Startup
    logger.info("Starting Bank Transaction API", environment=settings.environment, port=settings.port)
    await database.create_all()
    if settings.seed_demo_data:
        await database.seed_if_empty()
    yield
    # Shutdown
    await database.dispose()
    logger.info("Shutting down Bank Transaction API")


# Dependency injection
def get_service(request: Request) -> TransactionService:
    return request.app.state.transaction_service


router = APIRouter(prefix="/api/accounts", tags=["accounts"])


@router.get(
    "",
    response_model=List[Account],
    summary="List Accounts",
    responses={500: {"model": ErrorResponse, "description": "Storage error"}},
)
async def list_accounts(service: TransactionService = Depends(get_service)):
    return await service.list_accounts()


@router.get(
    "/transactions/{account_id}",
    response_model=List[TransactionEntry],
    summary="Account History",
    description="Transactions recorded for one account, newest first",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid account id"},
        500: {"model": ErrorResponse, "description": "Storage error"},
    },
)
async def list_transactions(account_id: str, service: TransactionService = Depends(get_service)):
    return await service.list_transactions(account_id)


@router.get(
    "/{account_id}",
    response_model=Account,
    summary="Get Account",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid account id"},
        404: {"model": ErrorResponse, "description": "Account not found"},
        500: {"model": ErrorResponse, "description": "Storage error"},
    },
)
async def get_account(account_id: str, service: TransactionService = Depends(get_service)):
    return await service.get_account(account_id)


def error_response(status_code: int, detail: str, error_code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, error_code=error_code).model_dump(mode="json"),
    )


def build_transaction_router(limiter: Limiter, rate_limit: str) -> APIRouter:
    """Transaction endpoint, rate limited by the app's own limiter."""
    transaction_router = APIRouter(prefix="/api/accounts", tags=["accounts"])

    # Main transaction endpoint
    @transaction_router.post(
        "/transaction",
        response_model=TransactionResponse,
        summary="Deposit or Withdraw",
        description="Apply a DEPOSIT or WITHDRAW to an account and record it in the transaction log",
        responses={
            200: {"description": "Transaction applied"},
            400: {"model": ErrorResponse, "description": "Validation error or insufficient balance"},
            404: {"model": ErrorResponse, "description": "Account not found"},
            429: {"description": "Rate limit exceeded"},
            500: {"model": ErrorResponse, "description": "Transaction failed"},
            503: {"model": ErrorResponse, "description": "Account busy"},
        },
    )
    @limiter.limit(rate_limit)
    async def create_transaction(
        request: Request,
        transaction_request: TransactionRequest,
        service: TransactionService = Depends(get_service),
    ):
        try:
            result = await service.apply(
                transaction_request.account_id,
                transaction_request.amount,
                transaction_request.type,
            )
            return TransactionResponse(newBalance=result.new_balance)

        except TransactionError as e:
            logger.warning(
                "Transaction request failed",
                status_code=e.status_code,
                error_code=e.error_code,
                detail=e.detail,
                account_id=transaction_request.account_id,
            )
            raise

        except Exception as e:
            logger.error(
                "Transaction request failed with unexpected error",
                error=str(e),
                account_id=transaction_request.account_id,
                exc_info=True,
            )
            return error_response(500, "Transaction failed", "INTERNAL_ERROR")

    return transaction_router


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(TransactionError)
    async def transaction_error_handler(request: Request, exc: TransactionError):
        return error_response(exc.status_code, exc.detail, exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        detail = "Invalid request"
        errors = exc.errors()
        if errors:
            err = errors[0]
            loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            msg = err.get("msg", "").removeprefix("Value error, ")
            detail = f"{loc}: {msg}" if loc else (msg or detail)
        logger.warning("Request validation failed", method=request.method, url=str(request.url), detail=detail)
        return error_response(400, detail, "VALIDATION_ERROR")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail), f"HTTP_{exc.status_code}")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            error=str(exc),
            url=str(request.url),
            method=request.method,
            exc_info=True,
        )
        return error_response(500, "Internal server error", "INTERNAL_ERROR")


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    if database is None:
        database = Database(
            settings.database_url,
            echo=settings.database_echo,
            busy_timeout=settings.sqlite_busy_timeout,
        )

    app = FastAPI(
        title=settings.app_name,
        description="Accounts, transaction history and atomic deposits/withdrawals",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.database = database
    account_repo = SqlAccountRepository(database, AccountLockRegistry(), settings.lock_timeout_seconds)
    app.state.transaction_service = get_transaction_service(
        account_repo,
        SqlTransactionLogRepository(database),
        settings.max_transaction_amount,
    )

    # Add rate limiting
    limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
    app.state.limiter = limiter

    register_exception_handlers(app)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=settings.allowed_methods,
        allow_headers=settings.allowed_headers,
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(
            "Request completed",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
            process_time=round(process_time, 4),
        )
        return response

    # Health check endpoint
    @app.get(
        "/health",
        response_model=HealthResponse,
        summary="Health Check",
        description="Check API health and get system statistics",
    )
    async def health_check(service: TransactionService = Depends(get_service)):
        try:
            accounts_count, transactions_count = await service.get_stats()
        except TransactionError as e:
            logger.error("Health check failed", error=e.detail)
            raise HTTPException(status_code=500, detail="Health check failed")

        return HealthResponse(
            status="healthy",
            accounts_count=accounts_count,
            transactions_processed=transactions_count,
        )

    # Root endpoint
    @app.get("/", include_in_schema=False)
    async def root():
        return {"message": "Bank Transaction API is running", "docs": "/docs"}

    app.include_router(router)
    app.include_router(build_transaction_router(limiter, settings.transaction_rate_limit))
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
