import logging
import time
from datetime import date, datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from auth import issue_token, verify_token
from cache import (
    CacheClass,
    ReadThroughCache,
    build_key,
    create_store,
    user_tag,
)
from config import get_settings
from database import SessionLocal, init_db
from errors import Internal, LedgerError, RateLimited, Unauthorized, Unavailable
from models import TransactionType
from periods import parse_iso_date, resolve_range
from policy import Capability, Identity, authorize
from ratelimit import ANALYTICS, AUTH, GENERAL, TRANSACTIONS, RateLimit, RateLimiter
from schemas import (
    CategoryIn,
    CategoryUpdate,
    LoginIn,
    ProfileUpdate,
    RegisterIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AnalyticsService,
    CategoryService,
    TransactionFilters,
    TransactionService,
    UserService,
    category_to_dict,
    transaction_to_dict,
    user_to_dict,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()
OVERVIEW_PERIODS = ("month", "year", "custom")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


_cache: Optional[ReadThroughCache] = None


def get_cache() -> ReadThroughCache:
    global _cache
    if _cache is None:
        _cache = ReadThroughCache(create_store(settings), settings.cache_ttls)
    return _cache


def get_rate_limiter(
    cache: ReadThroughCache = Depends(get_cache),
) -> Optional[RateLimiter]:
    if not get_settings().rate_limit_enabled:
        return None
    return RateLimiter(cache.store)


def rate_limited(rule: RateLimit) -> Callable[..., None]:
    def _dep(
        request: Request, limiter: Optional[RateLimiter] = Depends(get_rate_limiter)
    ) -> None:
        if limiter is None:
            return
        client = request.client.host if request.client else "unknown"
        limiter.hit(rule, client)

    return _dep


bearer_scheme = HTTPBearer(auto_error=False)


def get_identity(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    if not creds or not creds.credentials:
        raise Unauthorized("Access token required")
    return verify_token(creds.credentials)


def require(capability: Capability) -> Callable[..., Identity]:
    def _dep(identity: Identity = Depends(get_identity)) -> Identity:
        return authorize(identity, capability)

    return _dep


def cached(
    request: Request,
    cache: ReadThroughCache,
    identity: Identity,
    cache_class: CacheClass,
    tags: list[str],
    compute: Callable[[], object],
):
    key = build_key(request.url.path, request.query_params.multi_items(), identity.id)
    return cache.get_or_compute(key, cache_class, tags, compute)


def transaction_read_tags(user_id: int) -> list[str]:
    return [user_tag(user_id, CacheClass.transactions), CacheClass.transactions.value]


def analytics_read_tags(user_id: int) -> list[str]:
    return [user_tag(user_id, CacheClass.analytics), CacheClass.analytics.value]


def with_warnings(body: dict[str, object], warnings: list[str]) -> dict[str, object]:
    if warnings:
        body["warnings"] = warnings
    return body


app = FastAPI(title="Ledger API", dependencies=[Depends(rate_limited(GENERAL))])


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info(f"startup: environment={settings.environment}")


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    body: dict[str, object] = {"error": exc.message}
    headers = None
    if isinstance(exc, RateLimited):
        body["retryAfter"] = exc.retry_hint
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())[1:]),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400, content={"error": "Validation failed", "details": details}
    )


@app.exception_handler(OperationalError)
@app.exception_handler(PoolTimeoutError)
def store_unavailable_handler(request: Request, exc: Exception):
    logger.error(f"store_unavailable: path={request.url.path} error={exc}")
    error = Unavailable()
    return JSONResponse(status_code=error.status_code, content={"error": error.message})


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    message = str(exc) if get_settings().is_development else Internal.default_message
    return JSONResponse(status_code=500, content={"error": message})


@app.get("/health")
def health(cache: ReadThroughCache = Depends(get_cache)):
    return {
        "status": "OK",
        "timestamp": datetime.utcnow().isoformat(),
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "cache": "up" if cache.store.ping() else "down",
    }


auth_router = APIRouter(prefix="/auth")


@auth_router.post(
    "/register", status_code=201, dependencies=[Depends(rate_limited(AUTH))]
)
def register(
    payload: RegisterIn,
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    user = UserService(db, cache).register(payload)
    return {
        "message": "User registered successfully",
        "token": issue_token(user.id, user.role),
        "user": user_to_dict(user),
    }


@auth_router.post("/login", dependencies=[Depends(rate_limited(AUTH))])
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(payload)
    logger.info(f"login: user_id={user.id}")
    return {
        "message": "Login successful",
        "token": issue_token(user.id, user.role),
        "user": user_to_dict(user),
    }


@auth_router.get("/profile")
def get_profile(
    request: Request,
    identity: Identity = Depends(require(Capability.read)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    return cached(
        request,
        cache,
        identity,
        CacheClass.profile,
        [user_tag(identity.id, CacheClass.profile)],
        lambda: {"user": user_to_dict(UserService(db).get(identity.id))},
    )


@auth_router.put("/profile")
def update_profile(
    payload: ProfileUpdate,
    identity: Identity = Depends(require(Capability.manage_profile)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    service = UserService(db, cache)
    user = service.update_profile(identity.id, payload)
    return with_warnings(
        {"message": "Profile updated successfully", "user": user_to_dict(user)},
        service.warnings,
    )


transactions_router = APIRouter(
    prefix="/transactions", dependencies=[Depends(rate_limited(TRANSACTIONS))]
)


@transactions_router.get("")
def list_transactions(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = 20,
    type: Optional[str] = None,
    category_id: Optional[int] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_order: Optional[str] = None,
    identity: Identity = Depends(require(Capability.read)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    limit = min(max(limit, 1), 100)
    txn_type = None
    if type:
        try:
            txn_type = TransactionType(type)
        except ValueError:
            txn_type = None
    filters = TransactionFilters(
        type=txn_type,
        category_id=category_id,
        start=parse_iso_date(start_date, "start_date") if start_date else None,
        end=parse_iso_date(end_date, "end_date") if end_date else None,
        search=search.strip() if search and search.strip() else None,
    )

    def compute():
        return TransactionService(db, identity.id).list(
            filters, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
        )

    return cached(
        request,
        cache,
        identity,
        CacheClass.transactions,
        transaction_read_tags(identity.id),
        compute,
    )


@transactions_router.get("/{transaction_id}")
def get_transaction(
    transaction_id: int,
    request: Request,
    identity: Identity = Depends(require(Capability.read)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    return cached(
        request,
        cache,
        identity,
        CacheClass.transactions,
        transaction_read_tags(identity.id),
        lambda: transaction_to_dict(
            TransactionService(db, identity.id).get(transaction_id)
        ),
    )


@transactions_router.post("", status_code=201)
def create_transaction(
    payload: TransactionIn,
    identity: Identity = Depends(require(Capability.mutate_transactions)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    service = TransactionService(db, identity.id, cache)
    txn = service.create(payload)
    logger.info(f"transaction_created: id={txn.id} user_id={identity.id}")
    return with_warnings(
        {
            "message": "Transaction created successfully",
            "transaction": transaction_to_dict(txn),
        },
        service.warnings,
    )


@transactions_router.put("/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    identity: Identity = Depends(require(Capability.mutate_transactions)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    service = TransactionService(db, identity.id, cache)
    txn = service.update(transaction_id, payload)
    return with_warnings(
        {
            "message": "Transaction updated successfully",
            "transaction": transaction_to_dict(txn),
        },
        service.warnings,
    )


@transactions_router.delete("/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    identity: Identity = Depends(require(Capability.mutate_transactions)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    service = TransactionService(db, identity.id, cache)
    service.delete(transaction_id)
    logger.info(f"transaction_deleted: id={transaction_id} user_id={identity.id}")
    return with_warnings(
        {"message": "Transaction deleted successfully"}, service.warnings
    )


categories_router = APIRouter(prefix="/categories")


@categories_router.get("")
def list_categories(
    request: Request,
    identity: Identity = Depends(require(Capability.read)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    return cached(
        request,
        cache,
        identity,
        CacheClass.categories,
        [CacheClass.categories.value],
        lambda: {
            "categories": [category_to_dict(c) for c in CategoryService(db).list_all()]
        },
    )


@categories_router.get("/{category_id}")
def get_category(
    category_id: int,
    request: Request,
    identity: Identity = Depends(require(Capability.read)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    return cached(
        request,
        cache,
        identity,
        CacheClass.categories,
        [CacheClass.categories.value],
        lambda: category_to_dict(CategoryService(db).get(category_id)),
    )


@categories_router.post("", status_code=201)
def create_category(
    payload: CategoryIn,
    identity: Identity = Depends(require(Capability.manage_categories)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    service = CategoryService(db, cache)
    category = service.create(payload)
    logger.info(f"category_created: id={category.id} by={identity.id}")
    return with_warnings(
        {
            "message": "Category created successfully",
            "category": category_to_dict(category),
        },
        service.warnings,
    )


@categories_router.put("/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    identity: Identity = Depends(require(Capability.manage_categories)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    service = CategoryService(db, cache)
    category = service.update(category_id, payload)
    return with_warnings(
        {
            "message": "Category updated successfully",
            "category": category_to_dict(category),
        },
        service.warnings,
    )


@categories_router.delete("/{category_id}")
def delete_category(
    category_id: int,
    identity: Identity = Depends(require(Capability.manage_categories)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    service = CategoryService(db, cache)
    service.delete(category_id)
    return with_warnings({"message": "Category deleted successfully"}, service.warnings)


analytics_router = APIRouter(
    prefix="/analytics", dependencies=[Depends(rate_limited(ANALYTICS))]
)


@analytics_router.get("/overview")
def analytics_overview(
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    period: str = "month",
    identity: Identity = Depends(require(Capability.read)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    date_range = resolve_range(start_date, end_date)
    period_type = period if period in OVERVIEW_PERIODS else "custom"

    def compute():
        return {
            "period": {**date_range.as_dict(), "type": period_type},
            "overview": AnalyticsService(db, identity.id).overview(date_range),
        }

    return cached(
        request,
        cache,
        identity,
        CacheClass.analytics,
        analytics_read_tags(identity.id),
        compute,
    )


@analytics_router.get("/expenses-by-category")
def analytics_expenses_by_category(
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    identity: Identity = Depends(require(Capability.read)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    date_range = resolve_range(start_date, end_date)

    def compute():
        breakdown = AnalyticsService(db, identity.id).category_breakdown(date_range)
        return {"period": date_range.as_dict(), **breakdown}

    return cached(
        request,
        cache,
        identity,
        CacheClass.analytics,
        analytics_read_tags(identity.id),
        compute,
    )


@analytics_router.get("/monthly-trends")
def analytics_monthly_trends(
    request: Request,
    year: Optional[int] = Query(None, ge=1970, le=3000),
    months: int = Query(12, ge=1, le=12),
    identity: Identity = Depends(require(Capability.read)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    target_year = year or date.today().year
    return cached(
        request,
        cache,
        identity,
        CacheClass.analytics,
        analytics_read_tags(identity.id),
        lambda: AnalyticsService(db, identity.id).monthly_trends(target_year, months),
    )


@analytics_router.get("/recent-transactions")
def analytics_recent_transactions(
    request: Request,
    limit: int = Query(10, ge=1, le=50),
    identity: Identity = Depends(require(Capability.read)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    return cached(
        request,
        cache,
        identity,
        CacheClass.transactions,
        analytics_read_tags(identity.id) + transaction_read_tags(identity.id),
        lambda: {
            "transactions": AnalyticsService(db, identity.id).recent_transactions(
                limit
            )
        },
    )


@analytics_router.get("/spending-patterns")
def analytics_spending_patterns(
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    identity: Identity = Depends(require(Capability.read)),
    db: Session = Depends(get_db),
    cache: ReadThroughCache = Depends(get_cache),
):
    date_range = resolve_range(start_date, end_date)

    def compute():
        patterns = AnalyticsService(db, identity.id).spending_patterns(date_range)
        return {"period": date_range.as_dict(), **patterns}

    return cached(
        request,
        cache,
        identity,
        CacheClass.analytics,
        analytics_read_tags(identity.id),
        compute,
    )


app.include_router(auth_router)
app.include_router(transactions_router)
app.include_router(categories_router)
app.include_router(analytics_router)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
