"""FastAPI application exposing the ledger_dash backend."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .analytics import AnalyticsReader
from .config import AppConfig, load_config, require_api_token
from .database import SQLiteRepository
from .errors import (
    ConfigurationError,
    NoPriorSyncError,
    RemoteApiError,
    StoreError,
    SyncError,
    SyncInProgressError,
)
from .sync import SyncService
from .up_client import UpBankClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Initialise shared services once and reuse them across requests."""

    config = load_config()
    repository = SQLiteRepository(config.database_file)
    repository.initialise_schema()

    def client_factory(token: str) -> UpBankClient:
        return UpBankClient(token, base_url=config.api_base_url, timeout=config.http_timeout)

    app.state.config = config
    app.state.repository = repository
    app.state.client_factory = client_factory
    app.state.sync = SyncService(repository, client_factory=client_factory, page_size=config.page_size)
    app.state.analytics = AnalyticsReader(repository)

    yield

    repository.close()


app = FastAPI(lifespan=lifespan, title="ledger_dash backend", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error mapping --------------------------------------------------------------

_STATUS_BY_ERROR: list[tuple[type[SyncError], int]] = [
    (ConfigurationError, 503),
    (RemoteApiError, 502),
    (NoPriorSyncError, 409),
    (SyncInProgressError, 409),
    (StoreError, 500),
]


@app.exception_handler(SyncError)
async def sync_error_handler(_: Request, exc: SyncError) -> JSONResponse:
    status_code = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 500)
    content: dict[str, object] = {"error": type(exc).__name__, "details": str(exc)}
    if isinstance(exc, RemoteApiError):
        content["upstream_status"] = exc.status
        content["upstream_body"] = exc.body
    logger.warning("Request failed with %s: %s", type(exc).__name__, exc)
    return JSONResponse(status_code=status_code, content=content)


# Dependency injection ------------------------------------------------------

def get_config() -> AppConfig:
    config: AppConfig = app.state.config
    return config


def get_repository() -> SQLiteRepository:
    repository: SQLiteRepository = app.state.repository
    return repository


def get_sync_service() -> SyncService:
    service: SyncService = app.state.sync
    return service


def get_analytics() -> AnalyticsReader:
    reader: AnalyticsReader = app.state.analytics
    return reader


# Routes --------------------------------------------------------------------


@app.get("/health")
def health_check() -> dict[str, str]:
    """Return a basic heartbeat payload for monitoring purposes."""

    return {"status": "ok"}


@app.get("/ping")
def ping(config: Annotated[AppConfig, Depends(get_config)]) -> dict[str, str]:
    """Check that the configured token is accepted by Up Bank."""

    client = app.state.client_factory(require_api_token(config))
    try:
        return {"token_id": client.ping()}
    finally:
        client.close()


@app.post("/sync/full")
def full_sync(
    config: Annotated[AppConfig, Depends(get_config)],
    sync_service: Annotated[SyncService, Depends(get_sync_service)],
) -> dict[str, object]:
    """Mirror every account, category and transaction."""

    total = sync_service.perform_full_sync(require_api_token(config))
    return {
        "success": True,
        "message": "Full sync completed successfully",
        "transactions": total,
    }


@app.post("/sync/incremental")
def incremental_sync(
    config: Annotated[AppConfig, Depends(get_config)],
    sync_service: Annotated[SyncService, Depends(get_sync_service)],
) -> dict[str, object]:
    """Pull transactions created since the last sync."""

    count = sync_service.perform_incremental_sync(require_api_token(config))
    return {
        "success": True,
        "message": f"Synced {count} new transaction(s)" if count else "No new transactions",
        "new_transactions_count": count,
    }


@app.get("/sync/status")
def sync_status(sync_service: Annotated[SyncService, Depends(get_sync_service)]) -> dict[str, object]:
    return {"success": True, "status": asdict(sync_service.get_sync_status())}


@app.get("/accounts")
def list_accounts(repository: Annotated[SQLiteRepository, Depends(get_repository)]) -> dict[str, object]:
    accounts = repository.list_accounts()
    return {"accounts": accounts, "count": len(accounts)}


@app.get("/categories")
def list_categories(repository: Annotated[SQLiteRepository, Depends(get_repository)]) -> dict[str, object]:
    categories = repository.list_categories()
    return {"categories": categories, "count": len(categories)}


@app.get("/transactions")
def list_transactions(
    repository: Annotated[SQLiteRepository, Depends(get_repository)],
    limit: Annotated[int, Query(ge=1, le=1000)] = 200,
    account_id: Optional[str] = None,
    search: Optional[str] = None,
) -> dict[str, object]:
    transactions = repository.list_transactions(limit, account_id=account_id, search=search)
    return {"transactions": transactions, "count": len(transactions)}


@app.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    repository: Annotated[SQLiteRepository, Depends(get_repository)],
) -> dict[str, object]:
    transaction = repository.get_transaction(transaction_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction


# Analytics -----------------------------------------------------------------


@app.get("/analytics/category-spending")
def category_spending(
    reader: Annotated[AnalyticsReader, Depends(get_analytics)],
    days: Annotated[Optional[int], Query(ge=1)] = None,
) -> dict[str, object]:
    return {"data": reader.category_spending(days)}


@app.get("/analytics/top-merchants")
def top_merchants(
    reader: Annotated[AnalyticsReader, Depends(get_analytics)],
    days: Annotated[int, Query(ge=1)] = 30,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> dict[str, object]:
    return {"data": reader.top_merchants(days, limit)}


@app.get("/analytics/income-vs-expenses")
def income_vs_expenses(
    reader: Annotated[AnalyticsReader, Depends(get_analytics)],
    months: Annotated[int, Query(ge=1)] = 6,
) -> dict[str, object]:
    return {"data": reader.income_vs_expenses(months)}


@app.get("/analytics/balance-timeline")
def balance_timeline(
    reader: Annotated[AnalyticsReader, Depends(get_analytics)],
    days: Annotated[Optional[int], Query(ge=1)] = None,
) -> dict[str, object]:
    return {"data": reader.balance_timeline(days)}


@app.get("/analytics/velocity")
def transaction_velocity(
    reader: Annotated[AnalyticsReader, Depends(get_analytics)],
    days: Annotated[Optional[int], Query(ge=1)] = None,
) -> dict[str, object]:
    return {"data": reader.transaction_velocity(days)}


@app.get("/analytics/category-trends")
def category_trends(
    reader: Annotated[AnalyticsReader, Depends(get_analytics)],
    months: Annotated[Optional[int], Query(ge=1)] = None,
) -> dict[str, object]:
    return {"data": reader.category_trends(months)}


@app.get("/analytics/account-distribution")
def account_distribution(reader: Annotated[AnalyticsReader, Depends(get_analytics)]) -> dict[str, object]:
    return {"data": reader.account_distribution()}
