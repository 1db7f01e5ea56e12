from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse

from ..cache.memory import InMemoryAsyncCache
from ..config import Settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..errors import (
    AccountFrozen,
    AccountLockTimeout,
    BatchInvariantViolation,
    InsufficientBalance,
    InvalidAmount,
    InvalidCursor,
    InvalidExpiry,
    LedgerError,
    ReservationClosed,
    ReservationConflict,
    UnknownBatch,
    UnknownReservation,
    UnknownTransaction,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import (
    AdjustmentGrantRequest,
    BalanceResponse,
    BonusGrantRequest,
    CancelTaskRequest,
    CreditCheckResponse,
    ErrorResponse,
    ExpiringCreditsResponse,
    HistoryResponse,
    PurchaseGrantRequest,
    RenewalGrantRequest,
    ReservationResponse,
    ReserveRequest,
    SweepResponse,
    TransactionResponse,
    UnfreezeRequest,
)
from ..models.history import HistoryFilter
from ..models.transaction import TransactionKind
from ..notifications.queue import InMemoryNotificationQueue
from ..services.allocation import ConsumptionPolicy
from ..services.balance_projector import BalanceProjector
from ..services.expiration_sweeper import ExpirationSweeper
from ..services.grant_service import CreditGrantService
from ..services.history_query import HistoryQuery
from ..services.ledger_store import LedgerStore
from ..services.notification_service import NotificationService
from ..services.reservation_manager import ConsumptionReservationManager
from ..services.task_hooks import TaskLifecycleHook


logger = logging.getLogger(__name__)


@dataclass
class LedgerServices:
    settings: Settings
    db: BaseDBManager
    ledger: LedgerLogger
    queue: InMemoryNotificationQueue
    notifier: NotificationService
    store: LedgerStore
    reservations: ConsumptionReservationManager
    sweeper: ExpirationSweeper
    balances: BalanceProjector
    history: HistoryQuery
    grants: CreditGrantService
    tasks: TaskLifecycleHook


def _create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(
            settings.MONGO_URI,
            settings.MONGO_DB,
            lock_timeout_seconds=settings.LOCK_TIMEOUT_SECONDS,
            lock_lease_seconds=settings.LOCK_LEASE_SECONDS,
        )
    logger.warning("CREDIT_MONGO_URI is not set, using the in-memory ledger backend")
    return InMemoryDBManager(lock_timeout_seconds=settings.LOCK_TIMEOUT_SECONDS)


def build_services(settings: Settings, db: Optional[BaseDBManager] = None) -> LedgerServices:
    db = db or _create_db_manager(settings)
    ledger = LedgerLogger(db=db, file_path=Path(settings.LEDGER_LOG_PATH))
    queue = InMemoryNotificationQueue(history_size=settings.NOTIFICATION_HISTORY_SIZE)
    notifier = NotificationService(
        db=db, queue=queue, low_credit_threshold=settings.LOW_CREDIT_THRESHOLD
    )
    policy = ConsumptionPolicy(settings.CONSUMPTION_POLICY)
    store = LedgerStore(db=db, ledger=ledger, notifier=notifier, policy=policy)
    reservations = ConsumptionReservationManager(
        db=db,
        store=store,
        reservation_timeout_seconds=settings.RESERVATION_TIMEOUT_SECONDS,
        max_attempts=settings.SWEEP_MAX_ATTEMPTS,
        backoff_seconds=settings.SWEEP_BACKOFF_SECONDS,
    )
    sweeper = ExpirationSweeper(
        db=db,
        ledger=ledger,
        store=store,
        reservations=reservations,
        notifier=notifier,
        max_attempts=settings.SWEEP_MAX_ATTEMPTS,
        backoff_seconds=settings.SWEEP_BACKOFF_SECONDS,
        expiry_notice_days=settings.EXPIRING_SOON_DAYS,
    )
    balances = BalanceProjector(
        db=db,
        cache=InMemoryAsyncCache(),
        sweeper=sweeper,
        threshold_days=settings.EXPIRING_SOON_DAYS,
        cache_ttl_seconds=settings.BALANCE_CACHE_TTL_SECONDS,
    )
    return LedgerServices(
        settings=settings,
        db=db,
        ledger=ledger,
        queue=queue,
        notifier=notifier,
        store=store,
        reservations=reservations,
        sweeper=sweeper,
        balances=balances,
        history=HistoryQuery(
            db,
            default_limit=settings.HISTORY_PAGE_SIZE,
            max_limit=settings.HISTORY_MAX_PAGE_SIZE,
        ),
        grants=CreditGrantService(store),
        tasks=TaskLifecycleHook(reservations=reservations, ledger=ledger),
    )


_STATUS_BY_ERROR = (
    (InsufficientBalance, status.HTTP_402_PAYMENT_REQUIRED),
    (InvalidAmount, status.HTTP_400_BAD_REQUEST),
    (InvalidExpiry, status.HTTP_400_BAD_REQUEST),
    (InvalidCursor, status.HTTP_400_BAD_REQUEST),
    (UnknownReservation, status.HTTP_404_NOT_FOUND),
    (UnknownBatch, status.HTTP_404_NOT_FOUND),
    (UnknownTransaction, status.HTTP_404_NOT_FOUND),
    (ReservationClosed, status.HTTP_409_CONFLICT),
    (ReservationConflict, status.HTTP_409_CONFLICT),
    (AccountFrozen, status.HTTP_423_LOCKED),
    (AccountLockTimeout, status.HTTP_503_SERVICE_UNAVAILABLE),
    (BatchInvariantViolation, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(exc: LedgerError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def ledger_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, LedgerError):
        raise exc
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=str(exc), code=exc.code).model_dump(),
    )


def create_router(services: LedgerServices) -> APIRouter:
    router = APIRouter(prefix="/credits", tags=["credits"])

    @router.post("/grants/purchase", response_model=TransactionResponse)
    async def grant_purchase(payload: PurchaseGrantRequest) -> TransactionResponse:
        tx = await services.grants.grant_purchase(
            account_id=payload.account_id,
            amount=payload.amount,
            payment_ref=payload.payment_ref,
            description=payload.description,
        )
        return TransactionResponse(transaction=tx)

    @router.post("/grants/renewal", response_model=TransactionResponse)
    async def grant_renewal(payload: RenewalGrantRequest) -> TransactionResponse:
        tx = await services.grants.grant_subscription_renewal(
            account_id=payload.account_id,
            amount=payload.amount,
            period=payload.period,
            payment_ref=payload.payment_ref,
            plan=payload.plan,
        )
        return TransactionResponse(transaction=tx)

    @router.post("/grants/bonus", response_model=TransactionResponse)
    async def grant_bonus(payload: BonusGrantRequest) -> TransactionResponse:
        tx = await services.grants.grant_bonus(
            account_id=payload.account_id,
            amount=payload.amount,
            expires_in_days=payload.expires_in_days,
            description=payload.description,
        )
        return TransactionResponse(transaction=tx)

    @router.post("/grants/adjustment", response_model=TransactionResponse)
    async def grant_adjustment(payload: AdjustmentGrantRequest) -> TransactionResponse:
        tx = await services.grants.grant_adjustment(
            account_id=payload.account_id,
            amount=payload.amount,
            reason=payload.reason,
            operator=payload.operator,
        )
        return TransactionResponse(transaction=tx)

    @router.post("/tasks/{task_id}/reserve", response_model=ReservationResponse)
    async def reserve_for_task(task_id: str, payload: ReserveRequest) -> ReservationResponse:
        reservation = await services.tasks.on_task_submitted(
            payload.account_id, task_id, payload.amount
        )
        return ReservationResponse(reservation=reservation)

    @router.post("/tasks/{task_id}/retry", response_model=ReservationResponse)
    async def retry_task(task_id: str, payload: ReserveRequest) -> ReservationResponse:
        reservation = await services.tasks.retry_task(
            payload.account_id, task_id, payload.amount
        )
        return ReservationResponse(reservation=reservation)

    @router.post("/tasks/{task_id}/cancel", response_model=Optional[TransactionResponse])
    async def cancel_task(task_id: str, payload: CancelTaskRequest) -> Optional[TransactionResponse]:
        tx = await services.tasks.cancel_task(payload.account_id, task_id)
        return TransactionResponse(transaction=tx) if tx is not None else None

    @router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_task(task_id: str, account_id: str = Query(...)) -> None:
        await services.tasks.delete_task(account_id, task_id)

    @router.get("/reservations/{reservation_id}", response_model=ReservationResponse)
    async def get_reservation(reservation_id: str) -> ReservationResponse:
        reservation = await services.reservations.get_reservation(reservation_id)
        return ReservationResponse(reservation=reservation)

    @router.post("/reservations/{reservation_id}/commit", response_model=TransactionResponse)
    async def commit_reservation(reservation_id: str) -> TransactionResponse:
        tx = await services.reservations.commit(reservation_id)
        return TransactionResponse(transaction=tx)

    @router.post("/reservations/{reservation_id}/release", response_model=TransactionResponse)
    async def release_reservation(reservation_id: str) -> TransactionResponse:
        tx = await services.reservations.release(reservation_id)
        return TransactionResponse(transaction=tx)

    @router.get("/balance/{account_id}", response_model=BalanceResponse)
    async def get_balance(
        account_id: str, threshold_days: Optional[int] = Query(default=None, ge=0)
    ) -> BalanceResponse:
        balance = await services.balances.get_balance(account_id, threshold_days=threshold_days)
        return BalanceResponse(balance=balance)

    @router.get("/check/{account_id}", response_model=CreditCheckResponse)
    async def check_credits(account_id: str, amount: int = Query(..., gt=0)) -> CreditCheckResponse:
        has_enough = await services.balances.has_enough_credits(account_id, amount)
        return CreditCheckResponse(account_id=account_id, amount=amount, has_enough=has_enough)

    @router.get("/expiring/{account_id}", response_model=ExpiringCreditsResponse)
    async def get_expiring(
        account_id: str, days_ahead: Optional[int] = Query(default=None, ge=0)
    ) -> ExpiringCreditsResponse:
        days = services.settings.EXPIRING_SOON_DAYS if days_ahead is None else days_ahead
        items = await services.balances.get_expiring_credits(account_id, days_ahead=days)
        return ExpiringCreditsResponse(
            account_id=account_id,
            days_ahead=days,
            total=sum(e.amount for e in items),
            items=items,
        )

    @router.get("/history/{account_id}", response_model=HistoryResponse)
    async def get_history(
        account_id: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        kind: Optional[List[TransactionKind]] = Query(default=None),
        task_id: Optional[str] = None,
    ) -> HistoryResponse:
        filters = HistoryFilter(
            created_from=created_from,
            created_to=created_to,
            kinds=kind or [],
            related_task_id=task_id,
        )
        page = await services.history.list_transactions(
            account_id, filters=filters, cursor=cursor, limit=limit
        )
        return HistoryResponse(items=page.items, next_cursor=page.next_cursor)

    @router.post("/sweep", response_model=SweepResponse)
    async def sweep() -> SweepResponse:
        report = await services.sweeper.sweep_all()
        return SweepResponse(
            accounts_swept=report.accounts_swept,
            expired_transactions=len(report.expired_transactions),
            reservations_released=report.reservations_released,
            expiry_notices=report.expiry_notices,
            failed_accounts=report.failed_accounts,
            as_of=report.as_of,
        )

    @router.post("/accounts/{account_id}/unfreeze", status_code=status.HTTP_204_NO_CONTENT)
    async def unfreeze_account(account_id: str, payload: UnfreezeRequest) -> None:
        await services.store.unfreeze_account(account_id, operator=payload.operator)

    return router
