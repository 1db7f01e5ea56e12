"""
FastAPI/Starlette middleware that charges a request as one enhancement task.

Flow:
  1. Before request: reserve the task cost (from header or default) under
     the task id from the request headers.
  2. Request is executed.
  3. After response: commit the reservation on a 2xx response, release it
     on any other status or when the endpoint raises.
  A task that does not succeed is therefore never charged.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import AccountFrozen, AccountLockTimeout, InsufficientBalance, LedgerError
from ..services.task_hooks import TaskLifecycleHook


logger = logging.getLogger(__name__)


class TaskChargingMiddleware(BaseHTTPMiddleware):
    """
    Wraps requests under `path_prefix` in the reserve -> commit/release protocol.

    - The account comes from `account_id_header`; requests without it get 401.
    - The task id comes from `task_id_header`, or is generated per request.
    - The cost comes from `cost_header`, falling back to `default_cost`.
    """

    def __init__(
        self,
        app: Any,
        tasks: TaskLifecycleHook,
        *,
        path_prefix: str = "/api",
        account_id_header: str = "X-Account-Id",
        task_id_header: str = "X-Task-Id",
        cost_header: str = "X-Task-Cost",
        default_cost: int = 1,
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.tasks = tasks
        self.path_prefix = path_prefix.rstrip("/")
        self.account_id_header = account_id_header
        self.task_id_header = task_id_header
        self.cost_header = cost_header
        self.default_cost = default_cost
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    def _cost(self, request: Request) -> int:
        try:
            return max(1, int(request.headers.get(self.cost_header, str(self.default_cost))))
        except ValueError:
            return self.default_cost

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        account_id = request.headers.get(self.account_id_header)
        if not account_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing account identification ({self.account_id_header} header)."},
            )
        task_id = request.headers.get(self.task_id_header) or uuid4().hex
        correlation_id = request.headers.get("X-Request-Id")

        try:
            reservation = await self.tasks.on_task_submitted(
                account_id, task_id, self._cost(request), correlation_id=correlation_id
            )
        except InsufficientBalance as exc:
            return JSONResponse(
                status_code=402,
                content={"detail": "Insufficient credits for this task.", "code": exc.code},
            )
        except (AccountFrozen, AccountLockTimeout) as exc:
            status_code = 423 if isinstance(exc, AccountFrozen) else 503
            return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})

        request.state.credit_reservation = reservation

        try:
            response = await call_next(request)
        except Exception:
            await self.tasks.on_task_failed(account_id, task_id, correlation_id=correlation_id)
            raise

        try:
            if 200 <= response.status_code < 300:
                tx = await self.tasks.on_task_succeeded(
                    account_id, task_id, correlation_id=correlation_id
                )
                if tx is not None:
                    response.headers["X-Credits-Charged"] = str(-tx.amount)
            else:
                await self.tasks.on_task_failed(account_id, task_id, correlation_id=correlation_id)
        except LedgerError as exc:
            # The response is already produced; the hold is left to the timeout release
            logger.error(
                "Could not settle reservation %s for task %s: %s",
                reservation.id,
                task_id,
                exc,
                extra={"path": request.url.path, "account_id": account_id},
            )
        response.headers["X-Task-Id"] = task_id
        return response
