"""In-process refund bookkeeping: rate limiting and operation history.

Both structures live in one event loop and are mutated without any ``await``
between read and write, so no lock is needed. They are process-local and are
reset on restart; the ``refunds`` table remains the source of truth.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from .schemas import RefundStats, RefundStatus, TenantRefundUsage


@dataclass
class RefundOperation:
    """Transient view of one refund attempt."""

    id: UUID
    tenant_id: str
    order_id: str
    payment_id: str
    gateway_type: str
    amount_cents: int
    status: RefundStatus = RefundStatus.PENDING
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    processing_time_ms: float | None = None
    gateway_refund_id: str | None = None
    errors: list[str] = field(default_factory=list)

    def finish(self, status: RefundStatus, gateway_refund_id: str | None = None, error: str | None = None) -> None:
        self.status = status
        if gateway_refund_id:
            self.gateway_refund_id = gateway_refund_id
        if error:
            self.errors.append(error)
        if status.is_terminal:
            self.end_time = datetime.now(timezone.utc)
            self.processing_time_ms = (self.end_time - self.start_time).total_seconds() * 1000


class RefundOperationTracker:
    """Bounded, insertion-ordered history of refund operations."""

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history
        self._operations: OrderedDict[UUID, RefundOperation] = OrderedDict()

    def __len__(self) -> int:
        return len(self._operations)

    def track(self, operation: RefundOperation) -> None:
        self._operations[operation.id] = operation
        self._operations.move_to_end(operation.id)
        while len(self._operations) > self.max_history:
            self._operations.popitem(last=False)

    def get(self, operation_id: UUID) -> RefundOperation | None:
        return self._operations.get(operation_id)

    def clear(self) -> None:
        self._operations.clear()

    def stats(self, tenant_id: str | None = None) -> RefundStats:
        """Aggregate the tracked operations, optionally for one tenant."""
        operations = [
            op for op in self._operations.values() if tenant_id is None or op.tenant_id == tenant_id
        ]
        successful = [op for op in operations if op.status is RefundStatus.COMPLETED]
        failed = [op for op in operations if op.status is RefundStatus.FAILED]
        timed = [op.processing_time_ms for op in operations if op.processing_time_ms is not None]
        total = len(operations)

        gateway_usage: dict[str, int] = {}
        tenants: dict[str, TenantRefundUsage] = {}
        for op in operations:
            gateway_usage[op.gateway_type] = gateway_usage.get(op.gateway_type, 0) + 1
            usage = tenants.setdefault(
                op.tenant_id,
                TenantRefundUsage(tenant_id=op.tenant_id, refund_count=0, amount_refunded_cents=0),
            )
            usage.refund_count += 1
            if op.status is RefundStatus.COMPLETED:
                usage.amount_refunded_cents += op.amount_cents

        return RefundStats(
            total_refunds=total,
            successful_refunds=len(successful),
            failed_refunds=len(failed),
            in_flight_refunds=total - len(successful) - len(failed),
            average_processing_time_ms=sum(timed) / len(timed) if timed else 0.0,
            success_rate=len(successful) / total if total else 0.0,
            error_rate=len(failed) / total if total else 0.0,
            total_amount_refunded_cents=sum(op.amount_cents for op in successful),
            gateway_usage=gateway_usage,
            tenant_usage=sorted(tenants.values(), key=lambda u: u.refund_count, reverse=True),
        )


class RefundRateLimiter:
    """Fixed-window request counter per tenant.

    A window starts at a tenant's first request and is reset lazily by the
    first request after it expires. The map holds at most ``max_tenants``
    entries; the least recently used tenant is evicted first.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 3600.0,
        max_tenants: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_tenants = max_tenants
        self._clock = clock
        # tenant_id -> (request count, window reset time)
        self._windows: OrderedDict[str, tuple[int, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._windows)

    def allow(self, tenant_id: str) -> bool:
        """Count one request and report whether it is within the limit."""
        now = self._clock()
        count, reset_at = self._windows.get(tenant_id, (0, 0.0))

        if now >= reset_at:
            count, reset_at = 0, now + self.window_seconds

        if count >= self.max_requests:
            self._windows[tenant_id] = (count, reset_at)
            self._windows.move_to_end(tenant_id)
            return False

        self._windows[tenant_id] = (count + 1, reset_at)
        self._windows.move_to_end(tenant_id)
        while len(self._windows) > self.max_tenants:
            self._windows.popitem(last=False)
        return True

    def clear(self) -> None:
        self._windows.clear()
