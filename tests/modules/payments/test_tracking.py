"""Tests for refund rate limiting and operation tracking."""

from uuid import uuid4

from commerce_api.modules.payments.schemas import RefundStatus
from commerce_api.modules.payments.tracking import (
    RefundOperation,
    RefundOperationTracker,
    RefundRateLimiter,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _operation(tenant_id="t1", gateway="stripe", amount=1000):
    return RefundOperation(
        id=uuid4(),
        tenant_id=tenant_id,
        order_id=str(uuid4()),
        payment_id=str(uuid4()),
        gateway_type=gateway,
        amount_cents=amount,
    )


class TestRefundRateLimiter:
    def test_limit_within_window(self):
        limiter = RefundRateLimiter(max_requests=100, window_seconds=3600, clock=FakeClock())

        assert all(limiter.allow("tenant-a") for _ in range(100))
        assert limiter.allow("tenant-a") is False

    def test_fresh_window_after_expiry(self):
        clock = FakeClock()
        limiter = RefundRateLimiter(max_requests=2, window_seconds=60, clock=clock)
        limiter.allow("tenant-a")
        limiter.allow("tenant-a")
        assert limiter.allow("tenant-a") is False

        clock.now += 60

        assert limiter.allow("tenant-a") is True

    def test_window_not_extended_by_rejections(self):
        clock = FakeClock()
        limiter = RefundRateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.allow("tenant-a")

        clock.now += 30
        assert limiter.allow("tenant-a") is False
        clock.now += 30
        assert limiter.allow("tenant-a") is True

    def test_tenants_are_independent(self):
        limiter = RefundRateLimiter(max_requests=1, clock=FakeClock())

        assert limiter.allow("tenant-a") is True
        assert limiter.allow("tenant-b") is True
        assert limiter.allow("tenant-a") is False

    def test_map_is_bounded(self):
        limiter = RefundRateLimiter(max_requests=5, max_tenants=3, clock=FakeClock())
        for name in ("a", "b", "c", "d"):
            limiter.allow(name)

        assert len(limiter) == 3
        # "a" was evicted, so it starts over with a fresh count
        assert all(limiter.allow("a") for _ in range(5))

    def test_clear(self):
        limiter = RefundRateLimiter(max_requests=1, clock=FakeClock())
        limiter.allow("tenant-a")

        limiter.clear()

        assert len(limiter) == 0
        assert limiter.allow("tenant-a") is True


class TestRefundOperationTracker:
    def test_oldest_entries_evicted(self):
        tracker = RefundOperationTracker(max_history=3)
        operations = [_operation() for _ in range(5)]
        for op in operations:
            tracker.track(op)

        assert len(tracker) == 3
        assert tracker.get(operations[0].id) is None
        assert tracker.get(operations[1].id) is None
        assert tracker.get(operations[4].id) is operations[4]

    def test_finish_records_duration(self):
        op = _operation()

        op.finish(RefundStatus.COMPLETED, gateway_refund_id="re_1")

        assert op.status is RefundStatus.COMPLETED
        assert op.gateway_refund_id == "re_1"
        assert op.end_time is not None
        assert op.processing_time_ms >= 0

    def test_processing_is_not_terminal(self):
        op = _operation()

        op.finish(RefundStatus.PROCESSING, gateway_refund_id="re_1")

        assert op.end_time is None
        assert op.processing_time_ms is None

    def test_stats(self):
        tracker = RefundOperationTracker()
        done = _operation(tenant_id="t1", gateway="stripe", amount=1000)
        done.finish(RefundStatus.COMPLETED)
        failed = _operation(tenant_id="t1", gateway="paypal", amount=500)
        failed.finish(RefundStatus.FAILED, error="declined")
        in_flight = _operation(tenant_id="t2", gateway="stripe", amount=700)
        for op in (done, failed, in_flight):
            tracker.track(op)

        stats = tracker.stats()

        assert stats.total_refunds == 3
        assert stats.successful_refunds == 1
        assert stats.failed_refunds == 1
        assert stats.in_flight_refunds == 1
        assert stats.total_amount_refunded_cents == 1000
        assert stats.success_rate == 1 / 3
        assert stats.error_rate == 1 / 3
        assert stats.gateway_usage == {"stripe": 2, "paypal": 1}
        assert stats.tenant_usage[0].tenant_id == "t1"
        assert stats.tenant_usage[0].refund_count == 2
        assert stats.tenant_usage[0].amount_refunded_cents == 1000

    def test_stats_for_one_tenant(self):
        tracker = RefundOperationTracker()
        tracker.track(_operation(tenant_id="t1"))
        tracker.track(_operation(tenant_id="t2"))

        assert tracker.stats("t2").total_refunds == 1

    def test_empty_stats(self):
        stats = RefundOperationTracker().stats()

        assert stats.total_refunds == 0
        assert stats.success_rate == 0.0
        assert stats.average_processing_time_ms == 0.0
