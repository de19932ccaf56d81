from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from autotrade.errors import InsufficientFundsError, OrderOutcomeUnknown
from autotrade.execution.ledger import OrderLedger
from autotrade.execution.orders import (
    OUTCOME_ACCEPTED,
    OUTCOME_THROTTLED,
    OUTCOME_UNKNOWN,
    OrderExecutor,
    OrderThrottle,
)

NOW = datetime(2026, 3, 3, 1, 0, tzinfo=timezone.utc)


class ManualClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class RaisingClient:
    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0

    def place_order(self, **kwargs) -> str:
        self.calls += 1
        raise self.error


def test_throttle_enforces_global_cooldown() -> None:
    clock = ManualClock()
    throttle = OrderThrottle(5, clock=clock)
    assert throttle.try_acquire() is True
    assert throttle.try_acquire() is False
    assert throttle.remaining() == pytest.approx(5.0)
    clock.now += 5
    assert throttle.try_acquire() is True


def test_waiting_priority_caller_blocks_ordinary_callers() -> None:
    clock = ManualClock()
    throttle = OrderThrottle(5, clock=clock)
    throttle.try_acquire()
    acquired = threading.Event()

    def priority_waiter() -> None:
        if throttle.acquire(priority=True, timeout=5):
            acquired.set()

    waiter = threading.Thread(target=priority_waiter)
    waiter.start()
    try:
        for _ in range(200):
            if throttle._priority_waiting:
                break
            threading.Event().wait(0.01)
        clock.now += 5
        assert throttle.try_acquire() is False
        with throttle._cond:
            throttle._cond.notify_all()
    finally:
        waiter.join(timeout=5)
    assert acquired.is_set()


def test_acquire_times_out() -> None:
    throttle = OrderThrottle(60)
    assert throttle.acquire(timeout=0) is True
    assert throttle.acquire(timeout=0.05) is False


def test_dry_run_fill_goes_through_ledger() -> None:
    ledger = OrderLedger()
    executor = OrderExecutor(client=None, ledger=ledger, throttle=OrderThrottle(0), dry_run=True, clock=lambda: NOW)
    result = executor.submit(
        symbol="005930",
        side="buy",
        quantity=10,
        price=78_800,
        is_market=False,
        reference_price=78_800,
        name="삼성전자",
    )
    assert result.outcome == OUTCOME_ACCEPTED
    assert result.broker_id.startswith("DRY-")
    order = ledger.order(result.local_id)
    assert order.status == "FILLED"
    assert order.broker_id == result.broker_id
    assert ledger.position("005930").quantity == 10


def test_live_mode_requires_client() -> None:
    with pytest.raises(ValueError):
        OrderExecutor(client=None, ledger=OrderLedger(), throttle=OrderThrottle(0), dry_run=False)


def test_throttled_submission_records_nothing() -> None:
    ledger = OrderLedger()
    throttle = OrderThrottle(60)
    throttle.try_acquire()
    executor = OrderExecutor(client=None, ledger=ledger, throttle=throttle, dry_run=True, clock=lambda: NOW)
    result = executor.submit(
        symbol="005930",
        side="buy",
        quantity=10,
        price=78_800,
        is_market=False,
        reference_price=78_800,
        throttle_timeout=0,
    )
    assert result.outcome == OUTCOME_THROTTLED
    assert ledger.orders() == []


def test_rejection_withdraws_pending_record() -> None:
    ledger = OrderLedger()
    client = RaisingClient(InsufficientFundsError("주문가능금액 부족"))
    executor = OrderExecutor(client=client, ledger=ledger, throttle=OrderThrottle(0), dry_run=False, clock=lambda: NOW)
    with pytest.raises(InsufficientFundsError):
        executor.submit(symbol="005930", side="buy", quantity=10, price=78_800, is_market=False, reference_price=78_800)
    assert client.calls == 1
    assert ledger.orders() == []


def test_unknown_outcome_keeps_pending_record() -> None:
    ledger = OrderLedger()
    client = RaisingClient(OrderOutcomeUnknown("read timed out"))
    executor = OrderExecutor(client=client, ledger=ledger, throttle=OrderThrottle(0), dry_run=False, clock=lambda: NOW)
    result = executor.submit(
        symbol="005930", side="buy", quantity=10, price=78_800, is_market=False, reference_price=78_800
    )
    assert result.outcome == OUTCOME_UNKNOWN
    assert client.calls == 1
    (order,) = ledger.orders("005930")
    assert order.broker_id is None
    assert order.is_open is True


def test_detached_client_fails_before_recording() -> None:
    ledger = OrderLedger()
    executor = OrderExecutor(
        client=RaisingClient(InsufficientFundsError("unused")),
        ledger=ledger,
        throttle=OrderThrottle(0),
        dry_run=False,
        clock=lambda: NOW,
    )
    executor.client = None
    with pytest.raises(RuntimeError):
        executor.submit(symbol="005930", side="sell", quantity=5, price=0, is_market=True, reference_price=78_800)
    assert ledger.orders() == []
