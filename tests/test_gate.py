from __future__ import annotations

import threading
import time

import pytest

from safe_bundle_runner.execution.errors import ExecutionCancelled, GateFull, SlotReleaseError
from safe_bundle_runner.execution.gate import ConcurrencyGate


def test_admit_and_dismiss_track_usage() -> None:
    gate = ConcurrencyGate(2)

    first = gate.admit()
    second = gate.admit()

    assert gate.in_use == 2
    assert first.slot_id != second.slot_id
    gate.dismiss(first)
    gate.dismiss(second)
    assert gate.in_use == 0


def test_reject_mode_raises_when_full() -> None:
    gate = ConcurrencyGate(1, mode="reject")
    slot = gate.admit()

    with pytest.raises(GateFull) as excinfo:
        gate.admit()

    assert excinfo.value.retry_after == 1
    gate.dismiss(slot)
    gate.dismiss(gate.admit())


def test_block_mode_waits_for_dismiss() -> None:
    gate = ConcurrencyGate(1)
    slot = gate.admit()
    admitted = threading.Event()

    def _waiter() -> None:
        gate.dismiss(gate.admit())
        admitted.set()

    thread = threading.Thread(target=_waiter)
    thread.start()
    time.sleep(0.2)
    assert not admitted.is_set()
    assert gate.stats().waiting == 1

    gate.dismiss(slot)
    thread.join(5)

    assert admitted.is_set()
    assert gate.stats().waiting == 0


def test_block_mode_times_out() -> None:
    gate = ConcurrencyGate(1, acquire_timeout=0.2)
    slot = gate.admit()
    started = time.monotonic()

    with pytest.raises(GateFull):
        gate.admit()

    assert time.monotonic() - started >= 0.2
    gate.dismiss(slot)


def test_cancel_while_waiting() -> None:
    gate = ConcurrencyGate(1)
    slot = gate.admit()
    cancel = threading.Event()
    threading.Timer(0.2, cancel.set).start()

    with pytest.raises(ExecutionCancelled):
        gate.admit(cancel=cancel)

    assert gate.stats().waiting == 0
    gate.dismiss(slot)


def test_double_dismiss_is_an_error() -> None:
    gate = ConcurrencyGate(1)
    slot = gate.admit()
    gate.dismiss(slot)

    with pytest.raises(SlotReleaseError):
        gate.dismiss(slot)
    assert gate.in_use == 0


def test_per_tenant_limit() -> None:
    gate = ConcurrencyGate(3, per_tenant_limit=1, mode="reject")
    alice = gate.admit(tenant="alice")

    with pytest.raises(GateFull, match="alice"):
        gate.admit(tenant="alice")
    bob = gate.admit(tenant="bob")
    anonymous = gate.admit()

    assert gate.stats().per_tenant == {"alice": 1, "bob": 1}
    for slot in (alice, bob, anonymous):
        gate.dismiss(slot)
    assert gate.stats().per_tenant == {}


def test_in_use_never_exceeds_limit() -> None:
    gate = ConcurrencyGate(3)
    peak = 0
    lock = threading.Lock()

    def _worker() -> None:
        nonlocal peak
        slot = gate.admit()
        try:
            with lock:
                peak = max(peak, gate.in_use)
            time.sleep(0.02)
        finally:
            gate.dismiss(slot)

    threads = [threading.Thread(target=_worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert 1 <= peak <= 3
    assert gate.in_use == 0


@pytest.mark.parametrize(
    "kwargs",
    [{"limit": 0}, {"limit": 1, "per_tenant_limit": 0}, {"limit": 1, "mode": "queue"}],
)
def test_invalid_settings_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        ConcurrencyGate(**kwargs)
