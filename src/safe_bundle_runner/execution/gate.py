from __future__ import annotations

import itertools
import math
import threading
import time
from dataclasses import dataclass

import structlog

from .errors import ExecutionCancelled, GateFull, SlotReleaseError

logger = structlog.get_logger(__name__)

ADMISSION_MODES = ("block", "reject")
_CANCEL_POLL_SECONDS = 0.1


@dataclass(frozen=True, slots=True)
class AdmissionSlot:
    """Capacity token held for the lifetime of one sandboxed execution.

    Example:
        ```python
        slot = AdmissionSlot(slot_id=1, tenant="alice", admitted_at=time.monotonic())
        ```
    """

    slot_id: int
    tenant: str | None
    admitted_at: float


@dataclass(frozen=True, slots=True)
class GateStats:
    """Point-in-time view of gate occupancy.

    Example:
        ```python
        stats = GateStats(limit=4, in_use=1, waiting=0, per_tenant={"alice": 1})
        ```
    """

    limit: int
    in_use: int
    waiting: int
    per_tenant: dict[str, int]


class ConcurrencyGate:
    """Counting semaphore bounding concurrent executions, optionally per tenant.

    Example:
        ```python
        gate = ConcurrencyGate(limit=4, mode="block", acquire_timeout=30)
        slot = gate.admit(tenant="alice")
        try:
            ...
        finally:
            gate.dismiss(slot)
        ```
    """

    def __init__(
        self,
        limit: int,
        *,
        per_tenant_limit: int | None = None,
        mode: str = "block",
        acquire_timeout: float | None = None,
    ) -> None:
        """Validate settings and start with every slot free.

        Example:
            ```python
            gate = ConcurrencyGate(2, per_tenant_limit=1, mode="reject")
            ```
        """
        if limit < 1:
            raise ValueError("Concurrency limit must be at least 1")
        if per_tenant_limit is not None and per_tenant_limit < 1:
            raise ValueError("Per-tenant limit must be at least 1 when set")
        if mode not in ADMISSION_MODES:
            raise ValueError("mode must be 'block' or 'reject'")
        self._limit = limit
        self._per_tenant_limit = per_tenant_limit
        self._mode = mode
        self._acquire_timeout = acquire_timeout
        self._cond = threading.Condition()
        self._outstanding: dict[int, AdmissionSlot] = {}
        self._per_tenant: dict[str, int] = {}
        self._waiting = 0
        self._ids = itertools.count(1)

    @property
    def limit(self) -> int:
        """Return the system-wide slot limit.

        Example:
            ```python
            gate.limit
            ```
        """
        return self._limit

    @property
    def in_use(self) -> int:
        """Return the number of outstanding slots.

        Example:
            ```python
            gate.in_use
            ```
        """
        with self._cond:
            return len(self._outstanding)

    def stats(self) -> GateStats:
        """Return a consistent snapshot of gate occupancy.

        Example:
            ```python
            print(gate.stats().in_use)
            ```
        """
        with self._cond:
            return GateStats(
                limit=self._limit,
                in_use=len(self._outstanding),
                waiting=self._waiting,
                per_tenant=dict(self._per_tenant),
            )

    def admit(self, tenant: str | None = None, cancel: threading.Event | None = None) -> AdmissionSlot:
        """Take a slot, waiting or rejecting according to the admission mode.

        Example:
            ```python
            slot = gate.admit(tenant="alice", cancel=threading.Event())
            ```
        """
        deadline = None if self._acquire_timeout is None else time.monotonic() + self._acquire_timeout
        with self._cond:
            if self._has_room(tenant):
                return self._take(tenant)
            if self._mode == "reject":
                raise GateFull(self._full_message(tenant), retry_after=1)
            self._waiting += 1
            try:
                while not self._has_room(tenant):
                    if cancel is not None and cancel.is_set():
                        raise ExecutionCancelled("Cancelled while waiting for an execution slot")
                    wait_for = _CANCEL_POLL_SECONDS
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            raise GateFull(
                                self._full_message(tenant),
                                retry_after=max(1, math.ceil(self._acquire_timeout or 1)),
                            )
                        wait_for = min(wait_for, remaining)
                    self._cond.wait(wait_for)
            finally:
                self._waiting -= 1
            return self._take(tenant)

    def dismiss(self, slot: AdmissionSlot) -> None:
        """Return a slot; dismissing the same slot twice is a programming error.

        Example:
            ```python
            gate.dismiss(slot)
            ```
        """
        with self._cond:
            held = self._outstanding.pop(slot.slot_id, None)
            if held is None:
                raise SlotReleaseError(f"Admission slot {slot.slot_id} is not outstanding")
            if held.tenant is not None:
                remaining = self._per_tenant[held.tenant] - 1
                if remaining:
                    self._per_tenant[held.tenant] = remaining
                else:
                    del self._per_tenant[held.tenant]
            self._cond.notify_all()

    def _has_room(self, tenant: str | None) -> bool:
        """Check global and per-tenant capacity; caller holds the lock.

        Example:
            ```python
            gate._has_room("alice")
            ```
        """
        if len(self._outstanding) >= self._limit:
            return False
        if tenant is not None and self._per_tenant_limit is not None:
            return self._per_tenant.get(tenant, 0) < self._per_tenant_limit
        return True

    def _take(self, tenant: str | None) -> AdmissionSlot:
        """Record a new outstanding slot; caller holds the lock.

        Example:
            ```python
            slot = gate._take("alice")
            ```
        """
        slot = AdmissionSlot(slot_id=next(self._ids), tenant=tenant, admitted_at=time.monotonic())
        self._outstanding[slot.slot_id] = slot
        if tenant is not None:
            self._per_tenant[tenant] = self._per_tenant.get(tenant, 0) + 1
        return slot

    def _full_message(self, tenant: str | None) -> str:
        """Describe which limit refused admission.

        Example:
            ```python
            gate._full_message("alice")
            ```
        """
        if len(self._outstanding) >= self._limit:
            return f"All {self._limit} execution slots are busy"
        return f"Tenant '{tenant}' already holds {self._per_tenant_limit} execution slot(s)"
