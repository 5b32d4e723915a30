"""
Cooldown Tracker - Per (rule, device) re-fire suppression
=========================================================
The only shared mutable state in the automation core. Keys are
(rule_id, device_id) so a global rule firing for one device never
suppresses it for another.

The tracker talks to a CooldownStore (get / set / compare-and-set by
composite key). The default store is a lock-guarded dict; anything that
honours the same contract (sharded map, external KV) can be swapped in.
"""

import logging
import math
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger("automation.cooldown")

CooldownKey = Tuple[Any, Any]


class CooldownStore(Protocol):
    """Storage contract for last-triggered instants."""

    def get(self, key: CooldownKey) -> Optional[datetime]:
        ...

    def set(self, key: CooldownKey, value: datetime) -> None:
        ...

    def compare_and_set(self, key: CooldownKey, expected: Optional[datetime], value: datetime) -> bool:
        """Store ``value`` only if the current value is ``expected``."""
        ...

    def delete(self, key: CooldownKey) -> None:
        ...

    def keys(self) -> List[CooldownKey]:
        ...

    def clear(self) -> None:
        ...


class InMemoryCooldownStore:
    """Process-lifetime store, safe across threads and device ticks."""

    def __init__(self):
        self._data: Dict[CooldownKey, datetime] = {}
        self._lock = threading.Lock()

    def get(self, key: CooldownKey) -> Optional[datetime]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: CooldownKey, value: datetime) -> None:
        with self._lock:
            self._data[key] = value

    def compare_and_set(self, key: CooldownKey, expected: Optional[datetime], value: datetime) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            self._data[key] = value
            return True

    def delete(self, key: CooldownKey) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[CooldownKey]:
        with self._lock:
            return list(self._data.keys())

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class CooldownTracker:
    """
    Answers "is this rule still cooling down for this device" and records
    triggers. Never consulted before a match, so dry runs are unaffected.
    """

    def __init__(self, store: Optional[CooldownStore] = None):
        self._store = store if store is not None else InMemoryCooldownStore()

    @staticmethod
    def _elapsed(last: datetime, now: datetime) -> float:
        return (now - last).total_seconds()

    def last_triggered(self, rule_id, device_id) -> Optional[datetime]:
        return self._store.get((rule_id, device_id))

    def remaining_seconds(self, rule_id, device_id, cooldown_seconds: int,
                          now: Optional[datetime] = None) -> int:
        """Whole seconds left (rounded up), 0 when idle or never triggered."""
        last = self._store.get((rule_id, device_id))
        if last is None:
            return 0
        now = now or datetime.now()
        remaining = cooldown_seconds - self._elapsed(last, now)
        return max(0, math.ceil(remaining))

    def is_active(self, rule_id, device_id, cooldown_seconds: int,
                  now: Optional[datetime] = None) -> bool:
        return self.remaining_seconds(rule_id, device_id, cooldown_seconds, now) > 0

    def mark_triggered(self, rule_id, device_id, at: Optional[datetime] = None) -> None:
        self._store.set((rule_id, device_id), at or datetime.now())

    def try_acquire(self, rule_id, device_id, cooldown_seconds: int, now: datetime) -> bool:
        """
        Atomic check-and-mark. Returns True (and records ``now``) only if the
        rule is not cooling down for this device; of two overlapping ticks
        for the same key, exactly one wins.
        """
        key = (rule_id, device_id)
        while True:
            last = self._store.get(key)
            if last is not None and self._elapsed(last, now) < cooldown_seconds:
                return False
            if self._store.compare_and_set(key, last, now):
                return True
            logger.debug(f"Cooldown race on {key}, retrying")

    def status(self, rule_id, device_id, cooldown_seconds: int,
               now: Optional[datetime] = None) -> Dict[str, Any]:
        remaining = self.remaining_seconds(rule_id, device_id, cooldown_seconds, now)
        if remaining <= 0:
            return {"in_cooldown": False}
        return {"in_cooldown": True, "remaining_seconds": remaining}

    def seed(self, rule_id, device_id, last_triggered_at: Optional[datetime]) -> None:
        """Seed from a persisted lastTriggeredAt without overwriting newer state."""
        if last_triggered_at is None:
            return
        key = (rule_id, device_id)
        current = self._store.get(key)
        if current is None or current < last_triggered_at:
            self._store.compare_and_set(key, current, last_triggered_at)

    def clear(self, rule_id, device_id=None) -> None:
        """Clear one (rule, device) entry, or every device's entry for the rule."""
        if device_id is not None:
            self._store.delete((rule_id, device_id))
            return
        for key in self._store.keys():
            if key[0] == rule_id:
                self._store.delete(key)

    def clear_all(self) -> None:
        self._store.clear()
