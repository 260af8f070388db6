"""
Identifier allocation.

S-VLAN ids for forwarding constructs and short ids for EVCs come from
IdAllocator. Allocation scans upward from a cursor and wraps around.
Releasing an id below the cursor moves the cursor back, so low ids are reused
first.

PortVlanConfig holds operator configured S-TAGs per connect point. When every
configured connect point of a construct agrees on one S-TAG, that S-TAG is
used instead of an allocated one.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, Optional, Set

from carrier_ethernet.core.errors import ResourceConflictError, ValidationError
from carrier_ethernet.core.types import VLAN_MAX, VLAN_MIN, ConnectPoint

logger = logging.getLogger(__name__)

EVC_SHORT_ID_MAX = 32767


class IdAllocator:
    def __init__(self, name: str, low: int = VLAN_MIN, high: int = VLAN_MAX) -> None:
        self.name = name
        self._low = low
        self._high = high
        self._cursor = low
        self._used: Set[int] = set()
        self._lock = threading.Lock()

    def allocate(self, excluded: Iterable[int] = ()) -> int:
        """Reserve and return the first free id at or after the cursor."""
        skip = set(excluded)
        with self._lock:
            candidate = self._cursor
            for _ in range(self._high - self._low + 1):
                if candidate not in self._used and candidate not in skip:
                    self._used.add(candidate)
                    self._cursor = candidate
                    return candidate
                candidate = self._low if candidate >= self._high else candidate + 1
        raise ResourceConflictError(f"no free {self.name} left in {self._low}..{self._high}")

    def reserve(self, value: int) -> bool:
        """Reserve a specific id. Returns False when it is taken."""
        if not self._low <= value <= self._high:
            raise ValidationError(f"{self.name} {value} is outside {self._low}..{self._high}")
        with self._lock:
            if value in self._used:
                return False
            self._used.add(value)
            return True

    def release(self, value: Optional[int]) -> None:
        if value is None:
            return
        with self._lock:
            self._used.discard(value)
            if self._low <= value < self._cursor:
                self._cursor = value

    def in_use(self) -> Set[int]:
        with self._lock:
            return set(self._used)


class PortVlanConfig:
    """Configured S-TAG per connect point."""

    def __init__(self) -> None:
        self._vlans: Dict[ConnectPoint, int] = {}
        self._lock = threading.Lock()

    def set(self, cp: ConnectPoint, vlan_id: int) -> None:
        if not VLAN_MIN <= vlan_id <= VLAN_MAX:
            raise ValidationError(f"S-TAG {vlan_id} is outside {VLAN_MIN}..{VLAN_MAX}")
        with self._lock:
            self._vlans[cp] = vlan_id

    def clear(self, cp: ConnectPoint) -> Optional[int]:
        with self._lock:
            return self._vlans.pop(cp, None)

    def get(self, cp: ConnectPoint) -> Optional[int]:
        with self._lock:
            return self._vlans.get(cp)

    def vlan_for(self, cps: Iterable[ConnectPoint]) -> Optional[int]:
        """
        Agreed S-TAG for a set of connect points.

        None when no connect point is configured, or when configured values disagree.
        """
        with self._lock:
            values = {self._vlans[cp] for cp in cps if cp in self._vlans}
        if len(values) > 1:
            logger.warning("conflicting port VLAN configuration %s, falling back to allocation", sorted(values))
            return None
        return values.pop() if values else None
