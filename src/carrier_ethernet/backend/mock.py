"""
In memory packet node.

This backend is used for tests and local simulations.
It behaves like a forwarding and meter table keyed by construct id.

Features
- Records every call in order, so tests can assert sequencing
- Keeps forwarding entries per construct and source interface
- Keeps meter state per construct and UNI: created, then applied
- Can inject failures per device or UNI, and calls that never complete
"""

from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from carrier_ethernet.backend.base import PacketNodeBackend, completed
from carrier_ethernet.core.types import ForwardingConstruct, NetworkInterface, Uni


@dataclass
class InMemoryPacketNode(PacketNodeBackend):
    """
    In memory backend.

    failing_devices
    Forwarding calls whose source interface is on one of these devices fail.

    hanging_devices
    Forwarding calls on these devices return a future that never completes.

    failing_bandwidth_unis
    Bandwidth create and apply for these UNI ids fail.

    failing_removals
    remove_all_forwarding_resources fails for these construct ids.
    """

    failing_devices: Set[str] = field(default_factory=set)
    hanging_devices: Set[str] = field(default_factory=set)
    failing_bandwidth_unis: Set[str] = field(default_factory=set)
    failing_removals: Set[str] = field(default_factory=set)
    forwarding: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)
    meters: Dict[Tuple[str, str], str] = field(default_factory=dict)
    calls: List[Tuple[str, str, str]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _record(self, op: str, fc: ForwardingConstruct, ni_id: str = "") -> None:
        self.calls.append((op, fc.id or "", ni_id))

    def _forwarding_fault(self, device_id: str) -> Optional[concurrent.futures.Future[None]]:
        if device_id in self.hanging_devices:
            return concurrent.futures.Future()
        if device_id in self.failing_devices:
            return completed(RuntimeError(f"device {device_id} rejected the flow objective"))
        return None

    def set_node_forwarding(
        self,
        fc: ForwardingConstruct,
        src_ni: NetworkInterface,
        dst_nis: Sequence[NetworkInterface],
    ) -> concurrent.futures.Future[None]:
        with self._lock:
            self._record("set_forwarding", fc, src_ni.id)
            fault = self._forwarding_fault(src_ni.cp.device_id)
            if fault is not None:
                return fault
            entries = self.forwarding.setdefault(fc.id or "", {})
            entries[src_ni.id] = sorted(ni.id for ni in dst_nis)
            return completed()

    def remove_node_forwarding(
        self,
        fc: ForwardingConstruct,
        src_ni: NetworkInterface,
    ) -> concurrent.futures.Future[None]:
        with self._lock:
            self._record("remove_forwarding", fc, src_ni.id)
            fault = self._forwarding_fault(src_ni.cp.device_id)
            if fault is not None:
                return fault
            entries = self.forwarding.get(fc.id or "", {})
            entries.pop(src_ni.id, None)
            if not entries:
                self.forwarding.pop(fc.id or "", None)
            return completed()

    def create_bandwidth_profile_resources(
        self,
        fc: ForwardingConstruct,
        uni: Uni,
    ) -> concurrent.futures.Future[None]:
        with self._lock:
            self._record("create_bandwidth", fc, uni.id)
            if uni.id in self.failing_bandwidth_unis:
                return completed(RuntimeError(f"no meter available on {uni.cp.device_id}"))
            self.meters[(fc.id or "", uni.id)] = "created"
            return completed()

    def apply_bandwidth_profile_resources(
        self,
        fc: ForwardingConstruct,
        uni: Uni,
    ) -> concurrent.futures.Future[None]:
        with self._lock:
            self._record("apply_bandwidth", fc, uni.id)
            key = (fc.id or "", uni.id)
            if uni.id in self.failing_bandwidth_unis or key not in self.meters:
                return completed(RuntimeError(f"no meter to bind on {uni.id}"))
            self.meters[key] = "applied"
            return completed()

    def remove_bandwidth_profile_resources(
        self,
        fc: ForwardingConstruct,
        uni: Uni,
    ) -> concurrent.futures.Future[None]:
        with self._lock:
            self._record("remove_bandwidth", fc, uni.id)
            self.meters.pop((fc.id or "", uni.id), None)
            return completed()

    def remove_all_forwarding_resources(self, fc: ForwardingConstruct) -> concurrent.futures.Future[None]:
        with self._lock:
            self._record("remove_all_forwarding", fc)
            if (fc.id or "") in self.failing_removals:
                return completed(RuntimeError(f"devices refused to remove {fc.id}"))
            self.forwarding.pop(fc.id or "", None)
            return completed()

    def ops(self, op: str) -> List[Tuple[str, str]]:
        """Return (fc id, ni id) of recorded calls of one kind."""
        return [(fc_id, ni_id) for name, fc_id, ni_id in self.calls if name == op]
