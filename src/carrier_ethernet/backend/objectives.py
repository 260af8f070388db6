"""
Flow objective packet node.

This backend turns forwarding decisions and bandwidth profiles into
device level objectives and meters, and hands them to a per device client.

Important
This file does not speak any controller protocol.
It relies on a small DeviceClient interface so any southbound library can be
plugged in later. Pass an ObjectivePacketNode to CarrierEthernetService in
place of InMemoryPacketNode to drive real devices.

Objectives per source interface
filtering   admit traffic on the ingress port, translate or push the construct S-VLAN
next        egress group, pop the tag towards UNIs, output on each egress port
forwarding  match construct VLAN and ingress port, point to the next objective

Teardown order
Objectives of a construct are kept in one deque: filtering and forwarding
objectives at the front, next objectives at the back. Withdrawal walks the
deque front to back, so groups go last, after nothing references them.

Meters
Rates are in kilobytes per second (bps / 8000).
EIR > 0 adds a REMARK band at CIR, CIR > 0 adds a DROP band at CIR + EIR.
A profile without bands gets no meter.
Removing the resources of a pair waits for a create of the same pair that is
still running, so a create acknowledged after a timeout is still released.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Sequence, Tuple

from carrier_ethernet.backend.base import PacketNodeBackend, completed
from carrier_ethernet.core.types import (
    BandwidthProfile,
    Enni,
    ForwardingConstruct,
    GenericNi,
    Inni,
    NetworkInterface,
    Uni,
)

logger = logging.getLogger(__name__)

PRIORITY = 50000


class ObjectiveKind(str, Enum):
    filtering = "filtering"
    next = "next"
    forwarding = "forwarding"


class BandType(str, Enum):
    remark = "REMARK"
    drop = "DROP"


@dataclass(frozen=True)
class Objective:
    """
    One device objective.

    treatment
    Ordered instructions, each a tuple whose first item is the instruction
    name, for example ("push_vlan", "QINQ"), ("set_vlan", 100), ("output", "2").
    For next objectives each entry is itself a tuple of instructions, one per egress.
    """

    kind: ObjectiveKind
    device_id: str
    fc_id: str
    in_port: str
    match_vlan: Optional[int]
    treatment: Tuple[Any, ...] = ()
    priority: int = PRIORITY
    next_id: Optional[int] = None
    next_type: Optional[str] = None


@dataclass(frozen=True)
class MeterBand:
    type: BandType
    rate_kbps: int
    burst_bytes: Optional[int] = None


@dataclass(frozen=True)
class MeterRequest:
    device_id: str
    bands: Tuple[MeterBand, ...]
    burst: bool = False
    unit: str = "KB_PER_SEC"


class DeviceClient(Protocol):
    """
    Minimal per device programming interface.

    Real implementations wrap a controller or switch agent.
    We keep the interface narrow for testability.
    """

    def submit(self, objective: Objective) -> None:
        """Install or replace an objective."""

    def withdraw(self, objective: Objective) -> None:
        """Remove an objective."""

    def allocate_next_id(self) -> int:
        """Return a fresh next objective id."""

    def add_meter(self, request: MeterRequest) -> int:
        """Install a meter and return its id."""

    def remove_meter(self, meter_id: int) -> None:
        """Remove a meter."""


class DeviceClientFactory(Protocol):
    """Create a client for a device id, decoupling the backend from transport details."""

    def for_device(self, device_id: str) -> DeviceClient:
        """Return a connected client for the given device."""


def meter_bands(bwp: BandwidthProfile) -> Tuple[MeterBand, ...]:
    """Meter bands for a bandwidth profile. Empty for best effort."""
    cir = int(bwp.cir_bps / 8000)
    eir = int(bwp.eir_bps / 8000)
    bands: List[MeterBand] = []
    if eir != 0:
        bands.append(MeterBand(type=BandType.remark, rate_kbps=cir, burst_bytes=bwp.cbs or None))
    if cir != 0:
        burst = bwp.cbs + bwp.ebs
        bands.append(MeterBand(type=BandType.drop, rate_kbps=cir + eir, burst_bytes=burst or None))
    return tuple(bands)


@dataclass
class _UniMeter:
    device_id: str
    meter_id: Optional[int]
    applied: bool = False


@dataclass
class ObjectivePacketNode(PacketNodeBackend):
    """
    Objective based backend.

    client_factory
    Creates clients by device id.

    executor
    Optional pool. When set, device calls run on it and futures complete
    asynchronously. Otherwise calls run inline and futures are returned done.
    """

    client_factory: DeviceClientFactory
    executor: Optional[concurrent.futures.Executor] = None
    _objectives: Dict[str, Deque[Objective]] = field(default_factory=dict)
    _by_source: Dict[Tuple[str, str], List[Objective]] = field(default_factory=dict)
    _meters: Dict[Tuple[str, str], _UniMeter] = field(default_factory=dict)
    _creating: Dict[Tuple[str, str], concurrent.futures.Future[None]] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _creating_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _run(self, fn: Callable[[], None]) -> concurrent.futures.Future[None]:
        if self.executor is not None:
            return self.executor.submit(fn)
        try:
            fn()
        except Exception as exc:
            logger.error("device call failed: %s", exc)
            return completed(exc)
        return completed()

    # forwarding

    def set_node_forwarding(
        self,
        fc: ForwardingConstruct,
        src_ni: NetworkInterface,
        dst_nis: Sequence[NetworkInterface],
    ) -> concurrent.futures.Future[None]:
        def program() -> None:
            if not dst_nis:
                raise ValueError(f"no egress interface for {src_ni.id} in {fc.id}")
            with self._lock:
                self._withdraw_source(fc.id or "", src_ni.id)
                client = self.client_factory.for_device(src_ni.cp.device_id)
                filtering = self._filtering_objective(fc, src_ni)
                next_id = client.allocate_next_id()
                nxt = self._next_objective(fc, src_ni, dst_nis, next_id)
                fwd = Objective(
                    kind=ObjectiveKind.forwarding,
                    device_id=src_ni.cp.device_id,
                    fc_id=fc.id or "",
                    in_port=src_ni.cp.port,
                    match_vlan=fc.vlan_id,
                    priority=PRIORITY + 1,
                    next_id=next_id,
                )
                client.submit(filtering)
                client.submit(nxt)
                client.submit(fwd)

                queue = self._objectives.setdefault(fc.id or "", deque())
                queue.appendleft(filtering)
                queue.appendleft(fwd)
                queue.append(nxt)
                self._by_source[(fc.id or "", src_ni.id)] = [filtering, fwd, nxt]

        return self._run(program)

    def _filtering_objective(self, fc: ForwardingConstruct, src_ni: NetworkInterface) -> Objective:
        match_vlan = fc.vlan_id
        treatment: List[Tuple[Any, ...]] = []
        match src_ni:
            case Inni() | Enni():
                # translate the neighbour S-TAG to the one of this construct
                match_vlan = src_ni.s_vlan_id
                treatment.append(("set_vlan", fc.vlan_id))
            case Uni():
                match_vlan = src_ni.ce_vlan_id
                meter = self._meters.get((fc.id or "", src_ni.id))
                if meter is not None and meter.meter_id is not None:
                    treatment.append(("meter", meter.meter_id))
                if src_ni.ce_vlan_id is not None:
                    treatment.append(("push_vlan", "QINQ"))
                else:
                    treatment.append(("push_vlan", "VLAN"))
                treatment.append(("set_vlan", fc.vlan_id))
            case GenericNi():
                pass
        return Objective(
            kind=ObjectiveKind.filtering,
            device_id=src_ni.cp.device_id,
            fc_id=fc.id or "",
            in_port=src_ni.cp.port,
            match_vlan=match_vlan,
            treatment=tuple(treatment),
        )

    @staticmethod
    def _next_objective(
        fc: ForwardingConstruct,
        src_ni: NetworkInterface,
        dst_nis: Sequence[NetworkInterface],
        next_id: int,
    ) -> Objective:
        groups: List[Tuple[Tuple[Any, ...], ...]] = []
        for dst in sorted(dst_nis, key=lambda ni: ni.id):
            steps: List[Tuple[Any, ...]] = []
            if isinstance(dst, Uni):
                steps.append(("pop_vlan",))
            steps.append(("output", dst.cp.port))
            groups.append(tuple(steps))
        return Objective(
            kind=ObjectiveKind.next,
            device_id=src_ni.cp.device_id,
            fc_id=fc.id or "",
            in_port=src_ni.cp.port,
            match_vlan=fc.vlan_id,
            treatment=tuple(groups),
            priority=PRIORITY + 1,
            next_id=next_id,
            next_type="SIMPLE" if len(dst_nis) == 1 else "BROADCAST",
        )

    def remove_node_forwarding(
        self,
        fc: ForwardingConstruct,
        src_ni: NetworkInterface,
    ) -> concurrent.futures.Future[None]:
        def unprogram() -> None:
            with self._lock:
                self._withdraw_source(fc.id or "", src_ni.id)

        return self._run(unprogram)

    def _withdraw_source(self, fc_id: str, src_id: str) -> None:
        objectives = self._by_source.pop((fc_id, src_id), [])
        queue = self._objectives.get(fc_id, deque())
        ordered = [o for o in queue if o in objectives]
        for obj in ordered:
            self.client_factory.for_device(obj.device_id).withdraw(obj)
            queue.remove(obj)

    def remove_all_forwarding_resources(self, fc: ForwardingConstruct) -> concurrent.futures.Future[None]:
        def unprogram_all() -> None:
            with self._lock:
                queue = self._objectives.get(fc.id or "", deque())
                while queue:
                    obj = queue[0]
                    self.client_factory.for_device(obj.device_id).withdraw(obj)
                    queue.popleft()
                self._objectives.pop(fc.id or "", None)
                for key in [k for k in self._by_source if k[0] == fc.id]:
                    del self._by_source[key]

        return self._run(unprogram_all)

    # bandwidth

    def create_bandwidth_profile_resources(
        self,
        fc: ForwardingConstruct,
        uni: Uni,
    ) -> concurrent.futures.Future[None]:
        key = (fc.id or "", uni.id)

        def create() -> None:
            with self._lock:
                if key in self._meters:
                    return
                bwp = uni.bwp
                bands = meter_bands(bwp) if bwp is not None else ()
                meter_id: Optional[int] = None
                if bands:
                    request = MeterRequest(
                        device_id=uni.cp.device_id,
                        bands=bands,
                        burst=bool(bwp is not None and (bwp.cbs or bwp.ebs)),
                    )
                    meter_id = self.client_factory.for_device(uni.cp.device_id).add_meter(request)
                self._meters[key] = _UniMeter(device_id=uni.cp.device_id, meter_id=meter_id)

        future = self._run(create)
        with self._creating_lock:
            self._creating[key] = future
        future.add_done_callback(lambda done: self._forget_create(key, done))
        return future

    def _forget_create(self, key: Tuple[str, str], future: concurrent.futures.Future[None]) -> None:
        with self._creating_lock:
            if self._creating.get(key) is future:
                del self._creating[key]

    def apply_bandwidth_profile_resources(
        self,
        fc: ForwardingConstruct,
        uni: Uni,
    ) -> concurrent.futures.Future[None]:
        def apply() -> None:
            with self._lock:
                meter = self._meters.get((fc.id or "", uni.id))
                if meter is None:
                    raise LookupError(f"no meter resources for {uni.id} in {fc.id}")
                if meter.meter_id is None or meter.applied:
                    meter.applied = True
                    return
                objectives = self._by_source.get((fc.id or "", uni.id), [])
                client = self.client_factory.for_device(uni.cp.device_id)
                for i, obj in enumerate(objectives):
                    if obj.kind is not ObjectiveKind.filtering or ("meter", meter.meter_id) in obj.treatment:
                        continue
                    metered = replace(obj, treatment=(("meter", meter.meter_id),) + obj.treatment)
                    client.submit(metered)
                    objectives[i] = metered
                    queue = self._objectives.get(fc.id or "", deque())
                    if obj in queue:
                        queue[queue.index(obj)] = metered
                meter.applied = True

        return self._run(apply)

    def remove_bandwidth_profile_resources(
        self,
        fc: ForwardingConstruct,
        uni: Uni,
    ) -> concurrent.futures.Future[None]:
        key = (fc.id or "", uni.id)
        with self._creating_lock:
            pending = self._creating.get(key)

        def remove() -> None:
            if pending is not None:
                concurrent.futures.wait([pending])
            with self._lock:
                meter = self._meters.pop(key, None)
                if meter is not None and meter.meter_id is not None:
                    self.client_factory.for_device(meter.device_id).remove_meter(meter.meter_id)

        return self._run(remove)

    def objectives(self, fc_id: str) -> List[Objective]:
        """Current objectives of a construct in withdrawal order."""
        with self._lock:
            return list(self._objectives.get(fc_id, deque()))
