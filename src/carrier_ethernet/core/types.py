"""
Core types.

This file defines the shared data structures used across the orchestrator.

Important design choice
Network interfaces are a tagged variant: Uni, Inni, Enni and GenericNi share
identity and capacity fields, and carry their own role specific fields.
Callers dispatch with match instead of asking for a type string.

Global versus service scope
A global interface lives in the registry pool and aggregates the service
sub interfaces that forwarding constructs attach to it.
A service interface is the per connection view: one role, at most one CE-VLAN
or S-VLAN and at most one bandwidth profile.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Set, Union

logger = logging.getLogger(__name__)

VLAN_MIN = 1
VLAN_MAX = 4094
MAX_NUM_UNI = 1000
DEFAULT_MAX_LATENCY_MS = 50
DEFAULT_TPID = 0x88A8


class Scope(str, Enum):
    """
    Interface scope.

    global_pool
      Entry of the shared registry pool, no role.

    service
      Per connection view of an interface.
    """

    global_pool = "GLOBAL"
    service = "SERVICE"


class Role(str, Enum):
    """
    Interface role inside a connection.

    root and leaf apply to UNIs and to the trunk ends of E-Tree fragments.
    trunk, hub and spoke apply to INNI and ENNI interfaces.
    """

    root = "ROOT"
    leaf = "LEAF"
    trunk = "TRUNK"
    hub = "HUB"
    spoke = "SPOKE"


class NiType(str, Enum):
    uni = "UNI"
    inni = "INNI"
    enni = "ENNI"
    generic = "GENERIC"


class ConnectionType(str, Enum):
    """
    Connection shape shared by EVCs and forwarding constructs.

    point_to_point
      E-Line, exactly two endpoints.

    multipoint_to_multipoint
      E-LAN, every endpoint reaches every other.

    root_multipoint
      E-Tree, leaves only reach roots.
    """

    point_to_point = "POINT_TO_POINT"
    multipoint_to_multipoint = "MULTIPOINT_TO_MULTIPOINT"
    root_multipoint = "ROOT_MULTIPOINT"


class ServiceState(str, Enum):
    """
    Lifecycle of EVCs and forwarding constructs.

    requested -> provisioning -> active
    requested or provisioning -> failed
    active -> removing -> removed
    inactive is reported for installed connections whose resources are gone.
    """

    requested = "REQUESTED"
    provisioning = "PROVISIONING"
    active = "ACTIVE"
    inactive = "INACTIVE"
    failed = "FAILED"
    removing = "REMOVING"
    removed = "REMOVED"


class BandwidthProfileType(str, Enum):
    interface = "INTERFACE"
    evc = "EVC"
    cos = "COS"


class DeviceType(str, Enum):
    switch = "SWITCH"
    roadm = "ROADM"
    other = "OTHER"


@dataclass(frozen=True, order=True)
class ConnectPoint:
    """
    A device port.

    The string form "<device_id>/<port>" is the identity of every interface
    and termination point built on this port.
    """

    device_id: str
    port: str

    def __str__(self) -> str:
        return f"{self.device_id}/{self.port}"

    @classmethod
    def parse(cls, text: str) -> ConnectPoint:
        """Parse "<device_id>/<port>". Device ids may not contain a slash after the port split."""
        device_id, sep, port = str(text).strip().rpartition("/")
        if not sep or not device_id or not port:
            raise ValueError(f"invalid connect point {text!r}, expected device/port")
        return cls(device_id=device_id, port=port)


@dataclass(frozen=True)
class DeviceRecord:
    """
    Topology device.

    domain
    Administrative or technology domain. Trunk interfaces between domains are
    where EVC fragmentation splits a service.
    """

    id: str
    type: DeviceType = DeviceType.switch
    domain: str = "default"


@dataclass(frozen=True)
class PortRecord:
    """
    Topology port.

    speed_mbps
    Port speed, used as the capacity of interfaces built on the port.

    logical
    Logical ports (local, controller, flood) never host interfaces.
    """

    cp: ConnectPoint
    enabled: bool = True
    speed_mbps: int = 1000
    logical: bool = False


@dataclass(frozen=True)
class Link:
    """Directed infrastructure link. Bidirectional links are two Link entries."""

    src: ConnectPoint
    dst: ConnectPoint


@dataclass
class BandwidthProfile:
    """
    Bandwidth profile.

    cir_bps and eir_bps are rates in bits per second.
    cbs and ebs are burst sizes in bytes.
    A profile with every value at zero is a valid best effort profile.
    """

    id: str
    type: BandwidthProfileType = BandwidthProfileType.interface
    cir_bps: float = 0.0
    eir_bps: float = 0.0
    cbs: int = 0
    ebs: int = 0
    cfg_id: Optional[str] = None

    @property
    def is_best_effort(self) -> bool:
        return self.cir_bps == 0 and self.eir_bps == 0 and self.cbs == 0 and self.ebs == 0


@dataclass
class _InterfaceBase:
    cp: ConnectPoint
    cfg_id: Optional[str] = None
    capacity_bps: float = 0.0
    used_capacity_bps: float = 0.0
    scope: Scope = Scope.service
    ref_count: int = 0

    kind: ClassVar[NiType] = NiType.generic

    @property
    def id(self) -> str:
        return str(self.cp)

    @property
    def is_global(self) -> bool:
        return self.scope is Scope.global_pool


@dataclass
class Uni(_InterfaceBase):
    """
    User Network Interface.

    role
    ROOT or LEAF for service UNIs, None for the global pool entry.

    ce_vlan_ids and bwps
    For a service UNI these hold at most one entry each.
    For a global UNI they are the aggregate of all attached service UNIs.

    service_nis
    Global UNI only: owner forwarding construct id to attached service UNI.
    """

    role: Optional[Role] = None
    ce_vlan_ids: Set[int] = field(default_factory=set)
    bwps: Dict[BandwidthProfileType, Dict[str, BandwidthProfile]] = field(default_factory=dict)
    service_nis: Dict[str, Uni] = field(default_factory=dict)

    kind: ClassVar[NiType] = NiType.uni

    @classmethod
    def for_service(
        cls,
        cp: ConnectPoint,
        role: Role = Role.root,
        ce_vlan_id: Optional[int] = None,
        bwp: Optional[BandwidthProfile] = None,
        capacity_bps: float = 0.0,
        cfg_id: Optional[str] = None,
    ) -> Uni:
        uni = cls(cp=cp, cfg_id=cfg_id or str(cp), capacity_bps=capacity_bps, role=role)
        if ce_vlan_id is not None:
            uni.ce_vlan_ids.add(ce_vlan_id)
        if bwp is not None:
            uni.set_bwp(bwp)
        return uni

    @property
    def ce_vlan_id(self) -> Optional[int]:
        return min(self.ce_vlan_ids) if self.ce_vlan_ids else None

    @property
    def bwp(self) -> Optional[BandwidthProfile]:
        for by_id in self.bwps.values():
            for profile in by_id.values():
                return profile
        return None

    def set_bwp(self, bwp: BandwidthProfile) -> None:
        self.bwps = {bwp.type: {bwp.id: bwp}}

    def clamp_bandwidth(self) -> None:
        """
        Clamp the service profile to the UNI capacity.

        CIR is capped at capacity, EIR at the capacity left after CIR.
        """
        bwp = self.bwp
        if bwp is None or self.capacity_bps <= 0:
            return
        if bwp.cir_bps > self.capacity_bps:
            logger.warning(
                "UNI %s: CIR %.0f bps exceeds capacity %.0f bps, clamping",
                self.id,
                bwp.cir_bps,
                self.capacity_bps,
            )
            bwp.cir_bps = self.capacity_bps
        headroom = self.capacity_bps - bwp.cir_bps
        if bwp.eir_bps > headroom:
            logger.warning("UNI %s: EIR %.0f bps clamped to %.0f bps", self.id, bwp.eir_bps, headroom)
            bwp.eir_bps = headroom

    def validate_service_ni(self, ni: Uni, owner: Optional[str] = None) -> Optional[str]:
        """
        Admission check of a service UNI against this global UNI.

        Service UNIs already attached by owner are ignored, which lets an
        update re validate its own interface.

        Returns None when admissible, otherwise the reason.
        """

        others = [s for key, s in self.service_nis.items() if key != owner]

        vlan = ni.ce_vlan_id
        if vlan is not None and any(vlan in s.ce_vlan_ids for s in others):
            return f"CE-VLAN {vlan} is already in use on UNI {self.id}"

        bwp = ni.bwp
        if bwp is None:
            return None

        used = 0.0
        for s in others:
            existing = s.bwp
            if existing is None:
                continue
            if existing.type is not bwp.type:
                return f"UNI {self.id} already carries a {existing.type.value} bandwidth profile"
            if existing.id == bwp.id:
                return f"bandwidth profile {bwp.id} is already present on UNI {self.id}"
            if bwp.type is BandwidthProfileType.interface:
                return f"UNI {self.id} already carries an INTERFACE bandwidth profile"
            used += existing.cir_bps

        if self.capacity_bps > 0 and used + bwp.cir_bps > self.capacity_bps:
            return (
                f"UNI {self.id} has {self.capacity_bps - used:.0f} bps left, "
                f"profile {bwp.id} asks for CIR {bwp.cir_bps:.0f} bps"
            )
        return None

    def add_service_ni(self, owner: str, ni: Uni) -> None:
        self.service_nis[owner] = ni
        self._aggregate()

    def remove_service_ni(self, owner: str) -> Optional[Uni]:
        ni = self.service_nis.pop(owner, None)
        self._aggregate()
        return ni

    def _aggregate(self) -> None:
        self.ce_vlan_ids = set()
        self.bwps = {}
        self.used_capacity_bps = 0.0
        for s in self.service_nis.values():
            self.ce_vlan_ids |= s.ce_vlan_ids
            bwp = s.bwp
            if bwp is not None:
                self.bwps.setdefault(bwp.type, {})[bwp.id] = bwp
                self.used_capacity_bps += bwp.cir_bps


@dataclass
class _TrunkInterface(_InterfaceBase):
    role: Optional[Role] = None
    s_vlan_ids: Set[int] = field(default_factory=set)
    tpid: int = DEFAULT_TPID
    service_nis: Dict[str, _TrunkInterface] = field(default_factory=dict)

    @property
    def s_vlan_id(self) -> Optional[int]:
        return min(self.s_vlan_ids) if self.s_vlan_ids else None

    def set_s_vlan(self, vlan_id: Optional[int]) -> None:
        self.s_vlan_ids = set() if vlan_id is None else {vlan_id}

    def validate_service_ni(self, ni: _TrunkInterface, owner: Optional[str] = None) -> Optional[str]:
        vlan = ni.s_vlan_id
        if vlan is None:
            return None
        for key, s in self.service_nis.items():
            if key != owner and vlan in s.s_vlan_ids:
                return f"S-VLAN {vlan} is already in use on {self.kind.value} {self.id}"
        return None

    def add_service_ni(self, owner: str, ni: _TrunkInterface) -> None:
        self.service_nis[owner] = ni
        self._aggregate()

    def remove_service_ni(self, owner: str) -> Optional[_TrunkInterface]:
        ni = self.service_nis.pop(owner, None)
        self._aggregate()
        return ni

    def _aggregate(self) -> None:
        self.s_vlan_ids = set()
        for s in self.service_nis.values():
            self.s_vlan_ids |= s.s_vlan_ids


@dataclass
class Inni(_TrunkInterface):
    """Internal network to network interface, a trunk port inside one operator network."""

    kind: ClassVar[NiType] = NiType.inni


@dataclass
class Enni(_TrunkInterface):
    """External network to network interface, a trunk port towards another operator."""

    kind: ClassVar[NiType] = NiType.enni


@dataclass
class GenericNi(_InterfaceBase):
    """Intermediate hop port. Only appears in forwarding decisions."""

    kind: ClassVar[NiType] = NiType.generic


NetworkInterface = Union[Uni, Inni, Enni, GenericNi]


def global_interface(ni: NetworkInterface) -> NetworkInterface:
    """Return the empty global pool entry matching a service interface."""
    match ni:
        case Uni():
            return Uni(cp=ni.cp, cfg_id=ni.cfg_id, capacity_bps=ni.capacity_bps, scope=Scope.global_pool)
        case Inni() | Enni():
            return type(ni)(
                cp=ni.cp,
                cfg_id=ni.cfg_id,
                capacity_bps=ni.capacity_bps,
                scope=Scope.global_pool,
                tpid=ni.tpid,
            )
        case _:
            raise TypeError(f"{ni.kind.value} interfaces have no global pool entry")


def interface_for_type(
    ni_type: NiType,
    cp: ConnectPoint,
    capacity_bps: float,
    scope: Scope,
    role: Optional[Role] = None,
) -> NetworkInterface:
    match ni_type:
        case NiType.uni:
            return Uni(cp=cp, cfg_id=str(cp), capacity_bps=capacity_bps, scope=scope, role=role)
        case NiType.inni:
            return Inni(cp=cp, cfg_id=str(cp), capacity_bps=capacity_bps, scope=scope, role=role)
        case NiType.enni:
            return Enni(cp=cp, cfg_id=str(cp), capacity_bps=capacity_bps, scope=scope, role=role)
        case _:
            return GenericNi(cp=cp, capacity_bps=capacity_bps, scope=scope)


@dataclass
class LogicalTerminationPoint:
    """
    Logical termination point.

    An LTP wraps exactly one network interface and shares its identity.
    ref_count is filled in on registry snapshots and counts the forwarding
    constructs currently attached to the interface.
    """

    ni: NetworkInterface
    role: Optional[Role] = None
    cfg_id: Optional[str] = None
    ref_count: int = 0

    @property
    def id(self) -> str:
        return self.ni.id

    @property
    def cp(self) -> ConnectPoint:
        return self.ni.cp

    @property
    def type(self) -> NiType:
        return self.ni.kind


@dataclass
class ForwardingConstruct:
    """
    Forwarding construct.

    A per domain connection between LTPs, programmed on the packet nodes with
    one S-VLAN. Ids default to "FC-<vlan_id>".

    ref_count
    Number of EVCs that own this construct. Only unowned constructs may be
    removed directly.
    """

    type: ConnectionType
    ltps: List[LogicalTerminationPoint] = field(default_factory=list)
    id: Optional[str] = None
    cfg_id: Optional[str] = None
    evc_id: Optional[str] = None
    vlan_id: Optional[int] = None
    state: ServiceState = ServiceState.requested
    ref_count: int = 0
    congruent_paths: bool = True
    max_latency_ms: int = DEFAULT_MAX_LATENCY_MS
    failure_reason: Optional[str] = None

    def ltp_ids(self) -> List[str]:
        return [ltp.id for ltp in self.ltps]

    def ltp(self, ltp_id: str) -> Optional[LogicalTerminationPoint]:
        for ltp in self.ltps:
            if ltp.id == ltp_id:
                return ltp
        return None

    def unis(self) -> List[Uni]:
        return [ltp.ni for ltp in self.ltps if isinstance(ltp.ni, Uni)]


@dataclass
class VirtualConnection:
    """
    Ethernet Virtual Connection.

    unis
    Service UNIs of the EVC. For ROOT_MULTIPOINT exactly one is ROOT.

    fc_ids
    Forwarding constructs owned by this EVC, filled in on install.

    is_virtual
    True when every UNI carries a CE-VLAN, in which case several EVCs may share
    a UNI port.
    """

    type: ConnectionType
    unis: List[Uni] = field(default_factory=list)
    id: Optional[str] = None
    cfg_id: Optional[str] = None
    max_num_uni: Optional[int] = None
    fc_ids: List[str] = field(default_factory=list)
    short_id: Optional[int] = None
    is_virtual: bool = False
    state: ServiceState = ServiceState.requested
    max_latency_ms: int = DEFAULT_MAX_LATENCY_MS

    def uni_ids(self) -> List[str]:
        return [uni.id for uni in self.unis]

    def uni(self, uni_id: str) -> Optional[Uni]:
        for uni in self.unis:
            if uni.id == uni_id:
                return uni
        return None
