"""
Interface discovery.

Builds candidate UNIs and LTPs from the topology capability without
registering them. The registry decides what enters the pools.

Rules
A connect point may host an interface only if its device exists and is a
packet switch, and its port exists and is enabled.
A port that carries no infrastructure link is a UNI candidate.
A port that carries a link is an INNI candidate, or an ENNI when asked for.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from carrier_ethernet.core.errors import ValidationError
from carrier_ethernet.core.types import (
    ConnectPoint,
    DeviceType,
    LogicalTerminationPoint,
    NiType,
    PortRecord,
    Scope,
    Uni,
    interface_for_type,
)
from carrier_ethernet.registry.store import ResourceRegistry
from carrier_ethernet.topology.base import TopologyService

logger = logging.getLogger(__name__)

MBPS = 1_000_000


class InterfaceDiscovery:
    """Candidate interface generation on top of a topology and a registry."""

    def __init__(self, topology: TopologyService, registry: ResourceRegistry) -> None:
        self._topology = topology
        self._registry = registry

    def check_port(self, cp: ConnectPoint) -> PortRecord:
        """Return the port record of a usable connect point or raise ValidationError."""
        dev = self._topology.device(cp.device_id)
        if dev is None:
            raise ValidationError(f"device {cp.device_id} does not exist")
        if dev.type is not DeviceType.switch:
            raise ValidationError(f"device {cp.device_id} is not a packet switch")
        port = self._topology.port(cp)
        if port is None:
            raise ValidationError(f"port {cp} does not exist")
        if not port.enabled:
            raise ValidationError(f"port {cp} is disabled")
        return port

    def capacity_bps(self, cp: ConnectPoint) -> float:
        port = self._topology.port(cp)
        return float(port.speed_mbps * MBPS) if port is not None else 0.0

    def has_links(self, cp: ConnectPoint) -> bool:
        return bool(self._topology.egress_links(cp) or self._topology.ingress_links(cp))

    def validate_ltp_type(self, cp: ConnectPoint, ni_type: Optional[NiType] = None) -> NiType:
        """
        Resolve the interface type a connect point may carry.

        ni_type None means infer it: UNI without links, INNI with links.
        Raises ValidationError when the requested type contradicts the links.
        """
        linked = self.has_links(cp)
        if ni_type is NiType.generic:
            raise ValidationError("GENERIC is not a termination point type")
        if not linked:
            if ni_type in (None, NiType.uni):
                return NiType.uni
            raise ValidationError(f"{ni_type.value} requested on {cp}, which carries no link")
        if ni_type is None:
            return NiType.inni
        if ni_type is NiType.uni:
            raise ValidationError(f"UNI requested on {cp}, which carries an infrastructure link")
        return ni_type

    def generate_uni(self, cp: ConnectPoint) -> Uni:
        """Build a global UNI candidate. Nothing is registered."""
        self.check_port(cp)
        self.validate_ltp_type(cp, NiType.uni)
        return Uni(cp=cp, cfg_id=str(cp), capacity_bps=self.capacity_bps(cp), scope=Scope.global_pool)

    def generate_ltp(self, cp: ConnectPoint, ni_type: Optional[NiType] = None) -> LogicalTerminationPoint:
        """Build a global LTP candidate, type inferred from links when not given."""
        self.check_port(cp)
        resolved = self.validate_ltp_type(cp, ni_type)
        ni = interface_for_type(resolved, cp, self.capacity_bps(cp), Scope.global_pool)
        return LogicalTerminationPoint(ni=ni, cfg_id=str(cp))

    def peer(self, cp: ConnectPoint) -> Optional[ConnectPoint]:
        """Connect point at the far end of the first link leaving cp."""
        links = self._topology.egress_links(cp)
        return links[0].dst if links else None

    def pair_ltp(self, ltp: LogicalTerminationPoint) -> Optional[LogicalTerminationPoint]:
        """
        LTP at the far end of a trunk link.

        Only INNI LTPs pair. An ENNI faces another operator whose port we do
        not manage, so it has no pair.
        """
        if ltp.type is not NiType.inni:
            return None
        far = self.peer(ltp.cp)
        if far is None:
            return None
        try:
            return self.generate_ltp(far, NiType.inni)
        except ValidationError as exc:
            logger.warning("no pair LTP for %s: %s", ltp.id, exc)
            return None

    def get_unis_from_topo(self, exclude_added: bool = False, include_removed: bool = True) -> List[Uni]:
        """
        Candidate UNIs on every non logical port.

        exclude_added drops connect points already in the UNI pool.
        include_removed keeps connect points whose UNI was explicitly removed.
        """
        added = {u.id for u in self._registry.unis()}
        out: List[Uni] = []
        for dev in self._topology.devices():
            for port in self._topology.ports(dev.id):
                if port.logical:
                    continue
                try:
                    uni = self.generate_uni(port.cp)
                except ValidationError as exc:
                    logger.debug("skipping %s: %s", port.cp, exc)
                    continue
                if exclude_added and uni.id in added:
                    continue
                if not include_removed and uni.id in self._registry.removed_uni_ids:
                    continue
                out.append(uni)
        return out

    def get_ltps_from_topo(
        self,
        exclude_added: bool = False,
        include_removed: bool = True,
    ) -> List[LogicalTerminationPoint]:
        """Candidate LTPs on every non logical port, same filters as get_unis_from_topo."""
        added = {ltp.id for ltp in self._registry.ltps()}
        out: List[LogicalTerminationPoint] = []
        for dev in self._topology.devices():
            for port in self._topology.ports(dev.id):
                if port.logical:
                    continue
                try:
                    ltp = self.generate_ltp(port.cp)
                except ValidationError as exc:
                    logger.debug("skipping %s: %s", port.cp, exc)
                    continue
                if exclude_added and ltp.id in added:
                    continue
                if not include_removed and ltp.id in self._registry.removed_ltp_ids:
                    continue
                out.append(ltp)
        return out
