"""
Topology graph.

This module keeps devices, ports and links in memory and answers the
questions the orchestrator asks of the network.

Design goals
1. Keep this deterministic and simple.
2. Avoid any discovery logic here, records are pushed in by a loader.
3. Make validation results easy to attach to logs and alerts.

Links are directional in our representation, but physical links are usually
bidirectional. add_link adds both directions unless told otherwise.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from carrier_ethernet.core.types import ConnectPoint, DeviceRecord, Link, PortRecord
from carrier_ethernet.topology.base import TopologyService

logger = logging.getLogger(__name__)


@dataclass
class InMemoryTopology(TopologyService):
    """
    In memory topology.

    devices maps device id to DeviceRecord.
    ports maps device id to port name to PortRecord.
    adjacency maps device id to its outgoing links.
    """

    devices_by_id: Dict[str, DeviceRecord] = field(default_factory=dict)
    ports_by_device: Dict[str, Dict[str, PortRecord]] = field(default_factory=dict)
    adjacency: Dict[str, List[Link]] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def add_device(self, dev: DeviceRecord, ports: Optional[List[PortRecord]] = None) -> None:
        """Add or replace a device and its ports."""
        with self._lock:
            self.devices_by_id[dev.id] = dev
            self.ports_by_device.setdefault(dev.id, {})
            self.adjacency.setdefault(dev.id, [])
            for p in ports or []:
                self.ports_by_device[dev.id][p.cp.port] = p

    def add_port(self, port: PortRecord) -> None:
        with self._lock:
            self.ports_by_device.setdefault(port.cp.device_id, {})[port.cp.port] = port

    def set_port_enabled(self, cp: ConnectPoint, enabled: bool) -> None:
        with self._lock:
            current = self.port(cp)
            if current is None:
                raise KeyError(str(cp))
            self.ports_by_device[cp.device_id][cp.port] = PortRecord(
                cp=cp,
                enabled=enabled,
                speed_mbps=current.speed_mbps,
                logical=current.logical,
            )

    def add_link(self, src: ConnectPoint, dst: ConnectPoint, bidirectional: bool = True) -> None:
        """
        Add a link.

        We do not attempt to reconcile duplicates beyond skipping exact repeats.
        validate reports links whose ports are unknown.
        """
        with self._lock:
            self._add_directed(Link(src=src, dst=dst))
            if bidirectional:
                self._add_directed(Link(src=dst, dst=src))

    def _add_directed(self, link: Link) -> None:
        out = self.adjacency.setdefault(link.src.device_id, [])
        if link not in out:
            out.append(link)

    def remove_link(self, src: ConnectPoint, dst: ConnectPoint) -> None:
        with self._lock:
            for link in (Link(src=src, dst=dst), Link(src=dst, dst=src)):
                out = self.adjacency.get(link.src.device_id, [])
                if link in out:
                    out.remove(link)

    def device(self, device_id: str) -> Optional[DeviceRecord]:
        return self.devices_by_id.get(device_id)

    def devices(self) -> List[DeviceRecord]:
        """Return devices sorted by id. Useful for deterministic outputs."""
        with self._lock:
            return [self.devices_by_id[k] for k in sorted(self.devices_by_id)]

    def port(self, cp: ConnectPoint) -> Optional[PortRecord]:
        return self.ports_by_device.get(cp.device_id, {}).get(cp.port)

    def ports(self, device_id: str) -> List[PortRecord]:
        with self._lock:
            by_name = self.ports_by_device.get(device_id, {})
            return [by_name[k] for k in sorted(by_name)]

    def egress_links(self, cp: ConnectPoint) -> List[Link]:
        with self._lock:
            return [ln for ln in self.adjacency.get(cp.device_id, []) if ln.src == cp]

    def ingress_links(self, cp: ConnectPoint) -> List[Link]:
        with self._lock:
            out: List[Link] = []
            for links in self.adjacency.values():
                out.extend(ln for ln in links if ln.dst == cp)
            return out

    def paths(self, src_device: str, dst_device: str) -> List[List[Link]]:
        """
        Shortest path by hop count.

        Links touching a disabled port are not used.
        Neighbours are visited in sorted order so equal cost choices are stable.
        Returns at most one path, the interface allows more.
        """
        with self._lock:
            if src_device not in self.devices_by_id or dst_device not in self.devices_by_id:
                return []
            if src_device == dst_device:
                return [[]]

            previous: Dict[str, Link] = {}
            seen = {src_device}
            queue = deque([src_device])
            while queue:
                node = queue.popleft()
                for link in sorted(self.adjacency.get(node, []), key=lambda ln: (str(ln.dst), str(ln.src))):
                    peer = link.dst.device_id
                    if peer in seen or not self._usable(link):
                        continue
                    seen.add(peer)
                    previous[peer] = link
                    if peer == dst_device:
                        return [self._walk_back(previous, src_device, dst_device)]
                    queue.append(peer)
            return []

    def _usable(self, link: Link) -> bool:
        for cp in (link.src, link.dst):
            port = self.port(cp)
            if port is not None and not port.enabled:
                return False
        return True

    @staticmethod
    def _walk_back(previous: Dict[str, Link], src_device: str, dst_device: str) -> List[Link]:
        path: List[Link] = []
        node = dst_device
        while node != src_device:
            link = previous[node]
            path.append(link)
            node = link.src.device_id
        path.reverse()
        return path

    def validate(self) -> TopologyValidationResult:
        return validate_topology(self)


@dataclass
class TopologyValidationResult:
    """
    Result of topology validation.

    ok means no blocking errors.
    errors are blocking.
    warnings are non blocking but important signals.
    evidence is a structured dictionary that can be inserted into logs.
    """

    ok: bool
    errors: List[str]
    warnings: List[str]
    evidence: Dict[str, object]


def validate_topology(g: InMemoryTopology) -> TopologyValidationResult:
    """
    Validate basic topology invariants.

    Validations
    1. Every link endpoint must be a known device and port.
    2. Every directed link should have a reverse link. A one way link is a warning.
    3. Links on disabled ports are reported as warnings, path finding skips them.
    """

    errors: List[str] = []
    warnings: List[str] = []
    link_count = 0

    all_links = [ln for links in g.adjacency.values() for ln in links]
    link_set = set(all_links)

    for ln in all_links:
        link_count += 1
        for cp in (ln.src, ln.dst):
            if g.device(cp.device_id) is None:
                errors.append(f"link {ln.src} -> {ln.dst} references unknown device {cp.device_id}")
            elif g.port(cp) is None:
                errors.append(f"link {ln.src} -> {ln.dst} references unknown port {cp}")
            elif not g.port(cp).enabled:  # type: ignore[union-attr]
                warnings.append(f"link {ln.src} -> {ln.dst} uses disabled port {cp}")
        if Link(src=ln.dst, dst=ln.src) not in link_set:
            warnings.append(f"link {ln.src} -> {ln.dst} has no reverse direction")

    evidence: Dict[str, object] = {
        "device_count": len(g.devices_by_id),
        "port_count": sum(len(p) for p in g.ports_by_device.values()),
        "link_count": link_count,
    }

    for w in warnings:
        logger.warning("topology: %s", w)

    return TopologyValidationResult(ok=not errors, errors=errors, warnings=warnings, evidence=evidence)
