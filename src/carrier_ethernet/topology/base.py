"""
Topology capability.

Goal
Give the orchestrator a narrow read only view of the network so it is
independent of how topology is discovered.

We keep the interface narrow so it is easy to mock in tests.
Only enabled ports are trusted by callers, the capability reports them as is.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from carrier_ethernet.core.types import ConnectPoint, DeviceRecord, Link, PortRecord


class TopologyService(Protocol):
    """
    Topology interface expected by the registry and the orchestrators.

    paths
    Returns candidate paths between two devices, shortest first.
    Each path is an ordered list of links from src_device to dst_device.
    An empty list means the devices are not connected.
    """

    def device(self, device_id: str) -> Optional[DeviceRecord]:
        """Return the device record if present."""

    def devices(self) -> List[DeviceRecord]:
        """Return all devices."""

    def port(self, cp: ConnectPoint) -> Optional[PortRecord]:
        """Return the port record for a connect point if present."""

    def ports(self, device_id: str) -> List[PortRecord]:
        """Return the ports of a device."""

    def egress_links(self, cp: ConnectPoint) -> List[Link]:
        """Return links leaving the connect point."""

    def ingress_links(self, cp: ConnectPoint) -> List[Link]:
        """Return links arriving at the connect point."""

    def paths(self, src_device: str, dst_device: str) -> List[List[Link]]:
        """Return candidate paths, shortest first."""
