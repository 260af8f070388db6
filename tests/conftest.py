import pytest

from carrier_ethernet.backend.base import BackendConfig
from carrier_ethernet.backend.mock import InMemoryPacketNode
from carrier_ethernet.core.types import ConnectPoint, DeviceRecord, DeviceType, PortRecord
from carrier_ethernet.service import CarrierEthernetService, OrchestratorConfig
from carrier_ethernet.topology.graph import InMemoryTopology


def _switch(topo: InMemoryTopology, device_id: str, domain: str) -> None:
    ports = [PortRecord(cp=ConnectPoint(device_id, str(n))) for n in range(1, 6)]
    topo.add_device(DeviceRecord(id=device_id, domain=domain), ports)


@pytest.fixture
def topology() -> InMemoryTopology:
    """
    Three switches in a line and one ROADM.

    of:1/4 <-> of:2/4 and of:2/5 <-> of:3/4 are trunk links.
    of:3/3 is disabled. of:1/LOCAL is a logical port.
    """
    topo = InMemoryTopology()
    _switch(topo, "of:1", "metro-a")
    _switch(topo, "of:2", "core")
    _switch(topo, "of:3", "metro-b")
    topo.add_port(PortRecord(cp=ConnectPoint("of:1", "LOCAL"), logical=True))
    topo.add_device(
        DeviceRecord(id="roadm:1", type=DeviceType.roadm, domain="optical"),
        [PortRecord(cp=ConnectPoint("roadm:1", "1"))],
    )
    topo.add_link(ConnectPoint("of:1", "4"), ConnectPoint("of:2", "4"))
    topo.add_link(ConnectPoint("of:2", "5"), ConnectPoint("of:3", "4"))
    topo.set_port_enabled(ConnectPoint("of:3", "3"), False)
    return topo


@pytest.fixture
def backend() -> InMemoryPacketNode:
    return InMemoryPacketNode()


@pytest.fixture
def service(topology, backend) -> CarrierEthernetService:
    config = OrchestratorConfig(backend=BackendConfig(timeout_seconds=0.2))
    return CarrierEthernetService(topology, backend, config)
