"""
Service API.

Purpose
One object that wires registry, discovery, allocators, bandwidth manager and
the two orchestrators around a topology and a packet node backend, and
exposes the operations consumed by CLI, REST and protocol adapters.

Error surface
The orchestrators raise typed errors. This facade turns every failure into a
None result, logs the reason and keeps it for the calling thread in
last_error(). Forwarding construct install and update return the construct
itself, with state FAILED and failure_reason set when they fail.

Lifecycle
Construct with explicit collaborators, call close() when done. close()
removes every EVC and every unowned forwarding construct.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar

from carrier_ethernet.backend.base import BackendConfig, PacketNodeBackend
from carrier_ethernet.backend.mock import InMemoryPacketNode
from carrier_ethernet.core.errors import OrchestratorError
from carrier_ethernet.core.types import (
    MAX_NUM_UNI,
    ConnectPoint,
    ForwardingConstruct,
    LogicalTerminationPoint,
    NiType,
    ServiceState,
    Uni,
    VirtualConnection,
)
from carrier_ethernet.orchestration.allocation import EVC_SHORT_ID_MAX, IdAllocator, PortVlanConfig
from carrier_ethernet.orchestration.bandwidth import BandwidthProfileManager
from carrier_ethernet.orchestration.evc import EvcOrchestrator
from carrier_ethernet.orchestration.fc import ForwardingConstructOrchestrator
from carrier_ethernet.registry.discovery import InterfaceDiscovery
from carrier_ethernet.registry.store import ResourceRegistry
from carrier_ethernet.topology.base import TopologyService
from carrier_ethernet.topology.static import StaticTopologyLoader

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class OrchestratorConfig:
    """
    Orchestrator configuration.

    evc_fragmentation
    Decompose EVCs into one construct per trunk delimited segment.

    max_num_uni
    Default UNI limit of multipoint EVCs that do not set one.

    backend
    Timeout applied to every packet node call.
    """

    evc_fragmentation: bool = False
    max_num_uni: int = MAX_NUM_UNI
    backend: BackendConfig = field(default_factory=BackendConfig)


class CarrierEthernetService:
    def __init__(
        self,
        topology: TopologyService,
        backend: PacketNodeBackend,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._config = config or OrchestratorConfig()
        self._topology = topology

        self.registry = ResourceRegistry()
        self.discovery = InterfaceDiscovery(topology, self.registry)
        self.port_vlans = PortVlanConfig()
        self.bandwidth = BandwidthProfileManager(backend, self._config.backend)
        self.fc_orchestrator = ForwardingConstructOrchestrator(
            registry=self.registry,
            topology=topology,
            backend=backend,
            bandwidth=self.bandwidth,
            vlans=IdAllocator("S-VLAN"),
            port_vlans=self.port_vlans,
            config=self._config.backend,
        )
        self.evc_orchestrator = EvcOrchestrator(
            registry=self.registry,
            topology=topology,
            discovery=self.discovery,
            fcs=self.fc_orchestrator,
            short_ids=IdAllocator("EVC short id", 1, EVC_SHORT_ID_MAX),
            fragmentation=self._config.evc_fragmentation,
            max_num_uni=self._config.max_num_uni,
        )
        self._errors = threading.local()

    def __enter__(self) -> CarrierEthernetService:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _call(self, action: str, fn: Callable[..., T], *args: Any) -> Optional[T]:
        self._errors.reason = None
        try:
            return fn(*args)
        except OrchestratorError as exc:
            self._errors.reason = f"{action}: {exc}"
            logger.warning("%s failed: %s", action, exc)
            return None

    def last_error(self) -> Optional[str]:
        """Reason of the last failed call made by this thread, None after a success."""
        return getattr(self._errors, "reason", None)

    # EVCs

    def install_evc(self, evc: VirtualConnection) -> Optional[VirtualConnection]:
        return self._call(f"install EVC {evc.id or evc.cfg_id}", self.evc_orchestrator.install_evc, evc)

    def update_evc(self, evc: VirtualConnection) -> Optional[VirtualConnection]:
        return self._call(f"update EVC {evc.id}", self.evc_orchestrator.update_evc, evc)

    def remove_evc(self, evc_id: str) -> Optional[VirtualConnection]:
        return self._call(f"remove EVC {evc_id}", self.evc_orchestrator.remove_evc, evc_id)

    def remove_all_evcs(self) -> List[VirtualConnection]:
        self._errors.reason = None
        return self.evc_orchestrator.remove_all_evcs()

    def get_evc(self, evc_id: str) -> Optional[VirtualConnection]:
        return self.registry.get_evc(evc_id)

    def evcs(self) -> List[VirtualConnection]:
        return self.registry.evcs()

    # forwarding constructs

    def _fc_result(self, fc: ForwardingConstruct) -> ForwardingConstruct:
        self._errors.reason = fc.failure_reason if fc.state is ServiceState.failed else None
        return fc

    def install_fc(self, fc: ForwardingConstruct) -> ForwardingConstruct:
        return self._fc_result(self.fc_orchestrator.install_fc(fc))

    def update_fc(self, fc: ForwardingConstruct) -> ForwardingConstruct:
        return self._fc_result(self.fc_orchestrator.update_fc(fc))

    def remove_fc(self, fc_id: str) -> Optional[ForwardingConstruct]:
        return self._call(f"remove {fc_id}", self.fc_orchestrator.remove_fc, fc_id)

    def remove_all_fcs(self) -> List[ForwardingConstruct]:
        self._errors.reason = None
        return self.fc_orchestrator.remove_all_fcs()

    def get_fc(self, fc_id: str) -> Optional[ForwardingConstruct]:
        return self.registry.get_fc(fc_id)

    def fcs(self) -> List[ForwardingConstruct]:
        return self.registry.fcs()

    # UNIs

    def add_global_uni(self, uni: Uni) -> Optional[Uni]:
        return self._call(f"add UNI {uni.id}", self.registry.add_global_uni, uni)

    def remove_global_uni(self, uni_id: str) -> Optional[Uni]:
        return self._call(f"remove UNI {uni_id}", self.registry.remove_global_uni, uni_id)

    def generate_uni(self, cp: ConnectPoint) -> Optional[Uni]:
        return self._call(f"generate UNI on {cp}", self.discovery.generate_uni, cp)

    def get_unis_from_topo(self, exclude_added: bool = False, include_removed: bool = True) -> List[Uni]:
        return self.discovery.get_unis_from_topo(exclude_added, include_removed)

    def unis(self) -> List[Uni]:
        return self.registry.unis()

    # LTPs

    def add_global_ltp(self, ltp: LogicalTerminationPoint) -> Optional[LogicalTerminationPoint]:
        """Add an LTP. An INNI brings the LTP at the other end of its link along."""
        return self._call(f"add LTP {ltp.id}", self._add_global_ltp, ltp)

    def _add_global_ltp(self, ltp: LogicalTerminationPoint) -> LogicalTerminationPoint:
        self.discovery.check_port(ltp.cp)
        self.discovery.validate_ltp_type(ltp.cp, ltp.type)
        return self.registry.add_global_ltp(ltp, self.discovery.pair_ltp(ltp))

    def remove_global_ltp(self, ltp_id: str) -> Optional[LogicalTerminationPoint]:
        return self._call(f"remove LTP {ltp_id}", self._remove_global_ltp, ltp_id)

    def _remove_global_ltp(self, ltp_id: str) -> LogicalTerminationPoint:
        pair_id = None
        current = self.registry.get_ltp(ltp_id)
        if current is not None and current.type in (NiType.inni, NiType.enni):
            far = self.discovery.peer(current.cp)
            pooled = self.registry.get_ltp(str(far)) if far is not None else None
            if pooled is not None and pooled.type is current.type:
                pair_id = pooled.id
        return self.registry.remove_global_ltp(ltp_id, pair_id)

    def generate_ltp(self, cp: ConnectPoint, ni_type: Optional[NiType] = None) -> Optional[LogicalTerminationPoint]:
        return self._call(f"generate LTP on {cp}", self.discovery.generate_ltp, cp, ni_type)

    def get_ltps_from_topo(
        self,
        exclude_added: bool = False,
        include_removed: bool = True,
    ) -> List[LogicalTerminationPoint]:
        return self.discovery.get_ltps_from_topo(exclude_added, include_removed)

    def ltps(self) -> List[LogicalTerminationPoint]:
        return self.registry.ltps()

    # configuration

    def set_evc_fragmentation(self, enabled: bool) -> None:
        self.evc_orchestrator.set_evc_fragmentation(enabled)

    def get_evc_fragmentation(self) -> bool:
        return self.evc_orchestrator.get_evc_fragmentation()

    def reset_evc_fragmentation(self) -> None:
        self.evc_orchestrator.reset_evc_fragmentation()

    def set_port_vlan(self, cp: ConnectPoint, vlan_id: int) -> bool:
        self._call(f"set S-TAG of {cp}", self.port_vlans.set, cp, vlan_id)
        return self.last_error() is None

    def clear_port_vlan(self, cp: ConnectPoint) -> Optional[int]:
        return self.port_vlans.clear(cp)

    def close(self) -> None:
        """Remove every EVC, then every construct nothing owns anymore."""
        evcs = self.remove_all_evcs()
        fcs = self.remove_all_fcs()
        logger.info("closed: removed %d EVCs and %d forwarding constructs", len(evcs), len(fcs))


def service_from_static_topology(
    path: Path,
    backend: Optional[PacketNodeBackend] = None,
    config: Optional[OrchestratorConfig] = None,
) -> CarrierEthernetService:
    """
    Build a service over a topology read from a json file.

    Without a backend the service programs an InMemoryPacketNode, which is
    enough for dry runs against a lab topology.
    """
    topology = StaticTopologyLoader(path=Path(path)).load()
    return CarrierEthernetService(topology, backend or InMemoryPacketNode(), config)
