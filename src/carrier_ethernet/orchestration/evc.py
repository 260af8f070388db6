"""
EVC orchestrator.

Top level entry point for services. An EVC request is validated, decomposed
into forwarding constructs and installed through the forwarding construct
orchestrator.

Contract
Install is all or nothing. Fragments are installed one by one, and when one of
them fails every fragment installed by the same call is released again, so no
reference count changed by that call stays changed.

Update diffs the new fragments against the installed ones. Fragments that did
not change are not touched, changed ones are modified in place, new ones are
installed and vanished ones are released.

Remove releases the constructs owned by the EVC. UNIs stay in the global pool
at reference count zero until they are removed explicitly.
"""

from __future__ import annotations

import copy
import logging
import threading
from functools import partial
from typing import Dict, List, Optional, Tuple

from carrier_ethernet.core.errors import BackendFailure, OrchestratorError, ResourceConflictError, ValidationError
from carrier_ethernet.core.types import (
    MAX_NUM_UNI,
    BandwidthProfileType,
    ConnectionType,
    Enni,
    ForwardingConstruct,
    Inni,
    Role,
    Scope,
    ServiceState,
    VirtualConnection,
)
from carrier_ethernet.orchestration.allocation import IdAllocator
from carrier_ethernet.orchestration.fc import ForwardingConstructOrchestrator, service_view
from carrier_ethernet.orchestration.fragmentation import fc_from_evc, fragment_evc
from carrier_ethernet.orchestration.rollback import RollbackLog
from carrier_ethernet.registry.discovery import InterfaceDiscovery
from carrier_ethernet.registry.store import ResourceRegistry
from carrier_ethernet.topology.base import TopologyService

logger = logging.getLogger(__name__)

_TYPE_NAMES = {
    ConnectionType.point_to_point: "Line",
    ConnectionType.multipoint_to_multipoint: "LAN",
    ConnectionType.root_multipoint: "Tree",
}


def evc_id_for(evc: VirtualConnection) -> str:
    """E[V]P-<Line|LAN|Tree>-<short id>, V for virtual EVCs."""
    prefix = "EVP" if evc.is_virtual else "EP"
    return f"{prefix}-{_TYPE_NAMES[evc.type]}-{evc.short_id}"


def _fragment_view(fc: ForwardingConstruct) -> tuple:
    return (fc.type, tuple(sorted(service_view(ltp) for ltp in fc.ltps)))


class EvcOrchestrator:
    def __init__(
        self,
        registry: ResourceRegistry,
        topology: TopologyService,
        discovery: InterfaceDiscovery,
        fcs: ForwardingConstructOrchestrator,
        short_ids: IdAllocator,
        fragmentation: bool = False,
        max_num_uni: int = MAX_NUM_UNI,
    ) -> None:
        self._registry = registry
        self._topology = topology
        self._discovery = discovery
        self._fcs = fcs
        self._short_ids = short_ids
        self._max_num_uni = max_num_uni
        self._fragmentation = fragmentation
        self._previous_fragmentation = fragmentation
        self._toggle_lock = threading.Lock()

    # fragmentation toggle

    def set_evc_fragmentation(self, enabled: bool) -> None:
        with self._toggle_lock:
            self._previous_fragmentation = self._fragmentation
            self._fragmentation = enabled
        logger.info("EVC fragmentation %s", "enabled" if enabled else "disabled")

    def get_evc_fragmentation(self) -> bool:
        with self._toggle_lock:
            return self._fragmentation

    def reset_evc_fragmentation(self) -> None:
        """Restore the value before the last set. One level only."""
        with self._toggle_lock:
            self._fragmentation = self._previous_fragmentation
            enabled = self._fragmentation
        logger.info("EVC fragmentation reset to %s", "enabled" if enabled else "disabled")

    # validation

    def validate_evc(self, evc: VirtualConnection) -> VirtualConnection:
        """
        Return a normalized copy of evc or raise ValidationError.

        Normalization resolves UNI capacity from the port, defaults roles to
        ROOT, clamps bandwidth profiles and sets max_num_uni and is_virtual.
        """
        request = copy.deepcopy(evc)
        ids = request.uni_ids()
        if not ids:
            raise ValidationError(f"EVC {request.id or request.cfg_id} has no UNIs")
        if len(set(ids)) != len(ids):
            raise ValidationError(f"EVC {request.id or request.cfg_id} lists a UNI twice")

        for uni in request.unis:
            self._discovery.check_port(uni.cp)
            if self._discovery.has_links(uni.cp):
                raise ValidationError(f"{uni.id} carries an infrastructure link and cannot be a UNI")
            uni.scope = Scope.service
            uni.role = uni.role or Role.root
            uni.cfg_id = uni.cfg_id or uni.id
            uni.capacity_bps = self._discovery.capacity_bps(uni.cp)
            uni.clamp_bandwidth()

        tagged = sum(1 for uni in request.unis if uni.ce_vlan_id is not None)
        if 0 < tagged < len(ids):
            raise ValidationError("CE-VLAN must be set on every UNI of an EVC or on none")
        request.is_virtual = tagged == len(ids)

        if request.max_num_uni is None:
            request.max_num_uni = 2 if request.type is ConnectionType.point_to_point else self._max_num_uni
        if len(ids) > request.max_num_uni:
            raise ValidationError(f"EVC has {len(ids)} UNIs, max_num_uni is {request.max_num_uni}")

        roles = [uni.role for uni in request.unis]
        match request.type:
            case ConnectionType.point_to_point:
                if len(ids) != 2 or Role.leaf in roles:
                    raise ValidationError("POINT_TO_POINT EVC needs exactly 2 ROOT UNIs")
            case ConnectionType.root_multipoint:
                if len(ids) < 2 or roles.count(Role.root) != 1:
                    raise ValidationError("ROOT_MULTIPOINT EVC needs exactly one ROOT UNI and at least one LEAF")
            case ConnectionType.multipoint_to_multipoint:
                if len(ids) < 2 or Role.leaf in roles:
                    raise ValidationError("MULTIPOINT_TO_MULTIPOINT EVC needs at least 2 UNIs and no LEAF")
        return request

    @staticmethod
    def _bind_profiles(evc: VirtualConnection) -> None:
        for uni in evc.unis:
            bwp = uni.bwp
            if bwp is not None and bwp.type is BandwidthProfileType.evc and evc.id:
                bwp.id = evc.id
                uni.set_bwp(bwp)

    # decomposition

    def decompose(self, evc: VirtualConnection) -> List[ForwardingConstruct]:
        if self.get_evc_fragmentation():
            return fragment_evc(evc, self._topology, self._registry)
        return [fc_from_evc(evc)]

    def _pair_trunk_vlans(self, fcs: List[ForwardingConstruct]) -> None:
        """
        Set the S-TAG of every trunk LTP.

        A trunk LTP matches the S-TAG of the fragment at the other end of its
        link. Without such a fragment it uses the S-TAG of its own construct.
        """
        for fc in fcs:
            for ltp in fc.ltps:
                if not isinstance(ltp.ni, (Inni, Enni)):
                    continue
                far = self._discovery.peer(ltp.cp)
                neighbour = None
                if far is not None:
                    neighbour = next((o for o in fcs if o is not fc and o.ltp(str(far)) is not None), None)
                ltp.ni.set_s_vlan(neighbour.vlan_id if neighbour is not None else fc.vlan_id)

    # install

    def install_evc(self, evc: VirtualConnection) -> VirtualConnection:
        """Install an EVC, or update it when its id is already installed. Raises on failure."""
        if evc.id and self._registry.get_evc(evc.id) is not None:
            return self.update_evc(evc)

        request = self.validate_evc(evc)
        request.short_id = self._short_ids.allocate()
        if not request.id:
            request.id = evc_id_for(request)
        self._bind_profiles(request)

        try:
            with self._registry.claim(evcs=[request.id], unis=request.uni_ids()):
                if self._registry.get_evc(request.id) is not None:
                    raise ResourceConflictError(f"EVC {request.id} already exists")
                request.state = ServiceState.provisioning
                pending = self._reserve_fragments(request, self.decompose(request), {})
                rollback = RollbackLog(f"install {request.id}")
                try:
                    installed = self._provision_fragments(pending, rollback)
                except OrchestratorError:
                    self._release_pending(pending)
                    rollback.unwind()
                    raise
                request.fc_ids = [fc.id or "" for fc in installed]
                request.state = ServiceState.active
                stored = self._registry.put_evc(request)
        except OrchestratorError as exc:
            self._short_ids.release(request.short_id)
            logger.warning("install of EVC %s failed: %s", request.id, exc)
            raise

        logger.info("installed EVC %s with %d forwarding constructs %s", stored.id, len(stored.fc_ids), stored.fc_ids)
        return stored

    def _reserve_fragments(
        self,
        evc: VirtualConnection,
        fragments: List[ForwardingConstruct],
        reuse: Dict[int, ForwardingConstruct],
    ) -> List[ForwardingConstruct]:
        """
        Reserve S-VLANs of new fragments and pair trunk S-TAGs.

        reuse maps fragment index to the installed construct it replaces. Those
        fragments inherit id and S-VLAN. Returns the new fragments.
        """
        pending: List[ForwardingConstruct] = []
        try:
            for k, fc in enumerate(fragments):
                fc.evc_id = evc.id
                if k in reuse:
                    fc.id = reuse[k].id
                    fc.vlan_id = reuse[k].vlan_id
                    continue
                self._fcs.assign_vlan(fc)
                pending.append(fc)
        except OrchestratorError:
            self._release_pending(pending)
            raise
        self._pair_trunk_vlans(fragments)
        return pending

    def _provision_fragments(
        self,
        pending: List[ForwardingConstruct],
        rollback: RollbackLog,
    ) -> List[ForwardingConstruct]:
        """Provision fragments in order, removing each from pending once it owns its S-VLAN."""
        installed: List[ForwardingConstruct] = []
        while pending:
            fc = pending[0]
            fc.ref_count = 1
            stored = self._fcs.provision_fc(fc, vlan_reserved=True)
            pending.pop(0)
            rollback.push(f"release {stored.id}", partial(self._fcs.release_fc, stored.id or ""))
            installed.append(stored)
        return installed

    def _release_pending(self, pending: List[ForwardingConstruct]) -> None:
        for fc in pending:
            self._fcs.release_vlan(fc.vlan_id)
        pending.clear()

    # update

    def update_evc(self, evc: VirtualConnection) -> VirtualConnection:
        """
        Apply a new definition to an installed EVC and raise on failure.

        Fragments are matched to installed constructs by shared LTPs. On
        failure the previous definition stays installed.
        """
        if not evc.id or self._registry.get_evc(evc.id) is None:
            return self.install_evc(evc)

        request = self.validate_evc(evc)
        evc_id = request.id or ""
        with self._registry.claim(evcs=[evc_id]):
            current = self._registry.get_evc(evc_id)
            if current is None:
                raise ValidationError(f"EVC {evc_id} was removed concurrently")
            request.short_id = current.short_id
            self._bind_profiles(request)

            with self._registry.claim(unis=sorted(set(current.uni_ids()) | set(request.uni_ids()))):
                installed = [fc for fc in (self._registry.get_fc(i) for i in current.fc_ids) if fc is not None]
                fragments = self.decompose(request)
                reuse = self._match_fragments(installed, fragments)
                stored = self._apply_fragments(request, installed, fragments, reuse)
        return stored

    @staticmethod
    def _match_fragments(
        installed: List[ForwardingConstruct],
        fragments: List[ForwardingConstruct],
    ) -> Dict[int, ForwardingConstruct]:
        """Fragment index to the unmatched installed construct sharing the most LTPs."""
        reuse: Dict[int, ForwardingConstruct] = {}
        taken: set = set()
        for k, fc in enumerate(fragments):
            wanted = set(fc.ltp_ids())
            best: Optional[Tuple[int, ForwardingConstruct]] = None
            for candidate in installed:
                if candidate.id in taken:
                    continue
                overlap = len(wanted & set(candidate.ltp_ids()))
                if overlap and (best is None or overlap > best[0]):
                    best = (overlap, candidate)
            if best is not None:
                reuse[k] = best[1]
                taken.add(best[1].id)
        return reuse

    def _apply_fragments(
        self,
        request: VirtualConnection,
        installed: List[ForwardingConstruct],
        fragments: List[ForwardingConstruct],
        reuse: Dict[int, ForwardingConstruct],
    ) -> VirtualConnection:
        pending = self._reserve_fragments(request, fragments, reuse)
        rollback = RollbackLog(f"update {request.id}")
        kept: List[str] = []
        modified: List[str] = []
        released: List[str] = []
        try:
            for k, previous in sorted(reuse.items()):
                fragment = fragments[k]
                fragment.ref_count = previous.ref_count
                if _fragment_view(fragment) == _fragment_view(previous):
                    kept.append(previous.id or "")
                    continue
                self._fcs.modify_fc(fragment)
                rollback.push(f"restore {previous.id}", partial(self._fcs.modify_fc, previous))
                modified.append(previous.id or "")

            reused = {fc.id for fc in reuse.values()}
            for previous in installed:
                if previous.id in reused:
                    continue
                self._fcs.release_fc(previous.id or "")
                rollback.push(f"reinstall {previous.id}", partial(self._reinstall, previous))
                released.append(previous.id or "")

            added = self._provision_fragments(pending, rollback)
        except OrchestratorError as exc:
            self._release_pending(pending)
            rollback.unwind()
            logger.warning("update of EVC %s failed: %s", request.id, exc)
            raise
        rollback.discard()

        request.fc_ids = sorted(kept + modified + [fc.id or "" for fc in added])
        request.state = ServiceState.active
        stored = self._registry.put_evc(request)
        if modified or added or released:
            logger.info(
                "updated EVC %s: modified %s added %s released %s",
                stored.id,
                modified,
                [fc.id for fc in added],
                released,
            )
        else:
            logger.debug("update of EVC %s changes no forwarding construct", stored.id)
        return stored

    def _reinstall(self, fc: ForwardingConstruct) -> None:
        restored = copy.deepcopy(fc)
        restored.ref_count = 1
        self._fcs.provision_fc(restored)

    # removal

    def remove_evc(self, evc_id: str) -> VirtualConnection:
        """
        Release every construct owned by the EVC and drop it.

        A construct whose teardown fails stays installed and owned, the EVC
        stays registered with the remaining constructs and BackendFailure is
        raised, so the removal can be retried.
        """
        with self._registry.claim(evcs=[evc_id]):
            current = self._registry.get_evc(evc_id)
            if current is None:
                raise ValidationError(f"EVC {evc_id} does not exist")

            with self._registry.claim(unis=current.uni_ids()):
                current.state = ServiceState.removing
                remaining: List[str] = []
                failures: List[str] = []
                for fc_id in current.fc_ids:
                    if self._registry.get_fc(fc_id) is None:
                        logger.warning("EVC %s references missing construct %s", evc_id, fc_id)
                        continue
                    try:
                        self._fcs.release_fc(fc_id)
                    except OrchestratorError as exc:
                        remaining.append(fc_id)
                        failures.append(f"{fc_id}: {exc}")

                if failures:
                    current.fc_ids = remaining
                    current.state = ServiceState.active
                    self._registry.put_evc(current)
                    raise BackendFailure(f"removal of EVC {evc_id} incomplete: {'; '.join(failures)}")

                self._registry.pop_evc(evc_id)
        self._short_ids.release(current.short_id)
        current.state = ServiceState.removed
        current.fc_ids = []
        logger.info("removed EVC %s", evc_id)
        return current

    def remove_all_evcs(self) -> List[VirtualConnection]:
        """Remove every EVC. Failed removals are logged and skipped."""
        removed: List[VirtualConnection] = []
        for evc in self._registry.evcs():
            try:
                removed.append(self.remove_evc(evc.id or ""))
            except OrchestratorError as exc:
                logger.warning("skipping EVC %s: %s", evc.id, exc)
        return removed
