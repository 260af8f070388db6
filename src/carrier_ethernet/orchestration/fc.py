"""
Forwarding construct orchestrator.

Installs, updates and removes forwarding constructs on the packet nodes and
keeps the registry in step with what the network actually carries.

Install sequence
1. Validate shape, connect points and admission against the global pool.
2. Create bandwidth resources for every UNI.
3. Program forwarding for every source interface and wait for the ack.
4. Apply bandwidth resources for every UNI.
5. Commit to the registry, which increments LTP reference counts.

Any failure before step 5 unwinds the completed steps newest first:
forwarding is removed before bandwidth resources are released, and no
reference count is ever touched.

Removal sequence
Forwarding teardown, then bandwidth teardown, then registry release.
Each backend step is awaited before the next one starts.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Optional, Tuple

from carrier_ethernet.backend.base import BackendConfig, PacketNodeBackend, wait_for
from carrier_ethernet.core.errors import (
    BackendFailure,
    OrchestratorError,
    ResourceConflictError,
    ValidationError,
)
from carrier_ethernet.core.types import (
    ConnectionType,
    ConnectPoint,
    DeviceType,
    Enni,
    ForwardingConstruct,
    GenericNi,
    Inni,
    LogicalTerminationPoint,
    NetworkInterface,
    Role,
    ServiceState,
    Uni,
)
from carrier_ethernet.orchestration.allocation import IdAllocator, PortVlanConfig
from carrier_ethernet.orchestration.bandwidth import BandwidthProfileManager
from carrier_ethernet.orchestration.rollback import RollbackLog
from carrier_ethernet.registry.store import ResourceRegistry
from carrier_ethernet.topology.base import TopologyService

logger = logging.getLogger(__name__)

MBPS = 1_000_000

Hop = Tuple[ConnectPoint, ConnectPoint]


@dataclass
class ForwardingDecision:
    """
    Forwarding for one source interface of a construct.

    src is where traffic enters a device, dsts are the ports it leaves through.
    Intermediate ports are GenericNi.
    """

    src: NetworkInterface
    dsts: Tuple[NetworkInterface, ...]

    def signature(self) -> tuple:
        return (
            self.src.id,
            _interface_view(self.src),
            tuple((ni.id, ni.kind) for ni in self.dsts),
        )


def _interface_view(ni: NetworkInterface) -> tuple:
    match ni:
        case Uni():
            return (ni.kind, frozenset(ni.ce_vlan_ids), ni.bwp)
        case Inni() | Enni():
            return (ni.kind, frozenset(ni.s_vlan_ids))
        case _:
            return (ni.kind,)


def service_view(ltp: LogicalTerminationPoint) -> tuple:
    """What an LTP asks of the network. Two LTPs with the same view need no reprogramming."""
    return (ltp.id, ltp.role) + _interface_view(ltp.ni)


class ForwardingConstructOrchestrator:
    def __init__(
        self,
        registry: ResourceRegistry,
        topology: TopologyService,
        backend: PacketNodeBackend,
        bandwidth: BandwidthProfileManager,
        vlans: IdAllocator,
        port_vlans: PortVlanConfig,
        config: Optional[BackendConfig] = None,
    ) -> None:
        self._registry = registry
        self._topology = topology
        self._backend = backend
        self._bandwidth = bandwidth
        self._vlans = vlans
        self._port_vlans = port_vlans
        self._config = config or BackendConfig()

    # validation

    def validate_fc(self, fc: ForwardingConstruct) -> None:
        """
        Check shape and connect points of a construct.

        POINT_TO_POINT has exactly two LTPs.
        ROOT_MULTIPOINT has exactly one ROOT and LEAF everywhere else.
        MULTIPOINT_TO_MULTIPOINT has at least two LTPs and no LEAF.
        Raises ValidationError.
        """
        ids = fc.ltp_ids()
        if not ids:
            raise ValidationError(f"forwarding construct {fc.id} has no LTPs")
        if len(set(ids)) != len(ids):
            raise ValidationError(f"forwarding construct {fc.id} lists an LTP twice")
        if fc.vlan_id is not None and not 1 <= fc.vlan_id <= 4094:
            raise ValidationError(f"S-VLAN {fc.vlan_id} is out of range")

        for ltp in fc.ltps:
            if isinstance(ltp.ni, GenericNi):
                raise ValidationError(f"{ltp.id} is not a termination point")
            self._check_connect_point(ltp.cp)

        roles = [ltp.role for ltp in fc.ltps]
        match fc.type:
            case ConnectionType.point_to_point:
                if len(ids) != 2:
                    raise ValidationError(f"POINT_TO_POINT {fc.id} needs exactly 2 LTPs, got {len(ids)}")
            case ConnectionType.root_multipoint:
                if len(ids) < 2:
                    raise ValidationError(f"ROOT_MULTIPOINT {fc.id} needs at least 2 LTPs")
                if roles.count(Role.root) != 1 or roles.count(Role.leaf) != len(roles) - 1:
                    raise ValidationError(f"ROOT_MULTIPOINT {fc.id} needs one ROOT and only LEAF otherwise")
            case ConnectionType.multipoint_to_multipoint:
                if len(ids) < 2:
                    raise ValidationError(f"MULTIPOINT_TO_MULTIPOINT {fc.id} needs at least 2 LTPs")
                if Role.leaf in roles:
                    raise ValidationError(f"MULTIPOINT_TO_MULTIPOINT {fc.id} cannot have LEAF LTPs")

    def _check_connect_point(self, cp: ConnectPoint) -> None:
        port = self._topology.port(cp)
        if port is None:
            raise ValidationError(f"connect point {cp} does not exist")
        if not port.enabled:
            raise ValidationError(f"connect point {cp} is disabled")

    def _normalize(self, fc: ForwardingConstruct) -> None:
        for ltp in fc.ltps:
            if ltp.role is None:
                ltp.role = ltp.ni.role if not isinstance(ltp.ni, GenericNi) else None
            if ltp.role is None and isinstance(ltp.ni, Uni):
                ltp.role = Role.root
            if not isinstance(ltp.ni, GenericNi) and ltp.ni.role is None:
                ltp.ni.role = ltp.role
            if ltp.ni.capacity_bps <= 0:
                port = self._topology.port(ltp.cp)
                if port is not None:
                    ltp.ni.capacity_bps = float(port.speed_mbps * MBPS)
            if isinstance(ltp.ni, Uni):
                ltp.ni.clamp_bandwidth()

    # S-VLAN

    def assign_vlan(self, fc: ForwardingConstruct) -> None:
        """
        Reserve the S-VLAN of fc.

        A preset vlan_id is reserved as is. Otherwise the port VLAN
        configuration wins when it agrees, and the allocator fills in the rest.
        """
        if fc.vlan_id is not None:
            if not self._vlans.reserve(fc.vlan_id):
                raise ResourceConflictError(f"S-VLAN {fc.vlan_id} is already in use")
            return
        configured = self._port_vlans.vlan_for(ltp.cp for ltp in fc.ltps)
        if configured is not None:
            if self._vlans.reserve(configured):
                fc.vlan_id = configured
                return
            logger.warning("configured S-VLAN %s is in use, allocating another one", configured)
        fc.vlan_id = self._vlans.allocate()

    def release_vlan(self, vlan_id: Optional[int]) -> None:
        self._vlans.release(vlan_id)

    # forwarding decisions

    def forwarding_plan(self, fc: ForwardingConstruct) -> Dict[str, ForwardingDecision]:
        """
        Source interface id to forwarding decision, sorted by source id.

        Every LTP pair except LEAF to LEAF is connected in both directions.
        The reverse direction follows the same path when congruent_paths is set.
        Only packet switches get decisions.
        """
        sources: Dict[str, NetworkInterface] = {}
        egress: Dict[str, Dict[str, NetworkInterface]] = {}

        ltps = sorted(fc.ltps, key=lambda ltp: ltp.id)
        for i, a in enumerate(ltps):
            for b in ltps[i + 1 :]:
                if a.role is Role.leaf and b.role is Role.leaf:
                    continue
                forward = self._hops(a.cp, b.cp)
                if fc.congruent_paths:
                    backward = [(out_cp, in_cp) for in_cp, out_cp in reversed(forward)]
                else:
                    backward = self._hops(b.cp, a.cp)
                self._add_hops(a.ni, b.ni, forward, sources, egress)
                self._add_hops(b.ni, a.ni, backward, sources, egress)

        plan: Dict[str, ForwardingDecision] = {}
        for src_id in sorted(sources):
            src = sources[src_id]
            dev = self._topology.device(src.cp.device_id)
            if dev is None or dev.type is not DeviceType.switch:
                continue
            dsts = egress[src_id]
            plan[src_id] = ForwardingDecision(src=src, dsts=tuple(dsts[k] for k in sorted(dsts)))
        return plan

    def _hops(self, src: ConnectPoint, dst: ConnectPoint) -> List[Hop]:
        if src.device_id == dst.device_id:
            return [(src, dst)]
        paths = self._topology.paths(src.device_id, dst.device_id)
        if not paths:
            raise ValidationError(f"no path between {src} and {dst}")
        cps: List[ConnectPoint] = [src]
        for link in paths[0]:
            cps.extend((link.src, link.dst))
        cps.append(dst)
        return [(cps[k], cps[k + 1]) for k in range(0, len(cps), 2)]

    @staticmethod
    def _add_hops(
        src_ni: NetworkInterface,
        dst_ni: NetworkInterface,
        hops: List[Hop],
        sources: Dict[str, NetworkInterface],
        egress: Dict[str, Dict[str, NetworkInterface]],
    ) -> None:
        last = len(hops) - 1
        for k, (in_cp, out_cp) in enumerate(hops):
            in_ni: NetworkInterface = src_ni if k == 0 else GenericNi(cp=in_cp)
            out_ni: NetworkInterface = dst_ni if k == last else GenericNi(cp=out_cp)
            if in_ni.id == out_ni.id:
                continue
            known = sources.get(in_ni.id)
            if known is None or (isinstance(known, GenericNi) and not isinstance(in_ni, GenericNi)):
                sources[in_ni.id] = in_ni
            outs = egress.setdefault(in_ni.id, {})
            known_out = outs.get(out_ni.id)
            if known_out is None or (isinstance(known_out, GenericNi) and not isinstance(out_ni, GenericNi)):
                outs[out_ni.id] = out_ni

    # backend steps

    def _program(self, fc: ForwardingConstruct, decision: ForwardingDecision) -> None:
        wait_for(
            self._backend.set_node_forwarding(fc, decision.src, decision.dsts),
            self._config.timeout_seconds,
            f"program forwarding from {decision.src.id} in {fc.id}",
        )

    def _unprogram(self, fc: ForwardingConstruct, src: NetworkInterface) -> None:
        wait_for(
            self._backend.remove_node_forwarding(fc, src),
            self._config.timeout_seconds,
            f"remove forwarding from {src.id} in {fc.id}",
            cancel=False,
        )

    def _remove_all_forwarding(self, fc: ForwardingConstruct) -> None:
        wait_for(
            self._backend.remove_all_forwarding_resources(fc),
            self._config.timeout_seconds,
            f"remove forwarding of {fc.id}",
            cancel=False,
        )

    def _restore_bandwidth(self, fc: ForwardingConstruct, uni: Uni) -> None:
        self._bandwidth.create(fc, uni)
        self._bandwidth.apply(fc, uni)

    # install

    def install_fc(self, fc: ForwardingConstruct) -> ForwardingConstruct:
        """
        Install a construct, or update it when its id is already installed.

        Returns the installed construct with state ACTIVE, or the request with
        state FAILED and failure_reason set. The request object is not modified.
        """
        request = copy.deepcopy(fc)
        if request.id and self._registry.get_fc(request.id) is not None:
            return self.update_fc(request)
        try:
            return self.provision_fc(request)
        except OrchestratorError as exc:
            request.state = ServiceState.failed
            request.failure_reason = str(exc)
            return request

    def provision_fc(self, fc: ForwardingConstruct, vlan_reserved: bool = False) -> ForwardingConstruct:
        """
        Install a new construct and raise on failure.

        vlan_reserved tells that the caller already reserved fc.vlan_id and
        keeps ownership of it when the install fails.
        """
        request = copy.deepcopy(fc)
        request.state = ServiceState.requested
        request.failure_reason = None
        self._normalize(request)
        self.validate_fc(request)

        if not vlan_reserved:
            self.assign_vlan(request)
        if not request.id:
            request.id = f"FC-{request.vlan_id}"

        try:
            with self._registry.claim(fcs=[request.id], ltps=request.ltp_ids()):
                if self._registry.get_fc(request.id) is not None:
                    raise ResourceConflictError(f"forwarding construct {request.id} already exists")
                self._registry.check_admission(request)
                stored = self._provision(request)
        except OrchestratorError as exc:
            if not vlan_reserved:
                self._vlans.release(request.vlan_id)
            logger.warning("install of %s failed: %s", request.id, exc)
            raise

        logger.info(
            "installed %s %s vlan %s ltps %s",
            stored.type.value,
            stored.id,
            stored.vlan_id,
            stored.ltp_ids(),
        )
        return stored

    def _provision(self, fc: ForwardingConstruct) -> ForwardingConstruct:
        plan = self.forwarding_plan(fc)
        fc.state = ServiceState.provisioning
        rollback = RollbackLog(f"install {fc.id}")
        try:
            for uni in fc.unis():
                rollback.push(f"release bandwidth of {uni.id}", partial(self._bandwidth.remove, fc, uni))
                self._bandwidth.create(fc, uni)

            rollback.push("remove forwarding", partial(self._remove_all_forwarding, fc))
            for decision in plan.values():
                self._program(fc, decision)

            for uni in fc.unis():
                self._bandwidth.apply(fc, uni)

            fc.state = ServiceState.active
            stored = self._registry.commit_fc(fc)
        except OrchestratorError:
            fc.state = ServiceState.failed
            rollback.unwind()
            raise
        rollback.discard()
        return stored

    # update

    def update_fc(self, fc: ForwardingConstruct) -> ForwardingConstruct:
        """
        Apply a new definition to an installed construct.

        Returns the updated construct, or the request with state FAILED. On
        failure the previous definition stays installed.
        """
        request = copy.deepcopy(fc)
        try:
            return self.modify_fc(request)
        except OrchestratorError as exc:
            request.state = ServiceState.failed
            request.failure_reason = str(exc)
            return request

    def modify_fc(self, fc: ForwardingConstruct) -> ForwardingConstruct:
        """
        Update a construct by its LTP delta and raise on failure.

        Added LTPs go through the install path, removed LTPs through the
        teardown path, LTPs whose service attributes changed through both.
        Forwarding decisions are only reprogrammed where they differ.
        Unchanged LTPs keep their bandwidth resources and reference counts.
        """
        if not fc.id or self._registry.get_fc(fc.id) is None:
            return self.provision_fc(fc)

        request = copy.deepcopy(fc)
        with self._registry.claim(fcs=[request.id]):
            current = self._registry.get_fc(request.id)
            if current is None:
                raise ValidationError(f"forwarding construct {request.id} was removed concurrently")
            request.vlan_id = current.vlan_id
            request.ref_count = current.ref_count
            request.evc_id = request.evc_id or current.evc_id
            self._normalize(request)

            old = {ltp.id: ltp for ltp in current.ltps}
            new = {ltp.id: ltp for ltp in request.ltps}
            removed = sorted(old.keys() - new.keys())
            added = sorted(new.keys() - old.keys())
            changed = sorted(k for k in old.keys() & new.keys() if service_view(old[k]) != service_view(new[k]))

            with self._registry.claim(ltps=sorted(old.keys() | new.keys())):
                if not (removed or added or changed) and request.type is current.type:
                    logger.debug("update of %s changes nothing", current.id)
                    return current

                self.validate_fc(request)
                self._registry.check_admission(request, ltp_ids=added + changed)
                stored = self._apply_delta(current, request, removed, added, changed)

        logger.info(
            "updated %s: added %s removed %s changed %s",
            stored.id,
            added,
            removed,
            changed,
        )
        return stored

    def _apply_delta(
        self,
        current: ForwardingConstruct,
        request: ForwardingConstruct,
        removed: List[str],
        added: List[str],
        changed: List[str],
    ) -> ForwardingConstruct:
        old_plan = self.forwarding_plan(current)
        new_plan = self.forwarding_plan(request)
        old_unis = {u.id: u for u in current.unis()}
        new_unis = {u.id: u for u in request.unis()}

        rollback = RollbackLog(f"update {request.id}")
        try:
            for uni_id in changed:
                if uni_id in old_unis:
                    self._bandwidth.remove(current, old_unis[uni_id])
                    rollback.push(
                        f"restore bandwidth of {uni_id}",
                        partial(self._restore_bandwidth, current, old_unis[uni_id]),
                    )
            for uni_id in added + changed:
                if uni_id in new_unis:
                    rollback.push(
                        f"release bandwidth of {uni_id}",
                        partial(self._bandwidth.remove, request, new_unis[uni_id]),
                    )
                    self._bandwidth.create(request, new_unis[uni_id])

            for src_id, decision in new_plan.items():
                previous = old_plan.get(src_id)
                if previous is not None and previous.signature() == decision.signature():
                    continue
                self._program(request, decision)
                if previous is None:
                    rollback.push(f"remove forwarding from {src_id}", partial(self._unprogram, request, decision.src))
                else:
                    rollback.push(f"restore forwarding from {src_id}", partial(self._program, current, previous))

            for src_id, previous in old_plan.items():
                if src_id in new_plan:
                    continue
                self._unprogram(current, previous.src)
                rollback.push(f"restore forwarding from {src_id}", partial(self._program, current, previous))

            for uni_id in added + changed:
                if uni_id in new_unis:
                    self._bandwidth.apply(request, new_unis[uni_id])

            for uni_id in removed:
                if uni_id in old_unis:
                    self._bandwidth.remove(current, old_unis[uni_id])
                    rollback.push(
                        f"restore bandwidth of {uni_id}",
                        partial(self._restore_bandwidth, current, old_unis[uni_id]),
                    )

            request.state = ServiceState.active
            request.failure_reason = None
            stored = self._registry.replace_fc(request, attach=added + changed, detach=removed + changed)
        except OrchestratorError:
            rollback.unwind()
            raise
        rollback.discard()
        return stored

    # removal

    def remove_fc(self, fc_id: str) -> ForwardingConstruct:
        """
        Remove an unowned construct and raise on failure.

        Fails when the construct is missing, still owned by an EVC, or when the
        backend refuses the teardown. In the last case the construct stays
        registered so the removal can be retried.
        """
        with self._registry.claim(fcs=[fc_id]):
            current = self._registry.get_fc(fc_id)
            if current is None:
                raise ValidationError(f"forwarding construct {fc_id} does not exist")
            if current.ref_count != 0:
                raise ResourceConflictError(f"forwarding construct {fc_id} is owned by {current.ref_count} EVCs")
            return self._teardown(current)

    def release_fc(self, fc_id: str) -> Optional[ForwardingConstruct]:
        """
        Drop one EVC reference and remove the construct when none is left.

        Returns the removed construct, or None when other owners remain.
        """
        with self._registry.claim(fcs=[fc_id]):
            remaining = self._registry.adjust_fc_ref(fc_id, -1)
            if remaining > 0:
                return None
            current = self._registry.get_fc(fc_id)
            if current is None:
                return None
            try:
                return self._teardown(current)
            except OrchestratorError:
                self._registry.adjust_fc_ref(fc_id, 1)
                raise

    def _teardown(self, current: ForwardingConstruct) -> ForwardingConstruct:
        fc_id = current.id or ""
        with self._registry.claim(ltps=current.ltp_ids()):
            current.state = ServiceState.removing
            self._remove_all_forwarding(current)

            failures: List[str] = []
            for uni in current.unis():
                try:
                    self._bandwidth.remove(current, uni)
                except BackendFailure as exc:
                    failures.append(str(exc))
            if failures:
                raise BackendFailure(f"bandwidth teardown of {fc_id} incomplete: {'; '.join(failures)}")

            released = self._registry.release_fc(fc_id)
        self._vlans.release(released.vlan_id)
        released.state = ServiceState.removed
        logger.info("removed %s", fc_id)
        return released

    def remove_all_fcs(self) -> List[ForwardingConstruct]:
        """Remove every unowned construct. Owned ones and failed removals are skipped and logged."""
        removed: List[ForwardingConstruct] = []
        for fc_id in self._registry.fc_ids():
            try:
                removed.append(self.remove_fc(fc_id))
            except OrchestratorError as exc:
                logger.warning("skipping %s: %s", fc_id, exc)
        return removed
