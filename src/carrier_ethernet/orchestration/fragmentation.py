"""
EVC decomposition.

An EVC becomes one forwarding construct, or one per network segment when
fragmentation is enabled.

How fragmentation cuts a service
For every UNI pair except LEAF to LEAF we walk the topology path between the
two UNIs. Every port on the path that is registered as a global INNI or ENNI
LTP is a segment boundary:
- leaving a device through such a port closes the current segment
- entering a device through such a port opens the next one

Each closed segment is an LTP pair. Pairs that share an LTP are merged, and
each merged set becomes one construct.

Roles
The egress trunk LTP of a segment takes the role of the far UNI, the ingress
trunk LTP of the next segment takes the role of the near UNI. UNIs are walked
ROOT first, so in an E-Tree every segment ends up with one ROOT side.

This module is deterministic: same EVC and topology, same constructs.
"""

from __future__ import annotations

import copy
from typing import Dict, List, Optional, Tuple

from carrier_ethernet.core.errors import ValidationError
from carrier_ethernet.core.types import (
    ConnectionType,
    ConnectPoint,
    Enni,
    ForwardingConstruct,
    Inni,
    LogicalTerminationPoint,
    Role,
    Scope,
    Uni,
    VirtualConnection,
)
from carrier_ethernet.registry.store import ResourceRegistry
from carrier_ethernet.topology.base import TopologyService

LtpPair = Tuple[LogicalTerminationPoint, LogicalTerminationPoint]


def _uni_ltp(uni: Uni) -> LogicalTerminationPoint:
    return LogicalTerminationPoint(ni=copy.deepcopy(uni), role=uni.role, cfg_id=uni.cfg_id)


def fc_from_evc(evc: VirtualConnection) -> ForwardingConstruct:
    """Single construct spanning every UNI of the EVC."""
    return ForwardingConstruct(
        type=evc.type,
        ltps=[_uni_ltp(uni) for uni in evc.unis],
        cfg_id=evc.cfg_id,
        evc_id=evc.id,
        max_latency_ms=evc.max_latency_ms,
    )


def _trunk_ltp(
    cp: ConnectPoint,
    role: Optional[Role],
    registry: ResourceRegistry,
) -> Optional[LogicalTerminationPoint]:
    entry = registry.get_ltp(str(cp))
    if entry is None or not isinstance(entry.ni, (Inni, Enni)):
        return None
    ni = type(entry.ni)(
        cp=cp,
        cfg_id=entry.ni.cfg_id,
        capacity_bps=entry.ni.capacity_bps,
        scope=Scope.service,
        role=role,
        tpid=entry.ni.tpid,
    )
    return LogicalTerminationPoint(ni=ni, role=role, cfg_id=entry.cfg_id)


def _split_pair(
    a: Uni,
    b: Uni,
    topology: TopologyService,
    registry: ResourceRegistry,
) -> List[LtpPair]:
    if a.cp.device_id == b.cp.device_id:
        return [(_uni_ltp(a), _uni_ltp(b))]

    paths = topology.paths(a.cp.device_id, b.cp.device_id)
    if not paths:
        raise ValidationError(f"no path between {a.id} and {b.id}")

    pairs: List[LtpPair] = []
    src: Optional[LogicalTerminationPoint] = _uni_ltp(a)
    for link in paths[0]:
        if src is not None:
            egress = _trunk_ltp(link.src, b.role, registry)
            if egress is not None:
                pairs.append((src, egress))
                src = None
        if src is None:
            src = _trunk_ltp(link.dst, a.role, registry)
    if src is None:
        raise ValidationError(f"path from {a.id} to {b.id} leaves a trunk segment without entering another")
    pairs.append((src, _uni_ltp(b)))
    return pairs


def _merge(pairs: List[LtpPair]) -> List[List[LogicalTerminationPoint]]:
    """Union pairs that share an LTP id. First occurrence of an LTP wins."""
    parent: Dict[str, str] = {}
    by_id: Dict[str, LogicalTerminationPoint] = {}

    def find(x: str) -> str:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for left, right in pairs:
        for ltp in (left, right):
            by_id.setdefault(ltp.id, ltp)
            parent.setdefault(ltp.id, ltp.id)
        root_l, root_r = find(left.id), find(right.id)
        if root_l != root_r:
            parent[max(root_l, root_r)] = min(root_l, root_r)

    groups: Dict[str, List[LogicalTerminationPoint]] = {}
    for ltp_id in sorted(by_id):
        groups.setdefault(find(ltp_id), []).append(by_id[ltp_id])
    return [groups[k] for k in sorted(groups)]


def fragment_type(ltps: List[LogicalTerminationPoint]) -> ConnectionType:
    if any(ltp.role is Role.leaf for ltp in ltps):
        return ConnectionType.root_multipoint
    if len(ltps) == 2:
        return ConnectionType.point_to_point
    return ConnectionType.multipoint_to_multipoint


def fragment_evc(
    evc: VirtualConnection,
    topology: TopologyService,
    registry: ResourceRegistry,
) -> List[ForwardingConstruct]:
    """
    Per segment constructs of an EVC.

    Raises ValidationError when two UNIs that must reach each other have no path.
    """
    unis = sorted(evc.unis, key=lambda u: (u.role is not Role.root, u.id))
    pairs: List[LtpPair] = []
    for i, a in enumerate(unis):
        for b in unis[i + 1 :]:
            if a.role is Role.leaf and b.role is Role.leaf:
                continue
            pairs.extend(_split_pair(a, b, topology, registry))

    fcs: List[ForwardingConstruct] = []
    for group in _merge(pairs):
        fcs.append(
            ForwardingConstruct(
                type=fragment_type(group),
                ltps=group,
                cfg_id=evc.cfg_id,
                evc_id=evc.id,
                max_latency_ms=evc.max_latency_ms,
            )
        )
    return fcs
