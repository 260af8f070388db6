import concurrent.futures

import pytest

from carrier_ethernet.backend.base import BackendConfig
from carrier_ethernet.backend.mock import InMemoryPacketNode
from carrier_ethernet.core.errors import BackendFailure, ResourceConflictError
from carrier_ethernet.core.types import (
    BandwidthProfile,
    ConnectionType,
    ConnectPoint,
    ForwardingConstruct,
    LogicalTerminationPoint,
    Uni,
)
from carrier_ethernet.orchestration.bandwidth import BandwidthPhase, BandwidthProfileManager


def make_uni(text: str) -> Uni:
    bwp = BandwidthProfile(id=text, cir_bps=10_000_000)
    return Uni.for_service(ConnectPoint.parse(text), bwp=bwp, capacity_bps=1e9)


def make_fc(*unis: Uni) -> ForwardingConstruct:
    return ForwardingConstruct(
        id="FC-5",
        type=ConnectionType.point_to_point,
        ltps=[LogicalTerminationPoint(ni=u, role=u.role) for u in unis],
        vlan_id=5,
    )


def test_create_then_apply_then_remove():
    backend = InMemoryPacketNode()
    manager = BandwidthProfileManager(backend)
    uni = make_uni("of:1/1")
    fc = make_fc(uni, make_uni("of:2/1"))

    manager.create(fc, uni)
    assert manager.phase("FC-5", "of:1/1") is BandwidthPhase.created

    manager.apply(fc, uni)
    assert backend.meters[("FC-5", "of:1/1")] == "applied"
    assert manager.held() == {("FC-5", "of:1/1"): BandwidthPhase.applied}

    manager.remove(fc, uni)
    assert manager.phase("FC-5", "of:1/1") is None
    assert backend.meters == {}


def test_apply_before_create_is_rejected():
    backend = InMemoryPacketNode()
    manager = BandwidthProfileManager(backend)
    uni = make_uni("of:1/1")

    with pytest.raises(ResourceConflictError):
        manager.apply(make_fc(uni), uni)
    assert backend.calls == []


def test_repeated_phases_do_not_reach_the_backend():
    backend = InMemoryPacketNode()
    manager = BandwidthProfileManager(backend)
    uni = make_uni("of:1/1")
    fc = make_fc(uni)

    manager.create(fc, uni)
    manager.create(fc, uni)
    manager.apply(fc, uni)
    manager.apply(fc, uni)

    assert backend.ops("create_bandwidth") == [("FC-5", "of:1/1")]
    assert backend.ops("apply_bandwidth") == [("FC-5", "of:1/1")]


def test_remove_without_create_is_a_no_op():
    backend = InMemoryPacketNode()
    manager = BandwidthProfileManager(backend)
    uni = make_uni("of:1/1")

    manager.remove(make_fc(uni), uni)

    assert backend.calls == []


def test_failed_create_leaves_nothing_held():
    backend = InMemoryPacketNode(failing_bandwidth_unis={"of:1/1"})
    manager = BandwidthProfileManager(backend)
    uni = make_uni("of:1/1")

    with pytest.raises(BackendFailure, match="no meter available"):
        manager.create(make_fc(uni), uni)

    assert manager.phase("FC-5", "of:1/1") is None
    assert manager.held() == {}
    assert backend.ops("remove_bandwidth") == [("FC-5", "of:1/1")]


def test_timed_out_create_is_released():
    class SlowNode(InMemoryPacketNode):
        def create_bandwidth_profile_resources(self, fc, uni):
            return concurrent.futures.Future()

    backend = SlowNode()
    manager = BandwidthProfileManager(backend, BackendConfig(timeout_seconds=0.05))
    uni = make_uni("of:1/1")

    with pytest.raises(BackendFailure, match="timed out"):
        manager.create(make_fc(uni), uni)

    assert backend.ops("remove_bandwidth") == [("FC-5", "of:1/1")]
    assert manager.held() == {}


def test_unacknowledged_release_stays_requested_until_retried():
    class StuckNode(InMemoryPacketNode):
        stuck = True

        def create_bandwidth_profile_resources(self, fc, uni):
            return concurrent.futures.Future()

        def remove_bandwidth_profile_resources(self, fc, uni):
            if self.stuck:
                return concurrent.futures.Future()
            return super().remove_bandwidth_profile_resources(fc, uni)

    backend = StuckNode()
    manager = BandwidthProfileManager(backend, BackendConfig(timeout_seconds=0.05))
    uni = make_uni("of:1/1")
    fc = make_fc(uni)

    with pytest.raises(BackendFailure, match="timed out"):
        manager.create(fc, uni)
    assert manager.phase("FC-5", "of:1/1") is BandwidthPhase.requested
    with pytest.raises(ResourceConflictError):
        manager.apply(fc, uni)

    backend.stuck = False
    manager.remove(fc, uni)

    assert backend.ops("remove_bandwidth") == [("FC-5", "of:1/1")]
    assert manager.held() == {}
