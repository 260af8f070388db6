import copy

from carrier_ethernet.core.types import (
    BandwidthProfile,
    ConnectionType,
    ConnectPoint,
    ForwardingConstruct,
    Inni,
    LogicalTerminationPoint,
    Role,
    ServiceState,
    Uni,
)


def uni_ltp(text: str, role: Role = Role.root, cir_mbps: float = 10.0) -> LogicalTerminationPoint:
    bwp = BandwidthProfile(id=text, cir_bps=cir_mbps * 1_000_000)
    uni = Uni.for_service(ConnectPoint.parse(text), role=role, bwp=bwp)
    return LogicalTerminationPoint(ni=uni, role=role)


def trunk_ltp(text: str, role: Role) -> LogicalTerminationPoint:
    return LogicalTerminationPoint(ni=Inni(cp=ConnectPoint.parse(text), role=role), role=role)


def make_fc(conn_type: ConnectionType, *ltps: LogicalTerminationPoint, **kwargs) -> ForwardingConstruct:
    return ForwardingConstruct(type=conn_type, ltps=list(ltps), **kwargs)


def op_names(backend) -> list:
    return [name for name, _, _ in backend.calls]


def test_point_to_point_install_programs_every_hop_and_removes_cleanly(service, backend):
    fc = make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:3/1"))

    installed = service.install_fc(fc)

    assert installed.state is ServiceState.active
    assert installed.id == "FC-1"
    assert installed.vlan_id == 1
    assert service.last_error() is None
    assert backend.forwarding["FC-1"] == {
        "of:1/1": ["of:1/4"],
        "of:1/4": ["of:1/1"],
        "of:2/4": ["of:2/5"],
        "of:2/5": ["of:2/4"],
        "of:3/1": ["of:3/4"],
        "of:3/4": ["of:3/1"],
    }
    assert backend.meters == {("FC-1", "of:1/1"): "applied", ("FC-1", "of:3/1"): "applied"}
    assert service.registry.ref_count("of:1/1") == 1
    assert service.registry.ref_count("of:3/1") == 1
    assert fc.id is None

    removed = service.remove_fc("FC-1")

    assert removed.state is ServiceState.removed
    assert backend.forwarding == {}
    assert backend.meters == {}
    assert service.registry.ref_count("of:1/1") == 0
    assert service.get_fc("FC-1") is None
    assert 1 not in service.fc_orchestrator._vlans.in_use()


def test_install_orders_bandwidth_around_forwarding(service, backend):
    service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:2/1")))
    names = op_names(backend)

    last_create = max(i for i, n in enumerate(names) if n == "create_bandwidth")
    first_set = names.index("set_forwarding")
    last_set = max(i for i, n in enumerate(names) if n == "set_forwarding")
    first_apply = names.index("apply_bandwidth")
    assert last_create < first_set
    assert last_set < first_apply


def test_shape_violations_fail_without_backend_calls(service, backend):
    two_roots = make_fc(
        ConnectionType.root_multipoint,
        uni_ltp("of:1/1"),
        uni_ltp("of:2/1"),
        uni_ltp("of:3/1", Role.leaf),
    )
    three_ends = make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:2/1"), uni_ltp("of:3/1"))
    leaf_in_lan = make_fc(ConnectionType.multipoint_to_multipoint, uni_ltp("of:1/1"), uni_ltp("of:2/1", Role.leaf))

    for fc in (two_roots, three_ends, leaf_in_lan):
        result = service.install_fc(fc)
        assert result.state is ServiceState.failed
        assert result.failure_reason
        assert service.last_error() == result.failure_reason

    assert backend.calls == []
    assert service.fcs() == []


def test_disabled_connect_point_is_rejected(service, backend):
    result = service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:3/3")))

    assert result.state is ServiceState.failed
    assert "disabled" in result.failure_reason
    assert backend.calls == []


def test_device_failure_rolls_back_everything(service, backend):
    backend.failing_devices.add("of:3")
    fc = make_fc(
        ConnectionType.multipoint_to_multipoint,
        uni_ltp("of:1/1"),
        uni_ltp("of:2/1"),
        uni_ltp("of:3/1"),
    )

    result = service.install_fc(fc)

    assert result.state is ServiceState.failed
    assert "of:3" in result.failure_reason
    assert service.fcs() == []
    for uni_id in ("of:1/1", "of:2/1", "of:3/1"):
        assert service.registry.ref_count(uni_id) == 0
    assert backend.meters == {}
    assert backend.forwarding == {}
    assert service.bandwidth.held() == {}

    names = op_names(backend)
    assert names.index("remove_all_forwarding") < names.index("remove_bandwidth")
    assert "apply_bandwidth" not in names

    backend.failing_devices.clear()
    retry = service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:2/1")))
    assert retry.id == "FC-1"


def test_backend_timeout_counts_as_failure(service, backend):
    backend.hanging_devices.add("of:2")

    result = service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:3/1")))

    assert result.state is ServiceState.failed
    assert "timed out" in result.failure_reason
    assert backend.forwarding == {}
    assert backend.meters == {}


def test_bandwidth_failure_rolls_back(service, backend):
    backend.failing_bandwidth_unis.add("of:2/1")

    result = service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:2/1")))

    assert result.state is ServiceState.failed
    assert backend.meters == {}
    assert "set_forwarding" not in op_names(backend)


def test_preset_vlan_is_used_and_guarded(service):
    first = service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:2/1"), vlan_id=42))
    second = service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/2"), uni_ltp("of:2/2"), vlan_id=42))

    assert first.id == "FC-42"
    assert second.state is ServiceState.failed
    assert "already in use" in second.failure_reason


def test_port_vlan_configuration_sets_the_s_vlan(service):
    assert service.set_port_vlan(ConnectPoint.parse("of:1/1"), 300)
    assert service.set_port_vlan(ConnectPoint.parse("of:2/1"), 300)
    assert not service.set_port_vlan(ConnectPoint.parse("of:2/2"), 5000)

    installed = service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:2/1")))

    assert installed.id == "FC-300"


def test_update_only_touches_the_added_interface(service, backend):
    service.install_fc(make_fc(ConnectionType.multipoint_to_multipoint, uni_ltp("of:1/1"), uni_ltp("of:2/1")))
    backend.calls.clear()

    bigger = make_fc(
        ConnectionType.multipoint_to_multipoint,
        uni_ltp("of:1/1"),
        uni_ltp("of:2/1"),
        uni_ltp("of:3/1"),
        id="FC-1",
    )
    updated = service.update_fc(bigger)

    assert updated.state is ServiceState.active
    assert updated.ltp_ids() == ["of:1/1", "of:2/1", "of:3/1"]
    assert backend.ops("create_bandwidth") == [("FC-1", "of:3/1")]
    assert backend.ops("apply_bandwidth") == [("FC-1", "of:3/1")]
    assert backend.ops("remove_bandwidth") == []
    assert ("FC-1", "of:1/1") not in backend.ops("set_forwarding")
    assert backend.forwarding["FC-1"]["of:2/4"] == ["of:2/1", "of:2/5"]
    assert service.registry.ref_count("of:1/1") == 1
    assert service.registry.ref_count("of:3/1") == 1


def test_reinstalling_the_same_definition_is_a_no_op(service, backend):
    fc = make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:2/1"))
    installed = service.install_fc(fc)
    backend.calls.clear()

    again = service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:2/1"), id=installed.id))

    assert again.state is ServiceState.active
    assert backend.calls == []
    assert service.registry.ref_count("of:1/1") == 1


def test_failed_update_keeps_the_previous_definition(service, backend):
    service.install_fc(make_fc(ConnectionType.multipoint_to_multipoint, uni_ltp("of:1/1"), uni_ltp("of:2/1")))
    before = copy.deepcopy(backend.forwarding)
    backend.failing_devices.add("of:3")

    result = service.update_fc(
        make_fc(
            ConnectionType.multipoint_to_multipoint,
            uni_ltp("of:1/1"),
            uni_ltp("of:2/1"),
            uni_ltp("of:3/1"),
            id="FC-1",
        )
    )

    assert result.state is ServiceState.failed
    assert service.get_fc("FC-1").ltp_ids() == ["of:1/1", "of:2/1"]
    assert backend.forwarding == before
    assert ("FC-1", "of:3/1") not in backend.meters
    assert service.registry.ref_count("of:3/1") == 0


def test_refused_teardown_keeps_the_construct_for_retry(service, backend):
    service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:2/1")))
    backend.failing_removals.add("FC-1")

    assert service.remove_fc("FC-1") is None
    assert "refused" in service.last_error()
    assert service.get_fc("FC-1") is not None
    assert service.registry.ref_count("of:1/1") == 1

    backend.failing_removals.clear()
    removed = service.remove_fc("FC-1")

    assert removed is not None
    assert service.get_fc("FC-1") is None


def test_owned_construct_cannot_be_removed_directly(service):
    service.install_fc(make_fc(ConnectionType.point_to_point, uni_ltp("of:1/1"), uni_ltp("of:2/1")))
    service.registry.adjust_fc_ref("FC-1", 1)

    assert service.remove_fc("FC-1") is None
    assert "owned" in service.last_error()
    assert service.remove_all_fcs() == []
    assert service.get_fc("FC-1") is not None


def test_missing_construct_removal_reports_an_error(service):
    assert service.remove_fc("FC-9") is None
    assert "does not exist" in service.last_error()


def test_tree_leaves_only_reach_the_root(service, backend):
    fc = make_fc(
        ConnectionType.root_multipoint,
        uni_ltp("of:2/1", Role.leaf),
        trunk_ltp("of:2/4", Role.root),
        trunk_ltp("of:2/5", Role.leaf),
    )

    installed = service.install_fc(fc)

    assert installed.state is ServiceState.active
    entries = backend.forwarding[installed.id]
    assert entries["of:2/4"] == ["of:2/1", "of:2/5"]
    assert entries["of:2/1"] == ["of:2/4"]
    assert entries["of:2/5"] == ["of:2/4"]
    assert backend.ops("create_bandwidth") == [(installed.id, "of:2/1")]
