import json
import logging

from carrier_ethernet.core.serialization import registry_to_json
from carrier_ethernet.core.types import (
    BandwidthProfile,
    ConnectionType,
    ConnectPoint,
    ForwardingConstruct,
    LogicalTerminationPoint,
    NiType,
    Role,
    Uni,
    VirtualConnection,
)
from carrier_ethernet.observability import JSONFormatter
from carrier_ethernet.service import service_from_static_topology


def cp(text: str) -> ConnectPoint:
    return ConnectPoint.parse(text)


def line(a: str, b: str) -> VirtualConnection:
    unis = [Uni.for_service(cp(x), bwp=BandwidthProfile(id=x, cir_bps=5_000_000)) for x in (a, b)]
    return VirtualConnection(type=ConnectionType.point_to_point, unis=unis, cfg_id=f"{a}-{b}")


def test_last_error_is_cleared_by_the_next_success(service):
    assert service.remove_global_uni("of:1/1") is None
    assert "does not exist" in service.last_error()

    assert service.add_global_uni(service.generate_uni(cp("of:1/1"))) is not None
    assert service.last_error() is None


def test_generate_uni_reports_unusable_ports(service):
    assert service.generate_uni(cp("of:1/4")) is None
    assert "infrastructure link" in service.last_error()


def test_global_ltp_with_pair_is_removed_as_a_pair(service):
    ltp = service.generate_ltp(cp("of:1/4"))
    assert ltp.type is NiType.inni

    service.add_global_ltp(ltp)
    assert [x.id for x in service.ltps()] == ["of:1/4", "of:2/4"]

    assert service.add_global_ltp(service.generate_ltp(cp("of:1/4"))) is None
    assert "already exists" in service.last_error()

    assert service.remove_global_ltp("of:2/4") is not None
    assert service.ltps() == []


def test_uni_ltp_on_linked_port_is_rejected(service):
    bad = LogicalTerminationPoint(ni=Uni(cp=cp("of:2/5")))

    assert service.add_global_ltp(bad) is None
    assert "infrastructure link" in service.last_error()


def test_topology_listings(service):
    service.add_global_uni(service.generate_uni(cp("of:1/1")))

    assert len(service.get_unis_from_topo()) == 10
    assert len(service.get_unis_from_topo(exclude_added=True)) == 9
    assert len(service.get_ltps_from_topo()) == 14


def test_close_removes_evcs_and_unowned_constructs(service, backend):
    service.install_evc(line("of:1/1", "of:3/1"))
    uni = Uni.for_service(cp("of:1/2"), role=Role.root)
    service.install_fc(
        ForwardingConstruct(
            type=ConnectionType.point_to_point,
            ltps=[LogicalTerminationPoint(ni=uni), LogicalTerminationPoint(ni=Uni.for_service(cp("of:2/2")))],
        )
    )
    assert len(service.fcs()) == 2

    with service:
        pass

    assert service.evcs() == []
    assert service.fcs() == []
    assert backend.forwarding == {}
    assert backend.meters == {}


def test_registry_snapshot_is_json_serializable(service):
    service.install_evc(line("of:1/1", "of:3/1"))

    out = json.loads(json.dumps(registry_to_json(service.registry)))

    assert [e["id"] for e in out["evcs"]] == ["EP-Line-1"]
    assert out["fcs"][0]["ltps"][0]["ni"]["cp"] == "of:1/1"
    assert {ltp["type"] for ltp in out["ltps"]} == {"UNI"}
    assert out["unis"][0]["bwps"]["INTERFACE"]["of:1/1"]["cir_bps"] == 5_000_000


def test_json_formatter_carries_service_ids():
    record = logging.LogRecord("carrier_ethernet.orchestration.evc", logging.INFO, __file__, 1, "installed %s", ("x",), None)
    record.evc_id = "EP-Line-1"
    record.fc_id = "FC-1"

    entry = json.loads(JSONFormatter().format(record))

    assert entry["message"] == "installed x"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "carrier_ethernet.orchestration.evc"
    assert entry["evc_id"] == "EP-Line-1"
    assert entry["fc_id"] == "FC-1"
    assert "uni_id" not in entry


def test_service_from_static_topology_file(tmp_path):
    data = {
        "devices": [
            {"id": "of:1", "ports": [{"port": "1"}, {"port": "2"}]},
            {"id": "of:2", "ports": [{"port": "1"}, {"port": "2"}]},
        ],
        "links": [{"src": "of:1/2", "dst": "of:2/2"}],
    }
    path = tmp_path / "lab.json"
    path.write_text(json.dumps(data), encoding="utf-8")

    with service_from_static_topology(path) as lab:
        assert [u.id for u in lab.get_unis_from_topo()] == ["of:1/1", "of:2/1"]
        installed = lab.install_evc(line("of:1/1", "of:2/1"))
        assert installed.fc_ids == ["FC-1"]

    assert lab.evcs() == []
