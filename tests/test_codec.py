import pytest

from carrier_ethernet.core.errors import TranslationError
from carrier_ethernet.core.types import (
    MAX_NUM_UNI,
    BandwidthProfileType,
    ConnectionType,
    ConnectPoint,
    Role,
    ServiceState,
    Uni,
    VirtualConnection,
)
from carrier_ethernet.rest.codec import decode_evc, encode_evc, generate_evc_type


def payload(**overrides):
    body = {
        "evcCfgId": "svc1",
        "evcType": "POINT_TO_POINT",
        "uniList": ["of:1/1", "of:3/1"],
        "cir": 10,
        "eir": 2,
        "cbs": 1000,
        "ebs": 200,
    }
    body.update(overrides)
    return body


def test_decode_port_based_line():
    evc = decode_evc(payload())

    assert evc.type is ConnectionType.point_to_point
    assert evc.cfg_id == "svc1"
    assert evc.id is None
    assert evc.max_num_uni == 2
    assert evc.uni_ids() == ["of:1/1", "of:3/1"]
    first = evc.unis[0]
    assert first.role is Role.root
    assert first.ce_vlan_id is None
    assert first.bwp.type is BandwidthProfileType.interface
    assert first.bwp.id == "of:1/1"
    assert first.bwp.cir_bps == 10_000_000
    assert first.bwp.eir_bps == 2_000_000
    assert (first.bwp.cbs, first.bwp.ebs) == (1000, 200)


def test_decode_vlan_based_service_uses_evc_profiles():
    evc = decode_evc(payload(vlanId=100))

    for uni in evc.unis:
        assert uni.ce_vlan_id == 100
        assert uni.bwp.type is BandwidthProfileType.evc
        assert uni.bwp.id == "svc1"


def test_decode_tree_makes_every_other_uni_a_leaf():
    evc = decode_evc(payload(evcType="ROOT_MULTIPOINT", uniList=["of:1/1", "of:2/1", "of:3/1"]))

    assert [u.role for u in evc.unis] == [Role.root, Role.leaf, Role.leaf]
    assert evc.max_num_uni == MAX_NUM_UNI


def test_type_is_inferred_from_the_uni_count():
    assert generate_evc_type(None, ["a/1", "b/1"]) is ConnectionType.point_to_point
    assert generate_evc_type(None, ["a/1", "b/1", "c/1"]) is ConnectionType.multipoint_to_multipoint

    evc = decode_evc(payload(evcType=None, uniList=["of:1/1", "of:2/1", "of:3/1"]))
    assert evc.type is ConnectionType.multipoint_to_multipoint


@pytest.mark.parametrize(
    "body",
    [
        "not an object",
        payload(uniList=[]),
        payload(uniList=["of:1"]),
        payload(uniList=[7]),
        payload(evcType="STAR"),
        payload(vlanId=5000),
        payload(vlanId="100"),
        payload(maxNumUni=0),
        payload(cir=-1),
        payload(cir=True),
        payload(cbs=-5),
        payload(evcCfgId=""),
    ],
)
def test_decode_rejects_malformed_payloads(body):
    with pytest.raises(TranslationError):
        decode_evc(body)


def test_encode_lists_root_first_and_reports_mbps():
    unis = decode_evc(payload(evcType="ROOT_MULTIPOINT", uniList=["of:1/1", "of:2/1", "of:3/1"])).unis
    evc = VirtualConnection(
        type=ConnectionType.root_multipoint,
        unis=[unis[2], unis[0], unis[1]],
        id="EP-Tree-4",
        cfg_id="svc1",
        max_num_uni=MAX_NUM_UNI,
        fc_ids=["FC-9"],
        state=ServiceState.active,
    )

    out = encode_evc(evc)

    assert out["evcId"] == "EP-Tree-4"
    assert out["evcType"] == "ROOT_MULTIPOINT"
    assert out["uniList"] == ["of:1/1", "of:2/1", "of:3/1"]
    assert out["state"] == "ACTIVE"
    assert out["fcIds"] == ["FC-9"]
    assert out["vlanId"] == -1
    assert (out["cir"], out["eir"], out["cbs"], out["ebs"]) == (10.0, 2.0, 1000, 200)


def test_encode_without_profile_omits_rates():
    uni = Uni.for_service(ConnectPoint.parse("of:1/1"), ce_vlan_id=7)
    out = encode_evc(VirtualConnection(type=ConnectionType.point_to_point, unis=[uni], id="EVP-Line-1"))

    assert out["vlanId"] == 7
    assert "cir" not in out
