"""
EVC JSON codec.

Wire format
{
  "evcId": "EVP-Line-1",         optional on input
  "evcCfgId": "svc1",
  "evcType": "POINT_TO_POINT",   optional, inferred from the UNI count
  "uniList": ["of:1/1", "of:2/1"],
  "maxNumUni": 2,                optional, -1 means default
  "vlanId": 100,                 CE-VLAN, optional, -1 means none
  "cir": 10, "eir": 2,           Mbps
  "cbs": 1000, "ebs": 200        bytes
}

The first uniList entry is the ROOT. The others are LEAF in an E-Tree and
ROOT otherwise. Every UNI gets the same CE-VLAN and the same bandwidth
profile values.

Decoding failures raise TranslationError before anything reaches the
orchestrator.
"""

from __future__ import annotations

from typing import Any, List, Optional

from carrier_ethernet.core.errors import TranslationError
from carrier_ethernet.core.types import (
    MAX_NUM_UNI,
    VLAN_MAX,
    VLAN_MIN,
    BandwidthProfile,
    BandwidthProfileType,
    ConnectionType,
    ConnectPoint,
    Role,
    Uni,
    VirtualConnection,
)

MBPS = 1_000_000


def _require_dict(value: Any, name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise TranslationError(f"{name} must be an object")
    return value


def _require_str(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise TranslationError(f"{name} must be a non empty string")
    return value


def _optional_str(value: Any, name: str) -> Optional[str]:
    if value is None:
        return None
    return _require_str(value, name)


def _require_int(value: Any, name: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise TranslationError(f"{name} must be an integer")
    return value


def _require_number(value: Any, name: str) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TranslationError(f"{name} must be a number")
    if value < 0:
        raise TranslationError(f"{name} must not be negative")
    return float(value)


def _require_uni_list(value: Any) -> List[str]:
    if not isinstance(value, list) or not value:
        raise TranslationError("uniList must be a non empty array")
    return [_require_str(item, "uniList entry") for item in value]


def generate_evc_type(evc_type: Optional[str], uni_ids: List[str]) -> ConnectionType:
    """Explicit type, or POINT_TO_POINT for up to two UNIs and MULTIPOINT_TO_MULTIPOINT above."""
    if evc_type is None:
        if len(uni_ids) > 2:
            return ConnectionType.multipoint_to_multipoint
        return ConnectionType.point_to_point
    try:
        return ConnectionType(evc_type)
    except ValueError as exc:
        raise TranslationError(f"unsupported evcType {evc_type}") from exc


def generate_max_num_uni(max_num_uni: int, evc_type: ConnectionType) -> int:
    if max_num_uni != -1:
        if max_num_uni < 1:
            raise TranslationError("maxNumUni must be positive")
        return max_num_uni
    return 2 if evc_type is ConnectionType.point_to_point else MAX_NUM_UNI


def generate_ce_vlan_id(vlan_id: int) -> Optional[int]:
    if vlan_id == -1:
        return None
    if not VLAN_MIN <= vlan_id <= VLAN_MAX:
        raise TranslationError(f"vlanId {vlan_id} is outside {VLAN_MIN}..{VLAN_MAX}")
    return vlan_id


def generate_bandwidth_profile_type(ce_vlan_id: Optional[int]) -> BandwidthProfileType:
    """A port based service is policed per interface, a VLAN based one per EVC."""
    return BandwidthProfileType.interface if ce_vlan_id is None else BandwidthProfileType.evc


def generate_bandwidth_profile_id(uni_id: str, evc_cfg_id: Optional[str], ce_vlan_id: Optional[int]) -> str:
    if ce_vlan_id is None or not evc_cfg_id:
        return uni_id
    return evc_cfg_id


def generate_uni_set(
    evc_type: ConnectionType,
    uni_ids: List[str],
    ce_vlan_id: Optional[int],
    evc_cfg_id: Optional[str],
    cir_mbps: float,
    eir_mbps: float,
    cbs: int,
    ebs: int,
) -> List[Uni]:
    """Service UNIs, first one ROOT."""
    others = Role.leaf if evc_type is ConnectionType.root_multipoint else Role.root
    unis: List[Uni] = []
    for k, uni_id in enumerate(uni_ids):
        try:
            cp = ConnectPoint.parse(uni_id)
        except ValueError as exc:
            raise TranslationError(str(exc)) from exc
        bwp = BandwidthProfile(
            id=generate_bandwidth_profile_id(str(cp), evc_cfg_id, ce_vlan_id),
            type=generate_bandwidth_profile_type(ce_vlan_id),
            cir_bps=cir_mbps * MBPS,
            eir_bps=eir_mbps * MBPS,
            cbs=cbs,
            ebs=ebs,
            cfg_id=evc_cfg_id,
        )
        unis.append(
            Uni.for_service(
                cp,
                role=Role.root if k == 0 else others,
                ce_vlan_id=ce_vlan_id,
                bwp=bwp,
            )
        )
    return unis


def decode_evc(payload: Any) -> VirtualConnection:
    obj = _require_dict(payload, "evc")

    evc_id = _optional_str(obj.get("evcId"), "evcId")
    evc_cfg_id = _optional_str(obj.get("evcCfgId"), "evcCfgId")
    uni_ids = _require_uni_list(obj.get("uniList"))
    evc_type = generate_evc_type(_optional_str(obj.get("evcType"), "evcType"), uni_ids)
    max_num_uni = generate_max_num_uni(_require_int(obj.get("maxNumUni"), "maxNumUni", -1), evc_type)
    ce_vlan_id = generate_ce_vlan_id(_require_int(obj.get("vlanId"), "vlanId", -1))

    cbs = _require_int(obj.get("cbs"), "cbs", 0)
    ebs = _require_int(obj.get("ebs"), "ebs", 0)
    if cbs < 0 or ebs < 0:
        raise TranslationError("cbs and ebs must not be negative")

    return VirtualConnection(
        type=evc_type,
        id=evc_id,
        cfg_id=evc_cfg_id,
        max_num_uni=max_num_uni,
        unis=generate_uni_set(
            evc_type,
            uni_ids,
            ce_vlan_id,
            evc_cfg_id,
            _require_number(obj.get("cir"), "cir"),
            _require_number(obj.get("eir"), "eir"),
            cbs,
            ebs,
        ),
    )


def encode_evc(evc: VirtualConnection) -> dict[str, Any]:
    unis = sorted(evc.unis, key=lambda u: (u.role is not Role.root, u.id))
    out: dict[str, Any] = {
        "evcId": evc.id,
        "evcCfgId": evc.cfg_id,
        "evcType": evc.type.value,
        "uniList": [uni.id for uni in unis],
        "maxNumUni": evc.max_num_uni,
        "state": evc.state.value,
        "fcIds": list(evc.fc_ids),
    }
    first = unis[0] if unis else None
    ce_vlan_id = first.ce_vlan_id if first is not None else None
    out["vlanId"] = ce_vlan_id if ce_vlan_id is not None else -1
    bwp = first.bwp if first is not None else None
    if bwp is not None:
        out["cir"] = bwp.cir_bps / MBPS
        out["eir"] = bwp.eir_bps / MBPS
        out["cbs"] = bwp.cbs
        out["ebs"] = bwp.ebs
    return out
