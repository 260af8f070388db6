from __future__ import annotations

from dataclasses import asdict
from typing import Any

from carrier_ethernet.core.types import ConnectPoint, LogicalTerminationPoint


def _normalize(obj: Any) -> Any:
    if isinstance(obj, ConnectPoint):
        return str(obj)
    if hasattr(obj, "value"):
        return obj.value
    if isinstance(obj, dict):
        if {"device_id", "port"} == set(obj.keys()):
            return f"{obj['device_id']}/{obj['port']}"
        return {str(_normalize(k)): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_normalize(v) for v in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted(_normalize(v) for v in obj)
    return obj


def to_json_safe_dict(obj: Any) -> dict[str, Any]:
    """
    Convert a dataclass object into a JSON safe dict.

    Connect points become "device/port" strings, enums their values and sets
    sorted lists. This is intended for transport only.
    """
    raw = asdict(obj)
    normalized = _normalize(raw)
    if not isinstance(normalized, dict):
        raise TypeError("expected dict after normalization")
    return normalized


def ltp_to_json(ltp: LogicalTerminationPoint) -> dict[str, Any]:
    """LTP transport shape. The interface type is a class attribute, so it is added here."""
    out = to_json_safe_dict(ltp)
    out["type"] = ltp.type.value
    return out


def registry_to_json(registry: Any) -> dict[str, Any]:
    """
    ResourceRegistry transport shape.

    We only rely on the registry listing methods returning dataclass snapshots.
    """
    return {
        "unis": [to_json_safe_dict(u) for u in registry.unis()],
        "ltps": [ltp_to_json(ltp) for ltp in registry.ltps()],
        "fcs": [to_json_safe_dict(fc) for fc in registry.fcs()],
        "evcs": [to_json_safe_dict(evc) for evc in registry.evcs()],
    }
