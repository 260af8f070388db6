"""
Static topology loader.

Reads a local json file that describes devices, ports and links.
This is useful for dev, tests, and small demos.

Schema example
{
  "devices": [
    {
      "id": "of:0000000000000001",
      "type": "SWITCH",
      "domain": "metro-a",
      "ports": [
        {"port": "1", "enabled": true, "speed_mbps": 1000},
        {"port": "LOCAL", "logical": true}
      ]
    }
  ],
  "links": [
    {"src": "of:0000000000000001/3", "dst": "of:0000000000000002/3", "bidirectional": true}
  ]
}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from carrier_ethernet.core.types import ConnectPoint, DeviceRecord, DeviceType, PortRecord
from carrier_ethernet.topology.graph import InMemoryTopology


def _parse_device_type(value: str) -> DeviceType:
    """Convert a device type string to DeviceType, case insensitive."""
    return DeviceType(value.upper())


def _device_from_dict(obj: dict[str, Any]) -> tuple[DeviceRecord, list[PortRecord]]:
    """Convert a device dict into a DeviceRecord and its ports."""
    device_id = str(obj["id"])
    dev = DeviceRecord(
        id=device_id,
        type=_parse_device_type(str(obj.get("type", "SWITCH"))),
        domain=str(obj.get("domain", "default")),
    )

    ports: list[PortRecord] = []
    for raw in obj.get("ports", []) or []:
        if not isinstance(raw, dict):
            continue
        ports.append(
            PortRecord(
                cp=ConnectPoint(device_id=device_id, port=str(raw["port"])),
                enabled=bool(raw.get("enabled", True)),
                speed_mbps=int(raw.get("speed_mbps", 1000)),
                logical=bool(raw.get("logical", False)),
            )
        )
    return dev, ports


@dataclass(frozen=True)
class StaticTopologyLoader:
    """
    Load topology from a local json file.

    path points to a json file that matches the schema described in the module docstring.
    """

    path: Path

    def load(self) -> InMemoryTopology:
        data = json.loads(self.path.read_text(encoding="utf-8"))
        return topology_from_dict(data)


def topology_from_dict(data: dict[str, Any]) -> InMemoryTopology:
    topo = InMemoryTopology()

    devices = data.get("devices", [])
    if isinstance(devices, list):
        for obj in devices:
            if isinstance(obj, dict):
                dev, ports = _device_from_dict(obj)
                topo.add_device(dev, ports)

    links = data.get("links", [])
    if isinstance(links, list):
        for raw in links:
            if not isinstance(raw, dict):
                continue
            topo.add_link(
                ConnectPoint.parse(str(raw["src"])),
                ConnectPoint.parse(str(raw["dst"])),
                bidirectional=bool(raw.get("bidirectional", True)),
            )

    return topo
