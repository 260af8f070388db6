"""
Carrier Ethernet REST resource.

Routes
GET    /carrierethernet/evc          list EVCs
GET    /carrierethernet/evc/<id>     one EVC
POST   /carrierethernet/evc          install the EVC in the body
DELETE /carrierethernet/evc          remove every EVC
DELETE /carrierethernet/evc/<id>     remove one EVC
GET    /carrierethernet/uni          global UNI pool
GET    /carrierethernet/ltp          global LTP pool
GET    /carrierethernet/fc           installed forwarding constructs

The resource is a thin adapter. Request bodies are decoded by rest.codec and
only a fully decoded EVC reaches the service.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import unquote

from carrier_ethernet.core.errors import TranslationError
from carrier_ethernet.core.serialization import ltp_to_json, to_json_safe_dict
from carrier_ethernet.observability import setup_logging
from carrier_ethernet.rest.codec import decode_evc, encode_evc
from carrier_ethernet.service import CarrierEthernetService

logger = logging.getLogger(__name__)

PREFIX = "/carrierethernet"


@dataclass(frozen=True)
class RestServerConfig:
    host: str = "127.0.0.1"
    port: int = 8181
    log_level: str = "INFO"
    log_format: str = "json"


class CarrierEthernetHandler(BaseHTTPRequestHandler):
    server_version = "carrierethernet/1.0"

    @property
    def _service(self) -> CarrierEthernetService:
        return self.server.ce_service  # type: ignore[attr-defined]

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s %s", self.address_string(), format % args)

    def _read_json(self) -> Any:
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length)
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TranslationError(f"request body is not valid JSON: {exc}") from exc

    def _send_json(self, status: int, payload: dict[str, Any]) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)
        logger.info("%s %s", self.command, self.path, extra={"http_status": status})

    def _send_empty(self, status: int) -> None:
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()
        logger.info("%s %s", self.command, self.path, extra={"http_status": status})

    def _send_error(self, status: int, message: str) -> None:
        self._send_json(status, {"error": message})

    def _route(self) -> tuple[Optional[str], Optional[str]]:
        """(collection, item id) below the prefix, (None, None) when outside it."""
        path = self.path.split("?", 1)[0].rstrip("/")
        if not path.startswith(PREFIX + "/"):
            return None, None
        parts = path[len(PREFIX) + 1 :].split("/", 1)
        item = unquote(parts[1]) if len(parts) > 1 and parts[1] else None
        return parts[0], item

    def do_GET(self) -> None:  # noqa: N802
        collection, item = self._route()
        service = self._service
        if collection == "evc" and item is None:
            self._send_json(200, {"evcs": [encode_evc(evc) for evc in service.evcs()]})
        elif collection == "evc":
            evc = service.get_evc(item or "")
            if evc is None:
                self._send_error(404, f"EVC {item} does not exist")
            else:
                self._send_json(200, encode_evc(evc))
        elif collection == "uni" and item is None:
            self._send_json(200, {"unis": [to_json_safe_dict(u) for u in service.unis()]})
        elif collection == "ltp" and item is None:
            self._send_json(200, {"ltps": [ltp_to_json(ltp) for ltp in service.ltps()]})
        elif collection == "fc" and item is None:
            self._send_json(200, {"fcs": [to_json_safe_dict(fc) for fc in service.fcs()]})
        else:
            self._send_error(404, "unknown endpoint")

    def do_POST(self) -> None:  # noqa: N802
        collection, item = self._route()
        if collection != "evc" or item is not None:
            self._send_error(404, "unknown endpoint")
            return
        try:
            evc = decode_evc(self._read_json())
        except TranslationError as exc:
            self._send_error(400, str(exc))
            return

        installed = self._service.install_evc(evc)
        if installed is None:
            self._send_error(409, self._service.last_error() or "install failed")
            return
        self._send_json(200, {"evcId": installed.id})

    def do_DELETE(self) -> None:  # noqa: N802
        collection, item = self._route()
        service = self._service
        if collection != "evc":
            self._send_error(404, "unknown endpoint")
            return
        if item is None:
            service.remove_all_evcs()
            self._send_empty(204)
            return
        if service.get_evc(item) is None:
            self._send_error(404, f"EVC {item} does not exist")
            return
        if service.remove_evc(item) is None:
            self._send_error(409, service.last_error() or "removal failed")
            return
        self._send_empty(204)


class CarrierEthernetHttpServer(ThreadingHTTPServer):
    def __init__(self, host: str, port: int, service: CarrierEthernetService) -> None:
        super().__init__((host, port), CarrierEthernetHandler)
        self.ce_service = service


def run_rest_server(service: CarrierEthernetService, config: RestServerConfig | None = None) -> None:
    cfg = config or RestServerConfig()
    setup_logging(cfg.log_level, cfg.log_format)
    server = CarrierEthernetHttpServer(cfg.host, cfg.port, service)
    logger.info("carrier ethernet REST listening on http://%s:%s%s", cfg.host, cfg.port, PREFIX)
    try:
        server.serve_forever()
    finally:
        server.server_close()
        service.close()
