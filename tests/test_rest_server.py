import json
import threading
import urllib.error
import urllib.request

import pytest

from carrier_ethernet.rest.server import CarrierEthernetHttpServer


@pytest.fixture
def base_url(service):
    server = CarrierEthernetHttpServer("127.0.0.1", 0, service)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}/carrierethernet"
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


def call(method: str, url: str, body=None, raw: bytes | None = None):
    data = raw if raw is not None else (json.dumps(body).encode("utf-8") if body is not None else None)
    req = urllib.request.Request(url, data=data, method=method, headers={"Content-Type": "application/json"})
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            status, text = resp.status, resp.read()
    except urllib.error.HTTPError as exc:
        status, text = exc.code, exc.read()
    return status, (json.loads(text) if text else None)


def line(**overrides):
    body = {"evcCfgId": "svc1", "uniList": ["of:1/1", "of:3/1"], "cir": 10, "eir": 2, "cbs": 1000, "ebs": 200}
    body.update(overrides)
    return body


def test_install_list_and_fetch(base_url):
    status, out = call("POST", f"{base_url}/evc", line())
    assert status == 200
    assert out == {"evcId": "EP-Line-1"}

    status, out = call("GET", f"{base_url}/evc")
    assert status == 200
    assert [e["evcId"] for e in out["evcs"]] == ["EP-Line-1"]

    status, out = call("GET", f"{base_url}/evc/EP-Line-1")
    assert status == 200
    assert out["evcType"] == "POINT_TO_POINT"
    assert out["fcIds"] == ["FC-1"]
    assert out["cir"] == 10.0
    assert out["state"] == "ACTIVE"

    status, out = call("GET", f"{base_url}/fc")
    assert status == 200
    assert [fc["id"] for fc in out["fcs"]] == ["FC-1"]

    status, out = call("GET", f"{base_url}/uni")
    assert [u["cp"] for u in out["unis"]] == ["of:1/1", "of:3/1"]

    status, out = call("GET", f"{base_url}/ltp")
    assert {ltp["type"] for ltp in out["ltps"]} == {"UNI"}


def test_bad_requests(base_url):
    assert call("POST", f"{base_url}/evc", raw=b"{not json")[0] == 400
    assert call("POST", f"{base_url}/evc", line(uniList=[]))[0] == 400
    assert call("POST", f"{base_url}/evc/EP-Line-1", line())[0] == 404
    assert call("GET", f"{base_url}/nothing")[0] == 404
    assert call("GET", base_url.replace("/carrierethernet", "/other"))[0] == 404


def test_rejected_install_is_a_conflict(base_url, service):
    status, out = call(
        "POST",
        f"{base_url}/evc",
        line(evcType="MULTIPOINT_TO_MULTIPOINT", uniList=["of:1/1", "of:2/1", "of:3/1"], maxNumUni=2),
    )

    assert status == 409
    assert "max_num_uni" in out["error"]
    assert service.evcs() == []


def test_delete_one_and_all(base_url, service):
    call("POST", f"{base_url}/evc", line())
    call("POST", f"{base_url}/evc", line(evcCfgId="svc2", uniList=["of:1/2", "of:3/2"]))

    assert call("DELETE", f"{base_url}/evc/EP-Line-9")[0] == 404
    assert call("GET", f"{base_url}/evc/EP-Line-9")[0] == 404
    assert call("DELETE", f"{base_url}/evc/EP-Line-1") == (204, None)
    assert [evc.id for evc in service.evcs()] == ["EP-Line-2"]

    assert call("DELETE", f"{base_url}/evc") == (204, None)
    assert service.evcs() == []
    assert service.fcs() == []
