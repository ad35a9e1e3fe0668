from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from homebot.api.bridge import create_app as create_bridge_app
from homebot.api.control_plane import create_app as create_control_plane_app
from homebot.config.schema import APIConfig, ControlPlaneConfig
from homebot.control.arbiter import ConflictArbiter
from homebot.control.registry import HomeStatusRegistry
from homebot.core.models import ConnectionSnapshot, ConnectionState
from homebot.telemetry.prometheus import PrometheusTelemetry

TOKEN = "operator-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


class FakeSupervisor:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.current = ConnectionSnapshot(
            state=ConnectionState.QR_READY,
            qr_payload="2@abc",
            reconnect_attempts=2,
            last_error="Connection closed (515)",
        )

    def snapshot(self) -> ConnectionSnapshot:
        return self.current

    def start(self) -> None:
        self.calls.append("start")

    def stop(self) -> None:
        self.calls.append("stop")

    def forget_identity(self) -> None:
        self.calls.append("forget")

    def request_pairing(self, phone: str) -> None:
        if len(phone) < 6:
            raise ValueError("Phone number is too short")
        self.calls.append(f"pair:{phone}")


def bridge_client(supervisor: FakeSupervisor, **kwargs) -> TestClient:
    config = APIConfig(auth_token=TOKEN, rate_limit_per_minute=1000)
    return TestClient(create_bridge_app(supervisor, api_config=config, **kwargs))


def test_bridge_health_needs_no_token() -> None:
    client = bridge_client(FakeSupervisor())
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "state": "qr_ready",
        "identity": None,
        "lastReportAgeSeconds": None,
        "error": "Connection closed (515)",
    }


def test_bridge_status_requires_token() -> None:
    client = bridge_client(FakeSupervisor())
    assert client.get("/status").status_code == 401
    assert client.get("/status", headers={"Authorization": "Bearer wrong"}).status_code == 401


def test_bridge_status_is_camel_case_with_qr_image() -> None:
    client = bridge_client(FakeSupervisor())
    data = client.get("/status", headers=AUTH).json()
    assert data["state"] == "qr_ready"
    assert data["qrPayload"] == "2@abc"
    assert data["reconnectAttempts"] == 2
    assert data["lastError"] == "Connection closed (515)"
    assert data["qrDataUrl"].startswith("data:image/svg+xml;base64,")
    assert "reconnect_attempts" not in data


def test_bridge_commands_are_accepted() -> None:
    supervisor = FakeSupervisor()
    client = bridge_client(supervisor)
    for path in ("/start", "/stop", "/forget"):
        response = client.post(path, headers=AUTH)
        assert response.status_code == 202
        assert response.json() == {"status": "accepted"}
    response = client.post("/pairing", headers=AUTH, json={"phoneNumber": "15551234567"})
    assert response.status_code == 202
    assert supervisor.calls == ["start", "stop", "forget", "pair:15551234567"]


def test_bridge_pairing_rejects_bad_numbers() -> None:
    supervisor = FakeSupervisor()
    client = bridge_client(supervisor)
    assert client.post("/pairing", headers=AUTH, json={"phoneNumber": "123"}).status_code == 422
    assert client.post("/pairing", headers=AUTH, json={}).status_code == 422
    assert supervisor.calls == []


def test_bridge_rate_limit() -> None:
    config = APIConfig(auth_token=TOKEN, rate_limit_per_minute=2)
    client = TestClient(create_bridge_app(FakeSupervisor(), api_config=config))
    assert client.get("/status", headers=AUTH).status_code == 200
    assert client.get("/status", headers=AUTH).status_code == 200
    response = client.get("/status", headers=AUTH)
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"


def test_bridge_metrics() -> None:
    telemetry = PrometheusTelemetry(CollectorRegistry())
    telemetry.incr("state_transitions_total", labels=(("to", "connected"),))
    client = bridge_client(FakeSupervisor(), telemetry=telemetry)
    body = client.get("/metrics", headers=AUTH).text
    assert 'homebot_state_transitions_total{to="connected"} 1.0' in body

    plain = bridge_client(FakeSupervisor()).get("/metrics", headers=AUTH)
    assert plain.status_code == 200
    assert plain.text.startswith("# Prometheus backend not enabled")


def control_plane_client(remote) -> TestClient:
    registry = HomeStatusRegistry()
    arbiter = ConflictArbiter(registry, remote, wall_clock=lambda: 1000.0)
    config = ControlPlaneConfig(api_key="shared", auth_token=TOKEN, rate_limit_per_minute=1000)
    return TestClient(create_control_plane_app(registry, arbiter, config))


def test_status_intake_checks_api_key(remote) -> None:
    client = control_plane_client(remote)
    payload = {"state": "connected", "identity": "1555", "hostname": "pi"}
    assert client.post("/status", json=payload).status_code == 401
    assert client.post("/status", json=payload, headers={"X-API-Key": "nope"}).status_code == 401

    response = client.post("/status", json=payload, headers={"X-API-Key": "shared"})
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_status_intake_rejects_non_objects(remote) -> None:
    client = control_plane_client(remote)
    headers = {"X-API-Key": "shared", "Content-Type": "application/json"}
    assert client.post("/status", content=b"not json", headers=headers).status_code == 400
    assert client.post("/status", json=[1, 2], headers={"X-API-Key": "shared"}).status_code == 400


def test_control_plane_health(remote) -> None:
    client = control_plane_client(remote)
    data = client.get("/health").json()
    assert data["state"] == "disconnected"
    assert data["error"] == "Home bot has never reported."

    client.post("/status", json={"state": "connected", "identity": "1555", "hostname": "pi"}, headers={"X-API-Key": "shared"})
    data = client.get("/health").json()
    assert data["state"] == "connected"
    assert data["identity"] == "1555"
    assert data["hostname"] == "pi"


def test_conflict_check_and_remediation(remote) -> None:
    remote.active = True
    client = control_plane_client(remote)
    assert client.get("/conflict/latest", headers=AUTH).status_code == 404
    assert client.get("/conflict").status_code == 401

    client.post("/status", json={"state": "connected", "identity": "1555", "hostname": "pi"}, headers={"X-API-Key": "shared"})
    report = client.get("/conflict", headers=AUTH).json()
    assert report["hasConflict"] is True
    assert report["homeOnline"] is True
    assert report["remoteActive"] is True
    assert report["checkedAt"] == 1000.0
    assert client.get("/conflict/latest", headers=AUTH).json() == report

    response = client.post("/conflict/remediate", headers=AUTH)
    assert response.status_code == 200
    assert response.json() == {"success": True, "output": "DONE", "error": None}
    assert remote.disable_calls == 1

    assert client.get("/conflict", headers=AUTH).json()["hasConflict"] is False


def test_remediation_without_remote_fails() -> None:
    client = control_plane_client(None)
    response = client.post("/conflict/remediate", headers=AUTH)
    assert response.status_code == 500
    assert response.json()["success"] is False
    assert response.json()["error"]


def test_control_plane_shutdown_releases_remote(remote) -> None:
    with control_plane_client(remote) as client:
        assert client.get("/health").status_code == 200
        assert not remote.closed
    assert remote.closed
