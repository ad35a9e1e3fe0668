import json
import stat
from pathlib import Path

import pytest

from homebot.config.loader import convert_keys, convert_to_camel, load_config, save_config
from homebot.config.schema import BridgeConfig, Config, LedgerConfig


def test_camel_case_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    config = Config()
    config.status.urls = ["http://cp.test"]
    config.reconnect.conflict_cooldown_s = 90.0
    config.remote.host = "vps.example.com"
    save_config(config, path)

    data = json.loads(path.read_text())
    assert data["status"]["urls"] == ["http://cp.test"]
    assert data["reconnect"]["conflictCooldownS"] == 90.0
    assert data["controlPlane"]["staleAfterS"] == 120.0
    assert data["session"]["maxQrCycles"] == 5
    assert stat.S_IMODE(path.stat().st_mode) == 0o600

    loaded = load_config(path)
    assert loaded.status.urls == ["http://cp.test"]
    assert loaded.reconnect.conflict_cooldown_s == 90.0
    assert loaded.remote.host == "vps.example.com"
    assert loaded.remote.configured


def test_legacy_shapes_are_migrated_with_backup(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "bridge": {"bridgeUrl": "ws://10.0.0.2:3005", "bridgeToken": "t"},
                "status": {"url": "http://dash.test", "apiKey": "k"},
            }
        )
    )

    config = load_config(path)

    assert config.status.urls == ["http://dash.test"]
    assert config.status.api_key == "k"
    assert config.bridge.bridge_host == "10.0.0.2"
    assert config.bridge.bridge_port == 3005
    assert config.bridge.resolved_bridge_url == "ws://10.0.0.2:3005"

    rewritten = json.loads(path.read_text())
    assert rewritten["configVersion"] == 1
    assert "url" not in rewritten["status"]
    assert rewritten["keepalive"]["deadAfterIntervals"] == 3
    assert list(tmp_path.glob("config.backup.*.json"))


def test_current_config_is_not_rewritten(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    save_config(Config(), path)
    before = path.read_text()

    load_config(path)

    assert path.read_text() == before
    assert not list(tmp_path.glob("config.backup.*.json"))


def test_invalid_config_falls_back_to_defaults(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json")

    config = load_config(path)

    assert config.session.max_qr_cycles == 5
    assert "Using default configuration" in capsys.readouterr().out


def test_invalid_values_fall_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"reconnect": {"baseDelayS": 50, "maxDelayS": 10}}))

    config = load_config(path)
    assert config.reconnect.base_delay_s == 5.0


def test_ledger_config_bounds() -> None:
    with pytest.raises(ValueError):
        LedgerConfig(max_entries=10, trim_to=20)


def test_key_conversion_helpers() -> None:
    snake = {"control_plane": {"stale_after_s": 1}, "status": {"urls": ["a"]}}
    camel = convert_to_camel(snake)
    assert camel == {"controlPlane": {"staleAfterS": 1}, "status": {"urls": ["a"]}}
    assert convert_keys(camel) == snake


def test_auth_path_defaults_under_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOMEBOT_HOME", str(tmp_path / "home"))
    assert Config().session.auth_path == tmp_path / "home" / "secrets" / "auth"


def test_bridge_url_defaults_to_host_and_port() -> None:
    assert BridgeConfig().resolved_bridge_url == "ws://127.0.0.1:3001"
    assert BridgeConfig(bridge_host="10.0.0.5", bridge_port=4000).resolved_bridge_url == "ws://10.0.0.5:4000"


def test_explicit_bridge_url_keeps_its_scheme() -> None:
    config = BridgeConfig(bridge_url="wss://bridge.example.com:8443/ws/")
    assert config.resolved_bridge_url == "wss://bridge.example.com:8443/ws"


def test_bridge_url_must_be_a_websocket_url() -> None:
    with pytest.raises(ValueError):
        BridgeConfig(bridge_url="http://bridge.example.com")
