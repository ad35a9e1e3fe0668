import httpx
import paramiko
import pytest

from homebot.config.schema import RemoteConfig
from homebot.control.remote import (
    HttpHealthProbe,
    RemoteProbeError,
    SshRemoteDeployment,
    build_disable_command,
    build_probe_command,
    build_remote,
    parse_probe_output,
)


class FakeChannel:
    def __init__(self, status: int) -> None:
        self.status = status

    def recv_exit_status(self) -> int:
        return self.status


class FakeStream:
    def __init__(self, data: str, status: int = 0) -> None:
        self.data = data
        self.channel = FakeChannel(status)

    def read(self) -> bytes:
        return self.data.encode()


class FakeSSHClient:
    """Scripted stand-in for ``paramiko.SSHClient``."""

    def __init__(self, script: list, commands: list[str]) -> None:
        self.script = script
        self.commands = commands
        self.closed = False

    def set_missing_host_key_policy(self, policy) -> None:
        pass

    def connect(self, **kwargs) -> None:
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        self.output = step

    def exec_command(self, command: str, get_pty: bool = False, timeout: float | None = None):
        self.commands.append(command)
        return None, FakeStream(self.output), FakeStream("")

    def close(self) -> None:
        self.closed = True


def make_ssh(script: list, retries: int = 1) -> tuple[SshRemoteDeployment, list[str], list[float]]:
    commands: list[str] = []
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    deployment = SshRemoteDeployment(
        RemoteConfig(host="vps.example.com", password="pw", retries=retries),
        client_factory=lambda: FakeSSHClient(script, commands),
        sleep=fake_sleep,
    )
    return deployment, commands, sleeps


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("active\n---\n0\n---\n0\n", True),
        ("inactive\n---\n0\n---\n0\n", False),
        ("inactive\n---\n2\n---\n0\n", True),
        ("failed\n---\n0\n---\n1\n", True),
        ("", False),
        ("activating\n---\n\n", False),
    ],
)
def test_parse_probe_output(output: str, expected: bool) -> None:
    assert parse_probe_output(output) is expected


def test_commands_never_match_their_own_shell() -> None:
    probe = build_probe_command("openclaw-whatsapp", ["openclaw-whatsapp", "vps-bot/index.mjs"])
    assert probe.startswith("systemctl is-active openclaw-whatsapp")
    assert "grep -c '[o]penclaw-whatsapp'" in probe
    assert "grep -c '[v]ps-bot/index.mjs'" in probe
    assert probe.count("echo '---'") == 2

    disable = build_disable_command("openclaw-whatsapp", ["vps-bot/index.mjs"])
    assert "systemctl stop openclaw-whatsapp" in disable
    assert "systemctl disable openclaw-whatsapp" in disable
    assert "pkill -f '[v]ps-bot/index.mjs'" in disable
    assert disable.endswith("echo DONE")


async def test_ssh_probe_reports_active() -> None:
    deployment, commands, _ = make_ssh(["active\n---\n1\n---\n0\n"])
    assert await deployment.is_active()
    assert commands == [deployment.probe_command]


async def test_ssh_retries_connection_timeouts() -> None:
    deployment, commands, sleeps = make_ssh([TimeoutError("timed out"), "inactive\n---\n0\n---\n0\n"])

    assert not await deployment.is_active()
    assert sleeps == [3.0]
    assert len(commands) == 1


async def test_ssh_auth_failure_is_not_retried() -> None:
    deployment, commands, sleeps = make_ssh(
        [paramiko.AuthenticationException("Authentication failed."), "active\n"]
    )

    with pytest.raises(RemoteProbeError, match="Authentication failed"):
        await deployment.is_active()
    assert sleeps == []
    assert commands == []


async def test_ssh_disable_requires_done_marker() -> None:
    deployment, commands, _ = make_ssh(["DONE\n"])
    result = await deployment.disable()
    assert result.ok
    assert commands == [deployment.disable_command]

    deployment, _, _ = make_ssh(["Terminated\n"])
    result = await deployment.disable()
    assert not result.ok
    assert result.error == "remote command did not complete"


async def test_http_probe_reads_remote_health() -> None:
    states = iter(["connected", "disconnected"])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"state": next(states)})

    probe = HttpHealthProbe(
        RemoteConfig(probe="http", health_url="http://vps.test/health"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    assert await probe.is_active()
    assert not await probe.is_active()
    assert not (await probe.disable()).ok


async def test_http_probe_unreachable_is_inactive() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    probe = HttpHealthProbe(
        RemoteConfig(probe="http", health_url="http://vps.test/health"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    assert not await probe.is_active()


async def test_http_probe_server_error_raises() -> None:
    probe = HttpHealthProbe(
        RemoteConfig(probe="http", health_url="http://vps.test/health"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502))),
    )
    with pytest.raises(RemoteProbeError):
        await probe.is_active()


def test_build_remote_selects_probe_kind() -> None:
    assert build_remote(RemoteConfig()) is None
    assert isinstance(build_remote(RemoteConfig(host="vps.example.com")), SshRemoteDeployment)
    assert isinstance(
        build_remote(RemoteConfig(probe="http", health_url="http://vps.test/health")),
        HttpHealthProbe,
    )


async def test_http_health_check_closes_only_its_own_client() -> None:
    owned = HttpHealthProbe(RemoteConfig(probe="http", health_url="http://vps.test/health"))
    await owned.aclose()
    assert owned._client.is_closed

    shared = httpx.AsyncClient()
    borrowed = HttpHealthProbe(
        RemoteConfig(probe="http", health_url="http://vps.test/health"), client=shared
    )
    await borrowed.aclose()
    assert not shared.is_closed
    await shared.aclose()
