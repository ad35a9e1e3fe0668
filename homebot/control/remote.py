"""Out-of-band access to the rival (VPS) deployment of the bridge."""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Awaitable, Callable

import httpx
import paramiko
from loguru import logger

from homebot.config.schema import RemoteConfig
from homebot.core.models import CommandResult, ConnectionState

DONE_MARKER = "DONE"
SECTION_SEPARATOR = "---"
RETRY_DELAY_S = 3.0


class RemoteProbeError(RuntimeError):
    """The rival deployment could not be observed."""


def _self_safe(pattern: str) -> str:
    """Bracket the first character so the pattern never matches the shell running it."""
    if not pattern or pattern.startswith("["):
        return pattern
    return f"[{pattern[0]}]{pattern[1:]}"


def build_probe_command(unit: str, patterns: list[str]) -> str:
    """``systemctl is-active`` plus one process count per pattern, ``---`` separated."""
    parts = [f"systemctl is-active {shlex.quote(unit)} 2>/dev/null"]
    for pattern in patterns:
        parts.append(f"echo '{SECTION_SEPARATOR}'")
        parts.append(f"ps aux | grep -c {shlex.quote(_self_safe(pattern))} 2>/dev/null")
    return "; ".join(parts)


def build_disable_command(unit: str, patterns: list[str]) -> str:
    """Stop + disable the unit and kill stray processes. Safe when already stopped."""
    parts = [
        f"systemctl stop {shlex.quote(unit)} 2>/dev/null",
        f"systemctl disable {shlex.quote(unit)} 2>/dev/null",
    ]
    parts.extend(f"pkill -f {shlex.quote(_self_safe(p))} 2>/dev/null" for p in patterns)
    parts.extend(["sleep 1", f"echo {DONE_MARKER}"])
    return "; ".join(parts)


def parse_probe_output(output: str) -> bool:
    """True when the unit reports ``active`` or any pattern matched a process."""
    sections = [s.strip() for s in output.split(SECTION_SEPARATOR)]
    service_active = bool(sections) and sections[0].splitlines()[:1] == ["active"]
    process_count = 0
    for section in sections[1:]:
        first = section.splitlines()[0].strip() if section else ""
        if first.isdigit():
            process_count += int(first)
    return service_active or process_count > 0


def _is_retryable(error: str | None) -> bool:
    text = (error or "").lower()
    return "timed out" in text or "timeout" in text or "connection" in text or "banner" in text


class SshRemoteDeployment:
    """``RemoteDeploymentPort`` that runs shell commands on the rival host via paramiko.

    paramiko is blocking, so each command runs in a worker thread. A command
    that fails to connect or times out is retried ``config.retries`` times.
    """

    def __init__(
        self,
        config: RemoteConfig,
        *,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self._client_factory = client_factory
        self._sleep = sleep

    @property
    def probe_command(self) -> str:
        return build_probe_command(self.config.unit, self.config.process_patterns)

    @property
    def disable_command(self) -> str:
        return build_disable_command(self.config.unit, self.config.process_patterns)

    async def is_active(self) -> bool:
        result = await self.run(self.probe_command)
        if not result.ok:
            raise RemoteProbeError(result.error or "remote probe failed")
        return parse_probe_output(result.output)

    async def disable(self) -> CommandResult:
        result = await self.run(self.disable_command)
        if result.ok and DONE_MARKER not in result.output:
            return CommandResult(
                ok=False,
                output=result.output,
                error="remote command did not complete",
                exit_status=result.exit_status,
            )
        return result

    async def aclose(self) -> None:
        """Nothing to release: every command opens and closes its own SSH session."""

    async def run(self, command: str) -> CommandResult:
        attempts = self.config.retries + 1
        result = CommandResult(ok=False, error="not attempted")
        for attempt in range(1, attempts + 1):
            result = await asyncio.to_thread(self._run_blocking, command)
            if result.ok or attempt == attempts or not _is_retryable(result.error):
                return result
            logger.warning(
                f"SSH command to {self.config.host} failed ({result.error}); "
                f"retrying in {RETRY_DELAY_S:.0f}s ({attempt}/{attempts - 1})"
            )
            await self._sleep(RETRY_DELAY_S)
        return result

    def _run_blocking(self, command: str) -> CommandResult:
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.config.host,
                port=self.config.port,
                username=self.config.username,
                password=self.config.password or None,
                key_filename=self.config.key_file or None,
                timeout=self.config.connect_timeout_s,
                banner_timeout=self.config.connect_timeout_s,
                auth_timeout=self.config.connect_timeout_s,
                allow_agent=not self.config.password,
                look_for_keys=not (self.config.password or self.config.key_file),
            )
            _stdin, stdout, stderr = client.exec_command(
                command,
                get_pty=False,
                timeout=self.config.command_timeout_s,
            )
            output = stdout.read().decode("utf-8", errors="replace")
            error_output = stderr.read().decode("utf-8", errors="replace").strip()
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            return CommandResult(ok=False, error=f"{type(e).__name__}: {e}")
        finally:
            client.close()
        return CommandResult(ok=True, output=output, error=error_output or None, exit_status=status)


class HttpHealthProbe:
    """Observes the rival through its own ``GET /health``; cannot remediate."""

    def __init__(self, config: RemoteConfig, *, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def is_active(self) -> bool:
        try:
            response = await self._client.get(
                self.config.health_url,
                timeout=self.config.command_timeout_s,
            )
        except httpx.HTTPError as e:
            # Unreachable health endpoint: the rival process is not serving.
            logger.debug(f"Remote health probe unreachable: {e}")
            return False
        if response.status_code >= 500:
            raise RemoteProbeError(f"remote health returned HTTP {response.status_code}")
        if response.status_code != 200:
            return False
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteProbeError(f"remote health returned invalid JSON: {e}") from e
        return str(data.get("state") or "") != ConnectionState.DISCONNECTED.value

    async def disable(self) -> CommandResult:
        return CommandResult(
            ok=False,
            error="HTTP health probe cannot disable the remote; configure remote.probe = 'ssh'",
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_remote(config: RemoteConfig) -> SshRemoteDeployment | HttpHealthProbe | None:
    if not config.configured:
        return None
    if config.probe == "http":
        return HttpHealthProbe(config)
    return SshRemoteDeployment(config)
