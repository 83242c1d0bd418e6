"""Command executor — the device operations the server can ask for.

Wraps :class:`~rdm_agent.runner.ProcessRunner` with log hooks (so the
server sees a ``log`` message before and after each command) plus batch,
script and a fixed catalog of named operations. None of these raise; all
failures end up in :class:`~rdm_agent.runner.CommandResult`.
"""

from __future__ import annotations

import logging
import shlex
from typing import Any, Awaitable, Callable, Optional

from .runner import CommandResult, ProcessRunner

logger = logging.getLogger(__name__)

LogHook = Callable[[str, str, Any], Awaitable[Any]]


class CommandExecutor:
    """Executes shell commands for the agent and reports around them."""

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        log_hook: Optional[LogHook] = None,
    ) -> None:
        self.runner = runner or ProcessRunner()
        self.log_hook = log_hook

    async def _emit(self, level: str, message: str, data: Any = None) -> None:
        """Send a log through the hook; a failing hook never fails the command."""
        if self.log_hook is None:
            return
        try:
            await self.log_hook(level, message, data)
        except Exception:
            logger.exception("Log hook failed for: %s", message)

    async def execute(
        self,
        command: str,
        escalate: bool = False,
        *,
        command_id: str | None = None,
    ) -> CommandResult:
        """Run one command and report it through the log hook."""
        context = {"command_id": command_id} if command_id else None
        await self._emit("info", f"Executing command: {command}", context)

        try:
            result = await self.runner.run(command, escalate)
        except Exception as exc:
            logger.exception("Runner raised for %s", command)
            result = CommandResult(success=False, error=str(exc) or "Unknown error")

        if result.success:
            await self._emit("info", f"Command completed: {command}", result.output)
        else:
            await self._emit("error", f"Command failed: {command}", result.error)
        return result

    async def execute_multiple(
        self, commands: list[str], escalate: bool = False
    ) -> list[CommandResult]:
        """Run commands one after another; a failure does not stop the batch."""
        results = []
        for command in commands:
            results.append(await self.execute(command, escalate))
        return results

    async def execute_script(self, script: str, escalate: bool = False) -> CommandResult:
        """Run a multi-line shell script as a single invocation."""
        logger.debug("Executing script (length: %d)", len(script))
        return await self.execute(script, escalate)

    async def has_root_access(self) -> bool:
        result = await self.runner.run("echo test", escalate=True)
        return result.success

    # ── Information ───────────────────────────────────────────────

    async def get_device_info(self) -> CommandResult:
        return await self.execute("getprop")

    async def get_network_info(self) -> CommandResult:
        return await self.execute("ip addr show")

    async def get_processes(self) -> CommandResult:
        return await self.execute("ps aux")

    async def get_memory_info(self) -> CommandResult:
        return await self.execute("cat /proc/meminfo")

    async def get_cpu_info(self) -> CommandResult:
        return await self.execute("cat /proc/cpuinfo")

    async def get_storage_info(self) -> CommandResult:
        return await self.execute("df -h")

    async def get_battery_info(self) -> CommandResult:
        return await self.execute("dumpsys battery")

    async def list_apps(self) -> CommandResult:
        return await self.execute("pm list packages -3")

    async def list_system_apps(self) -> CommandResult:
        return await self.execute("pm list packages -s")

    # ── App management ────────────────────────────────────────────

    async def install_app(self, apk_path: str) -> CommandResult:
        return await self.execute(f"pm install -r {shlex.quote(apk_path)}", escalate=True)

    async def uninstall_app(self, package: str) -> CommandResult:
        return await self.execute(f"pm uninstall {shlex.quote(package)}", escalate=True)

    async def clear_app_data(self, package: str) -> CommandResult:
        return await self.execute(f"pm clear {shlex.quote(package)}", escalate=True)

    async def grant_permission(self, package: str, permission: str) -> CommandResult:
        return await self.execute(
            f"pm grant {shlex.quote(package)} {shlex.quote(permission)}", escalate=True
        )

    async def revoke_permission(self, package: str, permission: str) -> CommandResult:
        return await self.execute(
            f"pm revoke {shlex.quote(package)} {shlex.quote(permission)}", escalate=True
        )

    async def force_stop_app(self, package: str) -> CommandResult:
        return await self.execute(f"am force-stop {shlex.quote(package)}", escalate=True)

    async def start_service(self, package: str, service: str) -> CommandResult:
        return await self.execute(f"am startservice -n {shlex.quote(f'{package}/{service}')}")

    async def stop_service(self, package: str, service: str) -> CommandResult:
        return await self.execute(f"am stopservice {shlex.quote(f'{package}/{service}')}")

    # ── Device control ────────────────────────────────────────────

    async def reboot(self) -> CommandResult:
        return await self.execute("reboot", escalate=True)

    async def shutdown(self) -> CommandResult:
        return await self.execute("shutdown now", escalate=True)

    async def set_screen_brightness(self, level: int) -> CommandResult:
        level = max(0, min(255, int(level)))
        return await self.execute(
            f"settings put system screen_brightness {level}", escalate=True
        )

    async def enable_wifi(self) -> CommandResult:
        return await self.execute("svc wifi enable", escalate=True)

    async def disable_wifi(self) -> CommandResult:
        return await self.execute("svc wifi disable", escalate=True)

    async def enable_bluetooth(self) -> CommandResult:
        return await self.execute("service call bluetooth_manager 6", escalate=True)

    async def disable_bluetooth(self) -> CommandResult:
        return await self.execute("service call bluetooth_manager 8", escalate=True)
