"""Process runner — spawns shell commands and captures their outcome.

Knows nothing about the network. Every failure mode (spawn error, missing
``su``, non-zero exit, timeout) comes back as a :class:`CommandResult`
instead of an exception.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/sh"
DEFAULT_ESCALATION = ("su", "-c")


@dataclass
class CommandResult:
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None


class ProcessRunner:
    """Runs commands through the system shell, optionally as superuser."""

    def __init__(
        self,
        shell: str = DEFAULT_SHELL,
        escalation: tuple[str, ...] | list[str] = DEFAULT_ESCALATION,
        timeout: float | None = None,
    ) -> None:
        self.shell = shell
        self.escalation = tuple(escalation)
        self.timeout = timeout

    def build_argv(self, command: str, escalate: bool = False) -> list[str]:
        """Return the argv that runs *command*."""
        if escalate:
            # su -c hands the command to the superuser's own shell
            return [*self.escalation, command]
        return [self.shell, "-c", command]

    async def run(
        self,
        command: str,
        escalate: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = self.build_argv(command, escalate)
        limit = timeout if timeout is not None else self.timeout
        logger.debug("Executing: %s", argv)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            logger.error("Failed to start %s: %s", argv[0], exc)
            return CommandResult(success=False, error=str(exc) or "Unknown error")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            await _reap(proc)
            logger.warning("Command timed out after %ss: %s", limit, command)
            return CommandResult(success=False, error=f"Timed out after {limit:g}s")
        except asyncio.CancelledError:
            await _reap(proc)
            raise
        except Exception as exc:
            logger.exception("Command execution error")
            return CommandResult(success=False, error=str(exc) or "Unknown error")

        output = stdout.decode(errors="replace")
        error = stderr.decode(errors="replace")
        code = proc.returncode

        if code == 0:
            logger.debug("Command succeeded")
            return CommandResult(success=True, output=output or None)

        logger.info("Command failed with exit code %s", code)
        return CommandResult(
            success=False,
            output=output or None,
            error=error or f"Exit code: {code}",
        )


async def _reap(proc: asyncio.subprocess.Process) -> None:
    """Kill *proc* if it is still running and wait for it to exit."""
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()
