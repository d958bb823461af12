"""Best-effort inbound firewall rule for the relay port.

Every step reports its outcome as a value; nothing here raises to the caller,
and the relay server starts regardless of the result.
"""

from __future__ import annotations

import asyncio
import platform
import re
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set, Union

from loguru import logger


RULE_NAME = "VisionGrabber Relay Server"
COMMAND_TIMEOUT = 15.0
_LOCAL_PORT_LINE = re.compile(r"^\s*LocalPort:\s*(.+?)\s*$", re.MULTILINE)


class FirewallResult(Enum):
    PROVISIONED = "provisioned"
    ALREADY_PRESENT = "already_present"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class CommandResult:
    returncode: int
    stdout: str


CommandRunner = Callable[[List[str]], Awaitable[CommandResult]]


def parse_port(port: Union[str, int, None]) -> Optional[int]:
    """Return the port as an int when it is a well-formed TCP port, else None."""
    if port is None or isinstance(port, bool):
        return None
    try:
        port_number = int(str(port).strip())
    except ValueError:
        return None
    if not 1 <= port_number <= 65535:
        return None
    return port_number


def rule_ports(show_output: str) -> Set[str]:
    """Ports listed on the `LocalPort:` lines of `netsh ... show rule` output."""
    ports: Set[str] = set()
    for match in _LOCAL_PORT_LINE.finditer(show_output):
        ports.update(part.strip() for part in match.group(1).split(","))
    return ports


async def run_command(args: List[str]) -> CommandResult:
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=COMMAND_TIMEOUT)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return CommandResult(proc.returncode, (out or b"").decode(errors="ignore"))


class FirewallProvisioner:
    """Keeps a single named inbound TCP allow-rule in sync with the relay port.

    Only Windows (netsh advfirewall) is provisioned; other platforms are
    skipped.
    """

    def __init__(
        self,
        rule_name: str = RULE_NAME,
        runner: Optional[CommandRunner] = None,
        platform_name: Optional[str] = None,
    ):
        self.rule_name = rule_name
        self.runner = runner or run_command
        self.platform_name = platform_name

    def _is_supported(self) -> bool:
        return (self.platform_name or platform.system()) == "Windows"

    async def _run(self, args: List[str]) -> Optional[CommandResult]:
        try:
            return await self.runner(args)
        except (OSError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"Firewall command {args[:5]} failed: {e}")
            return None

    async def ensure_rule(self, port: Union[str, int, None]) -> FirewallResult:
        port_number = parse_port(port)
        if port_number is None:
            logger.debug(f"Skipping firewall rule: '{port}' is not a valid port.")
            return FirewallResult.SKIPPED
        if not self._is_supported():
            return FirewallResult.SKIPPED

        name_arg = f"name={self.rule_name}"
        shown = await self._run(["netsh", "advfirewall", "firewall", "show", "rule", name_arg])
        if shown is None:
            return FirewallResult.FAILED

        output = shown.stdout
        if self.rule_name in output and str(port_number) in rule_ports(output):
            return FirewallResult.ALREADY_PRESENT

        if self.rule_name in output:
            # Rule exists for a different port
            deleted = await self._run(["netsh", "advfirewall", "firewall", "delete", "rule", name_arg])
            if deleted is None or deleted.returncode != 0:
                logger.debug("Could not delete stale firewall rule; adding a new one anyway.")

        added = await self._run([
            "netsh", "advfirewall", "firewall", "add", "rule", name_arg,
            "dir=in", "action=allow", "protocol=TCP", f"localport={port_number}",
        ])
        if added is None or added.returncode != 0:
            # Usually not elevated; an unreachable relay is the visible symptom
            logger.info("Firewall rule for the relay server could not be created.")
            return FirewallResult.FAILED
        logger.info(f"Firewall rule '{self.rule_name}' allows TCP port {port_number}.")
        return FirewallResult.PROVISIONED
