# ProxyStation
# Copyright (C) 2025 ProxyStation contributors
#
# This file is part of ProxyStation.
#
# ProxyStation is free software: you can redistribute it and/or modify it
# under the terms of the GNU Affero General Public License v3.0 (AGPL-3.0)
# as published by the Free Software Foundation.
#
# ProxyStation is distributed WITHOUT ANY WARRANTY. See the GNU Affero
# General Public License for more details.
"""Bounded execution of the external networking tools (nft, ip, sysctl).

Every kernel-facing operation in this package goes through ``run_command``
so that each invocation has a hard timeout and a uniform result shape.
Callers decide whether a non-zero exit is fatal, ignorable, or best-effort.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("proxystation.transparent.commands")

DEFAULT_COMMAND_TIMEOUT = 10.0

# Exit code reported when the binary itself is missing (shell convention)
EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = -1


@dataclass
class CommandResult:
    """Outcome of one external command invocation."""

    argv: list[str]
    returncode: int
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def command_line(self) -> str:
        return " ".join(self.argv)


# runner(argv, input_data=None, timeout=...) -> CommandResult
CommandRunner = Callable[..., CommandResult]


def run_command(
    argv: list[str],
    input_data: str | None = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> CommandResult:
    """Run *argv* and capture combined stdout/stderr.

    Never raises for ordinary failures: a missing binary, an OS error or a
    timeout are all folded into the returned ``CommandResult``.
    """
    argv = list(argv)
    try:
        proc = subprocess.run(
            argv,
            input=input_data,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning("Command timed out after %.1fs: %s", timeout, " ".join(argv))
        return CommandResult(
            argv=argv,
            returncode=EXIT_TIMEOUT,
            output=f"timed out after {timeout:g}s",
            timed_out=True,
        )
    except (FileNotFoundError, PermissionError, OSError) as exc:
        logger.debug("Command could not be started: %s (%s)", " ".join(argv), exc)
        return CommandResult(argv=argv, returncode=EXIT_NOT_FOUND, output=str(exc))

    output = ((proc.stdout or "") + (proc.stderr or "")).strip()
    return CommandResult(argv=argv, returncode=proc.returncode, output=output)


# ---------------------------------------------------------------------------
# Failure taxonomy
# ---------------------------------------------------------------------------


class TransparentProxyError(RuntimeError):
    """Base class for kernel-facing failures of the transparent proxy layer."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.output = output

    @classmethod
    def from_result(cls, message: str, result: CommandResult) -> TransparentProxyError:
        return cls(
            f"{message}: {result.command_line} exited {result.returncode}: {result.output}",
            command=result.argv,
            returncode=result.returncode,
            output=result.output,
        )

    @property
    def detail(self) -> str:
        return str(self)


class ExternalToolFailure(TransparentProxyError):
    """The rule script could not be loaded (non-zero exit or timeout)."""


class PolicyRouteFailure(TransparentProxyError):
    """Mark-based policy routing could not be installed."""
