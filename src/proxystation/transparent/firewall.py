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
"""Rule applier: loads generated rulesets into nftables.

Only ever touches ``table inet proxystation``. Nothing here lists, flushes
or edits tables owned by anyone else on the host.
"""

from __future__ import annotations

import logging

from .commands import (
    DEFAULT_COMMAND_TIMEOUT,
    EXIT_NOT_FOUND,
    CommandRunner,
    ExternalToolFailure,
    run_command,
)
from .ruleset import TABLE_FAMILY, TABLE_NAME, TABLE_REF

logger = logging.getLogger("proxystation.transparent.firewall")

_MISSING_TABLE_MARKERS = ("No such file or directory", "does not exist")


def atomic_replace_script(ruleset: str) -> str:
    """Wrap *ruleset* so one ``nft -f`` transaction replaces the table.

    ``add table`` makes the ``delete`` valid even on first use; nft commits
    the whole file or nothing, so there is no window without rules and a
    re-apply can never stack duplicate chains.
    """
    return f"add table {TABLE_REF}\ndelete table {TABLE_REF}\n{ruleset}"


class NftablesBackend:
    """Firewall backend that shells out to ``nft``."""

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        nft_binary: str = "nft",
    ) -> None:
        self._runner: CommandRunner = runner or run_command
        self.timeout = timeout
        self.nft_binary = nft_binary

    def apply_ruleset(self, ruleset: str) -> None:
        """Load *ruleset* via ``nft -f -``.

        Raises:
            ExternalToolFailure: nft exited non-zero or timed out. The
                exception carries nft's combined output for diagnosis.
        """
        result = self._runner(
            [self.nft_binary, "-f", "-"],
            input_data=atomic_replace_script(ruleset),
            timeout=self.timeout,
        )
        if not result.ok:
            raise ExternalToolFailure.from_result("nft failed to load the ruleset", result)
        logger.info("Loaded nftables table %s", TABLE_REF)

    def clear(self) -> None:
        """Delete the table. A table that is already gone counts as cleared."""
        result = self._runner(
            [self.nft_binary, "delete", "table", TABLE_FAMILY, TABLE_NAME],
            timeout=self.timeout,
        )
        if result.ok:
            logger.info("Deleted nftables table %s", TABLE_REF)
        elif result.returncode != EXIT_NOT_FOUND and any(
            marker in result.output for marker in _MISSING_TABLE_MARKERS
        ):
            logger.debug("nftables table %s already absent", TABLE_REF)
        else:
            logger.warning("Could not delete nftables table %s: %s", TABLE_REF, result.output)
