"""
Reconciliation scheduler for Barvaz DNS.

This module runs the periodic loop deciding when the DNS records are
updated: once the configured interval has elapsed, or right away when the
control listener hands over a new configuration.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from barvaz_dns.config import ServiceConfig

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Final

    from barvaz_dns.handoff import LatestSlot, StatusCell
    from barvaz_dns.providers.base import BaseDNSProvider


# Time between two reconciliation cycles, in seconds
RECONCILE_TICK: Final[float] = 1.0


logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """
    Periodically pushes the public address to the DNS provider.

    The scheduler never mutates the listener's configuration: it works on
    the copies taken from the hand-off slot.

    Attributes
    ----------
    updates : LatestSlot[ServiceConfig]
        Hand-off slot written by the control listener.
    status : StatusCell
        Receives the outcome of each update attempt.
    provider : BaseDNSProvider
        Performs the actual update.
    config : ServiceConfig
        The configuration of the current cycle.
    tick : float
        Seconds between two cycles.
    """

    def __init__(
        self,
        updates: LatestSlot[ServiceConfig],
        status: StatusCell,
        provider: BaseDNSProvider,
        *,
        tick: float = RECONCILE_TICK,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.updates = updates
        self.status = status
        self.provider = provider
        self.config = ServiceConfig()
        self.tick = tick
        self._clock = clock
        self._last_run = clock()
        self._warned_token = False
        self._warned_domains = False

    async def run_forever(self) -> None:
        """Run reconciliation cycles until cancelled."""
        logger.debug("Reconciliation loop started (tick: %.1fs).", self.tick)
        while True:
            await self.reconcile()
            await asyncio.sleep(self.tick)

    async def reconcile(self) -> bool:
        """
        Run one reconciliation cycle.

        Returns
        -------
        bool
            True if an update was attempted during this cycle.
        """
        forced = False
        if (config := self.updates.take()) is not None:
            # A reset requested by a skipped cycle still applies
            config.reset_addresses_pending = (
                config.reset_addresses_pending or self.config.reset_addresses_pending
            )
            self.config = config
            forced = True
            logger.debug("Adopted a new configuration.")

        if not self.config.token:
            if not self._warned_token:
                self._warned_token = True
                logger.warning("No token is configured.")
            return False
        self._warned_token = False

        if not self.config.domains:
            if not self._warned_domains:
                self._warned_domains = True
                logger.warning("No domain is configured.")
            return False
        self._warned_domains = False

        elapsed = self._clock() - self._last_run
        if not forced and elapsed < self.config.interval.total_seconds():
            return False

        succeeded = await self._attempt(self.config)
        await self.status.set(succeeded)
        logger.info("Update %s.", "succeeded" if succeeded else "failed")

        self._last_run = self._clock()
        self.config.reset_addresses_pending = False
        return True

    async def _attempt(self, config: ServiceConfig) -> bool:
        """Call the provider, containing any error to this cycle."""
        if config.reset_addresses_pending:
            logger.debug("Published addresses will be cleared before the update.")

        try:
            result = await self.provider.apply(
                config.domains,
                config.token or "",
                ipv6=bool(config.ipv6),
                reset_addresses_first=config.reset_addresses_pending,
            )
        except Exception:
            logger.exception("[%s] Update raised an unexpected error.", self.provider.name)
            return False

        if not result.success:
            logger.error("[%s] %s", self.provider.name, result.message)
        return result.success
