"""Poll a lookup service until a transaction shows up."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .errors import CharmCardsError
from .lookup import LookupClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AcceptanceResult:
    accepted: bool
    elapsed_ms: int
    attempts: int


class MempoolPoller:
    """Fixed-interval poller; waits are expected to last seconds."""

    def __init__(
        self,
        lookup: LookupClient,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.lookup = lookup
        self._clock = clock
        self._sleep = sleep

    def await_acceptance(
        self, txid: str, timeout: float = 30.0, poll_interval: float = 1.0
    ) -> AcceptanceResult:
        started = self._clock()
        attempts = 0
        while True:
            attempts += 1
            try:
                if self.lookup.has_transaction(txid):
                    elapsed_ms = int((self._clock() - started) * 1000)
                    logger.info("Transaction %s seen after %d ms", txid, elapsed_ms)
                    return AcceptanceResult(True, elapsed_ms, attempts)
            except CharmCardsError as exc:
                logger.debug("Mempool lookup for %s failed: %s", txid, exc)

            elapsed = self._clock() - started
            remaining = timeout - elapsed
            if remaining <= 0:
                logger.warning(
                    "Transaction %s not seen within %.1fs (%d polls)", txid, timeout, attempts
                )
                return AcceptanceResult(False, int(elapsed * 1000), attempts)
            self._sleep(min(poll_interval, remaining))
