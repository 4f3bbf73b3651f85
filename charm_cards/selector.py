"""Funding UTXO selection."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Set

from .errors import (
    CharmCardsError,
    InsufficientFundsError,
    NoEligibleUtxoError,
    TransientNetworkError,
    UpstreamUnavailableError,
)
from .lookup import LookupClient, TxStatus
from .model import UTXO
from .rpc_client import BitcoinRPCClient
from .transaction import TransactionParseError, parse_transaction

logger = logging.getLogger(__name__)


class UTXOSelector:
    """Choose a spendable, sufficiently funded and verifiable UTXO.

    When the node behind the engine is pruned, a UTXO is only usable if its
    own block and the blocks of its ancestors (up to ``ancestor_depth``
    generations back) are all above the prune height. Anything that cannot be
    verified is rejected.
    """

    def __init__(
        self,
        lookup: LookupClient,
        *,
        prune_height: int | None = None,
        ancestor_depth: int = 1,
        rpc: BitcoinRPCClient | None = None,
    ) -> None:
        self.lookup = lookup
        self.ancestor_depth = ancestor_depth
        self.rpc = rpc
        self._prune_height = prune_height
        self._prune_resolved = prune_height is not None or rpc is None

    def prune_height(self) -> int | None:
        """Configured prune height, falling back to the node's own report."""

        if not self._prune_resolved:
            try:
                self._prune_height = self.rpc.get_prune_height()
            except CharmCardsError as exc:
                raise UpstreamUnavailableError(
                    f"Could not determine the node's prune height: {exc}"
                ) from exc
            self._prune_resolved = True
            if self._prune_height is not None:
                logger.info("Node reports pruning below height %d", self._prune_height)
        return self._prune_height

    def select_funding_utxo(
        self,
        address: str,
        exclude_ids: Iterable[str] = (),
        minimum_sats: int = 0,
    ) -> UTXO:
        """Return the preferred funding UTXO for ``address``.

        Confirmed UTXOs win over unconfirmed ones, then the smallest value that
        still covers ``minimum_sats``.
        """

        try:
            utxos = self.lookup.get_address_utxos(address)
        except TransientNetworkError as exc:
            raise UpstreamUnavailableError(f"UTXO lookup unavailable: {exc}") from exc

        excluded: Set[str] = {item.lower() for item in exclude_ids}
        candidates = [utxo for utxo in utxos if utxo.outpoint.lower() not in excluded]
        if not candidates:
            logger.warning(
                "No UTXOs available for %s (%d found, %d excluded)",
                address,
                len(utxos),
                len(utxos) - len(candidates),
            )
            raise NoEligibleUtxoError(
                f"No spendable UTXOs found for {address}",
                debug={"utxos": [utxo.to_dict() for utxo in utxos], "excluded": sorted(excluded)},
            )

        prune_height = self.prune_height()
        status_cache: Dict[str, TxStatus] = {}

        qualifying = sorted(
            (utxo for utxo in candidates if utxo.value >= minimum_sats),
            key=lambda u: (not u.confirmed, u.value),
        )
        for utxo in qualifying:
            if self._is_verifiable(utxo, prune_height, status_cache):
                logger.info("Selected funding UTXO %s (%d sats)", utxo.outpoint, utxo.value)
                return utxo

        undersized = sorted(
            (utxo for utxo in candidates if utxo.value < minimum_sats),
            key=lambda u: u.value,
            reverse=True,
        )
        for utxo in undersized:
            if self._is_verifiable(utxo, prune_height, status_cache):
                logger.warning(
                    "Insufficient funds at %s: needed=%d, largest eligible=%d",
                    address,
                    minimum_sats,
                    utxo.value,
                )
                raise InsufficientFundsError(
                    f"Largest eligible UTXO holds {utxo.value} sats but {minimum_sats} are required",
                    required=minimum_sats,
                    available=utxo.value,
                    debug={"utxos": [c.to_dict() for c in candidates]},
                )

        raise NoEligibleUtxoError(
            f"None of the {len(candidates)} UTXOs at {address} can be verified above "
            f"prune height {prune_height}",
            debug={"utxos": [c.to_dict() for c in candidates], "prune_height": prune_height},
        )

    def _is_verifiable(
        self,
        utxo: UTXO,
        prune_height: int | None,
        status_cache: Dict[str, TxStatus],
    ) -> bool:
        if prune_height is None:
            return True
        try:
            return self._check_lineage(utxo, prune_height, status_cache)
        except (CharmCardsError, TransactionParseError) as exc:
            logger.warning("Rejecting %s: could not verify ancestry (%s)", utxo.outpoint, exc)
            return False

    def _check_lineage(
        self,
        utxo: UTXO,
        prune_height: int,
        status_cache: Dict[str, TxStatus],
    ) -> bool:
        if utxo.confirmed:
            height = utxo.block_height
            if height is None:
                status = self._status(utxo.txid, status_cache)
                height = status.block_height if status.confirmed else None
            if height is None or height <= prune_height:
                logger.info(
                    "Rejecting %s: block %s is not above prune height %d",
                    utxo.outpoint,
                    height,
                    prune_height,
                )
                return False

        frontier: List[str] = [utxo.txid]
        for _ in range(self.ancestor_depth):
            parents: List[str] = []
            for txid in frontier:
                tx = parse_transaction(self.lookup.get_transaction_hex(txid))
                for tx_input in tx.inputs:
                    if tx_input.prev_txid == "0" * 64:
                        # Coinbase inputs have no ancestor to verify.
                        continue
                    status = self._status(tx_input.prev_txid, status_cache)
                    if status.confirmed and (
                        status.block_height is None or status.block_height <= prune_height
                    ):
                        logger.info(
                            "Rejecting %s: ancestor %s sits at block %s (prune height %d)",
                            utxo.outpoint,
                            tx_input.prev_txid,
                            status.block_height,
                            prune_height,
                        )
                        return False
                    parents.append(tx_input.prev_txid)
            frontier = parents
            if not frontier:
                break
        return True

    def _status(self, txid: str, cache: Dict[str, TxStatus]) -> TxStatus:
        if txid not in cache:
            cache[txid] = self.lookup.get_transaction_status(txid)
        return cache[txid]
