"""Mint, transfer and redeem workflows.

Each operation runs as one linear sequence: pick the funding UTXO, build and
validate the spell, gather the prior transactions, obtain a proof, check the
package topology and broadcast it. Nothing is shared between operations
beyond the configured clients, so independent operations may run
concurrently.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

import requests

from .broadcast import BroadcastOrchestrator, BroadcastProvider, BroadcastResult, build_providers
from .config import ServiceConfig
from .deadline import Deadline
from .errors import InsufficientFundsError, TransientNetworkError, UpstreamUnavailableError, ValidationError
from .lookup import LookupClient
from .mempool import MempoolPoller
from .model import UTXO, Operation, ProofPackage, SpellDescription, parse_outpoint
from .prover import AppBinary, ProverClient, load_app_binary
from .rpc_client import BitcoinRPCClient
from .selector import UTXOSelector
from .spells import (
    MintParams,
    RedeemParams,
    TransferParams,
    build_mint_spell,
    build_redeem_spell,
    build_transfer_spell,
    ensure_valid_spell,
)
from .topology import ensure_valid_topology
from .transaction import TransactionParseError, parse_transaction

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Outcome of one operation, shaped for the operation API."""

    operation: Operation
    spell: SpellDescription
    proof: ProofPackage
    funding_utxo: UTXO
    broadcast: Optional[BroadcastResult] = None

    def to_response(self) -> Dict[str, Any]:
        return {"spell": self.spell.to_dict(), "proof": self.proof.to_dict()}

    def summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "operation": self.operation.value,
            "funding_utxo": self.funding_utxo.outpoint,
            "commit_txid": self.proof.commit_txid,
            "spell_txid": self.proof.spell_txid,
            "broadcasted": self.proof.broadcasted,
        }
        if self.broadcast is not None:
            summary["broadcast"] = self.broadcast.to_dict()
        return summary


class GiftCardService:
    """Wire the engine components together for the three card operations."""

    def __init__(
        self,
        config: ServiceConfig,
        *,
        lookup: LookupClient | None = None,
        prover: ProverClient | None = None,
        rpc: BitcoinRPCClient | None = None,
        selector: UTXOSelector | None = None,
        providers: List[BroadcastProvider] | None = None,
        poller: MempoolPoller | None = None,
        app_binary: AppBinary = None,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
        broadcast: bool = True,
    ) -> None:
        self.config = config
        self.rpc = rpc if rpc is not None else (
            BitcoinRPCClient(config.rpc) if config.rpc is not None else None
        )
        self.lookup = lookup or LookupClient(
            config.lookup_base_url, timeout=config.lookup_timeout, session=session
        )
        self.prover = prover or ProverClient(
            config.prover_url,
            network=config.network,
            timeout=config.prover_timeout,
            max_attempts=config.prover_max_attempts,
            backoff_initial=config.prover_backoff_initial,
            backoff_max=config.prover_backoff_max,
            mock_mode=config.mock_mode,
            prover_broadcasts=config.prover_broadcasts,
            session=session,
        )
        self.selector = selector or UTXOSelector(
            self.lookup,
            prune_height=config.prune_height,
            ancestor_depth=config.ancestor_depth,
            rpc=self.rpc,
        )
        self.providers = (
            providers if providers is not None else build_providers(config, rpc=self.rpc, session=session)
        )
        self.poller = poller or MempoolPoller(self.lookup)
        self.broadcast_enabled = broadcast
        self._app_binary = app_binary
        self._clock = clock

    # Helpers ----------------------------------------------------------------

    def app_binary(self) -> AppBinary:
        if self._app_binary is not None:
            return self._app_binary
        if self.config.app_binary_path is not None:
            self._app_binary = load_app_binary(self.config.app_binary_path)
        return self._app_binary

    def _deadline(self) -> Deadline:
        return Deadline(self.config.operation_deadline or None, clock=self._clock)

    def _fetch_tx_hex(self, txid: str) -> str:
        try:
            return self.lookup.get_transaction_hex(txid)
        except TransientNetworkError as exc:
            raise UpstreamUnavailableError(f"Could not fetch transaction {txid}: {exc}") from exc

    def _prior_transactions(self, spell: SpellDescription, known: Dict[str, str]) -> List[str]:
        prior: List[str] = []
        for spell_input in spell.ins:
            txid, _ = parse_outpoint(spell_input.utxo_id)
            if txid not in known:
                known[txid] = self._fetch_tx_hex(txid)
            prior.append(known[txid])
        return prior

    def _minting_utxo(self, utxo_id: str, known: Dict[str, str]) -> UTXO:
        try:
            txid, vout = parse_outpoint(utxo_id)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        raw = self._fetch_tx_hex(txid)
        known[txid] = raw
        try:
            tx = parse_transaction(raw)
        except TransactionParseError as exc:
            raise ValidationError(f"Transaction {txid} could not be parsed: {exc}") from exc
        if vout >= len(tx.outputs):
            raise ValidationError(f"Transaction {txid} has no output {vout}")
        return UTXO(txid=txid, vout=vout, value=tx.outputs[vout].value)

    # Operations -------------------------------------------------------------

    def mint(self, params: MintParams) -> OperationResult:
        """Mint a card funded by the minting UTXO itself."""

        deadline = self._deadline()
        spell = build_mint_spell(params)
        known: Dict[str, str] = {}
        funding = self._minting_utxo(params.minting_utxo, known)
        required = self.config.required_funding_sats(params.amount_cents)
        if funding.value < required:
            raise InsufficientFundsError(
                f"Minting UTXO {funding.outpoint} holds {funding.value} sats but "
                f"{params.amount_cents} cents needs {required} sats",
                required=required,
                available=funding.value,
            )
        return self._run(spell, funding, params.recipient_address, deadline, known)

    def transfer(self, params: TransferParams, funding_address: str | None = None) -> OperationResult:
        deadline = self._deadline()
        spell = build_transfer_spell(params)
        funding = self._select_funding(
            funding_address or params.change_address, params.card_utxo, spell
        )
        return self._run(spell, funding, params.change_address, deadline, {})

    def redeem(self, params: RedeemParams, funding_address: str | None = None) -> OperationResult:
        deadline = self._deadline()
        spell = build_redeem_spell(params)
        funding = self._select_funding(
            funding_address or params.change_address, params.card_utxo, spell
        )
        return self._run(spell, funding, params.change_address, deadline, {})

    def _select_funding(self, address: str, card_utxo: str, spell: SpellDescription) -> UTXO:
        minimum = self.config.fee_buffer_sats + sum(output.sats for output in spell.outs)
        return self.selector.select_funding_utxo(
            address, exclude_ids={card_utxo}, minimum_sats=minimum
        )

    def _run(
        self,
        spell: SpellDescription,
        funding: UTXO,
        change_address: str,
        deadline: Deadline,
        known: Dict[str, str],
    ) -> OperationResult:
        operation = spell.operation
        deadline.check("spell validation")
        ensure_valid_spell(spell, self.config.network)

        deadline.check("prior transaction lookup")
        prior = self._prior_transactions(spell, known)

        deadline.check("proof generation")
        package = self.prover.generate_proof(
            spell,
            self.app_binary(),
            prior,
            funding.outpoint,
            funding.value,
            change_address,
            self.config.fee_rate,
        )
        ensure_valid_topology(package.commit_tx_hex, package.spell_tx_hex)

        result = OperationResult(
            operation=operation, spell=spell, proof=package, funding_utxo=funding
        )
        if not self.broadcast_enabled:
            logger.info("Broadcast disabled; returning unbroadcast %s package", operation.value)
            return result

        if not package.broadcasted:
            deadline.check("broadcast")
        orchestrator = BroadcastOrchestrator(
            self.providers,
            poller=self.poller,
            mempool_timeout=self.config.mempool_timeout,
            poll_interval=self.config.mempool_poll_interval,
            deadline=deadline,
        )
        result.broadcast = orchestrator.broadcast(package)
        result.proof = replace(package, broadcasted=True)
        logger.info(
            "%s complete: commit %s, spell %s",
            operation.value,
            package.commit_txid,
            package.spell_txid,
        )
        return result
