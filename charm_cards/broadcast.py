"""Broadcast providers and the commit/spell submission state machine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional

import requests
from requests import RequestException

from .config import ServiceConfig
from .deadline import Deadline
from .errors import (
    BroadcastFailedError,
    CharmCardsError,
    DeadlineExceededError,
    PartialBroadcastError,
    TopologyError,
    TransientNetworkError,
)
from .mempool import MempoolPoller
from .model import AttemptOutcome, BroadcastAttempt, ProofPackage
from .rpc_client import BitcoinRPCClient, RPCError, format_rpc_hint
from .topology import ensure_valid_topology
from .transaction import TransactionParseError, compute_txid

logger = logging.getLogger(__name__)

CRYPTOAPIS_BASE_URLS = (
    "https://rest.cryptoapis.io/v2/broadcast-transactions",
    "https://rest.cryptoapis.io/broadcast-transactions",
)
CRYPTOAPIS_CONTEXT = "charm-cards-broadcast"

_ALREADY_KNOWN_MARKERS = (
    "already in mempool",
    "already in the mempool",
    "txn-already-known",
    "txn-already-in-mempool",
    "already in block chain",
    "already in blockchain",
    "transaction already exists",
)


class BroadcastRejectedError(CharmCardsError):
    """Raised by a provider endpoint that refused a transaction."""

    http_status = 502


def is_already_known(reason: str | None) -> bool:
    """True for "already have it" rejections, which mean the broadcast landed."""

    if not reason:
        return False
    lowered = reason.lower()
    return any(marker in lowered for marker in _ALREADY_KNOWN_MARKERS)


class BroadcastProvider:
    """Common surface of every broadcast adapter.

    Subclasses list their endpoint variants in priority order and implement
    ``_post`` for a single endpoint, raising :class:`BroadcastRejectedError`
    for a refusal and :class:`TransientNetworkError` for anything worth
    retrying elsewhere.
    """

    name = "provider"

    def endpoints(self) -> List[str]:
        raise NotImplementedError

    def _post(self, url: str, tx_hex: str) -> Optional[str]:
        raise NotImplementedError

    def attempt(self, url: str, tx_hex: str, txid: str, stage: str | None = None) -> BroadcastAttempt:
        """Submit to one endpoint and describe what happened."""

        try:
            remote_txid = self._post(url, tx_hex)
        except BroadcastRejectedError as exc:
            if is_already_known(exc.message):
                logger.info("%s already knows %s; treating as accepted", self.name, txid)
                return BroadcastAttempt(
                    self.name, url, AttemptOutcome.SUCCESS, txid=txid, reason=exc.message, stage=stage
                )
            logger.warning("%s rejected %s at %s: %s", self.name, txid, url, exc.message)
            return BroadcastAttempt(
                self.name, url, AttemptOutcome.REJECTED, reason=exc.message, stage=stage
            )
        except TransientNetworkError as exc:
            logger.warning("%s unreachable at %s: %s", self.name, url, exc)
            return BroadcastAttempt(
                self.name, url, AttemptOutcome.TRANSIENT_ERROR, reason=str(exc), stage=stage
            )

        if remote_txid and remote_txid.lower() != txid:
            logger.warning(
                "%s reported txid %s but the transaction hashes to %s; using the local value",
                self.name,
                remote_txid,
                txid,
            )
        logger.info("%s accepted %s via %s", self.name, txid, url)
        return BroadcastAttempt(self.name, url, AttemptOutcome.SUCCESS, txid=txid, stage=stage)

    def submit(self, tx_hex: str) -> str:
        """Try every endpoint in order and return the txid on first success."""

        txid = compute_txid(tx_hex)
        attempts = []
        for url in self.endpoints():
            attempt = self.attempt(url, tx_hex, txid)
            attempts.append(attempt)
            if attempt.succeeded:
                return txid
        raise BroadcastFailedError(
            f"{self.name} did not accept transaction {txid}", stage="submit", attempts=attempts
        )


def _http_reason(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if error:
            return str(error)
        if body.get("message"):
            return str(body["message"])
    return str(body)


class EsploraBroadcaster(BroadcastProvider):
    """Plain-text ``POST <base>/tx`` as served by Esplora and mempool.space."""

    name = "esplora"

    def __init__(
        self, base_url: str, *, timeout: float = 60, session: requests.Session | None = None
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def endpoints(self) -> List[str]:
        return [f"{self.base_url}/tx"]

    def _post(self, url: str, tx_hex: str) -> Optional[str]:
        try:
            response = self._session.post(
                url, data=tx_hex, headers={"Content-Type": "text/plain"}, timeout=self.timeout
            )
        except RequestException as exc:
            raise TransientNetworkError(f"{url}: {exc}") from exc
        if response.status_code >= 500:
            raise TransientNetworkError(
                f"{url} returned HTTP {response.status_code}: {response.text.strip()[:200]}",
                status_code=response.status_code,
            )
        if not response.ok:
            raise BroadcastRejectedError(_http_reason(response))
        return response.text.strip() or None


class CryptoApisBroadcaster(BroadcastProvider):
    """CryptoAPIs JSON broadcast, trying each network name and API base."""

    name = "cryptoapis"

    def __init__(
        self,
        api_key: str,
        network: str,
        *,
        timeout: float = 60,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.network = network
        self.timeout = timeout
        self._session = session or requests.Session()

    def network_names(self) -> List[str]:
        if self.network == "testnet4":
            return ["testnet4", "testnet"]
        if self.network in {"testnet", "signet", "regtest"}:
            return ["testnet"]
        return ["mainnet"]

    def endpoints(self) -> List[str]:
        return [
            f"{base}/bitcoin/{name}"
            for name in self.network_names()
            for base in CRYPTOAPIS_BASE_URLS
        ]

    def _post(self, url: str, tx_hex: str) -> Optional[str]:
        payload = {"context": CRYPTOAPIS_CONTEXT, "data": {"item": {"transactionHex": tx_hex}}}
        try:
            response = self._session.post(
                url,
                json=payload,
                headers={"X-API-Key": self.api_key},
                timeout=self.timeout,
            )
        except RequestException as exc:
            raise TransientNetworkError(f"{url}: {exc}") from exc
        if response.status_code >= 500:
            raise TransientNetworkError(
                f"{url} returned HTTP {response.status_code}", status_code=response.status_code
            )
        if not response.ok:
            raise BroadcastRejectedError(_http_reason(response))
        try:
            body: Any = response.json()
        except ValueError:
            return response.text.strip() or None
        data = body.get("data") if isinstance(body, dict) else None
        item = data.get("item") if isinstance(data, dict) else None
        if isinstance(item, dict) and item.get("transactionId"):
            return str(item["transactionId"])
        if isinstance(data, dict) and data.get("transactionId"):
            return str(data["transactionId"])
        raise BroadcastRejectedError("CryptoAPIs answered without a transaction id")


class BitcoinCoreBroadcaster(BroadcastProvider):
    """``sendrawtransaction`` against the configured node."""

    name = "bitcoin-core"

    def __init__(self, rpc: BitcoinRPCClient) -> None:
        self.rpc = rpc

    def endpoints(self) -> List[str]:
        return [self.rpc.config.base_url]

    def _post(self, url: str, tx_hex: str) -> Optional[str]:
        try:
            return self.rpc.sendrawtransaction(tx_hex)
        except RPCError as exc:
            hint = format_rpc_hint(exc)
            reason = exc.rpc_message if not hint else f"{exc.rpc_message} ({hint})"
            raise BroadcastRejectedError(reason) from exc


def build_providers(
    config: ServiceConfig,
    *,
    rpc: BitcoinRPCClient | None = None,
    session: requests.Session | None = None,
) -> List[BroadcastProvider]:
    """Instantiate the configured providers, in priority order.

    Providers that lack their prerequisites (an API key, an RPC connection)
    are skipped.
    """

    providers: List[BroadcastProvider] = []
    for name in config.broadcast_providers:
        if name == "cryptoapis":
            if not config.cryptoapis_api_key:
                logger.debug("Skipping cryptoapis provider: no API key configured")
                continue
            providers.append(
                CryptoApisBroadcaster(
                    config.cryptoapis_api_key,
                    config.network,
                    timeout=config.broadcast_timeout,
                    session=session,
                )
            )
        elif name == "esplora":
            providers.append(
                EsploraBroadcaster(
                    config.esplora_broadcast_url, timeout=config.broadcast_timeout, session=session
                )
            )
        elif name == "bitcoin-core":
            if rpc is None:
                logger.debug("Skipping bitcoin-core provider: no RPC configured")
                continue
            providers.append(BitcoinCoreBroadcaster(rpc))
    return providers


class BroadcastState(str, Enum):
    IDLE = "idle"
    COMMIT_SUBMITTING = "commit_submitting"
    COMMIT_PENDING = "commit_pending"
    SPELL_SUBMITTING = "spell_submitting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class BroadcastResult:
    commit_txid: str
    spell_txid: str
    state: BroadcastState
    attempts: List[BroadcastAttempt] = field(default_factory=list)
    commit_accepted: Optional[bool] = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "commit_txid": self.commit_txid,
            "spell_txid": self.spell_txid,
            "state": self.state.value,
            "commit_seen_in_mempool": self.commit_accepted,
            "skipped": self.skipped,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


class BroadcastOrchestrator:
    """Submit a proved package: commit first, then the spell.

    One orchestrator handles one package; its attempt list is the full record
    of every provider call made for it.
    """

    def __init__(
        self,
        providers: Iterable[BroadcastProvider],
        *,
        poller: MempoolPoller | None = None,
        mempool_timeout: float = 30.0,
        poll_interval: float = 1.0,
        deadline: Deadline | None = None,
    ) -> None:
        self.providers = list(providers)
        self.poller = poller
        self.mempool_timeout = mempool_timeout
        self.poll_interval = poll_interval
        self.deadline = deadline
        self.state = BroadcastState.IDLE
        self.failed_stage: str | None = None
        self.failure_reason: str | None = None
        self.attempts: List[BroadcastAttempt] = []

    def _transition(self, state: BroadcastState) -> None:
        logger.debug("Broadcast state %s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(self, stage: str, reason: str) -> None:
        self.failed_stage = stage
        self.failure_reason = reason
        self._transition(BroadcastState.FAILED)

    def broadcast(self, package: ProofPackage) -> BroadcastResult:
        try:
            commit_txid = compute_txid(package.commit_tx_hex)
            spell_txid = compute_txid(package.spell_tx_hex)
        except TransactionParseError as exc:
            self._fail("validate", str(exc))
            raise TopologyError(f"Package cannot be parsed: {exc}") from exc

        if package.broadcasted:
            logger.info("Package %s/%s was already broadcast by the prover", commit_txid, spell_txid)
            self._transition(BroadcastState.DONE)
            return BroadcastResult(commit_txid, spell_txid, self.state, skipped=True)

        try:
            ensure_valid_topology(package.commit_tx_hex, package.spell_tx_hex)
        except TopologyError as exc:
            self._fail("validate", exc.message)
            raise
        if not self.providers:
            self._fail("commit", "no broadcast providers configured")
            raise BroadcastFailedError("No broadcast providers are configured", stage="commit")

        self._transition(BroadcastState.COMMIT_SUBMITTING)
        if not self._submit("commit", package.commit_tx_hex, commit_txid):
            self._fail("commit", self._last_reason("commit"))
            raise BroadcastFailedError(
                f"No provider accepted commit transaction {commit_txid}",
                stage="commit",
                attempts=self.attempts,
            )

        self._transition(BroadcastState.COMMIT_PENDING)
        commit_accepted = None
        if self.poller is not None:
            timeout = self.mempool_timeout
            if self.deadline is not None:
                timeout = self.deadline.clamp(timeout)
            acceptance = self.poller.await_acceptance(commit_txid, timeout, self.poll_interval)
            commit_accepted = acceptance.accepted
            if not acceptance.accepted:
                logger.warning(
                    "Commit %s not visible after %d ms; submitting spell anyway",
                    commit_txid,
                    acceptance.elapsed_ms,
                )

        if self.deadline is not None:
            try:
                self.deadline.check("spell broadcast")
            except DeadlineExceededError as exc:
                self._fail("spell", exc.message)
                raise PartialBroadcastError(
                    f"Commit {commit_txid} was broadcast but the operation ran out of time "
                    "before the spell transaction was submitted",
                    commit_txid=commit_txid,
                    spell_txid=spell_txid,
                    attempts=self.attempts,
                ) from exc

        self._transition(BroadcastState.SPELL_SUBMITTING)
        if not self._submit("spell", package.spell_tx_hex, spell_txid):
            self._fail("spell", self._last_reason("spell"))
            raise PartialBroadcastError(
                f"Commit {commit_txid} was broadcast but no provider accepted spell {spell_txid}",
                commit_txid=commit_txid,
                spell_txid=spell_txid,
                attempts=self.attempts,
            )

        self._transition(BroadcastState.DONE)
        return BroadcastResult(
            commit_txid,
            spell_txid,
            self.state,
            attempts=list(self.attempts),
            commit_accepted=commit_accepted,
        )

    def _submit(self, stage: str, tx_hex: str, txid: str) -> bool:
        for provider in self.providers:
            for url in provider.endpoints():
                attempt = provider.attempt(url, tx_hex, txid, stage=stage)
                self.attempts.append(attempt)
                if attempt.succeeded:
                    return True
        logger.error("Every provider failed to accept %s transaction %s", stage, txid)
        return False

    def _last_reason(self, stage: str) -> str:
        for attempt in reversed(self.attempts):
            if attempt.stage == stage and attempt.reason:
                return f"{attempt.provider}: {attempt.reason}"
        return "no provider accepted the transaction"
