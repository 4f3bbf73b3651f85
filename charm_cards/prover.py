"""HTTP client for the external spell prover."""

from __future__ import annotations

import base64
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence, Union

import requests
from requests import RequestException, Response
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import (
    ProverRejectedError,
    TopologyError,
    TransientNetworkError,
    UpstreamUnavailableError,
    ValidationError,
)
from .model import UTXO_ID_RE, ProofPackage, SpellDescription
from .spells import validate_spell
from .transaction import TransactionParseError, parse_transaction

logger = logging.getLogger(__name__)

HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})+$")
# Real compiled apps are far larger; anything below this is a truncated read.
MIN_BINARY_BASE64_CHARS = 1000

AppBinary = Union[bytes, str, Mapping[str, Union[bytes, str]], None]


def load_app_binary(path: str | Path) -> bytes:
    """Read a compiled application binary from disk."""

    path = Path(path).expanduser()
    if not path.exists():
        raise ValidationError(f"App binary not found: {path}")
    return path.read_bytes()


def _encode_binary(binary: bytes | str) -> str:
    if isinstance(binary, bytes):
        return base64.b64encode(binary).decode("ascii")
    # Strings are taken to be base64 already.
    try:
        base64.b64decode(binary, validate=True)
    except ValueError as exc:
        raise ValidationError("App binary string is not valid base64") from exc
    return binary


def _response_message(response: Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()[:500] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return str(body[key])
    return str(body)[:500]


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Prover attempt %d failed (%s); retrying",
        retry_state.attempt_number,
        exc,
    )


class ProverClient:
    """Submit spells to the prover and return the resulting package.

    Only transient failures (connection errors, DNS failures, timeouts and
    5xx responses) are retried. A 4xx answer is a verdict on the spell and is
    surfaced immediately.
    """

    def __init__(
        self,
        url: str,
        *,
        network: str = "testnet4",
        timeout: float = 180,
        max_attempts: int = 3,
        backoff_initial: float = 1.0,
        backoff_max: float = 10.0,
        mock_mode: bool = False,
        prover_broadcasts: bool = False,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url
        self.network = network
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.mock_mode = mock_mode
        self.prover_broadcasts = prover_broadcasts
        self._session = session or requests.Session()
        self._sleep = sleep

    def build_binaries(self, spell: SpellDescription, app_binary: AppBinary) -> Dict[str, str]:
        """Map every verification key in ``spell`` to a base64 app binary."""

        if not app_binary:
            if self.mock_mode:
                return {}
            raise ValidationError("An app binary is required unless mock mode is enabled")

        if isinstance(app_binary, Mapping):
            binaries = {vk: _encode_binary(blob) for vk, blob in app_binary.items()}
        else:
            encoded = _encode_binary(app_binary)
            binaries = {vk: encoded for vk in spell.app_vks()}

        missing = [vk for vk in spell.app_vks() if vk not in binaries]
        if missing and not self.mock_mode:
            raise ValidationError(f"No app binary supplied for verification keys: {', '.join(missing)}")
        if not self.mock_mode:
            for vk, encoded in binaries.items():
                if len(encoded) < MIN_BINARY_BASE64_CHARS:
                    raise ValidationError(
                        f"App binary for {vk} is only {len(encoded)} base64 characters; "
                        "it looks truncated"
                    )
        return binaries

    def build_payload(
        self,
        spell: SpellDescription,
        app_binary: AppBinary,
        prior_tx_hexes: Sequence[str],
        funding_utxo: str,
        funding_value: int,
        change_address: str,
        fee_rate: float,
    ) -> Dict[str, Any]:
        if len(prior_tx_hexes) != len(spell.ins):
            raise ValidationError(
                f"Spell has {len(spell.ins)} inputs but {len(prior_tx_hexes)} prior transactions were supplied"
            )
        for index, raw in enumerate(prior_tx_hexes):
            if not isinstance(raw, str) or not HEX_RE.match(raw):
                raise ValidationError(f"Prior transaction {index} is not hex")
        if not isinstance(funding_utxo, str) or not UTXO_ID_RE.match(funding_utxo):
            raise ValidationError("Funding UTXO must look like <64-hex-txid>:<vout>")
        if isinstance(funding_value, bool) or not isinstance(funding_value, int) or funding_value <= 0:
            raise ValidationError("Funding UTXO value must be a positive number of sats")
        if fee_rate <= 0:
            raise ValidationError("Fee rate must be positive")

        return {
            "spell": spell.to_dict(),
            "binaries": self.build_binaries(spell, app_binary),
            "prev_txs": [{"bitcoin": raw.lower()} for raw in prior_tx_hexes],
            "chain": "bitcoin",
            "funding_utxo": funding_utxo,
            "funding_utxo_value": funding_value,
            "change_address": change_address,
            "fee_rate": fee_rate,
        }

    def generate_proof(
        self,
        spell: SpellDescription,
        app_binary: AppBinary,
        prior_tx_hexes: Sequence[str],
        funding_utxo: str,
        funding_value: int,
        change_address: str,
        fee_rate: float = 2.0,
    ) -> ProofPackage:
        """Request a proof and return the commit/spell package.

        Txids are recomputed from the returned hex. The ``[commit, spell]``
        order is not checked here; that is the topology validator's job.
        """

        payload = self.build_payload(
            spell,
            app_binary,
            prior_tx_hexes,
            funding_utxo,
            funding_value,
            change_address,
            fee_rate,
        )
        logger.info(
            "Requesting proof for %d-input spell funded by %s (%d sats, fee rate %s)",
            len(spell.ins),
            funding_utxo,
            funding_value,
            fee_rate,
        )
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_initial, max=self.backoff_max),
            retry=retry_if_exception_type(TransientNetworkError),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            body = retryer(self._submit, payload, spell)
        except TransientNetworkError as exc:
            raise UpstreamUnavailableError(
                f"Prover unavailable after {self.max_attempts} attempts: {exc}"
            ) from exc

        commit_hex, spell_hex = self._extract_transactions(body)
        try:
            commit_txid = parse_transaction(commit_hex).txid
            spell_txid = parse_transaction(spell_hex).txid
        except TransactionParseError as exc:
            raise TopologyError(
                f"Prover returned a transaction that cannot be parsed: {exc}",
                diagnostics={"commit_tx": commit_hex, "spell_tx": spell_hex},
            ) from exc

        logger.info("Prover returned commit %s and spell %s", commit_txid, spell_txid)
        return ProofPackage(
            commit_tx_hex=commit_hex,
            spell_tx_hex=spell_hex,
            commit_txid=commit_txid,
            spell_txid=spell_txid,
            broadcasted=self.prover_broadcasts,
        )

    def _submit(self, payload: Dict[str, Any], spell: SpellDescription) -> Any:
        try:
            response = self._session.post(self.url, json=payload, timeout=self.timeout)
        except RequestException as exc:
            logger.error(
                "Prover request failed: %s",
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise TransientNetworkError(f"Prover request failed: {exc}") from exc

        if response.status_code >= 500:
            raise TransientNetworkError(
                f"Prover returned HTTP {response.status_code}: {_response_message(response)}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            message = _response_message(response)
            issues = [str(v) for v in validate_spell(spell, self.network)]
            logger.error("Prover rejected spell (HTTP %s): %s", response.status_code, message)
            raise ProverRejectedError(
                f"Prover rejected the spell: {message}",
                status_code=response.status_code,
                prover_message=message,
                issues=issues,
                debug={"payload_spell": payload["spell"]},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransientNetworkError("Prover returned malformed JSON") from exc

    @staticmethod
    def _extract_transactions(body: Any) -> tuple[str, str]:
        if not isinstance(body, list) or len(body) != 2:
            raise UpstreamUnavailableError(
                "Prover response must be a list of exactly two transactions",
                debug={"response": body},
            )
        hexes: List[str] = []
        for entry in body:
            if isinstance(entry, Mapping):
                entry = entry.get("bitcoin")
            if not isinstance(entry, str) or not HEX_RE.match(entry.strip()):
                raise UpstreamUnavailableError(
                    "Prover response contains a non-hex transaction",
                    debug={"response": body},
                )
            hexes.append(entry.strip().lower())
        return hexes[0], hexes[1]
