"""HTTP client for Esplora-style UTXO and transaction lookups."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from requests import RequestException, Response

from .errors import CharmCardsError, TransientNetworkError, ValidationError
from .model import UTXO, TXID_RE

logger = logging.getLogger(__name__)


class TransactionNotFoundError(CharmCardsError):
    """Raised when the lookup service does not know a transaction."""

    http_status = 400

    def __init__(self, txid: str) -> None:
        super().__init__(f"Transaction {txid} was not found by the lookup service")
        self.txid = txid


@dataclass(frozen=True)
class TxStatus:
    confirmed: bool
    block_height: Optional[int] = None


def _first_key(entry: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if entry.get(key) is not None:
            return entry[key]
    return None


def utxo_from_entry(entry: Dict[str, Any]) -> UTXO:
    """Normalise one lookup entry, accepting the common field aliases."""

    txid = _first_key(entry, "txid", "tx_hash")
    vout = _first_key(entry, "vout", "index", "tx_output_n")
    value = _first_key(entry, "value", "amount")
    if not isinstance(txid, str) or not TXID_RE.match(txid) or vout is None or value is None:
        raise ValueError(f"Malformed UTXO entry: {entry!r}")
    status = entry.get("status") or {}
    confirmed = bool(status.get("confirmed", entry.get("confirmed", False)))
    block_height = status.get("block_height", entry.get("block_height"))
    return UTXO(
        txid=txid.lower(),
        vout=int(vout),
        value=int(value),
        confirmed=confirmed,
        block_height=int(block_height) if block_height is not None else None,
    )


class LookupClient:
    """Read-only client for an Esplora compatible REST API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def _get(self, path: str) -> Response:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.get(url, timeout=self.timeout)
        except RequestException as exc:
            logger.warning(
                "Lookup request to %s failed: %s",
                url,
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise TransientNetworkError(f"Lookup service unreachable: {exc}") from exc
        if response.status_code >= 500:
            logger.warning("Lookup service returned HTTP %s for %s", response.status_code, url)
            raise TransientNetworkError(
                f"Lookup service returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def get_address_utxos(self, address: str) -> List[UTXO]:
        """Return the UTXO set of ``address``; an unknown address has none."""

        response = self._get(f"/address/{address}/utxo")
        if response.status_code == 404:
            return []
        if not response.ok:
            raise ValidationError(
                f"Lookup service rejected address {address} (HTTP {response.status_code})"
            )
        try:
            entries = response.json()
        except ValueError as exc:
            raise TransientNetworkError("Lookup service returned malformed JSON") from exc
        if not isinstance(entries, list):
            raise TransientNetworkError("Lookup service returned a non-list UTXO set")

        utxos: List[UTXO] = []
        for entry in entries:
            try:
                utxos.append(utxo_from_entry(entry))
            except (ValueError, TypeError, AttributeError):
                logger.warning("Skipping malformed UTXO entry for %s: %r", address, entry)
        logger.debug("Found %d UTXOs for %s", len(utxos), address)
        return utxos

    def get_transaction_hex(self, txid: str) -> str:
        response = self._get(f"/tx/{txid}/hex")
        if response.status_code == 404:
            raise TransactionNotFoundError(txid)
        if not response.ok:
            raise TransientNetworkError(
                f"Lookup service returned HTTP {response.status_code} for {txid}",
                status_code=response.status_code,
            )
        return response.text.strip().lower()

    def get_transaction_status(self, txid: str) -> TxStatus:
        response = self._get(f"/tx/{txid}")
        if response.status_code == 404:
            raise TransactionNotFoundError(txid)
        if not response.ok:
            raise TransientNetworkError(
                f"Lookup service returned HTTP {response.status_code} for {txid}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientNetworkError("Lookup service returned malformed JSON") from exc
        status = body.get("status") or {}
        height = status.get("block_height")
        return TxStatus(
            confirmed=bool(status.get("confirmed")),
            block_height=int(height) if height is not None else None,
        )

    def has_transaction(self, txid: str) -> bool:
        """True once the service answers 200 for ``txid`` (mempool or chain)."""

        response = self._get(f"/tx/{txid}")
        return response.status_code == 200
