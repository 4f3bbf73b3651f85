"""Typed JSON-RPC client for Bitcoin Core nodes.

The engine only needs a handful of node calls: discovering whether the node
is pruned (and where) so funding UTXOs can be screened, and submitting raw
transactions when the node is configured as a broadcast provider. No
consensus logic is implemented here; the client forwards well-typed requests
and surfaces errors clearly.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

import requests
from requests import RequestException, Response

from .config import RPCConfig
from .errors import CharmCardsError, TransientNetworkError

logger = logging.getLogger(__name__)


class RPCError(CharmCardsError):
    """Raised when the Bitcoin node responds with an RPC error."""

    http_status = 502

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.rpc_message = message


class RPCTransportError(TransientNetworkError):
    """Raised when the RPC endpoint is unreachable or returns malformed data."""


def format_rpc_hint(error_obj: dict[str, Any] | RPCError | None) -> str | None:
    """Return a human-friendly hint for common ``sendrawtransaction`` failures."""

    if error_obj is None:
        return None

    code = None
    message = ""
    if isinstance(error_obj, RPCError):
        code = error_obj.code
        message = error_obj.rpc_message
    elif isinstance(error_obj, dict):
        code = error_obj.get("code")
        message = str(error_obj.get("message", ""))

    if code == -26 and "min relay fee not met" in message:
        return "The node rejected the transaction because its fee rate is below minrelaytxfee; raise fee_rate."
    if code == -25 or "missing inputs" in message.lower() or "missingorspent" in message.lower():
        return (
            "The node does not know one of the spent outputs. For a spell transaction this usually "
            "means the commit transaction has not reached this node's mempool yet."
        )
    if code == -27 or "already in block chain" in message.lower():
        return "The transaction is already confirmed; nothing left to broadcast."
    return None


class BitcoinRPCClient:
    """Thin JSON-RPC client for Bitcoin Core compatible nodes."""

    def __init__(self, config: RPCConfig, timeout: float = 30) -> None:
        self.config = config
        self.timeout = timeout
        self._session = requests.Session()
        self._base_url = config.base_url
        self._wallet = config.wallet

    def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """Perform a JSON-RPC request."""

        payload = {
            "jsonrpc": "1.0",
            "id": str(uuid.uuid4()),
            "method": method,
            "params": params or [],
        }
        logger.debug("RPC call %s", method)
        try:
            response = self._session.post(
                self._url,
                data=json.dumps(payload),
                headers={"content-type": "application/json"},
                auth=(self.config.user, self.config.password),
                timeout=self.timeout,
            )
        except RequestException as exc:
            logger.error(
                "RPC connection failed: %s",
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise RPCTransportError(
                "RPC connection failed. Ensure your Bitcoin node is reachable and the rpc "
                "section of ~/.charm-cards.yaml (or CHARM_CARDS_RPC_*) points to the right host."
            ) from exc
        self._raise_for_status(response)
        try:
            result = response.json()
        except ValueError as exc:
            logger.debug("RPC JSON parse error: %s", response.text, exc_info=True)
            raise RPCTransportError("RPC server returned malformed JSON") from exc
        if result.get("error"):
            error = result["error"]
            raise RPCError(error.get("code", -1), error.get("message", "unknown"))
        return result.get("result")

    def _raise_for_status(self, response: Response) -> None:
        if response.ok:
            return
        # Bitcoin Core reports JSON-RPC errors as HTTP 500 with a JSON body.
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            raise RPCError(error.get("code", -1), error.get("message", "unknown"))

        logger.error("RPC HTTP error %s from %s", response.status_code, response.url)
        if response.status_code == 401:
            raise RPCTransportError(
                "Unauthorized (401). Check the RPC user and password.",
                status_code=response.status_code,
            )
        raise RPCTransportError(
            f"RPC server returned HTTP {response.status_code}",
            status_code=response.status_code,
        )

    @property
    def _url(self) -> str:
        if self._wallet:
            return f"{self._base_url}/wallet/{self._wallet}"
        return self._base_url

    # Convenience wrappers -------------------------------------------------

    def getblockchaininfo(self) -> Dict[str, Any]:
        return self.call("getblockchaininfo")

    def get_prune_height(self) -> int | None:
        """Return the lowest stored block height, or ``None`` if not pruned."""

        info = self.getblockchaininfo()
        if not info.get("pruned"):
            return None
        height = info.get("pruneheight")
        return int(height) if height is not None else None

    def sendrawtransaction(self, raw_tx: str) -> str:
        return self.call("sendrawtransaction", [raw_tx])
