"""Data models shared across the charm card engine."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

UTXO_ID_RE = re.compile(r"^[0-9a-fA-F]{64}:\d+$")
TXID_RE = re.compile(r"^[0-9a-fA-F]{64}$")

SPELL_VERSION = 8
MIN_OUTPUT_SATS = 330
NFT_SLOT = "$00"
TOKEN_SLOT = "$01"


class Operation(str, Enum):
    MINT = "mint"
    TRANSFER = "transfer"
    REDEEM = "redeem"


@dataclass(frozen=True)
class UTXO:
    """An unspent output observed through the lookup service."""

    txid: str
    vout: int
    value: int
    confirmed: bool = False
    block_height: Optional[int] = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "vout": self.vout,
            "value": self.value,
            "confirmed": self.confirmed,
            "block_height": self.block_height,
        }


def parse_outpoint(utxo_id: str) -> tuple[str, int]:
    """Split ``txid:vout`` into its parts, raising ``ValueError`` when malformed."""

    if not isinstance(utxo_id, str) or not UTXO_ID_RE.match(utxo_id):
        raise ValueError(f"Invalid UTXO id: {utxo_id!r}")
    txid, vout = utxo_id.split(":")
    return txid.lower(), int(vout)


@dataclass
class SpellInput:
    utxo_id: str
    charms: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"utxo_id": self.utxo_id, "charms": dict(self.charms)}


@dataclass
class SpellOutput:
    address: str
    sats: int
    charms: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "sats": self.sats, "charms": dict(self.charms)}


@dataclass
class SpellDescription:
    """A state transition submitted to the prover.

    ``operation`` is kept alongside the wire fields so validation knows which
    conservation rules apply; it is not part of the serialised spell.
    """

    apps: Dict[str, str]
    ins: List[SpellInput]
    outs: List[SpellOutput]
    version: int = SPELL_VERSION
    private_inputs: Optional[Dict[str, Any]] = None
    public_inputs: Optional[Dict[str, Any]] = None
    operation: Optional[Operation] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "version": self.version,
            "apps": dict(self.apps),
            "ins": [spell_input.to_dict() for spell_input in self.ins],
            "outs": [spell_output.to_dict() for spell_output in self.outs],
        }
        if self.private_inputs:
            payload["private_inputs"] = dict(self.private_inputs)
        if self.public_inputs:
            payload["public_inputs"] = dict(self.public_inputs)
        return payload

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], operation: Optional[Operation] = None
    ) -> "SpellDescription":
        """Rebuild a spell from its wire mapping without validating it."""

        return cls(
            version=data.get("version", SPELL_VERSION),
            apps=dict(data.get("apps") or {}),
            ins=[
                SpellInput(utxo_id=item.get("utxo_id", ""), charms=dict(item.get("charms") or {}))
                for item in data.get("ins") or []
            ],
            outs=[
                SpellOutput(
                    address=item.get("address", ""),
                    sats=item.get("sats", 0),
                    charms=dict(item.get("charms") or {}),
                )
                for item in data.get("outs") or []
            ],
            private_inputs=data.get("private_inputs"),
            public_inputs=data.get("public_inputs"),
            operation=operation,
        )

    def app_vks(self) -> List[str]:
        """Distinct verification keys referenced by ``apps``, in slot order."""

        vks: List[str] = []
        for slot in sorted(self.apps):
            parts = str(self.apps[slot]).split("/")
            if len(parts) == 3 and parts[2] not in vks:
                vks.append(parts[2])
        return vks


@dataclass
class ProofPackage:
    """Commit and spell transactions returned by the prover.

    Txids are always derived from the hex by the caller that builds the
    package, never copied from a remote response.
    """

    commit_tx_hex: str
    spell_tx_hex: str
    commit_txid: str
    spell_txid: str
    broadcasted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commit_tx": self.commit_tx_hex,
            "spell_tx": self.spell_tx_hex,
            "commit_txid": self.commit_txid,
            "spell_txid": self.spell_txid,
            "broadcasted": self.broadcasted,
        }


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    TRANSIENT_ERROR = "transient_error"


@dataclass(frozen=True)
class BroadcastAttempt:
    provider: str
    url: str
    outcome: AttemptOutcome
    txid: Optional[str] = None
    reason: Optional[str] = None
    stage: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is AttemptOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "provider": self.provider,
            "url": self.url,
            "outcome": self.outcome.value,
        }
        if self.stage:
            payload["stage"] = self.stage
        if self.txid:
            payload["txid"] = self.txid
        if self.reason:
            payload["reason"] = self.reason
        return payload
