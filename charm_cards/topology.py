"""Check that a commit/spell pair forms a spend chain."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import TopologyError
from .transaction import Transaction, TransactionParseError, parse_transaction

logger = logging.getLogger(__name__)


@dataclass
class TopologyResult:
    valid: bool
    reason: Optional[str] = None
    swapped: bool = False
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def matching_inputs(self) -> int:
        return int(self.diagnostics.get("matching_inputs", 0))


def _diagnostics(commit: Transaction, spell: Transaction) -> Dict[str, Any]:
    commit_outputs = commit.output_outpoints()
    spell_inputs = spell.input_outpoints()
    outputs = set(commit_outputs)
    matching = [outpoint for outpoint in spell_inputs if outpoint in outputs]
    return {
        "commit_txid": commit.txid,
        "spell_txid": spell.txid,
        "commit_inputs": len(commit.inputs),
        "commit_outputs": len(commit.outputs),
        "spell_inputs": len(spell.inputs),
        "spell_outputs": len(spell.outputs),
        "matching_inputs": len(matching),
        "matching_outpoints": matching,
        "commit_output_outpoints": commit_outputs,
        "commit_input_outpoints": commit.input_outpoints(),
        "spell_input_outpoints": spell_inputs,
    }


def validate_topology(commit_tx_hex: str, spell_tx_hex: str) -> TopologyResult:
    """Valid iff at least one spell input spends an output of the commit.

    A failing pair is re-checked in the opposite order so a package returned
    as ``[spell, commit]`` is reported as swapped rather than malformed.
    """

    try:
        commit = parse_transaction(commit_tx_hex)
    except TransactionParseError as exc:
        return TopologyResult(False, reason=f"commit transaction could not be parsed: {exc}")
    try:
        spell = parse_transaction(spell_tx_hex)
    except TransactionParseError as exc:
        return TopologyResult(False, reason=f"spell transaction could not be parsed: {exc}")

    diagnostics = _diagnostics(commit, spell)
    if diagnostics["matching_inputs"] >= 1:
        return TopologyResult(True, diagnostics=diagnostics)

    reverse = _diagnostics(spell, commit)
    if reverse["matching_inputs"] >= 1:
        logger.warning(
            "Commit %s spends an output of spell %s; transactions are swapped",
            diagnostics["commit_txid"],
            diagnostics["spell_txid"],
        )
        return TopologyResult(
            False,
            reason="transactions are swapped: the first transaction spends the second",
            swapped=True,
            diagnostics=diagnostics,
        )

    logger.warning(
        "Spell %s does not spend any output of commit %s",
        diagnostics["spell_txid"],
        diagnostics["commit_txid"],
    )
    return TopologyResult(
        False,
        reason="spell transaction does not spend any output of the commit transaction",
        diagnostics=diagnostics,
    )


def ensure_valid_topology(commit_tx_hex: str, spell_tx_hex: str) -> TopologyResult:
    """Like :func:`validate_topology` but raise :class:`TopologyError` on failure."""

    result = validate_topology(commit_tx_hex, spell_tx_hex)
    if not result.valid:
        raise TopologyError(
            f"Invalid package topology: {result.reason}",
            swapped=result.swapped,
            diagnostics=result.diagnostics,
        )
    return result
