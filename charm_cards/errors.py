"""Error hierarchy shared by the charm card engine.

Every error carries the HTTP status the operation API reports for it. The
``debug`` payload holds internal diagnostics (provider bodies, UTXO lists,
outpoint listings) and is only rendered when the API runs with debug errors
enabled.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class CharmCardsError(RuntimeError):
    """Base class for all engine errors."""

    http_status = 500

    def __init__(self, message: str, *, debug: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.debug = debug or {}

    def to_dict(self, include_debug: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "status": self.http_status}
        payload.update(self.extra_fields())
        if include_debug and self.debug:
            payload["debug"] = self.debug
        return payload

    def extra_fields(self) -> Dict[str, Any]:
        return {}


class ValidationError(CharmCardsError):
    """Raised for bad input shape, address or amount. Never retried."""

    http_status = 400

    def __init__(
        self,
        message: str,
        violations: Optional[List[Any]] = None,
        *,
        debug: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, debug=debug)
        self.violations = list(violations or [])

    def extra_fields(self) -> Dict[str, Any]:
        if not self.violations:
            return {}
        return {
            "violations": [
                v.to_dict() if hasattr(v, "to_dict") else str(v) for v in self.violations
            ]
        }


class NoEligibleUtxoError(CharmCardsError):
    """Raised when an address has no UTXO that may fund an operation."""

    http_status = 400


class InsufficientFundsError(CharmCardsError):
    """Raised when the best available UTXO does not cover the requirement."""

    http_status = 400

    def __init__(
        self,
        message: str,
        *,
        required: int,
        available: int,
        debug: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, debug=debug)
        self.required = required
        self.available = available

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)

    def extra_fields(self) -> Dict[str, Any]:
        return {
            "required_sats": self.required,
            "available_sats": self.available,
            "shortfall_sats": self.shortfall,
        }


class ProverRejectedError(CharmCardsError):
    """Raised when the prover answers with a well-formed rejection."""

    http_status = 422

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 422,
        prover_message: str | None = None,
        issues: Optional[List[str]] = None,
        debug: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, debug=debug)
        self.status_code = status_code
        self.prover_message = prover_message
        self.issues = list(issues or [])
        # Non-422 client errors still mean "your request was wrong".
        self.http_status = 422 if status_code == 422 else 400

    def extra_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if self.prover_message:
            fields["prover_message"] = self.prover_message
        if self.issues:
            fields["issues"] = self.issues
        return fields


class TransientNetworkError(CharmCardsError):
    """Raised for timeouts, resets, DNS failures and upstream 5xx responses."""

    http_status = 503

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        debug: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, debug=debug)
        self.status_code = status_code


class UpstreamUnavailableError(CharmCardsError):
    """Raised once an upstream service stays unreachable after retries."""

    http_status = 503


class TopologyError(CharmCardsError):
    """Raised when the commit and spell transactions do not chain."""

    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        swapped: bool = False,
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, debug=diagnostics)
        self.swapped = swapped
        self.diagnostics = diagnostics or {}

    def extra_fields(self) -> Dict[str, Any]:
        return {"swapped": self.swapped}


class BroadcastFailedError(CharmCardsError):
    """Raised when no provider accepted the commit transaction."""

    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        attempts: Optional[List[Any]] = None,
    ) -> None:
        self.stage = stage
        self.attempts = list(attempts or [])
        super().__init__(
            message, debug={"attempts": [a.to_dict() for a in self.attempts]}
        )

    def extra_fields(self) -> Dict[str, Any]:
        return {"stage": self.stage}


class PartialBroadcastError(CharmCardsError):
    """Raised when the commit transaction went out but the spell did not."""

    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        commit_txid: str,
        spell_txid: str | None = None,
        attempts: Optional[List[Any]] = None,
    ) -> None:
        self.commit_txid = commit_txid
        self.spell_txid = spell_txid
        self.attempts = list(attempts or [])
        super().__init__(
            message, debug={"attempts": [a.to_dict() for a in self.attempts]}
        )

    def extra_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"commit_txid": self.commit_txid}
        if self.spell_txid:
            fields["spell_txid"] = self.spell_txid
        return fields


class DeadlineExceededError(CharmCardsError):
    """Raised when an operation runs past its overall deadline."""

    http_status = 504

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message)
        self.stage = stage

    def extra_fields(self) -> Dict[str, Any]:
        return {"stage": self.stage}


class ConfigurationError(CharmCardsError):
    """Raised when configuration is invalid."""

    http_status = 500
