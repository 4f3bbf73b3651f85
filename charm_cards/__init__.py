"""Charm gift card transaction-package engine."""

from .broadcast import (
    BitcoinCoreBroadcaster,
    BroadcastOrchestrator,
    BroadcastResult,
    BroadcastState,
    CryptoApisBroadcaster,
    EsploraBroadcaster,
    build_providers,
)
from .config import RPCConfig, ServiceConfig, load_service_config
from .errors import (
    BroadcastFailedError,
    CharmCardsError,
    ConfigurationError,
    DeadlineExceededError,
    InsufficientFundsError,
    NoEligibleUtxoError,
    PartialBroadcastError,
    ProverRejectedError,
    TopologyError,
    TransientNetworkError,
    UpstreamUnavailableError,
    ValidationError,
)
from .lookup import LookupClient
from .mempool import AcceptanceResult, MempoolPoller
from .model import (
    UTXO,
    BroadcastAttempt,
    Operation,
    ProofPackage,
    SpellDescription,
    SpellInput,
    SpellOutput,
)
from .prover import ProverClient
from .selector import UTXOSelector
from .service import GiftCardService, OperationResult
from .spells import (
    GiftCardNft,
    MintParams,
    RedeemParams,
    SpellViolation,
    TransferParams,
    build_spell,
    validate_spell,
)
from .topology import TopologyResult, ensure_valid_topology, validate_topology

__all__ = [
    "AcceptanceResult",
    "BitcoinCoreBroadcaster",
    "BroadcastAttempt",
    "BroadcastFailedError",
    "BroadcastOrchestrator",
    "BroadcastResult",
    "BroadcastState",
    "CharmCardsError",
    "ConfigurationError",
    "CryptoApisBroadcaster",
    "DeadlineExceededError",
    "EsploraBroadcaster",
    "GiftCardNft",
    "GiftCardService",
    "InsufficientFundsError",
    "LookupClient",
    "MempoolPoller",
    "MintParams",
    "NoEligibleUtxoError",
    "Operation",
    "OperationResult",
    "PartialBroadcastError",
    "ProofPackage",
    "ProverClient",
    "ProverRejectedError",
    "RPCConfig",
    "RedeemParams",
    "ServiceConfig",
    "SpellDescription",
    "SpellInput",
    "SpellOutput",
    "SpellViolation",
    "TopologyError",
    "TopologyResult",
    "TransferParams",
    "TransientNetworkError",
    "UTXO",
    "UTXOSelector",
    "UpstreamUnavailableError",
    "ValidationError",
    "build_providers",
    "build_spell",
    "ensure_valid_topology",
    "load_service_config",
    "validate_spell",
    "validate_topology",
]
