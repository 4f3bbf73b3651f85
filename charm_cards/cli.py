"""Command line interface for the charm card engine."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

import yaml

from .api import create_app, redeem_params, transfer_params
from .broadcast import BroadcastOrchestrator
from .config import ServiceConfig, load_service_config, set_default_config_path
from .errors import CharmCardsError
from .model import ProofPackage
from .service import GiftCardService
from .spells import MintParams, validate_spell
from .topology import validate_topology
from .transaction import TransactionParseError, compute_txid

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

COMPACT_JSON_SEPARATORS = (",", ":")


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Charm gift card engine")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument("--network", default=None, help="Override the configured network")
    parser.add_argument(
        "--mock", action="store_true", help="Prove in mock mode (no app binary required)"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="run the operation API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)

    select_parser = subparsers.add_parser(
        "select-utxo", help="pick a funding UTXO for an address"
    )
    select_parser.add_argument("--address", required=True)
    select_parser.add_argument(
        "--exclude", action="append", default=[], help="txid:vout to skip (repeatable)"
    )
    select_parser.add_argument("--minimum-sats", type=int, default=0)

    validate_parser = subparsers.add_parser(
        "validate-spell", help="statically check a spell (YAML or JSON)"
    )
    validate_parser.add_argument("spell_file")
    validate_parser.add_argument(
        "--operation", choices=["mint", "transfer", "redeem"], default=None
    )

    topology_parser = subparsers.add_parser(
        "check-topology", help="verify that a spell transaction spends the commit"
    )
    _add_package_arguments(topology_parser)

    broadcast_parser = subparsers.add_parser(
        "broadcast", help="submit a commit/spell package through the configured providers"
    )
    _add_package_arguments(broadcast_parser)
    broadcast_parser.add_argument(
        "--no-wait", action="store_true", help="skip waiting for the commit in the mempool"
    )

    await_parser = subparsers.add_parser("await-tx", help="wait until a txid is visible")
    await_parser.add_argument("--txid", required=True)
    await_parser.add_argument("--timeout", type=float, default=None)

    mint_parser = subparsers.add_parser("mint", help="mint a gift card")
    mint_parser.add_argument("--in-utxo", required=True, help="txid:vout funding the mint")
    mint_parser.add_argument("--recipient", required=True, help="Taproot address of the holder")
    mint_parser.add_argument("--brand", required=True)
    mint_parser.add_argument("--amount", type=int, required=True, help="Card value in cents")
    mint_parser.add_argument("--image", default="")
    mint_parser.add_argument("--expiration", type=int, default=None, help="Unix timestamp")
    mint_parser.add_argument("--app-vk", default=None)
    mint_parser.add_argument("--no-broadcast", action="store_true")

    for name in ("transfer", "redeem"):
        op_parser = subparsers.add_parser(
            name, help=f"{name} a gift card from a JSON request file"
        )
        op_parser.add_argument(
            "request_file", help="JSON body as accepted by the operation API"
        )
        op_parser.add_argument("--no-broadcast", action="store_true")

    return parser


def _add_package_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--commit-hex", default=None)
    parser.add_argument("--spell-hex", default=None)
    parser.add_argument("--commit-file", default=None)
    parser.add_argument("--spell-file", default=None)


def _read_hex(inline: str | None, path: str | None, label: str) -> str:
    if inline:
        return inline.strip()
    if path:
        return Path(path).read_text().strip()
    raise CLIError(f"Provide --{label}-hex or --{label}-file")


def _read_mapping(path: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(Path(path).read_text())
    except (OSError, yaml.YAMLError) as exc:
        raise CLIError(f"Could not read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise CLIError(f"{path} must contain a mapping")
    return data


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _load_config(args: argparse.Namespace) -> ServiceConfig:
    if args.config:
        set_default_config_path(args.config)
    overrides: dict[str, Any] = {}
    if args.network:
        overrides["network"] = args.network
    if args.mock:
        overrides["mock_mode"] = True
    return load_service_config(overrides=overrides)


def cmd_serve(service: GiftCardService, args: argparse.Namespace) -> None:
    app = create_app(service)
    logger.info("Serving operation API on %s:%d (%s)", args.host, args.port, service.config.network)
    app.run(host=args.host, port=args.port)


def cmd_select_utxo(service: GiftCardService, args: argparse.Namespace) -> None:
    utxo = service.selector.select_funding_utxo(
        args.address, exclude_ids=set(args.exclude), minimum_sats=args.minimum_sats
    )
    _print(utxo.to_dict())


def cmd_validate_spell(service: GiftCardService, args: argparse.Namespace) -> int:
    spell = _read_mapping(args.spell_file)
    violations = validate_spell(spell, service.config.network, args.operation)
    _print({"valid": not violations, "violations": [v.to_dict() for v in violations]})
    return 1 if violations else 0


def cmd_check_topology(args: argparse.Namespace) -> int:
    result = validate_topology(
        _read_hex(args.commit_hex, args.commit_file, "commit"),
        _read_hex(args.spell_hex, args.spell_file, "spell"),
    )
    _print(
        {
            "valid": result.valid,
            "reason": result.reason,
            "swapped": result.swapped,
            "diagnostics": result.diagnostics,
        }
    )
    return 0 if result.valid else 1


def cmd_broadcast(service: GiftCardService, args: argparse.Namespace) -> None:
    commit_hex = _read_hex(args.commit_hex, args.commit_file, "commit")
    spell_hex = _read_hex(args.spell_hex, args.spell_file, "spell")
    try:
        package = ProofPackage(
            commit_tx_hex=commit_hex,
            spell_tx_hex=spell_hex,
            commit_txid=compute_txid(commit_hex),
            spell_txid=compute_txid(spell_hex),
        )
    except TransactionParseError as exc:
        raise CLIError(f"Could not parse package: {exc}") from exc
    orchestrator = BroadcastOrchestrator(
        service.providers,
        poller=None if args.no_wait else service.poller,
        mempool_timeout=service.config.mempool_timeout,
        poll_interval=service.config.mempool_poll_interval,
    )
    _print(orchestrator.broadcast(package).to_dict())


def cmd_await_tx(service: GiftCardService, args: argparse.Namespace) -> int:
    timeout = args.timeout if args.timeout is not None else service.config.mempool_timeout
    result = service.poller.await_acceptance(
        args.txid, timeout, service.config.mempool_poll_interval
    )
    _print({"txid": args.txid, "accepted": result.accepted, "elapsed_ms": result.elapsed_ms})
    return 0 if result.accepted else 1


def cmd_mint(service: GiftCardService, args: argparse.Namespace) -> None:
    app_vk = args.app_vk or service.config.app_vk
    if not app_vk:
        raise CLIError("Provide --app-vk or configure app.vk")
    params = MintParams(
        minting_utxo=args.in_utxo,
        recipient_address=args.recipient,
        brand=args.brand,
        amount_cents=args.amount,
        app_vk=app_vk,
        image=args.image,
        expiration_date=args.expiration,
        output_sats=service.config.output_sats,
    )
    result = service.mint(params)
    _print({**result.to_response(), "summary": result.summary()})


def cmd_card_operation(service: GiftCardService, args: argparse.Namespace) -> None:
    body = _read_mapping(args.request_file)
    funding_address = body.get("fundingAddress") or body.get("funding_address")
    if args.command == "transfer":
        result = service.transfer(transfer_params(body, service), funding_address=funding_address)
    else:
        result = service.redeem(redeem_params(body, service), funding_address=funding_address)
    _print({**result.to_response(), "summary": result.summary()})


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    exit_code = 0
    try:
        if args.command == "check-topology":
            exit_code = cmd_check_topology(args)
        else:
            config = _load_config(args)
            service = GiftCardService(
                config, broadcast=not getattr(args, "no_broadcast", False)
            )
            if args.command == "serve":
                cmd_serve(service, args)
            elif args.command == "select-utxo":
                cmd_select_utxo(service, args)
            elif args.command == "validate-spell":
                exit_code = cmd_validate_spell(service, args)
            elif args.command == "broadcast":
                cmd_broadcast(service, args)
            elif args.command == "await-tx":
                exit_code = cmd_await_tx(service, args)
            elif args.command == "mint":
                cmd_mint(service, args)
            elif args.command in {"transfer", "redeem"}:
                cmd_card_operation(service, args)
            else:  # pragma: no cover - argparse enforces choices
                raise CLIError(f"Unknown command: {args.command}")
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
    except CharmCardsError as exc:
        payload = exc.to_dict(include_debug=args.verbose)
        parser.exit(1, f"error: {json.dumps(payload, separators=COMPACT_JSON_SEPARATORS)}\n")
    except CLIError as exc:
        parser.exit(1, f"error: {exc}\n")
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main(sys.argv[1:])
