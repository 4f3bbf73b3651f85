"""Flask application exposing the mint, transfer and redeem operations."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .errors import CharmCardsError, ValidationError
from .service import GiftCardService
from .spells import GiftCardNft, MintParams, RedeemParams, TransferParams

logger = logging.getLogger(__name__)


def _field(body: Mapping[str, Any], *names: str, required: bool = True) -> Any:
    for name in names:
        if body.get(name) not in (None, ""):
            return body[name]
    if required:
        raise ValidationError(f"Missing required field: {names[0]}")
    return None


def _int_field(body: Mapping[str, Any], *names: str, required: bool = True) -> Optional[int]:
    value = _field(body, *names, required=required)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{names[0]} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValidationError(f"{names[0]} must be an integer")


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _nft(body: Mapping[str, Any]) -> GiftCardNft:
    raw = _field(body, "nft")
    if not isinstance(raw, Mapping):
        raise ValidationError("nft must be an object")
    return GiftCardNft.from_charm(raw)


def mint_params(body: Mapping[str, Any], service: GiftCardService) -> MintParams:
    config = service.config
    return MintParams(
        minting_utxo=_field(body, "inUtxo", "in_utxo"),
        recipient_address=_field(body, "recipientAddress", "recipient_address"),
        brand=_field(body, "brand"),
        amount_cents=_int_field(body, "initialAmount", "initial_amount", "amount"),
        app_vk=_field(body, "appVk", "app_vk", required=False) or _configured_vk(service),
        image=_field(body, "image", required=False) or "",
        expiration_date=_int_field(body, "expirationDate", "expiration_date", required=False),
        output_sats=config.output_sats,
    )


def transfer_params(body: Mapping[str, Any], service: GiftCardService) -> TransferParams:
    nft = _nft(body)
    balance = _int_field(body, "currentBalance", "current_balance", required=False)
    return TransferParams(
        card_utxo=_field(body, "cardUtxo", "card_utxo"),
        app_id=_field(body, "appId", "app_id"),
        app_vk=_field(body, "appVk", "app_vk", required=False) or _configured_vk(service),
        nft=nft,
        current_balance=nft.remaining_balance if balance is None else balance,
        amount_cents=_int_field(body, "amount", "amountCents", "amount_cents"),
        recipient_address=_field(body, "recipientAddress", "recipient_address"),
        change_address=_field(body, "changeAddress", "change_address"),
        output_sats=service.config.output_sats,
    )


def redeem_params(body: Mapping[str, Any], service: GiftCardService) -> RedeemParams:
    nft = _nft(body)
    balance = _int_field(body, "currentBalance", "current_balance", required=False)
    return RedeemParams(
        card_utxo=_field(body, "cardUtxo", "card_utxo"),
        app_id=_field(body, "appId", "app_id"),
        app_vk=_field(body, "appVk", "app_vk", required=False) or _configured_vk(service),
        nft=nft,
        current_balance=nft.remaining_balance if balance is None else balance,
        amount_cents=_int_field(body, "amount", "amountCents", "amount_cents"),
        change_address=_field(body, "changeAddress", "change_address"),
        output_sats=service.config.output_sats,
    )


def _configured_vk(service: GiftCardService) -> str:
    if not service.config.app_vk:
        raise ValidationError("appVk is required because no app verification key is configured")
    return service.config.app_vk


def create_app(service: GiftCardService, debug_errors: bool | None = None) -> Flask:
    """Build the operation API around ``service``."""

    app = Flask(__name__)
    CORS(app)
    include_debug = service.config.debug_errors if debug_errors is None else debug_errors

    @app.errorhandler(CharmCardsError)
    def handle_engine_error(exc: CharmCardsError):
        if exc.http_status >= 500:
            logger.error("Operation failed: %s", exc)
        else:
            logger.info("Operation rejected: %s", exc)
        return jsonify(exc.to_dict(include_debug=include_debug)), exc.http_status

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"error": exc.description, "status": exc.code}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        logger.exception("Unhandled error while serving %s", request.path)
        payload: Dict[str, Any] = {"error": "Internal server error", "status": 500}
        if include_debug:
            payload["debug"] = {"exception": repr(exc)}
        return jsonify(payload), 500

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "network": service.config.network})

    @app.route("/mint", methods=["POST"])
    def mint():
        result = service.mint(mint_params(_json_body(), service))
        return jsonify(result.to_response())

    @app.route("/transfer", methods=["POST"])
    def transfer():
        body = _json_body()
        funding_address = _field(body, "fundingAddress", "funding_address", required=False)
        result = service.transfer(transfer_params(body, service), funding_address=funding_address)
        return jsonify(result.to_response())

    @app.route("/redeem", methods=["POST"])
    def redeem():
        body = _json_body()
        funding_address = _field(body, "fundingAddress", "funding_address", required=False)
        result = service.redeem(redeem_params(body, service), funding_address=funding_address)
        return jsonify(result.to_response())

    return app
