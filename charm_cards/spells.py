"""Spell construction and static validation for gift card operations.

Each operation has its own closed parameter type and builder. ``validate_spell``
re-checks the resulting wire mapping independently of the builders so that
mistakes are caught locally instead of after a slow prover round trip.

Charm amounts are integer cents. Output ``sats`` are integer satoshis and are
never derived from a charm amount.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import urlparse

from .address import taproot_address_problem
from .errors import ValidationError
from .model import (
    MIN_OUTPUT_SATS,
    NFT_SLOT,
    SPELL_VERSION,
    TOKEN_SLOT,
    UTXO_ID_RE,
    Operation,
    SpellDescription,
    SpellInput,
    SpellOutput,
)

logger = logging.getLogger(__name__)

HEX64_RE = re.compile(r"^[0-9a-fA-F]{64}$")
SLOT_KEY_RE = re.compile(r"^\$\d{2}$")
APP_SPEC_RE = re.compile(r"^([nt])/([0-9a-fA-F]{64})/([0-9a-fA-F]{64})$")

MAX_BRAND_LENGTH = 100
MAX_IMAGE_URL_LENGTH = 2048
MIN_AMOUNT_CENTS = 1
MAX_AMOUNT_CENTS = 1_000_000
DEFAULT_VALIDITY_SECONDS = 365 * 24 * 60 * 60
MAX_VALIDITY_SECONDS = 10 * DEFAULT_VALIDITY_SECONDS
_BRAND_STRIP_RE = re.compile(r"[<>\"'&]")


@dataclass(frozen=True)
class SpellViolation:
    """One violated spell invariant."""

    code: str
    path: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "path": self.path, "message": self.message}

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass(frozen=True)
class GiftCardNft:
    """NFT charm content of a gift card. Amounts are cents, dates unix seconds."""

    brand: str
    image: str
    initial_amount: int
    expiration_date: int
    created_at: int
    remaining_balance: int

    def to_charm(self) -> Dict[str, Any]:
        return {
            "brand": self.brand,
            "image": self.image,
            "initial_amount": self.initial_amount,
            "expiration_date": self.expiration_date,
            "created_at": self.created_at,
            "remaining_balance": self.remaining_balance,
        }

    @classmethod
    def from_charm(cls, data: Mapping[str, Any]) -> "GiftCardNft":
        if not isinstance(data, Mapping):
            raise ValidationError("Gift card NFT must be a mapping")
        try:
            return cls(
                brand=str(data["brand"]),
                image=str(data.get("image") or ""),
                initial_amount=_require_cents(data["initial_amount"], "nft.initial_amount"),
                expiration_date=int(data["expiration_date"]),
                created_at=int(data["created_at"]),
                remaining_balance=_require_cents(
                    data.get("remaining_balance", data["initial_amount"]),
                    "nft.remaining_balance",
                    minimum=0,
                ),
            )
        except KeyError as exc:
            raise ValidationError(f"Gift card NFT is missing field {exc.args[0]}") from exc
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Gift card NFT has an invalid field: {exc}") from exc


@dataclass(frozen=True)
class MintParams:
    minting_utxo: str
    recipient_address: str
    brand: str
    amount_cents: int
    app_vk: str
    image: str = ""
    expiration_date: Optional[int] = None
    created_at: Optional[int] = None
    output_sats: int = 1000


@dataclass(frozen=True)
class TransferParams:
    card_utxo: str
    app_id: str
    app_vk: str
    nft: GiftCardNft
    current_balance: int
    amount_cents: int
    recipient_address: str
    change_address: str
    output_sats: int = 1000


@dataclass(frozen=True)
class RedeemParams:
    card_utxo: str
    app_id: str
    app_vk: str
    nft: GiftCardNft
    current_balance: int
    amount_cents: int
    change_address: str
    output_sats: int = 1000


OperationParams = Union[MintParams, TransferParams, RedeemParams]


def derive_app_id(utxo_id: str) -> str:
    """App identity is the SHA-256 of the minting outpoint string."""

    return hashlib.sha256(utxo_id.encode()).hexdigest()


def app_specs(app_id: str, app_vk: str) -> Dict[str, str]:
    return {NFT_SLOT: f"n/{app_id}/{app_vk}", TOKEN_SLOT: f"t/{app_id}/{app_vk}"}


def sanitize_brand(brand: Any) -> str:
    if not isinstance(brand, str) or not brand.strip():
        raise ValidationError("Brand must be a non-empty string")
    cleaned = _BRAND_STRIP_RE.sub("", brand.strip())
    if not cleaned:
        raise ValidationError("Brand must contain printable characters")
    if len(cleaned) > MAX_BRAND_LENGTH:
        raise ValidationError(f"Brand must be at most {MAX_BRAND_LENGTH} characters")
    return cleaned


def validate_image_url(image: Any) -> str:
    if image is None or image == "":
        return ""
    if not isinstance(image, str):
        raise ValidationError("Image must be a URL string")
    if len(image) > MAX_IMAGE_URL_LENGTH:
        raise ValidationError(f"Image URL must be at most {MAX_IMAGE_URL_LENGTH} characters")
    parsed = urlparse(image)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError("Image URL must use http or https")
    return image


def _require_cents(value: Any, name: str, minimum: int = MIN_AMOUNT_CENTS) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer number of cents")
    if value < minimum:
        raise ValidationError(f"{name} must be at least {minimum} cents")
    if value > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{name} must be at most {MAX_AMOUNT_CENTS} cents")
    return value


def _require_utxo_id(value: Any, name: str) -> str:
    if not isinstance(value, str) or not UTXO_ID_RE.match(value):
        raise ValidationError(f"{name} must look like <64-hex-txid>:<vout>")
    return value


def _require_hex64(value: Any, name: str) -> str:
    if not isinstance(value, str) or not HEX64_RE.match(value):
        raise ValidationError(f"{name} must be 64 hex characters")
    return value.lower()


def _require_output_sats(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < MIN_OUTPUT_SATS:
        raise ValidationError(f"Output value must be an integer of at least {MIN_OUTPUT_SATS} sats")
    return value


def _resolve_expiration(expiration: Optional[int], now: int) -> int:
    if expiration is None:
        return now + DEFAULT_VALIDITY_SECONDS
    if isinstance(expiration, bool) or not isinstance(expiration, int):
        raise ValidationError("Expiration date must be a unix timestamp")
    if expiration <= now:
        raise ValidationError("Expiration date must be in the future")
    if expiration > now + MAX_VALIDITY_SECONDS:
        raise ValidationError("Expiration date must be within 10 years")
    return expiration


def build_mint_spell(params: MintParams, *, now: Optional[int] = None) -> SpellDescription:
    """Mint a card: one empty input, one output holding the NFT and its tokens."""

    now = int(time.time()) if now is None else now
    minting_utxo = _require_utxo_id(params.minting_utxo, "minting UTXO")
    amount = _require_cents(params.amount_cents, "amount")
    app_vk = _require_hex64(params.app_vk, "app verification key")
    nft = GiftCardNft(
        brand=sanitize_brand(params.brand),
        image=validate_image_url(params.image),
        initial_amount=amount,
        expiration_date=_resolve_expiration(params.expiration_date, now),
        created_at=now if params.created_at is None else int(params.created_at),
        remaining_balance=amount,
    )
    app_id = derive_app_id(minting_utxo)
    return SpellDescription(
        apps=app_specs(app_id, app_vk),
        ins=[SpellInput(utxo_id=minting_utxo, charms={})],
        outs=[
            SpellOutput(
                address=params.recipient_address,
                sats=_require_output_sats(params.output_sats),
                charms={NFT_SLOT: nft.to_charm(), TOKEN_SLOT: amount},
            )
        ],
        private_inputs={NFT_SLOT: minting_utxo},
        operation=Operation.MINT,
    )


def _card_input(card_utxo: str, nft: GiftCardNft, balance: int) -> SpellInput:
    return SpellInput(
        utxo_id=_require_utxo_id(card_utxo, "card UTXO"),
        charms={NFT_SLOT: nft.to_charm(), TOKEN_SLOT: balance},
    )


def _check_spend(amount: int, balance: int, verb: str) -> None:
    if amount > balance:
        raise ValidationError(
            f"Cannot {verb} {amount} cents; the card only holds {balance} cents"
        )


def build_transfer_spell(params: TransferParams) -> SpellDescription:
    """Move tokens to a recipient, keeping the NFT and remainder as change.

    Transferring the full balance hands the NFT over as well, in a single
    output.
    """

    balance = _require_cents(params.current_balance, "current balance")
    amount = _require_cents(params.amount_cents, "amount")
    _check_spend(amount, balance, "transfer")
    sats = _require_output_sats(params.output_sats)
    app_id = _require_hex64(params.app_id, "app id")
    app_vk = _require_hex64(params.app_vk, "app verification key")
    remaining = balance - amount

    if remaining == 0:
        outs = [
            SpellOutput(
                address=params.recipient_address,
                sats=sats,
                charms={NFT_SLOT: params.nft.to_charm(), TOKEN_SLOT: amount},
            )
        ]
    else:
        updated = replace(params.nft, remaining_balance=remaining)
        outs = [
            SpellOutput(address=params.recipient_address, sats=sats, charms={TOKEN_SLOT: amount}),
            SpellOutput(
                address=params.change_address,
                sats=sats,
                charms={NFT_SLOT: updated.to_charm(), TOKEN_SLOT: remaining},
            ),
        ]
    return SpellDescription(
        apps=app_specs(app_id, app_vk),
        ins=[_card_input(params.card_utxo, params.nft, balance)],
        outs=outs,
        operation=Operation.TRANSFER,
    )


def build_redeem_spell(params: RedeemParams) -> SpellDescription:
    """Burn redeemed tokens; the single output omits the NFT slot."""

    balance = _require_cents(params.current_balance, "current balance")
    amount = _require_cents(params.amount_cents, "amount")
    _check_spend(amount, balance, "redeem")
    app_id = _require_hex64(params.app_id, "app id")
    app_vk = _require_hex64(params.app_vk, "app verification key")
    return SpellDescription(
        apps=app_specs(app_id, app_vk),
        ins=[_card_input(params.card_utxo, params.nft, balance)],
        outs=[
            SpellOutput(
                address=params.change_address,
                sats=_require_output_sats(params.output_sats),
                charms={TOKEN_SLOT: balance - amount},
            )
        ],
        operation=Operation.REDEEM,
    )


def build_spell(operation: Operation, params: OperationParams, **kwargs: Any) -> SpellDescription:
    """Dispatch to the builder matching ``operation``."""

    operation = Operation(operation)
    expected = {
        Operation.MINT: MintParams,
        Operation.TRANSFER: TransferParams,
        Operation.REDEEM: RedeemParams,
    }[operation]
    if not isinstance(params, expected):
        raise ValidationError(
            f"{operation.value} requires {expected.__name__}, got {type(params).__name__}"
        )
    if operation is Operation.MINT:
        return build_mint_spell(params, **kwargs)
    if operation is Operation.TRANSFER:
        return build_transfer_spell(params)
    return build_redeem_spell(params)


# Validation -------------------------------------------------------------


def _is_amount(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _check_charms(
    charms: Any, path: str, apps: Mapping[str, Any], violations: List[SpellViolation]
) -> None:
    if not isinstance(charms, Mapping):
        violations.append(SpellViolation("charms_type", path, "charms must be a mapping"))
        return
    for slot, value in charms.items():
        slot_path = f"{path}.{slot}"
        if slot not in apps:
            violations.append(
                SpellViolation("unknown_app", slot_path, f"slot {slot} is not declared in apps")
            )
            continue
        match = APP_SPEC_RE.match(str(apps[slot]))
        if match and match.group(1) == "t" and not _is_amount(value):
            violations.append(
                SpellViolation(
                    "token_amount", slot_path, "token amount must be a non-negative integer"
                )
            )
        if match and match.group(1) == "n" and not isinstance(value, Mapping):
            violations.append(
                SpellViolation("nft_content", slot_path, "NFT content must be a mapping")
            )


def _infer_operation(spell: Mapping[str, Any]) -> Optional[Operation]:
    ins = spell.get("ins") or []
    outs = spell.get("outs") or []
    if not isinstance(ins, list) or not isinstance(outs, list):
        return None
    input_charms = [i.get("charms") for i in ins if isinstance(i, Mapping)]
    if not any(input_charms):
        return Operation.MINT
    output_has_nft = any(
        isinstance(o, Mapping) and isinstance(o.get("charms"), Mapping) and NFT_SLOT in o["charms"]
        for o in outs
    )
    return Operation.TRANSFER if output_has_nft else Operation.REDEEM


def _token_totals(items: Any, slot: str) -> Optional[int]:
    total = 0
    for item in items:
        charms = item.get("charms") if isinstance(item, Mapping) else None
        if not isinstance(charms, Mapping) or slot not in charms:
            continue
        if not _is_amount(charms[slot]):
            return None
        total += charms[slot]
    return total


def _check_conservation(
    spell: Mapping[str, Any], operation: Operation, violations: List[SpellViolation]
) -> None:
    apps = spell.get("apps")
    ins, outs = spell.get("ins"), spell.get("outs")
    if not isinstance(apps, Mapping) or not isinstance(ins, list) or not isinstance(outs, list):
        return
    for slot, app_ref in apps.items():
        match = APP_SPEC_RE.match(str(app_ref))
        if not match or match.group(1) != "t":
            continue
        total_in = _token_totals(ins, slot)
        total_out = _token_totals(outs, slot)
        if total_in is None or total_out is None:
            continue
        if operation is Operation.TRANSFER and total_in != total_out:
            violations.append(
                SpellViolation(
                    "token_conservation",
                    f"apps.{slot}",
                    f"transfer must conserve tokens: inputs hold {total_in}, outputs hold {total_out}",
                )
            )
        elif operation is Operation.REDEEM and total_out >= total_in:
            violations.append(
                SpellViolation(
                    "token_conservation",
                    f"apps.{slot}",
                    f"redeem must burn tokens: inputs hold {total_in}, outputs hold {total_out}",
                )
            )


def validate_spell(
    spell: SpellDescription | Mapping[str, Any],
    network: str,
    operation: Operation | str | None = None,
) -> List[SpellViolation]:
    """Return every violated invariant of ``spell``; an empty list means valid."""

    if isinstance(spell, SpellDescription):
        operation = operation or spell.operation
        spell = spell.to_dict()
    violations: List[SpellViolation] = []
    if not isinstance(spell, Mapping):
        return [SpellViolation("spell_type", "", "spell must be a mapping")]

    version = spell.get("version")
    if version != SPELL_VERSION or isinstance(version, bool):
        violations.append(
            SpellViolation("version", "version", f"version must be {SPELL_VERSION}, got {version!r}")
        )

    apps = spell.get("apps")
    if not isinstance(apps, Mapping) or not apps:
        violations.append(SpellViolation("apps_missing", "apps", "apps must be a non-empty mapping"))
        apps = {}
    for slot, app_ref in apps.items():
        if not isinstance(slot, str) or not SLOT_KEY_RE.match(slot):
            violations.append(
                SpellViolation("app_key", f"apps.{slot}", "app slot keys must look like $00")
            )
        if not isinstance(app_ref, str) or not APP_SPEC_RE.match(app_ref):
            violations.append(
                SpellViolation(
                    "app_spec",
                    f"apps.{slot}",
                    "app must look like <n|t>/<64-hex app id>/<64-hex verification key>",
                )
            )

    ins = spell.get("ins")
    if not isinstance(ins, list) or not ins:
        violations.append(SpellViolation("ins_missing", "ins", "ins must be a non-empty list"))
        ins = []
    for index, spell_input in enumerate(ins):
        path = f"ins[{index}]"
        if not isinstance(spell_input, Mapping):
            violations.append(SpellViolation("input_type", path, "input must be a mapping"))
            continue
        utxo_id = spell_input.get("utxo_id")
        if not isinstance(utxo_id, str) or not UTXO_ID_RE.match(utxo_id):
            violations.append(
                SpellViolation(
                    "utxo_id", f"{path}.utxo_id", "utxo_id must look like <64-hex-txid>:<vout>"
                )
            )
        _check_charms(spell_input.get("charms", {}), f"{path}.charms", apps, violations)

    outs = spell.get("outs")
    if not isinstance(outs, list) or not outs:
        violations.append(SpellViolation("outs_missing", "outs", "outs must be a non-empty list"))
        outs = []
    for index, spell_output in enumerate(outs):
        path = f"outs[{index}]"
        if not isinstance(spell_output, Mapping):
            violations.append(SpellViolation("output_type", path, "output must be a mapping"))
            continue
        problem = taproot_address_problem(spell_output.get("address"), network)
        if problem:
            violations.append(SpellViolation("address", f"{path}.address", problem))
        sats = spell_output.get("sats")
        if isinstance(sats, bool) or not isinstance(sats, int):
            violations.append(
                SpellViolation("sats_type", f"{path}.sats", "sats must be an integer")
            )
        elif sats < MIN_OUTPUT_SATS:
            violations.append(
                SpellViolation(
                    "min_sats",
                    f"{path}.sats",
                    f"output holds {sats} sats, minimum {MIN_OUTPUT_SATS} sats",
                )
            )
        charms = spell_output.get("charms")
        if not isinstance(charms, Mapping) or not charms:
            violations.append(
                SpellViolation("charms_missing", f"{path}.charms", "output must carry charms")
            )
        else:
            _check_charms(charms, f"{path}.charms", apps, violations)

    for key_name in ("private_inputs", "public_inputs"):
        extra = spell.get(key_name)
        if extra is None:
            continue
        if not isinstance(extra, Mapping):
            violations.append(SpellViolation(key_name, key_name, f"{key_name} must be a mapping"))
            continue
        for slot in extra:
            if slot not in apps:
                violations.append(
                    SpellViolation(
                        key_name, f"{key_name}.{slot}", f"slot {slot} is not declared in apps"
                    )
                )

    try:
        resolved = Operation(operation) if operation else _infer_operation(spell)
    except ValueError:
        violations.append(
            SpellViolation("operation", "operation", f"unknown operation {operation!r}")
        )
        resolved = None
    if resolved in (Operation.TRANSFER, Operation.REDEEM):
        _check_conservation(spell, resolved, violations)

    if violations:
        logger.debug("Spell failed validation: %s", "; ".join(str(v) for v in violations))
    return violations


def ensure_valid_spell(
    spell: SpellDescription | Mapping[str, Any],
    network: str,
    operation: Operation | str | None = None,
) -> None:
    """Raise :class:`ValidationError` listing every violation, if any."""

    violations = validate_spell(spell, network, operation)
    if violations:
        summary = "; ".join(str(v) for v in violations)
        raise ValidationError(f"Spell is invalid: {summary}", violations)
