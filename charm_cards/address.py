"""Taproot (witness v1) address encoding and validation.

Implements the BIP173/BIP350 checksum so output addresses can be checked
locally before a spell ever reaches the prover.
"""

from __future__ import annotations

from typing import Optional, Tuple

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32M_CONST = 0x2BC830A3

NETWORK_HRPS = {
    "mainnet": "bc",
    "testnet": "tb",
    "testnet4": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}


def bech32_polymod(values: list[int]) -> int:
    """Compute bech32 checksum polymod."""
    GEN = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for value in values:
        b = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= GEN[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _create_checksum(hrp: str, data: list[int]) -> list[int]:
    polymod = bech32_polymod(bech32_hrp_expand(hrp) + data + [0] * 6) ^ BECH32M_CONST
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def _convertbits(data, frombits: int, tobits: int, pad: bool = True) -> list[int] | None:
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or value >> frombits:
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None

    return ret


def hrp_for_network(network: str) -> str:
    try:
        return NETWORK_HRPS[network]
    except KeyError as exc:
        raise ValueError(f"Unknown network: {network}") from exc


def encode_taproot_address(output_key: bytes, network: str = "mainnet") -> str:
    """Encode a 32-byte x-only output key as a bech32m Taproot address."""

    if len(output_key) != 32:
        raise ValueError(f"Output key must be 32 bytes, got {len(output_key)}")
    hrp = hrp_for_network(network)
    data = [1] + (_convertbits(output_key, 8, 5) or [])
    checksum = _create_checksum(hrp, data)
    return hrp + "1" + "".join(CHARSET[d] for d in data + checksum)


def decode_segwit_address(address: str) -> Optional[Tuple[str, int, bytes]]:
    """Return ``(hrp, witness_version, program)`` for a bech32m address.

    Only bech32m checksums are accepted, which covers witness v1 and later.
    Returns ``None`` when the string is not a well-formed bech32m address.
    """

    if not isinstance(address, str) or not 8 <= len(address) <= 90:
        return None
    if address.lower() != address and address.upper() != address:
        return None
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address):
        return None
    hrp = address[:pos]
    if any(ord(ch) < 33 or ord(ch) > 126 for ch in hrp):
        return None
    try:
        data = [CHARSET.index(ch) for ch in address[pos + 1 :]]
    except ValueError:
        return None
    if bech32_polymod(bech32_hrp_expand(hrp) + data) != BECH32M_CONST:
        return None
    payload = data[:-6]
    if not payload:
        return None
    program = _convertbits(payload[1:], 5, 8, pad=False)
    if program is None or not 2 <= len(program) <= 40:
        return None
    return hrp, payload[0], bytes(program)


def is_taproot_address(address: str, network: str) -> bool:
    """True when ``address`` is a valid witness v1 address for ``network``."""

    decoded = decode_segwit_address(address)
    if decoded is None:
        return False
    hrp, version, program = decoded
    return hrp == hrp_for_network(network) and version == 1 and len(program) == 32


def taproot_address_problem(address: object, network: str) -> Optional[str]:
    """Describe why ``address`` is not usable as a Taproot output, or ``None``."""

    if not isinstance(address, str) or not address:
        return "address must be a non-empty string"
    hrp = hrp_for_network(network)
    if not address.lower().startswith(f"{hrp}1p"):
        return f"address must be a Taproot address starting with {hrp}1p for {network}"
    if not is_taproot_address(address, network):
        return "address has an invalid bech32m checksum or length"
    return None
