"""Minimal Bitcoin transaction codec.

Only the structure is decoded: inputs, outputs and witnesses. Scripts are
kept as opaque bytes since no script or consensus validation happens here.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import List


class TransactionParseError(ValueError):
    """Raised when raw transaction hex cannot be decoded."""


def ser_compact_size(n: int) -> bytes:
    """Serialize an integer as a Bitcoin compact size."""
    if n < 253:
        return bytes([n])
    elif n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    elif n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    else:
        return b"\xff" + n.to_bytes(8, "little")


def double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


@dataclass
class TxInput:
    prev_txid: str
    prev_vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: List[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> str:
        return f"{self.prev_txid}:{self.prev_vout}"


@dataclass
class TxOutput:
    value: int
    script_pubkey: bytes = b""


@dataclass
class Transaction:
    version: int
    inputs: List[TxInput]
    outputs: List[TxOutput]
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(tx_input.witness for tx_input in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness
        parts = [self.version.to_bytes(4, "little")]
        if with_witness:
            parts.append(b"\x00\x01")
        parts.append(ser_compact_size(len(self.inputs)))
        for tx_input in self.inputs:
            parts.append(bytes.fromhex(tx_input.prev_txid)[::-1])
            parts.append(tx_input.prev_vout.to_bytes(4, "little"))
            parts.append(ser_compact_size(len(tx_input.script_sig)) + tx_input.script_sig)
            parts.append(tx_input.sequence.to_bytes(4, "little"))
        parts.append(ser_compact_size(len(self.outputs)))
        for tx_output in self.outputs:
            parts.append(tx_output.value.to_bytes(8, "little"))
            parts.append(ser_compact_size(len(tx_output.script_pubkey)) + tx_output.script_pubkey)
        if with_witness:
            for tx_input in self.inputs:
                parts.append(ser_compact_size(len(tx_input.witness)))
                for item in tx_input.witness:
                    parts.append(ser_compact_size(len(item)) + item)
        parts.append(self.locktime.to_bytes(4, "little"))
        return b"".join(parts)

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Hash of the non-witness serialization, in display byte order."""

        return double_sha256(self.serialize(include_witness=False))[::-1].hex()

    def output_outpoints(self) -> List[str]:
        txid = self.txid
        return [f"{txid}:{index}" for index in range(len(self.outputs))]

    def input_outpoints(self) -> List[str]:
        return [tx_input.outpoint for tx_input in self.inputs]


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def read(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise TransactionParseError(
                f"Unexpected end of transaction at byte {self.offset} (wanted {size} bytes)"
            )
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def read_int(self, size: int) -> int:
        return int.from_bytes(self.read(size), "little")

    def read_compact_size(self) -> int:
        prefix = self.read_int(1)
        if prefix == 0xFD:
            return self.read_int(2)
        if prefix == 0xFE:
            return self.read_int(4)
        if prefix == 0xFF:
            return self.read_int(8)
        return prefix

    def read_var_bytes(self) -> bytes:
        return self.read(self.read_compact_size())

    def peek(self, size: int) -> bytes:
        return self.data[self.offset:self.offset + size]


def parse_transaction(raw_hex: str) -> Transaction:
    """Decode raw transaction hex (legacy or segwit serialization)."""

    if not isinstance(raw_hex, str) or not raw_hex:
        raise TransactionParseError("Transaction hex is empty")
    try:
        data = bytes.fromhex(raw_hex.strip())
    except ValueError as exc:
        raise TransactionParseError("Transaction is not valid hex") from exc

    reader = _Reader(data)
    version = reader.read_int(4)
    segwit = reader.peek(2) == b"\x00\x01"
    if segwit:
        reader.read(2)

    input_count = reader.read_compact_size()
    if input_count == 0:
        raise TransactionParseError("Transaction has no inputs")
    inputs: List[TxInput] = []
    for _ in range(input_count):
        prev_hash = reader.read(32)
        prev_vout = reader.read_int(4)
        script_sig = reader.read_var_bytes()
        sequence = reader.read_int(4)
        inputs.append(
            TxInput(
                prev_txid=prev_hash[::-1].hex(),
                prev_vout=prev_vout,
                script_sig=script_sig,
                sequence=sequence,
            )
        )

    output_count = reader.read_compact_size()
    outputs: List[TxOutput] = []
    for _ in range(output_count):
        value = reader.read_int(8)
        outputs.append(TxOutput(value=value, script_pubkey=reader.read_var_bytes()))

    if segwit:
        for tx_input in inputs:
            item_count = reader.read_compact_size()
            tx_input.witness = [reader.read_var_bytes() for _ in range(item_count)]

    locktime = reader.read_int(4)
    if reader.offset != len(data):
        raise TransactionParseError(
            f"Trailing data after transaction ({len(data) - reader.offset} bytes)"
        )
    return Transaction(version=version, inputs=inputs, outputs=outputs, locktime=locktime)


def compute_txid(raw_hex: str) -> str:
    return parse_transaction(raw_hex).txid
