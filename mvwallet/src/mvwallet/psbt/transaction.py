"""
Bitcoin transaction serialization.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from mvcore.crypto import CryptoError, encode_varint, hash256, read_varint


class TransactionError(Exception):
    pass


@dataclass
class TxInput:
    txid_le: bytes
    vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF

    @property
    def txid(self) -> str:
        return self.txid_le[::-1].hex()

    @property
    def outpoint(self) -> bytes:
        return self.txid_le + self.vout.to_bytes(4, "little")

    def serialize(self) -> bytes:
        return (
            self.outpoint
            + encode_varint(len(self.script_sig))
            + self.script_sig
            + self.sequence.to_bytes(4, "little")
        )


@dataclass
class TxOutput:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return self.value.to_bytes(8, "little") + encode_varint(len(self.script)) + self.script

    @classmethod
    def parse(cls, data: bytes) -> TxOutput:
        if len(data) < 9:
            raise TransactionError("Output record too short")
        value = int.from_bytes(data[:8], "little")
        try:
            script_len, offset = read_varint(data, 8)
        except CryptoError as e:
            raise TransactionError(str(e)) from e
        if offset + script_len != len(data):
            raise TransactionError("Output record length mismatch")
        return cls(value, data[offset:])


@dataclass
class Transaction:
    version: int
    inputs: list[TxInput]
    outputs: list[TxOutput]
    locktime: int
    witnesses: list[list[bytes]] = field(default_factory=list)

    @property
    def has_witness(self) -> bool:
        return any(self.witnesses)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness
        result = self.version.to_bytes(4, "little")
        if with_witness:
            result += b"\x00\x01"
        result += encode_varint(len(self.inputs))
        result += b"".join(inp.serialize() for inp in self.inputs)
        result += encode_varint(len(self.outputs))
        result += b"".join(out.serialize() for out in self.outputs)
        if with_witness:
            for i in range(len(self.inputs)):
                stack = self.witnesses[i] if i < len(self.witnesses) else []
                result += encode_varint(len(stack))
                for item in stack:
                    result += encode_varint(len(item)) + item
        result += self.locktime.to_bytes(4, "little")
        return result

    @property
    def txid(self) -> str:
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def wtxid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    def copy(self) -> Transaction:
        return Transaction(
            self.version,
            [TxInput(i.txid_le, i.vout, i.script_sig, i.sequence) for i in self.inputs],
            [TxOutput(o.value, o.script) for o in self.outputs],
            self.locktime,
            [list(w) for w in self.witnesses],
        )


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    """Parse a network-serialized transaction; trailing bytes are an error."""
    try:
        offset = 0
        version = int.from_bytes(tx_bytes[offset : offset + 4], "little")
        offset += 4

        marker_flag = False
        if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            marker_flag = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxInput] = []

        for _ in range(input_count):
            txid_le = tx_bytes[offset : offset + 32]
            offset += 32

            vout = int.from_bytes(tx_bytes[offset : offset + 4], "little")
            offset += 4

            script_len, offset = read_varint(tx_bytes, offset)
            script = tx_bytes[offset : offset + script_len]
            offset += script_len

            sequence = int.from_bytes(tx_bytes[offset : offset + 4], "little")
            offset += 4

            inputs.append(TxInput(txid_le, vout, script, sequence))

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOutput] = []

        for _ in range(output_count):
            value = int.from_bytes(tx_bytes[offset : offset + 8], "little")
            offset += 8

            script_len, offset = read_varint(tx_bytes, offset)
            script = tx_bytes[offset : offset + script_len]
            offset += script_len

            outputs.append(TxOutput(value, script))

        witnesses: list[list[bytes]] = []
        if marker_flag:
            for _ in range(input_count):
                stack_count, offset = read_varint(tx_bytes, offset)
                stack = []
                for _ in range(stack_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    stack.append(tx_bytes[offset : offset + item_len])
                    offset += item_len
                witnesses.append(stack)

        locktime = int.from_bytes(tx_bytes[offset : offset + 4], "little")
        offset += 4
    except (IndexError, CryptoError) as e:
        raise TransactionError(f"Failed to parse transaction: {e}") from e

    if offset != len(tx_bytes):
        raise TransactionError("Trailing bytes after transaction")

    return Transaction(version, inputs, outputs, locktime, witnesses)
