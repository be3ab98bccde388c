"""
Signature hashes for legacy, segwit v0 (BIP143) and taproot key-path (BIP341) inputs.
"""

from __future__ import annotations

from mvcore.crypto import encode_varint, hash256, sha256, tagged_hash
from mvwallet.psbt.transaction import Transaction, TransactionError, TxOutput

SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

VALID_ECDSA_SIGHASHES = {0x01, 0x02, 0x03, 0x81, 0x82, 0x83}
VALID_TAPROOT_SIGHASHES = {0x00} | VALID_ECDSA_SIGHASHES


def _base_type(sighash_type: int) -> int:
    return sighash_type & 0x1F


def legacy_sighash(
    tx: Transaction, input_index: int, script_code: bytes, sighash_type: int
) -> bytes:
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")

    base = _base_type(sighash_type)
    if base == SIGHASH_SINGLE and input_index >= len(tx.outputs):
        # Historical behavior: sign the value one
        return (1).to_bytes(32, "little")

    tx_copy = tx.copy()
    tx_copy.witnesses = []
    for i, inp in enumerate(tx_copy.inputs):
        inp.script_sig = script_code if i == input_index else b""

    if base == SIGHASH_NONE:
        tx_copy.outputs = []
    elif base == SIGHASH_SINGLE:
        tx_copy.outputs = [
            TxOutput(0xFFFFFFFFFFFFFFFF, b"") for _ in range(input_index)
        ] + [tx_copy.outputs[input_index]]

    if base in (SIGHASH_NONE, SIGHASH_SINGLE):
        for i, inp in enumerate(tx_copy.inputs):
            if i != input_index:
                inp.sequence = 0

    if sighash_type & SIGHASH_ANYONECANPAY:
        tx_copy.inputs = [tx_copy.inputs[input_index]]

    preimage = tx_copy.serialize(include_witness=False) + sighash_type.to_bytes(4, "little")
    return hash256(preimage)


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int,
) -> bytes:
    """BIP143 signature hash for segwit v0 inputs."""
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")

    base = _base_type(sighash_type)
    anyone_can_pay = bool(sighash_type & SIGHASH_ANYONECANPAY)
    zero = b"\x00" * 32

    hash_prevouts = zero
    if not anyone_can_pay:
        hash_prevouts = hash256(b"".join(inp.outpoint for inp in tx.inputs))

    hash_sequence = zero
    if not anyone_can_pay and base not in (SIGHASH_SINGLE, SIGHASH_NONE):
        hash_sequence = hash256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))

    hash_outputs = zero
    if base not in (SIGHASH_SINGLE, SIGHASH_NONE):
        hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))
    elif base == SIGHASH_SINGLE and input_index < len(tx.outputs):
        hash_outputs = hash256(tx.outputs[input_index].serialize())

    target_input = tx.inputs[input_index]

    preimage = (
        tx.version.to_bytes(4, "little")
        + hash_prevouts
        + hash_sequence
        + target_input.outpoint
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + target_input.sequence.to_bytes(4, "little")
        + hash_outputs
        + tx.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )

    return hash256(preimage)


def compute_sighash_taproot(
    tx: Transaction,
    input_index: int,
    spent_outputs: list[TxOutput],
    sighash_type: int = SIGHASH_DEFAULT,
) -> bytes:
    """BIP341 key-path signature hash (no annex, no script path)."""
    if sighash_type not in VALID_TAPROOT_SIGHASHES:
        raise TransactionError(f"Invalid taproot sighash type: {sighash_type:#04x}")
    if len(spent_outputs) != len(tx.inputs):
        raise TransactionError("Taproot sighash needs every spent output")
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")

    base = SIGHASH_ALL if sighash_type == SIGHASH_DEFAULT else _base_type(sighash_type)
    anyone_can_pay = bool(sighash_type & SIGHASH_ANYONECANPAY)

    msg = bytes([sighash_type])
    msg += tx.version.to_bytes(4, "little")
    msg += tx.locktime.to_bytes(4, "little")

    if not anyone_can_pay:
        msg += sha256(b"".join(inp.outpoint for inp in tx.inputs))
        msg += sha256(b"".join(out.value.to_bytes(8, "little") for out in spent_outputs))
        msg += sha256(
            b"".join(encode_varint(len(out.script)) + out.script for out in spent_outputs)
        )
        msg += sha256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))

    if base not in (SIGHASH_NONE, SIGHASH_SINGLE):
        msg += sha256(b"".join(out.serialize() for out in tx.outputs))

    # spend_type: no extension, no annex
    msg += b"\x00"

    if anyone_can_pay:
        target_input = tx.inputs[input_index]
        spent = spent_outputs[input_index]
        msg += target_input.outpoint
        msg += spent.serialize()
        msg += target_input.sequence.to_bytes(4, "little")
    else:
        msg += input_index.to_bytes(4, "little")

    if base == SIGHASH_SINGLE:
        if input_index >= len(tx.outputs):
            raise TransactionError("SIGHASH_SINGLE without a matching output")
        msg += sha256(tx.outputs[input_index].serialize())

    return tagged_hash("TapSighash", b"\x00" + msg)
