"""
PSBT version 0 parsing and serialization.

Parsing is strict: duplicate keys, bad key lengths, PSBTv2-only fields,
unsigned transactions with scriptSigs or witnesses, missing previous outputs,
mismatched non-witness UTXOs, trailing bytes and negative fees are all
rejected. Unknown and proprietary pairs are preserved.
"""

from __future__ import annotations

import base64
import binascii

from loguru import logger

from mvcore.crypto import CryptoError, encode_varint, read_varint
from mvwallet.psbt.models import (
    PSBT_GLOBAL_UNSIGNED_TX,
    PSBT_GLOBAL_V2_ONLY,
    PSBT_GLOBAL_VERSION,
    PSBT_GLOBAL_XPUB,
    PSBT_IN_BIP32_DERIVATION,
    PSBT_IN_FINAL_SCRIPTSIG,
    PSBT_IN_FINAL_SCRIPTWITNESS,
    PSBT_IN_NON_WITNESS_UTXO,
    PSBT_IN_PARTIAL_SIG,
    PSBT_IN_REDEEM_SCRIPT,
    PSBT_IN_SIGHASH_TYPE,
    PSBT_IN_TAP_BIP32_DERIVATION,
    PSBT_IN_TAP_INTERNAL_KEY,
    PSBT_IN_TAP_KEY_SIG,
    PSBT_IN_TAP_MERKLE_ROOT,
    PSBT_IN_V2_ONLY,
    PSBT_IN_WITNESS_SCRIPT,
    PSBT_IN_WITNESS_UTXO,
    PSBT_MAGIC,
    PSBT_OUT_BIP32_DERIVATION,
    PSBT_OUT_REDEEM_SCRIPT,
    PSBT_OUT_TAP_BIP32_DERIVATION,
    PSBT_OUT_TAP_INTERNAL_KEY,
    PSBT_OUT_V2_ONLY,
    PSBT_OUT_WITNESS_SCRIPT,
    KeyOrigin,
    MalformedProposalError,
    Psbt,
    PsbtInput,
    PsbtOutput,
    TapKeyOrigin,
)
from mvwallet.psbt.transaction import (
    Transaction,
    TransactionError,
    TxOutput,
    deserialize_transaction,
)


def decode_psbt_text(data: bytes | str) -> bytes:
    """Accept raw PSBT bytes, base64 text or hex text."""
    if isinstance(data, bytes):
        if data.startswith(PSBT_MAGIC):
            return data
        data = data.decode("ascii", errors="replace")

    text = "".join(data.split())
    if text[:10].lower() == PSBT_MAGIC.hex():
        try:
            return bytes.fromhex(text)
        except ValueError as e:
            raise MalformedProposalError("Invalid hex PSBT") from e
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedProposalError("PSBT is neither base64 nor hex") from e
    if not raw.startswith(PSBT_MAGIC):
        raise MalformedProposalError("Missing PSBT magic bytes")
    return raw


def _read_map(data: bytes, offset: int) -> tuple[list[tuple[bytes, bytes]], int]:
    pairs: list[tuple[bytes, bytes]] = []
    seen: set[bytes] = set()
    try:
        while True:
            key_len, offset = read_varint(data, offset)
            if key_len == 0:
                return pairs, offset
            key = data[offset : offset + key_len]
            offset += key_len
            value_len, offset = read_varint(data, offset)
            value = data[offset : offset + value_len]
            offset += value_len
            if len(key) != key_len or len(value) != value_len:
                raise MalformedProposalError("Key-value pair extends past end of data")
            if key in seen:
                raise MalformedProposalError(f"Duplicate key of type {key[0]:#04x}")
            seen.add(key)
            pairs.append((key, value))
    except CryptoError as e:
        raise MalformedProposalError(f"Truncated key-value map: {e}") from e


def _expect_key_len(key: bytes, lengths: tuple[int, ...], what: str) -> None:
    if len(key) not in lengths:
        raise MalformedProposalError(f"Invalid key length {len(key)} for {what}")


def _parse_witness_stack(value: bytes) -> list[bytes]:
    try:
        count, offset = read_varint(value, 0)
        stack = []
        for _ in range(count):
            item_len, offset = read_varint(value, offset)
            stack.append(value[offset : offset + item_len])
            offset += item_len
    except CryptoError as e:
        raise MalformedProposalError(f"Invalid witness stack: {e}") from e
    if offset != len(value):
        raise MalformedProposalError("Witness stack length mismatch")
    return stack


def _parse_tap_origin(value: bytes) -> TapKeyOrigin:
    try:
        count, offset = read_varint(value, 0)
    except CryptoError as e:
        raise MalformedProposalError(f"Invalid taproot derivation: {e}") from e
    end = offset + 32 * count
    if end > len(value):
        raise MalformedProposalError("Taproot leaf hashes extend past value")
    leaves = [value[i : i + 32] for i in range(offset, end, 32)]
    return TapKeyOrigin(leaves, KeyOrigin.parse(value[end:]))


def _parse_global(pairs: list[tuple[bytes, bytes]]) -> tuple[Transaction, dict, int | None, dict]:
    tx = None
    xpubs: dict[bytes, KeyOrigin] = {}
    version = None
    unknown: dict[bytes, bytes] = {}

    for key, value in pairs:
        key_type = key[0]
        if key_type == PSBT_GLOBAL_UNSIGNED_TX:
            _expect_key_len(key, (1,), "unsigned transaction")
            try:
                tx = deserialize_transaction(value)
            except TransactionError as e:
                raise MalformedProposalError(f"Invalid unsigned transaction: {e}") from e
            if any(inp.script_sig for inp in tx.inputs) or tx.has_witness:
                raise MalformedProposalError("Unsigned transaction must not carry signatures")
        elif key_type == PSBT_GLOBAL_XPUB:
            _expect_key_len(key, (79,), "global xpub")
            xpubs[key[1:]] = KeyOrigin.parse(value)
        elif key_type == PSBT_GLOBAL_VERSION:
            _expect_key_len(key, (1,), "version")
            if len(value) != 4:
                raise MalformedProposalError("Invalid PSBT version value")
            version = int.from_bytes(value, "little")
            if version != 0:
                raise MalformedProposalError(f"Unsupported PSBT version {version}")
        elif key_type in PSBT_GLOBAL_V2_ONLY:
            raise MalformedProposalError(f"PSBTv2 global field {key_type:#04x} in v0 proposal")
        else:
            unknown[key] = value

    if tx is None:
        raise MalformedProposalError("Missing unsigned transaction")
    return tx, xpubs, version, unknown


def _parse_input(pairs: list[tuple[bytes, bytes]]) -> PsbtInput:
    inp = PsbtInput()
    for key, value in pairs:
        key_type = key[0]
        if key_type == PSBT_IN_NON_WITNESS_UTXO:
            _expect_key_len(key, (1,), "non-witness UTXO")
            try:
                inp.non_witness_utxo = deserialize_transaction(value)
            except TransactionError as e:
                raise MalformedProposalError(f"Invalid non-witness UTXO: {e}") from e
        elif key_type == PSBT_IN_WITNESS_UTXO:
            _expect_key_len(key, (1,), "witness UTXO")
            try:
                inp.witness_utxo = TxOutput.parse(value)
            except TransactionError as e:
                raise MalformedProposalError(f"Invalid witness UTXO: {e}") from e
        elif key_type == PSBT_IN_PARTIAL_SIG:
            _expect_key_len(key, (34, 66), "partial signature")
            inp.partial_sigs[key[1:]] = value
        elif key_type == PSBT_IN_SIGHASH_TYPE:
            _expect_key_len(key, (1,), "sighash type")
            if len(value) != 4:
                raise MalformedProposalError("Invalid sighash type value")
            inp.sighash_type = int.from_bytes(value, "little")
        elif key_type == PSBT_IN_REDEEM_SCRIPT:
            _expect_key_len(key, (1,), "redeem script")
            inp.redeem_script = value
        elif key_type == PSBT_IN_WITNESS_SCRIPT:
            _expect_key_len(key, (1,), "witness script")
            inp.witness_script = value
        elif key_type == PSBT_IN_BIP32_DERIVATION:
            _expect_key_len(key, (34, 66), "BIP32 derivation")
            inp.bip32_derivations[key[1:]] = KeyOrigin.parse(value)
        elif key_type == PSBT_IN_FINAL_SCRIPTSIG:
            _expect_key_len(key, (1,), "final scriptSig")
            inp.final_script_sig = value
        elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
            _expect_key_len(key, (1,), "final witness")
            inp.final_script_witness = _parse_witness_stack(value)
        elif key_type == PSBT_IN_TAP_KEY_SIG:
            _expect_key_len(key, (1,), "taproot key signature")
            if len(value) not in (64, 65):
                raise MalformedProposalError("Invalid taproot signature length")
            inp.tap_key_sig = value
        elif key_type == PSBT_IN_TAP_BIP32_DERIVATION:
            _expect_key_len(key, (33,), "taproot BIP32 derivation")
            inp.tap_bip32_derivations[key[1:]] = _parse_tap_origin(value)
        elif key_type == PSBT_IN_TAP_INTERNAL_KEY:
            _expect_key_len(key, (1,), "taproot internal key")
            if len(value) != 32:
                raise MalformedProposalError("Invalid taproot internal key length")
            inp.tap_internal_key = value
        elif key_type == PSBT_IN_TAP_MERKLE_ROOT:
            _expect_key_len(key, (1,), "taproot merkle root")
            if len(value) != 32:
                raise MalformedProposalError("Invalid taproot merkle root length")
            inp.tap_merkle_root = value
        elif key_type in PSBT_IN_V2_ONLY:
            raise MalformedProposalError(f"PSBTv2 input field {key_type:#04x} in v0 proposal")
        else:
            inp.unknown[key] = value
    return inp


def _parse_output(pairs: list[tuple[bytes, bytes]]) -> PsbtOutput:
    out = PsbtOutput()
    for key, value in pairs:
        key_type = key[0]
        if key_type == PSBT_OUT_REDEEM_SCRIPT:
            _expect_key_len(key, (1,), "output redeem script")
            out.redeem_script = value
        elif key_type == PSBT_OUT_WITNESS_SCRIPT:
            _expect_key_len(key, (1,), "output witness script")
            out.witness_script = value
        elif key_type == PSBT_OUT_BIP32_DERIVATION:
            _expect_key_len(key, (34, 66), "output BIP32 derivation")
            out.bip32_derivations[key[1:]] = KeyOrigin.parse(value)
        elif key_type == PSBT_OUT_TAP_INTERNAL_KEY:
            _expect_key_len(key, (1,), "output taproot internal key")
            if len(value) != 32:
                raise MalformedProposalError("Invalid taproot internal key length")
            out.tap_internal_key = value
        elif key_type == PSBT_OUT_TAP_BIP32_DERIVATION:
            _expect_key_len(key, (33,), "output taproot BIP32 derivation")
            out.tap_bip32_derivations[key[1:]] = _parse_tap_origin(value)
        elif key_type in PSBT_OUT_V2_ONLY:
            raise MalformedProposalError(f"PSBTv2 output field {key_type:#04x} in v0 proposal")
        else:
            out.unknown[key] = value
    return out


def parse_psbt(data: bytes | str) -> Psbt:
    """
    Parse a PSBT from bytes, base64 or hex.

    Raises:
        MalformedProposalError: On any structural problem or if inputs do not
            cover outputs
    """
    raw = decode_psbt_text(data)
    if not raw.startswith(PSBT_MAGIC):
        raise MalformedProposalError("Missing PSBT magic bytes")

    offset = len(PSBT_MAGIC)
    global_pairs, offset = _read_map(raw, offset)
    tx, xpubs, version, unknown = _parse_global(global_pairs)

    if not tx.inputs:
        raise MalformedProposalError("Proposal has no inputs")

    inputs = []
    for index, tx_in in enumerate(tx.inputs):
        pairs, offset = _read_map(raw, offset)
        psbt_in = _parse_input(pairs)
        prev_tx = psbt_in.non_witness_utxo
        if prev_tx is not None and prev_tx.txid != tx_in.txid:
            raise MalformedProposalError(f"Input {index} non-witness UTXO does not match prevout")
        if psbt_in.spent_output(tx_in.vout) is None:
            raise MalformedProposalError(f"Input {index} has no previous output data")
        inputs.append(psbt_in)

    outputs = []
    for _ in tx.outputs:
        pairs, offset = _read_map(raw, offset)
        outputs.append(_parse_output(pairs))

    if offset != len(raw):
        raise MalformedProposalError("Trailing bytes after PSBT maps")

    psbt = Psbt(tx, inputs, outputs, xpubs, version, unknown)

    fee = psbt.fee
    if fee < 0:
        raise MalformedProposalError(
            f"Outputs ({psbt.output_total} sat) exceed inputs ({psbt.input_total} sat)"
        )

    logger.debug(f"Parsed PSBT with {len(inputs)} inputs, {len(outputs)} outputs, fee {fee}")
    return psbt


def _write_pair(key: bytes, value: bytes) -> bytes:
    return encode_varint(len(key)) + key + encode_varint(len(value)) + value


def _tap_origin_bytes(tap: TapKeyOrigin) -> bytes:
    return encode_varint(len(tap.leaf_hashes)) + b"".join(tap.leaf_hashes) + tap.origin.serialize()


def _witness_bytes(stack: list[bytes]) -> bytes:
    return encode_varint(len(stack)) + b"".join(encode_varint(len(i)) + i for i in stack)


def serialize_psbt(psbt: Psbt) -> bytes:
    result = PSBT_MAGIC
    unsigned = psbt.tx.serialize(include_witness=False)
    result += _write_pair(bytes([PSBT_GLOBAL_UNSIGNED_TX]), unsigned)
    for xpub, origin in psbt.xpubs.items():
        result += _write_pair(bytes([PSBT_GLOBAL_XPUB]) + xpub, origin.serialize())
    if psbt.version is not None:
        result += _write_pair(bytes([PSBT_GLOBAL_VERSION]), psbt.version.to_bytes(4, "little"))
    for key, value in psbt.unknown.items():
        result += _write_pair(key, value)
    result += b"\x00"

    for inp in psbt.inputs:
        if inp.non_witness_utxo is not None:
            result += _write_pair(
                bytes([PSBT_IN_NON_WITNESS_UTXO]), inp.non_witness_utxo.serialize()
            )
        if inp.witness_utxo is not None:
            result += _write_pair(bytes([PSBT_IN_WITNESS_UTXO]), inp.witness_utxo.serialize())
        for pubkey, sig in inp.partial_sigs.items():
            result += _write_pair(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
        if inp.sighash_type is not None:
            result += _write_pair(
                bytes([PSBT_IN_SIGHASH_TYPE]), inp.sighash_type.to_bytes(4, "little")
            )
        if inp.redeem_script is not None:
            result += _write_pair(bytes([PSBT_IN_REDEEM_SCRIPT]), inp.redeem_script)
        if inp.witness_script is not None:
            result += _write_pair(bytes([PSBT_IN_WITNESS_SCRIPT]), inp.witness_script)
        for pubkey, origin in inp.bip32_derivations.items():
            result += _write_pair(bytes([PSBT_IN_BIP32_DERIVATION]) + pubkey, origin.serialize())
        if inp.final_script_sig is not None:
            result += _write_pair(bytes([PSBT_IN_FINAL_SCRIPTSIG]), inp.final_script_sig)
        if inp.final_script_witness is not None:
            result += _write_pair(
                bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), _witness_bytes(inp.final_script_witness)
            )
        if inp.tap_key_sig is not None:
            result += _write_pair(bytes([PSBT_IN_TAP_KEY_SIG]), inp.tap_key_sig)
        for xonly, tap in inp.tap_bip32_derivations.items():
            result += _write_pair(
                bytes([PSBT_IN_TAP_BIP32_DERIVATION]) + xonly, _tap_origin_bytes(tap)
            )
        if inp.tap_internal_key is not None:
            result += _write_pair(bytes([PSBT_IN_TAP_INTERNAL_KEY]), inp.tap_internal_key)
        if inp.tap_merkle_root is not None:
            result += _write_pair(bytes([PSBT_IN_TAP_MERKLE_ROOT]), inp.tap_merkle_root)
        for key, value in inp.unknown.items():
            result += _write_pair(key, value)
        result += b"\x00"

    for out in psbt.outputs:
        if out.redeem_script is not None:
            result += _write_pair(bytes([PSBT_OUT_REDEEM_SCRIPT]), out.redeem_script)
        if out.witness_script is not None:
            result += _write_pair(bytes([PSBT_OUT_WITNESS_SCRIPT]), out.witness_script)
        for pubkey, origin in out.bip32_derivations.items():
            result += _write_pair(bytes([PSBT_OUT_BIP32_DERIVATION]) + pubkey, origin.serialize())
        if out.tap_internal_key is not None:
            result += _write_pair(bytes([PSBT_OUT_TAP_INTERNAL_KEY]), out.tap_internal_key)
        for xonly, tap in out.tap_bip32_derivations.items():
            result += _write_pair(
                bytes([PSBT_OUT_TAP_BIP32_DERIVATION]) + xonly, _tap_origin_bytes(tap)
            )
        for key, value in out.unknown.items():
            result += _write_pair(key, value)
        result += b"\x00"

    return result


def psbt_to_base64(psbt: Psbt) -> str:
    return base64.b64encode(serialize_psbt(psbt)).decode("ascii")
