"""
Output script construction and recognition.
"""

from __future__ import annotations

from mvcore.crypto import CryptoError, hash160, push_data, sha256, taproot_output_key
from mvcore.models import OutputKind

OP_0 = 0x00
OP_1 = 0x51
OP_16 = 0x60
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKMULTISIG = 0xAE


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    return bytes([OP_HASH160, 0x14]) + script_hash + bytes([OP_EQUAL])


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    """P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    return bytes([OP_0, 0x14]) + pubkey_hash


def p2wsh_script(witness_script: bytes) -> bytes:
    """P2WSH scriptPubKey (OP_0 <32-byte-hash>)"""
    return bytes([OP_0, 0x20]) + sha256(witness_script)


def p2tr_script(output_key: bytes) -> bytes:
    return bytes([OP_1, 0x20]) + output_key


def p2sh_wrap(redeem_script: bytes) -> bytes:
    return p2sh_script(hash160(redeem_script))


def script_for_pubkey(pubkey: bytes, kind: str) -> bytes:
    """
    scriptPubKey paying a single compressed public key.

    kind is one of "p2pkh", "p2sh-p2wpkh", "p2wpkh" or "p2tr" (BIP86 key path).
    """
    if kind == "p2pkh":
        return p2pkh_script(hash160(pubkey))
    if kind == "p2sh-p2wpkh":
        return p2sh_wrap(p2wpkh_script(hash160(pubkey)))
    if kind == "p2wpkh":
        return p2wpkh_script(hash160(pubkey))
    if kind == "p2tr":
        return p2tr_script(taproot_output_key(pubkey))
    raise ValueError(f"Unsupported single-key script type: {kind}")


def p2wpkh_script_code(pubkey: bytes) -> bytes:
    """BIP143 scriptCode for P2WPKH: the equivalent P2PKH script."""
    return p2pkh_script(hash160(pubkey))


def small_int_opcode(n: int) -> int:
    if n == 0:
        return OP_0
    if 1 <= n <= 16:
        return OP_1 + n - 1
    raise ValueError(f"Not a small integer: {n}")


def multisig_script(threshold: int, pubkeys: list[bytes], sort: bool = True) -> bytes:
    """
    OP_m <pubkey>... OP_n OP_CHECKMULTISIG

    Keys are sorted lexicographically (BIP67) unless sort is False.
    """
    if not 1 <= threshold <= len(pubkeys) <= 15:
        raise ValueError(f"Invalid multisig {threshold}-of-{len(pubkeys)}")
    keys = sorted(pubkeys) if sort else list(pubkeys)
    script = bytes([small_int_opcode(threshold)])
    for key in keys:
        script += push_data(key)
    return script + bytes([small_int_opcode(len(keys)), OP_CHECKMULTISIG])


def parse_multisig_script(script: bytes) -> tuple[int, list[bytes]] | None:
    """Return (threshold, pubkeys in script order) for a bare multisig script."""
    if len(script) < 3 or script[-1] != OP_CHECKMULTISIG:
        return None
    if not OP_1 <= script[0] <= OP_16 or not OP_1 <= script[-2] <= OP_16:
        return None

    threshold = script[0] - OP_1 + 1
    total = script[-2] - OP_1 + 1
    keys = []
    offset = 1
    while offset < len(script) - 2:
        length = script[offset]
        if length not in (33, 65):
            return None
        keys.append(script[offset + 1 : offset + 1 + length])
        offset += 1 + length

    if offset != len(script) - 2 or len(keys) != total or threshold > total:
        return None
    return threshold, keys


def classify_script(script: bytes) -> OutputKind:
    if (
        len(script) == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, 0x14])
        and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    ):
        return OutputKind.P2PKH
    if len(script) == 23 and script[:2] == bytes([OP_HASH160, 0x14]) and script[22] == OP_EQUAL:
        return OutputKind.P2SH
    if len(script) == 22 and script[:2] == bytes([OP_0, 0x14]):
        return OutputKind.P2WPKH
    if len(script) == 34 and script[:2] == bytes([OP_0, 0x20]):
        return OutputKind.P2WSH
    if len(script) == 34 and script[:2] == bytes([OP_1, 0x20]):
        return OutputKind.P2TR
    return OutputKind.UNKNOWN


def witness_program(script: bytes) -> tuple[int, bytes] | None:
    """(version, program) for a segwit scriptPubKey, else None."""
    if len(script) < 4 or len(script) > 42:
        return None
    if script[0] != OP_0 and not OP_1 <= script[0] <= OP_16:
        return None
    if script[1] != len(script) - 2:
        return None
    version = 0 if script[0] == OP_0 else script[0] - OP_1 + 1
    return version, script[2:]


def read_pushes(script: bytes) -> list[bytes]:
    """Split a push-only script (e.g. a scriptSig) into its data elements."""
    items = []
    offset = 0
    while offset < len(script):
        opcode = script[offset]
        offset += 1
        if opcode == OP_0:
            items.append(b"")
            continue
        if opcode < 0x4C:
            length = opcode
        elif opcode == 0x4C:
            length = script[offset]
            offset += 1
        elif opcode == 0x4D:
            length = int.from_bytes(script[offset : offset + 2], "little")
            offset += 2
        elif opcode == 0x4E:
            length = int.from_bytes(script[offset : offset + 4], "little")
            offset += 4
        else:
            raise CryptoError(f"Non-push opcode in script: {opcode:#04x}")
        if offset + length > len(script):
            raise CryptoError("Push extends past end of script")
        items.append(script[offset : offset + length])
        offset += length
    return items
