"""
PSBT finalization and extraction.

Finalization is all-or-nothing: every input is checked first, and if any
input lacks the signatures its script needs, InsufficientSignaturesError is
raised and the PSBT is left untouched, partial signatures included.
"""

from __future__ import annotations

from dataclasses import dataclass

from coincurve import PublicKey
from coincurve.keys import PublicKeyXOnly
from loguru import logger

from mvcore.crypto import CryptoError, hash160, push_data
from mvcore.models import OutputKind
from mvwallet.psbt.models import InsufficientSignaturesError, Psbt, PsbtInput
from mvwallet.psbt.sighash import (
    SIGHASH_DEFAULT,
    compute_sighash_segwit,
    compute_sighash_taproot,
    legacy_sighash,
)
from mvwallet.psbt.signer import spend_info
from mvwallet.psbt.transaction import Transaction, TransactionError, TxOutput
from mvwallet.wallet.script import (
    classify_script,
    p2wpkh_script,
    p2wpkh_script_code,
    p2wsh_script,
    parse_multisig_script,
    read_pushes,
)


@dataclass
class FinalizedTransaction:
    psbt: Psbt
    tx: Transaction

    @property
    def raw(self) -> bytes:
        return self.tx.serialize()

    @property
    def hex(self) -> str:
        return self.raw.hex()

    @property
    def txid(self) -> str:
        return self.tx.txid


def _ordered_multisig_sigs(
    psbt_in: PsbtInput, pubkeys: list[bytes], threshold: int
) -> list[bytes]:
    """Signatures in script key order, exactly threshold of them."""
    sigs = [psbt_in.partial_sigs[k] for k in pubkeys if k in psbt_in.partial_sigs]
    return sigs[:threshold]


def final_input_data(
    psbt_in: PsbtInput, utxo: TxOutput, index: int
) -> tuple[bytes, list[bytes]]:
    """
    Build (scriptSig, witness) for one input.

    Raises:
        InsufficientSignaturesError: If the input's threshold is not met
    """
    if psbt_in.is_finalized:
        return psbt_in.final_script_sig or b"", list(psbt_in.final_script_witness or [])

    info = spend_info(psbt_in, utxo)
    if info is None:
        raise InsufficientSignaturesError(f"Input {index}: unsupported spend template")

    if info.kind == "p2tr":
        if psbt_in.tap_key_sig is None:
            raise InsufficientSignaturesError(f"Input {index}: missing taproot signature")
        return b"", [psbt_in.tap_key_sig]

    if info.kind in ("p2pkh", "p2wpkh", "p2sh-p2wpkh"):
        for pubkey, sig in psbt_in.partial_sigs.items():
            if info.kind == "p2pkh" and utxo.script[3:23] == hash160(pubkey):
                return push_data(sig) + push_data(pubkey), []
            if info.kind == "p2wpkh" and utxo.script[2:] == hash160(pubkey):
                return b"", [sig, pubkey]
            nested = p2wpkh_script(hash160(pubkey))
            if info.kind == "p2sh-p2wpkh" and psbt_in.redeem_script == nested:
                return push_data(psbt_in.redeem_script), [sig, pubkey]
        raise InsufficientSignaturesError(f"Input {index}: missing signature")

    sigs = _ordered_multisig_sigs(psbt_in, info.pubkeys, info.threshold)
    if len(sigs) < info.threshold:
        raise InsufficientSignaturesError(
            f"Input {index}: {len(sigs)} of {info.threshold} required signatures"
        )

    if info.kind == "p2wsh":
        return b"", [b""] + sigs + [info.script_code]
    if info.kind == "p2sh-p2wsh":
        return push_data(p2wsh_script(info.script_code)), [b""] + sigs + [info.script_code]

    # bare multisig behind P2SH; the leading OP_0 feeds CHECKMULTISIG's extra pop
    script_sig = b"\x00" + b"".join(push_data(s) for s in sigs) + push_data(info.script_code)
    return script_sig, []


def finalize_psbt(psbt: Psbt) -> FinalizedTransaction:
    """
    Finalize every input and extract the network transaction.

    Finalized inputs keep only their UTXO, final scriptSig/witness and unknown
    fields.
    """
    spent_outputs = psbt.spent_outputs()

    finals = [
        final_input_data(psbt_in, spent_outputs[index], index)
        for index, psbt_in in enumerate(psbt.inputs)
    ]

    for psbt_in, (script_sig, witness) in zip(psbt.inputs, finals):
        psbt_in.final_script_sig = script_sig or None
        psbt_in.final_script_witness = witness or None
        psbt_in.partial_sigs = {}
        psbt_in.sighash_type = None
        psbt_in.redeem_script = None
        psbt_in.witness_script = None
        psbt_in.bip32_derivations = {}
        psbt_in.tap_key_sig = None
        psbt_in.tap_bip32_derivations = {}
        psbt_in.tap_internal_key = None
        psbt_in.tap_merkle_root = None

    tx = extract_transaction(psbt)
    logger.info(f"Finalized transaction {tx.txid} with {len(tx.inputs)} inputs")
    return FinalizedTransaction(psbt, tx)


def extract_transaction(psbt: Psbt) -> Transaction:
    if not psbt.is_finalized:
        raise InsufficientSignaturesError("Not every input is finalized")
    tx = psbt.tx.copy()
    tx.witnesses = []
    for tx_in, psbt_in in zip(tx.inputs, psbt.inputs):
        tx_in.script_sig = psbt_in.final_script_sig or b""
        tx.witnesses.append(list(psbt_in.final_script_witness or []))
    return tx


def _check_ecdsa(sig: bytes, pubkey: bytes, digest_for) -> bool:
    if len(sig) < 9:
        return False
    try:
        return PublicKey(pubkey).verify(sig[:-1], digest_for(sig[-1]), hasher=None)
    except ValueError:
        return False


def verify_input(tx: Transaction, index: int, spent_outputs: list[TxOutput]) -> bool:
    """
    Check that a finalized input satisfies its spent output.

    Covers the templates the signer produces: P2PKH, P2WPKH, P2SH-P2WPKH,
    P2WSH/P2SH-P2WSH/P2SH multisig and P2TR key path.
    """
    utxo = spent_outputs[index]
    witness = tx.witnesses[index] if index < len(tx.witnesses) else []
    kind = classify_script(utxo.script)

    try:
        pushes = read_pushes(tx.inputs[index].script_sig)
    except CryptoError:
        return False

    def segwit_digest(script_code):
        return lambda hashtype: compute_sighash_segwit(
            tx, index, script_code, utxo.value, hashtype
        )

    def legacy_digest(script_code):
        return lambda hashtype: legacy_sighash(tx, index, script_code, hashtype)

    def check_multisig(script: bytes, sigs: list[bytes], digest_for) -> bool:
        parsed = parse_multisig_script(script)
        if parsed is None:
            return False
        threshold, pubkeys = parsed
        if len(sigs) != threshold:
            return False
        key_pos = 0
        for sig in sigs:
            while key_pos < len(pubkeys) and not _check_ecdsa(sig, pubkeys[key_pos], digest_for):
                key_pos += 1
            if key_pos == len(pubkeys):
                return False
            key_pos += 1
        return True

    try:
        if kind == OutputKind.P2TR:
            if len(witness) != 1 or len(witness[0]) not in (64, 65):
                return False
            sig = witness[0]
            hashtype = sig[64] if len(sig) == 65 else SIGHASH_DEFAULT
            digest = compute_sighash_taproot(tx, index, spent_outputs, hashtype)
            return PublicKeyXOnly(utxo.script[2:]).verify(sig[:64], digest)

        if kind == OutputKind.P2WPKH:
            if len(witness) != 2 or hash160(witness[1]) != utxo.script[2:]:
                return False
            script_code = p2wpkh_script_code(witness[1])
            return _check_ecdsa(witness[0], witness[1], segwit_digest(script_code))

        if kind == OutputKind.P2WSH:
            if not witness or p2wsh_script(witness[-1]) != utxo.script or witness[0] != b"":
                return False
            return check_multisig(witness[-1], witness[1:-1], segwit_digest(witness[-1]))

        if kind == OutputKind.P2PKH:
            if len(pushes) != 2 or hash160(pushes[1]) != utxo.script[3:23]:
                return False
            return _check_ecdsa(pushes[0], pushes[1], legacy_digest(utxo.script))

        if kind == OutputKind.P2SH:
            if not pushes or hash160(pushes[-1]) != utxo.script[2:22]:
                return False
            redeem = pushes[-1]
            redeem_kind = classify_script(redeem)
            if redeem_kind == OutputKind.P2WPKH:
                if len(witness) != 2 or hash160(witness[1]) != redeem[2:]:
                    return False
                return _check_ecdsa(
                    witness[0], witness[1], segwit_digest(p2wpkh_script_code(witness[1]))
                )
            if redeem_kind == OutputKind.P2WSH:
                if not witness or p2wsh_script(witness[-1]) != redeem or witness[0] != b"":
                    return False
                return check_multisig(witness[-1], witness[1:-1], segwit_digest(witness[-1]))
            if pushes[0] != b"":
                return False
            return check_multisig(redeem, pushes[1:-1], legacy_digest(redeem))
    except TransactionError:
        return False

    return False
