"""
PSBT signing.

For every input the spending key is resolved in three stages:

1. declared: BIP32/taproot derivations whose fingerprint is ours, derived at
   the exact declared path;
2. alternate: when the declared path does not reproduce the declared key,
   the same child suffix under other single-sig purposes and BIP48 script
   types, declared account first;
3. scan: ownership lookup of the spent script within the scan window.

With the scan_first order, stages 2 and 3 are swapped. An input no key
resolves for is left unsigned, which is normal for multisig partial signing.
Inputs already signed by a resolved key are not touched again.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

from coincurve import PrivateKey
from loguru import logger

from mvcore.constants import (
    ALTERNATE_BIP48_SCRIPT_TYPES,
    ALTERNATE_PURPOSES,
    HARDENED,
    PURPOSE_MULTISIG,
)
from mvcore.crypto import hash160, taproot_output_key, taproot_tweak_private_key, xonly
from mvcore.models import NetworkType, OutputKind
from mvwallet.psbt.models import MalformedProposalError, Psbt, PsbtInput
from mvwallet.psbt.sighash import (
    SIGHASH_ALL,
    SIGHASH_DEFAULT,
    VALID_ECDSA_SIGHASHES,
    VALID_TAPROOT_SIGHASHES,
    compute_sighash_segwit,
    compute_sighash_taproot,
    legacy_sighash,
)
from mvwallet.psbt.transaction import TxOutput
from mvwallet.wallet.bip32 import DerivationError, HDKey, format_path
from mvwallet.wallet.descriptor import MultisigAccount
from mvwallet.wallet.ownership import OwnershipMatcher
from mvwallet.wallet.script import (
    classify_script,
    p2wpkh_script,
    p2wpkh_script_code,
    p2wsh_script,
    parse_multisig_script,
)

SigningOrder = Literal["declared_first", "scan_first"]


@dataclass
class SigningResult:
    signed_inputs: list[int] = field(default_factory=list)
    already_signed_inputs: list[int] = field(default_factory=list)
    unsigned_inputs: list[int] = field(default_factory=list)
    # input index -> derivation path that differed from the declared one
    alternate_paths: dict[int, str] = field(default_factory=dict)
    scanned_inputs: list[int] = field(default_factory=list)

    @property
    def signature_count(self) -> int:
        return len(self.signed_inputs)

    @property
    def used_alternate_paths(self) -> bool:
        return bool(self.alternate_paths)


@dataclass
class SpendInfo:
    """How an input's spent script commits to its keys."""

    kind: str  # p2pkh, p2wpkh, p2sh-p2wpkh, p2wsh, p2sh-p2wsh, p2sh, p2tr
    script_code: bytes
    pubkeys: list[bytes]
    threshold: int = 1
    is_segwit: bool = True


def spend_info(psbt_in: PsbtInput, utxo: TxOutput) -> SpendInfo | None:
    """Work out the spending template from the spent script and PSBT scripts."""
    spk = utxo.script
    kind = classify_script(spk)

    if kind == OutputKind.P2PKH:
        return SpendInfo("p2pkh", spk, [], is_segwit=False)
    if kind == OutputKind.P2WPKH:
        return SpendInfo("p2wpkh", b"", [])
    if kind == OutputKind.P2TR:
        return SpendInfo("p2tr", b"", [])

    if kind == OutputKind.P2WSH:
        ws = psbt_in.witness_script
        if ws is None or p2wsh_script(ws) != spk:
            return None
        parsed = parse_multisig_script(ws)
        if parsed is None:
            return None
        return SpendInfo("p2wsh", ws, parsed[1], parsed[0])

    if kind == OutputKind.P2SH:
        redeem = psbt_in.redeem_script
        if redeem is None or hash160(redeem) != spk[2:22]:
            return None
        redeem_kind = classify_script(redeem)
        if redeem_kind == OutputKind.P2WPKH:
            return SpendInfo("p2sh-p2wpkh", b"", [])
        if redeem_kind == OutputKind.P2WSH:
            ws = psbt_in.witness_script
            if ws is None or p2wsh_script(ws) != redeem:
                return None
            parsed = parse_multisig_script(ws)
            if parsed is None:
                return None
            return SpendInfo("p2sh-p2wsh", ws, parsed[1], parsed[0])
        parsed = parse_multisig_script(redeem)
        if parsed is None:
            return None
        return SpendInfo("p2sh", redeem, parsed[1], parsed[0], is_segwit=False)

    return None


def effective_sighash(psbt_in: PsbtInput, info: SpendInfo) -> int:
    """
    Sighash type an input is signed with.

    Raises:
        MalformedProposalError: If the declared type is not valid for the script
    """
    if info.kind == "p2tr":
        default, valid = SIGHASH_DEFAULT, VALID_TAPROOT_SIGHASHES
    else:
        default, valid = SIGHASH_ALL, VALID_ECDSA_SIGHASHES
    if psbt_in.sighash_type is None:
        return default
    if psbt_in.sighash_type not in valid:
        raise MalformedProposalError(f"Invalid sighash type {psbt_in.sighash_type:#04x}")
    return psbt_in.sighash_type


def key_matches_spend(
    pubkey: bytes, info: SpendInfo, psbt_in: PsbtInput, utxo: TxOutput
) -> bool:
    """Whether a compressed public key can sign for this input."""
    if info.kind == "p2pkh":
        return utxo.script[3:23] == hash160(pubkey)
    if info.kind == "p2wpkh":
        return utxo.script[2:] == hash160(pubkey)
    if info.kind == "p2sh-p2wpkh":
        return psbt_in.redeem_script == p2wpkh_script(hash160(pubkey))
    if info.kind == "p2tr":
        return utxo.script[2:] == taproot_output_key(pubkey, psbt_in.tap_merkle_root)
    return pubkey in info.pubkeys


def alternate_paths(declared: list[int], coin_type: int, account_range: int) -> list[list[int]]:
    """
    Candidate paths for a declared path that did not reproduce its key.

    The child suffix (branch/index) is kept; purpose, account and BIP48 script
    type vary. Single-sig purposes come before BIP48, declared account first.
    """
    if len(declared) < 4:
        return []

    if len(declared) >= 5 and declared[3] >= HARDENED:
        suffix = declared[4:]
    else:
        suffix = declared[3:]

    declared_account = declared[2] & ~HARDENED
    accounts = [declared_account] + [a for a in range(account_range) if a != declared_account]
    coin = coin_type + HARDENED

    candidates = []
    for account in accounts:
        for purpose in ALTERNATE_PURPOSES:
            candidates.append([purpose + HARDENED, coin, account + HARDENED] + suffix)
    for account in accounts:
        for script_type in ALTERNATE_BIP48_SCRIPT_TYPES:
            candidates.append(
                [PURPOSE_MULTISIG + HARDENED, coin, account + HARDENED, script_type + HARDENED]
                + suffix
            )
    return [c for c in candidates if c != declared]


@dataclass
class _Resolved:
    key: HDKey
    path: list[int]
    stage: str


class PsbtSigner:
    """Signs the inputs of a PSBT that belong to one master key."""

    def __init__(
        self,
        master: HDKey,
        network: NetworkType = NetworkType.MAINNET,
        matcher: OwnershipMatcher | None = None,
        order: SigningOrder = "declared_first",
        alternate_account_range: int = 10,
    ):
        if not master.is_private:
            raise DerivationError("Signing requires a private master key")
        if order not in ("declared_first", "scan_first"):
            raise ValueError(f"Unknown signing order: {order}")
        self.master = master
        self.network = network
        self.matcher = matcher
        self.order = order
        self.alternate_account_range = alternate_account_range
        self.fingerprint = master.fingerprint

    def _declared_origins(self, psbt_in: PsbtInput) -> list[tuple[bytes, list[int]]]:
        """(expected compressed-or-xonly pubkey, path) pairs with our fingerprint."""
        origins = [
            (pubkey, origin.path)
            for pubkey, origin in psbt_in.bip32_derivations.items()
            if origin.fingerprint == self.fingerprint
        ]
        origins += [
            (xonly_key, tap.origin.path)
            for xonly_key, tap in psbt_in.tap_bip32_derivations.items()
            if tap.origin.fingerprint == self.fingerprint and not tap.leaf_hashes
        ]
        return origins

    def _derive(self, path: list[int]) -> HDKey | None:
        try:
            return self.master.derive(path)
        except DerivationError as e:
            logger.debug(f"Derivation failed at {format_path(path)}: {e}")
            return None

    @staticmethod
    def _same_key(expected: bytes, key: HDKey) -> bool:
        pubkey = key.get_public_key_bytes()
        if len(expected) == 32:
            return xonly(pubkey) == expected
        return pubkey == expected

    def _resolve_declared(self, psbt_in: PsbtInput) -> tuple[list[_Resolved], list[tuple]]:
        resolved = []
        mismatched = []
        for expected, path in self._declared_origins(psbt_in):
            key = self._derive(path)
            if key is not None and self._same_key(expected, key):
                resolved.append(_Resolved(key, path, "declared"))
            else:
                mismatched.append((expected, path))
        return resolved, mismatched

    def _resolve_alternate(self, mismatched: list[tuple]) -> list[_Resolved]:
        resolved = []
        for expected, declared in mismatched:
            for path in alternate_paths(
                declared, self.network.coin_type, self.alternate_account_range
            ):
                key = self._derive(path)
                if key is not None and self._same_key(expected, key):
                    logger.info(
                        f"Declared path {format_path(declared)} resolved at {format_path(path)}"
                    )
                    resolved.append(_Resolved(key, path, "alternate"))
                    break
        return resolved

    def _resolve_scan(self, utxo: TxOutput) -> list[_Resolved]:
        if self.matcher is None:
            return []
        match = self.matcher.match_script(utxo.script)
        if match is None:
            return []

        account = match.account
        if isinstance(account, MultisigAccount):
            paths = [
                c.path_indexes + [match.branch, match.index]
                for c in account.cosigner_by_fingerprint(self.fingerprint)
            ]
        else:
            if account.master_fingerprint != self.fingerprint.hex():
                return []
            paths = [account.full_path(match.account_number, match.branch, match.index)]

        resolved = []
        for path in paths:
            key = self._derive(path)
            if key is not None:
                resolved.append(_Resolved(key, path, "scan"))
        return resolved

    def _resolve(self, psbt_in: PsbtInput, utxo: TxOutput, info: SpendInfo) -> list[_Resolved]:
        declared, mismatched = self._resolve_declared(psbt_in)
        stages = [
            lambda: self._resolve_alternate(mismatched),
            lambda: self._resolve_scan(utxo),
        ]
        if self.order == "scan_first":
            stages.reverse()

        def usable(found: list[_Resolved]) -> list[_Resolved]:
            return [
                r
                for r in found
                if key_matches_spend(r.key.get_public_key_bytes(), info, psbt_in, utxo)
            ]

        candidates = usable(declared)
        for stage in stages:
            if candidates:
                break
            candidates = usable(stage())
        return candidates

    def sign(self, psbt: Psbt) -> SigningResult:
        """Sign every input this master key can sign, in place."""
        result = SigningResult()
        spent_outputs = psbt.spent_outputs()
        infos = [spend_info(i, utxo) for i, utxo in zip(psbt.inputs, spent_outputs)]

        # reject bad sighash types before any input is touched
        for index, (psbt_in, info) in enumerate(zip(psbt.inputs, infos)):
            if info is not None and not psbt_in.is_finalized:
                try:
                    effective_sighash(psbt_in, info)
                except MalformedProposalError as e:
                    raise MalformedProposalError(f"Input {index}: {e}") from e

        for index, psbt_in in enumerate(psbt.inputs):
            if psbt_in.is_finalized:
                result.already_signed_inputs.append(index)
                continue

            utxo = spent_outputs[index]
            info = infos[index]
            if info is None:
                logger.warning(f"Input {index}: unsupported or inconsistent spend template")
                result.unsigned_inputs.append(index)
                continue

            candidates = self._resolve(psbt_in, utxo, info)
            if not candidates:
                logger.info(f"Input {index}: no key of ours found")
                result.unsigned_inputs.append(index)
                continue

            signed_any = False
            already = False
            seen: set[bytes] = set()
            for candidate in candidates:
                pubkey = candidate.key.get_public_key_bytes()
                if pubkey in seen:
                    continue
                seen.add(pubkey)

                if self._has_signature(psbt_in, pubkey, info):
                    already = True
                    continue

                self._sign_input(psbt, index, psbt_in, info, candidate.key, spent_outputs)
                signed_any = True
                if candidate.stage == "alternate":
                    result.alternate_paths[index] = format_path(candidate.path)
                elif candidate.stage == "scan":
                    result.scanned_inputs.append(index)

            if signed_any:
                result.signed_inputs.append(index)
            elif already:
                result.already_signed_inputs.append(index)

        logger.info(
            f"Signed {len(result.signed_inputs)} of {len(psbt.inputs)} inputs "
            f"({len(result.unsigned_inputs)} not ours, "
            f"{len(result.alternate_paths)} via alternate paths)"
        )
        return result

    @staticmethod
    def _has_signature(psbt_in: PsbtInput, pubkey: bytes, info: SpendInfo) -> bool:
        if info.kind == "p2tr":
            return psbt_in.tap_key_sig is not None
        return pubkey in psbt_in.partial_sigs

    def _sign_input(
        self,
        psbt: Psbt,
        index: int,
        psbt_in: PsbtInput,
        info: SpendInfo,
        key: HDKey,
        spent_outputs: list[TxOutput],
    ) -> None:
        tx = psbt.tx
        pubkey = key.get_public_key_bytes()

        if info.kind == "p2tr":
            sighash_type = effective_sighash(psbt_in, info)
            digest = compute_sighash_taproot(tx, index, spent_outputs, sighash_type)
            tweaked = PrivateKey(
                taproot_tweak_private_key(key.get_private_key_bytes(), psbt_in.tap_merkle_root)
            )
            signature = tweaked.sign_schnorr(digest, os.urandom(32))
            if sighash_type != SIGHASH_DEFAULT:
                signature += bytes([sighash_type])
            psbt_in.tap_key_sig = signature
            if psbt_in.tap_internal_key is None:
                psbt_in.tap_internal_key = xonly(pubkey)
            return

        sighash_type = effective_sighash(psbt_in, info)

        value = spent_outputs[index].value
        if info.kind in ("p2wpkh", "p2sh-p2wpkh"):
            digest = compute_sighash_segwit(
                tx, index, p2wpkh_script_code(pubkey), value, sighash_type
            )
        elif info.kind in ("p2wsh", "p2sh-p2wsh"):
            digest = compute_sighash_segwit(tx, index, info.script_code, value, sighash_type)
        else:
            digest = legacy_sighash(tx, index, info.script_code, sighash_type)

        # Sign the pre-hashed sighash; hasher=None skips coincurve's own hashing
        signature = key.private_key.sign(digest, hasher=None)
        psbt_in.partial_sigs[pubkey] = signature + bytes([sighash_type])
