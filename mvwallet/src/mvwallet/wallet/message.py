"""
Bitcoin message signing and verification.

Two envelope conventions share the 65-byte compact recoverable signature:

- Electrum: header 31-34 (compressed key) for every address type; the address
  type is implied by the address being verified.
- BIP137: the header range encodes the address type: 27-30 uncompressed
  P2PKH, 31-34 compressed P2PKH, 35-38 P2SH-P2WPKH, 39-42 P2WPKH (also used
  for P2TR, which has no range of its own).
"""

from __future__ import annotations

import base64
import binascii
from enum import Enum

from coincurve import PrivateKey, PublicKey
from loguru import logger

from mvcore.crypto import CryptoError, bitcoin_message_hash
from mvcore.models import NetworkType, OutputKind, ScriptType
from mvwallet.wallet.address import address_to_script, pubkey_to_address, pubkey_to_p2pkh_address
from mvwallet.wallet.script import classify_script

HEADER_UNCOMPRESSED_P2PKH = 27
HEADER_COMPRESSED_P2PKH = 31
HEADER_P2SH_P2WPKH = 35
HEADER_P2WPKH = 39


class SignatureEnvelope(str, Enum):
    ELECTRUM = "electrum"
    BIP137 = "bip137"


def _header_base(envelope: SignatureEnvelope, script_type: ScriptType) -> int:
    if envelope == SignatureEnvelope.ELECTRUM:
        return HEADER_COMPRESSED_P2PKH
    return {
        ScriptType.P2PKH: HEADER_COMPRESSED_P2PKH,
        ScriptType.P2SH_P2WPKH: HEADER_P2SH_P2WPKH,
        ScriptType.P2WPKH: HEADER_P2WPKH,
        # Taproot has no BIP137 range; the native segwit range is the common choice
        ScriptType.P2TR: HEADER_P2WPKH,
    }[script_type]


def sign_message(
    message: str,
    private_key: bytes | PrivateKey,
    envelope: SignatureEnvelope = SignatureEnvelope.ELECTRUM,
    script_type: ScriptType = ScriptType.P2WPKH,
) -> str:
    """
    Sign a message and return the base64 signature text.

    Args:
        message: UTF-8 text to sign
        private_key: 32-byte secret or coincurve PrivateKey
        envelope: Header convention to use
        script_type: Address type the signature is for (BIP137 only)
    """
    key = private_key if isinstance(private_key, PrivateKey) else PrivateKey(private_key)
    digest = bitcoin_message_hash(message)

    recoverable = key.sign_recoverable(digest, hasher=None)
    compact, recovery_id = recoverable[:64], recoverable[64]

    header = _header_base(envelope, script_type) + recovery_id
    return base64.b64encode(bytes([header]) + compact).decode("ascii")


def _address_for_recovered(
    pubkey: PublicKey, header: int, kind: OutputKind, network: NetworkType
) -> str | None:
    if header < HEADER_COMPRESSED_P2PKH:
        return pubkey_to_p2pkh_address(pubkey.format(compressed=False), network)

    compressed = pubkey.format(compressed=True)
    if header >= HEADER_P2WPKH:
        # taproot signers reuse the native segwit range
        if kind == OutputKind.P2TR:
            return pubkey_to_address(compressed, ScriptType.P2TR, network)
        return pubkey_to_address(compressed, ScriptType.P2WPKH, network)
    if header >= HEADER_P2SH_P2WPKH:
        return pubkey_to_address(compressed, ScriptType.P2SH_P2WPKH, network)

    # 31-34: the address itself says which script the key is behind
    by_kind = {
        OutputKind.P2PKH: ScriptType.P2PKH,
        OutputKind.P2SH: ScriptType.P2SH_P2WPKH,
        OutputKind.P2WPKH: ScriptType.P2WPKH,
        OutputKind.P2TR: ScriptType.P2TR,
    }
    if kind not in by_kind:
        return None
    return pubkey_to_address(compressed, by_kind[kind], network)


def verify_message(
    message: str,
    signature: str,
    address: str,
    network: NetworkType = NetworkType.MAINNET,
) -> bool:
    """
    Verify a signed message against an address.

    The public key is recovered from the signature and the address recomputed
    from it; the claimed address is never trusted. Returns False for any
    malformed input instead of raising.
    """
    try:
        raw = base64.b64decode(signature.strip(), validate=True)
    except (binascii.Error, ValueError):
        logger.debug("Signature is not valid base64")
        return False

    if len(raw) != 65:
        return False

    header = raw[0]
    if not HEADER_UNCOMPRESSED_P2PKH <= header <= HEADER_P2WPKH + 3:
        logger.debug(f"Signature header {header} outside the known ranges")
        return False
    recovery_id = (header - HEADER_UNCOMPRESSED_P2PKH) % 4

    try:
        kind = classify_script(address_to_script(address, network))
        digest = bitcoin_message_hash(message)
        pubkey = PublicKey.from_signature_and_message(
            raw[1:] + bytes([recovery_id]), digest, hasher=None
        )
        expected = _address_for_recovered(pubkey, header, kind, network)
    except (CryptoError, ValueError) as e:
        logger.debug(f"Signature verification failed: {e}")
        return False

    return expected is not None and expected == address
