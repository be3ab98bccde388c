"""
Bitcoin address generation utilities.

Converts between scriptPubKeys and their address text for every output type the
signer handles.
"""

from __future__ import annotations

from mvcore.bech32 import decode_segwit_address, encode_segwit_address
from mvcore.crypto import CryptoError, base58check_decode, base58check_encode, hash160
from mvcore.models import NetworkType, OutputKind, ScriptType
from mvwallet.wallet.script import (
    classify_script,
    p2pkh_script,
    p2sh_script,
    script_for_pubkey,
    small_int_opcode,
    witness_program,
)


def _network(network: NetworkType | str) -> NetworkType:
    return network if isinstance(network, NetworkType) else NetworkType(network)


def script_to_address(
    script: bytes, network: NetworkType | str = NetworkType.MAINNET
) -> str | None:
    """Address for a scriptPubKey, or None for non-standard scripts."""
    net = _network(network)
    kind = classify_script(script)

    if kind == OutputKind.P2PKH:
        return base58check_encode(bytes([net.p2pkh_prefix]) + script[3:23])
    if kind == OutputKind.P2SH:
        return base58check_encode(bytes([net.p2sh_prefix]) + script[2:22])

    program = witness_program(script)
    if program is None:
        return None
    version, data = program
    return encode_segwit_address(net.bech32_hrp, version, data)


def address_to_script(
    address: str, network: NetworkType | str = NetworkType.MAINNET
) -> bytes:
    """
    scriptPubKey for an address on the given network.

    Raises:
        CryptoError: If the address is malformed or belongs to another network
    """
    net = _network(network)
    hrp_prefix = net.bech32_hrp + "1"

    if address.lower().startswith(hrp_prefix):
        version, program = decode_segwit_address(net.bech32_hrp, address)
        opcode = small_int_opcode(version)
        return bytes([opcode, len(program)]) + program

    payload = base58check_decode(address)
    if len(payload) != 21:
        raise CryptoError(f"Invalid base58 address payload length: {len(payload)}")
    if payload[0] == net.p2pkh_prefix:
        return p2pkh_script(payload[1:])
    if payload[0] == net.p2sh_prefix:
        return p2sh_script(payload[1:])
    raise CryptoError(f"Address version byte {payload[0]:#04x} is not valid for {net.value}")


def is_valid_address(address: str, network: NetworkType | str = NetworkType.MAINNET) -> bool:
    try:
        address_to_script(address, network)
    except (CryptoError, ValueError):
        return False
    return True


def pubkey_to_address(
    pubkey: bytes,
    script_type: ScriptType,
    network: NetworkType | str = NetworkType.MAINNET,
) -> str:
    """Single-key address of the given script type."""
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")
    address = script_to_address(script_for_pubkey(pubkey, script_type.value), network)
    if address is None:
        raise ValueError(f"No address form for a {script_type.value} script")
    return address


def pubkey_to_p2wpkh_address(pubkey_hex: str, network: NetworkType | str = "mainnet") -> str:
    """
    Convert compressed public key to P2WPKH (native segwit) address.
    BIP173 bech32 encoding.
    """
    return pubkey_to_address(bytes.fromhex(pubkey_hex), ScriptType.P2WPKH, network)


def pubkey_to_p2pkh_address(pubkey: bytes, network: NetworkType | str = "mainnet") -> str:
    """Legacy address, also used for uncompressed keys in message signatures."""
    net = _network(network)
    return base58check_encode(bytes([net.p2pkh_prefix]) + hash160(pubkey))
