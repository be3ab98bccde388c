"""
Core enumerations shared by the wallet packages.
"""

from __future__ import annotations

from enum import Enum

from mvcore.constants import (
    BIP48_NATIVE_SEGWIT,
    BIP48_NESTED_SEGWIT,
    COIN_TYPE_MAINNET,
    COIN_TYPE_TESTNET,
    PURPOSE_LEGACY,
    PURPOSE_NATIVE_SEGWIT,
    PURPOSE_NESTED_SEGWIT,
    PURPOSE_TAPROOT,
)


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def is_mainnet(self) -> bool:
        return self == NetworkType.MAINNET

    @property
    def coin_type(self) -> int:
        return COIN_TYPE_MAINNET if self.is_mainnet else COIN_TYPE_TESTNET

    @property
    def bech32_hrp(self) -> str:
        if self == NetworkType.MAINNET:
            return "bc"
        if self == NetworkType.REGTEST:
            return "bcrt"
        return "tb"

    @property
    def p2pkh_prefix(self) -> int:
        return 0x00 if self.is_mainnet else 0x6F

    @property
    def p2sh_prefix(self) -> int:
        return 0x05 if self.is_mainnet else 0xC4


class ScriptType(str, Enum):
    """Single-sig output script families, keyed by derivation purpose."""

    P2PKH = "p2pkh"
    P2SH_P2WPKH = "p2sh-p2wpkh"
    P2WPKH = "p2wpkh"
    P2TR = "p2tr"

    @property
    def purpose(self) -> int:
        return _SCRIPT_PURPOSES[self]

    @classmethod
    def from_purpose(cls, purpose: int) -> ScriptType:
        for script_type, value in _SCRIPT_PURPOSES.items():
            if value == purpose:
                return script_type
        raise ValueError(f"No single-sig script type for purpose {purpose}")


_SCRIPT_PURPOSES = {
    ScriptType.P2PKH: PURPOSE_LEGACY,
    ScriptType.P2SH_P2WPKH: PURPOSE_NESTED_SEGWIT,
    ScriptType.P2WPKH: PURPOSE_NATIVE_SEGWIT,
    ScriptType.P2TR: PURPOSE_TAPROOT,
}


class MultisigScriptType(str, Enum):
    P2SH = "p2sh"
    P2SH_P2WSH = "p2sh-p2wsh"
    P2WSH = "p2wsh"

    @property
    def bip48_script_type(self) -> int | None:
        if self == MultisigScriptType.P2WSH:
            return BIP48_NATIVE_SEGWIT
        if self == MultisigScriptType.P2SH_P2WSH:
            return BIP48_NESTED_SEGWIT
        return None


class OutputKind(str, Enum):
    """Recognized scriptPubKey templates."""

    P2PKH = "p2pkh"
    P2SH = "p2sh"
    P2WPKH = "p2wpkh"
    P2WSH = "p2wsh"
    P2TR = "p2tr"
    UNKNOWN = "unknown"


class OutputClassification(str, Enum):
    EXTERNAL = "external"
    RECEIVE = "receive"
    CHANGE = "change"
