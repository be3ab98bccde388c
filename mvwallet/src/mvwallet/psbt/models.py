"""
PSBT (BIP174 version 0) data model.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from mvwallet.psbt.transaction import Transaction, TxOutput
from mvwallet.wallet.bip32 import format_path

PSBT_MAGIC = b"psbt\xff"

# Global types
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_XPUB = 0x01
PSBT_GLOBAL_VERSION = 0xFB
PSBT_GLOBAL_PROPRIETARY = 0xFC
PSBT_GLOBAL_V2_ONLY = {0x02, 0x03, 0x04, 0x05, 0x06}

# Input types
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_BIP32_DERIVATION = 0x16
PSBT_IN_TAP_INTERNAL_KEY = 0x17
PSBT_IN_TAP_MERKLE_ROOT = 0x18
PSBT_IN_V2_ONLY = {0x0E, 0x0F, 0x10, 0x11, 0x12}

# Output types
PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02
PSBT_OUT_TAP_INTERNAL_KEY = 0x05
PSBT_OUT_TAP_BIP32_DERIVATION = 0x07
PSBT_OUT_V2_ONLY = {0x03, 0x04}


class MalformedProposalError(Exception):
    pass


class InsufficientSignaturesError(Exception):
    pass


class ProposalStateError(Exception):
    pass


@dataclass
class KeyOrigin:
    fingerprint: bytes
    path: list[int]

    def serialize(self) -> bytes:
        return self.fingerprint + b"".join(i.to_bytes(4, "little") for i in self.path)

    @classmethod
    def parse(cls, data: bytes) -> KeyOrigin:
        if len(data) < 4 or len(data) % 4:
            raise MalformedProposalError(f"Invalid key origin length: {len(data)}")
        path = [int.from_bytes(data[i : i + 4], "little") for i in range(4, len(data), 4)]
        return cls(data[:4], path)

    @property
    def path_str(self) -> str:
        return format_path(self.path)


@dataclass
class TapKeyOrigin:
    leaf_hashes: list[bytes]
    origin: KeyOrigin


@dataclass
class PsbtInput:
    non_witness_utxo: Transaction | None = None
    witness_utxo: TxOutput | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeyOrigin] = field(default_factory=dict)
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    tap_key_sig: bytes | None = None
    tap_bip32_derivations: dict[bytes, TapKeyOrigin] = field(default_factory=dict)
    tap_internal_key: bytes | None = None
    tap_merkle_root: bytes | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None

    def spent_output(self, vout: int) -> TxOutput | None:
        if self.witness_utxo is not None:
            return self.witness_utxo
        if self.non_witness_utxo is not None and vout < len(self.non_witness_utxo.outputs):
            return self.non_witness_utxo.outputs[vout]
        return None


@dataclass
class PsbtOutput:
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeyOrigin] = field(default_factory=dict)
    tap_internal_key: bytes | None = None
    tap_bip32_derivations: dict[bytes, TapKeyOrigin] = field(default_factory=dict)
    unknown: dict[bytes, bytes] = field(default_factory=dict)


@dataclass
class Psbt:
    tx: Transaction
    inputs: list[PsbtInput]
    outputs: list[PsbtOutput]
    xpubs: dict[bytes, KeyOrigin] = field(default_factory=dict)
    version: int | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def spent_outputs(self) -> list[TxOutput]:
        spent = []
        for index, (tx_in, psbt_in) in enumerate(zip(self.tx.inputs, self.inputs)):
            utxo = psbt_in.spent_output(tx_in.vout)
            if utxo is None:
                raise MalformedProposalError(f"Input {index} has no previous output data")
            spent.append(utxo)
        return spent

    @property
    def input_total(self) -> int:
        return sum(out.value for out in self.spent_outputs())

    @property
    def output_total(self) -> int:
        return sum(out.value for out in self.tx.outputs)

    @property
    def fee(self) -> int:
        return self.input_total - self.output_total

    @property
    def is_finalized(self) -> bool:
        return all(inp.is_finalized for inp in self.inputs)
