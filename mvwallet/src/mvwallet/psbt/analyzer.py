"""
PSBT analysis: fee, per-input signature state, output classification and
virtual size estimate.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from mvcore.models import NetworkType, OutputClassification, OutputKind
from mvwallet.psbt.models import Psbt, PsbtInput
from mvwallet.psbt.signer import SpendInfo, spend_info
from mvwallet.wallet.address import script_to_address
from mvwallet.wallet.ownership import OwnershipMatcher
from mvwallet.wallet.script import classify_script


@dataclass
class InputSummary:
    index: int
    prevout: str
    value: int
    script_type: str
    derivation_hint: str | None
    signatures: int
    required: int
    total_keys: int
    finalized: bool
    ours: bool = False

    @property
    def is_multisig(self) -> bool:
        return self.total_keys > 1

    @property
    def is_complete(self) -> bool:
        return self.finalized or self.signatures >= self.required


@dataclass
class OutputSummary:
    index: int
    address: str | None
    value: int
    classification: OutputClassification
    path: str | None = None

    @property
    def is_change(self) -> bool:
        return self.classification == OutputClassification.CHANGE


@dataclass
class ProposalSummary:
    inputs: list[InputSummary]
    outputs: list[OutputSummary]
    input_total: int
    output_total: int
    fee: int
    virtual_size: int
    warnings: list[str] = field(default_factory=list)

    @property
    def fee_rate(self) -> float:
        return self.fee / self.virtual_size if self.virtual_size else 0.0

    @property
    def ready_to_broadcast(self) -> bool:
        return all(i.is_complete for i in self.inputs)

    @property
    def spend_amount(self) -> int:
        """Value leaving the wallet, excluding change."""
        return sum(o.value for o in self.outputs if not o.is_change)


def _signature_count(psbt_in: PsbtInput, info: SpendInfo | None) -> int:
    if info is not None and info.kind == "p2tr":
        return 1 if psbt_in.tap_key_sig is not None else 0
    if info is not None and info.pubkeys:
        return sum(1 for k in info.pubkeys if k in psbt_in.partial_sigs)
    return min(len(psbt_in.partial_sigs), 1)


def _derivation_hint(psbt_in: PsbtInput) -> str | None:
    for origin in psbt_in.bip32_derivations.values():
        return f"{origin.fingerprint.hex()}/{origin.path_str[2:]}"
    for tap in psbt_in.tap_bip32_derivations.values():
        return f"{tap.origin.fingerprint.hex()}/{tap.origin.path_str[2:]}"
    return None


def _multisig_weight(threshold: int, total: int) -> int:
    witness_script_size = total * 34 + 3
    return 1 + 1 + threshold * 73 + 1 + witness_script_size


def input_vbytes(info: SpendInfo | None) -> tuple[float, bool]:
    """Estimated (virtual bytes, is_segwit) of a fully signed input."""
    if info is None:
        return 68.0, True
    if info.kind == "p2pkh":
        return 148.0, False
    if info.kind == "p2wpkh":
        return 68.0, True
    if info.kind == "p2tr":
        return 57.5, True
    if info.kind == "p2sh-p2wpkh":
        return 91.0, True
    total = len(info.pubkeys)
    if info.kind == "p2wsh":
        return (41 * 4 + _multisig_weight(info.threshold, total)) / 4.0, True
    if info.kind == "p2sh-p2wsh":
        return (76 * 4 + _multisig_weight(info.threshold, total)) / 4.0, True
    script_sig = 1 + info.threshold * 73 + 2 + total * 34 + 3
    return float(36 + 3 + script_sig + 4), False


def estimate_vsize(psbt: Psbt) -> int:
    spent = psbt.spent_outputs()
    total = 0.0
    any_segwit = False
    for psbt_in, utxo in zip(psbt.inputs, spent):
        vbytes, segwit = input_vbytes(spend_info(psbt_in, utxo))
        total += vbytes
        any_segwit = any_segwit or segwit
    for out in psbt.tx.outputs:
        total += 8 + 1 + len(out.script)
    total += 10.5 if any_segwit else 10.0
    return math.ceil(total)


def analyze_psbt(
    psbt: Psbt,
    matcher: OwnershipMatcher | None = None,
    network: NetworkType = NetworkType.MAINNET,
) -> ProposalSummary:
    """Summarize a parsed proposal for confirmation before signing."""
    spent = psbt.spent_outputs()
    warnings = []

    inputs = []
    for index, (tx_in, psbt_in, utxo) in enumerate(zip(psbt.tx.inputs, psbt.inputs, spent)):
        info = spend_info(psbt_in, utxo)
        if info is None and classify_script(utxo.script) in (OutputKind.P2SH, OutputKind.P2WSH):
            warnings.append(f"Input {index} is missing or has inconsistent scripts")
        inputs.append(
            InputSummary(
                index=index,
                prevout=f"{tx_in.txid}:{tx_in.vout}",
                value=utxo.value,
                script_type=info.kind if info else classify_script(utxo.script).value,
                derivation_hint=_derivation_hint(psbt_in),
                signatures=_signature_count(psbt_in, info),
                required=info.threshold if info else 1,
                total_keys=max(len(info.pubkeys), 1) if info else 1,
                finalized=psbt_in.is_finalized,
                ours=matcher is not None and matcher.match_script(utxo.script) is not None,
            )
        )

    outputs = []
    for index, (out, psbt_out) in enumerate(zip(psbt.tx.outputs, psbt.outputs)):
        classification = OutputClassification.EXTERNAL
        path = None
        if matcher is not None:
            hints = [(o.fingerprint, o.path) for o in psbt_out.bip32_derivations.values()]
            hints += [
                (t.origin.fingerprint, t.origin.path)
                for t in psbt_out.tap_bip32_derivations.values()
            ]
            classification, match = matcher.classify_output(out.script, hints)
            if match is not None:
                path = f"{match.account.label}/{match.account_number}/{match.branch}/{match.index}"
        outputs.append(
            OutputSummary(
                index=index,
                address=script_to_address(out.script, network),
                value=out.value,
                classification=classification,
                path=path,
            )
        )

    if outputs and all(o.classification != OutputClassification.EXTERNAL for o in outputs):
        warnings.append("Every output returns to this wallet")

    return ProposalSummary(
        inputs=inputs,
        outputs=outputs,
        input_total=psbt.input_total,
        output_total=psbt.output_total,
        fee=psbt.fee,
        virtual_size=estimate_vsize(psbt),
        warnings=warnings,
    )
