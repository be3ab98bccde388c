"""
Transaction proposal lifecycle: Unparsed -> Parsed -> Signed -> Finalized.

Transitions only move forward. A failed parse leaves the proposal Unparsed
with nothing retained; a failed finalize leaves it in its previous state with
every collected signature intact.
"""

from __future__ import annotations

from enum import Enum

from loguru import logger

from mvwallet.psbt.analyzer import ProposalSummary, analyze_psbt
from mvwallet.psbt.finalizer import FinalizedTransaction, finalize_psbt
from mvwallet.psbt.models import ProposalStateError, Psbt
from mvwallet.psbt.parser import parse_psbt, psbt_to_base64, serialize_psbt
from mvwallet.psbt.signer import PsbtSigner, SigningResult
from mvwallet.wallet.ownership import OwnershipMatcher


class ProposalState(str, Enum):
    UNPARSED = "unparsed"
    PARSED = "parsed"
    SIGNED = "signed"
    FINALIZED = "finalized"


class Proposal:
    def __init__(self, data: bytes | str):
        self._data: bytes | str | None = data
        self.state = ProposalState.UNPARSED
        self.psbt: Psbt | None = None
        self.signing_results: list[SigningResult] = []
        self.finalized: FinalizedTransaction | None = None

    def _require(self, *states: ProposalState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise ProposalStateError(f"Proposal is {self.state.value}, expected {allowed}")

    def parse(self) -> Psbt:
        self._require(ProposalState.UNPARSED)
        self.psbt = parse_psbt(self._data)
        self._data = None
        self.state = ProposalState.PARSED
        return self.psbt

    def analyze(
        self, matcher: OwnershipMatcher | None = None, network=None
    ) -> ProposalSummary:
        self._require(ProposalState.PARSED, ProposalState.SIGNED)
        if network is None:
            return analyze_psbt(self.psbt, matcher)
        return analyze_psbt(self.psbt, matcher, network)

    def sign(self, signer: PsbtSigner) -> SigningResult:
        """Sign with one signer; may be repeated for further keys."""
        self._require(ProposalState.PARSED, ProposalState.SIGNED)
        result = signer.sign(self.psbt)
        self.signing_results.append(result)
        self.state = ProposalState.SIGNED
        return result

    def finalize(self) -> FinalizedTransaction:
        """
        Finalize into a network transaction.

        Allowed from Parsed as well, for proposals that arrive fully signed by
        other signers.
        """
        self._require(ProposalState.PARSED, ProposalState.SIGNED)
        self.finalized = finalize_psbt(self.psbt)
        self.state = ProposalState.FINALIZED
        logger.info(f"Proposal finalized as {self.finalized.txid}")
        return self.finalized

    def export(self) -> bytes:
        """Current PSBT bytes, for handing to the next signer."""
        self._require(ProposalState.PARSED, ProposalState.SIGNED, ProposalState.FINALIZED)
        return serialize_psbt(self.psbt)

    def export_base64(self) -> str:
        self._require(ProposalState.PARSED, ProposalState.SIGNED, ProposalState.FINALIZED)
        return psbt_to_base64(self.psbt)

    @property
    def raw_transaction(self) -> bytes:
        self._require(ProposalState.FINALIZED)
        return self.finalized.raw
