"""
PSBT (BIP174 v0) codec: parse, analyze, sign, finalize.
"""

from mvwallet.psbt.analyzer import ProposalSummary, analyze_psbt
from mvwallet.psbt.finalizer import FinalizedTransaction, finalize_psbt
from mvwallet.psbt.models import (
    InsufficientSignaturesError,
    MalformedProposalError,
    ProposalStateError,
    Psbt,
)
from mvwallet.psbt.parser import parse_psbt, psbt_to_base64, serialize_psbt
from mvwallet.psbt.proposal import Proposal, ProposalState
from mvwallet.psbt.signer import PsbtSigner, SigningResult

__all__ = [
    "FinalizedTransaction",
    "InsufficientSignaturesError",
    "MalformedProposalError",
    "Proposal",
    "ProposalState",
    "ProposalStateError",
    "ProposalSummary",
    "Psbt",
    "PsbtSigner",
    "SigningResult",
    "analyze_psbt",
    "finalize_psbt",
    "parse_psbt",
    "psbt_to_base64",
    "serialize_psbt",
]
