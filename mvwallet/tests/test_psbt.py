"""
Tests for PSBT parsing, signing and finalization.
"""

import base64

import pytest

from mvcore.crypto import hash160, taproot_output_key, xonly
from mvcore.models import NetworkType, OutputClassification
from mvwallet.psbt.analyzer import analyze_psbt
from mvwallet.psbt.finalizer import finalize_psbt, verify_input
from mvwallet.psbt.models import (
    InsufficientSignaturesError,
    KeyOrigin,
    MalformedProposalError,
    ProposalStateError,
    PsbtInput,
    PsbtOutput,
    TapKeyOrigin,
)
from mvwallet.psbt.parser import decode_psbt_text, parse_psbt, psbt_to_base64, serialize_psbt
from mvwallet.psbt.proposal import Proposal, ProposalState
from mvwallet.psbt.signer import PsbtSigner, alternate_paths
from mvwallet.psbt.transaction import deserialize_transaction
from mvwallet.wallet.bip32 import format_path, parse_path
from mvwallet.wallet.script import (
    multisig_script,
    p2pkh_script,
    p2sh_wrap,
    p2tr_script,
    p2wpkh_script,
    p2wsh_script,
)

EXTERNAL = p2wpkh_script(bytes(20))


def _origin(key, path: str) -> KeyOrigin:
    return KeyOrigin(key.fingerprint, parse_path(path))


class TestParser:
    def test_round_trip(self, make_psbt, wpkh_spend):
        psbt = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        raw = serialize_psbt(psbt)
        assert raw.startswith(b"psbt\xff")
        assert serialize_psbt(parse_psbt(raw)) == raw

    def test_text_forms(self, make_psbt, wpkh_spend):
        raw = serialize_psbt(make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)]))
        b64 = base64.b64encode(raw).decode()
        assert decode_psbt_text(b64) == raw
        assert decode_psbt_text(raw.hex()) == raw
        assert decode_psbt_text(f"  {b64}\n") == raw
        assert parse_psbt(b64).fee == 10_000

    def test_outputs_exceed_inputs(self, make_psbt, wpkh_spend):
        raw = serialize_psbt(make_psbt([wpkh_spend(value=1_000)], [(EXTERNAL, 2_000)]))
        with pytest.raises(MalformedProposalError, match="exceed"):
            parse_psbt(raw)

    def test_zero_fee_allowed(self, make_psbt, wpkh_spend):
        raw = serialize_psbt(make_psbt([wpkh_spend(value=5_000)], [(EXTERNAL, 5_000)]))
        assert parse_psbt(raw).fee == 0

    def test_missing_utxo(self, make_psbt, wpkh_spend):
        psbt = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        psbt.inputs[0].witness_utxo = None
        with pytest.raises(MalformedProposalError):
            parse_psbt(serialize_psbt(psbt))

    @pytest.mark.parametrize("data", [b"", b"psbt", b"not a psbt at all", "zz%%"])
    def test_garbage(self, data):
        with pytest.raises(MalformedProposalError):
            parse_psbt(data)

    def test_trailing_bytes(self, make_psbt, wpkh_spend):
        raw = serialize_psbt(make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)]))
        with pytest.raises(MalformedProposalError):
            parse_psbt(raw + b"\x00")

    def test_truncated(self, make_psbt, wpkh_spend):
        raw = serialize_psbt(make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)]))
        with pytest.raises(MalformedProposalError):
            parse_psbt(raw[:-5])


class TestSingleSigSigning:
    def test_p2wpkh_sign_and_finalize(self, make_psbt, wpkh_spend, master_key):
        psbt = make_psbt([wpkh_spend(), wpkh_spend(1)], [(EXTERNAL, 150_000)])
        result = PsbtSigner(master_key).sign(psbt)
        assert result.signed_inputs == [0, 1]
        assert all(len(i.partial_sigs) == 1 for i in psbt.inputs)

        finalized = finalize_psbt(psbt)
        spent = [i.witness_utxo for i in psbt.inputs]
        assert verify_input(finalized.tx, 0, spent)
        assert verify_input(finalized.tx, 1, spent)
        assert deserialize_transaction(finalized.raw).txid == finalized.txid

    def test_signing_twice_is_idempotent(self, make_psbt, wpkh_spend, master_key):
        psbt = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        signer = PsbtSigner(master_key)
        signer.sign(psbt)
        first = dict(psbt.inputs[0].partial_sigs)

        again = signer.sign(psbt)
        assert again.signed_inputs == []
        assert again.already_signed_inputs == [0]
        assert psbt.inputs[0].partial_sigs == first

    def test_ecdsa_signatures_are_deterministic(self, make_psbt, wpkh_spend, master_key):
        first = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        second = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        PsbtSigner(master_key).sign(first)
        PsbtSigner(master_key).sign(second)
        assert first.inputs[0].partial_sigs == second.inputs[0].partial_sigs

    def test_p2pkh(self, make_psbt, master_key):
        path = "m/44'/0'/0'/0/0"
        pubkey = master_key.derive(path).get_public_key_bytes()
        spend = (
            p2pkh_script(hash160(pubkey)),
            50_000,
            PsbtInput(bip32_derivations={pubkey: _origin(master_key, path)}),
        )
        psbt = make_psbt([spend], [(EXTERNAL, 49_000)])
        assert PsbtSigner(master_key).sign(psbt).signed_inputs == [0]

        finalized = finalize_psbt(psbt)
        assert finalized.tx.inputs[0].script_sig
        assert verify_input(finalized.tx, 0, [psbt.inputs[0].witness_utxo])

    def test_p2sh_p2wpkh(self, make_psbt, master_key):
        path = "m/49'/0'/0'/0/0"
        pubkey = master_key.derive(path).get_public_key_bytes()
        redeem = p2wpkh_script(hash160(pubkey))
        spend = (
            p2sh_wrap(redeem),
            50_000,
            PsbtInput(redeem_script=redeem, bip32_derivations={pubkey: _origin(master_key, path)}),
        )
        psbt = make_psbt([spend], [(EXTERNAL, 49_000)])
        assert PsbtSigner(master_key).sign(psbt).signed_inputs == [0]
        finalized = finalize_psbt(psbt)
        assert verify_input(finalized.tx, 0, [psbt.inputs[0].witness_utxo])

    def test_p2tr_key_path(self, make_psbt, master_key):
        path = "m/86'/0'/0'/0/0"
        pubkey = master_key.derive(path).get_public_key_bytes()
        tap_origin = TapKeyOrigin([], _origin(master_key, path))
        spend = (
            p2tr_script(taproot_output_key(pubkey)),
            70_000,
            PsbtInput(tap_bip32_derivations={xonly(pubkey): tap_origin}),
        )
        psbt = make_psbt([spend], [(EXTERNAL, 69_000)])
        assert PsbtSigner(master_key).sign(psbt).signed_inputs == [0]
        assert len(psbt.inputs[0].tap_key_sig) == 64
        assert psbt.inputs[0].tap_internal_key == xonly(pubkey)

        finalized = finalize_psbt(psbt)
        assert verify_input(finalized.tx, 0, [psbt.inputs[0].witness_utxo])

    def test_tampered_signature_fails_verification(self, make_psbt, wpkh_spend, master_key):
        psbt = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        PsbtSigner(master_key).sign(psbt)
        finalized = finalize_psbt(psbt)
        finalized.tx.outputs[0].value -= 1
        assert not verify_input(finalized.tx, 0, [psbt.inputs[0].witness_utxo])

    def test_foreign_input_left_unsigned(self, make_psbt, wpkh_spend, master_key, cosigner_key):
        psbt = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        result = PsbtSigner(cosigner_key).sign(psbt)
        assert result.unsigned_inputs == [0]
        assert not psbt.inputs[0].partial_sigs

    def test_public_master_rejected(self, master_key):
        with pytest.raises(ValueError):
            PsbtSigner(master_key.neuter())

    def test_invalid_sighash_type(self, make_psbt, wpkh_spend, master_key):
        psbt = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        psbt.inputs[0].sighash_type = 0x05
        with pytest.raises(MalformedProposalError, match="sighash"):
            PsbtSigner(master_key).sign(psbt)

    def test_invalid_sighash_on_later_input_signs_nothing(
        self, make_psbt, wpkh_spend, master_key
    ):
        psbt = make_psbt([wpkh_spend(0), wpkh_spend(1)], [(EXTERNAL, 190_000)])
        psbt.inputs[1].sighash_type = 0x05
        with pytest.raises(MalformedProposalError, match="Input 1"):
            PsbtSigner(master_key).sign(psbt)
        assert not psbt.inputs[0].partial_sigs
        assert not psbt.inputs[1].partial_sigs

    def test_taproot_only_sighash_rejected_for_ecdsa(self, make_psbt, wpkh_spend, master_key):
        psbt = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        psbt.inputs[0].sighash_type = 0x00
        with pytest.raises(MalformedProposalError):
            PsbtSigner(master_key).sign(psbt)


class TestKeyResolution:
    def test_alternate_path(self, make_psbt, wpkh_spend, master_key):
        # key really lives at m/84'/0'/0'/0/0 but the PSBT claims a BIP44 path
        psbt = make_psbt([wpkh_spend(declared_path="m/44'/0'/0'/0/0")], [(EXTERNAL, 90_000)])
        result = PsbtSigner(master_key).sign(psbt)
        assert result.signed_inputs == [0]
        assert result.alternate_paths == {0: "m/84'/0'/0'/0/0"}
        assert result.used_alternate_paths

    def test_alternate_candidates(self):
        declared = parse_path("m/44'/0'/2'/1/7")
        candidates = [format_path(p) for p in alternate_paths(declared, 0, 3)]
        assert candidates[0] == "m/84'/0'/2'/1/7"
        assert "m/44'/0'/2'/1/7" not in candidates
        assert "m/86'/0'/0'/1/7" in candidates
        assert "m/48'/0'/1'/2'/1/7" in candidates

    def test_scan_without_declared_origin(self, make_psbt, session):
        pubkey = session.master.derive("m/84'/0'/0'/1/4").get_public_key_bytes()
        spend = (p2wpkh_script(hash160(pubkey)), 40_000, PsbtInput())
        psbt = make_psbt([spend], [(EXTERNAL, 39_000)])

        result = session.signer().sign(psbt)
        assert result.signed_inputs == [0]
        assert result.scanned_inputs == [0]

    def test_no_matcher_no_scan(self, make_psbt, master_key):
        pubkey = master_key.derive("m/84'/0'/0'/0/0").get_public_key_bytes()
        spend = (p2wpkh_script(hash160(pubkey)), 40_000, PsbtInput())
        psbt = make_psbt([spend], [(EXTERNAL, 39_000)])
        assert PsbtSigner(master_key).sign(psbt).unsigned_inputs == [0]

    @pytest.mark.parametrize("order", ["declared_first", "scan_first"])
    def test_orders_reach_same_signature(self, make_psbt, wpkh_spend, session, order):
        psbt = make_psbt([wpkh_spend(declared_path="m/44'/0'/0'/0/0")], [(EXTERNAL, 90_000)])
        signer = PsbtSigner(session.master, matcher=session.matcher, order=order)
        result = signer.sign(psbt)
        assert result.signed_inputs == [0]
        if order == "scan_first":
            assert result.scanned_inputs == [0]
        else:
            assert 0 in result.alternate_paths

    def test_unknown_order(self, master_key):
        with pytest.raises(ValueError):
            PsbtSigner(master_key, order="random")


class TestMultisig:
    PATH = "m/48'/0'/0'/2'/0/3"

    @pytest.fixture
    def multisig_psbt(self, make_psbt, master_key, cosigner_key):
        keys = [k.derive(self.PATH).get_public_key_bytes() for k in (master_key, cosigner_key)]
        witness_script = multisig_script(2, keys)
        psbt_in = PsbtInput(
            witness_script=witness_script,
            bip32_derivations={
                keys[0]: _origin(master_key, self.PATH),
                keys[1]: _origin(cosigner_key, self.PATH),
            },
        )
        spend = (p2wsh_script(witness_script), 200_000, psbt_in)
        return make_psbt([spend], [(EXTERNAL, 199_000)])

    def test_partial_then_complete(self, multisig_psbt, master_key, cosigner_key):
        assert PsbtSigner(master_key).sign(multisig_psbt).signed_inputs == [0]
        assert len(multisig_psbt.inputs[0].partial_sigs) == 1

        with pytest.raises(InsufficientSignaturesError, match="1 of 2"):
            finalize_psbt(multisig_psbt)
        # a failed finalize keeps every collected signature
        assert len(multisig_psbt.inputs[0].partial_sigs) == 1
        assert not multisig_psbt.inputs[0].is_finalized

        assert PsbtSigner(cosigner_key).sign(multisig_psbt).signed_inputs == [0]
        finalized = finalize_psbt(multisig_psbt)
        assert verify_input(finalized.tx, 0, [multisig_psbt.inputs[0].witness_utxo])

    def test_signing_order_does_not_matter(self, multisig_psbt, master_key, cosigner_key):
        other = parse_psbt(serialize_psbt(multisig_psbt))

        PsbtSigner(master_key).sign(multisig_psbt)
        PsbtSigner(cosigner_key).sign(multisig_psbt)
        PsbtSigner(cosigner_key).sign(other)
        PsbtSigner(master_key).sign(other)

        assert finalize_psbt(multisig_psbt).raw == finalize_psbt(other).raw

    def test_base64_hand_off_between_signers(self, multisig_psbt, master_key, cosigner_key):
        PsbtSigner(master_key).sign(multisig_psbt)
        handed = parse_psbt(psbt_to_base64(multisig_psbt))
        assert len(handed.inputs[0].partial_sigs) == 1
        PsbtSigner(cosigner_key).sign(handed)
        assert finalize_psbt(handed).tx.witnesses[0][0] == b""

    def test_inconsistent_witness_script(self, multisig_psbt, master_key):
        multisig_psbt.inputs[0].witness_script = multisig_script(
            1, [master_key.derive(self.PATH).get_public_key_bytes()]
        )
        assert PsbtSigner(master_key).sign(multisig_psbt).unsigned_inputs == [0]


class TestAnalyzer:
    def test_fee_and_vsize(self, make_psbt, wpkh_spend, master_key, session):
        change_path = "m/84'/0'/0'/1/2"
        change_pubkey = master_key.derive(change_path).get_public_key_bytes()
        change_out = PsbtOutput(
            bip32_derivations={change_pubkey: _origin(master_key, change_path)}
        )
        psbt = make_psbt(
            [wpkh_spend()],
            [(EXTERNAL, 60_000), (p2wpkh_script(hash160(change_pubkey)), 39_000, change_out)],
        )

        summary = analyze_psbt(psbt, session.matcher)
        assert summary.fee == 1_000
        assert summary.virtual_size == 141
        assert summary.fee_rate == pytest.approx(1_000 / 141)
        assert summary.spend_amount == 60_000
        assert not summary.ready_to_broadcast
        assert not summary.warnings

        external, change = summary.outputs
        assert external.classification == OutputClassification.EXTERNAL
        assert change.classification == OutputClassification.CHANGE
        assert change.path.endswith("/0/1/2")
        assert summary.inputs[0].ours
        assert summary.inputs[0].derivation_hint == "73c5da0a/84'/0'/0'/0/0"

    def test_signature_progress(self, make_psbt, wpkh_spend, master_key):
        psbt = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        assert analyze_psbt(psbt).inputs[0].signatures == 0
        PsbtSigner(master_key).sign(psbt)
        summary = analyze_psbt(psbt)
        assert summary.inputs[0].signatures == 1
        assert summary.ready_to_broadcast

    def test_self_transfer_warning(self, make_psbt, wpkh_spend, session, master_key):
        receive = p2wpkh_script(
            hash160(master_key.derive("m/84'/0'/0'/0/5").get_public_key_bytes())
        )
        psbt = make_psbt([wpkh_spend()], [(receive, 90_000)])
        summary = analyze_psbt(psbt, session.matcher)
        assert summary.outputs[0].classification == OutputClassification.RECEIVE
        assert summary.warnings == ["Every output returns to this wallet"]

    def test_inconsistent_script_warning(self, make_psbt, master_key):
        script = multisig_script(1, [master_key.get_public_key_bytes()])
        psbt = make_psbt([(p2wsh_script(script), 10_000, PsbtInput())], [(EXTERNAL, 9_000)])
        summary = analyze_psbt(psbt)
        assert len(summary.warnings) == 1
        assert "Input 0" in summary.warnings[0]

    def test_testnet_addresses(self, make_psbt, wpkh_spend):
        psbt = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        summary = analyze_psbt(psbt, network=NetworkType.TESTNET)
        assert summary.outputs[0].address.startswith("tb1q")


class TestProposal:
    def test_lifecycle(self, make_psbt, wpkh_spend, master_key):
        proposal = Proposal(serialize_psbt(make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])))
        assert proposal.state == ProposalState.UNPARSED

        proposal.parse()
        assert proposal.state == ProposalState.PARSED
        assert proposal.analyze().fee == 10_000

        proposal.sign(PsbtSigner(master_key))
        assert proposal.state == ProposalState.SIGNED

        finalized = proposal.finalize()
        assert proposal.state == ProposalState.FINALIZED
        assert proposal.raw_transaction == finalized.raw
        assert parse_psbt(proposal.export()).is_finalized

    def test_no_going_back(self, make_psbt, wpkh_spend, master_key):
        proposal = Proposal(psbt_to_base64(make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])))
        with pytest.raises(ProposalStateError):
            proposal.sign(PsbtSigner(master_key))
        with pytest.raises(ProposalStateError):
            proposal.export()

        proposal.parse()
        with pytest.raises(ProposalStateError):
            proposal.parse()
        with pytest.raises(ProposalStateError):
            proposal.raw_transaction

        proposal.sign(PsbtSigner(master_key))
        proposal.finalize()
        with pytest.raises(ProposalStateError):
            proposal.sign(PsbtSigner(master_key))
        with pytest.raises(ProposalStateError):
            proposal.finalize()

    def test_failed_parse_stays_unparsed(self):
        proposal = Proposal("bm90IGEgcHNidA==")
        with pytest.raises(MalformedProposalError):
            proposal.parse()
        assert proposal.state == ProposalState.UNPARSED
        assert proposal.psbt is None

    def test_failed_finalize_keeps_state(self, make_psbt, master_key):
        spend = (EXTERNAL, 10_000, PsbtInput())
        proposal = Proposal(serialize_psbt(make_psbt([spend], [(EXTERNAL, 9_000)])))
        proposal.parse()
        proposal.sign(PsbtSigner(master_key))
        with pytest.raises(InsufficientSignaturesError):
            proposal.finalize()
        assert proposal.state == ProposalState.SIGNED
        assert proposal.finalized is None

    def test_finalize_presigned(self, make_psbt, wpkh_spend, master_key):
        psbt = make_psbt([wpkh_spend()], [(EXTERNAL, 90_000)])
        PsbtSigner(master_key).sign(psbt)
        proposal = Proposal(serialize_psbt(psbt))
        proposal.parse()
        assert proposal.finalize().txid == psbt.tx.txid
