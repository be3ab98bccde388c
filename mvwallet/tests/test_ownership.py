"""
Tests for the address ownership matcher.
"""

import pytest

from mvcore.constants import HARDENED
from mvcore.models import NetworkType, OutputClassification, ScriptType
from mvwallet.wallet.address import address_to_script
from mvwallet.wallet.descriptor import Cosigner, MultisigAccount, SingleSigAccount
from mvwallet.wallet.ownership import OwnershipMatcher, OwnershipMismatchError


@pytest.fixture
def wpkh_account(master_key) -> SingleSigAccount:
    return SingleSigAccount.from_master(master_key, ScriptType.P2WPKH, account_numbers=[0, 1])


@pytest.fixture
def matcher(wpkh_account, master_key) -> OwnershipMatcher:
    taproot = SingleSigAccount.from_master(master_key, ScriptType.P2TR)
    return OwnershipMatcher([wpkh_account, taproot], single_sig_window=10, multisig_window=5)


class TestClassify:
    def test_receive_address(self, matcher):
        result = matcher.classify("bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu")
        assert result.belongs
        assert result.branch == 0
        assert result.index == 0
        assert result.match.classification == OutputClassification.RECEIVE

    def test_change_vs_receive_at_same_index(self, matcher, wpkh_account):
        receive = wpkh_account.address_for_path(0, 0, 3)
        change = wpkh_account.address_for_path(0, 1, 3)

        receive_match = matcher.classify(receive).match
        change_match = matcher.classify(change).match
        assert (receive_match.branch, receive_match.index) == (0, 3)
        assert (change_match.branch, change_match.index) == (1, 3)
        assert not receive_match.is_change
        assert change_match.is_change

    def test_round_trip_over_accounts_and_branches(self, matcher, wpkh_account):
        for number in (0, 1):
            for branch in (0, 1):
                for index in (0, 4, 9):
                    address = matcher.address_for_path(wpkh_account, number, branch, index)
                    match = matcher.classify(address).match
                    assert match is not None
                    assert match.account.label == wpkh_account.label
                    assert (match.account_number, match.branch, match.index) == (
                        number,
                        branch,
                        index,
                    )

    def test_taproot_account(self, matcher):
        result = matcher.classify(
            "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr"
        )
        assert result.belongs
        assert result.account.script_type == ScriptType.P2TR

    def test_outside_window(self, matcher, wpkh_account):
        address = wpkh_account.address_for_path(0, 0, 10)
        assert not matcher.classify(address).belongs

    def test_foreign_and_invalid_addresses(self, matcher):
        assert not matcher.classify("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH").belongs
        assert not matcher.classify("garbage").belongs
        assert not matcher.classify(
            "tb1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        ).belongs

    def test_locate_raises(self, matcher):
        with pytest.raises(OwnershipMismatchError):
            matcher.locate("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH")

    def test_script_cache(self, matcher):
        matcher.classify("bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu")
        assert len(matcher.script_cache) >= 10


class TestHints:
    def test_declared_path(self, matcher, master_key):
        script = address_to_script("bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu")
        path = [84 + HARDENED, HARDENED, HARDENED, 0, 0]
        match = matcher.match_hint(script, master_key.fingerprint, path)
        assert match is not None
        assert match.index == 0

    def test_hint_outside_window_still_matches(self, matcher, master_key, wpkh_account):
        script = wpkh_account.script_for_path(0, 1, 500)
        path = [84 + HARDENED, HARDENED, HARDENED, 1, 500]
        match = matcher.match_hint(script, master_key.fingerprint, path)
        assert match is not None
        assert match.is_change

    def test_lying_hint(self, matcher, master_key, wpkh_account):
        script = wpkh_account.script_for_path(0, 0, 5)
        path = [84 + HARDENED, HARDENED, HARDENED, 0, 6]
        assert matcher.match_hint(script, master_key.fingerprint, path) is None

    def test_wrong_fingerprint(self, matcher):
        script = address_to_script("bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu")
        path = [84 + HARDENED, HARDENED, HARDENED, 0, 0]
        assert matcher.match_hint(script, b"\x00\x00\x00\x00", path) is None

    def test_classify_output_with_hint(self, matcher, master_key, wpkh_account):
        script = wpkh_account.script_for_path(1, 1, 2)
        path = [84 + HARDENED, HARDENED, 1 + HARDENED, 1, 2]
        classification, match = matcher.classify_output(script, [(master_key.fingerprint, path)])
        assert classification == OutputClassification.CHANGE
        assert match.account_number == 1

    def test_classify_external_output(self, matcher):
        script = address_to_script("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH")
        assert matcher.classify_output(script) == (OutputClassification.EXTERNAL, None)


class TestMultisigOwnership:
    @pytest.fixture
    def multisig(self, master_key, cosigner_key) -> MultisigAccount:
        path = "m/48'/1'/0'/2'"
        cosigners = [
            Cosigner(
                fingerprint=key.fingerprint.hex(),
                derivation_path=path,
                xpub=key.derive(path).neuter().serialize("tpub"),
            )
            for key in (master_key, cosigner_key)
        ]
        return MultisigAccount(
            threshold=1, network=NetworkType.TESTNET, cosigners=cosigners, branches=(0,)
        )

    def test_path_restriction_limits_branches(self, multisig):
        matcher = OwnershipMatcher([multisig], NetworkType.TESTNET, multisig_window=5)
        receive = multisig.address_for_path(0, 0, 2)
        change = multisig.address_for_path(0, 1, 2)
        assert matcher.classify(receive).belongs
        assert not matcher.classify(change).belongs

    def test_cosigner_hint(self, multisig, cosigner_key):
        matcher = OwnershipMatcher([multisig], NetworkType.TESTNET, multisig_window=5)
        script = multisig.script_for_path(0, 0, 42)
        path = [48 + HARDENED, 1 + HARDENED, HARDENED, 2 + HARDENED, 0, 42]
        match = matcher.match_hint(script, cosigner_key.fingerprint, path)
        assert match is not None
        assert match.index == 42
