"""
Tests for the wallet session.
"""

import pytest

from mvcore.models import NetworkType, ScriptType
from mvwallet.config import WalletSettings
from mvwallet.psbt.parser import serialize_psbt
from mvwallet.psbt.proposal import ProposalState
from mvwallet.wallet import bip85
from mvwallet.wallet.bip32 import DerivationError
from mvwallet.wallet.descriptor import DescriptorError, SingleSigAccount
from mvwallet.wallet.message import SignatureEnvelope, verify_message
from mvwallet.wallet.script import p2wpkh_script
from mvwallet.wallet.session import WalletSession


class TestLifecycle:
    def test_from_master_xprv(self, master_key, small_window_settings):
        wallet = WalletSession(master_xprv=master_key.serialize(), settings=small_window_settings)
        assert wallet.fingerprint == master_key.fingerprint
        assert not wallet.is_decoy

    def test_seed_or_xprv(self, master_key):
        with pytest.raises(ValueError):
            WalletSession()
        with pytest.raises(ValueError):
            WalletSession(b"\x00" * 32, master_xprv=master_key.serialize())

    def test_rejects_non_master_keys(self, master_key):
        with pytest.raises(DerivationError):
            WalletSession(master_xprv=master_key.derive("m/0'").serialize())
        with pytest.raises(DerivationError):
            WalletSession(master_xprv=master_key.neuter().serialize())

    def test_close_scrubs_and_blocks(self, test_mnemonic):
        wallet = WalletSession.from_mnemonic(test_mnemonic, is_decoy=True)
        assert wallet.is_decoy
        seed = wallet._seed
        wallet.close()

        assert seed == bytearray(len(seed))
        assert wallet.closed
        with pytest.raises(RuntimeError):
            wallet.master
        with pytest.raises(RuntimeError):
            wallet.add_single_sig_account()
        with pytest.raises(RuntimeError):
            wallet.bip85_mnemonic()
        wallet.close()

    def test_context_manager(self, test_mnemonic):
        with WalletSession.from_mnemonic(test_mnemonic) as wallet:
            assert wallet.fingerprint.hex() == "73c5da0a"
        assert wallet.closed

    def test_passphrase_changes_wallet(self, test_mnemonic):
        with WalletSession.from_mnemonic(test_mnemonic, "TREZOR") as wallet:
            assert wallet.fingerprint.hex() != "73c5da0a"


class TestAccounts:
    def test_duplicate_label(self, session):
        with pytest.raises(DescriptorError, match="already exists"):
            session.add_single_sig_account()

    def test_network_mismatch(self, session, master_key):
        testnet = SingleSigAccount.from_master(
            master_key, ScriptType.P2TR, NetworkType.TESTNET
        )
        with pytest.raises(DescriptorError):
            session.add_account(testnet)

    def test_add_and_remove_account_number(self, session, master_key):
        address = SingleSigAccount.from_master(
            master_key, ScriptType.P2WPKH, account_numbers=[1]
        ).address_for_path(1, 0, 0)
        assert not session.classify(address).belongs

        updated = session.add_account_number("p2wpkh wallet", 1)
        assert updated.account_numbers == [0, 1]
        match = session.classify(address).match
        assert match.account_number == 1

        session.remove_account_number("p2wpkh wallet", 1)
        assert not session.classify(address).belongs

    def test_remove_account(self, session):
        session.add_single_sig_account(ScriptType.P2TR)
        assert len(session.accounts) == 2
        session.remove_account("p2tr wallet")
        assert [a.label for a in session.accounts] == ["p2wpkh wallet"]
        with pytest.raises(DescriptorError):
            session.remove_account("p2tr wallet")

    def test_address_for_path(self, session):
        account = session.accounts[0]
        assert session.address_for_path(account, 0, 0, 0) == (
            "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        )

    def test_testnet_session(self, test_mnemonic):
        settings = WalletSettings(network=NetworkType.TESTNET, single_sig_scan_window=5)
        with WalletSession.from_mnemonic(test_mnemonic, settings=settings) as wallet:
            account = wallet.add_single_sig_account()
            address = wallet.address_for_path(account, 0, 0, 0)
            assert address.startswith("tb1q")
            assert wallet.classify(address).belongs


class TestOperations:
    def test_sign_message(self, session):
        address, signature = session.sign_message("hello", "m/84'/0'/0'/0/0")
        assert address == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        assert verify_message("hello", signature, address)

    def test_sign_message_legacy_path(self, session):
        address, signature = session.sign_message("hello", "m/44'/0'/0'/0/0")
        assert address == "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"
        assert verify_message("hello", signature, address)

    def test_sign_message_taproot_bip137(self, session):
        address, signature = session.sign_message(
            "hello", "m/86'/0'/0'/0/0", SignatureEnvelope.BIP137
        )
        assert address.startswith("bc1p")
        assert verify_message("hello", signature, address)

    @pytest.mark.parametrize("path", ["m", "m/0/1", "m/99'/0'/0'"])
    def test_sign_message_bad_path(self, session, path):
        with pytest.raises(DerivationError):
            session.sign_message("hello", path)

    def test_bip85(self, session, master_key):
        assert session.bip85_mnemonic(24, 3) == bip85.derive_mnemonic(master_key, 24, 3)
        assert session.bip85_password(30) == bip85.derive_password(master_key, 30)

    def test_proposal_round(self, session, make_psbt, wpkh_spend):
        psbt = make_psbt([wpkh_spend(2)], [(p2wpkh_script(bytes(20)), 99_000)])
        proposal = session.open_proposal(serialize_psbt(psbt))
        assert proposal.state == ProposalState.PARSED

        result = session.sign_proposal(proposal)
        assert result.signed_inputs == [0]
        assert proposal.finalize().txid == psbt.tx.txid
