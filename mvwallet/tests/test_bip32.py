"""
Tests for BIP32 derivation and extended key serialization.
"""

import pytest

from mvcore.constants import HARDENED
from mvwallet.wallet.bip32 import DerivationError, HDKey, format_path, parse_path

# BIP32 test vector 1
VECTOR1_SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")
VECTOR1_M_XPRV = (
    "xprv9s21ZrQH143K3QTDL4LXw2F7HEK3wJUD2nW2nRk4stbPy6cq3jP"
    "PqjiChkVvvNKmPGJxWUtg6LnF5kejMRNNU3TGtRBeJgk33yuGBxrMPHi"
)
VECTOR1_M_XPUB = (
    "xpub661MyMwAqRbcFtXgS5sYJABqqG9YLmC4Q1Rdap9gSE8NqtwybGh"
    "ePY2gZ29ESFjqJoCu1Rupje8YtGqsefD265TMg7usUDFdp6W1EGMcet8"
)
VECTOR1_M0H_XPRV = (
    "xprv9uHRZZhk6KAJC1avXpDAp4MDc3sQKNxDiPvvkX8Br5ngLNv1Txv"
    "Uxt4cV1rGL5hj6KCesnDYUhd7oWgT11eZG7XnxHrnYeSvkzY7d2bhkJ7"
)
VECTOR1_M0H1_XPUB = (
    "xpub6ASuArnXKPbfEwhqN6e3mwBcDTgzisQN1wXN9BJcM47sSikHjJf"
    "3UFHKkNAWbWMiGj7Wf5uMash7SyYq527Hqck2AxYysAA7xmALppuCkwQ"
)

BIP84_ACCOUNT_ZPUB = (
    "zpub6rFR7y4Q2AijBEqTUquhVz398htDFrtymD9xYYfG1m4wAcvPhXN"
    "fE3EfH1r1ADqtfSdVCToUG868RvUUkgDKf31mGDtKsAYz2oz2AGutZYs"
)


class TestPathNotation:
    def test_parse(self):
        assert parse_path("m/84'/0'/0'/0/5") == [
            84 + HARDENED,
            HARDENED,
            HARDENED,
            0,
            5,
        ]

    def test_hardened_markers(self):
        assert parse_path("m/44h/1H/2'") == parse_path("44'/1'/2'")

    def test_master(self):
        assert parse_path("m") == []

    def test_format_round_trip(self):
        assert format_path(parse_path("m/48'/0'/0'/2'/1/7")) == "m/48'/0'/0'/2'/1/7"

    @pytest.mark.parametrize("path", ["m/x", "m/-1", "m/2147483648", "m/1''"])
    def test_invalid(self, path):
        with pytest.raises(DerivationError):
            parse_path(path)


class TestVector1:
    def test_master(self):
        master = HDKey.from_seed(VECTOR1_SEED)
        assert master.serialize() == VECTOR1_M_XPRV
        assert master.neuter().serialize() == VECTOR1_M_XPUB
        assert master.fingerprint.hex() == "3442193e"

    def test_hardened_child(self):
        master = HDKey.from_seed(VECTOR1_SEED)
        assert master.derive("m/0'").serialize() == VECTOR1_M0H_XPRV

    def test_public_child_from_private_parent(self):
        master = HDKey.from_seed(VECTOR1_SEED)
        assert master.derive("m/0'/1").neuter().serialize() == VECTOR1_M0H1_XPUB

    def test_public_derivation_matches_private(self):
        parent = HDKey.from_seed(VECTOR1_SEED).derive("m/0'")
        public_child = parent.neuter().derive_child(1)
        assert public_child.serialize() == VECTOR1_M0H1_XPUB


class TestExtendedKeys:
    def test_parse_round_trip(self):
        key = HDKey.from_extended_key(VECTOR1_M0H_XPRV)
        assert key.is_private
        assert key.depth == 1
        assert key.child_index == HARDENED
        assert key.serialize() == VECTOR1_M0H_XPRV

    def test_slip132_prefix(self, master_key):
        account = master_key.derive("m/84'/0'/0'").neuter()
        assert account.serialize("zpub") == BIP84_ACCOUNT_ZPUB
        parsed = HDKey.from_extended_key(BIP84_ACCOUNT_ZPUB)
        assert parsed.get_public_key_bytes() == account.get_public_key_bytes()
        assert not parsed.is_private

    def test_bad_checksum(self):
        with pytest.raises(DerivationError):
            HDKey.from_extended_key(VECTOR1_M_XPUB[:-1] + "9")

    def test_unknown_prefix(self, master_key):
        with pytest.raises(DerivationError):
            master_key.serialize("wpub")

    def test_private_prefix_on_public_node(self, master_key):
        with pytest.raises(DerivationError):
            master_key.neuter().serialize("xprv")


class TestDerivation:
    def test_bip84_first_pubkey(self, master_key):
        key = master_key.derive("m/84'/0'/0'/0/0")
        assert key.get_public_key_bytes().hex() == (
            "0330d54fd0dd420a6e5f8d3624f5f3482cae350f79d5f0753bf5beef9c2d91af3c"
        )

    def test_hardened_from_public_fails(self, master_key):
        with pytest.raises(DerivationError, match="hardened"):
            master_key.neuter().derive("m/0'")

    def test_index_out_of_range(self, master_key):
        with pytest.raises(DerivationError):
            master_key.derive_child(2**32)

    def test_seed_length(self):
        with pytest.raises(DerivationError):
            HDKey.from_seed(b"\x00" * 15)

    def test_public_node_has_no_private_key(self, master_key):
        with pytest.raises(DerivationError):
            master_key.neuter().private_key

    def test_derivation_is_immutable(self, master_key):
        before = master_key.serialize()
        master_key.derive("m/1/2/3")
        assert master_key.serialize() == before
