"""
Pytest configuration and fixtures for wallet tests.
"""

import hashlib

import pytest

from mvcore.crypto import hash160
from mvcore.models import NetworkType
from mvwallet.config import WalletSettings
from mvwallet.psbt.models import KeyOrigin, Psbt, PsbtInput, PsbtOutput
from mvwallet.psbt.transaction import Transaction, TxInput, TxOutput
from mvwallet.wallet.bip32 import HDKey, parse_path
from mvwallet.wallet.bip39 import mnemonic_to_seed
from mvwallet.wallet.script import p2wpkh_script
from mvwallet.wallet.session import WalletSession

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

# Second wallet used as a multisig cosigner
COSIGNER_MNEMONIC = "legal winner thank year wave sausage worth useful legal winner thank yellow"


@pytest.fixture
def test_mnemonic() -> str:
    """Test mnemonic (BIP39 test vector)"""
    return TEST_MNEMONIC


@pytest.fixture
def master_key(test_mnemonic: str) -> HDKey:
    return HDKey.from_seed(mnemonic_to_seed(test_mnemonic))


@pytest.fixture
def cosigner_key() -> HDKey:
    return HDKey.from_seed(mnemonic_to_seed(COSIGNER_MNEMONIC))


@pytest.fixture
def small_window_settings() -> WalletSettings:
    """Mainnet settings with scan windows small enough for fast tests."""
    return WalletSettings(
        network=NetworkType.MAINNET, single_sig_scan_window=20, multisig_scan_window=20
    )


@pytest.fixture
def session(test_mnemonic: str, small_window_settings: WalletSettings) -> WalletSession:
    wallet = WalletSession.from_mnemonic(test_mnemonic, settings=small_window_settings)
    wallet.add_single_sig_account()
    yield wallet
    wallet.close()


def _prevout_txid(n: int) -> bytes:
    return hashlib.sha256(f"prevout {n}".encode()).digest()


@pytest.fixture
def make_psbt():
    """
    Build an unsigned PSBT.

    Each spend is (scriptPubKey, value, PsbtInput) and each output is
    (scriptPubKey, value) or (scriptPubKey, value, PsbtOutput).
    """

    def build(spends, outputs) -> Psbt:
        tx_inputs = [TxInput(_prevout_txid(i), i, sequence=0xFFFFFFFD) for i in range(len(spends))]
        tx_outputs = [TxOutput(o[1], o[0]) for o in outputs]
        inputs = []
        for script, value, psbt_in in spends:
            psbt_in.witness_utxo = TxOutput(value, script)
            inputs.append(psbt_in)
        psbt_outputs = [o[2] if len(o) > 2 else PsbtOutput() for o in outputs]
        tx = Transaction(version=2, inputs=tx_inputs, outputs=tx_outputs, locktime=0)
        return Psbt(tx, inputs, psbt_outputs)

    return build


@pytest.fixture
def wpkh_spend(master_key):
    """P2WPKH spend of m/84'/0'/0'/0/<index> declaring its key origin."""

    def build(index: int = 0, value: int = 100_000, declared_path: str | None = None):
        path = f"m/84'/0'/0'/0/{index}"
        pubkey = master_key.derive(path).get_public_key_bytes()
        origin = KeyOrigin(master_key.fingerprint, parse_path(declared_path or path))
        psbt_in = PsbtInput(bip32_derivations={pubkey: origin})
        return p2wpkh_script(hash160(pubkey)), value, psbt_in

    return build
