"""
Tests for the mv-wallet command line.
"""

import base64

import pytest
from loguru import logger
from typer.testing import CliRunner

from mvwallet.cli import app
from mvwallet.psbt.parser import parse_psbt, psbt_to_base64
from mvwallet.psbt.transaction import deserialize_transaction
from mvwallet.wallet import bip85
from mvwallet.wallet.script import p2wpkh_script

runner = CliRunner()

FIRST_ADDRESS = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    # setup_logging binds the runner's stderr, which is closed after invoke
    logger.remove()


@pytest.fixture
def env(test_mnemonic) -> dict:
    return {"MNEMONIC": test_mnemonic}


@pytest.fixture
def psbt_file(tmp_path, make_psbt, wpkh_spend):
    psbt = make_psbt([wpkh_spend(1)], [(p2wpkh_script(bytes(20)), 95_000)])
    path = tmp_path / "proposal.psbt"
    path.write_text(psbt_to_base64(psbt))
    return path


def invoke(args, env=None):
    env = {"MV_SINGLE_SIG_SCAN_WINDOW": "50", **(env or {})}
    return runner.invoke(app, args + ["--log-level", "ERROR"], env=env)


class TestAddresses:
    def test_first_address(self, env):
        result = invoke(["address"], env)
        assert result.exit_code == 0
        assert f"m/84'/0'/0'/0/0  {FIRST_ADDRESS}" in result.stdout

    def test_type_change_and_count(self, env):
        result = invoke(["address", "--type", "p2pkh", "--count", "3"], env)
        assert result.exit_code == 0
        lines = result.stdout.strip().splitlines()
        assert len(lines) == 3
        assert lines[0].endswith("1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA")

        result = invoke(["address", "--change"], env)
        assert "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el" in result.stdout

    def test_mnemonic_file(self, tmp_path, test_mnemonic):
        path = tmp_path / "seed.txt"
        path.write_text(test_mnemonic + "\n")
        result = invoke(["address", "--mnemonic-file", str(path)])
        assert FIRST_ADDRESS in result.stdout

    def test_missing_mnemonic(self):
        result = invoke(["address"], env={"MNEMONIC": ""})
        assert result.exit_code == 1

    def test_invalid_mnemonic(self):
        result = invoke(["address", "--mnemonic", "abandon abandon abandon"])
        assert result.exit_code == 1

    def test_check_address(self, env):
        result = invoke(["check-address", FIRST_ADDRESS], env)
        assert result.exit_code == 0
        assert "receive index 0" in result.stdout

        result = invoke(["check-address", "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"], env)
        assert result.exit_code == 2
        assert "does NOT belong" in result.stdout


class TestSigning:
    def test_inspect_without_wallet(self, psbt_file):
        result = invoke(["inspect", str(psbt_file)])
        assert result.exit_code == 0
        assert "Fee:      5,000 sats" in result.stdout
        assert "Ready:    no" in result.stdout

    def test_inspect_with_wallet(self, psbt_file, env):
        result = invoke(["inspect", str(psbt_file)], env)
        assert result.exit_code == 0
        assert "external" in result.stdout

    def test_sign(self, psbt_file, env):
        result = invoke(["sign", str(psbt_file)], env)
        assert result.exit_code == 0
        psbt = parse_psbt(result.stdout.strip())
        assert len(psbt.inputs[0].partial_sigs) == 1

    def test_sign_and_finalize(self, psbt_file, env):
        result = invoke(["sign", str(psbt_file), "--finalize"], env)
        assert result.exit_code == 0
        tx = deserialize_transaction(bytes.fromhex(result.stdout.strip()))
        assert len(tx.witnesses[0]) == 2

    def test_sign_then_finalize_command(self, psbt_file, env, tmp_path):
        signed = tmp_path / "signed.psbt"
        signed.write_text(invoke(["sign", str(psbt_file)], env).stdout)
        result = invoke(["finalize", str(signed)])
        assert result.exit_code == 0
        assert deserialize_transaction(bytes.fromhex(result.stdout.strip())).inputs

    def test_finalize_unsigned(self, psbt_file):
        assert invoke(["finalize", str(psbt_file)]).exit_code == 1

    def test_sign_with_qr_output(self, psbt_file, env):
        result = invoke(["sign", str(psbt_file), "--qr", "bbqr"], env)
        assert result.exit_code == 0
        assert result.stdout.startswith("B$")

    def test_invalid_order(self, psbt_file, env):
        assert invoke(["sign", str(psbt_file), "--order", "random"], env).exit_code == 1

    def test_invalid_sighash_type(self, tmp_path, make_psbt, wpkh_spend, env):
        psbt = make_psbt([wpkh_spend(1)], [(p2wpkh_script(bytes(20)), 95_000)])
        psbt.inputs[0].sighash_type = 0x05
        path = tmp_path / "bad.psbt"
        path.write_text(psbt_to_base64(psbt))
        assert invoke(["sign", str(path)], env).exit_code == 1

    def test_garbage_psbt(self, env):
        assert invoke(["sign", "not a psbt"], env).exit_code == 1


class TestMessages:
    def test_sign_and_verify(self, env):
        result = invoke(["sign-message", "hello world"], env)
        assert result.exit_code == 0
        lines = dict(line.split(":", 1) for line in result.stdout.strip().splitlines())
        address, signature = lines["Address"].strip(), lines["Signature"].strip()
        assert address == FIRST_ADDRESS

        verified = invoke(["verify-message", "hello world", signature, address])
        assert verified.exit_code == 0
        assert "VALID" in verified.stdout

        forged = invoke(["verify-message", "hello there", signature, address])
        assert forged.exit_code == 1
        assert "INVALID" in forged.stdout


class TestDerivedSecrets:
    def test_bip85_mnemonic(self, env, master_key):
        result = invoke(["bip85-mnemonic", "--words", "18", "--index", "2"], env)
        assert result.exit_code == 0
        assert result.stdout.strip() == bip85.derive_mnemonic(master_key, 18, 2)

    def test_bip85_password(self, env, master_key):
        result = invoke(["bip85-password", "--length", "40"], env)
        assert result.stdout.strip() == bip85.derive_password(master_key, 40)

    def test_bip85_bad_word_count(self, env):
        assert invoke(["bip85-mnemonic", "--words", "13"], env).exit_code == 1


class TestQR:
    def test_encode_decode(self, psbt_file, tmp_path):
        encoded = invoke(["qr-encode", str(psbt_file), "--density", "low"])
        assert encoded.exit_code == 0
        frames = encoded.stdout.strip().splitlines()
        assert len(frames) > 1
        assert all(f.startswith("UR:CRYPTO-PSBT/") for f in frames)

        scans = tmp_path / "frames.txt"
        scans.write_text("\n".join(reversed(frames)) + "\n")
        decoded = invoke(["qr-decode", str(scans)])
        assert decoded.exit_code == 0
        original = base64.b64decode(psbt_file.read_text())
        assert base64.b64decode(decoded.stdout.strip()) == original

    def test_decode_incomplete(self, psbt_file, tmp_path):
        args = ["qr-encode", str(psbt_file), "--density", "low"]
        frames = invoke(args).stdout.splitlines()
        scans = tmp_path / "frames.txt"
        scans.write_text(frames[0] + "\nhttps://example.com\n")
        assert invoke(["qr-decode", str(scans)]).exit_code == 1

    def test_unknown_format(self, psbt_file):
        assert invoke(["qr-encode", str(psbt_file), "--format", "gif"]).exit_code == 1

    def test_seedqr(self, env, test_mnemonic):
        result = invoke(["seedqr"], env)
        assert result.stdout.strip() == "0000" * 11 + "0003"

        compact = invoke(["seedqr", "--compact"], env)
        assert compact.stdout.strip() == "00" * 16

        decoded = invoke(["seedqr", "--decode", "0000" * 11 + "0003"])
        assert decoded.stdout.strip() == test_mnemonic
