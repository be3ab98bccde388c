"""
Tests for mvcore.models
"""

import pytest

from mvcore.models import MultisigScriptType, NetworkType, ScriptType


class TestNetworkType:
    def test_mainnet_parameters(self):
        assert NetworkType.MAINNET.is_mainnet
        assert NetworkType.MAINNET.coin_type == 0
        assert NetworkType.MAINNET.bech32_hrp == "bc"
        assert NetworkType.MAINNET.p2pkh_prefix == 0x00
        assert NetworkType.MAINNET.p2sh_prefix == 0x05

    @pytest.mark.parametrize(
        "network,hrp",
        [(NetworkType.TESTNET, "tb"), (NetworkType.SIGNET, "tb"), (NetworkType.REGTEST, "bcrt")],
    )
    def test_test_networks(self, network, hrp):
        assert not network.is_mainnet
        assert network.coin_type == 1
        assert network.bech32_hrp == hrp
        assert network.p2pkh_prefix == 0x6F
        assert network.p2sh_prefix == 0xC4

    def test_from_value(self):
        assert NetworkType("regtest") is NetworkType.REGTEST


class TestScriptType:
    @pytest.mark.parametrize(
        "script_type,purpose",
        [
            (ScriptType.P2PKH, 44),
            (ScriptType.P2SH_P2WPKH, 49),
            (ScriptType.P2WPKH, 84),
            (ScriptType.P2TR, 86),
        ],
    )
    def test_purpose_round_trip(self, script_type, purpose):
        assert script_type.purpose == purpose
        assert ScriptType.from_purpose(purpose) is script_type

    def test_unknown_purpose(self):
        with pytest.raises(ValueError):
            ScriptType.from_purpose(48)


def test_bip48_script_types():
    assert MultisigScriptType.P2WSH.bip48_script_type == 2
    assert MultisigScriptType.P2SH_P2WSH.bip48_script_type == 1
    assert MultisigScriptType.P2SH.bip48_script_type is None
