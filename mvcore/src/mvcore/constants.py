"""
Bitcoin derivation and transport constants.

Path purposes follow BIP44/49/84/86 and BIP48 for multisig accounts.
Extended key version bytes follow BIP32 and SLIP-132.
"""

from __future__ import annotations

HARDENED = 0x80000000

# Single-sig purposes
PURPOSE_LEGACY = 44
PURPOSE_NESTED_SEGWIT = 49
PURPOSE_NATIVE_SEGWIT = 84
PURPOSE_TAPROOT = 86

# Multisig purposes
PURPOSE_MULTISIG = 48
PURPOSE_BIP45 = 45

# BIP48 script type path elements
BIP48_NESTED_SEGWIT = 1
BIP48_NATIVE_SEGWIT = 2

# Order used when a declared path does not reproduce the expected key
ALTERNATE_PURPOSES = (PURPOSE_NATIVE_SEGWIT, PURPOSE_LEGACY, PURPOSE_NESTED_SEGWIT, PURPOSE_TAPROOT)
ALTERNATE_BIP48_SCRIPT_TYPES = (BIP48_NATIVE_SEGWIT, BIP48_NESTED_SEGWIT)

COIN_TYPE_MAINNET = 0
COIN_TYPE_TESTNET = 1

RECEIVE_BRANCH = 0
CHANGE_BRANCH = 1

# Ownership scan windows (addresses per branch)
SINGLE_SIG_SCAN_WINDOW = 2000
MULTISIG_SCAN_WINDOW = 500

# Extended key version bytes: prefix -> (version, is_private)
EXTENDED_KEY_VERSIONS: dict[str, tuple[int, bool]] = {
    "xpub": (0x0488B21E, False),
    "xprv": (0x0488ADE4, True),
    "ypub": (0x049D7CB2, False),
    "yprv": (0x049D7878, True),
    "zpub": (0x04B24746, False),
    "zprv": (0x04B2430C, True),
    "Ypub": (0x0295B43F, False),
    "Yprv": (0x0295B005, True),
    "Zpub": (0x02AA7ED3, False),
    "Zprv": (0x02AA7A99, True),
    "tpub": (0x043587CF, False),
    "tprv": (0x04358394, True),
    "upub": (0x044A5262, False),
    "uprv": (0x044A4E28, True),
    "vpub": (0x045F1CF6, False),
    "vprv": (0x045F18BC, True),
    "Upub": (0x024289EF, False),
    "Uprv": (0x024285B5, True),
    "Vpub": (0x02575483, False),
    "Vprv": (0x02575048, True),
}

VERSION_TO_PREFIX: dict[int, str] = {
    version: prefix for prefix, (version, _) in EXTENDED_KEY_VERSIONS.items()
}

TESTNET_KEY_PREFIXES = frozenset(
    {"tpub", "tprv", "upub", "uprv", "vpub", "vprv", "Upub", "Uprv", "Vpub", "Vprv"}
)

# BIP85
BIP85_PURPOSE = 83696968
BIP85_HMAC_KEY = b"bip-entropy-from-k"
BIP85_APP_BIP39 = 39
BIP85_APP_HEX = 128169
BIP85_APP_XPRV = 2
BIP85_APP_PASSWORD_BASE64 = 707764
BIP85_ENGLISH = 0
BIP85_PASSWORD_MIN_LENGTH = 20
BIP85_PASSWORD_MAX_LENGTH = 86
BIP85_PASSWORD_DEFAULT_LENGTH = 24

# QR density presets: UR (min_fragment, max_fragment) and BBQr characters per frame
UR_FRAGMENT_LENGTHS: dict[str, tuple[int, int]] = {
    "low": (10, 100),
    "medium": (50, 250),
    "high": (100, 400),
}
BBQR_FRAME_CHARS: dict[str, int] = {
    "low": 350,
    "medium": 700,
    "high": 1200,
}
DEFAULT_QR_DENSITY = "medium"
