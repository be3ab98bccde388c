"""
Bytewords: one four-letter word per byte, with a CRC32 suffix.

Three styles share the same table: standard (space separated words), uri
(dash separated words) and minimal (first and last letter of each word,
concatenated), the form used inside UR frames.
"""

from __future__ import annotations

import zlib
from enum import Enum

from mvwallet.qr.errors import QRFormatError

WORDS = (
    "able acid also apex aqua arch atom aunt away axis back bald barn belt beta bias "
    "blue body brag brew bulb buzz calm cash cats chef city claw code cola cook cost "
    "crux curl cusp cyan dark data days deli dice diet door down draw drop drum dull "
    "duty each easy echo edge epic even exam exit eyes fact fair fern figs film fish "
    "fizz flap flew flux foxy free frog fuel fund gala game gear gems gift girl glow "
    "good gray grim guru gush gyro half hang hard hawk heat help high hill holy hope "
    "horn huts iced idea idle inch inky into iris iron item jade jazz join jolt jowl "
    "judo jugs jump junk jury keep keno kept keys kick kiln king kite kiwi knob lamb "
    "lava lazy leaf legs liar limp lion list logo loud love luau luck lung main many "
    "math maze memo menu meow mild mint miss monk nail navy need news next noon note "
    "numb obey oboe omit onyx open oval owls paid part peck play plus poem pool pose "
    "puff puma purr quad quiz race ramp real redo rich road rock roof ruby ruin runs "
    "rust safe saga scar sets silk skew slot soap solo song stub surf swan taco task "
    "taxi tent tied time tiny toil tomb toys trip tuna twin ugly undo unit urge user "
    "vast very veto vial vibe view visa void vows wall wand warm wasp wave waxy webs "
    "what when whiz wolf work yank yawn yell yoga yurt zaps zero zest zinc zone zoom"
).split()

_WORD_INDEX = {word: i for i, word in enumerate(WORDS)}
_MINIMAL_INDEX = {word[0] + word[-1]: i for i, word in enumerate(WORDS)}


class BytewordsStyle(str, Enum):
    STANDARD = "standard"
    URI = "uri"
    MINIMAL = "minimal"


def crc32(data: bytes) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF


def _with_checksum(data: bytes) -> bytes:
    return data + crc32(data).to_bytes(4, "big")


def encode(data: bytes, style: BytewordsStyle = BytewordsStyle.MINIMAL) -> str:
    body = _with_checksum(data)
    if style == BytewordsStyle.MINIMAL:
        return "".join(WORDS[b][0] + WORDS[b][-1] for b in body)
    separator = " " if style == BytewordsStyle.STANDARD else "-"
    return separator.join(WORDS[b] for b in body)


def decode(text: str, style: BytewordsStyle = BytewordsStyle.MINIMAL) -> bytes:
    """
    Decode bytewords and verify the trailing CRC32.

    Raises:
        QRFormatError: On unknown words or a checksum mismatch
    """
    text = text.strip().lower()
    try:
        if style == BytewordsStyle.MINIMAL:
            if len(text) % 2:
                raise QRFormatError("Odd length minimal bytewords")
            body = bytes(_MINIMAL_INDEX[text[i : i + 2]] for i in range(0, len(text), 2))
        else:
            separator = " " if style == BytewordsStyle.STANDARD else "-"
            body = bytes(_WORD_INDEX[word] for word in text.split(separator))
    except KeyError as e:
        raise QRFormatError(f"Invalid byteword: {e.args[0]}") from e

    if len(body) < 4:
        raise QRFormatError("Bytewords too short for checksum")
    data, checksum = body[:-4], body[-4:]
    if crc32(data).to_bytes(4, "big") != checksum:
        raise QRFormatError("Bytewords checksum mismatch")
    return data
