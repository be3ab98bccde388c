"""
Fountain code used by multi-part UR (BC-UR v2).

A message is split into seq_len equal fragments. Parts 1..seq_len carry the
fragments in order; later parts carry the XOR of a pseudo-random subset
chosen by a Xoshiro256** generator seeded from (seq_num, checksum), so any
sufficiently large set of parts, in any order, rebuilds the message.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass

import cbor2
from loguru import logger

from mvwallet.qr.bytewords import crc32
from mvwallet.qr.errors import QRFormatError

MASK64 = 0xFFFFFFFFFFFFFFFF
MASK32 = 0xFFFFFFFF


def _rotl(x: int, k: int) -> int:
    return ((x << k) | (x >> (64 - k))) & MASK64


class Xoshiro256:
    """Xoshiro256** seeded with the SHA-256 of a byte string."""

    def __init__(self, seed: bytes):
        digest = hashlib.sha256(seed).digest()
        self.s = [int.from_bytes(digest[i * 8 : i * 8 + 8], "big") for i in range(4)]

    def next(self) -> int:
        s = self.s
        result = (_rotl((s[1] * 5) & MASK64, 7) * 9) & MASK64
        t = (s[1] << 17) & MASK64
        s[2] ^= s[0]
        s[3] ^= s[1]
        s[1] ^= s[2]
        s[0] ^= s[3]
        s[2] ^= t
        s[3] = _rotl(s[3], 45)
        return result

    def next_double(self) -> float:
        return self.next() / (MASK64 + 1)

    def next_int(self, low: int, high: int) -> int:
        return int(self.next_double() * (high - low + 1)) + low


class RandomSampler:
    """Walker/Vose alias method over a fixed discrete distribution."""

    def __init__(self, probabilities: list[float]):
        if any(p < 0 for p in probabilities):
            raise ValueError("Negative probability")
        total = sum(probabilities)
        if total <= 0:
            raise ValueError("Probabilities must sum above zero")

        n = len(probabilities)
        scaled = [p * n / total for p in probabilities]
        small = []
        large = []
        for i in range(n - 1, -1, -1):
            (small if scaled[i] < 1 else large).append(i)

        self.probs = [0.0] * n
        self.aliases = [0] * n
        while small and large:
            a = small.pop()
            g = large.pop()
            self.probs[a] = scaled[a]
            self.aliases[a] = g
            scaled[g] += scaled[a] - 1
            (small if scaled[g] < 1 else large).append(g)
        while large:
            self.probs[large.pop()] = 1.0
        while small:
            self.probs[small.pop()] = 1.0

    def next(self, rng: Xoshiro256) -> int:
        r1 = rng.next_double()
        r2 = rng.next_double()
        i = int(len(self.probs) * r1)
        return i if r2 < self.probs[i] else self.aliases[i]


def _shuffled(items: list[int], rng: Xoshiro256) -> list[int]:
    remaining = list(items)
    result = []
    while remaining:
        result.append(remaining.pop(rng.next_int(0, len(remaining) - 1)))
    return result


def choose_fragments(seq_num: int, seq_len: int, checksum: int) -> frozenset[int]:
    """Fragment indexes mixed into part seq_num."""
    if seq_num <= seq_len:
        return frozenset([seq_num - 1])
    rng = Xoshiro256(seq_num.to_bytes(4, "big") + checksum.to_bytes(4, "big"))
    sampler = RandomSampler([1.0 / i for i in range(1, seq_len + 1)])
    degree = sampler.next(rng) + 1
    return frozenset(_shuffled(list(range(seq_len)), rng)[:degree])


def find_nominal_fragment_length(
    message_len: int, min_fragment_len: int, max_fragment_len: int
) -> int:
    """Smallest fragment count whose fragment length fits max_fragment_len."""
    max_fragment_count = max(1, message_len // min_fragment_len)
    fragment_len = message_len
    for fragment_count in range(1, max_fragment_count + 1):
        fragment_len = math.ceil(message_len / fragment_count)
        if fragment_len <= max_fragment_len:
            break
    return max(fragment_len, 1)


def _xor(a: bytes, b: bytes) -> bytes:
    return bytes(x ^ y for x, y in zip(a, b))


@dataclass(frozen=True)
class FountainPart:
    seq_num: int
    seq_len: int
    message_len: int
    checksum: int
    data: bytes

    def to_cbor(self) -> bytes:
        return cbor2.dumps(
            [self.seq_num, self.seq_len, self.message_len, self.checksum, self.data]
        )

    @classmethod
    def from_cbor(cls, data: bytes) -> FountainPart:
        try:
            fields = cbor2.loads(data)
        except (cbor2.CBORDecodeError, ValueError) as e:
            raise QRFormatError(f"Invalid fountain part: {e}") from e
        if (
            not isinstance(fields, list)
            or len(fields) != 5
            or not all(isinstance(v, int) for v in fields[:4])
            or not isinstance(fields[4], bytes)
        ):
            raise QRFormatError("Invalid fountain part structure")
        seq_num, seq_len, message_len, checksum, payload = fields
        if seq_num < 1 or seq_len < 1 or message_len < 1 or not payload:
            raise QRFormatError("Invalid fountain part header")
        return cls(seq_num, seq_len, message_len, checksum, payload)


class FountainEncoder:
    def __init__(self, message: bytes, max_fragment_len: int, min_fragment_len: int = 10):
        if not message:
            raise ValueError("Cannot encode an empty message")
        self.message_len = len(message)
        self.checksum = crc32(message)
        self.fragment_len = find_nominal_fragment_length(
            len(message), min_fragment_len, max_fragment_len
        )
        padded_len = math.ceil(len(message) / self.fragment_len) * self.fragment_len
        padded = message.ljust(padded_len, b"\x00")
        self.fragments = [
            padded[i : i + self.fragment_len] for i in range(0, padded_len, self.fragment_len)
        ]
        self.seq_num = 0

    @property
    def seq_len(self) -> int:
        return len(self.fragments)

    @property
    def is_single_part(self) -> bool:
        return self.seq_len == 1

    def next_part(self) -> FountainPart:
        self.seq_num = (self.seq_num + 1) & MASK32
        indexes = choose_fragments(self.seq_num, self.seq_len, self.checksum)
        mixed = bytes(self.fragment_len)
        for i in indexes:
            mixed = _xor(mixed, self.fragments[i])
        return FountainPart(self.seq_num, self.seq_len, self.message_len, self.checksum, mixed)


@dataclass(frozen=True)
class _Block:
    indexes: frozenset[int]
    data: bytes

    @property
    def is_simple(self) -> bool:
        return len(self.indexes) == 1


class FountainDecoder:
    """Accumulates fountain parts until the message is rebuilt."""

    def __init__(self):
        self.expected: tuple[int, int, int, int] | None = None
        self.received_indexes: set[int] = set()
        self.simple: dict[frozenset[int], _Block] = {}
        self.mixed: dict[frozenset[int], _Block] = {}
        self.queue: list[_Block] = []
        self.processed_parts = 0
        self.result: bytes | None = None

    @property
    def expected_part_count(self) -> int:
        return self.expected[0] if self.expected else 0

    def is_complete(self) -> bool:
        return self.result is not None

    @property
    def estimated_progress(self) -> float:
        if self.is_complete():
            return 1.0
        if not self.expected:
            return 0.0
        return min(0.99, self.processed_parts / (self.expected_part_count * 1.75))

    def _validate(self, part: FountainPart) -> None:
        header = (part.seq_len, part.message_len, part.checksum, len(part.data))
        if self.expected is None:
            self.expected = header
        elif header != self.expected:
            raise QRFormatError(
                f"Part {part.seq_num} does not belong to this message "
                f"(expected {self.expected[0]} fragments, got {part.seq_len})"
            )

    def receive_part(self, part: FountainPart) -> bool:
        """
        Feed one part. Returns False when the part added nothing (already
        complete).

        Raises:
            QRFormatError: If the part belongs to a different message
        """
        if self.is_complete():
            return False
        self._validate(part)
        indexes = choose_fragments(part.seq_num, part.seq_len, part.checksum)
        self.queue.append(_Block(indexes, part.data))
        while not self.is_complete() and self.queue:
            block = self.queue.pop(0)
            if block.is_simple:
                self._process_simple(block)
            else:
                self._process_mixed(block)
        self.processed_parts += 1
        return True

    @staticmethod
    def _reduce(a: _Block, b: _Block) -> _Block:
        if b.indexes < a.indexes:
            return _Block(a.indexes - b.indexes, _xor(a.data, b.data))
        return a

    def _reduce_mixed_by(self, block: _Block) -> None:
        remaining = {}
        for mixed in self.mixed.values():
            reduced = self._reduce(mixed, block)
            if reduced.is_simple:
                self.queue.append(reduced)
            else:
                remaining[reduced.indexes] = reduced
        self.mixed = remaining

    def _process_simple(self, block: _Block) -> None:
        (index,) = block.indexes
        if index in self.received_indexes:
            return
        self.simple[block.indexes] = block
        self.received_indexes.add(index)

        seq_len, message_len, checksum, _ = self.expected
        if len(self.received_indexes) == seq_len:
            joined = b"".join(self.simple[frozenset([i])].data for i in range(seq_len))
            message = joined[:message_len]
            if crc32(message) != checksum:
                raise QRFormatError("Reassembled message failed its checksum")
            self.result = message
            logger.debug(f"Fountain message of {message_len} bytes complete")
        else:
            self._reduce_mixed_by(block)

    def _process_mixed(self, block: _Block) -> None:
        if block.indexes in self.mixed:
            return
        for other in list(self.simple.values()) + list(self.mixed.values()):
            block = self._reduce(block, other)
        if block.is_simple:
            self.queue.append(block)
        elif block.indexes:
            self._reduce_mixed_by(block)
            self.mixed[block.indexes] = block
