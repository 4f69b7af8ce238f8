"""Units of the DAG: coordinates, control hashes, pre-units and full units."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Sequence

Hasher = Callable[[bytes], bytes]

_MAX_ROUND = 0xFFFF
_MAX_INDEX = 0xFFFFFFFF


def hash64(data: bytes) -> bytes:
    """Hash ``data`` to eight bytes."""
    return hashlib.blake2b(bytes(data), digest_size=8).digest()


def _encode_bytes(value: bytes) -> bytes:
    return struct.pack("<I", len(value)) + bytes(value)


def encode_parent_map(parent_map: Sequence[Optional[bytes]]) -> bytes:
    """Encode a per-node map of optional parent hashes."""
    parts = [struct.pack("<I", len(parent_map))]
    for entry in parent_map:
        if entry is None:
            parts.append(b"\x00")
        else:
            parts.append(b"\x01" + _encode_bytes(entry))
    return b"".join(parts)


class _Reader:
    """Sequential reader over encoded bytes."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise ValueError("encoded data is truncated")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def unpack(self, fmt: str) -> tuple:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))

    def read_bytes(self) -> bytes:
        (size,) = self.unpack("<I")
        return self.take(size)

    def finish(self) -> None:
        if self._pos != len(self._data):
            raise ValueError("trailing bytes after encoded data")


@dataclass(frozen=True)
class UnitCoord:
    """Position of a unit in the DAG: its round and its creator."""

    round: int
    creator: int

    def __post_init__(self) -> None:
        if not 0 <= self.round <= _MAX_ROUND:
            raise ValueError(f"round {self.round} out of range")
        if not 0 <= self.creator <= _MAX_INDEX:
            raise ValueError(f"creator {self.creator} out of range")

    def encode(self) -> bytes:
        return struct.pack("<HI", self.round, self.creator)

    @classmethod
    def _read(cls, reader: _Reader) -> "UnitCoord":
        round_, creator = reader.unpack("<HI")
        return cls(round_, creator)


@dataclass(frozen=True)
class ControlHash:
    """Combined hash of a unit's parents with the mask of the parents' creators."""

    parents_mask: tuple
    combined_hash: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "parents_mask", tuple(bool(b) for b in self.parents_mask))
        object.__setattr__(self, "combined_hash", bytes(self.combined_hash))

    @classmethod
    def from_parents(
        cls, parent_map: Sequence[Optional[bytes]], hasher: Hasher = hash64
    ) -> "ControlHash":
        """Build the control hash of a map of optional parent hashes."""
        return cls(
            tuple(entry is not None for entry in parent_map),
            cls.combine_hashes(parent_map, hasher),
        )

    @staticmethod
    def combine_hashes(
        parent_map: Sequence[Optional[bytes]], hasher: Hasher = hash64
    ) -> bytes:
        return hasher(encode_parent_map(parent_map))

    def parents(self) -> Iterator[int]:
        """Indices of the nodes whose units are parents."""
        return (i for i, present in enumerate(self.parents_mask) if present)

    def n_parents(self) -> int:
        return sum(self.parents_mask)

    def n_members(self) -> int:
        return len(self.parents_mask)

    def encode(self) -> bytes:
        mask = bytes(1 if present else 0 for present in self.parents_mask)
        return struct.pack("<I", len(mask)) + mask + _encode_bytes(self.combined_hash)

    @classmethod
    def _read(cls, reader: _Reader) -> "ControlHash":
        (size,) = reader.unpack("<I")
        mask = reader.take(size)
        if any(b not in (0, 1) for b in mask):
            raise ValueError("invalid parents mask")
        return cls(tuple(b == 1 for b in mask), reader.read_bytes())

    @classmethod
    def decode(cls, data: bytes) -> "ControlHash":
        reader = _Reader(data)
        result = cls._read(reader)
        reader.finish()
        return result


@dataclass(frozen=True)
class PreUnit:
    """The simplest form of a unit: coordinates and a control hash."""

    coord: UnitCoord
    control_hash: ControlHash

    @property
    def creator(self) -> int:
        return self.coord.creator

    @property
    def round(self) -> int:
        return self.coord.round

    def n_parents(self) -> int:
        return self.control_hash.n_parents()

    def n_members(self) -> int:
        return self.control_hash.n_members()

    def encode(self) -> bytes:
        return self.coord.encode() + self.control_hash.encode()

    @classmethod
    def _read(cls, reader: _Reader) -> "PreUnit":
        coord = UnitCoord._read(reader)
        return cls(coord, ControlHash._read(reader))

    @classmethod
    def decode(cls, data: bytes) -> "PreUnit":
        reader = _Reader(data)
        result = cls._read(reader)
        reader.finish()
        return result


@dataclass(frozen=True)
class FullUnit:
    """A pre-unit with its data and session; its hash is computed once and cached."""

    pre_unit: PreUnit
    data: bytes
    session_id: int
    hasher: Hasher = field(default=hash64, compare=False, repr=False)
    _hash: Optional[bytes] = field(default=None, init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", bytes(self.data))
        if not 0 <= self.session_id < 2**64:
            raise ValueError(f"session id {self.session_id} out of range")

    @property
    def creator(self) -> int:
        return self.pre_unit.creator

    @property
    def round(self) -> int:
        return self.pre_unit.round

    @property
    def control_hash(self) -> ControlHash:
        return self.pre_unit.control_hash

    @property
    def coord(self) -> UnitCoord:
        return self.pre_unit.coord

    def hash(self) -> bytes:
        if self._hash is None:
            object.__setattr__(self, "_hash", self.hasher(self.encode()))
        return self._hash

    def index(self) -> int:
        return self.creator

    def unit(self) -> "Unit":
        return Unit(self.pre_unit, self.hash())

    def encode(self) -> bytes:
        return (
            self.pre_unit.encode()
            + _encode_bytes(self.data)
            + struct.pack("<Q", self.session_id)
        )

    @classmethod
    def decode(cls, data: bytes, hasher: Hasher = hash64) -> "FullUnit":
        reader = _Reader(data)
        pre_unit = PreUnit._read(reader)
        payload = reader.read_bytes()
        (session_id,) = reader.unpack("<Q")
        reader.finish()
        return cls(pre_unit, payload, session_id, hasher)


@dataclass(frozen=True)
class Unit:
    """A pre-unit together with the hash of its full unit."""

    pre_unit: PreUnit
    hash: bytes

    @property
    def creator(self) -> int:
        return self.pre_unit.creator

    @property
    def round(self) -> int:
        return self.pre_unit.round

    @property
    def control_hash(self) -> ControlHash:
        return self.pre_unit.control_hash