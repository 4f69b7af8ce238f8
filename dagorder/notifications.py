"""Messages exchanged between the runway, the consensus and the network."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from dagorder.signed import UncheckedSigned
from dagorder.units import PreUnit, Unit, UnitCoord


@dataclass(frozen=True)
class Recipient:
    """Addressee of an outgoing message: one node, or everyone when ``target`` is None."""

    target: Optional[int] = None

    @classmethod
    def everyone(cls) -> "Recipient":
        return cls(None)

    @classmethod
    def node(cls, index: int) -> "Recipient":
        if index < 0:
            raise ValueError(f"node index {index} is negative")
        return cls(index)

    @property
    def is_everyone(self) -> bool:
        return self.target is None


# Notifications from the runway to the consensus.


@dataclass(frozen=True)
class NewUnits:
    """Units for the consensus, from a multicast or from a response to a request."""

    units: Tuple[Unit, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "units", tuple(self.units))


@dataclass(frozen=True)
class UnitParents:
    """Decoded parents of a unit whose control hash did not match."""

    unit_hash: bytes
    parent_hashes: Tuple[bytes, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "parent_hashes", tuple(self.parent_hashes))


NotificationIn = Union[NewUnits, UnitParents]


# Notifications from the consensus to the runway.


@dataclass(frozen=True)
class CreatedPreUnit:
    """A pre-unit created by this node, to be disseminated."""

    pre_unit: PreUnit
    parent_hashes: Tuple[bytes, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "parent_hashes", tuple(self.parent_hashes))


@dataclass(frozen=True)
class MissingUnits:
    """Coordinates of units that are needed but missing."""

    coords: Tuple[UnitCoord, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "coords", tuple(self.coords))


@dataclass(frozen=True)
class WrongControlHash:
    """The parents of this unit do not agree with its control hash."""

    unit_hash: bytes


@dataclass(frozen=True)
class AddedToDag:
    """A unit was added to the DAG; its decoded parents are provided."""

    unit_hash: bytes
    parent_hashes: Tuple[bytes, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "parent_hashes", tuple(self.parent_hashes))


NotificationOut = Union[CreatedPreUnit, MissingUnits, WrongControlHash, AddedToDag]


# Requests for units.


@dataclass(frozen=True)
class CoordRequest:
    coord: UnitCoord


@dataclass(frozen=True)
class ParentsRequest:
    unit_hash: bytes


@dataclass(frozen=True)
class NewestUnitRequest:
    salt: int


Request = Union[CoordRequest, ParentsRequest, NewestUnitRequest]


@dataclass(frozen=True)
class NewestUnitReport:
    """A node's answer about the newest unit it holds from the requester."""

    requester: int
    responder: int
    unit: Optional[UncheckedSigned]
    salt: int

    def __post_init__(self) -> None:
        if not 0 <= self.salt < 2**64:
            raise ValueError(f"salt {self.salt} out of range")

    def hash(self) -> bytes:
        """Bytes that are signed: requester, responder, optional unit content and salt."""
        parts = [struct.pack("<II", self.requester, self.responder)]
        if self.unit is None:
            parts.append(b"\x00")
        else:
            parts.append(b"\x01" + self.unit.signable.encode())
        parts.append(struct.pack("<Q", self.salt))
        return b"".join(parts)

    def index(self) -> int:
        return self.responder


# Responses to requests.


@dataclass(frozen=True)
class CoordResponse:
    unit: UncheckedSigned


@dataclass(frozen=True)
class ParentsResponse:
    unit_hash: bytes
    parents: Tuple[UncheckedSigned, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "parents", tuple(self.parents))


@dataclass(frozen=True)
class NewestUnitResponse:
    response: UncheckedSigned


Response = Union[CoordResponse, ParentsResponse, NewestUnitResponse]


# Messages from the runway to the network.


@dataclass(frozen=True)
class OutgoingNewUnit:
    unit: UncheckedSigned


@dataclass(frozen=True)
class OutgoingRequest:
    request: Request
    recipient: Recipient


@dataclass(frozen=True)
class OutgoingResponse:
    response: Response
    recipient: int


RunwayNotificationOut = Union[OutgoingNewUnit, OutgoingRequest, OutgoingResponse]


# Messages from the network to the runway.


@dataclass(frozen=True)
class IncomingNewUnit:
    unit: UncheckedSigned


@dataclass(frozen=True)
class IncomingRequest:
    request: Request
    sender: int


@dataclass(frozen=True)
class IncomingResponse:
    response: Response


RunwayNotificationIn = Union[IncomingNewUnit, IncomingRequest, IncomingResponse]