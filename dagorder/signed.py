"""Signing primitives: signable data, key boxes, signatures and multisignatures."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def signable_hash(signable: Any) -> bytes:
    """Return the bytes that are signed for ``signable``.

    Byte-like values are their own hash; any other object must provide ``hash()``.
    """
    if isinstance(signable, (bytes, bytearray, memoryview)):
        return bytes(signable)
    return bytes(signable.hash())


class PartialMultisignature(Protocol):
    """A signature aggregate to which single signatures can be added."""

    def add_signature(self, signature: Any, index: int) -> "PartialMultisignature":
        ...


class KeyBox(ABC):
    """Signs messages with one private key and verifies signatures of all nodes."""

    @abstractmethod
    def index(self) -> int:
        """Index of the node owning this key box."""

    @abstractmethod
    def node_count(self) -> int:
        """Total number of known public keys."""

    @abstractmethod
    async def sign(self, msg: bytes) -> Any:
        """Sign ``msg``."""

    @abstractmethod
    def verify(self, msg: bytes, signature: Any, index: int) -> bool:
        """Check whether node ``index`` produced ``signature`` for ``msg``."""


class MultiKeychain(KeyBox):
    """A key box that can also aggregate signatures into multisignatures."""

    @abstractmethod
    def from_signature(self, signature: Any, index: int) -> PartialMultisignature:
        """Raise a single signature to a partial multisignature."""

    @abstractmethod
    def is_complete(self, msg: bytes, partial: Any) -> bool:
        """Check whether ``partial`` is a complete, valid multisignature of ``msg``."""


class SignatureError(Exception):
    """Raised when a signature or multisignature does not match its data."""

    def __init__(self, unchecked: "UncheckedSigned") -> None:
        super().__init__("signature verification failed")
        self.unchecked = unchecked


@dataclass(frozen=True)
class Indexed(Generic[T]):
    """Signable data paired with the index of the node signing it.

    Its hash is the hash of the wrapped data, so signatures of many nodes over
    the same data can be aggregated.
    """

    signable: T
    node_index: int

    def hash(self) -> bytes:
        return signable_hash(self.signable)

    def index(self) -> int:
        return self.node_index


@dataclass(frozen=True)
class UncheckedSigned(Generic[T]):
    """Signable data with a signature that has not been verified."""

    signable: T
    signature: Any

    def check(self, key_box: KeyBox) -> "Signed[T]":
        """Verify the signature against the index carried by the data."""
        index = self.signable.index()
        if not key_box.verify(signable_hash(self.signable), self.signature, index):
            raise SignatureError(self)
        return Signed(self)

    def check_multi(self, keychain: MultiKeychain) -> "Multisigned[T]":
        """Verify that the signature is a complete multisignature of the data."""
        if not keychain.is_complete(signable_hash(self.signable), self.signature):
            raise SignatureError(self)
        return Multisigned(self)

    def strip_index(self) -> "UncheckedSigned":
        """Drop the :class:`Indexed` wrapper around the signed data."""
        if not isinstance(self.signable, Indexed):
            raise TypeError("signed data carries no index wrapper")
        return UncheckedSigned(self.signable.signable, self.signature)

    def index(self) -> int:
        return self.signable.index()


@dataclass(frozen=True)
class Signed(Generic[T]):
    """Data whose signature has been verified or produced locally."""

    unchecked: UncheckedSigned[T]

    @property
    def signable(self) -> T:
        return self.unchecked.signable

    @property
    def signature(self) -> Any:
        return self.unchecked.signature

    @classmethod
    async def sign(cls, signable: T, key_box: KeyBox) -> "Signed[T]":
        """Sign data whose index must equal the key box's index."""
        if signable.index() != key_box.index():
            raise ValueError(
                f"signable index {signable.index()} does not match "
                f"key box index {key_box.index()}"
            )
        signature = await key_box.sign(signable_hash(signable))
        return cls(UncheckedSigned(signable, signature))

    @classmethod
    async def sign_with_index(cls, signable: Any, key_box: KeyBox) -> "Signed[Indexed]":
        """Sign data that has no index of its own, tagging it with the key box's index."""
        return await cls.sign(Indexed(signable, key_box.index()), key_box)

    def into_unchecked(self) -> UncheckedSigned[T]:
        return self.unchecked

    def into_partially_multisigned(
        self, keychain: MultiKeychain
    ) -> "PartiallyMultisigned":
        """Turn a single indexed signature into a partial multisignature."""
        indexed = self.unchecked.signable
        if not isinstance(indexed, Indexed):
            raise TypeError("only index-wrapped data can be multisigned")
        multisignature = keychain.from_signature(
            self.unchecked.signature, indexed.index()
        )
        unchecked = UncheckedSigned(indexed.signable, multisignature)
        complete = keychain.is_complete(signable_hash(unchecked.signable), multisignature)
        return PartiallyMultisigned(unchecked, complete)


@dataclass(frozen=True)
class Multisigned(Generic[T]):
    """Data with a complete and valid multisignature."""

    unchecked: UncheckedSigned[T]

    @property
    def signable(self) -> T:
        return self.unchecked.signable

    def into_unchecked(self) -> UncheckedSigned[T]:
        return self.unchecked


@dataclass(frozen=True)
class PartiallyMultisigned(Generic[T]):
    """Data with a valid partial multisignature that tracks its completeness."""

    unchecked: UncheckedSigned[T]
    complete: bool = False

    @classmethod
    async def sign(cls, signable: T, keychain: MultiKeychain) -> "PartiallyMultisigned[T]":
        signed = await Signed.sign_with_index(signable, keychain)
        return signed.into_partially_multisigned(keychain)

    @property
    def signable(self) -> T:
        return self.unchecked.signable

    @property
    def multisigned(self) -> Optional[Multisigned[T]]:
        """The complete multisigned data, or ``None`` while incomplete."""
        return Multisigned(self.unchecked) if self.complete else None

    def is_complete(self) -> bool:
        return self.complete

    def add_signature(
        self, signed: Signed[Indexed], keychain: MultiKeychain
    ) -> "PartiallyMultisigned[T]":
        """Add one signature and recheck completeness."""
        if signable_hash(self.signable) != signable_hash(signed.signable):
            logger.warning("Tried to add a signature of a different object")
            return self
        if self.complete:
            return self
        signature = self.unchecked.signature.add_signature(
            signed.unchecked.signature, signed.signable.index()
        )
        unchecked = UncheckedSigned(self.unchecked.signable, signature)
        complete = keychain.is_complete(signable_hash(unchecked.signable), signature)
        return PartiallyMultisigned(unchecked, complete)

    def into_unchecked(self) -> UncheckedSigned[T]:
        return self.unchecked


@dataclass(frozen=True)
class SignatureSet:
    """A multisignature made of the individual signatures of a subset of nodes."""

    signatures: tuple = field(default_factory=tuple)

    @classmethod
    def empty(cls, n_members: int) -> "SignatureSet":
        return cls((None,) * n_members)

    def add_signature(self, signature: Any, index: int) -> "SignatureSet":
        signatures = list(self.signatures)
        signatures[index] = signature
        return SignatureSet(tuple(signatures))


class DefaultMultiKeychain(MultiKeychain):
    """Multikeychain over a plain key box: complete means more than 2N/3 valid signatures."""

    def __init__(self, key_box: KeyBox) -> None:
        self.key_box = key_box

    def __repr__(self) -> str:
        return f"DefaultMultiKeychain({self.key_box!r})"

    def index(self) -> int:
        return self.key_box.index()

    def node_count(self) -> int:
        return self.key_box.node_count()

    async def sign(self, msg: bytes) -> Any:
        return await self.key_box.sign(msg)

    def verify(self, msg: bytes, signature: Any, index: int) -> bool:
        return self.key_box.verify(msg, signature, index)

    def quorum(self) -> int:
        return 2 * self.node_count() // 3 + 1

    def from_signature(self, signature: Any, index: int) -> SignatureSet:
        return SignatureSet.empty(self.node_count()).add_signature(signature, index)

    def is_complete(self, msg: bytes, partial: SignatureSet) -> bool:
        present = [(i, s) for i, s in enumerate(partial.signatures) if s is not None]
        if len(present) < self.quorum():
            return False
        return all(self.key_box.verify(msg, s, i) for i, s in present)