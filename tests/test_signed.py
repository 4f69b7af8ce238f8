from dataclasses import dataclass, replace

import pytest

from dagorder.signed import (
    DefaultMultiKeychain,
    Indexed,
    KeyBox,
    PartiallyMultisigned,
    SignatureError,
    SignatureSet,
    Signed,
    UncheckedSigned,
    signable_hash,
)


@dataclass(frozen=True)
class Message:
    msg: bytes

    def hash(self) -> bytes:
        return self.msg


@dataclass(frozen=True)
class FakeSignature:
    msg: bytes
    index: int


class FakeKeyBox(KeyBox):
    def __init__(self, count: int, index: int) -> None:
        self._count = count
        self._index = index

    def index(self) -> int:
        return self._index

    def node_count(self) -> int:
        return self._count

    async def sign(self, msg: bytes) -> FakeSignature:
        return FakeSignature(bytes(msg), self._index)

    def verify(self, msg: bytes, signature: FakeSignature, index: int) -> bool:
        return index == signature.index and bytes(msg) == signature.msg


def multi_keychain(node_count: int, index: int) -> DefaultMultiKeychain:
    return DefaultMultiKeychain(FakeKeyBox(node_count, index))


def hello() -> Message:
    return Message(b"Hello")


@pytest.mark.asyncio
async def test_valid_signatures():
    node_count = 7
    keychains = [multi_keychain(node_count, i) for i in range(node_count)]
    for signer in keychains:
        for checker in keychains:
            signed = await Signed.sign_with_index(hello(), signer)
            checked = signed.into_unchecked().check(checker)
            assert checked.signable == Indexed(hello(), signer.index())


@pytest.mark.asyncio
async def test_invalid_signatures():
    keychain = multi_keychain(1, 0)
    signed = await Signed.sign_with_index(hello(), keychain)
    unchecked = signed.into_unchecked()
    tampered = UncheckedSigned(unchecked.signable, replace(unchecked.signature, index=1))
    with pytest.raises(SignatureError) as info:
        tampered.check(keychain)
    assert info.value.unchecked == tampered


@pytest.mark.asyncio
async def test_incomplete_multisignature():
    keychain = multi_keychain(2, 0)
    partial = await PartiallyMultisigned.sign(hello(), keychain)
    assert partial.is_complete() is False
    assert partial.multisigned is None


@pytest.mark.asyncio
async def test_multisignatures():
    node_count = 7
    keychains = [multi_keychain(node_count, i) for i in range(node_count)]
    partial = await PartiallyMultisigned.sign(hello(), keychains[0])
    for keychain in keychains[1:5]:
        assert not partial.is_complete()
        signed = await Signed.sign_with_index(hello(), keychain)
        partial = partial.add_signature(signed, keychain)
    assert partial.is_complete()
    assert partial.multisigned.signable == hello()


@pytest.mark.asyncio
async def test_single_node_signature_is_complete_at_once():
    keychain = multi_keychain(1, 0)
    partial = await PartiallyMultisigned.sign(hello(), keychain)
    assert partial.is_complete() is True


@pytest.mark.asyncio
async def test_complete_multisignature_passes_check_multi():
    node_count = 4
    keychains = [multi_keychain(node_count, i) for i in range(node_count)]
    partial = await PartiallyMultisigned.sign(hello(), keychains[0])
    for keychain in keychains[1:3]:
        partial = partial.add_signature(
            await Signed.sign_with_index(hello(), keychain), keychain
        )
    unchecked = partial.into_unchecked()
    multisigned = unchecked.check_multi(keychains[3])
    assert multisigned.signable == hello()
    assert multisigned.into_unchecked() == unchecked


def test_empty_multisignature_fails_check_multi():
    keychain = multi_keychain(10, 0)
    bad = UncheckedSigned(Message(bytes([65])), SignatureSet.empty(10))
    with pytest.raises(SignatureError):
        bad.check_multi(keychain)


@pytest.mark.asyncio
async def test_add_signature_of_other_object_is_ignored():
    keychains = [multi_keychain(3, i) for i in range(3)]
    partial = await PartiallyMultisigned.sign(hello(), keychains[0])
    other = await Signed.sign_with_index(Message(b"Other"), keychains[1])
    result = partial.add_signature(other, keychains[1])
    assert result == partial
    assert result.unchecked.signature.signatures[1] is None


@pytest.mark.asyncio
async def test_sign_rejects_mismatched_index():
    keychain = multi_keychain(3, 0)
    with pytest.raises(ValueError):
        await Signed.sign(Indexed(hello(), 2), keychain)


@pytest.mark.asyncio
async def test_strip_index_keeps_signature():
    keychain = multi_keychain(3, 2)
    unchecked = (await Signed.sign_with_index(hello(), keychain)).into_unchecked()
    stripped = unchecked.strip_index()
    assert stripped.signable == hello()
    assert stripped.signature == FakeSignature(b"Hello", 2)
    assert unchecked.index() == 2


def test_strip_index_requires_indexed_data():
    with pytest.raises(TypeError):
        UncheckedSigned(hello(), FakeSignature(b"Hello", 0)).strip_index()


def test_indexed_hash_is_hash_of_data():
    assert Indexed(hello(), 3).hash() == b"Hello"
    assert Indexed(hello(), 3).index() == 3


def test_bytes_are_their_own_hash():
    assert signable_hash(b"\x01\x02") == b"\x01\x02"
    assert signable_hash(bytearray(b"ab")) == b"ab"
    assert signable_hash(hello()) == b"Hello"


@pytest.mark.parametrize("node_count,expected", [(1, 1), (2, 2), (4, 3), (7, 5), (10, 7)])
def test_quorum(node_count, expected):
    assert multi_keychain(node_count, 0).quorum() == expected


def test_signature_set_add_signature_is_persistent():
    empty = SignatureSet.empty(3)
    added = empty.add_signature("sig", 1)
    assert added.signatures == (None, "sig", None)
    assert empty.signatures == (None, None, None)


def test_from_signature_places_signature_at_index():
    keychain = multi_keychain(4, 0)
    sig = FakeSignature(b"Hello", 2)
    assert keychain.from_signature(sig, 2).signatures == (None, None, sig, None)


def test_is_complete_rejects_invalid_member_signature():
    keychain = multi_keychain(4, 0)
    signatures = (
        FakeSignature(b"Hello", 0),
        FakeSignature(b"Hello", 1),
        FakeSignature(b"Hello", 0),
        None,
    )
    assert keychain.is_complete(b"Hello", SignatureSet(signatures)) is False
    valid = SignatureSet(signatures[:2] + (FakeSignature(b"Hello", 2), None))
    assert keychain.is_complete(b"Hello", valid) is True


@pytest.mark.asyncio
async def test_default_multikeychain_delegates_to_key_box():
    keychain = multi_keychain(5, 3)
    assert keychain.index() == 3
    assert keychain.node_count() == 5
    sig = await keychain.sign(b"abc")
    assert sig == FakeSignature(b"abc", 3)
    assert keychain.verify(b"abc", sig, 3) is True
    assert keychain.verify(b"abc", sig, 4) is False