"""Tests for the security descriptor codec."""
from __future__ import annotations

import struct

import pytest

from adstage.security import (
    ACCESS_DENIED_ACE_TYPE,
    CONTAINER_INHERIT_ACE,
    FULL_CONTROL,
    INHERITED_ACE,
    SE_DACL_PROTECTED,
    AccessEntry,
    AccessList,
    DescriptorError,
    OpaqueEntry,
    SecurityDescriptor,
    Sid,
    build_access_list,
    decode_access_list,
    decode_security_descriptor,
    encode_security_descriptor,
)

ADMINISTRATORS = Sid.parse("S-1-5-32-544")
JOINER = Sid.parse("S-1-5-21-1004336348-1177238915-682003330-1107")

# ACCESS_ALLOWED_OBJECT_ACE with an object type GUID; only its header is parsed.
_OBJECT_ACE_BODY = (
    struct.pack("<II", 0x00000100, 0x1)
    + bytes(range(16))
    + ADMINISTRATORS.to_bytes()
)


def _ace(ace_type: int, flags: int, body: bytes) -> bytes:
    return struct.pack("<BBH", ace_type, flags, 4 + len(body)) + body


def _descriptor_bytes() -> bytes:
    aces = [
        _ace(0x00, 0, struct.pack("<I", FULL_CONTROL) + ADMINISTRATORS.to_bytes()),
        _ace(0x05, 0, _OBJECT_ACE_BODY),
        _ace(0x00, INHERITED_ACE, struct.pack("<I", 0x00020094) + JOINER.to_bytes()),
    ]
    body = b"".join(aces)
    dacl = struct.pack("<BBHHH", 4, 0, 8 + len(body), len(aces), 0) + body
    owner = ADMINISTRATORS.to_bytes()
    header_size = 20
    control = 0x8000 | 0x0004 | SE_DACL_PROTECTED
    header = struct.pack(
        "<BBHIIII",
        1,
        0,
        control,
        header_size + len(dacl),
        0,
        0,
        header_size,
    )
    return header + dacl + owner


def test_sid_string_and_binary_forms() -> None:
    assert str(JOINER) == "S-1-5-21-1004336348-1177238915-682003330-1107"
    raw = ADMINISTRATORS.to_bytes()
    assert raw == bytes.fromhex("01020000000000052000000020020000")
    assert Sid.from_bytes(raw) == ADMINISTRATORS
    assert ADMINISTRATORS.size == len(raw)


@pytest.mark.parametrize("text", ["", "S-1", "X-1-5-32", "S-1-5-abc"])
def test_sid_parse_rejects_garbage(text: str) -> None:
    with pytest.raises(DescriptorError):
        Sid.parse(text)


def test_sid_from_bytes_detects_truncation() -> None:
    raw = JOINER.to_bytes()
    with pytest.raises(DescriptorError):
        Sid.from_bytes(raw[:-2])


def test_decode_keeps_unknown_entries_verbatim() -> None:
    descriptor = decode_security_descriptor(_descriptor_bytes())

    assert descriptor.owner == ADMINISTRATORS
    assert descriptor.group is None
    assert descriptor.dacl is not None
    explicit, opaque, inherited = descriptor.dacl.entries
    assert explicit == AccessEntry.allow(ADMINISTRATORS)
    assert isinstance(opaque, OpaqueEntry)
    assert opaque.ace_type == 0x05
    assert opaque.body == _OBJECT_ACE_BODY
    assert isinstance(inherited, AccessEntry)
    assert inherited.inherited
    assert descriptor.dacl.control == SE_DACL_PROTECTED


def test_new_entry_goes_before_inherited_entries() -> None:
    dacl = decode_security_descriptor(_descriptor_bytes()).dacl
    assert dacl is not None

    updated = dacl.with_entry(AccessEntry.allow(JOINER))

    assert [type(entry).__name__ for entry in updated.entries] == [
        "AccessEntry",
        "OpaqueEntry",
        "AccessEntry",
        "AccessEntry",
    ]
    assert updated.entries[2] == AccessEntry.allow(JOINER)
    assert updated.entries[3].inherited
    assert dacl.entries == updated.entries[:2] + updated.entries[3:]


def test_with_entry_appends_without_inherited_entries() -> None:
    acl = build_access_list([AccessEntry.allow(ADMINISTRATORS)])
    updated = acl.with_entry(AccessEntry.allow(JOINER))
    assert updated.entries == (AccessEntry.allow(ADMINISTRATORS), AccessEntry.allow(JOINER))


def test_dacl_only_descriptor_survives_encoding() -> None:
    dacl = decode_security_descriptor(_descriptor_bytes()).dacl
    assert dacl is not None
    updated = dacl.with_entry(AccessEntry.allow(JOINER))

    encoded = encode_security_descriptor(SecurityDescriptor.for_dacl(updated))
    decoded = decode_security_descriptor(encoded)

    assert decoded.owner is None
    assert decoded.dacl == updated
    assert decoded.control & SE_DACL_PROTECTED


def test_find_grant_only_matches_explicit_object_allows() -> None:
    acl = AccessList(
        entries=(
            AccessEntry(sid=JOINER, mask=FULL_CONTROL, ace_type=ACCESS_DENIED_ACE_TYPE),
            AccessEntry(sid=JOINER, mask=FULL_CONTROL, flags=INHERITED_ACE),
            AccessEntry(sid=JOINER, mask=FULL_CONTROL, flags=CONTAINER_INHERIT_ACE),
            AccessEntry(sid=JOINER, mask=0x00020094),
        )
    )
    assert acl.find_grant(JOINER, FULL_CONTROL) is None
    assert acl.find_grant(JOINER, 0x00020094) == acl.entries[3]

    granted = acl.with_entry(AccessEntry.allow(JOINER))
    assert granted.find_grant(JOINER, FULL_CONTROL) == AccessEntry.allow(JOINER)
    assert granted.count(JOINER, FULL_CONTROL) == 1
    assert granted.find_grant(ADMINISTRATORS, FULL_CONTROL) is None


def test_truncated_access_list_is_rejected() -> None:
    raw = build_access_list([AccessEntry.allow(JOINER)]).to_bytes()
    with pytest.raises(DescriptorError):
        decode_access_list(raw[:-4])


def test_absolute_descriptor_is_rejected() -> None:
    raw = bytearray(_descriptor_bytes())
    raw[2:4] = struct.pack("<H", 0x0004)
    with pytest.raises(DescriptorError, match="self-relative"):
        decode_security_descriptor(bytes(raw))


@pytest.mark.parametrize(
    "text",
    [
        "S-256-5-21",
        "S-1-281474976710656-21",
        "S-1-5-21-4294967296",
    ],
    ids=["revision", "authority", "sub-authority"],
)
def test_sid_parse_rejects_out_of_range_numbers(text: str) -> None:
    with pytest.raises(DescriptorError, match="out of range"):
        Sid.parse(text)


def test_sid_parse_accepts_field_maximums() -> None:
    sid = Sid.parse("S-255-0xFFFFFFFFFFFF-4294967295")
    assert Sid.from_bytes(sid.to_bytes()) == sid


def test_large_authority_is_written_in_hex() -> None:
    sid = Sid(revision=1, authority=0x1_0000_0000, sub_authorities=(7,))
    assert str(sid) == "S-1-0x000100000000-7"
    assert Sid.parse(str(sid)) == sid
    assert str(Sid.parse("S-1-0x5-32")) == "S-1-5-32"
