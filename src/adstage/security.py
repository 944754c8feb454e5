"""Security identifiers, access entries and the self-relative descriptor codec.

Active Directory returns ``nTSecurityDescriptor`` as a binary, self-relative
``SECURITY_DESCRIPTOR``. Only the pieces the grant logic reasons about are
modelled as value types:

* :class:`Sid` for principals,
* :class:`AccessEntry` for plain ``ACCESS_ALLOWED`` / ``ACCESS_DENIED`` ACEs,
* :class:`OpaqueEntry` for every other ACE type, kept byte-for-byte so a
  read-modify-write cycle never alters rules it does not understand.

Layouts follow MS-DTYP sections 2.4.2 (SID), 2.4.4 (ACE), 2.4.5 (ACL) and
2.4.6 (SECURITY_DESCRIPTOR). All integers are little-endian except the SID
identifier authority, which is big-endian.
"""
from __future__ import annotations

import struct
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

ACCESS_ALLOWED_ACE_TYPE = 0x00
ACCESS_DENIED_ACE_TYPE = 0x01

OBJECT_INHERIT_ACE = 0x01
CONTAINER_INHERIT_ACE = 0x02
NO_PROPAGATE_INHERIT_ACE = 0x04
INHERIT_ONLY_ACE = 0x08
INHERITED_ACE = 0x10
INHERITANCE_FLAGS = (
    OBJECT_INHERIT_ACE | CONTAINER_INHERIT_ACE | NO_PROPAGATE_INHERIT_ACE | INHERIT_ONLY_ACE
)

# ActiveDirectoryRights.GenericAll as stored on directory objects.
FULL_CONTROL = 0x000F01FF

SE_DACL_PRESENT = 0x0004
SE_SACL_PRESENT = 0x0010
SE_DACL_AUTO_INHERIT_REQ = 0x0100
SE_DACL_AUTO_INHERITED = 0x0400
SE_DACL_PROTECTED = 0x1000
SE_SELF_RELATIVE = 0x8000
DACL_CONTROL_BITS = SE_DACL_AUTO_INHERIT_REQ | SE_DACL_AUTO_INHERITED | SE_DACL_PROTECTED

ACL_REVISION = 2
ACL_REVISION_DS = 4

_SD_HEADER = struct.Struct("<BBHIIII")
_ACL_HEADER = struct.Struct("<BBHHH")
_ACE_HEADER = struct.Struct("<BBH")


class DescriptorError(ValueError):
    """Raised when binary security data is malformed."""


@dataclass(frozen=True, slots=True)
class Sid:
    """A security identifier such as ``S-1-5-21-...-1104``."""

    revision: int
    authority: int
    sub_authorities: tuple[int, ...]

    @classmethod
    def parse(cls, text: str) -> Sid:
        """Parse the ``S-R-I-S-S...`` string form."""
        parts = text.strip().upper().split("-")
        if len(parts) < 3 or parts[0] != "S":
            raise DescriptorError(f"Not a SID string: {text!r}")
        try:
            revision = int(parts[1])
            authority = int(parts[2], 0)
            subs = tuple(int(part) for part in parts[3:])
        except ValueError as exc:
            raise DescriptorError(f"Not a SID string: {text!r}") from exc
        if len(subs) > 15:
            raise DescriptorError(f"SID has too many sub-authorities: {text!r}")
        if not 0 <= revision <= 0xFF:
            raise DescriptorError(f"SID revision out of range: {text!r}")
        if not 0 <= authority < 1 << 48:
            raise DescriptorError(f"SID identifier authority out of range: {text!r}")
        if any(not 0 <= value <= 0xFFFFFFFF for value in subs):
            raise DescriptorError(f"SID sub-authority out of range: {text!r}")
        return cls(revision=revision, authority=authority, sub_authorities=subs)

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> Sid:
        """Decode a binary SID starting at *offset*."""
        if len(data) < offset + 8:
            raise DescriptorError("Truncated SID header.")
        revision = data[offset]
        count = data[offset + 1]
        authority = int.from_bytes(data[offset + 2 : offset + 8], "big")
        end = offset + 8 + 4 * count
        if len(data) < end:
            raise DescriptorError("Truncated SID sub-authorities.")
        subs = struct.unpack_from(f"<{count}I", data, offset + 8)
        return cls(revision=revision, authority=authority, sub_authorities=tuple(subs))

    def to_bytes(self) -> bytes:
        """Encode the SID in its binary form."""
        count = len(self.sub_authorities)
        return (
            bytes((self.revision, count))
            + self.authority.to_bytes(6, "big")
            + struct.pack(f"<{count}I", *self.sub_authorities)
        )

    @property
    def size(self) -> int:
        return 8 + 4 * len(self.sub_authorities)

    def __str__(self) -> str:
        subs = "".join(f"-{value}" for value in self.sub_authorities)
        # Authorities of 2**32 and above are written in hex.
        if self.authority < 1 << 32:
            authority = str(self.authority)
        else:
            authority = f"0x{self.authority:012X}"
        return f"S-{self.revision}-{authority}{subs}"


@dataclass(frozen=True, slots=True)
class AccessEntry:
    """An ``ACCESS_ALLOWED`` or ``ACCESS_DENIED`` entry."""

    sid: Sid
    mask: int
    ace_type: int = ACCESS_ALLOWED_ACE_TYPE
    flags: int = 0

    @classmethod
    def allow(cls, sid: Sid, mask: int = FULL_CONTROL) -> AccessEntry:
        """Return an explicit, non-inheritable allow entry for *sid*."""
        return cls(sid=sid, mask=mask, ace_type=ACCESS_ALLOWED_ACE_TYPE, flags=0)

    @property
    def is_allow(self) -> bool:
        return self.ace_type == ACCESS_ALLOWED_ACE_TYPE

    @property
    def inherited(self) -> bool:
        return bool(self.flags & INHERITED_ACE)

    @property
    def object_only(self) -> bool:
        """Return ``True`` when the entry applies to this object and nothing below it."""
        return not self.flags & INHERITANCE_FLAGS

    def grants(self, sid: Sid, mask: int) -> bool:
        """Return ``True`` when this entry explicitly allows *sid* every bit of *mask* here."""
        return (
            self.is_allow
            and not self.inherited
            and self.object_only
            and self.sid == sid
            and (self.mask & mask) == mask
        )

    def to_bytes(self) -> bytes:
        body = struct.pack("<I", self.mask) + self.sid.to_bytes()
        return _ACE_HEADER.pack(self.ace_type, self.flags, _ACE_HEADER.size + len(body)) + body


@dataclass(frozen=True, slots=True)
class OpaqueEntry:
    """Any ACE type not modelled explicitly; the body is preserved verbatim."""

    ace_type: int
    flags: int
    body: bytes

    @property
    def inherited(self) -> bool:
        return bool(self.flags & INHERITED_ACE)

    def grants(self, sid: Sid, mask: int) -> bool:
        return False

    def to_bytes(self) -> bytes:
        return _ACE_HEADER.pack(self.ace_type, self.flags, _ACE_HEADER.size + len(self.body)) + self.body


Entry = AccessEntry | OpaqueEntry


@dataclass(frozen=True, slots=True)
class AccessList:
    """A discretionary access list plus the descriptor control bits that describe it."""

    entries: tuple[Entry, ...] = ()
    revision: int = ACL_REVISION_DS
    control: int = 0

    def find_grant(self, sid: Sid, mask: int) -> AccessEntry | None:
        """Return the first entry already granting *mask* to *sid*, if any."""
        for entry in self.entries:
            if isinstance(entry, AccessEntry) and entry.grants(sid, mask):
                return entry
        return None

    def with_entry(self, entry: Entry) -> AccessList:
        """Return a copy with *entry* placed after the last explicit entry."""
        entries = list(self.entries)
        position = len(entries)
        for index, existing in enumerate(entries):
            if existing.inherited:
                position = index
                break
        entries.insert(position, entry)
        return replace(self, entries=tuple(entries))

    def count(self, sid: Sid, mask: int) -> int:
        return sum(
            1
            for entry in self.entries
            if isinstance(entry, AccessEntry) and entry.grants(sid, mask)
        )

    def to_bytes(self) -> bytes:
        body = b"".join(entry.to_bytes() for entry in self.entries)
        size = _ACL_HEADER.size + len(body)
        return _ACL_HEADER.pack(self.revision, 0, size, len(self.entries), 0) + body


@dataclass(frozen=True, slots=True)
class SecurityDescriptor:
    """A self-relative security descriptor; owner/group/SACL may be absent."""

    control: int = SE_SELF_RELATIVE
    owner: Sid | None = None
    group: Sid | None = None
    sacl: bytes | None = None
    dacl: AccessList | None = field(default=None)
    revision: int = 1

    @classmethod
    def for_dacl(cls, dacl: AccessList) -> SecurityDescriptor:
        """Build a DACL-only descriptor suitable for an SD_FLAGS-limited write."""
        control = SE_SELF_RELATIVE | SE_DACL_PRESENT | (dacl.control & DACL_CONTROL_BITS)
        return cls(control=control, dacl=dacl)


def decode_access_list(data: bytes, offset: int = 0, *, control: int = 0) -> AccessList:
    """Decode the ACL at *offset*; *control* carries the descriptor's DACL bits."""
    if len(data) < offset + _ACL_HEADER.size:
        raise DescriptorError("Truncated ACL header.")
    revision, _sbz1, size, count, _sbz2 = _ACL_HEADER.unpack_from(data, offset)
    end = offset + size
    if len(data) < end:
        raise DescriptorError("ACL size exceeds available data.")

    entries: list[Entry] = []
    cursor = offset + _ACL_HEADER.size
    for index in range(count):
        if cursor + _ACE_HEADER.size > end:
            raise DescriptorError(f"Truncated header for ACE #{index}.")
        ace_type, flags, ace_size = _ACE_HEADER.unpack_from(data, cursor)
        if ace_size < _ACE_HEADER.size or cursor + ace_size > end:
            raise DescriptorError(f"Invalid size {ace_size} for ACE #{index}.")
        body = data[cursor + _ACE_HEADER.size : cursor + ace_size]
        if ace_type in (ACCESS_ALLOWED_ACE_TYPE, ACCESS_DENIED_ACE_TYPE):
            if len(body) < 4:
                raise DescriptorError(f"Truncated mask for ACE #{index}.")
            (mask,) = struct.unpack_from("<I", body, 0)
            sid = Sid.from_bytes(body, 4)
            if 4 + sid.size != len(body):
                # Trailing padding would be lost on re-encode; keep the raw bytes.
                entries.append(OpaqueEntry(ace_type=ace_type, flags=flags, body=body))
            else:
                entries.append(AccessEntry(sid=sid, mask=mask, ace_type=ace_type, flags=flags))
        else:
            entries.append(OpaqueEntry(ace_type=ace_type, flags=flags, body=body))
        cursor += ace_size

    return AccessList(
        entries=tuple(entries),
        revision=revision,
        control=control & DACL_CONTROL_BITS,
    )


def decode_security_descriptor(data: bytes) -> SecurityDescriptor:
    """Decode a self-relative security descriptor."""
    if len(data) < _SD_HEADER.size:
        raise DescriptorError("Truncated security descriptor header.")
    revision, _sbz1, control, owner_at, group_at, sacl_at, dacl_at = _SD_HEADER.unpack_from(data)
    if not control & SE_SELF_RELATIVE:
        raise DescriptorError("Only self-relative security descriptors are supported.")

    owner = Sid.from_bytes(data, owner_at) if owner_at else None
    group = Sid.from_bytes(data, group_at) if group_at else None

    sacl: bytes | None = None
    if sacl_at and control & SE_SACL_PRESENT:
        if len(data) < sacl_at + _ACL_HEADER.size:
            raise DescriptorError("Truncated SACL header.")
        sacl_size = _ACL_HEADER.unpack_from(data, sacl_at)[2]
        sacl = data[sacl_at : sacl_at + sacl_size]

    dacl: AccessList | None = None
    if dacl_at and control & SE_DACL_PRESENT:
        dacl = decode_access_list(data, dacl_at, control=control)

    return SecurityDescriptor(
        control=control,
        owner=owner,
        group=group,
        sacl=sacl,
        dacl=dacl,
        revision=revision,
    )


def encode_security_descriptor(descriptor: SecurityDescriptor) -> bytes:
    """Encode *descriptor* in self-relative form (SACL, DACL, owner, group)."""
    chunks: list[bytes] = []
    offsets = {"owner": 0, "group": 0, "sacl": 0, "dacl": 0}
    cursor = _SD_HEADER.size

    def _place(label: str, payload: bytes | None) -> None:
        nonlocal cursor
        if payload is None:
            return
        offsets[label] = cursor
        chunks.append(payload)
        cursor += len(payload)

    control = descriptor.control | SE_SELF_RELATIVE
    _place("sacl", descriptor.sacl)
    _place("dacl", descriptor.dacl.to_bytes() if descriptor.dacl is not None else None)
    _place("owner", descriptor.owner.to_bytes() if descriptor.owner is not None else None)
    _place("group", descriptor.group.to_bytes() if descriptor.group is not None else None)

    if descriptor.dacl is not None:
        control |= SE_DACL_PRESENT
    if descriptor.sacl is not None:
        control |= SE_SACL_PRESENT

    header = _SD_HEADER.pack(
        descriptor.revision,
        0,
        control,
        offsets["owner"],
        offsets["group"],
        offsets["sacl"],
        offsets["dacl"],
    )
    return header + b"".join(chunks)


def build_access_list(entries: Iterable[Entry], *, control: int = 0) -> AccessList:
    """Convenience constructor used by adapters and tests."""
    return AccessList(entries=tuple(entries), control=control & DACL_CONTROL_BITS)


__all__ = [
    "ACCESS_ALLOWED_ACE_TYPE",
    "ACCESS_DENIED_ACE_TYPE",
    "AccessEntry",
    "AccessList",
    "CONTAINER_INHERIT_ACE",
    "DescriptorError",
    "Entry",
    "FULL_CONTROL",
    "INHERITED_ACE",
    "OBJECT_INHERIT_ACE",
    "OpaqueEntry",
    "SE_DACL_PROTECTED",
    "SecurityDescriptor",
    "Sid",
    "build_access_list",
    "decode_access_list",
    "decode_security_descriptor",
    "encode_security_descriptor",
]
