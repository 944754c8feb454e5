"""Directory service client contract shared by the pipeline and its adapters."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ..security import AccessList, Sid


class DirectoryError(RuntimeError):
    """Raised when a directory operation fails."""


@dataclass(frozen=True, slots=True)
class DirectoryObjectRef:
    """Reference to a directory object.

    ``key`` is the account-name form used for lookups (``NAME$``) and ``dn``
    the distinguished path. A ref returned by a create call is provisional
    until a lookup has confirmed the object is visible.
    """

    name: str
    key: str
    dn: str


class DirectoryClient(Protocol):
    """Operations the provisioning pipeline needs from a directory service."""

    def create_object(
        self,
        name: str,
        description: str,
        container_path: str,
    ) -> DirectoryObjectRef:
        """Create a computer object called *name* under *container_path*."""
        ...

    def find_object(self, key: str) -> DirectoryObjectRef | None:
        """Return the object whose account name is *key*, or ``None``."""
        ...

    def read_access_list(self, ref: DirectoryObjectRef) -> AccessList:
        """Return the discretionary access list of *ref*."""
        ...

    def write_access_list(self, ref: DirectoryObjectRef, acl: AccessList) -> None:
        """Replace the discretionary access list of *ref* with *acl*."""
        ...

    def resolve_principal(self, name: str) -> Sid:
        """Return the security identifier for principal *name*."""
        ...

    def add_group_member(self, group_name: str, object_key: str) -> None:
        """Add the object identified by *object_key* to *group_name*."""
        ...


__all__ = ["DirectoryClient", "DirectoryError", "DirectoryObjectRef"]
