"""Directory service providers for adstage."""
from __future__ import annotations

from .directory import DirectoryClient, DirectoryError, DirectoryObjectRef
from .ldap import LdapDirectoryClient

__all__ = [
    "DirectoryClient",
    "DirectoryError",
    "DirectoryObjectRef",
    "LdapDirectoryClient",
]
