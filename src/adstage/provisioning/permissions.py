"""Grant a join principal full control over a single computer object.

The update is a read-modify-write of the whole DACL. Nothing guards against
another writer changing the same DACL between our read and our write; a
concurrent change in that window is lost.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import AclReadFailed, AclWriteFailed, PrincipalUnresolvable
from ..logging import OperationScope
from ..providers.directory import DirectoryClient, DirectoryError
from ..security import FULL_CONTROL, AccessEntry, DescriptorError, Sid
from .lookup import DirectoryLookup
from .models import PermissionOutcome

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PermissionGrantor:
    """Idempotently add an explicit allow entry for one principal on one object."""

    client: DirectoryClient
    lookup: DirectoryLookup
    rights: int = FULL_CONTROL

    def grant(
        self,
        name: str,
        principal: str | None,
        *,
        op: OperationScope | None = None,
    ) -> PermissionOutcome:
        """Ensure *principal* holds :attr:`rights` on the object called *name*.

        Raises :class:`~adstage.errors.LookupTimeout`,
        :class:`~adstage.errors.PrincipalUnresolvable`,
        :class:`~adstage.errors.AclReadFailed` or
        :class:`~adstage.errors.AclWriteFailed`.
        """
        if principal is None or not principal.strip():
            return PermissionOutcome.SKIPPED
        principal = principal.strip()

        ref = self.lookup.require(name)
        sid = self._resolve(principal)

        try:
            acl = self.client.read_access_list(ref)
        except (DirectoryError, DescriptorError) as exc:
            raise AclReadFailed(ref.dn, exc) from exc

        if acl.find_grant(sid, self.rights) is not None:
            LOGGER.debug("%s already grants %s to %s", ref.dn, hex(self.rights), sid)
            if op is not None:
                op.info(f"acl {name}", f"{principal} ({sid}) already present")
            return PermissionOutcome.ALREADY_PRESENT

        updated = acl.with_entry(AccessEntry.allow(sid, self.rights))
        try:
            self.client.write_access_list(ref, updated)
        except (DirectoryError, DescriptorError) as exc:
            raise AclWriteFailed(ref.dn, exc) from exc

        if op is not None:
            op.add_step(f"acl {name}", status="success", detail=f"granted {principal} ({sid})")
        return PermissionOutcome.GRANTED

    def _resolve(self, principal: str) -> Sid:
        try:
            return self.client.resolve_principal(principal)
        except (DirectoryError, DescriptorError) as exc:
            raise PrincipalUnresolvable(principal, exc) from exc


__all__ = ["PermissionGrantor"]
