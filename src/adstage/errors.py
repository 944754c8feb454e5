"""Failure taxonomy for the provisioning pipeline.

Every error raised by a pipeline stage derives from :class:`ProvisioningError`
so the batch runner can record it against the record and carry on. The
``fatal`` attribute tells the runner whether later stages for the same record
may still run.
"""
from __future__ import annotations


class ProvisioningError(RuntimeError):
    """Base class for per-record provisioning failures."""

    stage: str = "unknown"
    fatal: bool = True


class InvalidRequest(ProvisioningError):
    """Raised when a request is missing a field the pipeline requires."""

    stage = "name"


class NameTooLong(ProvisioningError):
    """Raised when the prefix and site id leave no room for the asset tag."""

    stage = "name"

    def __init__(self, prefix: str, site_id: str, max_length: int) -> None:
        self.prefix = prefix
        self.site_id = site_id
        self.max_length = max_length
        used = len(prefix) + len(site_id)
        super().__init__(
            f"Name prefix '{prefix}{site_id}' uses {used} of {max_length} characters; "
            "no room left for the asset tag."
        )


class CreateFailed(ProvisioningError):
    """Raised when the directory refuses to create the object."""

    stage = "create"

    def __init__(self, name: str, container_path: str, cause: BaseException) -> None:
        self.name = name
        self.container_path = container_path
        self.cause = cause
        super().__init__(f"Failed to create '{name}' in '{container_path}': {cause}")


class GroupAddFailed(ProvisioningError):
    """Raised (and recorded, not propagated) when a group add fails."""

    stage = "groups"
    fatal = False

    def __init__(self, group: str, cause: BaseException) -> None:
        self.group = group
        self.cause = cause
        super().__init__(f"Failed to add member to group '{group}': {cause}")


class LookupTimeout(ProvisioningError):
    """Raised when an object never became visible within the retry budget."""

    stage = "permissions"

    def __init__(self, key: str, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(f"Object '{key}' not found after {attempts} attempt(s).")


class PrincipalUnresolvable(ProvisioningError):
    """Raised when a principal name cannot be mapped to a security identifier."""

    stage = "permissions"

    def __init__(self, principal: str, cause: BaseException | None = None) -> None:
        self.principal = principal
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Cannot resolve principal '{principal}'{detail}")


class AclReadFailed(ProvisioningError):
    """Raised when the object's access list cannot be read."""

    stage = "permissions"

    def __init__(self, target: str, cause: BaseException) -> None:
        self.target = target
        self.cause = cause
        super().__init__(f"acl-read failed for '{target}': {cause}")


class AclWriteFailed(ProvisioningError):
    """Raised when the updated access list cannot be written back."""

    stage = "permissions"

    def __init__(self, target: str, cause: BaseException) -> None:
        self.target = target
        self.cause = cause
        super().__init__(f"acl-write failed for '{target}': {cause}")


__all__ = [
    "AclReadFailed",
    "AclWriteFailed",
    "CreateFailed",
    "GroupAddFailed",
    "InvalidRequest",
    "LookupTimeout",
    "NameTooLong",
    "PrincipalUnresolvable",
    "ProvisioningError",
]
