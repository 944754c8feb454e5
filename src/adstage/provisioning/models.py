"""Request and result types for the provisioning pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Stage(str, Enum):
    """Pipeline stage a record reached."""

    NAME = "name"
    CREATE = "create"
    GROUPS = "groups"
    PERMISSIONS = "permissions"
    COMPLETE = "complete"


class ResultStatus(str, Enum):
    """Overall outcome for a record."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    PLANNED = "planned"


class PermissionOutcome(str, Enum):
    """What the permission stage did."""

    GRANTED = "granted"
    ALREADY_PRESENT = "already-present"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_RUN = "not-run"


@dataclass(frozen=True, slots=True)
class ProvisioningRequest:
    """One input record."""

    site_id: str
    asset_tag: str
    description: str = ""
    container_path: str = ""
    group_names: tuple[str, ...] = ()
    join_principal: str | None = None
    row: int | None = None

    @property
    def label(self) -> str:
        where = f"row {self.row}" if self.row is not None else "record"
        return f"{where} ({self.site_id.strip()}/{self.asset_tag.strip()})"


@dataclass(frozen=True, slots=True)
class GroupOutcome:
    """Result of adding the object to one group."""

    group: str
    added: bool
    error: str | None = None


@dataclass(slots=True)
class ProvisioningResult:
    """Per-record outcome handed to reporting and export."""

    request: ProvisioningRequest
    name: str | None = None
    stage: Stage = Stage.NAME
    status: ResultStatus = ResultStatus.FAILED
    error: str | None = None
    groups: list[GroupOutcome] = field(default_factory=list)
    permission: PermissionOutcome = PermissionOutcome.NOT_RUN

    @property
    def success(self) -> bool:
        """``True`` unless the record failed outright; group-only failures still count."""
        return self.status is not ResultStatus.FAILED

    @property
    def failed_groups(self) -> list[str]:
        return [outcome.group for outcome in self.groups if not outcome.added]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "row": self.request.row,
            "site_id": self.request.site_id,
            "asset_tag": self.request.asset_tag,
            "description": self.request.description,
            "container_path": self.request.container_path,
            "join_principal": self.request.join_principal,
            "name": self.name,
            "stage": self.stage.value,
            "status": self.status.value,
            "success": self.success,
            "error": self.error,
            "permission": self.permission.value,
            "groups": [
                {"group": outcome.group, "added": outcome.added, "error": outcome.error}
                for outcome in self.groups
            ],
        }


__all__ = [
    "GroupOutcome",
    "PermissionOutcome",
    "ProvisioningRequest",
    "ProvisioningResult",
    "ResultStatus",
    "Stage",
]
