"""Provisioning pipeline stages."""
from __future__ import annotations

from .creator import ObjectCreator
from .groups import GroupMembershipApplier
from .lookup import DirectoryLookup
from .models import (
    GroupOutcome,
    PermissionOutcome,
    ProvisioningRequest,
    ProvisioningResult,
    ResultStatus,
    Stage,
)
from .permissions import PermissionGrantor
from .pipeline import ProvisioningPipeline

__all__ = [
    "DirectoryLookup",
    "GroupMembershipApplier",
    "GroupOutcome",
    "ObjectCreator",
    "PermissionGrantor",
    "PermissionOutcome",
    "ProvisioningPipeline",
    "ProvisioningRequest",
    "ProvisioningResult",
    "ResultStatus",
    "Stage",
]
