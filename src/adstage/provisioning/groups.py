"""Best-effort group membership."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from ..errors import GroupAddFailed
from ..logging import OperationScope
from ..providers.directory import DirectoryClient, DirectoryError
from .models import GroupOutcome


@dataclass(slots=True)
class GroupMembershipApplier:
    """Add an object to each listed group, isolating failures per group."""

    client: DirectoryClient

    def apply(
        self,
        object_key: str,
        group_names: Iterable[str],
        *,
        op: OperationScope | None = None,
    ) -> list[GroupOutcome]:
        outcomes: list[GroupOutcome] = []
        for raw in group_names:
            group = raw.strip()
            if not group:
                continue
            try:
                self.client.add_group_member(group, object_key)
            except DirectoryError as exc:
                failure = GroupAddFailed(group, exc)
                outcomes.append(GroupOutcome(group=group, added=False, error=str(failure)))
                if op is not None:
                    op.warn(f"group.add {group}", str(failure))
                continue
            outcomes.append(GroupOutcome(group=group, added=True))
            if op is not None:
                op.add_step(f"group.add {group}", status="success", detail=object_key)
        return outcomes


__all__ = ["GroupMembershipApplier"]
