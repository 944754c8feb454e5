"""Create computer objects in the directory."""
from __future__ import annotations

from dataclasses import dataclass

from ..errors import CreateFailed
from ..providers.directory import DirectoryClient, DirectoryError, DirectoryObjectRef


@dataclass(slots=True)
class ObjectCreator:
    """Issue the create call; visibility is confirmed later by a lookup."""

    client: DirectoryClient

    def create(self, name: str, description: str, container_path: str) -> DirectoryObjectRef:
        if not container_path.strip():
            raise CreateFailed(name, container_path, ValueError("container path is blank"))
        try:
            return self.client.create_object(name, description, container_path.strip())
        except DirectoryError as exc:
            raise CreateFailed(name, container_path, exc) from exc


__all__ = ["ObjectCreator"]
