"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os

import pytest

from adstage.providers.directory import DirectoryError, DirectoryObjectRef
from adstage.security import AccessEntry, AccessList, Sid

ADMINS_SID = Sid.parse("S-1-5-21-1004336348-1177238915-682003330-512")
JOINER_SID = Sid.parse("S-1-5-21-1004336348-1177238915-682003330-1107")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeDirectory:
    """In-memory directory implementing the ``DirectoryClient`` protocol.

    ``replication_delay`` is the number of lookups that miss after a create
    before the object becomes visible.
    """

    def __init__(self) -> None:
        self.objects: dict[str, DirectoryObjectRef] = {}
        self.acls: dict[str, AccessList] = {}
        self.principals: dict[str, Sid] = {"corp\\joiner": JOINER_SID, "joiner": JOINER_SID}
        self.members: dict[str, list[str]] = {}
        self.failing_groups: set[str] = set()
        self.bad_containers: set[str] = set()
        self.replication_delay = 0
        self.find_errors = 0
        self.fail_acl_read = False
        self.fail_acl_write = False
        self.calls: list[tuple[str, str]] = []
        self._hidden: dict[str, int] = {}

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def __enter__(self) -> FakeDirectory:
        self.calls.append(("open", ""))
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.calls.append(("close", ""))

    def create_object(
        self,
        name: str,
        description: str,
        container_path: str,
    ) -> DirectoryObjectRef:
        self.calls.append(("create_object", name))
        key = f"{name}$"
        if container_path in self.bad_containers:
            raise DirectoryError(f"noSuchObject: {container_path}")
        if key in self.objects:
            raise DirectoryError(f"entryAlreadyExists: {name}")
        ref = DirectoryObjectRef(name=name, key=key, dn=f"CN={name},{container_path}")
        self.objects[key] = ref
        self.acls[ref.dn] = AccessList(entries=(AccessEntry.allow(ADMINS_SID),))
        self._hidden[key] = self.replication_delay
        return ref

    def find_object(self, key: str) -> DirectoryObjectRef | None:
        self.calls.append(("find_object", key))
        if self.find_errors:
            self.find_errors -= 1
            raise DirectoryError("server down")
        if self._hidden.get(key, 0) > 0:
            self._hidden[key] -= 1
            return None
        return self.objects.get(key)

    def read_access_list(self, ref: DirectoryObjectRef) -> AccessList:
        self.calls.append(("read_access_list", ref.dn))
        if self.fail_acl_read:
            raise DirectoryError("insufficientAccessRights")
        return self.acls.get(ref.dn, AccessList())

    def write_access_list(self, ref: DirectoryObjectRef, acl: AccessList) -> None:
        self.calls.append(("write_access_list", ref.dn))
        if self.fail_acl_write:
            raise DirectoryError("constraintViolation")
        self.acls[ref.dn] = acl

    def resolve_principal(self, name: str) -> Sid:
        self.calls.append(("resolve_principal", name))
        try:
            return self.principals[name.lower()]
        except KeyError:
            raise DirectoryError(f"Principal '{name}' not found.") from None

    def add_group_member(self, group_name: str, object_key: str) -> None:
        self.calls.append(("add_group_member", group_name))
        if group_name in self.failing_groups:
            raise DirectoryError(f"Group '{group_name}' not found.")
        self.members.setdefault(group_name, []).append(object_key)


@pytest.fixture
def directory() -> FakeDirectory:
    """Return an empty in-memory directory."""
    return FakeDirectory()


@pytest.fixture
def sleeps() -> list[float]:
    """Collect waits requested by a retry policy instead of sleeping."""
    return []
