"""Directory lookup that waits out replication lag."""
from __future__ import annotations

from dataclasses import dataclass, field

from ..errors import LookupTimeout
from ..naming import account_key
from ..providers.directory import DirectoryClient, DirectoryError, DirectoryObjectRef
from ..retry import RetryPolicy


@dataclass(slots=True)
class DirectoryLookup:
    """Resolve a freshly created object by its account name, retrying on misses."""

    client: DirectoryClient
    policy: RetryPolicy = field(default_factory=RetryPolicy)

    def resolve(self, name: str) -> DirectoryObjectRef | None:
        """Return the ref for *name*, or ``None`` once every attempt has missed.

        Individual failures (not found, or a :class:`DirectoryError`) are not
        reported; they only cause another attempt.
        """
        ref, _ = self._poll(account_key(name))
        return ref

    def require(self, name: str) -> DirectoryObjectRef:
        """Like :meth:`resolve` but raise :class:`LookupTimeout` on exhaustion."""
        key = account_key(name)
        ref, attempts = self._poll(key)
        if ref is None:
            raise LookupTimeout(key, attempts)
        return ref

    def _poll(self, key: str) -> tuple[DirectoryObjectRef | None, int]:
        return self.policy.poll(
            lambda: self.client.find_object(key),
            retry_on=(DirectoryError,),
            label=f"lookup {key}",
        )


__all__ = ["DirectoryLookup"]
