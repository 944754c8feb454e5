"""Directory lookup with retry tests."""
from __future__ import annotations

import pytest

from adstage.errors import LookupTimeout
from adstage.provisioning import DirectoryLookup
from adstage.retry import RetryPolicy


def _lookup(directory: object, sleeps: list[float], attempts: int = 10) -> DirectoryLookup:
    return DirectoryLookup(
        directory,  # type: ignore[arg-type]
        RetryPolicy(attempts=attempts, delay=3.0, sleep=sleeps.append),
    )


@pytest.mark.parametrize("visible_on", [1, 2, 5, 10])
def test_resolves_on_attempt_k(directory, sleeps: list[float], visible_on: int) -> None:
    """An object visible on attempt k costs exactly k lookups and (k-1) waits."""
    directory.replication_delay = visible_on - 1
    directory.create_object("OSNSITE01BC1234", "", "OU=Staging,DC=corp,DC=example")

    ref = _lookup(directory, sleeps).resolve("OSNSITE01BC1234")

    assert ref is not None
    assert ref.key == "OSNSITE01BC1234$"
    assert directory.count("find_object") == visible_on
    assert sum(sleeps) == pytest.approx((visible_on - 1) * 3.0)


def test_never_visible_returns_none(directory, sleeps: list[float]) -> None:
    """Exhaustion is reported as None after exactly `attempts` tries."""
    ref = _lookup(directory, sleeps, attempts=10).resolve("OSNMISSING")

    assert ref is None
    assert directory.count("find_object") == 10
    assert sum(sleeps) == pytest.approx(9 * 3.0)


def test_require_raises_lookup_timeout(directory, sleeps: list[float]) -> None:
    """require() turns exhaustion into LookupTimeout naming the key."""
    with pytest.raises(LookupTimeout) as excinfo:
        _lookup(directory, sleeps, attempts=3).require("OSNMISSING")

    assert excinfo.value.key == "OSNMISSING$"
    assert excinfo.value.attempts == 3


def test_directory_errors_are_retried(directory, sleeps: list[float]) -> None:
    """A failing attempt is treated as a miss, not surfaced."""
    directory.create_object("OSNHQ1", "", "OU=Staging,DC=corp,DC=example")
    directory.find_errors = 2

    ref = _lookup(directory, sleeps).resolve("OSNHQ1")

    assert ref is not None
    assert directory.count("find_object") == 3
    assert sleeps == [3.0, 3.0]
