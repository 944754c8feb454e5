"""Tests for CSV input parsing and result export."""
from __future__ import annotations

import csv
import json
from pathlib import Path

import pytest

from adstage.config import DefaultsConfig
from adstage.provisioning import (
    GroupOutcome,
    PermissionOutcome,
    ProvisioningRequest,
    ProvisioningResult,
    ResultStatus,
    Stage,
)
from adstage.records import (
    RESULT_COLUMNS,
    RecordsError,
    parse_requests,
    read_requests,
    write_results,
)


def _write_csv(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_read_requests_maps_columns(tmp_path: Path) -> None:
    source = _write_csv(
        tmp_path / "input.csv",
        "\ufeffSite Id,AssetTag,Description,OU,Groups,Group2,Group1,JoinPrincipal\n"
        "SITE01,ABC1234,Front desk,\"OU=Staging,DC=corp\",A;B,G2,G1,CORP\\joiner\n",
    )

    (request,) = read_requests(source)

    assert request == ProvisioningRequest(
        site_id="SITE01",
        asset_tag="ABC1234",
        description="Front desk",
        container_path="OU=Staging,DC=corp",
        group_names=("A", "B", "G1", "G2"),
        join_principal="CORP\\joiner",
        row=2,
    )


def test_defaults_fill_blank_cells() -> None:
    defaults = DefaultsConfig(
        container_path="OU=Default,DC=corp",
        description="Pre-staged",
        join_principal="CORP\\joiner",
        groups=("Workstations",),
    )
    rows = [{"SiteId": "HQ", "AssetTag": "T1", "Groups": ""}]

    (request,) = parse_requests(rows, ["SiteId", "AssetTag", "Groups"], defaults=defaults)

    assert request.container_path == "OU=Default,DC=corp"
    assert request.description == "Pre-staged"
    assert request.join_principal == "CORP\\joiner"
    assert request.group_names == ("Workstations",)


def test_blank_rows_are_skipped_and_numbered_by_line() -> None:
    rows = [
        {"SiteId": "HQ", "AssetTag": "T1"},
        {"SiteId": " ", "AssetTag": ""},
        {"SiteId": "HQ", "AssetTag": "T3"},
    ]

    requests = parse_requests(rows, ["SiteId", "AssetTag"])

    assert [request.row for request in requests] == [2, 4]
    assert requests[0].join_principal is None


def test_missing_required_column() -> None:
    with pytest.raises(RecordsError, match="asset_tag"):
        parse_requests([], ["SiteId", "Description"])


def test_headerless_file(tmp_path: Path) -> None:
    source = _write_csv(tmp_path / "empty.csv", "")
    with pytest.raises(RecordsError, match="no header"):
        read_requests(source)


def test_unreadable_file(tmp_path: Path) -> None:
    with pytest.raises(RecordsError, match="Cannot read"):
        read_requests(tmp_path / "missing.csv")


def _results() -> list[ProvisioningResult]:
    request = ProvisioningRequest(
        site_id="SITE01",
        asset_tag="ABC1234",
        container_path="OU=Staging,DC=corp",
        group_names=("A", "", "B"),
        join_principal="joiner",
        row=2,
    )
    return [
        ProvisioningResult(
            request=request,
            name="OSNSITE01BC1234",
            stage=Stage.COMPLETE,
            status=ResultStatus.PARTIAL,
            groups=[
                GroupOutcome(group="A", added=False, error="not found"),
                GroupOutcome(group="B", added=True),
            ],
            permission=PermissionOutcome.GRANTED,
        )
    ]


def test_write_results_csv(tmp_path: Path) -> None:
    target = write_results(tmp_path / "out" / "results.csv", _results())

    with target.open(newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        assert tuple(reader.fieldnames or ()) == RESULT_COLUMNS
        (row,) = list(reader)

    assert row["ComputerName"] == "OSNSITE01BC1234"
    assert row["Status"] == "partial"
    assert row["Stage"] == "complete"
    assert row["Groups"] == "A;B"
    assert row["FailedGroups"] == "A"
    assert row["Permission"] == "granted"
    assert row["Error"] == ""


def test_write_results_json(tmp_path: Path) -> None:
    target = write_results(tmp_path / "results.json", _results())

    payload = json.loads(target.read_text(encoding="utf-8"))
    assert "generated" in payload
    (entry,) = payload["results"]
    assert entry["name"] == "OSNSITE01BC1234"
    assert entry["success"] is True
    assert entry["groups"][0] == {"group": "A", "added": False, "error": "not found"}


def test_non_utf8_file(tmp_path: Path) -> None:
    source = tmp_path / "latin.csv"
    source.write_bytes(b"SiteId,AssetTag\nSITE01,AB\xff\xfe12\n")

    with pytest.raises(RecordsError, match="not valid UTF-8"):
        read_requests(source)
