"""Read provisioning requests from CSV and export results as CSV or JSON."""
from __future__ import annotations

import csv
import json
import re
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path

from .config import DefaultsConfig
from .provisioning.models import ProvisioningRequest, ProvisioningResult

_COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "site_id": ("siteid", "site"),
    "asset_tag": ("assettag", "asset", "tag"),
    "description": ("description",),
    "container_path": ("containerpath", "ou", "container"),
    "groups": ("groups",),
    "join_principal": ("joinprincipal", "principal"),
}
_GROUP_COLUMN = re.compile(r"^group(\d+)$")
REQUIRED_FIELDS = ("site_id", "asset_tag")

RESULT_COLUMNS = (
    "Row",
    "SiteId",
    "AssetTag",
    "Description",
    "ContainerPath",
    "Groups",
    "JoinPrincipal",
    "ComputerName",
    "Stage",
    "Status",
    "Error",
    "FailedGroups",
    "Permission",
)


class RecordsError(RuntimeError):
    """Raised when the input file cannot be parsed or results cannot be written."""


def _normalise(header: str) -> str:
    return re.sub(r"[\s_\-]", "", header).lower()


def _map_columns(headers: Sequence[str]) -> tuple[dict[str, str], list[str]]:
    """Return ``(field -> header, ordered GroupN headers)``."""
    columns: dict[str, str] = {}
    numbered: list[tuple[int, str]] = []
    for header in headers:
        key = _normalise(header)
        match = _GROUP_COLUMN.match(key)
        if match:
            numbered.append((int(match.group(1)), header))
            continue
        for field, aliases in _COLUMN_ALIASES.items():
            if key in aliases and field not in columns:
                columns[field] = header
                break
    numbered.sort()
    return columns, [header for _, header in numbered]


def parse_requests(
    rows: Iterable[Mapping[str, str | None]],
    headers: Sequence[str],
    *,
    defaults: DefaultsConfig | None = None,
) -> list[ProvisioningRequest]:
    """Turn CSV dict rows into :class:`ProvisioningRequest` values."""
    defaults = defaults or DefaultsConfig()
    columns, group_columns = _map_columns(headers)
    missing = [field for field in REQUIRED_FIELDS if field not in columns]
    if missing:
        raise RecordsError(f"Input is missing required column(s): {', '.join(missing)}.")

    def cell(row: Mapping[str, str | None], field: str) -> str:
        header = columns.get(field)
        if header is None:
            return ""
        return (row.get(header) or "").strip()

    requests: list[ProvisioningRequest] = []
    # Row 1 is the header.
    for number, row in enumerate(rows, start=2):
        if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
            continue
        groups: list[str] = []
        if "groups" in columns:
            groups.extend(part for part in cell(row, "groups").split(";"))
        groups.extend((row.get(header) or "") for header in group_columns)
        if not any(group.strip() for group in groups):
            groups = list(defaults.groups)
        requests.append(
            ProvisioningRequest(
                site_id=cell(row, "site_id"),
                asset_tag=cell(row, "asset_tag"),
                description=cell(row, "description") or defaults.description,
                container_path=cell(row, "container_path") or (defaults.container_path or ""),
                group_names=tuple(groups),
                join_principal=cell(row, "join_principal") or defaults.join_principal,
                row=number,
            )
        )
    return requests


def read_requests(
    path: Path,
    *,
    defaults: DefaultsConfig | None = None,
) -> list[ProvisioningRequest]:
    """Read requests from the CSV file at *path*."""
    try:
        with path.open(newline="", encoding="utf-8-sig") as handle:
            reader = csv.DictReader(handle)
            headers = list(reader.fieldnames or [])
            if not headers:
                raise RecordsError(f"{path} has no header row.")
            return parse_requests(reader, headers, defaults=defaults)
    except OSError as exc:
        raise RecordsError(f"Cannot read {path}: {exc}") from exc
    except csv.Error as exc:
        raise RecordsError(f"{path} is not valid CSV: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise RecordsError(
            f"{path} is not valid UTF-8 text: {exc.reason} at byte {exc.start}"
        ) from exc


def result_row(result: ProvisioningResult) -> dict[str, object]:
    """Flatten *result* into one CSV row."""
    request = result.request
    return {
        "Row": request.row if request.row is not None else "",
        "SiteId": request.site_id,
        "AssetTag": request.asset_tag,
        "Description": request.description,
        "ContainerPath": request.container_path,
        "Groups": ";".join(group for group in request.group_names if group.strip()),
        "JoinPrincipal": request.join_principal or "",
        "ComputerName": result.name or "",
        "Stage": result.stage.value,
        "Status": result.status.value,
        "Error": result.error or "",
        "FailedGroups": ";".join(result.failed_groups),
        "Permission": result.permission.value,
    }


def write_results(path: Path, results: Sequence[ProvisioningResult]) -> Path:
    """Write *results* as JSON when *path* ends in ``.json``, otherwise as CSV."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix.lower() == ".json":
            payload = {
                "generated": datetime.now(UTC).isoformat(),
                "results": [result.to_dict() for result in results],
            }
            path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
            return path
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=list(RESULT_COLUMNS))
            writer.writeheader()
            for result in results:
                writer.writerow(result_row(result))
    except OSError as exc:
        raise RecordsError(f"Cannot write results to {path}: {exc}") from exc
    return path


__all__ = [
    "RESULT_COLUMNS",
    "RecordsError",
    "parse_requests",
    "read_requests",
    "result_row",
    "write_results",
]
