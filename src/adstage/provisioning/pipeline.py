"""Sequential batch runner tying the provisioning stages together."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from ..errors import ProvisioningError
from ..logging import OperationScope
from ..naming import DEFAULT_MAX_LENGTH, DEFAULT_PREFIX, account_key, generate_name
from ..providers.directory import DirectoryClient
from ..retry import RetryPolicy
from ..security import FULL_CONTROL
from .creator import ObjectCreator
from .groups import GroupMembershipApplier
from .lookup import DirectoryLookup
from .models import (
    PermissionOutcome,
    ProvisioningRequest,
    ProvisioningResult,
    ResultStatus,
    Stage,
)
from .permissions import PermissionGrantor

LOGGER = logging.getLogger(__name__)

ResultCallback = Callable[[ProvisioningResult], None]


@dataclass(slots=True)
class ProvisioningPipeline:
    """Run each request through name -> create -> groups -> permissions."""

    client: DirectoryClient | None
    prefix: str = DEFAULT_PREFIX
    max_length: int = DEFAULT_MAX_LENGTH
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    rights: int = FULL_CONTROL
    op: OperationScope | None = None
    dry_run: bool = False

    def run(
        self,
        requests: Iterable[ProvisioningRequest],
        *,
        on_result: ResultCallback | None = None,
    ) -> list[ProvisioningResult]:
        """Process *requests* strictly in order; one failure never stops the batch."""
        results: list[ProvisioningResult] = []
        for request in requests:
            result = self.process(request)
            results.append(result)
            if on_result is not None:
                on_result(result)
        return results

    def process(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Provision a single request and describe how far it got."""
        result = ProvisioningResult(request=request)
        try:
            self._process(request, result)
        except ProvisioningError as exc:
            self._record_failure(result, str(exc))
        except Exception as exc:  # noqa: BLE001 - a record must never abort the batch
            LOGGER.exception("Unexpected error while provisioning %s", request.label)
            self._record_failure(result, f"Unexpected error: {exc!r}")
        return result

    # ------------------------------------------------------------------
    def _process(self, request: ProvisioningRequest, result: ProvisioningResult) -> None:
        result.stage = Stage.NAME
        name = generate_name(
            request.site_id,
            request.asset_tag,
            prefix=self.prefix,
            max_length=self.max_length,
        )
        result.name = name
        self._step(f"name {request.label}", "info", name)

        if self.dry_run:
            result.stage = Stage.COMPLETE
            result.status = ResultStatus.PLANNED
            return

        client = self._require_client()

        result.stage = Stage.CREATE
        ObjectCreator(client).create(name, request.description, request.container_path)
        self._step(f"create {name}", "success", request.container_path)

        result.stage = Stage.GROUPS
        result.groups = GroupMembershipApplier(client).apply(
            account_key(name), request.group_names, op=self.op
        )

        result.stage = Stage.PERMISSIONS
        grantor = PermissionGrantor(
            client=client,
            lookup=DirectoryLookup(client, self.retry),
            rights=self.rights,
        )
        result.permission = grantor.grant(name, request.join_principal, op=self.op)

        result.stage = Stage.COMPLETE
        result.status = ResultStatus.PARTIAL if result.failed_groups else ResultStatus.SUCCESS

    def _record_failure(self, result: ProvisioningResult, message: str) -> None:
        result.status = ResultStatus.FAILED
        result.error = message
        if result.stage is Stage.PERMISSIONS:
            result.permission = PermissionOutcome.FAILED
        if self.op is not None:
            self.op.fail(f"{result.stage.value} {result.name or result.request.label}", message)

    def _require_client(self) -> DirectoryClient:
        if self.client is None:
            raise RuntimeError("A directory client is required unless dry_run is set.")
        return self.client

    def _step(self, name: str, status: str, detail: object | None = None) -> None:
        if self.op is not None:
            self.op.add_step(name, status=status, detail=detail)


__all__ = ["ProvisioningPipeline", "ResultCallback"]
