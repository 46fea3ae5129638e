"""Google Ads implementation of :class:`~adbulk.bulk.client.BulkMutationApi`.

Uses ``BatchJobService`` for the job lifecycle and ``GoogleAdsService``
search for status polls and the fallback entity listing. The SDK is
synchronous; calls run in a worker thread. Transient failures (server
unavailable, internal errors) are retried with exponential backoff before
surfacing as :class:`~adbulk.bulk.exceptions.RemoteApiError`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from google.ads.googleads.client import GoogleAdsClient
from google.ads.googleads.errors import GoogleAdsException
from google.api_core import exceptions as api_exceptions
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from adbulk.bulk.client import (
    JobResults,
    JobStatusReport,
    Operation,
    OperationFailure,
    RemoteEntity,
)
from adbulk.bulk.exceptions import RemoteApiError
from adbulk.bulk.operands import customer_id
from adbulk.config import get_google_ads_credentials
from adbulk.models import BulkConfig, OperandType, PolicyExemption, RemoteJobStatus

logger = logging.getLogger(__name__)

_TRANSIENT_GRPC_STATUSES = {"UNAVAILABLE", "INTERNAL", "DEADLINE_EXCEEDED", "UNKNOWN"}

_TRANSIENT_API_ERRORS = (
    api_exceptions.ServiceUnavailable,
    api_exceptions.InternalServerError,
    api_exceptions.DeadlineExceeded,
)


def _error_code(error_code: Any) -> str | None:
    """``<family>.<NAME>`` for the populated member of an ErrorCode oneof."""
    family = type(error_code).pb(error_code).WhichOneof("error_code")
    if family is None:
        return None
    return f"{family}.{getattr(error_code, family).name}"


def _to_remote_error(exc: GoogleAdsException) -> RemoteApiError:
    errors = list(exc.failure.errors) if exc.failure is not None else []
    message = "; ".join(e.message for e in errors) or str(exc)
    code = _error_code(errors[0].error_code) if errors else None
    grpc_status = exc.error.code().name if exc.error is not None else ""
    transient = grpc_status in _TRANSIENT_GRPC_STATUSES or (code or "").startswith(
        "internal_error."
    )
    return RemoteApiError(message, code=code, transient=transient)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, RemoteApiError) and exc.transient


def _numeric_ids(ids: list[str]) -> str:
    return ", ".join(str(int(i)) for i in ids)


class GoogleAdsBulkClient:
    """Bulk mutation API backed by the google-ads SDK.

    Usage::

        client = GoogleAdsBulkClient.from_config(load_bulk_config())
        job = await client.create_job("123-456-7890")

    Args:
        sdk_client: Configured ``GoogleAdsClient`` (``use_proto_plus=True``).
        page_size: Page size for listing batch job results.
        max_attempts: Attempts per call for transient failures.
        retry_wait: Base of the exponential wait between attempts, in seconds.
    """

    def __init__(
        self,
        sdk_client: GoogleAdsClient,
        page_size: int = 1000,
        max_attempts: int = 4,
        retry_wait: float = 1.0,
    ) -> None:
        self._client = sdk_client
        self._page_size = page_size
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait

    @classmethod
    def from_config(cls, config: BulkConfig) -> GoogleAdsBulkClient:
        """Build a client from keyring/env credentials.

        Raises:
            RuntimeError: If a credential is missing.
        """
        sdk_client = GoogleAdsClient.load_from_dict(get_google_ads_credentials(config))
        return cls(sdk_client, page_size=config.results_page_size)

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def create_job(self, account_id: str) -> str:
        service = self._client.get_service("BatchJobService")
        operation = self._client.get_type("BatchJobOperation")
        self._client.copy_from(operation.create, self._client.get_type("BatchJob"))
        response = await self._call(
            service.mutate_batch_job, customer_id=customer_id(account_id), operation=operation
        )
        resource_name = response.result.resource_name
        logger.info("Created remote batch job %s", resource_name)
        return resource_name

    async def add_operations(
        self,
        remote_job_id: str,
        operations: list[Operation],
        continuation_token: str | None,
    ) -> str | None:
        service = self._client.get_service("BatchJobService")
        kwargs: dict[str, Any] = {
            "resource_name": remote_job_id,
            "mutate_operations": [self._to_mutate_operation(op) for op in operations],
        }
        if continuation_token:
            kwargs["sequence_token"] = continuation_token
        response = await self._call(service.add_batch_job_operations, **kwargs)
        logger.debug(
            "Added %d operations to %s (total %d)",
            len(operations),
            remote_job_id,
            response.total_operations,
        )
        return response.next_sequence_token or None

    async def run_job(self, remote_job_id: str) -> None:
        service = self._client.get_service("BatchJobService")
        # the returned long-running operation is not awaited; the poller tracks the job
        await self._call(service.run_batch_job, resource_name=remote_job_id)
        logger.info("Started remote batch job %s", remote_job_id)

    async def get_job_status(self, account_id: str, remote_job_id: str) -> JobStatusReport:
        query = (
            "SELECT batch_job.status, batch_job.metadata.operation_count, "
            "batch_job.metadata.executed_operation_count "
            f"FROM batch_job WHERE batch_job.resource_name = '{remote_job_id}'"
        )
        rows = await self._search(account_id, query)
        if not rows:
            return JobStatusReport(status=RemoteJobStatus.UNKNOWN)
        batch_job = rows[0].batch_job
        try:
            status = RemoteJobStatus(batch_job.status.name)
        except ValueError:
            status = RemoteJobStatus.UNKNOWN
        return JobStatusReport(
            status=status,
            operation_count=batch_job.metadata.operation_count,
            executed_operation_count=batch_job.metadata.executed_operation_count,
        )

    async def fetch_results(self, account_id: str, remote_job_id: str) -> JobResults:
        service = self._client.get_service("BatchJobService")

        def _list() -> list[Any]:
            return list(
                service.list_batch_job_results(
                    request={"resource_name": remote_job_id, "page_size": self._page_size}
                )
            )

        rows = await self._call(_list)
        results = JobResults()
        for row in rows:
            index = row.operation_index
            if row.status is not None and row.status.code != 0:
                results.failures[index] = self._failure_from_status(row.status)
                continue
            response = row.mutate_operation_response
            field_name = type(response).pb(response).WhichOneof("response")
            if field_name is None:
                continue
            results.successes[index] = getattr(response, field_name).resource_name
        logger.info(
            "Fetched results of %s: %d successes, %d failures",
            remote_job_id,
            len(results.successes),
            len(results.failures),
        )
        return results

    # ------------------------------------------------------------------
    # Fallback entity listing
    # ------------------------------------------------------------------

    async def query_entities(
        self,
        account_id: str,
        operand_type: OperandType,
        campaign_external_ids: list[str],
    ) -> list[RemoteEntity]:
        if not campaign_external_ids:
            return []
        ids = _numeric_ids(campaign_external_ids)

        if operand_type is OperandType.AD_GROUP:
            query = (
                "SELECT campaign.id, ad_group.id, ad_group.name FROM ad_group "
                f"WHERE campaign.id IN ({ids}) AND ad_group.status != 'REMOVED'"
            )
        elif operand_type is OperandType.KEYWORD:
            query = (
                "SELECT campaign.id, ad_group.id, ad_group_criterion.criterion_id, "
                "ad_group_criterion.keyword.text FROM ad_group_criterion "
                f"WHERE ad_group_criterion.type = 'KEYWORD' AND campaign.id IN ({ids}) "
                "AND ad_group_criterion.status != 'REMOVED'"
            )
        elif operand_type is OperandType.AD:
            query = (
                "SELECT campaign.id, ad_group.id, ad_group_ad.ad.id, "
                "ad_group_ad.ad.responsive_search_ad.headlines FROM ad_group_ad "
                f"WHERE campaign.id IN ({ids}) AND ad_group_ad.status != 'REMOVED'"
            )
        elif operand_type is OperandType.EXTENSION:
            query = (
                "SELECT campaign.id, asset.id, asset.callout_asset.callout_text, "
                "asset.sitelink_asset.link_text FROM campaign_asset "
                f"WHERE campaign.id IN ({ids}) AND campaign_asset.status != 'REMOVED'"
            )
        else:
            raise ValueError(f"Unsupported operand type: {operand_type!r}")

        rows = await self._search(account_id, query)
        return [self._row_to_entity(operand_type, row) for row in rows]

    @staticmethod
    def _row_to_entity(operand_type: OperandType, row: Any) -> RemoteEntity:
        campaign_id = str(row.campaign.id)
        if operand_type is OperandType.AD_GROUP:
            return RemoteEntity(str(row.ad_group.id), campaign_id, row.ad_group.name)
        if operand_type is OperandType.KEYWORD:
            criterion = row.ad_group_criterion
            return RemoteEntity(
                str(criterion.criterion_id),
                campaign_id,
                criterion.keyword.text,
                parent_external_id=str(row.ad_group.id),
            )
        if operand_type is OperandType.AD:
            ad = row.ad_group_ad.ad
            headlines = list(ad.responsive_search_ad.headlines)
            return RemoteEntity(
                str(ad.id),
                campaign_id,
                headlines[0].text if headlines else "",
                parent_external_id=str(row.ad_group.id),
            )
        asset = row.asset
        text = asset.callout_asset.callout_text or asset.sitelink_asset.link_text
        return RemoteEntity(str(asset.id), campaign_id, text)

    # ------------------------------------------------------------------
    # Internal: operation conversion
    # ------------------------------------------------------------------

    def _to_mutate_operation(self, op: Operation) -> Any:
        inner: dict[str, Any]
        if op.verb == "remove":
            inner = {"remove": op.payload["resource_name"]}
        else:
            inner = {op.verb: op.payload}
        if op.update_mask:
            inner["update_mask"] = {"paths": list(op.update_mask)}
        if op.exemptions:
            keys = [e.to_dict() for e in op.exemptions]
            if op.resource == "ad_group_criterion":
                inner["exempt_policy_violation_keys"] = keys
            elif op.resource == "ad_group_ad":
                inner["policy_validation_parameter"] = {"exempt_policy_violation_keys": keys}
        mutate_operation_type = type(self._client.get_type("MutateOperation"))
        return mutate_operation_type(**{f"{op.resource}_operation": inner})

    def _failure_from_status(self, status: Any) -> OperationFailure:
        # only the leading clause of the message is stable across operations
        message = status.message.split(",", 1)[0]
        failure = OperationFailure(message=message)
        failure_type = type(self._client.get_type("GoogleAdsFailure"))
        for detail in status.details:
            for error in failure_type.deserialize(detail.value).errors:
                if failure.code is None:
                    failure.code = _error_code(error.error_code)
                key = error.details.policy_violation_details.key
                if key.policy_name and failure.policy_violation is None:
                    failure.policy_violation = PolicyExemption(key.policy_name, key.violating_text)
                    failure.exemptible = bool(
                        error.details.policy_violation_details.is_exemptible
                    )
        return failure

    # ------------------------------------------------------------------
    # Internal: calls
    # ------------------------------------------------------------------

    async def _search(self, account_id: str, query: str) -> list[Any]:
        service = self._client.get_service("GoogleAdsService")

        def _run() -> list[Any]:
            rows: list[Any] = []
            for batch in service.search_stream(customer_id=customer_id(account_id), query=query):
                rows.extend(batch.results)
            return rows

        return await self._call(_run)

    async def _call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call in a thread, translating and retrying errors."""
        async for attempt in AsyncRetrying(
            wait=wait_exponential(multiplier=self._retry_wait, max=30),
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                try:
                    return await asyncio.to_thread(func, *args, **kwargs)
                except GoogleAdsException as exc:
                    error = _to_remote_error(exc)
                    logger.warning(
                        "Google Ads call failed (request_id=%s, transient=%s): %s",
                        exc.request_id,
                        error.transient,
                        error.message,
                    )
                    raise error from exc
                except api_exceptions.GoogleAPICallError as exc:
                    raise RemoteApiError(
                        str(exc.message), transient=isinstance(exc, _TRANSIENT_API_ERRORS)
                    ) from exc
