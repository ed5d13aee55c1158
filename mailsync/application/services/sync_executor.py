"""Sync executor: runs one SyncJob end to end.

check cancellation -> mark running -> per scope: credential -> adapter
call (timeout) -> persist -> next scope; the classified outcome is then
routed to the scheduler state store. The whole job runs under its own
timeout, separate from the per-call adapter timeout.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from mailsync.application.dtos.credentials import AccessCredential
from mailsync.application.dtos.mailbox import (
    CalendarSyncPage,
    ContactSyncPage,
    EmailSyncPage,
    MailFolder,
    SyncCollectionParams,
    SyncEmailsParams,
)
from mailsync.application.interfaces.repositories import ISyncedItemRepository
from mailsync.application.interfaces.services import (
    AdapterFactory,
    ErrorClassifier,
    ICancellationSource,
    IMailboxAdapter,
)
from mailsync.application.services.adapter_invoker import invoke_adapter
from mailsync.application.services.scheduler_state import SchedulerStateStore
from mailsync.application.services.token_lifecycle_manager import TokenLifecycleManager
from mailsync.core.config import Settings, get_settings
from mailsync.domain.entities.classified_error import CallResult, ClassifiedError
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.entities.sync_job import ScopeSyncResult, SyncJob, SyncResult
from mailsync.domain.enums import ErrorCategory, SyncScope, SyncType
from mailsync.domain.exceptions import (
    AuthRevokedException,
    JobCancelledException,
    ProviderCredentialError,
)
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.telemetry.tracing import TracedOperation

logger = get_logger(__name__)

SyncPage = EmailSyncPage | CalendarSyncPage | ContactSyncPage


class SyncExecutor:
    """Executes jobs claimed by workers. Holds no per-job state."""

    def __init__(
        self,
        items: ISyncedItemRepository,
        tokens: TokenLifecycleManager,
        adapter_factory: AdapterFactory,
        state: SchedulerStateStore,
        cancellation: ICancellationSource,
        classify: ErrorClassifier,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.items = items
        self.tokens = tokens
        self.adapter_factory = adapter_factory
        self.state = state
        self.cancellation = cancellation
        self.classify = classify
        self.settings = settings or get_settings()
        self.sleep = sleep

    async def execute(self, job: SyncJob) -> SyncResult:
        """Run job and record its outcome. Never raises for provider failures."""
        result = SyncResult(provider_id=job.provider_id, job_id=job.job_id)
        async with TracedOperation(
            "sync.job",
            {
                "provider_id": job.provider_id,
                "job_id": job.job_id,
                "provider_type": job.provider_type.value,
                "sync_type": job.sync_type.value,
                "priority": job.priority.value,
            },
        ) as op:
            if self.cancellation.is_cancelled(job.provider_id):
                result.cancelled = True
                return result
            config = await self.state.mark_running(job.provider_id)
            if config is None:
                logger.info("Skipping job %s: provider removed or disabled", job.job_id)
                result.cancelled = True
                return result

            try:
                async with asyncio.timeout(self.settings.job_timeout_seconds):
                    await self._run_scopes(job, config, result)
            except TimeoutError:
                result.timed_out = True
                result.error = ClassifiedError(
                    ErrorCategory.TRANSIENT,
                    f"job exceeded {self.settings.job_timeout_seconds:g}s",
                )
            except JobCancelledException:
                result.cancelled = True
            except Exception as e:
                crash = ClassifiedError(ErrorCategory.TRANSIENT, f"{type(e).__name__}: {e}")
                await self.state.record_failure(job.provider_id, crash, result.next_cursors)
                raise

            await self._settle(job, result)
            op.set_attribute("outcome", self._outcome(result))
            op.set_attribute("items", sum(r.synced for r in result.scopes.values()))
        return result

    @staticmethod
    def _outcome(result: SyncResult) -> str:
        if result.cancelled:
            return "cancelled"
        if result.error is not None:
            return result.error.category.value
        return "success"

    def _checkpoint(self, job: SyncJob) -> None:
        if self.cancellation.is_cancelled(job.provider_id):
            raise JobCancelledException(job.provider_id, job.job_id)

    async def _run_scopes(self, job: SyncJob, config: ProviderConfig, result: SyncResult) -> None:
        for scope in job.scopes:
            if not config.supports(scope):
                continue
            self._checkpoint(job)
            scope_result, error = await self._sync_scope(job, config, scope)
            if error is not None:
                result.error = error
                return
            result.scopes[scope] = scope_result

    async def _sync_scope(
        self, job: SyncJob, config: ProviderConfig, scope: SyncScope
    ) -> tuple[ScopeSyncResult | None, ClassifiedError | None]:
        sync_type = job.sync_type_for(scope)
        cursor = job.cursors.get(scope) if sync_type is SyncType.INCREMENTAL else None
        rejected: str | None = None
        auth_retried = False
        attempt = 1
        while True:
            self._checkpoint(job)
            credential: AccessCredential | None = None
            try:
                credential = await self.tokens.get_valid_access_token(
                    job.provider_id, rejected_token=rejected
                )
            except AuthRevokedException as e:
                return None, ClassifiedError(ErrorCategory.AUTH_REVOKED, e.reason)
            except ProviderCredentialError as e:
                error = e.classified
            else:
                rejected = None
                call = await self._call_adapter(config, credential, scope, sync_type, cursor)
                if call.ok:
                    self._checkpoint(job)
                    return await self._persist(job, scope, sync_type, cursor, call.value), None
                error = call.error

            if error.category is ErrorCategory.AUTH_EXPIRED:
                if not auth_retried and credential is not None:
                    auth_retried = True
                    rejected = credential.reveal()
                    logger.info(
                        "Provider %s rejected token, retrying after refresh", job.provider_id
                    )
                    continue
                return None, ClassifiedError(
                    ErrorCategory.TRANSIENT,
                    f"authorization failed after refresh: {error.message}",
                    error.status_code,
                    error.provider_code,
                )
            if (
                error.category is ErrorCategory.TRANSIENT
                and attempt < self.settings.transient_max_attempts
            ):
                delay = self.settings.transient_retry_base_seconds * attempt
                logger.info(
                    "Transient failure for provider %s (%s), attempt %d, retrying in %.1fs",
                    job.provider_id,
                    error.describe(),
                    attempt,
                    delay,
                )
                await self.sleep(delay)
                attempt += 1
                continue
            return None, error

    def _max_items(self, sync_type: SyncType) -> int:
        if sync_type is SyncType.FULL:
            return self.settings.full_sync_max_messages
        return self.settings.incremental_sync_max_messages

    async def _call_adapter(
        self,
        config: ProviderConfig,
        credential: AccessCredential,
        scope: SyncScope,
        sync_type: SyncType,
        cursor: str | None,
    ) -> CallResult[SyncPage]:
        try:
            adapter = self.adapter_factory(config, credential)
        except Exception as e:
            return CallResult.failure(self.classify(e))
        try:
            return await invoke_adapter(
                lambda: self._scope_call(adapter, scope, sync_type, cursor),
                self.classify,
                self.settings.adapter_call_timeout_seconds,
            )
        finally:
            await self._close(adapter)

    def _scope_call(
        self,
        adapter: IMailboxAdapter,
        scope: SyncScope,
        sync_type: SyncType,
        cursor: str | None,
    ) -> Awaitable[SyncPage]:
        limit = self._max_items(sync_type)
        if scope is SyncScope.EMAIL:
            email_params = SyncEmailsParams(sync_type, cursor, max_messages=limit)
            return self._email_call(adapter, email_params)
        params = SyncCollectionParams(sync_type, cursor, max_items=limit)
        if scope is SyncScope.CALENDAR:
            return adapter.sync_calendar(params)
        return adapter.sync_contacts(params)

    @staticmethod
    async def _email_call(adapter: IMailboxAdapter, params: SyncEmailsParams) -> EmailSyncPage:
        page = await adapter.sync_emails(params)
        page.folders = await adapter.list_folders()
        return page

    @staticmethod
    async def _close(adapter: IMailboxAdapter) -> None:
        try:
            await adapter.aclose()
        except Exception as e:
            logger.warning("Adapter close failed: %s", e)

    async def _persist(
        self,
        job: SyncJob,
        scope: SyncScope,
        sync_type: SyncType,
        cursor: str | None,
        page: SyncPage,
    ) -> ScopeSyncResult:
        """Upsert changed items, delete removed ones; keyed by (provider_id, external_id)."""
        tenant_id, provider_id = job.tenant_id, job.provider_id
        if isinstance(page, EmailSyncPage):
            counts = await self.items.upsert_emails(tenant_id, provider_id, page.messages)
            deleted = (
                await self.items.delete_emails(provider_id, page.deleted_ids)
                if page.deleted_ids
                else 0
            )
            if page.folders is not None:
                await self._persist_folders(tenant_id, provider_id, page.folders)
        elif isinstance(page, CalendarSyncPage):
            counts = await self.items.upsert_events(tenant_id, provider_id, page.events)
            deleted = (
                await self.items.delete_events(provider_id, page.deleted_ids)
                if page.deleted_ids
                else 0
            )
        else:
            counts = await self.items.upsert_contacts(tenant_id, provider_id, page.contacts)
            deleted = (
                await self.items.delete_contacts(provider_id, page.deleted_ids)
                if page.deleted_ids
                else 0
            )
        logger.debug(
            "Provider %s %s: %d upserted (%d new), %d deleted",
            provider_id,
            scope.value,
            counts.total,
            counts.inserted,
            deleted,
        )
        return ScopeSyncResult(
            scope=scope,
            sync_type=SyncType.FULL if page.full_resync else sync_type,
            synced=counts.total,
            new_items=counts.inserted,
            deleted=deleted,
            next_cursor=page.next_cursor or cursor,
            full_resync=page.full_resync,
        )

    async def _persist_folders(
        self, tenant_id: str, provider_id: str, folders: list[MailFolder]
    ) -> None:
        """Mirror the complete folder listing; folders gone from the mailbox are dropped."""
        await self.items.upsert_folders(tenant_id, provider_id, folders)
        removed = await self.items.delete_folders_except(
            provider_id, [folder.external_id for folder in folders]
        )
        logger.debug(
            "Provider %s folders: %d listed, %d removed", provider_id, len(folders), removed
        )

    async def _settle(self, job: SyncJob, result: SyncResult) -> None:
        pid = job.provider_id
        if result.cancelled:
            await self.state.release(pid)
            logger.info("Sync job %s cancelled", job.job_id)
            return
        error = result.error
        if error is None:
            await self.state.record_success(pid, result)
            logger.info(
                "Synced provider %s: emails=%d events=%d contacts=%d new=%d",
                pid,
                result.emails_synced,
                result.events_synced,
                result.contacts_synced,
                result.new_items,
            )
        elif error.category is ErrorCategory.AUTH_REVOKED:
            await self.state.record_auth_revoked(pid, error.describe())
            logger.warning("Provider %s needs reconnection: %s", pid, error.describe())
        elif error.category is ErrorCategory.RATE_LIMITED:
            await self.state.record_rate_limited(pid, error, result.next_cursors)
        elif error.category is ErrorCategory.PERMANENT:
            await self.state.record_permanent_failure(pid, error, result.next_cursors)
        else:
            await self.state.record_failure(pid, error, result.next_cursors)
