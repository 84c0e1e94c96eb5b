from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from attachflow.core.config import get_settings

from .errors import (
    AttachmentConflictError,
    DeadlineExceededError,
    InvalidTransitionError,
    RetryExhaustedError,
    StoreDisposedError,
)
from .notifications import NotificationBus
from .retry import RetryOptions, RetryPolicy, run_with_deadline
from .schemas import Attachment, AttachmentStatus, FileMeta
from .store import AttachmentStore
from .validation import validate_file

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
UploadFn = Callable[[Attachment, bytes, ProgressCallback], Awaitable[str]]
DiscardFn = Callable[[str], Awaitable[Any]]


@dataclass
class UploadSummary:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed and not self.skipped and not self.abandoned


def _failure_detail(exc: Exception) -> str:
    cause = exc.last_error if isinstance(exc, RetryExhaustedError) else exc
    return str(cause) or type(cause).__name__


class UploadCoordinator:
    """Drives pending attachments of one store through upload.

    Each attachment gets its own task, tagged with the store generation it
    was started under; results arriving after the store is disposed or the
    attachment was removed are handed to ``discard_fn`` instead of the store.
    An upload that outlived its deadline keeps running in the background and
    the next upload of the same attachment waits for it to settle.
    """

    def __init__(
        self,
        store: AttachmentStore,
        *,
        retry_policy: RetryPolicy | None = None,
        retry_options: RetryOptions | None = None,
        max_concurrency: int | None = None,
        deadline_seconds: float | None = None,
        notifications: NotificationBus | None = None,
    ):
        settings = get_settings()
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry_options = retry_options or self.retry_policy.options
        self.max_concurrency = max(1, max_concurrency or settings.upload_max_concurrency)
        self.deadline_seconds = deadline_seconds
        self.notifications = notifications or NotificationBus(
            buffer_size=settings.notification_buffer_size
        )
        self._tasks: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, object] = {}
        self._stragglers: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> list[str]:
        return [attachment_id for attachment_id, task in self._tasks.items() if not task.done()]

    async def upload_all(
        self,
        attachment_ids: Iterable[str],
        upload_fn: UploadFn,
        *,
        discard_fn: DiscardFn | None = None,
    ) -> UploadSummary:
        summary = UploadSummary()
        if self.store.disposed:
            summary.skipped.extend(attachment_ids)
            return summary

        generation = self.store.generation
        semaphore = asyncio.Semaphore(self.max_concurrency)
        started: dict[str, asyncio.Task] = {}

        for attachment_id in dict.fromkeys(attachment_ids):
            attachment = self.store.get(attachment_id)
            if attachment is None or attachment.status != AttachmentStatus.PENDING:
                logger.warning(
                    "Skipping upload of %s: %s.",
                    attachment_id,
                    "not found" if attachment is None else f"status is {attachment.status.value}",
                )
                summary.skipped.append(attachment_id)
                continue
            if attachment_id in self.in_flight:
                logger.warning("Skipping upload of %s: already in flight.", attachment_id)
                summary.skipped.append(attachment_id)
                continue
            task = asyncio.create_task(
                self._upload_one(attachment_id, upload_fn, discard_fn, semaphore, generation),
                name=f"upload:{attachment_id}",
            )
            self._tasks[attachment_id] = task
            started[attachment_id] = task

        if started:
            outcomes = await asyncio.gather(*started.values(), return_exceptions=True)
            for attachment_id, outcome in zip(started, outcomes):
                if self._tasks.get(attachment_id) is started[attachment_id]:
                    del self._tasks[attachment_id]
                if outcome is True:
                    summary.succeeded.append(attachment_id)
                elif outcome is False:
                    summary.failed.append(attachment_id)
                elif isinstance(outcome, BaseException) and not isinstance(
                    outcome, (asyncio.CancelledError, StoreDisposedError)
                ):
                    logger.error(
                        "Upload task for %s crashed.",
                        attachment_id,
                        exc_info=(type(outcome), outcome, outcome.__traceback__),
                    )
                    summary.failed.append(attachment_id)
                else:
                    summary.abandoned.append(attachment_id)

        if self.store.is_current(generation):
            self._announce(summary)
        return summary

    async def retry(
        self,
        attachment_id: str,
        upload_fn: UploadFn,
        *,
        discard_fn: DiscardFn | None = None,
    ) -> UploadSummary:
        """Manual retry of a failed attachment: revalidate, ``error -> pending``, upload."""
        attachment = self.store.require(attachment_id)
        if attachment.status != AttachmentStatus.ERROR:
            raise InvalidTransitionError(attachment_id, attachment.status, AttachmentStatus.PENDING)
        validate_file(
            FileMeta(
                name=attachment.name,
                size_bytes=attachment.size_bytes,
                mime_type=attachment.mime_type,
                source=b"",
            ),
            self.store.allow_list,
        )
        self.store.source_for(attachment_id)
        self.store.transition(attachment_id, AttachmentStatus.PENDING)
        return await self.upload_all([attachment_id], upload_fn, discard_fn=discard_fn)

    def abandon(self) -> None:
        for task in [*self._tasks.values(), *self._stragglers.values()]:
            task.cancel()
        self._tasks.clear()
        self._stragglers.clear()
        self._tokens.clear()

    async def _upload_one(
        self,
        attachment_id: str,
        upload_fn: UploadFn,
        discard_fn: DiscardFn | None,
        semaphore: asyncio.Semaphore,
        generation: int,
    ) -> bool | None:
        async with semaphore:
            straggler = self._stragglers.get(attachment_id)
            if straggler is not None:
                logger.info("Waiting for the timed-out upload of %s to settle.", attachment_id)
                await asyncio.wait({straggler})

            if not self.store.is_current(generation):
                return None
            current = self.store.get(attachment_id)
            if current is None or current.status != AttachmentStatus.PENDING:
                logger.warning("Attachment %s changed while queued for upload.", attachment_id)
                return None
            try:
                source = self.store.source_for(attachment_id)
            except AttachmentConflictError as exc:
                self.store.transition(attachment_id, AttachmentStatus.ERROR, error_detail=str(exc))
                return False

            attachment = self.store.transition(attachment_id, AttachmentStatus.UPLOADING)
            token = object()
            self._tokens[attachment_id] = token

            def _is_live() -> bool:
                return (
                    self._tokens.get(attachment_id) is token
                    and self.store.is_current(generation)
                    and self.store.get(attachment_id) is not None
                )

            def _on_progress(percent: float) -> None:
                if _is_live():
                    self.store.report_progress(attachment_id, percent)

            def _on_retry(_attempt_index: int, _error: Exception) -> None:
                if _is_live():
                    self.store.record_retry(attachment_id)

            async def _attempt() -> str:
                return await upload_fn(attachment, source, _on_progress)

            operation = self.retry_policy.execute(_attempt, self.retry_options, on_retry=_on_retry)
            try:
                if self.deadline_seconds:
                    operation_task = asyncio.ensure_future(operation)
                    try:
                        storage_path = await run_with_deadline(operation_task, self.deadline_seconds)
                    except DeadlineExceededError:
                        self._track_straggler(attachment_id, operation_task, discard_fn)
                        raise
                else:
                    storage_path = await operation
            except (RetryExhaustedError, DeadlineExceededError) as exc:
                live = _is_live()
                self._tokens.pop(attachment_id, None)
                if not live:
                    return None
                detail = _failure_detail(exc)
                logger.warning("Upload of %s failed: %s", attachment_id, detail)
                self.store.transition(attachment_id, AttachmentStatus.ERROR, error_detail=detail)
                return False

            live = _is_live()
            self._tokens.pop(attachment_id, None)
            if not live:
                await self._discard(attachment_id, storage_path, discard_fn)
                return None
            self.store.transition(attachment_id, AttachmentStatus.UPLOADED, storage_path=storage_path)
            return True

    def _track_straggler(
        self,
        attachment_id: str,
        operation_task: asyncio.Task,
        discard_fn: DiscardFn | None,
    ) -> None:
        async def _settle() -> None:
            try:
                try:
                    storage_path = await operation_task
                except asyncio.CancelledError:
                    operation_task.cancel()
                    raise
                except Exception as exc:
                    logger.info("Timed-out upload of %s ended with an error: %s", attachment_id, exc)
                    return
                await self._discard(attachment_id, storage_path, discard_fn)
            finally:
                if self._stragglers.get(attachment_id) is settle_task:
                    del self._stragglers[attachment_id]

        settle_task = asyncio.create_task(_settle(), name=f"upload-settle:{attachment_id}")
        self._stragglers[attachment_id] = settle_task

    async def _discard(
        self,
        attachment_id: str,
        storage_path: str,
        discard_fn: DiscardFn | None,
    ) -> None:
        if discard_fn is None:
            logger.info("Dropping late upload result %s for %s.", storage_path, attachment_id)
            return
        logger.info("Discarding late upload result %s for %s.", storage_path, attachment_id)
        try:
            await discard_fn(storage_path)
        except Exception:
            logger.exception("Could not discard %s for %s.", storage_path, attachment_id)

    def _announce(self, summary: UploadSummary) -> None:
        if summary.succeeded:
            self.notifications.success(f"{summary.succeeded_count} file(s) uploaded.")
        for attachment_id in summary.failed:
            attachment = self.store.get(attachment_id)
            if attachment is None:
                continue
            self.notifications.error(
                f"Upload failed for '{attachment.name}'.",
                description=attachment.error_detail,
                attachment_id=attachment_id,
            )
        if summary.skipped:
            self.notifications.warning(
                f"{len(summary.skipped)} attachment(s) were not ready for upload.",
                description=", ".join(summary.skipped),
            )
