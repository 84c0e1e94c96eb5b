from __future__ import annotations

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from attachflow.db.session import get_db_session
from attachflow.features.attachments import (
    AttachmentConflictError,
    AttachmentNotFoundError,
    AttachmentValidationError,
    FileMeta,
    InvalidTransitionError,
    LocalFileStorage,
    StoreDisposedError,
    UploadSummary,
)

from .errors import (
    CompositionNotFoundError,
    CompositionValidationError,
    ConversationNotFoundError,
    DeliveryBlockedError,
    DeliveryFailedError,
)
from .service import (
    CompositionRegistry,
    add_files,
    describe,
    get_composition_registry,
    get_storage,
    remove_attachment,
    retry_attachment,
    send_composition,
    upload_pending,
)
from .types import (
    AddFilesResult,
    CompositionDetail,
    NotificationView,
    SendInput,
    SentMessage,
    UploadSummaryView,
)

router = APIRouter(prefix="/api/compositions", tags=["compositions"])

_READ_CHUNK_SIZE = 1024 * 1024


def _raise_http_error(exc: Exception) -> None:
    if isinstance(exc, (CompositionNotFoundError, AttachmentNotFoundError, ConversationNotFoundError)):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, (CompositionValidationError, AttachmentValidationError)):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, DeliveryBlockedError):
        raise HTTPException(
            status_code=409,
            detail={"message": str(exc), "blocked_ids": exc.blocked_ids},
        ) from exc
    if isinstance(exc, (AttachmentConflictError, InvalidTransitionError, StoreDisposedError)):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, DeliveryFailedError):
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    raise exc


def _summary_view(summary: UploadSummary) -> UploadSummaryView:
    return UploadSummaryView(
        succeeded=summary.succeeded,
        failed=summary.failed,
        skipped=summary.skipped,
        abandoned=summary.abandoned,
    )


async def _read_upload_limited(upload: UploadFile, *, max_size: int) -> FileMeta:
    total = 0
    chunks: list[bytes] = []
    while True:
        chunk = await upload.read(_READ_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > max_size:
            # Keep only the size; the store rejects it without needing the bytes.
            size = max(total, upload.size or 0)
            return FileMeta(
                name=upload.filename or "",
                size_bytes=size,
                mime_type=upload.content_type or "",
                source=b"",
            )
        chunks.append(chunk)
    return FileMeta.from_bytes(upload.filename or "", b"".join(chunks), upload.content_type or "")


@router.post("", response_model=CompositionDetail, status_code=status.HTTP_201_CREATED)
async def create_composition(
    registry: CompositionRegistry = Depends(get_composition_registry),
) -> CompositionDetail:
    return describe(registry.create())


@router.get("/{composition_id}", response_model=CompositionDetail)
async def get_composition(
    composition_id: str,
    registry: CompositionRegistry = Depends(get_composition_registry),
) -> CompositionDetail:
    try:
        return describe(registry.get(composition_id))
    except Exception as exc:
        _raise_http_error(exc)


@router.delete("/{composition_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_composition(
    composition_id: str,
    registry: CompositionRegistry = Depends(get_composition_registry),
    storage: LocalFileStorage = Depends(get_storage),
) -> Response:
    try:
        await registry.discard(composition_id, storage=storage)
    except Exception as exc:
        _raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{composition_id}/attachments", response_model=AddFilesResult)
async def post_attachments(
    composition_id: str,
    files: list[UploadFile] = File(...),
    registry: CompositionRegistry = Depends(get_composition_registry),
) -> AddFilesResult:
    try:
        composition = registry.get(composition_id)
    except Exception as exc:
        _raise_http_error(exc)
    if not files:
        raise HTTPException(status_code=400, detail="Provide at least one file.")

    max_size = composition.store.allow_list.max_size_bytes
    metas = [await _read_upload_limited(upload, max_size=max_size) for upload in files]
    try:
        return add_files(composition, metas)
    except Exception as exc:
        _raise_http_error(exc)


@router.delete(
    "/{composition_id}/attachments/{attachment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_attachment(
    composition_id: str,
    attachment_id: str,
    registry: CompositionRegistry = Depends(get_composition_registry),
    storage: LocalFileStorage = Depends(get_storage),
) -> Response:
    try:
        await remove_attachment(registry.get(composition_id), attachment_id, storage=storage)
    except Exception as exc:
        _raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{composition_id}/uploads", response_model=UploadSummaryView)
async def post_uploads(
    composition_id: str,
    registry: CompositionRegistry = Depends(get_composition_registry),
    storage: LocalFileStorage = Depends(get_storage),
) -> UploadSummaryView:
    try:
        summary = await upload_pending(registry.get(composition_id), storage)
    except Exception as exc:
        _raise_http_error(exc)
    return _summary_view(summary)


@router.post(
    "/{composition_id}/attachments/{attachment_id}/retry",
    response_model=UploadSummaryView,
)
async def post_attachment_retry(
    composition_id: str,
    attachment_id: str,
    registry: CompositionRegistry = Depends(get_composition_registry),
    storage: LocalFileStorage = Depends(get_storage),
) -> UploadSummaryView:
    try:
        summary = await retry_attachment(registry.get(composition_id), attachment_id, storage)
    except Exception as exc:
        _raise_http_error(exc)
    return _summary_view(summary)


@router.post("/{composition_id}/send", response_model=SentMessage)
async def post_send(
    composition_id: str,
    payload: SendInput,
    registry: CompositionRegistry = Depends(get_composition_registry),
    session: AsyncSession = Depends(get_db_session),
) -> SentMessage:
    try:
        return await send_composition(
            session,
            registry.get(composition_id),
            content=payload.content,
            conversation_id=payload.conversation_id,
        )
    except Exception as exc:
        _raise_http_error(exc)


@router.get("/{composition_id}/notifications", response_model=list[NotificationView])
async def get_notifications(
    composition_id: str,
    registry: CompositionRegistry = Depends(get_composition_registry),
) -> list[NotificationView]:
    try:
        composition = registry.get(composition_id)
    except Exception as exc:
        _raise_http_error(exc)
    return [
        NotificationView(
            kind=event.kind,
            message=event.message,
            description=event.description,
            attachment_id=event.attachment_id,
            timestamp=event.timestamp,
        )
        for event in composition.notifications.drain()
    ]
