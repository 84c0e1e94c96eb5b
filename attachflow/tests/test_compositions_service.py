from __future__ import annotations

import asyncio
import importlib
from datetime import datetime, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest

from attachflow.features.attachments import (
    AllowList,
    AttachmentStatus,
    FileMeta,
    LocalFileStorage,
    RetryOptions,
    RetryPolicy,
    StoreDisposedError,
)
from attachflow.features.compositions import (
    CompositionNotFoundError,
    CompositionRegistry,
    CompositionValidationError,
    ConversationNotFoundError,
    DeliveryBlockedError,
    DeliveryFailedError,
    add_files,
    describe,
    remove_attachment,
    retry_attachment,
    send_composition,
    upload_pending,
)

compositions_service = importlib.import_module("attachflow.features.compositions.service")

S = AttachmentStatus


async def _no_sleep(_seconds: float) -> None:
    return None


class _FakeSession:
    def __init__(self):
        self.rollbacks = 0

    async def rollback(self):
        self.rollbacks += 1


def _registry() -> CompositionRegistry:
    return CompositionRegistry(
        allow_list=AllowList(
            allowed_mime_types=frozenset({"application/pdf", "image/*"}),
            allowed_extensions=frozenset({".pdf", ".png"}),
            max_size_bytes=4096,
        ),
        retry_policy=RetryPolicy(RetryOptions(), sleep=_no_sleep),
    )


def _patch_save(monkeypatch, *, error: Exception | None = None) -> list[dict]:
    calls: list[dict] = []

    async def _fake_save(_session, *, conversation_id, content, attachments):
        calls.append(
            {
                "conversation_id": conversation_id,
                "content": content,
                "statuses": [item.status for item in attachments],
            }
        )
        if error is not None:
            raise error
        return SimpleNamespace(
            id=uuid4(),
            conversation_id=conversation_id or uuid4(),
            content=content,
            created_at=datetime.now(timezone.utc),
        )

    monkeypatch.setattr(compositions_service.repo, "save_message_with_attachments", _fake_save)
    return calls


def _uploaded_composition(tmp_path):
    registry = _registry()
    composition = registry.create()
    result = add_files(
        composition,
        [
            FileMeta.from_bytes("A.pdf", b"%PDF" * 10, "application/pdf"),
            FileMeta.from_bytes("B.png", b"\x89PNG" * 10, "image/png"),
        ],
    )
    summary = asyncio.run(upload_pending(composition, LocalFileStorage(tmp_path)))
    assert summary.succeeded_count == 2
    return registry, composition, [item.id for item in result.attachments]


def test_add_files_collects_rejections_and_notifies():
    composition = _registry().create()

    result = add_files(
        composition,
        [
            FileMeta.from_bytes("A.pdf", b"%PDF", "application/pdf"),
            FileMeta(name="C.csv", size_bytes=25 * 1024 * 1024, mime_type="text/csv", source=b""),
        ],
    )

    assert [item.name for item in result.attachments] == ["A.pdf"]
    assert [item.filename for item in result.rejected] == ["C.csv"]
    assert "maximum" in result.rejected[0].detail
    (event,) = composition.notifications.recent()
    assert event.kind == "error"


def test_describe_reports_send_readiness(tmp_path):
    composition = _registry().create()
    add_files(composition, [FileMeta.from_bytes("A.pdf", b"%PDF", "application/pdf")])

    assert describe(composition).can_send is False

    asyncio.run(upload_pending(composition, LocalFileStorage(tmp_path)))
    detail = describe(composition)
    assert detail.can_send is True
    assert detail.in_flight == []
    assert detail.attachments[0].storage_path.startswith("files/")


def test_send_composition_persists_and_clears_sent_attachments(monkeypatch, tmp_path):
    calls = _patch_save(monkeypatch)
    _, composition, ids = _uploaded_composition(tmp_path)

    sent = asyncio.run(
        send_composition(_FakeSession(), composition, content="  Q1 numbers \x00attached  ")
    )

    assert sent.attachment_ids == ids
    assert sent.content == "Q1 numbers attached"
    assert all(path.startswith("files/") for path in sent.storage_paths)
    assert calls[0]["statuses"] == [S.SENDING, S.SENDING]
    assert composition.store.list() == []
    assert composition.notifications.recent()[-1].message == "Message sent with 2 attachment(s)."


def test_failed_persist_reverts_attachments_and_rolls_back(monkeypatch, tmp_path):
    _patch_save(monkeypatch, error=RuntimeError("database unavailable"))
    _, composition, ids = _uploaded_composition(tmp_path)
    session = _FakeSession()

    with pytest.raises(DeliveryFailedError):
        asyncio.run(send_composition(session, composition, content="hello"))

    assert session.rollbacks == 1
    assert [composition.store.require(item_id).status for item_id in ids] == [S.UPLOADED, S.UPLOADED]


def test_missing_conversation_is_reported_as_not_found(monkeypatch, tmp_path):
    _patch_save(monkeypatch, error=ConversationNotFoundError("Conversation 'x' was not found."))
    _, composition, ids = _uploaded_composition(tmp_path)

    with pytest.raises(ConversationNotFoundError):
        asyncio.run(
            send_composition(
                _FakeSession(),
                composition,
                content="hello",
                conversation_id=str(uuid4()),
            )
        )

    assert composition.store.require(ids[0]).status == S.UPLOADED


def test_send_is_blocked_until_uploads_finish(monkeypatch):
    calls = _patch_save(monkeypatch)
    composition = _registry().create()
    add_files(composition, [FileMeta.from_bytes("A.pdf", b"%PDF", "application/pdf")])

    with pytest.raises(DeliveryBlockedError) as exc_info:
        asyncio.run(send_composition(_FakeSession(), composition, content="hello"))

    assert exc_info.value.blocked_ids == [composition.store.list()[0].id]
    assert calls == []


def test_send_rejects_empty_message_and_bad_conversation_id(monkeypatch):
    _patch_save(monkeypatch)
    composition = _registry().create()

    with pytest.raises(CompositionValidationError):
        asyncio.run(send_composition(_FakeSession(), composition, content=" \x00 "))
    with pytest.raises(CompositionValidationError):
        asyncio.run(
            send_composition(_FakeSession(), composition, content="hi", conversation_id="not-a-uuid")
        )


def test_text_only_message_is_sent(monkeypatch):
    calls = _patch_save(monkeypatch)
    composition = _registry().create()

    sent = asyncio.run(send_composition(_FakeSession(), composition, content="just text"))

    assert sent.attachment_ids == []
    assert calls[0]["content"] == "just text"


def test_remove_attachment_deletes_stored_file(tmp_path):
    composition = _registry().create()
    added = add_files(composition, [FileMeta.from_bytes("A.pdf", b"%PDF", "application/pdf")])
    storage = LocalFileStorage(tmp_path)
    asyncio.run(upload_pending(composition, storage))
    storage_path = composition.store.require(added.attachments[0].id).storage_path

    asyncio.run(remove_attachment(composition, added.attachments[0].id, storage=storage))

    assert composition.store.list() == []
    assert not (tmp_path / storage_path).exists()


def test_retry_attachment_uploads_failed_file(tmp_path):
    composition = _registry().create()
    added = add_files(composition, [FileMeta.from_bytes("A.pdf", b"%PDF", "application/pdf")])
    attachment_id = added.attachments[0].id
    composition.store.transition(attachment_id, S.ERROR, error_detail="network down")

    summary = asyncio.run(retry_attachment(composition, attachment_id, LocalFileStorage(tmp_path)))

    assert summary.succeeded == [attachment_id]
    assert composition.store.require(attachment_id).status == S.UPLOADED


def test_registry_discard_disposes_store():
    registry = _registry()
    composition = registry.create()

    assert registry.get(composition.id) is composition
    asyncio.run(registry.discard(composition.id))

    assert len(registry) == 0
    with pytest.raises(CompositionNotFoundError):
        registry.get(composition.id)
    with pytest.raises(StoreDisposedError):
        add_files(composition, [FileMeta.from_bytes("A.pdf", b"%PDF", "application/pdf")])


def test_discard_all_returns_count():
    registry = _registry()
    registry.create()
    registry.create()

    assert asyncio.run(registry.discard_all()) == 2
    assert len(registry) == 0


def test_removing_attachment_mid_upload_deletes_late_file(tmp_path):
    composition = _registry().create()
    added = add_files(composition, [FileMeta.from_bytes("A.pdf", b"%PDF", "application/pdf")])
    attachment_id = added.attachments[0].id
    storage = LocalFileStorage(tmp_path)
    started = asyncio.Event()
    release = asyncio.Event()
    upload = storage.upload

    async def _held_upload(attachment, data, on_progress):
        started.set()
        await release.wait()
        return await upload(attachment, data, on_progress)

    storage.upload = _held_upload

    async def _run():
        job = asyncio.create_task(upload_pending(composition, storage))
        await started.wait()
        await remove_attachment(composition, attachment_id, storage=storage)
        release.set()
        return await job

    summary = asyncio.run(_run())

    assert summary.abandoned == [attachment_id]
    assert list((tmp_path / "files").iterdir()) == []


def test_discard_deletes_files_of_unsent_attachments(tmp_path):
    registry = _registry()
    composition = registry.create()
    storage = LocalFileStorage(tmp_path)
    add_files(composition, [FileMeta.from_bytes("A.pdf", b"%PDF", "application/pdf")])
    asyncio.run(upload_pending(composition, storage))
    assert len(list((tmp_path / "files").iterdir())) == 1

    asyncio.run(registry.discard(composition.id, storage=storage))

    assert list((tmp_path / "files").iterdir()) == []
    assert len(registry) == 0


def test_discard_keeps_files_of_attachments_being_sent(tmp_path):
    registry = _registry()
    composition = registry.create()
    storage = LocalFileStorage(tmp_path)
    add_files(composition, [FileMeta.from_bytes("A.pdf", b"%PDF", "application/pdf")])
    asyncio.run(upload_pending(composition, storage))
    attachment_id = composition.store.list()[0].id
    composition.store.transition(attachment_id, S.SENDING)

    asyncio.run(registry.discard(composition.id, storage=storage))

    assert len(list((tmp_path / "files").iterdir())) == 1
