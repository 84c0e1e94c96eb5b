from __future__ import annotations

import asyncio

import pytest

from attachflow.features.attachments import (
    AllowList,
    AttachmentStatus,
    AttachmentStore,
    DeliveryGate,
    FileMeta,
    NotificationBus,
)

S = AttachmentStatus

ALLOW = AllowList(
    allowed_mime_types=frozenset({"application/pdf"}),
    allowed_extensions=frozenset({".pdf"}),
    max_size_bytes=1024 * 1024,
)


def _setup() -> tuple[AttachmentStore, DeliveryGate, NotificationBus]:
    store = AttachmentStore(ALLOW)
    notifications = NotificationBus()
    return store, DeliveryGate(store, notifications=notifications), notifications


def _add(store: AttachmentStore, name: str, *, uploaded: bool = True) -> str:
    attachment_id = store.add(FileMeta.from_bytes(name, b"%PDF", "application/pdf")).id
    if uploaded:
        store.transition(attachment_id, S.UPLOADING)
        store.transition(attachment_id, S.UPLOADED, storage_path=f"files/{name}")
    return attachment_id


def test_can_send_requires_every_attachment_uploaded():
    store, gate, _ = _setup()
    ready = _add(store, "a.pdf")
    waiting = _add(store, "b.pdf", uploaded=False)

    assert gate.can_send([])
    assert gate.can_send([ready])
    assert not gate.can_send([ready, waiting])
    assert not gate.can_send(["missing"])
    assert gate.blocked_ids([ready, waiting, "missing"]) == [waiting, "missing"]


def test_commit_send_marks_attachments_sent_on_success():
    store, gate, notifications = _setup()
    ids = [_add(store, "a.pdf"), _add(store, "b.pdf")]
    observed: list[list[str]] = []

    async def _send(storage_paths):
        observed.append([store.require(attachment_id).status.value for attachment_id in ids])
        return {"message_id": "m1", "paths": storage_paths}

    result = asyncio.run(gate.commit_send(ids, _send))

    assert result.ok
    assert result.value == {"message_id": "m1", "paths": ["files/a.pdf", "files/b.pdf"]}
    assert observed == [["sending", "sending"]]
    assert [store.require(attachment_id).status for attachment_id in ids] == [S.SENT, S.SENT]
    assert notifications.recent()[-1].message == "Message sent with 2 attachment(s)."


def test_failed_send_reverts_every_attachment_to_uploaded():
    store, gate, notifications = _setup()
    ids = [_add(store, "a.pdf"), _add(store, "b.pdf")]

    async def _send(_storage_paths):
        raise RuntimeError("server unavailable")

    result = asyncio.run(gate.commit_send(ids, _send))

    assert not result.ok
    assert result.error == "server unavailable"
    statuses = [store.require(attachment_id).status for attachment_id in ids]
    assert statuses == [S.UPLOADED, S.UPLOADED]
    assert all(store.require(attachment_id).error_detail is None for attachment_id in ids)
    (event,) = notifications.recent()
    assert event.kind == "error"
    assert event.description == "server unavailable"


def test_blocked_send_never_calls_send_fn():
    store, gate, notifications = _setup()
    ready = _add(store, "a.pdf")
    waiting = _add(store, "b.pdf", uploaded=False)
    calls = 0

    async def _send(_storage_paths):
        nonlocal calls
        calls += 1

    result = asyncio.run(gate.commit_send([ready, waiting], _send))

    assert not result.ok
    assert result.blocked_ids == [waiting]
    assert calls == 0
    assert store.require(ready).status == S.UPLOADED
    assert notifications.recent()[-1].kind == "warning"


def test_send_without_attachments_succeeds():
    _, gate, notifications = _setup()

    async def _send(storage_paths):
        return storage_paths

    result = asyncio.run(gate.commit_send([], _send))

    assert result.ok
    assert result.value == []
    assert notifications.recent()[-1].message == "Message sent."


def test_cancelled_send_reverts_and_propagates():
    store, gate, _ = _setup()
    attachment_id = _add(store, "a.pdf")

    async def _send(_storage_paths):
        await asyncio.Event().wait()

    async def _run():
        job = asyncio.create_task(gate.commit_send([attachment_id], _send))
        while store.require(attachment_id).status != S.SENDING:
            await asyncio.sleep(0)
        job.cancel()
        await job

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(_run())

    assert store.require(attachment_id).status == S.UPLOADED


def test_dispose_during_send_skips_final_transitions():
    store, gate, notifications = _setup()
    attachment_id = _add(store, "a.pdf")

    async def _send(_storage_paths):
        store.dispose()
        return "ok"

    result = asyncio.run(gate.commit_send([attachment_id], _send))

    assert result.ok
    assert store.list() == []
    assert notifications.recent() == []


def test_one_uploading_attachment_blocks_the_batch():
    store, gate, _ = _setup()
    ids = [_add(store, f"{index}.pdf") for index in range(3)]
    in_progress = _add(store, "late.pdf", uploaded=False)
    store.transition(in_progress, S.UPLOADING)

    assert gate.can_send(ids)
    assert not gate.can_send([*ids, in_progress])
