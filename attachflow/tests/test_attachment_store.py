from __future__ import annotations

import pytest

from attachflow.features.attachments import (
    AllowList,
    AttachmentConflictError,
    AttachmentNotFoundError,
    AttachmentStatus,
    AttachmentStore,
    AttachmentValidationError,
    FileMeta,
    InvalidTransitionError,
    StoreDisposedError,
    StoredFile,
)

S = AttachmentStatus
MIB = 1024 * 1024


def _store(max_size_bytes: int = 20 * MIB) -> AttachmentStore:
    return AttachmentStore(
        AllowList(
            allowed_mime_types=frozenset({"application/pdf", "image/*", "text/csv"}),
            allowed_extensions=frozenset({".pdf", ".png", ".csv"}),
            max_size_bytes=max_size_bytes,
        )
    )


def _pdf(name: str = "inventory.pdf", size: int = 1024) -> FileMeta:
    return FileMeta.from_bytes(name, b"x" * size, "application/pdf")


def _uploaded(store: AttachmentStore, name: str = "inventory.pdf") -> str:
    attachment = store.add(_pdf(name))
    store.transition(attachment.id, S.UPLOADING)
    store.transition(attachment.id, S.UPLOADED, storage_path=f"files/{attachment.id}.pdf")
    return attachment.id


def test_add_scenario_rejects_oversized_csv_and_keeps_valid_files():
    store = AttachmentStore()

    first = store.add(FileMeta.from_bytes("A.pdf", b"a" * 1024, "application/pdf"))
    second = store.add(FileMeta.from_bytes("B.png", b"b" * 2048, "image/png"))
    with pytest.raises(AttachmentValidationError):
        store.add(FileMeta(name="C.csv", size_bytes=25 * MIB, mime_type="text/csv", source=b""))

    assert [item.id for item in store.list()] == [first.id, second.id]
    assert all(item.status == S.PENDING for item in store.list())
    assert first.retry_count == 0
    assert first.storage_path is None
    assert first.extension == ".pdf"


def test_add_rejects_file_just_over_default_limit_without_touching_store():
    store = AttachmentStore()
    store.add(_pdf())
    before = store.list()

    with pytest.raises(AttachmentValidationError) as exc_info:
        store.add(FileMeta(name="big.pdf", size_bytes=21 * MIB, mime_type="application/pdf", source=b""))

    assert "maximum" in str(exc_info.value)
    assert store.list() == before


@pytest.mark.parametrize(
    "meta",
    [
        FileMeta.from_bytes("notes.pdf", b"", "application/pdf"),
        FileMeta.from_bytes("", b"data", "application/pdf"),
        FileMeta.from_bytes("script.exe", b"MZ", "application/pdf"),
        FileMeta.from_bytes("archive.pdf", b"PK", "application/zip"),
    ],
)
def test_add_rejects_invalid_files(meta):
    store = _store()

    with pytest.raises(AttachmentValidationError):
        store.add(meta)

    assert store.list() == []


def test_get_require_and_insertion_order():
    store = _store()
    ids = [store.add(_pdf(f"file-{index}.pdf")).id for index in range(3)]

    assert [item.id for item in store.list()] == ids
    assert store.get(ids[1]).name == "file-1.pdf"
    assert store.get("missing") is None
    with pytest.raises(AttachmentNotFoundError):
        store.require("missing")


def test_remove_pending_releases_source():
    store = _store()
    attachment = store.add(_pdf())

    store.remove(attachment.id)

    assert store.list() == []
    with pytest.raises(AttachmentNotFoundError):
        store.source_for(attachment.id)


@pytest.mark.parametrize("final_status", [S.SENDING, S.SENT])
def test_remove_rejects_in_flight_or_delivered(final_status):
    store = _store()
    attachment_id = _uploaded(store)
    store.transition(attachment_id, S.SENDING)
    if final_status == S.SENT:
        store.transition(attachment_id, S.SENT)

    with pytest.raises(AttachmentConflictError):
        store.remove(attachment_id)

    assert store.require(attachment_id).status == final_status


def test_transition_sets_storage_path_and_releases_source():
    store = _store()
    attachment = store.add(_pdf())
    store.transition(attachment.id, S.UPLOADING)

    with pytest.raises(InvalidTransitionError):
        store.transition(attachment.id, S.UPLOADED)

    uploaded = store.transition(attachment.id, S.UPLOADED, storage_path="files/a.pdf")
    assert uploaded.storage_path == "files/a.pdf"
    assert uploaded.upload_progress == 100
    with pytest.raises(AttachmentConflictError):
        store.source_for(attachment.id)


def test_transition_rejects_unknown_patch_fields():
    store = _store()
    attachment = store.add(_pdf())

    with pytest.raises(ValueError):
        store.transition(attachment.id, S.UPLOADING, retry_count=5)


def test_error_detail_is_set_and_cleared():
    store = _store()
    attachment = store.add(_pdf())

    failed = store.transition(attachment.id, S.ERROR, error_detail="network down")
    assert failed.error_detail == "network down"

    requeued = store.transition(attachment.id, S.PENDING)
    assert requeued.error_detail is None


def test_invalid_transition_carries_context():
    store = _store()
    attachment = store.add(_pdf())

    with pytest.raises(InvalidTransitionError) as exc_info:
        store.transition(attachment.id, S.SENDING)

    assert exc_info.value.attachment_id == attachment.id
    assert exc_info.value.from_status == S.PENDING
    assert exc_info.value.to_status == S.SENDING


def test_progress_only_applies_while_uploading():
    store = _store()
    attachment = store.add(_pdf())

    assert store.report_progress(attachment.id, 50) is None
    store.transition(attachment.id, S.UPLOADING)
    assert store.report_progress(attachment.id, 140).upload_progress == 100
    assert store.report_progress(attachment.id, 30).upload_progress == 30


def test_observers_see_changes_in_call_order_and_can_unsubscribe():
    store = _store()
    seen: list[tuple[str, str]] = []
    unsubscribe = store.subscribe(lambda change: seen.append((change.kind, change.attachment.status.value)))

    attachment = store.add(_pdf())
    store.transition(attachment.id, S.UPLOADING)
    store.record_retry(attachment.id)
    store.transition(attachment.id, S.ERROR, error_detail="x")
    store.remove(attachment.id)
    unsubscribe()
    store.add(_pdf("other.pdf"))

    assert seen == [
        ("added", "pending"),
        ("updated", "uploading"),
        ("updated", "uploading"),
        ("updated", "error"),
        ("removed", "error"),
    ]


def test_failing_observer_does_not_block_others():
    store = _store()
    seen: list[str] = []

    def _broken(_change):
        raise RuntimeError("render failed")

    store.subscribe(_broken)
    store.subscribe(lambda change: seen.append(change.kind))
    store.add(_pdf())

    assert seen == ["added"]


def test_revert_send_only_from_sending():
    store = _store()
    attachment_id = _uploaded(store)

    with pytest.raises(InvalidTransitionError):
        store.revert_send(attachment_id)

    store.transition(attachment_id, S.SENDING)
    reverted = store.revert_send(attachment_id)
    assert reverted.status == S.UPLOADED
    assert reverted.storage_path == f"files/{attachment_id}.pdf"


def test_clear_sent_drops_only_delivered_attachments():
    store = _store()
    delivered = _uploaded(store, "a.pdf")
    store.transition(delivered, S.SENDING)
    store.transition(delivered, S.SENT)
    kept = store.add(_pdf("b.pdf")).id

    assert store.clear_sent() == 1
    assert [item.id for item in store.list()] == [kept]


def test_adopted_file_starts_processing_then_becomes_uploaded():
    store = _store()
    adopted = store.adopt(
        StoredFile(name="mtr.pdf", size_bytes=10, mime_type="", storage_path="files/mtr.pdf")
    )

    assert adopted.status == S.PROCESSING
    assert adopted.mime_type == "application/pdf"
    assert store.transition(adopted.id, S.UPLOADED).storage_path == "files/mtr.pdf"


def test_dispose_blocks_mutations_and_bumps_generation():
    store = _store()
    attachment = store.add(_pdf())
    generation = store.generation

    store.dispose()

    assert store.disposed
    assert not store.is_current(generation)
    assert store.list() == []
    with pytest.raises(StoreDisposedError):
        store.add(_pdf())
    with pytest.raises(StoreDisposedError):
        store.transition(attachment.id, S.UPLOADING)
