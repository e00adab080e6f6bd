from __future__ import annotations

import pytest

from ragindex.errors import ConflictError, DocumentNotFoundError, QuotaExceededError
from ragindex.schemas import VectorStatus

HASH = "a" * 64


def _original(metadata, content_hash=HASH, org="org-1", course="c1"):
    record, _ = metadata.find_or_create_original(content_hash, org, course, "notes.md", "text/markdown", 100)
    return record


def _reference(metadata, original, org="org-2", course="c2"):
    return metadata.create_reference(original.id, org, course, "copy.md", "text/markdown", 100)


def test_find_or_create_is_idempotent(metadata):
    first, created = metadata.find_or_create_original(HASH, "org-1", "c1", "a.md", "text/markdown", 10)
    again, created_again = metadata.find_or_create_original(HASH, "org-2", "c2", "b.md", "text/markdown", 10)
    assert created and not created_again
    assert again.id == first.id
    assert first.is_original and first.reference_count == 1
    assert first.vector_status == VectorStatus.PENDING


def test_references_share_hash_and_bump_count(metadata):
    original = _original(metadata)
    ref_a = _reference(metadata, original)
    ref_b = _reference(metadata, original, org="org-3")

    assert ref_a.original_id == original.id and ref_b.original_id == original.id
    assert ref_a.content_hash == HASH
    assert metadata.get(original.id).reference_count == 3
    assert {r.id for r in metadata.references_of(original.id)} == {ref_a.id, ref_b.id}


def test_reference_to_a_reference_is_refused(metadata):
    original = _original(metadata)
    ref = _reference(metadata, original)
    with pytest.raises(ConflictError):
        metadata.create_reference(ref.id, "org-3", "c3", "x.md", "text/markdown", 1)


def test_release_and_remove_counting(metadata):
    original = _original(metadata)
    ref = _reference(metadata, original)

    assert metadata.release_original(original.id) == 1
    assert metadata.get(original.id).is_deleted
    with pytest.raises(ConflictError):
        metadata.release_original(original.id)
    with pytest.raises(ConflictError):
        metadata.purge_original(original.id)

    assert metadata.remove_reference(ref.id) == 0
    metadata.purge_original(original.id)
    with pytest.raises(DocumentNotFoundError):
        metadata.get(original.id)


def test_released_original_accepts_no_new_references(metadata):
    original = _original(metadata)
    metadata.release_original(original.id)
    with pytest.raises(ConflictError):
        _reference(metadata, original)


def test_remove_reference_rejects_originals(metadata):
    original = _original(metadata)
    with pytest.raises(ConflictError):
        metadata.remove_reference(original.id)


def test_documents_for_course_skips_tombstones(metadata):
    original = _original(metadata, course="c1")
    other = _original(metadata, content_hash="b" * 64, course="c1")
    _reference(metadata, original)
    metadata.release_original(original.id)

    docs = metadata.documents_for_course("c1", "org-1")
    assert [d.id for d in docs] == [other.id]


def test_set_status_records_errors(metadata):
    original = _original(metadata)
    metadata.set_status(original.id, VectorStatus.FAILED, error_message="boom")
    record = metadata.get(original.id)
    assert record.vector_status == VectorStatus.FAILED
    assert record.error_message == "boom"
    with pytest.raises(DocumentNotFoundError):
        metadata.set_status("missing", VectorStatus.INDEXED)


def test_corpus_tokens_are_recorded_and_cleared(metadata):
    original = _original(metadata)
    assert metadata.corpus_tokens(original.id) == []
    metadata.set_corpus_tokens(original.id, [["alpha", "beta"], ["gamma"]])
    assert metadata.corpus_tokens(original.id) == [["alpha", "beta"], ["gamma"]]
    metadata.set_corpus_tokens(original.id, None)
    assert metadata.corpus_tokens(original.id) == []
    with pytest.raises(DocumentNotFoundError):
        metadata.set_corpus_tokens("missing", [])


def test_quota_reserve_and_release(metadata):
    metadata.set_quota("org-1", 100)
    metadata.reserve_quota("org-1", 60)
    metadata.reserve_quota("org-1", 40)
    with pytest.raises(QuotaExceededError) as info:
        metadata.reserve_quota("org-1", 1)
    assert (info.value.used, info.value.quota) == (100, 100)

    metadata.release_quota("org-1", 40)
    assert metadata.usage("org-1") == (60, 100)
    metadata.release_quota("org-1", 1_000)
    assert metadata.usage("org-1") == (0, 100)


def test_default_quota_applies_to_new_orgs(metadata):
    assert metadata.usage("fresh-org") == (0, 10_000_000)
