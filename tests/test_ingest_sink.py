import errno
import os

import pytest

from services.download_management.errors import IngestError
from services.download_management.ingest_sink import IngestSink
from services.download_management.models import ResourceRef


@pytest.fixture
def sink(ingest_dir):
    return IngestSink(str(ingest_dir))


def test_ingest_publishes_canonical_file(sink, ingest_dir):
    path = sink.ingest(ResourceRef("abc123", format="EPUB"), b"book content")

    assert path == str(ingest_dir / "abc123.epub")
    assert (ingest_dir / "abc123.epub").read_bytes() == b"book content"


def test_ingest_leaves_no_temporary_files(sink, ingest_dir):
    sink.ingest(ResourceRef("abc123"), b"book content")

    assert os.listdir(ingest_dir / ".staging") == []
    assert sorted(os.listdir(ingest_dir)) == [".staging", "abc123.epub"]


def test_ingest_is_idempotent(sink, ingest_dir):
    ref = ResourceRef("abc123")
    first = sink.ingest(ref, b"original")
    second = sink.ingest(ref, b"something else")

    assert first == second
    assert (ingest_dir / "abc123.epub").read_bytes() == b"original"


def test_ingest_accepts_chunks(sink, ingest_dir):
    sink.ingest(ResourceRef("chunked", format="pdf"), iter([b"part one, ", b"", b"part two"]))

    assert (ingest_dir / "chunked.pdf").read_bytes() == b"part one, part two"


def test_book_id_is_sanitized_into_a_file_name(sink, ingest_dir):
    path = sink.ingest(ResourceRef("../../etc/passwd"), b"data")

    assert os.path.dirname(path) == str(ingest_dir)
    assert "/" not in os.path.basename(path)
    assert not os.path.basename(path).startswith(".")


def test_empty_content_is_rejected(sink, ingest_dir):
    with pytest.raises(IngestError):
        sink.ingest(ResourceRef("empty"), b"")

    assert not (ingest_dir / "empty.epub").exists()


def test_unusable_ingest_dir_raises(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")

    with pytest.raises(IngestError):
        IngestSink(str(blocker)).ingest(ResourceRef("abc"), b"data")


def test_custom_staging_dir(tmp_path, ingest_dir):
    staging = tmp_path / "staging"
    sink = IngestSink(str(ingest_dir), tmp_dir=str(staging))

    sink.ingest(ResourceRef("abc"), b"data")

    assert staging.is_dir()
    assert os.listdir(staging) == []
    assert (ingest_dir / "abc.epub").read_bytes() == b"data"
    assert not (ingest_dir / ".staging").exists()


def test_publish_falls_back_to_rename_without_hard_links(sink, ingest_dir, monkeypatch):
    def no_links(src, dst):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr(os, "link", no_links)

    path = sink.ingest(ResourceRef("abc"), b"copied")

    assert (ingest_dir / "abc.epub").read_bytes() == b"copied"
    assert [name for name in os.listdir(ingest_dir) if name.endswith(".part")] == []
    assert path == str(ingest_dir / "abc.epub")


def test_checksum_verification(ingest_dir):
    sink = IngestSink(str(ingest_dir), verify_checksum=True)

    path = sink.ingest(ResourceRef("abc"), b"verified")

    assert sink.read_artifact(path) == b"verified"


def test_read_artifact_outside_ingest_dir_is_refused(sink, tmp_path):
    outside = tmp_path / "elsewhere.epub"
    outside.write_bytes(b"secret")

    with pytest.raises(IngestError):
        sink.read_artifact(str(outside))


def test_read_missing_artifact_raises(sink, ingest_dir):
    with pytest.raises(IngestError):
        sink.read_artifact(str(ingest_dir / "missing.epub"))


def test_ids_that_sanitize_alike_get_distinct_files(sink, ingest_dir):
    first = sink.ingest(ResourceRef("a/b"), b"BOOK A/B")
    second = sink.ingest(ResourceRef("a:b"), b"BOOK A:B")

    assert first != second
    assert sink.read_artifact(first) == b"BOOK A/B"
    assert sink.read_artifact(second) == b"BOOK A:B"
    assert os.path.basename(first).startswith("a_b-")


def test_long_ids_sharing_a_prefix_get_distinct_files(sink):
    prefix = "x" * 300
    first = sink.canonical_name(ResourceRef(prefix + "1"))
    second = sink.canonical_name(ResourceRef(prefix + "2"))

    assert first != second
    assert len(first) <= IngestSink.MAX_COMPONENT_LENGTH
    assert first.endswith(".epub")


def test_clean_ids_keep_their_plain_name(sink):
    assert sink.canonical_name(ResourceRef("abc-123_v2.0", format="pdf")) == "abc-123_v2.0.pdf"


def test_copy_fallback_never_overwrites_a_concurrent_publish(sink, ingest_dir, monkeypatch):
    real_link = os.link
    target = ingest_dir / "abc.epub"

    def link(src, dst):
        if os.path.dirname(src) == str(ingest_dir / ".staging"):
            raise OSError(errno.EXDEV, "Invalid cross-device link")
        # Another worker publishes while this one is copying
        target.write_bytes(b"published first")
        return real_link(src, dst)

    monkeypatch.setattr(os, "link", link)

    path = sink.ingest(ResourceRef("abc"), b"published second")

    assert path == str(target)
    assert target.read_bytes() == b"published first"
    assert [name for name in os.listdir(ingest_dir) if name.endswith(".part")] == []
