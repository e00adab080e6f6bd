from __future__ import annotations

import httpx
import pytest

from ragindex.errors import CorruptionError, ExternalServiceError, ValidationError
from ragindex.schemas import UploadedFile, guess_mime_type
from ragindex.storage.converter import ConverterRouter, HttpDocumentConverter, PassthroughConverter
from ragindex.storage.file_storage import ArtifactStorage
from ragindex.utils.helpers import sha256_hex


# --- Artifact storage ---------------------------------------------------------

def test_save_is_content_addressed_and_idempotent(tmp_path):
    storage = ArtifactStorage(tmp_path)
    data = b"lecture notes"
    digest = sha256_hex(data)

    path = storage.save(data, digest, "Notes.MD")
    assert path == storage.save(data, digest, "other-name.md")
    assert path.endswith(f"{digest[:2]}/{digest}.md")
    assert storage.read(path, digest) == data


def test_read_detects_tampering(tmp_path):
    storage = ArtifactStorage(tmp_path)
    data = b"original bytes"
    path = storage.save(data, sha256_hex(data), "a.txt")
    with open(path, "wb") as f:
        f.write(b"tampered")
    with pytest.raises(CorruptionError):
        storage.read(path, sha256_hex(data))
    with pytest.raises(CorruptionError):
        storage.read(str(tmp_path / "missing.txt"), sha256_hex(data))


def test_delete_reports_freed_bytes(tmp_path):
    storage = ArtifactStorage(tmp_path)
    data = b"12345"
    path = storage.save(data, sha256_hex(data), "a.txt")
    assert storage.delete(path) == 5
    assert storage.delete(path) == 0


# --- Conversion ---------------------------------------------------------------

def test_passthrough_decodes_text_and_strips_bom():
    upload = UploadedFile(filename="a.md", content="\ufeff# Title\n".encode("utf-8"))
    assert PassthroughConverter().convert(upload) == "# Title\n"


def test_passthrough_rejects_binary():
    with pytest.raises(ValidationError):
        PassthroughConverter().convert(UploadedFile(filename="a.md", content=b"\x89PNG\x00\x00"))


def test_router_without_remote_rejects_pdf():
    upload = UploadedFile(filename="slides.pdf", content=b"%PDF-1.7", mime_type="application/pdf")
    with pytest.raises(ValidationError):
        ConverterRouter().convert(upload)


def test_router_sends_binary_formats_to_service(no_wait):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.read()
        return httpx.Response(200, json={"markdown": "# Slides\n\nconverted"})

    remote = HttpDocumentConverter(
        "http://converter/convert",
        retry_policy=no_wait,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    upload = UploadedFile(filename="slides.pdf", content=b"%PDF-1.7", mime_type="application/pdf")
    assert ConverterRouter(remote).convert(upload) == "# Slides\n\nconverted"
    assert b"slides.pdf" in seen["body"]


def test_converter_retries_server_errors(no_wait):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"markdown": "ok"})

    remote = HttpDocumentConverter(
        "http://converter/convert",
        retry_policy=no_wait,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    upload = UploadedFile(filename="a.docx", content=b"PK", mime_type="application/octet-stream")
    assert remote.convert(upload) == "ok"
    assert len(attempts) == 3


def test_converter_client_error_is_not_retried(no_wait):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(415, text="unsupported")

    remote = HttpDocumentConverter(
        "http://converter/convert",
        retry_policy=no_wait,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    with pytest.raises(ExternalServiceError):
        remote.convert(UploadedFile(filename="a.xyz", content=b"?", mime_type="application/x-unknown"))
    assert len(attempts) == 1


@pytest.mark.parametrize(
    "name, mime",
    [("a.md", "text/markdown"), ("b.TXT", "text/plain"), ("c.pdf", "application/pdf"), ("d.bin", "application/octet-stream")],
)
def test_guess_mime_type(name, mime):
    assert guess_mime_type(name) == mime
