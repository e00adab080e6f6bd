"""
Document conversion boundary.

Markdown and plain text are decoded in-process.  Everything else (PDF,
DOCX, PPTX, HTML) is posted to an external conversion service that returns
markdown; any failure there surfaces as ExternalServiceError.
"""
from __future__ import annotations

from typing import Optional, Protocol

import httpx
import orjson
from loguru import logger

from ragindex.config import StorageConfig
from ragindex.errors import ExternalServiceError, ServiceTimeoutError, ValidationError
from ragindex.schemas import UploadedFile
from ragindex.utils.retry import RetryPolicy

TEXT_MIME_TYPES = {"text/markdown", "text/x-markdown", "text/plain"}


class DocumentConverter(Protocol):
    def convert(self, upload: UploadedFile) -> str: ...


class PassthroughConverter:
    def convert(self, upload: UploadedFile) -> str:
        if b"\x00" in upload.content:
            raise ValidationError(f"{upload.filename} looks binary; expected UTF-8 text")
        try:
            return upload.content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ValidationError(f"{upload.filename} is not valid UTF-8: {exc}") from exc


class HttpDocumentConverter:
    """
    Client for a conversion service exposing `POST {url}` with a multipart
    `file` field and a JSON response `{"markdown": "..."}`.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 120.0,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.retry = retry_policy or RetryPolicy()
        self._client = http_client or httpx.Client(timeout=timeout)

    def _post(self, upload: UploadedFile) -> str:
        try:
            response = self._client.post(
                self.url,
                files={"file": (upload.filename, upload.content, upload.mime_type)},
            )
        except httpx.TimeoutException as exc:
            raise ServiceTimeoutError(str(exc), service="converter") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(str(exc), service="converter") from exc
        if response.status_code >= 400:
            raise ExternalServiceError(
                response.text[:300],
                service="converter",
                retryable=response.status_code == 429 or response.status_code >= 500,
                status_code=response.status_code,
            )
        try:
            markdown = orjson.loads(response.content)["markdown"]
        except (orjson.JSONDecodeError, KeyError, TypeError) as exc:
            raise ExternalServiceError(f"Unexpected converter response: {exc}", service="converter", retryable=False) from exc
        if not isinstance(markdown, str):
            raise ExternalServiceError("Converter returned non-text markdown", service="converter", retryable=False)
        return markdown

    def convert(self, upload: UploadedFile) -> str:
        markdown = self.retry.call(self._post, upload)
        logger.info(f"[Converter] {upload.filename}: {upload.size} bytes -> {len(markdown)} chars of markdown")
        return markdown

    def close(self) -> None:
        self._client.close()


class ConverterRouter:
    """Pick the passthrough for text formats and the remote service for the rest."""

    def __init__(self, remote: Optional[DocumentConverter] = None) -> None:
        self.text = PassthroughConverter()
        self.remote = remote

    @classmethod
    def from_config(cls, cfg: StorageConfig, retry_policy: Optional[RetryPolicy] = None) -> "ConverterRouter":
        remote = None
        if cfg.converter_url:
            remote = HttpDocumentConverter(cfg.converter_url, cfg.converter_timeout_seconds, retry_policy)
        return cls(remote)

    def convert(self, upload: UploadedFile) -> str:
        if upload.mime_type in TEXT_MIME_TYPES:
            return self.text.convert(upload)
        if self.remote is None:
            raise ValidationError(f"No converter configured for {upload.mime_type} ({upload.filename})")
        return self.remote.convert(upload)

    def close(self) -> None:
        close = getattr(self.remote, "close", None)
        if close is not None:
            close()
