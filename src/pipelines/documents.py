from __future__ import annotations

import asyncio
import sqlite3
import uuid
from pathlib import PurePath
from typing import Any, Callable, List

from src.pipelines.index_sync import IndexSynchronizer
from src.schemas.models import DocumentRecord
from src.utils.document_registry import DocumentRegistry
from src.utils.errors import ChatServiceError, NotFound, StorageFailure, ValidationError
from src.utils.logging import get_logger
from src.utils.object_store import ObjectStore, object_key_from_location
from src.utils.security import require_user_id
from src.utils.settings import Settings

log = get_logger(__name__)


def object_key_for(file_name: str) -> str:
    return f"{uuid.uuid4()}-{file_name}"


def clean_file_name(file_name: str | None) -> str:
    name = PurePath((file_name or "").replace("\\", "/")).name.strip()
    if not name or name in {".", ".."}:
        raise ValidationError("File name is required")
    return name


class DocumentService:
    """Upload, read and delete documents while keeping the index in step."""

    def __init__(
        self,
        *,
        registry: DocumentRegistry,
        object_store: ObjectStore,
        synchronizer: IndexSynchronizer,
        settings: Settings,
    ) -> None:
        self.registry = registry
        self.object_store = object_store
        self.synchronizer = synchronizer
        self.settings = settings

    async def _registry(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Document registry operation failed: {exc}") from exc

    async def _blob(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except ChatServiceError:
            raise
        except Exception as exc:
            raise StorageFailure(f"Object store operation failed: {exc}") from exc

    async def upload(
        self,
        user_id: str,
        file_name: str | None,
        content: bytes,
        content_type: str | None = None,
    ) -> DocumentRecord:
        user_id = require_user_id(user_id)
        name = clean_file_name(file_name)
        if not content:
            raise ValidationError("No file uploaded")
        if len(content) > self.settings.upload_max_bytes:
            raise ValidationError("File too large")
        content_type = content_type or "application/octet-stream"
        key = object_key_for(name)

        location = await self._blob(self.object_store.put, key, content, content_type)
        log.info("document_blob_stored", user_id=user_id, object_key=key, size=len(content))

        trigger = self.synchronizer.trigger_after_upload(key)
        if self.settings.ingestion_detach:
            self.synchronizer.schedule(trigger)
        else:
            await trigger

        record = DocumentRecord(
            id=uuid.uuid4().hex,
            user_id=user_id,
            file_name=name,
            file_url=location,
            content_type=content_type,
        )
        try:
            await self._registry(self.registry.insert, record)
        except StorageFailure:
            log.error("document_register_failed", user_id=user_id, object_key=key)
            try:
                await self._blob(self.object_store.delete, key)
            except StorageFailure as cleanup_exc:
                log.error("document_blob_cleanup_failed", object_key=key, error=cleanup_exc.detail)
            raise
        log.info("document_uploaded", user_id=user_id, document_id=record.id, object_key=key)
        return record

    async def list_documents(self, user_id: str) -> List[DocumentRecord]:
        user_id = require_user_id(user_id)
        return await self._registry(self.registry.list_for_user, user_id)

    async def get_document(self, document_id: str) -> DocumentRecord:
        record = await self._registry(self.registry.get, document_id)
        if record is None:
            raise NotFound("File not found")
        return record

    async def download_url(self, document_id: str) -> str:
        record = await self.get_document(document_id)
        key = object_key_from_location(record.file_url)
        return await self._blob(self.object_store.presigned_url, key, self.settings.presigned_url_ttl_seconds)

    async def delete(self, document_id: str) -> DocumentRecord:
        record = await self.get_document(document_id)
        key = object_key_from_location(record.file_url)
        try:
            await self._blob(self.object_store.delete, key)
            await self._registry(self.registry.delete, document_id)
        except StorageFailure as exc:
            log.error("document_delete_failed", document_id=document_id, object_key=key, error=exc.detail)
            raise
        log.info("document_deleted", document_id=document_id, object_key=key)

        outcome = await self.synchronizer.resync_after_delete()
        if outcome.status == "failed":
            log.warning("document_resync_failed", document_id=document_id, error=outcome.error)
        return record
