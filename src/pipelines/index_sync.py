from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Coroutine, Dict, List, Protocol, Set

from src.utils.errors import UpstreamFailure
from src.utils.logging import get_logger
from src.utils.object_store import ObjectStore
from src.utils.observability import get_metrics
from src.utils.settings import Settings
from src.utils.storage import append_job_history, load_jobs_history, now_iso

log = get_logger(__name__)

UPLOAD_DESCRIPTION = "Ingestion for file: {key}"
DELETE_DESCRIPTION = "Re-ingestion after file deletion"
MANUAL_DESCRIPTION = "Manual re-ingestion"


class IngestionBackend(Protocol):
    def start_ingestion_job(
        self,
        *,
        knowledge_base_id: str | None,
        data_source_id: str | None,
        client_token: str,
        description: str,
    ) -> str | None: ...


@dataclass
class IngestionOutcome:
    status: str
    reason: str
    client_token: str | None = None
    job_id: str | None = None
    error: str | None = None
    started_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class IndexSynchronizer:
    """Keeps the knowledge-base index in step with the stored document set.

    Every submitted job carries a fresh client token, so retrying a call
    never reuses an idempotency key from an earlier event. After-upload and
    after-delete triggers are best effort; ``resync`` is the strict path used
    by operators.
    """

    def __init__(
        self,
        backend: IngestionBackend,
        object_store: ObjectStore,
        settings: Settings,
        *,
        record_history: bool = True,
    ) -> None:
        self.backend = backend
        self.object_store = object_store
        self.settings = settings
        self.record_history = record_history
        self._tasks: Set[asyncio.Task] = set()

    async def _record(self, outcome: IngestionOutcome) -> IngestionOutcome:
        get_metrics().increment_counter(f"ingestion::{outcome.status}")
        if self.record_history:
            try:
                await asyncio.to_thread(append_job_history, outcome.to_dict())
            except OSError as exc:
                log.warning("ingestion_history_write_failed", error=str(exc))
        return outcome

    async def start_ingestion(self, description: str, *, reason: str = "manual") -> IngestionOutcome:
        client_token = str(uuid.uuid4())
        try:
            job_id = await asyncio.to_thread(
                self.backend.start_ingestion_job,
                knowledge_base_id=self.settings.knowledge_base_id,
                data_source_id=self.settings.data_source_id,
                client_token=client_token,
                description=description,
            )
        except Exception as exc:
            log.error("ingestion_job_failed", reason=reason, client_token=client_token, error=str(exc))
            await self._record(
                IngestionOutcome(status="failed", reason=reason, client_token=client_token, error=str(exc))
            )
            raise UpstreamFailure(f"Failed to start ingestion job: {exc}") from exc
        log.info("ingestion_job_started", reason=reason, client_token=client_token, job_id=job_id)
        return await self._record(
            IngestionOutcome(status="started", reason=reason, client_token=client_token, job_id=job_id)
        )

    async def trigger_after_upload(self, object_key: str) -> IngestionOutcome:
        try:
            return await self.start_ingestion(UPLOAD_DESCRIPTION.format(key=object_key), reason="upload")
        except UpstreamFailure as exc:
            log.warning("ingestion_after_upload_skipped", object_key=object_key, error=exc.detail)
            return IngestionOutcome(status="failed", reason="upload", error=exc.detail)

    async def resync(
        self,
        *,
        strict: bool = True,
        description: str = MANUAL_DESCRIPTION,
        reason: str = "manual",
    ) -> IngestionOutcome:
        """Full re-ingestion of the data source; skipped when the store is empty."""

        try:
            keys = await asyncio.to_thread(self.object_store.list_keys)
        except Exception as exc:
            log.error("ingestion_listing_failed", reason=reason, error=str(exc))
            outcome = await self._record(IngestionOutcome(status="failed", reason=reason, error=str(exc)))
            if strict:
                raise UpstreamFailure(f"Failed to list stored documents: {exc}") from exc
            return outcome

        if not keys:
            log.info("ingestion_skipped_empty_store", reason=reason)
            return await self._record(IngestionOutcome(status="skipped", reason=reason))

        try:
            return await self.start_ingestion(description, reason=reason)
        except UpstreamFailure as exc:
            if strict:
                raise
            return IngestionOutcome(status="failed", reason=reason, error=exc.detail)

    async def resync_after_delete(self) -> IngestionOutcome:
        return await self.resync(strict=False, description=DELETE_DESCRIPTION, reason="delete")

    def schedule(self, coro: Coroutine[Any, Any, IngestionOutcome]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def history(self, limit: int | None = None) -> List[Dict[str, Any]]:
        return load_jobs_history(limit)
