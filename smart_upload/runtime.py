"""
Explicit construction of the pipeline's collaborators.

The API process and every worker process build one Runtime, open it on
start and close it on shutdown. Nothing is held in module globals.
"""

from typing import Optional

import structlog

from smart_upload.config import settings
from smart_upload.models.database import Database
from smart_upload.models.enums import OcrMode
from smart_upload.pipeline.analysis import AnalysisBackend, build_analysis_backend
from smart_upload.pipeline.cache import CatalogCache, InMemoryCatalogCache, RedisCatalogCache
from smart_upload.pipeline.handlers import PageRenderer, PipelineHandlers
from smart_upload.pipeline.ocr import OcrEngine, TesseractOcr
from smart_upload.pipeline.renderer import render_page_png
from smart_upload.pipeline.service import SmartUploadService
from smart_upload.storage.object_store import LocalObjectStorage, ObjectStorage
from smart_upload.worker.brokers import InMemoryBroker, RedisBroker
from smart_upload.worker.queue import Broker, JobQueue

logger = structlog.get_logger(__name__)


def build_broker(kind: Optional[str] = None) -> Broker:
    kind = kind or settings.QUEUE_BACKEND
    if kind == "redis":
        return RedisBroker()
    if kind == "memory":
        return InMemoryBroker()
    raise ValueError(f"Unknown queue backend: {kind}")


def build_ocr_engine(mode: Optional[str] = None) -> Optional[OcrEngine]:
    if OcrMode(mode or settings.OCR_MODE) == OcrMode.SKIP:
        return None
    return TesseractOcr()


class Runtime:
    def __init__(
        self,
        db: Database,
        storage: ObjectStorage,
        queue: JobQueue,
        backend: AnalysisBackend,
        ocr_engine: Optional[OcrEngine] = None,
        cache: Optional[CatalogCache] = None,
        renderer: PageRenderer = render_page_png,
    ):
        self.db = db
        self.storage = storage
        self.queue = queue
        self.backend = backend
        self.cache = cache
        self.service = SmartUploadService(db, storage, queue)
        self.handlers = PipelineHandlers(
            self.service,
            storage,
            backend,
            ocr_engine=ocr_engine,
            cache=cache,
            renderer=renderer,
        )
        self.handlers.register_all(queue)

    @classmethod
    def from_settings(cls, broker: Optional[Broker] = None) -> "Runtime":
        broker = broker or build_broker()
        if isinstance(broker, RedisBroker):
            cache: CatalogCache = RedisCatalogCache()
        else:
            cache = InMemoryCatalogCache()
        return cls(
            db=Database(),
            storage=LocalObjectStorage(),
            queue=JobQueue(broker),
            backend=build_analysis_backend(),
            ocr_engine=build_ocr_engine(),
            cache=cache,
        )

    @property
    def broker(self) -> Broker:
        return self.queue.broker

    async def open(self, create_schema: bool = False) -> None:
        if create_schema:
            await self.db.create_all()
        await self.queue.open()
        logger.info("runtime_opened", broker=type(self.broker).__name__, backend=self.backend.name)

    async def close(self) -> None:
        await self.queue.close()
        await self.backend.close()
        await self.db.close()
        logger.info("runtime_closed")
