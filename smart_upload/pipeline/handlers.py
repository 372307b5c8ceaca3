"""
Job handlers: one per pipeline stage.

Stages are chained by enqueue: extract_text -> classify -> [split_pdf] ->
[second_pass] -> proposal. Every handler reloads its item and batch first
and does nothing if either is terminal. A handler that finds its stage
already recorded (a retry after a crash between commit and enqueue) only
re-dispatches the next stage.
"""

import asyncio
from pathlib import Path
from typing import Callable, Optional

import structlog

from smart_upload.config import settings
from smart_upload.models.enums import ExtractionMethod, ItemStatus, ItemStep
from smart_upload.models.tables import UploadItem
from smart_upload.pipeline import state
from smart_upload.pipeline.analysis import AnalysisBackend
from smart_upload.pipeline.cache import CatalogCache
from smart_upload.pipeline.cleanup import cleanup_batch_temp_files
from smart_upload.pipeline.ingestion import ingest_batch
from smart_upload.pipeline.instrument_matcher import (
    InstrumentMatch,
    MatchOptions,
    map_instruments,
    normalize_instrument_name,
)
from smart_upload.pipeline.ocr import PAGE_BREAK, OcrEngine
from smart_upload.pipeline.part_boundaries import UNKNOWN_PART, detect_part_boundaries
from smart_upload.pipeline.pdf_splitter import split_pdf_by_cutting_instructions
from smart_upload.pipeline.renderer import render_page_png
from smart_upload.pipeline.service import SmartUploadService
from smart_upload.pipeline.text_extraction import (
    TextExtractionResult,
    extract_text_from_image,
    extract_text_from_pdf,
    parse_filename_metadata,
)
from smart_upload.schemas.metadata import ExtractedMetadata, PartMapping, SplitFileRecord
from smart_upload.storage.object_store import ObjectStorage
from smart_upload.storage.paths import compute_content_hash, key_for_hash
from smart_upload.worker.definitions import (
    ClassifyJob,
    CleanupJob,
    ExtractTextJob,
    IngestJob,
    JobKind,
    SecondPassJob,
    SplitPdfJob,
    parse_payload,
)
from smart_upload.worker.queue import DeadLetterEntry, JobQueue

logger = structlog.get_logger(__name__)

PDF_MIME = "application/pdf"

# (pdf_bytes, page_index) -> PNG bytes
PageRenderer = Callable[[bytes, int], bytes]


def _is_image(mime_type: str) -> bool:
    return mime_type.startswith("image/")


def stored_metadata(item: UploadItem) -> ExtractedMetadata:
    return ExtractedMetadata.model_validate(item.extracted_meta or {})


def page_texts_of(item: UploadItem) -> list[str]:
    if not item.ocr_text:
        return []
    return item.ocr_text.split(PAGE_BREAK)


class PipelineHandlers:
    """Binds the stage handlers to their collaborators."""

    def __init__(
        self,
        service: SmartUploadService,
        storage: ObjectStorage,
        backend: AnalysisBackend,
        ocr_engine: Optional[OcrEngine] = None,
        cache: Optional[CatalogCache] = None,
        renderer: PageRenderer = render_page_png,
        match_options: Optional[MatchOptions] = None,
        second_pass_enabled: Optional[bool] = None,
        second_pass_threshold: Optional[float] = None,
    ):
        self.service = service
        self.storage = storage
        self.backend = backend
        self.ocr_engine = ocr_engine
        self.cache = cache
        self.renderer = renderer
        self.match_options = match_options or MatchOptions.from_settings()
        self.second_pass_enabled = (
            settings.SECOND_PASS_ENABLED if second_pass_enabled is None else second_pass_enabled
        )
        self.second_pass_threshold = (
            settings.SECOND_PASS_CONFIDENCE_THRESHOLD
            if second_pass_threshold is None else second_pass_threshold
        )

    @property
    def queue(self) -> JobQueue:
        return self.service.queue

    def register_all(self, queue: JobQueue) -> None:
        """Register every stage and fail fast if a job kind has no handler."""
        queue.register(JobKind.EXTRACT_TEXT, self.extract_text)
        queue.register(JobKind.CLASSIFY, self.classify)
        queue.register(JobKind.SPLIT_PDF, self.split_pdf)
        queue.register(JobKind.SECOND_PASS, self.second_pass)
        queue.register(JobKind.INGEST, self.ingest)
        queue.register(JobKind.CLEANUP, self.cleanup)
        queue.on_dead_letter(self.on_dead_letter)
        queue.ensure_all_registered()

    # ── Stage 1: EXTRACT TEXT ────────────────────────────────

    async def extract_text(self, job: ExtractTextJob) -> None:
        loaded = await self.service.load_stage(job.item_id)
        if loaded is None:
            return
        _, item = loaded
        status = state.item_status(item)
        if status == ItemStatus.TEXT_EXTRACTED:
            await self.queue.enqueue(ClassifyJob(batch_id=job.batch_id, item_id=job.item_id))
            return
        if status != ItemStatus.VALIDATED:
            logger.info("extract_skipped", item_status=item.status)
            return

        data = self.storage.download(job.storage_key)
        if item.mime_type == PDF_MIME:
            result = await asyncio.to_thread(extract_text_from_pdf, data, self.ocr_engine)
        elif _is_image(item.mime_type):
            result = await asyncio.to_thread(extract_text_from_image, data, self.ocr_engine)
        else:
            result = TextExtractionResult(text="", page_count=0, method=ExtractionMethod.NONE, confidence=0.0)

        text = PAGE_BREAK.join(result.page_texts) if result.page_texts else result.text
        advanced = await self.service.advance_item(
            job.item_id,
            ItemStatus.TEXT_EXTRACTED,
            ItemStep.TEXT_EXTRACTED,
            page_count=result.page_count or None,
            extraction_method=result.method.value,
            extraction_confidence=result.confidence,
            ocr_text=text or None,
            error_message=f"OCR failed, using embedded text: {result.ocr_error}" if result.ocr_error else None,
        )
        if advanced is None:
            return
        logger.info(
            "text_extracted",
            method=result.method.value,
            confidence=result.confidence,
            page_count=result.page_count,
        )
        await self.queue.enqueue(ClassifyJob(batch_id=job.batch_id, item_id=job.item_id))

    # ── Stage 2: CLASSIFY ────────────────────────────────────

    async def _analyze_first_page(self, item: UploadItem, data: bytes) -> ExtractedMetadata:
        if item.mime_type == PDF_MIME and item.page_count:
            image = await asyncio.to_thread(self.renderer, data, 0)
            return await self.backend.analyze(image, "image/png")
        if _is_image(item.mime_type):
            return await self.backend.analyze(data, item.mime_type)
        return ExtractedMetadata(source="filename")

    async def classify(self, job: ClassifyJob) -> None:
        loaded = await self.service.load_stage(job.item_id)
        if loaded is None:
            return
        _, item = loaded
        status = state.item_status(item)
        if status == ItemStatus.CLASSIFIED:
            await self._after_classify(item)
            return
        if status != ItemStatus.TEXT_EXTRACTED:
            logger.info("classify_skipped", item_status=item.status)
            return

        data = self.storage.download(item.storage_key)
        metadata = await self._analyze_first_page(item, data)

        guess = parse_filename_metadata(item.file_name)
        if metadata.title is None and guess.get("title"):
            metadata.title = guess["title"]
            metadata.title_confidence = guess["confidence"]
        if not metadata.part_labels and guess.get("part_label"):
            metadata.part_labels = [guess["part_label"]]

        if item.mime_type == PDF_MIME and not metadata.cutting_instructions and (item.page_count or 0) > 1:
            segmentation = detect_part_boundaries(page_texts_of(item))
            if any(i.part_name != UNKNOWN_PART for i in segmentation.cutting_instructions):
                metadata.cutting_instructions = segmentation.cutting_instructions

        is_packet = item.mime_type == PDF_MIME and len(metadata.cutting_instructions) > 1
        advanced = await self.service.advance_item(
            job.item_id,
            ItemStatus.CLASSIFIED,
            ItemStep.SPLIT_PLANNED if is_packet else ItemStep.METADATA_EXTRACTED,
            extracted_meta=metadata.model_dump(mode="json"),
            is_packet=is_packet,
        )
        if advanced is None:
            return
        logger.info(
            "item_classified",
            title=metadata.title,
            title_confidence=metadata.title_confidence,
            is_packet=is_packet,
            parts=len(metadata.cutting_instructions),
        )
        await self._after_classify(advanced)

    async def _after_classify(self, item: UploadItem) -> None:
        if item.is_packet:
            await self.queue.enqueue(SplitPdfJob(
                batch_id=str(item.batch_id), item_id=str(item.item_id), storage_key=item.storage_key,
            ))
        else:
            await self._verify_or_propose(item)

    # ── Stage 3: SPLIT ───────────────────────────────────────

    async def split_pdf(self, job: SplitPdfJob) -> None:
        loaded = await self.service.load_stage(job.item_id)
        if loaded is None:
            return
        _, item = loaded
        status = state.item_status(item)
        if status == ItemStatus.SPLIT:
            await self._verify_or_propose(item)
            return
        if status != ItemStatus.CLASSIFIED:
            logger.info("split_skipped", item_status=item.status)
            return

        data = self.storage.download(job.storage_key)
        metadata = stored_metadata(item)
        parts = await asyncio.to_thread(
            split_pdf_by_cutting_instructions, data, Path(item.file_name).stem, metadata.cutting_instructions,
        )

        records: list[SplitFileRecord] = []
        for part in parts:
            digest = compute_content_hash(part.content)
            key = key_for_hash(digest, "pdf")
            self.storage.upload(key, part.content, PDF_MIME)
            records.append(SplitFileRecord(
                part_name=part.instruction.part_name,
                file_name=part.file_name,
                storage_key=key,
                content_hash=digest,
                size_bytes=len(part.content),
                page_count=part.page_count,
                page_start=part.page_start,
                page_end=part.page_end,
                instruction_index=part.index,
            ))

        fields = {"split_files": [r.model_dump(mode="json") for r in records]}
        if not records:
            fields["error_message"] = "Split produced no parts; the original file is kept"
            logger.warning("split_produced_nothing", instructions=len(metadata.cutting_instructions))

        advanced = await self.service.advance_item(
            job.item_id, ItemStatus.SPLIT, ItemStep.SPLIT_COMPLETE, **fields,
        )
        if advanced is None:
            return
        await self._verify_or_propose(advanced)

    # ── Stage 4: SECOND PASS ─────────────────────────────────

    def _needs_second_pass(self, item: UploadItem) -> bool:
        if not self.second_pass_enabled or item.mime_type != PDF_MIME:
            return False
        if (item.page_count or 0) < 2 or item.current_step == ItemStep.VERIFIED.value:
            return False
        metadata = stored_metadata(item)
        return metadata.confidence_of("title") < self.second_pass_threshold

    async def _verify_or_propose(self, item: UploadItem) -> None:
        if self._needs_second_pass(item):
            await self.queue.enqueue(SecondPassJob(batch_id=str(item.batch_id), item_id=str(item.item_id)))
        else:
            await self._propose(item)

    async def second_pass(self, job: SecondPassJob) -> None:
        loaded = await self.service.load_stage(job.item_id)
        if loaded is None:
            return
        _, item = loaded
        if state.item_status(item) not in (ItemStatus.CLASSIFIED, ItemStatus.SPLIT):
            logger.info("second_pass_skipped", item_status=item.status)
            return
        if item.current_step == ItemStep.VERIFIED.value:
            await self._propose(item)
            return

        data = self.storage.download(item.storage_key)
        last_page = max(0, (item.page_count or 1) - 1)
        image = await asyncio.to_thread(self.renderer, data, last_page)
        verification = await self.backend.analyze(image, "image/png")
        merged = stored_metadata(item).merge_higher_confidence(verification)

        advanced = await self.service.advance_item(
            job.item_id,
            step=ItemStep.VERIFIED,
            extracted_meta=merged.model_dump(mode="json"),
        )
        if advanced is None:
            return
        logger.info("second_pass_complete", title_confidence=merged.title_confidence)
        await self._propose(advanced)

    # ── Proposal ─────────────────────────────────────────────

    async def build_part_mappings(self, item: UploadItem) -> list[PartMapping]:
        metadata = stored_metadata(item)
        # Keyed by instruction position; part names may repeat within a packet.
        records: dict[int, SplitFileRecord] = {}
        for position, raw in enumerate(item.split_files or []):
            record = SplitFileRecord.model_validate(raw)
            index = record.instruction_index if record.instruction_index is not None else position
            records[index] = record

        segments: list[tuple[Optional[int], str, Optional[int], Optional[int]]] = [
            (index, i.part_name, i.page_start, i.page_end)
            for index, i in enumerate(metadata.cutting_instructions)
            if not item.is_packet or index in records or not records
        ]
        if not segments:
            segments = [(None, label, None, None) for label in dict.fromkeys(metadata.part_labels)]
        if not segments:
            return []

        catalog = await self.service.instrument_catalog()
        mapping = map_instruments([label for _, label, _, _ in segments], catalog, self.match_options)

        parts: list[PartMapping] = []
        for index, label, start, end in segments:
            match = mapping.by_label[label]
            record = records.get(index) if index is not None else None
            resolved = isinstance(match, InstrumentMatch)
            parts.append(PartMapping(
                label=label,
                normalized_label=normalize_instrument_name(label),
                instrument_id=match.instrument_id if resolved else None,
                instrument_name=match.instrument_name if resolved else None,
                confidence=match.confidence if resolved else 0.0,
                resolved=resolved,
                page_start=record.page_start if record else start,
                page_end=record.page_end if record else end,
                storage_key=record.storage_key if record else None,
                instruction_index=index,
            ))
        if mapping.unresolved:
            logger.info("instruments_unresolved", labels=[u.label for u in mapping.unresolved])
        return parts

    async def _propose(self, item: UploadItem) -> None:
        parts = await self.build_part_mappings(item)
        await self.service.create_proposal(item.item_id, stored_metadata(item), parts)

    # ── Batch stages ─────────────────────────────────────────

    async def ingest(self, job: IngestJob) -> None:
        await ingest_batch(self.service, self.cache, job.batch_id, job.approved_by)

    async def cleanup(self, job: CleanupJob) -> None:
        await cleanup_batch_temp_files(self.service.db, self.storage, job.batch_id)

    # ── Dead letters ─────────────────────────────────────────

    async def on_dead_letter(self, entry: DeadLetterEntry) -> None:
        """Surface an exhausted job on the entity it was working on."""
        payload = parse_payload(entry.payload)
        reason = f"{entry.kind.value} failed after {entry.attempts} attempt(s): {entry.reason}"
        item_id = getattr(payload, "item_id", None)
        if item_id is not None:
            await self.service.fail_item(item_id, reason, stage=entry.kind.value)
        elif entry.kind == JobKind.INGEST:
            await self.service.mark_batch_failed(payload.batch_id, reason)
        else:
            logger.warning("batch_job_dead_lettered", kind=entry.kind.value, batch_id=payload.batch_id)
