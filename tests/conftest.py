"""
Shared test fixtures.
"""

import io
from typing import Optional

import fitz
import pytest
import pytest_asyncio
from PIL import Image

from smart_upload.models.database import Database
from smart_upload.models.tables import Instrument
from smart_upload.pipeline.analysis import AnalysisBackend
from smart_upload.pipeline.cache import InMemoryCatalogCache
from smart_upload.pipeline.ocr import OcrEngine
from smart_upload.runtime import Runtime
from smart_upload.schemas.metadata import ExtractedMetadata
from smart_upload.storage.object_store import LocalObjectStorage
from smart_upload.storage.paths import compute_content_hash
from smart_upload.worker.brokers import InMemoryBroker
from smart_upload.worker.queue import JobQueue


CATALOG = [
    ("Flute", "woodwind", 1),
    ("Clarinet", "woodwind", 3),
    ("Alto Saxophone", "woodwind", 5),
    ("Trumpet", "brass", 10),
    ("Horn", "brass", 11),
    ("Trombone", "brass", 12),
    ("Tuba", "brass", 14),
    ("Percussion", "percussion", 20),
]


def make_pdf(pages: list[str]) -> bytes:
    """One page per string, text drawn from the top left."""
    doc = fitz.open()
    try:
        for text in pages:
            page = doc.new_page()
            page.insert_text((72, 72), text, fontsize=12)
        return doc.tobytes()
    finally:
        doc.close()


def fake_render(pdf_bytes: bytes, page_index: int) -> bytes:
    """Stands in for rasterization: identifies the document and page."""
    return f"{compute_content_hash(pdf_bytes)}:{page_index}".encode()


class FakeBackend(AnalysisBackend):
    """Canned answers per rendered page (or raw image)."""

    name = "fake"

    def __init__(self):
        self.responses: dict[bytes, ExtractedMetadata] = {}
        self.failures: dict[bytes, Exception] = {}
        self.calls: list[bytes] = []

    @staticmethod
    def key(data: bytes, page: Optional[int] = 0) -> bytes:
        return data if page is None else fake_render(data, page)

    def respond(self, data: bytes, metadata: ExtractedMetadata, page: Optional[int] = 0) -> None:
        self.responses[self.key(data, page)] = metadata

    def fail(self, data: bytes, error: Exception, page: Optional[int] = 0) -> None:
        self.failures[self.key(data, page)] = error

    async def analyze(self, image_bytes: bytes, mime_type: str) -> ExtractedMetadata:
        self.calls.append(image_bytes)
        if image_bytes in self.failures:
            raise self.failures[image_bytes]
        metadata = self.responses.get(image_bytes)
        if metadata is None:
            return ExtractedMetadata(source=self.name)
        return metadata.model_copy(deep=True)


class FakeOcr(OcrEngine):
    name = "fake"

    def __init__(self, text: str = "", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.pdf_calls = 0

    def ocr_image(self, image):
        if self.error is not None:
            raise self.error
        return self.text

    def ocr_pdf(self, pdf_bytes: bytes, page_count: int) -> str:
        self.pdf_calls += 1
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture
def pdf_factory():
    return make_pdf


@pytest.fixture
def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (40, 20), "white").save(buffer, "PNG")
    return buffer.getvalue()


@pytest.fixture
def packet_pdf():
    """Two pages of flute, then two of clarinet."""
    return make_pdf([
        "Flute\nLiberty Parade\nAllegro con brio",
        "Flute\nLiberty Parade\ncontinued",
        "Clarinet\nLiberty Parade\nAllegro con brio",
        "Clarinet\nLiberty Parade\ncontinued",
    ])


@pytest.fixture
def single_part_pdf():
    return make_pdf(["Trumpet\nEvening Hymn\nAndante"])


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(
        root=str(tmp_path / "objects"),
        signing_key="test-signing-key",
        public_base_url="http://testserver/files",
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def broker():
    return InMemoryBroker(time_scale=0, max_parallel=1)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)
    await database.create_all()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def runtime(db, storage, broker, backend):
    rt = Runtime(
        db=db,
        storage=storage,
        queue=JobQueue(broker),
        backend=backend,
        ocr_engine=None,
        cache=InMemoryCatalogCache(),
        renderer=fake_render,
    )
    await rt.queue.open()
    yield rt
    await rt.queue.close()


@pytest.fixture
def service(runtime):
    return runtime.service


@pytest_asyncio.fixture
async def catalog(db):
    """Seeded instrument catalog, name -> instrument id."""
    ids = {}
    async with db.session() as session, session.begin():
        for name, family, sort_order in CATALOG:
            instrument = Instrument(name=name, family=family, sort_order=sort_order)
            session.add(instrument)
            await session.flush()
            ids[name] = str(instrument.instrument_id)
    return ids


@pytest.fixture
def ocr_factory():
    return FakeOcr
