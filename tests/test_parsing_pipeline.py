import json
import zipfile
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from docs_parser.packages import (
    BlockRecord,
    DOCXParse,
    DummyParsingEngine,
    EventDispatcher,
    InlineJobQueue,
    InMemoryParsingRepository,
    LocalPackageStorage,
    NoopIndexer,
    PackageRecord,
    PackageStatus,
    PageRecord,
    ParseJobPhase,
    ParseJobRecord,
    ParseJobState,
    ParsingEngine,
    ParsingTriggerEvent,
    ParsingWorker,
    RedisEventPublisher,
    SqlAlchemyParsingRepository,
    StoragePaths,
    VersionRecord,
    WhooshIndexer,
    WorkerConfig,
    build_trigger_dispatcher,
    parse_job_id,
    record_parse_trigger,
)
from docs_parser.packages.models import ParsedAsset, ParsedBlock, ParsedDocument, ParsedPage

SAMPLE_TEXT = """Preface paragraph.

# Installation
Unpack the archive.

Run the installer.

# Usage
Open the application.
"""


def _make_worker(tmp_path, repo=None, engine=None, batch_size=10):
    return ParsingWorker(
        repository=repo or InMemoryParsingRepository(),
        storage=LocalPackageStorage(StoragePaths(tmp_path / "data")),
        engine=engine or DummyParsingEngine(),
        indexer=NoopIndexer(),
        batch_size=batch_size,
        persist_engine_output=True,
    )


def _seed(repo, source_path, package_id="pkg-1", version_id="v1"):
    repo.save_package(PackageRecord(id=package_id, title="Manual"))
    repo.save_version(VersionRecord(id=version_id, package_id=package_id, original_file_path=str(source_path)))


def _write_docx(path, pages=None):
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("word/document.xml", "<w:document/>")
        if pages is not None:
            archive.writestr(
                "docProps/app.xml",
                '<Properties xmlns="http://schemas.openxmlformats.org/officeDocument/2006/extended-properties">'
                f"<Pages>{pages}</Pages></Properties>",
            )
    return path


def test_sqlalchemy_repository_roundtrip(tmp_path):
    db_path = tmp_path / "test.db"
    repo = SqlAlchemyParsingRepository(f"sqlite+pysqlite:///{db_path}")

    repo.save_package(PackageRecord(id="pkg-1", title="Manual"))
    assert repo.get_package("pkg-1").title == "Manual"

    repo.save_version(VersionRecord(id="v1", package_id="pkg-1", original_file_path="input.docx"))
    repo.update_version("pkg-1", "v1", status=PackageStatus.PARSED, page_count=3)
    version = repo.get_version("pkg-1", "v1")
    assert version.status == PackageStatus.PARSED and version.page_count == 3
    assert repo.get_version("pkg-1", "v2") is None
    assert [v.id for v in repo.list_versions("pkg-1")] == ["v1"]

    job = ParseJobRecord(
        id=parse_job_id("pkg-1", "v1"),
        package_id="pkg-1",
        version_id="v1",
        state=ParseJobState.QUEUED,
        phase=ParseJobPhase.INITIALIZATION,
        started_at=datetime.now(timezone.utc),
    )
    repo.save_job(job)
    repo.update_job_state_phase(job.id, state=ParseJobState.RUNNING, current_page=2, total_pages=10)
    updated_job = repo.get_job(job.id)
    assert updated_job.state == ParseJobState.RUNNING and updated_job.current_page == 2

    page = PageRecord(
        id="pkg-1-v1-p1",
        package_id="pkg-1",
        version_id="v1",
        page_number=1,
        title="Intro",
        parse_status="parsed",
    )
    block = BlockRecord(
        id="pkg-1-v1-blk-1",
        package_id="pkg-1",
        version_id="v1",
        page_id=page.id,
        page_number=1,
        block_type="paragraph",
        text="Hello",
        markup=None,
        level=0,
        reading_order=0,
        asset_id=None,
    )
    repo.upsert_pages([page])
    repo.upsert_blocks([block])
    assert repo.get_page("pkg-1", "v1", 1).title == "Intro"
    assert [b.text for b in repo.list_blocks_for_page("pkg-1", "v1", 1)] == ["Hello"]

    repo.delete_content_for_version("pkg-1", "v1")
    assert repo.list_blocks_for_version("pkg-1", "v1") == []
    assert repo.get_page("pkg-1", "v1", 1) is None
    with pytest.raises(ValueError, match="Page 1 not found"):
        repo.list_blocks_for_page("pkg-1", "v1", 1)


def test_facade_runs_chain_inline_with_dummy_engine(tmp_path):
    source = tmp_path / "manual.txt"
    source.write_text(SAMPLE_TEXT, encoding="utf-8")
    repo = InMemoryParsingRepository()
    _seed(repo, source)
    worker = _make_worker(tmp_path, repo=repo)

    events = EventDispatcher()
    events.listen(ParsingTriggerEvent, record_parse_trigger(repo))
    config = WorkerConfig(database_url="sqlite://", storage_root=str(tmp_path / "data"), engine="dummy")
    DOCXParse(events, InlineJobQueue(config, worker_factory=lambda c: worker)).execute("pkg-1", "v1")

    job = repo.get_job(parse_job_id("pkg-1", "v1"))
    version = repo.get_version("pkg-1", "v1")
    assert job.state == ParseJobState.COMPLETED
    assert job.phase == ParseJobPhase.INDEXING
    assert version.status == PackageStatus.PARSED
    assert version.page_count == 3
    assert version.file_md5

    pages = repo.list_pages_for_version("pkg-1", "v1")
    assert [(p.page_number, p.title) for p in pages] == [(1, None), (2, "Installation"), (3, "Usage")]
    page_two = repo.list_blocks_for_page("pkg-1", "v1", 2)
    assert [b.text for b in page_two] == ["Installation", "Unpack the archive.", "Run the installer."]

    storage = worker.storage
    assert storage.paths.engine_output_path("pkg-1", "v1").exists()
    assert storage.find_original_docx("pkg-1", "v1") is not None


def test_reparse_replaces_previous_content(tmp_path):
    source = tmp_path / "manual.txt"
    source.write_text(SAMPLE_TEXT, encoding="utf-8")
    repo = InMemoryParsingRepository()
    _seed(repo, source)
    worker = _make_worker(tmp_path, repo=repo)

    worker.initialize_package("pkg-1", "v1")
    worker.parse_pages("pkg-1", "v1")

    # The stored copy is parsed on re-runs; change it to simulate a corrected upload.
    stored = worker.storage.find_original_docx("pkg-1", "v1")
    stored.write_text("# Only page\nSingle paragraph.\n", encoding="utf-8")
    worker.initialize_package("pkg-1", "v1")
    worker.parse_pages("pkg-1", "v1")

    assert [p.title for p in repo.list_pages_for_version("pkg-1", "v1")] == ["Only page"]
    assert len(repo.list_blocks_for_version("pkg-1", "v1")) == 2
    assert repo.get_version("pkg-1", "v1").page_count == 1


def test_batches_update_current_page(tmp_path):
    source = tmp_path / "manual.txt"
    source.write_text(SAMPLE_TEXT, encoding="utf-8")
    repo = InMemoryParsingRepository()
    _seed(repo, source)
    worker = _make_worker(tmp_path, repo=repo, batch_size=1)

    worker.initialize_package("pkg-1", "v1")
    worker.parse_pages("pkg-1", "v1")

    job = repo.get_job(parse_job_id("pkg-1", "v1"))
    assert job.current_page == 3
    assert job.total_pages == 3


def test_initialization_rejects_non_docx(tmp_path):
    class StubDocxEngine(ParsingEngine):
        engine_version = "stub"

        def parse(self, path):
            return ParsedDocument(pages=[ParsedPage(1)], blocks=[], assets=[], engine_version="stub")

    source = tmp_path / "notes.docx"
    source.write_bytes(b"plain bytes, not a zip container")
    repo = InMemoryParsingRepository()
    _seed(repo, source)
    worker = _make_worker(tmp_path, repo=repo, engine=StubDocxEngine())

    with pytest.raises(ValueError, match="Not a DOCX"):
        worker.initialize_package("pkg-1", "v1")

    job = repo.get_job(parse_job_id("pkg-1", "v1"))
    version = repo.get_version("pkg-1", "v1")
    assert job.state == ParseJobState.FAILED
    assert "Not a DOCX" in job.error_message
    assert version.status == PackageStatus.FAILED


def test_initialization_records_declared_page_count(tmp_path):
    class StubDocxEngine(ParsingEngine):
        engine_version = "stub"

    source = _write_docx(tmp_path / "manual.docx", pages=12)
    repo = InMemoryParsingRepository()
    _seed(repo, source)
    worker = _make_worker(tmp_path, repo=repo, engine=StubDocxEngine())

    worker.initialize_package("pkg-1", "v1")

    version = repo.get_version("pkg-1", "v1")
    assert version.status == PackageStatus.INITIALIZED
    assert version.declared_page_count == 12
    assert version.engine_version == "stub"
    assert repo.get_job(parse_job_id("pkg-1", "v1")).total_pages == 12


def test_declared_page_count_missing_metadata(tmp_path):
    assert ParsingEngine().declared_page_count(_write_docx(tmp_path / "bare.docx")) is None


def test_missing_source_marks_failure(tmp_path):
    repo = InMemoryParsingRepository()
    _seed(repo, tmp_path / "gone.txt")
    worker = _make_worker(tmp_path, repo=repo)

    with pytest.raises(FileNotFoundError):
        worker.initialize_package("pkg-1", "v1")
    assert repo.get_version("pkg-1", "v1").status == PackageStatus.FAILED


def test_parse_requires_initialization(tmp_path):
    source = tmp_path / "manual.txt"
    source.write_text(SAMPLE_TEXT, encoding="utf-8")
    repo = InMemoryParsingRepository()
    _seed(repo, source)
    worker = _make_worker(tmp_path, repo=repo)

    with pytest.raises(ValueError, match="not initialized"):
        worker.parse_pages("pkg-1", "v1")

    job = repo.get_job(parse_job_id("pkg-1", "v1"))
    assert job.state == ParseJobState.FAILED
    assert "not initialized" in job.error_message
    assert repo.get_version("pkg-1", "v1").status == PackageStatus.FAILED


def test_unknown_package_is_rejected(tmp_path):
    worker = _make_worker(tmp_path)
    with pytest.raises(ValueError, match="Package missing not found"):
        worker.initialize_package("missing", "v1")


def test_dummy_engine_page_splitting(tmp_path):
    source = tmp_path / "doc.txt"
    source.write_text("# First\nAlpha\n\nBeta\n# Second\n", encoding="utf-8")
    document = DummyParsingEngine().parse(source)

    assert [(p.page_number, p.title) for p in document.pages] == [(1, "First"), (2, "Second")]
    assert [(b.page_number, b.text) for b in document.blocks] == [
        (1, "First"),
        (1, "Alpha"),
        (1, "Beta"),
        (2, "Second"),
    ]
    assert [b.reading_order for b in document.blocks] == [0, 1, 2, 3]


def test_dummy_engine_empty_document(tmp_path):
    source = tmp_path / "empty.txt"
    source.write_text("\n\n", encoding="utf-8")
    document = DummyParsingEngine().parse(source)
    assert document.pages == []
    assert document.blocks == []


def test_record_parse_trigger_resets_job(tmp_path):
    repo = InMemoryParsingRepository()
    _seed(repo, tmp_path / "manual.txt")
    job_id = parse_job_id("pkg-1", "v1")
    repo.save_job(
        ParseJobRecord(
            id=job_id,
            package_id="pkg-1",
            version_id="v1",
            state=ParseJobState.FAILED,
            phase=ParseJobPhase.PAGE_PARSING,
            current_page=4,
            error_message="boom",
        )
    )

    record_parse_trigger(repo)(ParsingTriggerEvent("pkg-1", "v1"))

    job = repo.get_job(job_id)
    assert job.state == ParseJobState.QUEUED
    assert job.phase == ParseJobPhase.INITIALIZATION
    assert job.current_page == 0 and job.error_message is None
    assert repo.get_version("pkg-1", "v1").status == PackageStatus.QUEUED


def test_redis_event_publisher_sends_json():
    published = []

    class FakeRedis:
        def publish(self, channel, message):
            published.append((channel, message))
            return 1

    RedisEventPublisher(FakeRedis(), channel="events")(ParsingTriggerEvent("pkg-1", "v1"))

    channel, message = published[0]
    payload = json.loads(message)
    assert channel == "events"
    assert payload["type"] == "docs_parser.parsing.triggered"
    assert (payload["package"], payload["version"]) == ("pkg-1", "v1")


def test_redis_event_publisher_propagates_errors():
    class BrokenRedis:
        def publish(self, channel, message):
            raise RedisConnectionError("refused")

    with pytest.raises(RedisConnectionError):
        RedisEventPublisher(BrokenRedis())(ParsingTriggerEvent("pkg-1", "v1"))


def test_whoosh_indexer_scopes_versions(tmp_path):
    indexer = WhooshIndexer(tmp_path / "whoosh")

    def block(block_id, version_id, text, order):
        return BlockRecord(
            id=block_id,
            package_id="pkg-1",
            version_id=version_id,
            page_id=f"pkg-1:{version_id}:p1",
            page_number=1,
            block_type="paragraph",
            text=text,
            markup=None,
            level=0,
            reading_order=order,
            asset_id=None,
        )

    indexer.index_version("pkg-1", "v1", [block("b1", "v1", "The quick brown fox", 0)])
    indexer.index_version("pkg-1", "v2", [block("b2", "v2", "quick lazy dog", 0), block("b3", "v2", "other", 1)])

    assert [h["block_id"] for h in indexer.search("quick", package_id="pkg-1", version_id="v1")] == ["b1"]
    assert indexer.search("fox")[0]["page_number"] == 1
    assert len(indexer.search("quick", package_id="pkg-1")) == 2

    indexer.delete_version("pkg-1", "v2")
    assert [h["block_id"] for h in indexer.search("quick")] == ["b1"]


def test_versions_with_overlapping_ids_keep_separate_content(tmp_path):
    repo = SqlAlchemyParsingRepository(f"sqlite+pysqlite:///{tmp_path / 'overlap.db'}")
    first = tmp_path / "first.txt"
    first.write_text("# Alpha\nFirst package text.\n", encoding="utf-8")
    second = tmp_path / "second.txt"
    second.write_text("# Beta\nSecond package text.\n", encoding="utf-8")
    _seed(repo, first, package_id="a-b", version_id="c")
    _seed(repo, second, package_id="a", version_id="b-c")
    worker = _make_worker(tmp_path, repo=repo)

    for package_id, version_id in (("a-b", "c"), ("a", "b-c")):
        worker.initialize_package(package_id, version_id)
        worker.parse_pages(package_id, version_id)

    assert parse_job_id("a-b", "c") != parse_job_id("a", "b-c")
    assert [p.title for p in repo.list_pages_for_version("a-b", "c")] == ["Alpha"]
    assert [p.title for p in repo.list_pages_for_version("a", "b-c")] == ["Beta"]
    assert [b.text for b in repo.list_blocks_for_page("a-b", "c", 1)] == ["Alpha", "First package text."]
    assert [b.text for b in repo.list_blocks_for_page("a", "b-c", 1)] == ["Beta", "Second package text."]
    assert repo.get_job(parse_job_id("a-b", "c")).state == ParseJobState.COMPLETED
    assert repo.get_job(parse_job_id("a", "b-c")).state == ParseJobState.COMPLETED


def test_failed_publish_leaves_version_untouched(tmp_path):
    class BrokenRedis:
        def publish(self, channel, message):
            raise RedisConnectionError("refused")

    repo = InMemoryParsingRepository()
    _seed(repo, tmp_path / "manual.txt")
    events = build_trigger_dispatcher(repo, RedisEventPublisher(BrokenRedis()))
    config = WorkerConfig(database_url="sqlite://", storage_root=str(tmp_path / "data"), engine="dummy")
    ran = []
    queue = InlineJobQueue(config, worker_factory=lambda c: ran.append(c))

    with pytest.raises(RedisConnectionError):
        DOCXParse(events, queue).execute("pkg-1", "v1")

    assert ran == []
    assert repo.get_job(parse_job_id("pkg-1", "v1")) is None
    assert repo.get_version("pkg-1", "v1").status == PackageStatus.UPLOADED


def test_trigger_dispatcher_records_job_after_publishing(tmp_path):
    published = []

    class FakeRedis:
        def publish(self, channel, message):
            published.append(json.loads(message))
            return 1

    repo = InMemoryParsingRepository()
    _seed(repo, tmp_path / "manual.txt")
    build_trigger_dispatcher(repo, RedisEventPublisher(FakeRedis())).dispatch(ParsingTriggerEvent("pkg-1", "v1"))

    assert [(p["package"], p["version"]) for p in published] == [("pkg-1", "v1")]
    assert repo.get_job(parse_job_id("pkg-1", "v1")).state == ParseJobState.QUEUED
    assert repo.get_version("pkg-1", "v1").status == PackageStatus.QUEUED


def test_assets_are_written_and_linked_to_blocks(tmp_path):
    image = b"\x89PNG\r\n\x1a\nfake"

    class PictureEngine(DummyParsingEngine):
        def parse(self, path):
            return ParsedDocument(
                pages=[ParsedPage(1, "Figures")],
                blocks=[
                    ParsedBlock(id="b0", page_number=1, block_type="heading", text="Figures", reading_order=0, level=1),
                    ParsedBlock(
                        id="pic-1", page_number=1, block_type="picture", text="", reading_order=1, asset_id="pic-1"
                    ),
                ],
                assets=[ParsedAsset(id="pic-1", page_number=1, asset_type="picture", image_bytes=image)],
                engine_version="pictures",
            )

    source = tmp_path / "figures.txt"
    source.write_text("# Figures\n", encoding="utf-8")
    repo = InMemoryParsingRepository()
    _seed(repo, source)
    worker = _make_worker(tmp_path, repo=repo, engine=PictureEngine())

    worker.initialize_package("pkg-1", "v1")
    worker.parse_pages("pkg-1", "v1")

    (asset,) = repo.list_assets_for_version("pkg-1", "v1")
    picture_block = [b for b in repo.list_blocks_for_page("pkg-1", "v1", 1) if b.block_type == "picture"][0]
    assert asset.asset_type == "picture"
    assert picture_block.asset_id == asset.id
    assert asset.block_id == picture_block.id
    assert asset.file_path == str(worker.storage.paths.asset_path("pkg-1", "v1", "pic-1"))
    assert worker.storage.paths.asset_path("pkg-1", "v1", "pic-1").read_bytes() == image

    output = json.loads(worker.storage.paths.engine_output_path("pkg-1", "v1").read_text(encoding="utf-8"))
    assert output["assets"][0]["image_bytes"] == {"byte_length": len(image)}


def test_engine_failure_marks_job_and_version_failed(tmp_path):
    class CrashingEngine(DummyParsingEngine):
        def parse(self, path):
            raise RuntimeError("engine crashed")

    source = tmp_path / "manual.txt"
    source.write_text(SAMPLE_TEXT, encoding="utf-8")
    repo = InMemoryParsingRepository()
    _seed(repo, source)
    worker = _make_worker(tmp_path, repo=repo, engine=CrashingEngine())

    worker.initialize_package("pkg-1", "v1")
    with pytest.raises(RuntimeError, match="engine crashed"):
        worker.parse_pages("pkg-1", "v1")

    job = repo.get_job(parse_job_id("pkg-1", "v1"))
    version = repo.get_version("pkg-1", "v1")
    assert job.state == ParseJobState.FAILED
    assert job.phase == ParseJobPhase.PAGE_PARSING
    assert job.error_message == "engine crashed"
    assert version.status == PackageStatus.FAILED
    assert version.error_message == "engine crashed"
    assert repo.list_pages_for_version("pkg-1", "v1") == []


def test_parse_resumes_after_current_page(tmp_path):
    source = tmp_path / "manual.txt"
    source.write_text(SAMPLE_TEXT, encoding="utf-8")
    repo = InMemoryParsingRepository()
    _seed(repo, source)
    worker = _make_worker(tmp_path, repo=repo)

    worker.initialize_package("pkg-1", "v1")
    repo.update_job_state_phase(parse_job_id("pkg-1", "v1"), current_page=2)
    worker.parse_pages("pkg-1", "v1")

    assert [p.page_number for p in repo.list_pages_for_version("pkg-1", "v1")] == [3]
    assert [b.text for b in repo.list_blocks_for_page("pkg-1", "v1", 3)] == ["Usage", "Open the application."]
    assert repo.get_job(parse_job_id("pkg-1", "v1")).current_page == 3
    assert repo.get_version("pkg-1", "v1").page_count == 3
