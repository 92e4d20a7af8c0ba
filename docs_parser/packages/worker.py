from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Dict, List, Tuple

from .engine import ParsingEngine
from .indexing import Indexer
from .models import (
    AssetRecord,
    BlockRecord,
    PackageStatus,
    PageRecord,
    ParseJobPhase,
    ParseJobRecord,
    ParseJobState,
    ParsedAsset,
    ParsedBlock,
    ParsedDocument,
    VersionRecord,
    parse_job_id,
    utcnow,
    version_key,
)
from .repository import ParsingRepository
from .storage import LocalPackageStorage

logger = logging.getLogger(__name__)

PARSEABLE_STATUSES = (PackageStatus.INITIALIZED, PackageStatus.PARSING, PackageStatus.PARSED)


def file_md5(path: Path) -> str:
    digest = hashlib.md5()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ParsingWorker:
    """
    Runs the two steps of a package parse chain:

    * initialize_package: validate and store the source document, reset any
      previously ingested content for the version.
    * parse_pages: engine parse -> page/block/asset ingestion -> indexing.

    The worker is stateless and relies on the repository for job/version state
    and on the storage adapter for filesystem operations. A failing step marks
    the job and version failed, then re-raises so RQ records the failure and
    leaves the rest of the chain unscheduled.
    """

    def __init__(
        self,
        repository: ParsingRepository,
        storage: LocalPackageStorage,
        engine: ParsingEngine,
        indexer: Indexer,
        batch_size: int = 25,
        persist_engine_output: bool = True,
    ):
        self.repo = repository
        self.storage = storage
        self.engine = engine
        self.indexer = indexer
        self.batch_size = batch_size
        self.persist_engine_output = persist_engine_output

    def initialize_package(self, package_id: str, version_id: str) -> None:
        version = self._require_version(package_id, version_id)
        job_id = self._ensure_job(package_id, version_id)
        logger.info("Initializing package %s version %s", package_id, version_id)
        try:
            self.repo.update_job_state_phase(job_id, state=ParseJobState.RUNNING, phase=ParseJobPhase.INITIALIZATION)
            self.repo.update_version(package_id, version_id, status=PackageStatus.INITIALIZING, error_message="")

            source = self._locate_document(version)
            self.engine.validate(source)
            stored = self.storage.save_original_docx(package_id, version_id, source)
            declared_pages = self.engine.declared_page_count(stored)

            # Re-parsing a version starts from a clean slate.
            self.repo.delete_content_for_version(package_id, version_id)
            self.storage.clear_assets(package_id, version_id)
            self.indexer.delete_version(package_id, version_id)

            self.repo.update_version(
                package_id,
                version_id,
                status=PackageStatus.INITIALIZED,
                file_md5=file_md5(stored),
                declared_page_count=declared_pages,
                engine_version=self.engine.engine_version,
            )
            self.repo.update_job_state_phase(job_id, current_page=0, total_pages=declared_pages)
        except Exception as exc:  # noqa: BLE001
            self._fail(job_id, package_id, version_id, exc)
            raise
        logger.info("Initialized package %s version %s (declared pages: %s)", package_id, version_id, declared_pages)

    def parse_pages(self, package_id: str, version_id: str) -> None:
        version = self._require_version(package_id, version_id)
        job_id = self._ensure_job(package_id, version_id)
        job = self.repo.get_job(job_id)
        logger.info("Parsing pages for package %s version %s", package_id, version_id)
        try:
            if version.status not in PARSEABLE_STATUSES:
                raise ValueError(
                    f"Package {package_id} version {version_id} is not initialized (status: {version.status.value})"
                )
            self.repo.update_job_state_phase(job_id, state=ParseJobState.RUNNING, phase=ParseJobPhase.PAGE_PARSING)
            self.repo.update_version(package_id, version_id, status=PackageStatus.PARSING)

            source = self._locate_document(version)
            document = self.engine.parse(source)
            self.repo.update_job_state_phase(job_id, total_pages=len(document.pages))

            if self.persist_engine_output:
                self.storage.write_engine_output(
                    package_id, version_id, json.loads(json.dumps(document, default=self._json_default))
                )

            self._ingest_document(job_id, package_id, version_id, document, resume_from_page=job.current_page)

            self.repo.update_job_state_phase(job_id, phase=ParseJobPhase.INDEXING)
            blocks = self.repo.list_blocks_for_version(package_id, version_id)
            self.indexer.index_version(package_id, version_id, blocks)

            self.repo.update_job_state_phase(job_id, state=ParseJobState.COMPLETED)
            self.repo.update_version(
                package_id,
                version_id,
                status=PackageStatus.PARSED,
                page_count=len(document.pages),
                engine_version=document.engine_version,
            )
        except Exception as exc:  # noqa: BLE001
            self._fail(job_id, package_id, version_id, exc)
            raise
        logger.info("Parsed %d pages for package %s version %s", len(document.pages), package_id, version_id)

    def _require_version(self, package_id: str, version_id: str) -> VersionRecord:
        if not self.repo.get_package(package_id):
            raise ValueError(f"Package {package_id} not found")
        version = self.repo.get_version(package_id, version_id)
        if not version:
            raise ValueError(f"Version {version_id} not found for package {package_id}")
        return version

    def _ensure_job(self, package_id: str, version_id: str) -> str:
        job_id = parse_job_id(package_id, version_id)
        if not self.repo.get_job(job_id):
            self.repo.save_job(
                ParseJobRecord(
                    id=job_id,
                    package_id=package_id,
                    version_id=version_id,
                    state=ParseJobState.QUEUED,
                    phase=ParseJobPhase.INITIALIZATION,
                    started_at=utcnow(),
                )
            )
        return job_id

    def _fail(self, job_id: str, package_id: str, version_id: str, exc: Exception) -> None:
        logger.exception("Parse step failed for package %s version %s", package_id, version_id)
        message = str(exc) or exc.__class__.__name__
        self.repo.update_job_state_phase(job_id, state=ParseJobState.FAILED, error_message=message)
        self.repo.update_version(package_id, version_id, status=PackageStatus.FAILED, error_message=message)

    def _locate_document(self, version: VersionRecord) -> Path:
        stored = self.storage.find_original_docx(version.package_id, version.id)
        candidate = stored if stored else Path(version.original_file_path)
        if not candidate.exists():
            raise FileNotFoundError(f"Document not found at {candidate}")
        return candidate

    def _json_default(self, obj):
        if isinstance(obj, bytes):
            return {"byte_length": len(obj)}
        if hasattr(obj, "__dict__"):
            return obj.__dict__
        return str(obj)

    def _ingest_document(
        self,
        job_id: str,
        package_id: str,
        version_id: str,
        document: ParsedDocument,
        resume_from_page: int = 0,
    ) -> None:
        pages_sorted = sorted(document.pages, key=lambda p: p.page_number)
        prefix = version_key(package_id, version_id)

        batch_pages: List[PageRecord] = []
        batch_blocks: List[BlockRecord] = []
        batch_assets: List[AssetRecord] = []

        for page in pages_sorted:
            if page.page_number <= resume_from_page:
                continue
            page_id = f"{prefix}:p{page.page_number}"
            batch_pages.append(
                PageRecord(
                    id=page_id,
                    package_id=package_id,
                    version_id=version_id,
                    page_number=page.page_number,
                    title=page.title,
                    parse_status="parsed",
                )
            )

            related_blocks = [b for b in document.blocks if b.page_number == page.page_number]
            block_records, asset_owner_map = self._map_blocks(prefix, package_id, version_id, page_id, related_blocks)
            batch_blocks.extend(block_records)

            related_assets = [a for a in document.assets if a.page_number == page.page_number]
            batch_assets.extend(
                self._map_assets(prefix, package_id, version_id, page_id, related_assets, asset_owner_map)
            )

            if len(batch_pages) >= self.batch_size:
                self._flush(job_id, batch_pages, batch_blocks, batch_assets)
                batch_pages, batch_blocks, batch_assets = [], [], []

        if batch_pages:
            self._flush(job_id, batch_pages, batch_blocks, batch_assets)

    def _flush(
        self,
        job_id: str,
        pages: List[PageRecord],
        blocks: List[BlockRecord],
        assets: List[AssetRecord],
    ) -> None:
        self.repo.upsert_pages(pages)
        self.repo.upsert_blocks(blocks)
        self.repo.upsert_assets(assets)
        self.repo.update_job_state_phase(job_id, current_page=pages[-1].page_number)

    def _map_blocks(
        self,
        prefix: str,
        package_id: str,
        version_id: str,
        page_id: str,
        blocks: List[ParsedBlock],
    ) -> Tuple[List[BlockRecord], Dict[str, str]]:
        records: List[BlockRecord] = []
        asset_owner_map: Dict[str, str] = {}
        for block in blocks:
            block_id = f"{prefix}:blk:{block.id}"
            asset_ref = f"{prefix}:asset:{block.asset_id}" if block.asset_id else None
            if asset_ref:
                asset_owner_map[asset_ref] = block_id
            records.append(
                BlockRecord(
                    id=block_id,
                    package_id=package_id,
                    version_id=version_id,
                    page_id=page_id,
                    page_number=block.page_number,
                    block_type=block.block_type,
                    text=block.text,
                    markup=block.markup,
                    level=block.level,
                    reading_order=block.reading_order,
                    asset_id=asset_ref,
                )
            )
        return records, asset_owner_map

    def _map_assets(
        self,
        prefix: str,
        package_id: str,
        version_id: str,
        page_id: str,
        assets: List[ParsedAsset],
        asset_owner_map: Dict[str, str],
    ) -> List[AssetRecord]:
        records: List[AssetRecord] = []
        for asset in assets:
            asset_id = f"{prefix}:asset:{asset.id}"
            file_path = ""
            if asset.image_bytes:
                file_path = str(self.storage.write_asset_image(package_id, version_id, asset.id, asset.image_bytes))
            elif asset.image_path:
                file_path = str(asset.image_path)
            records.append(
                AssetRecord(
                    id=asset_id,
                    package_id=package_id,
                    version_id=version_id,
                    page_id=page_id,
                    asset_type=asset.asset_type,
                    file_path=file_path,
                    block_id=asset_owner_map.get(asset_id),
                )
            )
        return records
