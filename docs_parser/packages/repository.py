from __future__ import annotations

from copy import deepcopy
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import Column, DateTime, Enum, Integer, String, Text, create_engine, delete, select, update
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .models import (
    AssetRecord,
    BlockRecord,
    PackageRecord,
    PackageStatus,
    PageRecord,
    ParseJobPhase,
    ParseJobRecord,
    ParseJobState,
    VersionRecord,
    utcnow,
)

Base = declarative_base()


class PackageModel(Base):
    __tablename__ = "packages"
    id = Column(String, primary_key=True)
    title = Column(String)
    source = Column(String)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class VersionModel(Base):
    __tablename__ = "package_versions"
    package_id = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    original_file_path = Column(String)
    status = Column(Enum(PackageStatus))
    file_md5 = Column(String)
    declared_page_count = Column(Integer)
    page_count = Column(Integer)
    engine_version = Column(String)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class ParseJobModel(Base):
    __tablename__ = "parse_jobs"
    id = Column(String, primary_key=True)
    package_id = Column(String, index=True)
    version_id = Column(String, index=True)
    state = Column(Enum(ParseJobState))
    phase = Column(Enum(ParseJobPhase))
    current_page = Column(Integer)
    total_pages = Column(Integer)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class PageModel(Base):
    __tablename__ = "pages"
    id = Column(String, primary_key=True)
    package_id = Column(String, index=True)
    version_id = Column(String, index=True)
    page_number = Column(Integer)
    title = Column(String)
    parse_status = Column(String)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class BlockModel(Base):
    __tablename__ = "blocks"
    id = Column(String, primary_key=True)
    package_id = Column(String, index=True)
    version_id = Column(String, index=True)
    page_id = Column(String, index=True)
    page_number = Column(Integer)
    block_type = Column(String)
    text = Column(Text)
    markup = Column(Text)
    level = Column(Integer)
    reading_order = Column(Integer)
    asset_id = Column(String)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class AssetModel(Base):
    __tablename__ = "assets"
    id = Column(String, primary_key=True)
    package_id = Column(String, index=True)
    version_id = Column(String, index=True)
    page_id = Column(String)
    asset_type = Column(String)
    file_path = Column(String)
    block_id = Column(String)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class ParsingRepository:
    """
    Abstract persistence boundary for package parsing. Implementations can
    target SQLite/Postgres or any other backing store. All methods are
    synchronous; RQ workers run one job per process.
    """

    # Package operations
    def get_package(self, package_id: str) -> Optional[PackageRecord]:
        raise NotImplementedError

    def save_package(self, package: PackageRecord) -> None:
        raise NotImplementedError

    def list_packages(self) -> List[PackageRecord]:
        raise NotImplementedError

    # Version operations
    def get_version(self, package_id: str, version_id: str) -> Optional[VersionRecord]:
        raise NotImplementedError

    def save_version(self, version: VersionRecord) -> None:
        raise NotImplementedError

    def list_versions(self, package_id: str) -> List[VersionRecord]:
        raise NotImplementedError

    def update_version(
        self,
        package_id: str,
        version_id: str,
        status: Optional[PackageStatus] = None,
        file_md5: Optional[str] = None,
        declared_page_count: Optional[int] = None,
        page_count: Optional[int] = None,
        engine_version: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    # Parse job operations
    def get_job(self, job_id: str) -> Optional[ParseJobRecord]:
        raise NotImplementedError

    def save_job(self, job: ParseJobRecord) -> None:
        raise NotImplementedError

    def update_job_state_phase(
        self,
        job_id: str,
        state: Optional[ParseJobState] = None,
        phase: Optional[ParseJobPhase] = None,
        current_page: Optional[int] = None,
        total_pages: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    # Content ingestion
    def upsert_pages(self, pages: Iterable[PageRecord]) -> None:
        raise NotImplementedError

    def upsert_blocks(self, blocks: Iterable[BlockRecord]) -> None:
        raise NotImplementedError

    def upsert_assets(self, assets: Iterable[AssetRecord]) -> None:
        raise NotImplementedError

    def get_page(self, package_id: str, version_id: str, page_number: int) -> Optional[PageRecord]:
        raise NotImplementedError

    def list_pages_for_version(self, package_id: str, version_id: str) -> List[PageRecord]:
        raise NotImplementedError

    def list_blocks_for_version(self, package_id: str, version_id: str) -> List[BlockRecord]:
        raise NotImplementedError

    def list_blocks_for_page(self, package_id: str, version_id: str, page_number: int) -> List[BlockRecord]:
        raise NotImplementedError

    def list_assets_for_version(self, package_id: str, version_id: str) -> List[AssetRecord]:
        raise NotImplementedError

    def delete_content_for_version(self, package_id: str, version_id: str) -> None:
        raise NotImplementedError


def _job_updates(job, state, phase, current_page, total_pages, error_message) -> None:
    if state is not None:
        job.state = state
    if phase is not None:
        job.phase = phase
    if current_page is not None:
        job.current_page = current_page
    if total_pages is not None:
        job.total_pages = total_pages
    if error_message is not None:
        job.error_message = error_message
    job.updated_at = utcnow()


class InMemoryParsingRepository(ParsingRepository):
    """
    Simple in-memory store for local runs and tests. It mirrors the DB shape
    and keeps copies of dataclasses to avoid cross-mutation between calls.
    """

    def __init__(self):
        self.packages: Dict[str, PackageRecord] = {}
        self.versions: Dict[Tuple[str, str], VersionRecord] = {}
        self.jobs: Dict[str, ParseJobRecord] = {}
        self.pages: Dict[str, PageRecord] = {}
        self.blocks: Dict[str, BlockRecord] = {}
        self.assets: Dict[str, AssetRecord] = {}

    def _clone(self, obj):
        return deepcopy(obj)

    def get_package(self, package_id: str) -> Optional[PackageRecord]:
        package = self.packages.get(package_id)
        return self._clone(package) if package else None

    def save_package(self, package: PackageRecord) -> None:
        self.packages[package.id] = self._clone(package)

    def list_packages(self) -> List[PackageRecord]:
        return [self._clone(p) for p in self.packages.values()]

    def get_version(self, package_id: str, version_id: str) -> Optional[VersionRecord]:
        version = self.versions.get((package_id, version_id))
        return self._clone(version) if version else None

    def save_version(self, version: VersionRecord) -> None:
        self.versions[(version.package_id, version.id)] = self._clone(version)

    def list_versions(self, package_id: str) -> List[VersionRecord]:
        return [self._clone(v) for (pkg, _), v in self.versions.items() if pkg == package_id]

    def update_version(
        self,
        package_id: str,
        version_id: str,
        status: Optional[PackageStatus] = None,
        file_md5: Optional[str] = None,
        declared_page_count: Optional[int] = None,
        page_count: Optional[int] = None,
        engine_version: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        version = self.versions.get((package_id, version_id))
        if not version:
            return
        if status is not None:
            version.status = status
        if file_md5 is not None:
            version.file_md5 = file_md5
        if declared_page_count is not None:
            version.declared_page_count = declared_page_count
        if page_count is not None:
            version.page_count = page_count
        if engine_version is not None:
            version.engine_version = engine_version
        if error_message is not None:
            version.error_message = error_message
        version.updated_at = utcnow()

    def get_job(self, job_id: str) -> Optional[ParseJobRecord]:
        job = self.jobs.get(job_id)
        return self._clone(job) if job else None

    def save_job(self, job: ParseJobRecord) -> None:
        self.jobs[job.id] = self._clone(job)

    def update_job_state_phase(
        self,
        job_id: str,
        state: Optional[ParseJobState] = None,
        phase: Optional[ParseJobPhase] = None,
        current_page: Optional[int] = None,
        total_pages: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        job = self.jobs.get(job_id)
        if not job:
            return
        _job_updates(job, state, phase, current_page, total_pages, error_message)

    def upsert_pages(self, pages: Iterable[PageRecord]) -> None:
        for page in pages:
            self.pages[page.id] = self._clone(page)

    def upsert_blocks(self, blocks: Iterable[BlockRecord]) -> None:
        for block in blocks:
            self.blocks[block.id] = self._clone(block)

    def upsert_assets(self, assets: Iterable[AssetRecord]) -> None:
        for asset in assets:
            self.assets[asset.id] = self._clone(asset)

    def _owned(self, record, package_id: str, version_id: str) -> bool:
        return record.package_id == package_id and record.version_id == version_id

    def get_page(self, package_id: str, version_id: str, page_number: int) -> Optional[PageRecord]:
        for page in self.pages.values():
            if self._owned(page, package_id, version_id) and page.page_number == page_number:
                return self._clone(page)
        return None

    def list_pages_for_version(self, package_id: str, version_id: str) -> List[PageRecord]:
        pages = [self._clone(p) for p in self.pages.values() if self._owned(p, package_id, version_id)]
        return sorted(pages, key=lambda p: p.page_number)

    def list_blocks_for_version(self, package_id: str, version_id: str) -> List[BlockRecord]:
        blocks = [self._clone(b) for b in self.blocks.values() if self._owned(b, package_id, version_id)]
        return sorted(blocks, key=lambda b: b.reading_order)

    def list_blocks_for_page(self, package_id: str, version_id: str, page_number: int) -> List[BlockRecord]:
        page = self.get_page(package_id, version_id, page_number)
        if not page:
            raise ValueError(f"Page {page_number} not found for package {package_id} version {version_id}")
        blocks = [self._clone(b) for b in self.blocks.values() if b.page_id == page.id]
        return sorted(blocks, key=lambda b: b.reading_order)

    def list_assets_for_version(self, package_id: str, version_id: str) -> List[AssetRecord]:
        return [self._clone(a) for a in self.assets.values() if self._owned(a, package_id, version_id)]

    def delete_content_for_version(self, package_id: str, version_id: str) -> None:
        for store in (self.pages, self.blocks, self.assets):
            for key in [k for k, v in store.items() if self._owned(v, package_id, version_id)]:
                del store[key]


class SqlAlchemyParsingRepository(ParsingRepository):
    """
    SQL-backed repository using SQLAlchemy. Works with SQLite/Postgres URLs.
    """

    def __init__(self, database_url: str):
        self.engine = create_engine(database_url, future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def _session(self) -> Session:
        return self.SessionLocal()

    # region Package operations
    def _to_package(self, model: PackageModel) -> PackageRecord:
        return PackageRecord(
            id=model.id,
            title=model.title,
            source=model.source,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def get_package(self, package_id: str) -> Optional[PackageRecord]:
        with self._session() as session:
            model = session.get(PackageModel, package_id)
            return self._to_package(model) if model else None

    def save_package(self, package: PackageRecord) -> None:
        with self._session() as session:
            session.merge(
                PackageModel(
                    id=package.id,
                    title=package.title,
                    source=package.source,
                    created_at=package.created_at,
                    updated_at=package.updated_at,
                )
            )
            session.commit()

    def list_packages(self) -> List[PackageRecord]:
        with self._session() as session:
            models = session.execute(select(PackageModel).order_by(PackageModel.created_at)).scalars().all()
            return [self._to_package(m) for m in models]

    # endregion

    # region Version operations
    def _to_version(self, model: VersionModel) -> VersionRecord:
        return VersionRecord(
            id=model.id,
            package_id=model.package_id,
            original_file_path=model.original_file_path,
            status=model.status,
            file_md5=model.file_md5,
            declared_page_count=model.declared_page_count,
            page_count=model.page_count,
            engine_version=model.engine_version,
            error_message=model.error_message,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def get_version(self, package_id: str, version_id: str) -> Optional[VersionRecord]:
        with self._session() as session:
            model = session.get(VersionModel, (package_id, version_id))
            return self._to_version(model) if model else None

    def save_version(self, version: VersionRecord) -> None:
        with self._session() as session:
            session.merge(
                VersionModel(
                    package_id=version.package_id,
                    id=version.id,
                    original_file_path=version.original_file_path,
                    status=version.status,
                    file_md5=version.file_md5,
                    declared_page_count=version.declared_page_count,
                    page_count=version.page_count,
                    engine_version=version.engine_version,
                    error_message=version.error_message,
                    created_at=version.created_at,
                    updated_at=version.updated_at,
                )
            )
            session.commit()

    def list_versions(self, package_id: str) -> List[VersionRecord]:
        with self._session() as session:
            stmt = select(VersionModel).where(VersionModel.package_id == package_id).order_by(VersionModel.created_at)
            return [self._to_version(m) for m in session.execute(stmt).scalars().all()]

    def update_version(
        self,
        package_id: str,
        version_id: str,
        status: Optional[PackageStatus] = None,
        file_md5: Optional[str] = None,
        declared_page_count: Optional[int] = None,
        page_count: Optional[int] = None,
        engine_version: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        values = {}
        if status is not None:
            values["status"] = status
        if file_md5 is not None:
            values["file_md5"] = file_md5
        if declared_page_count is not None:
            values["declared_page_count"] = declared_page_count
        if page_count is not None:
            values["page_count"] = page_count
        if engine_version is not None:
            values["engine_version"] = engine_version
        if error_message is not None:
            values["error_message"] = error_message
        if not values:
            return
        values["updated_at"] = utcnow()
        with self._session() as session:
            stmt = (
                update(VersionModel)
                .where(VersionModel.package_id == package_id, VersionModel.id == version_id)
                .values(**values)
            )
            session.execute(stmt)
            session.commit()

    # endregion

    # region Job operations
    def get_job(self, job_id: str) -> Optional[ParseJobRecord]:
        with self._session() as session:
            model = session.get(ParseJobModel, job_id)
            if not model:
                return None
            return ParseJobRecord(
                id=model.id,
                package_id=model.package_id,
                version_id=model.version_id,
                state=model.state,
                phase=model.phase,
                current_page=model.current_page or 0,
                total_pages=model.total_pages,
                error_message=model.error_message,
                started_at=model.started_at,
                updated_at=model.updated_at,
            )

    def save_job(self, job: ParseJobRecord) -> None:
        with self._session() as session:
            session.merge(
                ParseJobModel(
                    id=job.id,
                    package_id=job.package_id,
                    version_id=job.version_id,
                    state=job.state,
                    phase=job.phase,
                    current_page=job.current_page,
                    total_pages=job.total_pages,
                    error_message=job.error_message,
                    started_at=job.started_at,
                    updated_at=job.updated_at,
                )
            )
            session.commit()

    def update_job_state_phase(
        self,
        job_id: str,
        state: Optional[ParseJobState] = None,
        phase: Optional[ParseJobPhase] = None,
        current_page: Optional[int] = None,
        total_pages: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with self._session() as session:
            stmt = update(ParseJobModel).where(ParseJobModel.id == job_id)
            values = {}
            if state is not None:
                values["state"] = state
            if phase is not None:
                values["phase"] = phase
            if current_page is not None:
                values["current_page"] = current_page
            if total_pages is not None:
                values["total_pages"] = total_pages
            if error_message is not None:
                values["error_message"] = error_message
            if values:
                values["updated_at"] = utcnow()
                session.execute(stmt.values(**values))
                session.commit()

    # endregion

    # region content ingestion
    def upsert_pages(self, pages: Iterable[PageRecord]) -> None:
        with self._session() as session:
            for page in pages:
                session.merge(
                    PageModel(
                        id=page.id,
                        package_id=page.package_id,
                        version_id=page.version_id,
                        page_number=page.page_number,
                        title=page.title,
                        parse_status=page.parse_status,
                        created_at=page.created_at,
                        updated_at=page.updated_at,
                    )
                )
            session.commit()

    def upsert_blocks(self, blocks: Iterable[BlockRecord]) -> None:
        with self._session() as session:
            for block in blocks:
                session.merge(
                    BlockModel(
                        id=block.id,
                        package_id=block.package_id,
                        version_id=block.version_id,
                        page_id=block.page_id,
                        page_number=block.page_number,
                        block_type=block.block_type,
                        text=block.text,
                        markup=block.markup,
                        level=block.level,
                        reading_order=block.reading_order,
                        asset_id=block.asset_id,
                        created_at=block.created_at,
                        updated_at=block.updated_at,
                    )
                )
            session.commit()

    def upsert_assets(self, assets: Iterable[AssetRecord]) -> None:
        with self._session() as session:
            for asset in assets:
                session.merge(
                    AssetModel(
                        id=asset.id,
                        package_id=asset.package_id,
                        version_id=asset.version_id,
                        page_id=asset.page_id,
                        asset_type=asset.asset_type,
                        file_path=asset.file_path,
                        block_id=asset.block_id,
                        created_at=asset.created_at,
                        updated_at=asset.updated_at,
                    )
                )
            session.commit()

    def _to_page(self, m: PageModel) -> PageRecord:
        return PageRecord(
            id=m.id,
            package_id=m.package_id,
            version_id=m.version_id,
            page_number=m.page_number,
            title=m.title,
            parse_status=m.parse_status,
            created_at=m.created_at,
            updated_at=m.updated_at,
        )

    def _to_block(self, m: BlockModel) -> BlockRecord:
        return BlockRecord(
            id=m.id,
            package_id=m.package_id,
            version_id=m.version_id,
            page_id=m.page_id,
            page_number=m.page_number or 0,
            block_type=m.block_type,
            text=m.text,
            markup=m.markup,
            level=m.level or 0,
            reading_order=m.reading_order or 0,
            asset_id=m.asset_id,
            created_at=m.created_at,
            updated_at=m.updated_at,
        )

    def get_page(self, package_id: str, version_id: str, page_number: int) -> Optional[PageRecord]:
        with self._session() as session:
            stmt = select(PageModel).where(
                PageModel.package_id == package_id,
                PageModel.version_id == version_id,
                PageModel.page_number == page_number,
            )
            model = session.execute(stmt).scalars().first()
            return self._to_page(model) if model else None

    def list_pages_for_version(self, package_id: str, version_id: str) -> List[PageRecord]:
        with self._session() as session:
            stmt = (
                select(PageModel)
                .where(PageModel.package_id == package_id, PageModel.version_id == version_id)
                .order_by(PageModel.page_number)
            )
            return [self._to_page(m) for m in session.execute(stmt).scalars().all()]

    def list_blocks_for_version(self, package_id: str, version_id: str) -> List[BlockRecord]:
        with self._session() as session:
            stmt = (
                select(BlockModel)
                .where(BlockModel.package_id == package_id, BlockModel.version_id == version_id)
                .order_by(BlockModel.reading_order)
            )
            return [self._to_block(m) for m in session.execute(stmt).scalars().all()]

    def list_blocks_for_page(self, package_id: str, version_id: str, page_number: int) -> List[BlockRecord]:
        page = self.get_page(package_id, version_id, page_number)
        if not page:
            raise ValueError(f"Page {page_number} not found for package {package_id} version {version_id}")
        with self._session() as session:
            stmt = select(BlockModel).where(BlockModel.page_id == page.id).order_by(BlockModel.reading_order)
            return [self._to_block(m) for m in session.execute(stmt).scalars().all()]

    def list_assets_for_version(self, package_id: str, version_id: str) -> List[AssetRecord]:
        with self._session() as session:
            stmt = select(AssetModel).where(AssetModel.package_id == package_id, AssetModel.version_id == version_id)
            return [
                AssetRecord(
                    id=m.id,
                    package_id=m.package_id,
                    version_id=m.version_id,
                    page_id=m.page_id,
                    asset_type=m.asset_type,
                    file_path=m.file_path,
                    block_id=m.block_id,
                    created_at=m.created_at,
                    updated_at=m.updated_at,
                )
                for m in session.execute(stmt).scalars().all()
            ]

    def delete_content_for_version(self, package_id: str, version_id: str) -> None:
        with self._session() as session:
            for model in (AssetModel, BlockModel, PageModel):
                session.execute(delete(model).where(model.package_id == package_id, model.version_id == version_id))
            session.commit()

    # endregion
