from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, ClassVar, List, Optional, Protocol, Sequence, Tuple

from redis import Redis
from rq import Queue, Worker

from .engine import DummyParsingEngine, ParsingEngine
from .indexing import Indexer, NoopIndexer, WhooshIndexer
from .repository import SqlAlchemyParsingRepository
from .models import version_key
from .storage import LocalPackageStorage, StoragePaths
from .worker import ParsingWorker

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class WorkerConfig:
    database_url: str
    storage_root: str
    whoosh_index_dir: Optional[str] = None
    engine: str = "docling"
    engine_version: str = "docling-latest"
    batch_size: int = 25
    persist_engine_output: bool = True

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite+pysqlite:///./data/docs_parser.db"),
            storage_root=os.getenv("PACKAGE_STORAGE_ROOT", "./data"),
            whoosh_index_dir=os.getenv("WHOOSH_DIR", "./data/whoosh") or None,
            engine=os.getenv("PARSE_ENGINE", "docling"),
            engine_version=os.getenv("ENGINE_VERSION", "docling-latest"),
            batch_size=int(os.getenv("WORKER_BATCH_SIZE", "25")),
            persist_engine_output=_env_flag("PERSIST_ENGINE_OUTPUT", "true"),
        )


def build_engine(name: str, engine_version: str = "docling-latest") -> ParsingEngine:
    if name == "dummy":
        return DummyParsingEngine()
    if name == "docling":
        # Docling pulls in heavy model dependencies; only import it when selected.
        from .docling_engine import DoclingParsingEngine

        return DoclingParsingEngine(engine_version=engine_version)
    raise ValueError(f"Unknown parsing engine: {name}")


def build_indexer(config: WorkerConfig) -> Indexer:
    if not config.whoosh_index_dir:
        return NoopIndexer()
    return WhooshIndexer(Path(config.whoosh_index_dir))


def build_worker(config: WorkerConfig) -> ParsingWorker:
    return ParsingWorker(
        repository=SqlAlchemyParsingRepository(config.database_url),
        storage=LocalPackageStorage(StoragePaths(Path(config.storage_root))),
        engine=build_engine(config.engine, config.engine_version),
        indexer=build_indexer(config),
        batch_size=config.batch_size,
        persist_engine_output=config.persist_engine_output,
    )


def run_package_initialization(package: str, version: str, config: WorkerConfig) -> None:
    """
    RQ task entrypoint for the first link of the parse chain.
    """
    PackageInitializationJob(package, version).run(build_worker(config))


def run_page_parser(package: str, version: str, config: WorkerConfig) -> None:
    """
    RQ task entrypoint for the page parsing link of the parse chain.
    """
    PageParserJob(package, version).run(build_worker(config))


@dataclass(frozen=True)
class JobDescriptor:
    package: str
    version: str

    kind: ClassVar[str] = "job"

    @property
    def job_id(self) -> str:
        # RQ only accepts [A-Za-z0-9_-] in job ids.
        digest = hashlib.sha1(version_key(self.package, self.version).encode("utf-8")).hexdigest()[:20]
        return f"{self.kind}-{digest}"

    @property
    def description(self) -> str:
        return f"{self.kind} package={self.package} version={self.version}"

    def entrypoint(self) -> Callable[[str, str, WorkerConfig], None]:
        raise NotImplementedError

    def run(self, worker: ParsingWorker) -> None:
        raise NotImplementedError

    def with_chain(self, chained: Sequence["JobDescriptor"]) -> "JobChain":
        return JobChain((self, *chained))


@dataclass(frozen=True)
class PackageInitializationJob(JobDescriptor):
    kind: ClassVar[str] = "package-init"

    def entrypoint(self):
        return run_package_initialization

    def run(self, worker: ParsingWorker) -> None:
        worker.initialize_package(self.package, self.version)


@dataclass(frozen=True)
class PageParserJob(JobDescriptor):
    kind: ClassVar[str] = "page-parser"

    def entrypoint(self):
        return run_page_parser

    def run(self, worker: ParsingWorker) -> None:
        worker.parse_pages(self.package, self.version)


class JobQueue(Protocol):
    def dispatch_chain(self, jobs: Sequence[JobDescriptor]) -> List[Any]:
        ...


@dataclass(frozen=True)
class JobChain:
    """
    Ordered jobs submitted as one unit; each link runs only after the
    previous one finished successfully.
    """

    jobs: Tuple[JobDescriptor, ...]

    def dispatch(self, queue: JobQueue) -> List[Any]:
        return queue.dispatch_chain(self.jobs)


class RQJobQueue:
    """
    Redis-backed job queue using RQ. Chains are expressed with RQ job
    dependencies; workers can be started by calling `work()` in a dedicated
    process.
    """

    def __init__(
        self,
        config: WorkerConfig,
        redis_url: str = "redis://localhost:6379/0",
        queue_name: str = "parse-jobs",
        job_timeout: int = 1800,
        queue: Optional[Queue] = None,
    ):
        self.config = config
        self.job_timeout = job_timeout
        self.redis = Redis.from_url(redis_url)
        self.queue = queue if queue is not None else Queue(queue_name, connection=self.redis)

    def dispatch_chain(self, jobs: Sequence[JobDescriptor]) -> List[Any]:
        """
        Enqueue every job of the chain. RQ job ids are derived from the job
        kind, package and version so re-triggering a version reuses them.
        """
        enqueued = []
        previous = None
        for job in jobs:
            rq_job = self.queue.enqueue(
                job.entrypoint(),
                job.package,
                job.version,
                self.config,
                job_id=job.job_id,
                depends_on=previous,
                description=job.description,
                job_timeout=self.job_timeout,
            )
            logger.info("Enqueued %s (depends on %s)", job.job_id, getattr(previous, "id", None))
            enqueued.append(rq_job)
            previous = rq_job
        return enqueued

    def work(self, burst: bool = False):
        worker = Worker([self.queue], connection=self.redis)
        worker.work(with_scheduler=True, burst=burst)


class InlineJobQueue:
    """
    Runs chains synchronously in the calling process. The first failing job
    stops the chain and its exception propagates.
    """

    def __init__(self, config: WorkerConfig, worker_factory: Callable[[WorkerConfig], ParsingWorker] = build_worker):
        self.config = config
        self.worker_factory = worker_factory

    def dispatch_chain(self, jobs: Sequence[JobDescriptor]) -> List[Any]:
        completed = []
        for job in jobs:
            logger.info("Running %s inline", job.job_id)
            job.run(self.worker_factory(self.config))
            completed.append(job.job_id)
        return completed
