"""
Package parsing subsystem exports.
"""

from .engine import DummyParsingEngine, PageAssembler, ParsingEngine
from .events import (
    EventDispatcher,
    ParsingTriggerEvent,
    RedisEventPublisher,
    build_trigger_dispatcher,
    record_parse_trigger,
)
from .facade import DOCXParse
from .indexing import Indexer, NoopIndexer, WhooshIndexer
from .jobs import (
    InlineJobQueue,
    JobChain,
    JobDescriptor,
    PackageInitializationJob,
    PageParserJob,
    RQJobQueue,
    WorkerConfig,
    build_worker,
    run_package_initialization,
    run_page_parser,
)
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
    parse_job_id,
)
from .repository import InMemoryParsingRepository, ParsingRepository, SqlAlchemyParsingRepository
from .storage import LocalPackageStorage, StoragePaths
from .worker import ParsingWorker

__all__ = [
    "AssetRecord",
    "BlockRecord",
    "DOCXParse",
    "DummyParsingEngine",
    "EventDispatcher",
    "Indexer",
    "InMemoryParsingRepository",
    "InlineJobQueue",
    "JobChain",
    "JobDescriptor",
    "LocalPackageStorage",
    "NoopIndexer",
    "PackageInitializationJob",
    "PackageRecord",
    "PackageStatus",
    "PageAssembler",
    "PageParserJob",
    "PageRecord",
    "ParseJobPhase",
    "ParseJobRecord",
    "ParseJobState",
    "ParsingEngine",
    "ParsingRepository",
    "ParsingTriggerEvent",
    "ParsingWorker",
    "RQJobQueue",
    "RedisEventPublisher",
    "SqlAlchemyParsingRepository",
    "StoragePaths",
    "VersionRecord",
    "WhooshIndexer",
    "WorkerConfig",
    "build_trigger_dispatcher",
    "build_worker",
    "parse_job_id",
    "record_parse_trigger",
    "run_package_initialization",
    "run_page_parser",
]
