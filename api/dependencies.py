from __future__ import annotations

import hashlib
import os
from functools import lru_cache
from pathlib import Path

from docs_parser.packages import (
    DOCXParse,
    EventDispatcher,
    Indexer,
    InlineJobQueue,
    LocalPackageStorage,
    ParsingRepository,
    RedisEventPublisher,
    RQJobQueue,
    SqlAlchemyParsingRepository,
    StoragePaths,
    WorkerConfig,
    build_trigger_dispatcher,
)
from docs_parser.packages.jobs import JobQueue, build_indexer


def redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


@lru_cache(maxsize=1)
def get_worker_config() -> WorkerConfig:
    return WorkerConfig.from_env()


@lru_cache(maxsize=1)
def get_repo() -> ParsingRepository:
    return SqlAlchemyParsingRepository(get_worker_config().database_url)


@lru_cache(maxsize=1)
def get_storage() -> LocalPackageStorage:
    return LocalPackageStorage(StoragePaths(Path(get_worker_config().storage_root)))


@lru_cache(maxsize=1)
def get_indexer() -> Indexer:
    return build_indexer(get_worker_config())


@lru_cache(maxsize=1)
def get_events() -> EventDispatcher:
    channel = os.getenv("EVENTS_CHANNEL", "docs_parser:events")
    publisher = RedisEventPublisher.from_url(redis_url(), channel=channel) if channel else None
    return build_trigger_dispatcher(get_repo(), publisher)


@lru_cache(maxsize=1)
def get_queue() -> JobQueue:
    config = get_worker_config()
    if os.getenv("QUEUE_MODE", "rq") == "inline":
        return InlineJobQueue(config)
    return RQJobQueue(config, redis_url=redis_url(), queue_name=os.getenv("PARSE_QUEUE", "parse-jobs"))


@lru_cache(maxsize=1)
def get_parser() -> DOCXParse:
    return DOCXParse(get_events(), get_queue())


def build_package_id(title: str) -> str:
    normalized = title.strip().lower()
    slug = "".join(ch if ch.isalnum() else "-" for ch in normalized).strip("-") or "package"
    digest = hashlib.md5(normalized.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"
