from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from urllib.parse import quote


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PackageStatus(str, Enum):
    UPLOADED = "uploaded"
    QUEUED = "queued"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    PARSING = "parsing"
    PARSED = "parsed"
    FAILED = "failed"


class ParseJobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ParseJobPhase(str, Enum):
    INITIALIZATION = "initialization"
    PAGE_PARSING = "page_parsing"
    INDEXING = "indexing"


@dataclass
class ParsedPage:
    page_number: int
    title: Optional[str] = None


@dataclass
class ParsedBlock:
    id: str
    page_number: int
    block_type: str
    text: str
    reading_order: int
    level: int = 0
    markup: Optional[str] = None
    asset_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedAsset:
    id: str
    page_number: int
    asset_type: str
    image_bytes: Optional[bytes] = None
    image_path: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedDocument:
    pages: List[ParsedPage]
    blocks: List[ParsedBlock]
    assets: List[ParsedAsset]
    engine_version: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PackageRecord:
    id: str
    title: str
    source: str = "upload"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class VersionRecord:
    id: str
    package_id: str
    original_file_path: str
    status: PackageStatus = PackageStatus.UPLOADED
    file_md5: Optional[str] = None
    declared_page_count: Optional[int] = None
    page_count: Optional[int] = None
    engine_version: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ParseJobRecord:
    id: str
    package_id: str
    version_id: str
    state: ParseJobState
    phase: ParseJobPhase
    current_page: int = 0
    total_pages: Optional[int] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PageRecord:
    id: str
    package_id: str
    version_id: str
    page_number: int
    title: Optional[str]
    parse_status: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class BlockRecord:
    id: str
    package_id: str
    version_id: str
    page_id: str
    page_number: int
    block_type: str
    text: str
    markup: Optional[str]
    level: int
    reading_order: int
    asset_id: Optional[str]
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AssetRecord:
    id: str
    package_id: str
    version_id: str
    page_id: str
    asset_type: str
    file_path: str
    block_id: Optional[str]
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


def version_key(package_id: str, version_id: str) -> str:
    """
    Unambiguous key for a package version. Each part is percent-encoded, so
    the ":" separator never occurs inside a part.
    """
    return ":".join(quote(str(part), safe="") for part in (package_id, version_id))


def parse_job_id(package_id: str, version_id: str) -> str:
    return f"job:{version_key(package_id, version_id)}"
