from __future__ import annotations

from typing import Iterable, List, Optional, Protocol
from pathlib import Path

from whoosh import index
from whoosh.fields import ID, NUMERIC, TEXT, Schema
from whoosh.qparser import QueryParser
from whoosh.query import Term

from .models import BlockRecord, version_key


class Indexer(Protocol):
    def index_version(self, package_id: str, version_id: str, blocks: Iterable[BlockRecord]) -> None:
        ...

    def delete_version(self, package_id: str, version_id: str) -> None:
        ...

    def search(
        self,
        query_str: str,
        package_id: Optional[str] = None,
        version_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[dict]:
        ...


class NoopIndexer:
    """
    Default indexer stub. Keeps the pipeline wired without pulling in Whoosh.
    """

    def index_version(self, package_id: str, version_id: str, blocks: Iterable[BlockRecord]) -> None:
        return None

    def delete_version(self, package_id: str, version_id: str) -> None:
        return None

    def search(
        self,
        query_str: str,
        package_id: Optional[str] = None,
        version_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[dict]:
        return []


class WhooshIndexer:
    """
    File-system backed Whoosh indexer. Creates an index if not present and
    re-indexes all blocks for a package version by first deleting existing docs.
    """

    def __init__(self, index_dir: Path):
        self.index_dir = index_dir
        self.index_dir.mkdir(parents=True, exist_ok=True)
        self.schema = Schema(
            package_id=ID(stored=True),
            version_key=ID(stored=True),
            block_id=ID(stored=True, unique=True),
            page_id=ID(stored=True),
            page_number=NUMERIC(stored=True),
            reading_order=NUMERIC(stored=True, sortable=True),
            text=TEXT(stored=True),
        )
        if index.exists_in(self.index_dir):
            self.ix = index.open_dir(self.index_dir)
        else:
            self.ix = index.create_in(self.index_dir, self.schema)

    def index_version(self, package_id: str, version_id: str, blocks: Iterable[BlockRecord]) -> None:
        key = version_key(package_id, version_id)
        writer = self.ix.writer()
        writer.delete_by_term("version_key", key)
        for block in blocks:
            writer.add_document(
                package_id=package_id,
                version_key=key,
                block_id=block.id,
                page_id=block.page_id,
                page_number=block.page_number,
                reading_order=block.reading_order,
                text=block.text or "",
            )
        writer.commit()

    def delete_version(self, package_id: str, version_id: str) -> None:
        writer = self.ix.writer()
        writer.delete_by_term("version_key", version_key(package_id, version_id))
        writer.commit()

    def search(
        self,
        query_str: str,
        package_id: Optional[str] = None,
        version_id: Optional[str] = None,
        limit: int = 10,
    ):
        """
        Return a list of plain dicts so callers are safe after the searcher closes.
        """
        qp = QueryParser("text", schema=self.schema)
        q = qp.parse(query_str)
        scope = None
        if package_id is not None and version_id is not None:
            scope = Term("version_key", version_key(package_id, version_id))
        elif package_id is not None:
            scope = Term("package_id", package_id)
        with self.ix.searcher() as searcher:
            results = searcher.search(q, limit=limit, filter=scope)
            hits = []
            for hit in results:
                fields = hit.fields()
                hits.append(
                    {
                        "block_id": fields.get("block_id"),
                        "page_id": fields.get("page_id"),
                        "page_number": fields.get("page_number"),
                        "reading_order": fields.get("reading_order"),
                        "text": fields.get("text"),
                    }
                )
            return hits
