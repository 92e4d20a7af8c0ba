from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Dict, List, Optional
from xml.etree import ElementTree

from .models import ParsedAsset, ParsedBlock, ParsedDocument, ParsedPage

logger = logging.getLogger(__name__)

DOCX_MAIN_PART = "word/document.xml"
DOCX_APP_PART = "docProps/app.xml"
_EXTENDED_PROPS_NS = "{http://schemas.openxmlformats.org/officeDocument/2006/extended-properties}"


def is_docx(path: Path) -> bool:
    if not zipfile.is_zipfile(path):
        return False
    with zipfile.ZipFile(path) as archive:
        return DOCX_MAIN_PART in archive.namelist()


class ParsingEngine:
    """
    Abstract parsing engine. Implementations should be stateless and reusable.
    """

    engine_version = "unknown"

    def parse(self, path: Path) -> ParsedDocument:
        raise NotImplementedError

    def validate(self, path: Path) -> None:
        """
        Raise ValueError if the file cannot be handled by this engine.
        """
        if not is_docx(path):
            raise ValueError(f"Not a DOCX document: {path}")

    def declared_page_count(self, path: Path) -> Optional[int]:
        """
        Page count stored by the authoring application in docProps/app.xml.
        Returns None when the document does not carry one.
        """
        try:
            with zipfile.ZipFile(path) as archive:
                if DOCX_APP_PART not in archive.namelist():
                    return None
                root = ElementTree.fromstring(archive.read(DOCX_APP_PART))
        except (zipfile.BadZipFile, ElementTree.ParseError, OSError):
            return None
        node = root.find(f"{_EXTENDED_PROPS_NS}Pages")
        if node is None or not (node.text or "").strip().isdigit():
            return None
        return int(node.text.strip())


class PageAssembler:
    """
    Collects blocks into pages. A new page starts at every top-level heading;
    content that precedes the first heading lands on page 1.
    """

    def __init__(self):
        self.pages: List[ParsedPage] = []
        self.blocks: List[ParsedBlock] = []
        self.assets: List[ParsedAsset] = []
        self._blocks_per_page: Dict[int, int] = {}

    def _current_page(self) -> ParsedPage:
        if not self.pages:
            self.pages.append(ParsedPage(page_number=1))
        return self.pages[-1]

    def open_page(self, title: Optional[str]) -> ParsedPage:
        current = self.pages[-1] if self.pages else None
        if current and current.title is None and not self._blocks_per_page.get(current.page_number):
            current.title = title
            return current
        page = ParsedPage(page_number=len(self.pages) + 1, title=title)
        self.pages.append(page)
        return page

    def add_block(
        self,
        block_id: str,
        block_type: str,
        text: str,
        level: int = 0,
        markup: Optional[str] = None,
        asset_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ParsedBlock:
        page = self._current_page()
        block = ParsedBlock(
            id=block_id,
            page_number=page.page_number,
            block_type=block_type,
            text=text,
            reading_order=len(self.blocks),
            level=level,
            markup=markup,
            asset_id=asset_id,
            metadata=metadata or {},
        )
        self.blocks.append(block)
        self._blocks_per_page[page.page_number] = self._blocks_per_page.get(page.page_number, 0) + 1
        return block

    def add_asset(
        self,
        asset_id: str,
        asset_type: str,
        image_bytes: Optional[bytes] = None,
        metadata: Optional[dict] = None,
    ) -> ParsedAsset:
        asset = ParsedAsset(
            id=asset_id,
            page_number=self._current_page().page_number,
            asset_type=asset_type,
            image_bytes=image_bytes,
            metadata=metadata or {},
        )
        self.assets.append(asset)
        return asset

    def build(self, engine_version: str, metadata: Optional[dict] = None) -> ParsedDocument:
        return ParsedDocument(
            pages=list(self.pages),
            blocks=list(self.blocks),
            assets=list(self.assets),
            engine_version=engine_version,
            metadata=metadata or {},
        )


class DummyParsingEngine(ParsingEngine):
    """
    Plain-text engine for local runs and tests. Lines starting with "# " open
    a new page; blank lines separate paragraphs.
    """

    engine_version = "dummy-1"

    def validate(self, path: Path) -> None:
        try:
            Path(path).read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise ValueError(f"Not a UTF-8 text document: {path}") from exc

    def declared_page_count(self, path: Path) -> Optional[int]:
        return None

    def parse(self, path: Path) -> ParsedDocument:
        text = Path(path).read_text(encoding="utf-8")
        assembler = PageAssembler()
        paragraph: List[str] = []

        def flush() -> None:
            if paragraph:
                content = " ".join(paragraph)
                assembler.add_block(f"b{len(assembler.blocks)}", "paragraph", content)
                paragraph.clear()

        for line in text.splitlines():
            stripped = line.strip()
            if stripped.startswith("# "):
                flush()
                title = stripped[2:].strip()
                assembler.open_page(title)
                assembler.add_block(f"b{len(assembler.blocks)}", "section_header", title, level=1)
            elif not stripped:
                flush()
            else:
                paragraph.append(stripped)
        flush()

        logger.debug("Dummy engine produced %d pages from %s", len(assembler.pages), path)
        return assembler.build(self.engine_version, metadata={"source": str(path)})
