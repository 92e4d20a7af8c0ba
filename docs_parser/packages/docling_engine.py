from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path
from typing import Optional

from docling.datamodel.base_models import InputFormat
from docling.document_converter import DocumentConverter, WordFormatOption
from docling_core.types.doc.document import (
    ListItem,
    PictureItem,
    SectionHeaderItem,
    TableItem,
    TextItem,
    TitleItem,
)

from .engine import PageAssembler, ParsingEngine
from .models import ParsedDocument

logger = logging.getLogger(__name__)


class DoclingParsingEngine(ParsingEngine):
    """
    Docling-based DOCX parser.

    Word documents carry no reliable page geometry, so pages are derived from
    structure: every title or level-1 section header opens a new page.
    Pictures and tables become assets attached to the page they appear on.
    """

    def __init__(self, engine_version: str = "docling-latest"):
        self.engine_version = engine_version
        self.converter = DocumentConverter(
            allowed_formats=[InputFormat.DOCX],
            format_options={InputFormat.DOCX: WordFormatOption()},
        )

    def parse(self, path: Path) -> ParsedDocument:
        try:
            result = self.converter.convert(Path(path))
            doc = result.document
        except Exception as exc:
            raise RuntimeError(f"Docling failed to convert {path}: {exc}") from exc

        assembler = PageAssembler()
        for item, depth in doc.iterate_items():
            self._map_item(doc, item, depth, assembler)

        logger.info("Docling produced %d pages, %d blocks from %s", len(assembler.pages), len(assembler.blocks), path)
        return assembler.build(self.engine_version, metadata={"name": getattr(doc, "name", None)})

    def _map_item(self, doc, item, depth: int, assembler: PageAssembler) -> None:
        item_id = self._item_id(item)
        label = self._label(item)

        if isinstance(item, TitleItem) or (isinstance(item, SectionHeaderItem) and item.level <= 1):
            assembler.open_page(item.text)
            assembler.add_block(item_id, label, item.text, level=1)
            return

        if isinstance(item, SectionHeaderItem):
            assembler.add_block(item_id, label, item.text, level=item.level)
            return

        if isinstance(item, TableItem):
            assembler.add_block(
                item_id,
                label,
                item.export_to_markdown(doc=doc),
                markup=item.export_to_html(doc=doc),
                asset_id=item_id,
            )
            assembler.add_asset(item_id, "table", image_bytes=self._image_to_png_bytes(item.get_image(doc)))
            return

        if isinstance(item, PictureItem):
            caption = item.caption_text(doc) if hasattr(item, "caption_text") else ""
            assembler.add_block(item_id, label, caption or "", asset_id=item_id)
            assembler.add_asset(item_id, "picture", image_bytes=self._image_to_png_bytes(item.get_image(doc)))
            return

        if isinstance(item, (ListItem, TextItem)):
            if not item.text:
                return
            assembler.add_block(item_id, label, item.text, level=depth)

    def _item_id(self, item) -> str:
        # self_ref looks like "#/texts/12"
        return item.self_ref.lstrip("#/").replace("/", "-")

    def _label(self, item) -> str:
        label = getattr(item, "label", "text")
        return str(getattr(label, "value", label))

    def _image_to_png_bytes(self, image) -> Optional[bytes]:
        if image is None:
            return None
        buffer = BytesIO()
        try:
            image.save(buffer, format="PNG")
        except (OSError, ValueError):
            logger.warning("Could not encode image as PNG", exc_info=True)
            return None
        return buffer.getvalue()
