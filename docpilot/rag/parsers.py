"""Document parsers for slide decks, PDFs and legacy Word files.

Handles:
- Format detection from file extension and container magic bytes
- One extraction strategy per format tag
- Per-page/per-slide partial failure (skip and warn)
"""
import io
import threading
import zipfile
from pathlib import Path
from typing import Dict, List

import fitz  # PyMuPDF
import structlog
from pptx import Presentation
from pptx.enum.shapes import MSO_SHAPE_TYPE

from docpilot.errors import CorruptDocument, EmptyDocument, UnsupportedFormat
from docpilot.rag import word97
from docpilot.rag.models import FormatTag, Provenance, SourceType, TextBlock

logger = structlog.get_logger()

ZIP_MAGIC = b"PK\x03\x04"
PDF_MAGIC = b"%PDF-"

# PyMuPDF does not support multithreading: one document at a time
_PDF_LOCK = threading.Lock()

EXTENSION_FORMATS = {
    ".pptx": FormatTag.SLIDES,
    ".pdf": FormatTag.PDF,
    ".doc": FormatTag.LEGACY_DOC,
}

SUPPORTED_EXTENSIONS = frozenset(EXTENSION_FORMATS)


def detect_format(path) -> FormatTag:
    """Map a file path to its format tag by extension.

    Raises:
        UnsupportedFormat: If the extension is not one we parse
    """
    suffix = Path(path).suffix.lower()
    try:
        return EXTENSION_FORMATS[suffix]
    except KeyError:
        raise UnsupportedFormat(f"Unsupported file type: {Path(path).name}") from None


class _PageCollector:
    """Builds blocks for one document and tracks skipped pages."""

    def __init__(self, source_id: str, source_type: SourceType, unit: str):
        self.source_id = source_id
        self.source_type = source_type
        self.unit = unit
        self.blocks: List[TextBlock] = []
        self.failed = 0
        self.seen = 0

    def add(self, page: int, text: str, title: str = "") -> None:
        self.seen += 1
        text = text.strip()
        if not text:
            return
        self.blocks.append(
            TextBlock(
                text=text,
                provenance=Provenance(
                    source_id=self.source_id,
                    page=page,
                    start_offset=0,
                    end_offset=len(text),
                    title=title or f"{self.unit} {page}",
                    source_type=self.source_type,
                ),
            )
        )

    def skip(self, page: int, error: Exception) -> None:
        self.seen += 1
        self.failed += 1
        logger.warning(
            "page_extraction_failed",
            source_id=self.source_id,
            unit=self.unit,
            page=page,
            error=str(error),
            error_type=type(error).__name__,
        )

    def finish(self) -> List[TextBlock]:
        if self.seen and self.failed == self.seen:
            raise CorruptDocument(
                f"Every {self.unit.lower()} of {self.source_id} failed to parse"
            )
        if not self.blocks:
            raise EmptyDocument(f"No extractable text in {self.source_id}")
        return self.blocks


class SlidesExtractor:
    """Extracts slide text (text frames, groups, tables) with python-pptx."""

    format = FormatTag.SLIDES

    def accepts(self, data: bytes) -> bool:
        if not data.startswith(ZIP_MAGIC):
            return False
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                return "ppt/presentation.xml" in archive.namelist()
        except zipfile.BadZipFile:
            # Right magic, broken archive: let extraction report it as corrupt
            return True

    def extract_text(
        self, data: bytes, source_id: str, source_type: SourceType
    ) -> List[TextBlock]:
        try:
            presentation = Presentation(io.BytesIO(data))
        except Exception as e:
            raise CorruptDocument(f"Failed to open slide deck {source_id}: {e}") from e

        pages = _PageCollector(source_id, source_type, "Slide")
        for number, slide in enumerate(presentation.slides, 1):
            try:
                title_shape = slide.shapes.title
                title = title_shape.text.strip() if title_shape is not None else ""
                text = "\n".join(self._shape_texts(slide.shapes))
            except Exception as e:
                pages.skip(number, e)
                continue
            pages.add(number, text, title)

        return pages.finish()

    def _shape_texts(self, shapes):
        for shape in shapes:
            if shape.shape_type == MSO_SHAPE_TYPE.GROUP:
                yield from self._shape_texts(shape.shapes)
            elif getattr(shape, "has_table", False) and shape.has_table:
                for row in shape.table.rows:
                    cells = [cell.text.strip() for cell in row.cells]
                    line = " | ".join(c for c in cells if c)
                    if line:
                        yield line
            elif shape.has_text_frame:
                text = shape.text_frame.text.strip()
                if text:
                    yield text
            # Pictures, charts and media carry no extractable text


class PdfExtractor:
    """Extracts one block per PDF page with PyMuPDF."""

    format = FormatTag.PDF

    def accepts(self, data: bytes) -> bool:
        return data.startswith(PDF_MAGIC)

    def extract_text(
        self, data: bytes, source_id: str, source_type: SourceType
    ) -> List[TextBlock]:
        pages = _PageCollector(source_id, source_type, "Page")
        with _PDF_LOCK:
            try:
                doc = fitz.open(stream=data, filetype="pdf")
            except Exception as e:
                raise CorruptDocument(f"Failed to open PDF {source_id}: {e}") from e

            with doc:
                if doc.needs_pass:
                    raise CorruptDocument(f"PDF {source_id} is password protected")
                for number in range(1, doc.page_count + 1):
                    try:
                        text = doc.load_page(number - 1).get_text("text", sort=True)
                    except Exception as e:
                        pages.skip(number, e)
                        continue
                    pages.add(number, text)

        return pages.finish()


class LegacyDocExtractor:
    """Extracts Word 97-2003 text, split into sections on page breaks."""

    format = FormatTag.LEGACY_DOC

    def accepts(self, data: bytes) -> bool:
        return data.startswith(word97.OLE_MAGIC)

    def extract_text(
        self, data: bytes, source_id: str, source_type: SourceType
    ) -> List[TextBlock]:
        sections = word97.extract_pages(data)

        pages = _PageCollector(source_id, source_type, "Page")
        for number, section in enumerate(sections, 1):
            pages.add(number, section)

        return pages.finish()


class DocumentParser:
    """Selects the extraction strategy for a format tag and runs it."""

    def __init__(self):
        self._strategies: Dict[FormatTag, object] = {
            FormatTag.SLIDES: SlidesExtractor(),
            FormatTag.PDF: PdfExtractor(),
            FormatTag.LEGACY_DOC: LegacyDocExtractor(),
        }

    def parse(
        self,
        data: bytes,
        format_tag,
        source_id: str = "",
        source_type: SourceType = SourceType.USER_UPLOADED,
    ) -> List[TextBlock]:
        """Parse document bytes into ordered text blocks.

        Args:
            data: Raw file bytes
            format_tag: FormatTag (or its string value)
            source_id: Identity recorded in each block's provenance
            source_type: Static course material or user upload

        Returns:
            TextBlocks in reading order; empty if the document has no text

        Raises:
            UnsupportedFormat: Unknown tag, or bytes lacking the format's magic
            CorruptDocument: The container cannot be decoded
        """
        try:
            tag = FormatTag(format_tag)
        except ValueError:
            raise UnsupportedFormat(f"Unknown format tag: {format_tag!r}") from None

        strategy = self._strategies[tag]
        if not strategy.accepts(data):
            raise UnsupportedFormat(
                f"{source_id or 'document'} is not a valid {tag.value} container"
            )

        try:
            blocks = strategy.extract_text(data, source_id, source_type)
        except EmptyDocument as e:
            logger.warning("empty_document", source_id=source_id, format=tag.value, reason=str(e))
            return []

        logger.info(
            "document_parsed",
            source_id=source_id,
            format=tag.value,
            block_count=len(blocks),
            char_count=sum(len(b.text) for b in blocks),
        )
        return blocks

    def parse_file(
        self,
        path: Path,
        source_type: SourceType = SourceType.USER_UPLOADED,
    ) -> List[TextBlock]:
        """Detect the format of a file on disk and parse it."""
        path = Path(path)
        tag = detect_format(path)
        data = path.read_bytes()
        return self.parse(data, tag, str(path), source_type)
