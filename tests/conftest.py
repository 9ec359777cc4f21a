"""Pytest configuration and fixtures for the engine tests."""
import io
from pathlib import Path
from typing import List, Sequence

import fitz
import numpy as np
import pytest
from pptx import Presentation
from pptx.util import Inches

from docpilot.embedding_client import LocalHashEmbedder
from docpilot.rag.models import IndexEntry, Provenance, SourceType


class FakeEmbedder:
    """Deterministic embed capability that records every call.

    `failures` is a list of exceptions raised, one per call, before the
    embedder starts answering.
    """

    def __init__(self, dimension: int = 32, model_id: str = "fake-32", failures=None):
        self.inner = LocalHashEmbedder(dimension=dimension)
        self.model_id = model_id
        self.calls: List[List[str]] = []
        self.failures = list(failures or [])

    @property
    def texts_embedded(self) -> int:
        return sum(len(batch) for batch in self.calls)

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [self.inner.embed_one(text).tolist() for text in texts]


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def make_embedder():
    """Factory for embedders with custom dimension, model or failures."""
    return FakeEmbedder


@pytest.fixture
def make_entry():
    """Factory for index entries with explicit vectors."""

    def _make(
        chunk_id: str,
        vector: Sequence[float],
        source_id: str = "a.pdf",
        text: str = None,
        page: int = 1,
        source_modified: float = 0.0,
        model_id: str = "fake-32",
        source_type: SourceType = SourceType.USER_UPLOADED,
    ) -> IndexEntry:
        text = text if text is not None else f"text of {chunk_id}"
        return IndexEntry(
            chunk_id=chunk_id,
            vector=np.asarray(vector, dtype=np.float32),
            text=text,
            provenance=Provenance(
                source_id=source_id,
                page=page,
                start_offset=0,
                end_offset=len(text),
                title=f"Page {page}",
                source_type=source_type,
            ),
            model_id=model_id,
            source_modified=source_modified,
        )

    return _make


@pytest.fixture
def make_pdf():
    """Build PDF bytes with one text page per string ("" gives a blank page)."""

    def _make(pages: Sequence[str]) -> bytes:
        doc = fitz.open()
        for text in pages:
            page = doc.new_page()
            if text:
                page.insert_text((72, 72), text)
        data = doc.tobytes()
        doc.close()
        return data

    return _make


@pytest.fixture
def make_pptx():
    """Build a slide deck; each slide is (title, body) and may add a table."""

    def _make(slides, table=None) -> bytes:
        prs = Presentation()
        for title, body in slides:
            slide = prs.slides.add_slide(prs.slide_layouts[1])
            slide.shapes.title.text = title
            slide.placeholders[1].text = body
        if table:
            slide = prs.slides.add_slide(prs.slide_layouts[5])
            slide.shapes.title.text = "Table"
            rows, cols = len(table), len(table[0])
            shape = slide.shapes.add_table(rows, cols, Inches(1), Inches(2), Inches(6), Inches(2))
            for r, row in enumerate(table):
                for c, value in enumerate(row):
                    shape.table.cell(r, c).text = value
        buf = io.BytesIO()
        prs.save(buf)
        return buf.getvalue()

    return _make


@pytest.fixture
def write_pdf(tmp_path: Path, make_pdf):
    """Write a PDF into tmp_path/docs and return its path."""

    def _write(name: str, pages: Sequence[str], directory: Path = None) -> Path:
        directory = directory or tmp_path / "docs"
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_bytes(make_pdf(pages))
        return path

    return _write
