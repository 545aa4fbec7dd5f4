"""Unit tests for MIME-keyed text extraction."""

import io
import subprocess
from types import SimpleNamespace

import docx
import pytest

from app.services import extractors
from app.services.extractors import EXTRACTORS, ExtractionError, extract_text
from app.services.google_drive import (
    DOC_MIME,
    DOCX_MIME,
    GOOGLE_DOC_MIME,
    PDF_MIME,
    SUPPORTED_MIME_TYPES,
)


class TestExtractText:
    def test_every_supported_type_has_an_extractor(self):
        assert set(EXTRACTORS) == set(SUPPORTED_MIME_TYPES)

    def test_google_doc_export_is_returned_as_text(self):
        assert extract_text("Exported notes", GOOGLE_DOC_MIME) == "Exported notes"
        assert extract_text("Café".encode("utf-8"), GOOGLE_DOC_MIME) == "Café"

    def test_unsupported_mime_type(self):
        with pytest.raises(ExtractionError, match="Unsupported MIME type"):
            extract_text(b"...", "image/png")

    def test_docx_paragraphs_are_joined(self):
        document = docx.Document()
        document.add_paragraph("First paragraph")
        document.add_paragraph("")
        document.add_paragraph("Second paragraph")
        buffer = io.BytesIO()
        document.save(buffer)

        text = extract_text(buffer.getvalue(), DOCX_MIME)

        assert text == "First paragraph\n\nSecond paragraph"

    def test_corrupt_pdf_raises_extraction_error(self):
        with pytest.raises(ExtractionError, match="Failed to extract application/pdf"):
            extract_text(b"this is not a pdf", PDF_MIME)


class TestLegacyDoc:
    def test_missing_antiword(self, monkeypatch):
        monkeypatch.setattr(extractors.shutil, "which", lambda name: None)

        with pytest.raises(ExtractionError, match="antiword is not installed"):
            extract_text(b"\xd0\xcf\x11\xe0", DOC_MIME)

    def test_antiword_output_is_decoded(self, monkeypatch):
        monkeypatch.setattr(extractors.shutil, "which", lambda name: "/usr/bin/antiword")
        calls = []

        def fake_run(args, **kwargs):
            calls.append((args, kwargs))
            return SimpleNamespace(stdout=b"Legacy memo text\n")

        monkeypatch.setattr(extractors.subprocess, "run", fake_run)

        assert extract_text(b"\xd0\xcf\x11\xe0", DOC_MIME) == "Legacy memo text\n"
        args, kwargs = calls[0]
        assert args == ["/usr/bin/antiword", "-"]
        assert kwargs["input"] == b"\xd0\xcf\x11\xe0"

    def test_antiword_failure(self, monkeypatch):
        monkeypatch.setattr(extractors.shutil, "which", lambda name: "/usr/bin/antiword")

        def failing_run(args, **kwargs):
            raise subprocess.CalledProcessError(1, args, stderr=b"not a Word document")

        monkeypatch.setattr(extractors.subprocess, "run", failing_run)

        with pytest.raises(ExtractionError, match="not a Word document"):
            extract_text(b"garbage", DOC_MIME)
