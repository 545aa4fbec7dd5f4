"""Plain-text extraction for the Drive file types we index."""

from __future__ import annotations

import io
import shutil
import subprocess
from typing import Callable, Dict

import docx
from pypdf import PdfReader

from app.services.google_drive import DOC_MIME, DOCX_MIME, GOOGLE_DOC_MIME, PDF_MIME

ANTIWORD_TIMEOUT_SECONDS = 60


class ExtractionError(RuntimeError):
    """Raised when a file's text cannot be extracted."""


def _as_bytes(content: bytes | str) -> bytes:
    if isinstance(content, str):
        return content.encode("utf-8")
    return content


def extract_native_text(content: bytes | str) -> str:
    """Google Docs are exported by Drive as text/plain already."""
    if isinstance(content, str):
        return content
    return content.decode("utf-8", errors="replace")


def extract_pdf_text(content: bytes | str) -> str:
    reader = PdfReader(io.BytesIO(_as_bytes(content)))
    pages = [(page.extract_text() or "").strip() for page in reader.pages]
    return "\n\n".join(page for page in pages if page)


def extract_docx_text(content: bytes | str) -> str:
    document = docx.Document(io.BytesIO(_as_bytes(content)))
    paragraphs = [p.text.strip() for p in document.paragraphs]
    return "\n\n".join(p for p in paragraphs if p)


def extract_doc_text(content: bytes | str) -> str:
    """Legacy Word (.doc) via the antiword binary, reading from stdin."""
    binary = shutil.which("antiword")
    if not binary:
        raise ExtractionError("antiword is not installed; cannot extract legacy .doc files")
    try:
        result = subprocess.run(
            [binary, "-"],
            input=_as_bytes(content),
            capture_output=True,
            check=True,
            timeout=ANTIWORD_TIMEOUT_SECONDS,
        )
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.decode("utf-8", errors="replace").strip()
        raise ExtractionError(f"antiword failed: {stderr or exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ExtractionError("antiword timed out") from exc
    return result.stdout.decode("utf-8", errors="replace")


EXTRACTORS: Dict[str, Callable[[bytes | str], str]] = {
    GOOGLE_DOC_MIME: extract_native_text,
    PDF_MIME: extract_pdf_text,
    DOCX_MIME: extract_docx_text,
    DOC_MIME: extract_doc_text,
}


def extract_text(content: bytes | str, mime_type: str) -> str:
    """Convert exported or downloaded file content to plain text."""
    extractor = EXTRACTORS.get(mime_type)
    if extractor is None:
        raise ExtractionError(f"Unsupported MIME type: {mime_type}")
    try:
        return extractor(content)
    except ExtractionError:
        raise
    except Exception as exc:
        raise ExtractionError(f"Failed to extract {mime_type}: {exc}") from exc
