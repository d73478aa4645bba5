# documents.py
# Text out of uploaded quote documents
import io
import logging
from typing import Optional

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from . import config
from .errors import InputError

logger = logging.getLogger(__name__)


def extract_pdf_text(data: bytes, max_bytes: Optional[int] = None) -> str:
    """Text of every page, in order. Scanned (image-only) PDFs yield no text."""
    max_bytes = config.PDF_MAX_BYTES if max_bytes is None else max_bytes
    if not data:
        raise InputError("No PDF file uploaded")
    if len(data) > max_bytes:
        raise InputError("PDF is too large", f"{len(data)} bytes, limit {max_bytes}")
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PyPdfError, ValueError) as err:
        logger.warning("Unreadable PDF upload: %s", err)
        raise InputError("Could not read the PDF file", str(err)) from err
    text = "\n".join(p.strip() for p in pages if p.strip())
    if not text:
        raise InputError("No text could be extracted from the PDF")
    logger.info("Extracted %d chars from %d PDF pages", len(text), len(pages))
    return text
