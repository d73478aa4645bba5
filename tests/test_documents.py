"""Tests for PDF text extraction."""
import pytest

from conftest import make_blank_pdf, make_pdf
from quoteflow.documents import extract_pdf_text
from quoteflow.errors import InputError


class TestExtractPdfText:
    def test_reads_page_text(self):
        text = extract_pdf_text(make_pdf("Total: $1,200. Delivery in 10 days."))
        assert "Total: $1,200." in text
        assert "10 days" in text

    def test_empty_upload(self):
        with pytest.raises(InputError, match="No PDF file uploaded"):
            extract_pdf_text(b"")

    def test_not_a_pdf(self):
        with pytest.raises(InputError, match="Could not read the PDF file"):
            extract_pdf_text(b"this is a plain text file, not a pdf")

    def test_too_large(self):
        data = make_pdf("Total: $10")
        with pytest.raises(InputError, match="too large"):
            extract_pdf_text(data, max_bytes=len(data) - 1)

    def test_image_only_pdf(self):
        with pytest.raises(InputError, match="No text could be extracted"):
            extract_pdf_text(make_blank_pdf())
