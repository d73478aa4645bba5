"""
Shared fixtures for the quoteflow test suite.
"""
import io
import os
import tempfile
from datetime import datetime, timedelta, timezone

# configure before quoteflow.config is imported anywhere
os.environ["QUOTEFLOW_DATA_DIR"] = tempfile.mkdtemp(prefix="quoteflow-test-")
os.environ["OPENAI_API_KEY"] = ""
os.environ["EMAIL_FOOTER"] = ""

import pytest
from pypdf import PdfWriter

from quoteflow.ai_helpers import AIResponse, RFQAssistant
from quoteflow.models import Quote
from quoteflow.storage import JsonStorage

BASE_TIME = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def make_quote(qid, minutes=0, **fields):
    """Quote with a deterministic created_at (later minutes = newer)."""
    return Quote(id=qid, briefing_id="b1", created_at=BASE_TIME + timedelta(minutes=minutes), **fields)


class StubAdapter:
    """Returns canned texts in order; exceptions in the list are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return AIResponse(text=item)


@pytest.fixture
def storage(tmp_path):
    return JsonStorage(tmp_path / "data")


@pytest.fixture
def mock_assistant():
    """Assistant without an API key: deterministic mock behaviour."""
    return RFQAssistant(adapter=None, sleep=lambda s: None)


def make_pdf(text):
    """Single-page PDF with `text` drawn in Helvetica."""
    content = b"BT /F1 12 Tf 72 720 Td (" + text.encode("latin-1") + b") Tj ET"
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        b"/Resources << /Font << /F1 4 0 R >> >> /Contents 5 0 R >>",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
        b"<< /Length %d >>\nstream\n" % len(content) + content + b"\nendstream",
    ]
    out = b"%PDF-1.4\n"
    offsets = []
    for number, body in enumerate(objects, 1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref = len(out)
    out += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    out += b"".join(b"%010d 00000 n \n" % offset for offset in offsets)
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref)
    return out


def make_blank_pdf():
    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()
