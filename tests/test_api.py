"""HTTP tests against the FastAPI app with file storage in a temp dir."""
import threading

import httpx
import openai
import pytest
from fastapi.testclient import TestClient

from conftest import StubAdapter, make_blank_pdf, make_pdf
from quoteflow.ai_helpers import RFQAssistant
from quoteflow.conversation import FINISHED_MESSAGE, LOCATION_PROMPT
from quoteflow.errors import SERVICE_BUSY_MESSAGE
from quoteflow.main import KeyedLocks, create_app, quote_from_extraction
from quoteflow.storage import JsonStorage

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def make_client(tmp_path, assistant=None):
    assistant = assistant or RFQAssistant(adapter=None, sleep=lambda s: None)
    app = create_app(storage=JsonStorage(tmp_path / "data"), assistant=assistant, configure_logging=False)
    return TestClient(app)


@pytest.fixture
def client(tmp_path):
    return make_client(tmp_path)


@pytest.fixture
def briefing_id(client):
    resp = client.post("/api/v1/briefings", json={"title": "T-shirts"})
    assert resp.status_code == 200
    return resp.json()["id"]


def add_quote(client, briefing_id, **fields):
    resp = client.post(f"/api/v1/briefings/{briefing_id}/quotes", json=fields)
    assert resp.status_code == 200, resp.text
    return resp.json()


BOTH = {"total_price": {"enabled": True, "weight": 1}, "lead_time_days": {"enabled": True, "weight": 1}}


class TestHealth:
    def test_root(self, client):
        body = client.get("/").json()
        assert body["status"] == "ok"
        assert body["ai"] == "mock"


class TestBriefings:
    def test_get(self, client, briefing_id):
        assert client.get(f"/api/v1/briefings/{briefing_id}").json()["title"] == "T-shirts"

    def test_missing(self, client):
        resp = client.get("/api/v1/briefings/nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Briefing not found"}


class TestConversationRoutes:
    def test_full_dialogue(self, client, briefing_id):
        base = f"/api/v1/briefings/{briefing_id}/conversation"
        resp = client.post(f"{base}/start", json={"description": "500 custom t-shirts"})
        assert resp.status_code == 200
        assert resp.json()["phase"] == "awaiting_location"
        assert resp.json()["messages"] == [LOCATION_PROMPT]

        body = client.post(f"{base}/reply", json={"message": "Lisbon, Portugal"}).json()
        assert body["phase"] == "asking_questions"
        total = body["total_questions"]
        assert total == 4

        state = client.get(base).json()
        assert state["location"] == "Lisbon, Portugal"

        for i in range(total):
            body = client.post(f"{base}/reply", json={"message": f"answer {i}"}).json()
        assert body["phase"] == "terminated"
        assert body["done"] is True
        assert "Lisbon, Portugal" in body["email"]

        resp = client.get(base)
        assert resp.status_code == 404
        assert resp.json()["error"] == FINISHED_MESSAGE

    def test_start_unknown_briefing(self, client):
        resp = client.post("/api/v1/briefings/nope/conversation/start", json={"description": "mugs"})
        assert resp.status_code == 404

    def test_reply_without_conversation(self, client, briefing_id):
        resp = client.post(f"/api/v1/briefings/{briefing_id}/conversation/reply", json={"message": "hi"})
        assert resp.status_code == 404

    def test_empty_reply(self, client, briefing_id):
        base = f"/api/v1/briefings/{briefing_id}/conversation"
        client.post(f"{base}/start", json={"description": "500 custom t-shirts"})
        resp = client.post(f"{base}/reply", json={"message": "  "})
        assert resp.status_code == 400

    def test_missing_body_field(self, client, briefing_id):
        resp = client.post(f"/api/v1/briefings/{briefing_id}/conversation/start", json={})
        assert resp.status_code == 422

    def test_reset(self, client, briefing_id):
        base = f"/api/v1/briefings/{briefing_id}/conversation"
        client.post(f"{base}/start", json={"description": "500 custom t-shirts"})
        assert client.delete(base).json() == {"status": "reset"}

    def test_send_without_email(self, client, briefing_id):
        base = f"/api/v1/briefings/{briefing_id}/conversation"
        client.post(f"{base}/start", json={"description": "500 custom t-shirts"})
        resp = client.post(f"{base}/send", json={"recipients": ["a@acme.com"]})
        assert resp.status_code == 400
        assert client.get(f"/api/v1/briefings/{briefing_id}/outbox").json() == []

    def test_send_rejects_bad_address(self, client, briefing_id):
        resp = client.post(f"/api/v1/briefings/{briefing_id}/conversation/send",
                           json={"recipients": ["not-an-email"]})
        assert resp.status_code == 422


class TestQuotes:
    def test_crud(self, client, briefing_id):
        quote = add_quote(client, briefing_id, supplier_name="Acme", total_price="1,500", currency="eur")
        assert quote["total_price"] == 1500
        assert quote["currency"] == "EUR"
        assert quote["source"] == "manual"

        resp = client.patch(f"/api/v1/quotes/{quote['id']}", json={"lead_time_days": 12})
        assert resp.json()["lead_time_days"] == 12
        assert resp.json()["total_price"] == 1500

        assert len(client.get(f"/api/v1/briefings/{briefing_id}/quotes").json()) == 1
        assert client.delete(f"/api/v1/quotes/{quote['id']}").status_code == 200
        assert client.delete(f"/api/v1/quotes/{quote['id']}").status_code == 404

    def test_quote_for_missing_briefing(self, client):
        resp = client.post("/api/v1/briefings/nope/quotes", json={"total_price": 10})
        assert resp.status_code == 404

    def test_analyze_mock(self, client, briefing_id):
        text = "Total: $1,200. Delivery in 10 days. 12 months warranty. Shipping $50. Net 30."
        resp = client.post(f"/api/v1/briefings/{briefing_id}/quotes/analyze", json={"text": text})
        assert resp.status_code == 200
        quote = resp.json()
        assert quote["source"] == "extracted"
        assert quote["total_price"] == 1200
        assert quote["lead_time_days"] == 10
        assert quote["warranty_months"] == 12
        assert quote["shipping_cost"] == 50

    def test_analyze_empty(self, client, briefing_id):
        resp = client.post(f"/api/v1/briefings/{briefing_id}/quotes/analyze", json={"text": "  "})
        assert resp.status_code == 400

    def test_analyze_overloaded(self, tmp_path):
        busy = [openai.RateLimitError("rate limited", response=httpx.Response(429, request=_REQUEST), body=None)
                for _ in range(3)]
        client = make_client(tmp_path, RFQAssistant(adapter=StubAdapter(*busy), sleep=lambda s: None))
        briefing_id = client.post("/api/v1/briefings", json={}).json()["id"]
        resp = client.post(f"/api/v1/briefings/{briefing_id}/quotes/analyze", json={"text": "quote"})
        assert resp.status_code == 503
        assert resp.json() == {"error": SERVICE_BUSY_MESSAGE}

    def test_analyze_unreadable(self, tmp_path):
        client = make_client(tmp_path, RFQAssistant(adapter=StubAdapter("no json here"), sleep=lambda s: None))
        briefing_id = client.post("/api/v1/briefings", json={}).json()["id"]
        resp = client.post(f"/api/v1/briefings/{briefing_id}/quotes/analyze", json={"text": "quote"})
        assert resp.status_code == 502

    def test_quote_from_extraction(self):
        fields = quote_from_extraction(
            {"supplier_name": "Acme", "total_price": 10, "additional_fees": [{"amount": 5}]}, "b1")
        assert fields["supplier_name"] == "Acme"
        assert fields["analysis"] == {"additional_fees": [{"amount": 5}]}
        assert fields["source"] == "extracted"

    def test_mistyped_extraction_is_stored(self, tmp_path):
        extracted = ('{"supplier_name": "Acme", "total_price": 1200, "warranty_period": 12, '
                     '"notes": ["fast", "cheap"], "currency": null, "payment_terms": true}')
        client = make_client(tmp_path, RFQAssistant(adapter=StubAdapter(extracted), sleep=lambda s: None))
        briefing_id = client.post("/api/v1/briefings", json={}).json()["id"]
        resp = client.post(f"/api/v1/briefings/{briefing_id}/quotes/analyze", json={"text": "quote"})
        assert resp.status_code == 200, resp.text
        quote = resp.json()
        assert quote["warranty_period"] == "12"
        assert quote["currency"] == "USD"
        assert quote["notes"] is None
        assert quote["payment_terms"] is None
        assert quote["analysis"]["notes"] == ["fast", "cheap"]
        assert quote["analysis"]["payment_terms"] is True

    def test_analyze_pdf(self, client, briefing_id):
        pdf = make_pdf("Total: $1,200. Delivery in 10 days. 12 months warranty.")
        resp = client.post(f"/api/v1/briefings/{briefing_id}/quotes/analyze-pdf",
                           files={"file": ("quote.pdf", pdf, "application/pdf")})
        assert resp.status_code == 200, resp.text
        quote = resp.json()
        assert quote["source"] == "extracted"
        assert quote["total_price"] == 1200
        assert quote["lead_time_days"] == 10
        assert quote["warranty_months"] == 12

    def test_analyze_pdf_sends_text_to_model(self, tmp_path):
        adapter = StubAdapter('{"supplier_name": "Acme", "total_price": 900}')
        client = make_client(tmp_path, RFQAssistant(adapter=adapter, sleep=lambda s: None))
        briefing_id = client.post("/api/v1/briefings", json={}).json()["id"]
        pdf = make_pdf("Acme Ltd quote, total 900 EUR")
        resp = client.post(f"/api/v1/briefings/{briefing_id}/quotes/analyze-pdf",
                           files={"file": ("quote.pdf", pdf, "application/pdf")})
        assert resp.json()["supplier_name"] == "Acme"
        assert "Acme Ltd quote, total 900 EUR" in adapter.prompts[0]

    def test_analyze_pdf_rejects_bad_uploads(self, client, briefing_id):
        url = f"/api/v1/briefings/{briefing_id}/quotes/analyze-pdf"
        assert client.post(url).status_code == 422
        resp = client.post(url, files={"file": ("quote.pdf", b"not a pdf", "application/pdf")})
        assert resp.status_code == 400
        resp = client.post(url, files={"file": ("scan.pdf", make_blank_pdf(), "application/pdf")})
        assert resp.status_code == 400
        assert client.get(f"/api/v1/briefings/{briefing_id}/quotes").json() == []

    def test_analyze_pdf_unknown_briefing(self, client):
        resp = client.post("/api/v1/briefings/nope/quotes/analyze-pdf",
                           files={"file": ("quote.pdf", make_pdf("Total: $5"), "application/pdf")})
        assert resp.status_code == 404


class TestSupplierLink:
    def test_flow(self, client, briefing_id):
        link = client.post(f"/api/v1/briefings/{briefing_id}/supplier-link").json()
        token = link["token"]
        assert link["supplier_link"].endswith(f"/supplier-response/{token}")

        info = client.get(f"/api/v1/supplier/{token}").json()
        assert info["description"] == "No description available"

        client.post(f"/api/v1/briefings/{briefing_id}/conversation/start",
                    json={"description": "500 custom t-shirts"})
        assert client.get(f"/api/v1/supplier/{token}").json()["description"] == "500 custom t-shirts"

        resp = client.post(f"/api/v1/supplier/{token}/quote", json={"supplier_name": "Acme", "total_price": 900})
        assert resp.json()["source"] == "supplier"
        assert resp.json()["briefing_id"] == briefing_id

    def test_oversized_number_does_not_break_ranking(self, client, briefing_id):
        token = client.post(f"/api/v1/briefings/{briefing_id}/supplier-link").json()["token"]
        resp = client.post(f"/api/v1/supplier/{token}/quote",
                           json={"total_price": 10 ** 400, "analysis": {"business_rating": 10 ** 400}})
        assert resp.status_code == 200
        assert resp.json()["total_price"] is None
        add_quote(client, briefing_id, total_price=100, analysis={"business_rating": 4})
        add_quote(client, briefing_id, total_price=200, analysis={"business_rating": 2})

        assert client.get(f"/api/v1/briefings/{briefing_id}/parameters").status_code == 200
        weights = {"total_price": {"enabled": True, "weight": 1}, "business_rating": {"enabled": True, "weight": 1}}
        client.put(f"/api/v1/briefings/{briefing_id}/weights", json={"weights": weights})
        resp = client.get(f"/api/v1/briefings/{briefing_id}/ranking")
        assert resp.status_code == 200
        assert [q["score"] for q in resp.json()] == [100, 0, 0]

    def test_bad_token(self, client):
        assert client.get("/api/v1/supplier/nope").status_code == 404
        assert client.post("/api/v1/supplier/nope/quote", json={}).status_code == 404


class TestComparison:
    @pytest.fixture
    def quotes(self, client, briefing_id):
        add_quote(client, briefing_id, supplier_name="A", total_price=100, lead_time_days=10)
        add_quote(client, briefing_id, supplier_name="B", total_price=200, lead_time_days=5)
        add_quote(client, briefing_id, supplier_name="C", total_price=150, lead_time_days=20, warranty_months=12)

    def test_parameters(self, client, briefing_id, quotes):
        keys = [p["key"] for p in client.get(f"/api/v1/briefings/{briefing_id}/parameters").json()]
        assert keys == ["total_price", "lead_time_days"]

    def test_ranking_unscored_until_weights_saved(self, client, briefing_id, quotes):
        ranked = client.get(f"/api/v1/briefings/{briefing_id}/ranking").json()
        assert len(ranked) == 3
        assert all(q["score"] is None for q in ranked)

    def test_ranking_with_saved_weights(self, client, briefing_id, quotes):
        saved = client.put(f"/api/v1/briefings/{briefing_id}/weights", json={"weights": BOTH}).json()
        assert saved["total_price"]["direction"] == "lower"

        ranked = client.get(f"/api/v1/briefings/{briefing_id}/ranking").json()
        assert [q["supplier_name"] for q in ranked] == ["A", "B", "C"]
        assert ranked[0]["score"] == pytest.approx(83.333, abs=1e-3)
        assert ranked[1]["score"] == pytest.approx(50.0)
        assert ranked[2]["score"] == pytest.approx(25.0)
        assert set(ranked[0]["parameter_scores"]) == {"total_price", "lead_time_days"}

    def test_legacy_weights_converted(self, client, briefing_id, quotes):
        saved = client.put(f"/api/v1/briefings/{briefing_id}/weights",
                           json={"weights": {"total_price": {"enabled": True, "weight": 80}}}).json()
        assert saved["total_price"]["weight"] == 4.0
        assert saved["lead_time_days"]["weight"] == 1.0

    def test_patch_equalize_reset(self, client, briefing_id, quotes):
        base = f"/api/v1/briefings/{briefing_id}/weights"
        weights = client.patch(f"{base}/total_price", json={"weight": 7}).json()
        assert weights["total_price"]["weight"] == 5.0
        weights = client.patch(f"{base}/lead_time_days", json={"enabled": False, "weight": 3}).json()
        assert weights["lead_time_days"] == {"enabled": False, "weight": 3.0, "direction": "lower"}

        weights = client.post(f"{base}/equalize").json()
        assert weights["total_price"]["weight"] == 1.0
        assert weights["lead_time_days"]["weight"] == 3.0

        weights = client.post(f"{base}/reset").json()
        assert weights["lead_time_days"] == {"enabled": True, "weight": 1.0, "direction": "lower"}
        assert client.get(base).json() == weights

    def test_patch_unknown_parameter(self, client, briefing_id, quotes):
        resp = client.patch(f"/api/v1/briefings/{briefing_id}/weights/color", json={"weight": 2})
        assert resp.status_code == 400

    def test_all_disabled_is_unscored(self, client, briefing_id, quotes):
        off = {k: {"enabled": False, "weight": 1} for k in BOTH}
        client.put(f"/api/v1/briefings/{briefing_id}/weights", json={"weights": off})
        ranked = client.get(f"/api/v1/briefings/{briefing_id}/ranking").json()
        assert all(q["score"] is None for q in ranked)

    def test_compare_does_not_save(self, client, briefing_id, quotes):
        lead_only = {"total_price": {"enabled": False, "weight": 1}, "lead_time_days": {"enabled": True, "weight": 1}}
        ranked = client.post(f"/api/v1/briefings/{briefing_id}/compare", json={"weights": lead_only}).json()
        assert ranked[0]["supplier_name"] == "B"
        assert client.get(f"/api/v1/briefings/{briefing_id}/ranking").json()[0]["score"] is None

    def test_compare_without_weights(self, client, briefing_id, quotes):
        ranked = client.post(f"/api/v1/briefings/{briefing_id}/compare", json={}).json()
        assert all(q["score"] is None for q in ranked)


class TestKeyedLocks:
    def test_same_key_serializes(self):
        locks = KeyedLocks()
        entered = threading.Event()

        def contender():
            with locks("b1"):
                entered.set()

        with locks("b1"):
            worker = threading.Thread(target=contender)
            worker.start()
            assert not entered.wait(0.1)
            with locks("b2"):
                # other briefings are not blocked
                assert len(locks) == 2
        worker.join(1)
        assert entered.is_set()

    def test_released_locks_are_dropped(self):
        locks = KeyedLocks()
        for i in range(50):
            with locks(f"b{i}"):
                pass
        assert len(locks) == 0

    def test_dropped_after_error(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            with locks("b1"):
                raise RuntimeError("boom")
        assert len(locks) == 0

    def test_requests_leave_no_locks(self, client, briefing_id):
        client.post(f"/api/v1/briefings/{briefing_id}/conversation/start", json={"description": "mugs"})
        client.post(f"/api/v1/briefings/{briefing_id}/conversation/reply", json={"message": ""})
        assert len(client.app.state.locks) == 0
