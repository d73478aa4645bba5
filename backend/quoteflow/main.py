# main.py
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .ai_helpers import RFQAssistant, get_adapter
from .availability import eligible_parameters
from .conversation import ActiveConversations, RFQConversation
from .documents import extract_pdf_text
from .errors import ConsistencyError, ExternalServiceError, InputError, QuoteflowError
from .logging_config import setup_logging
from .models import (
    AnalyzeQuoteRequest, Briefing, BriefingCreate, ConversationState, EligibleParameter,
    NUMERIC_QUOTE_FIELDS, TEXT_QUOTE_FIELDS, Quote, QuoteCreate, QuoteFields, QuoteUpdate,
    ReplyRequest, ScoredQuote, SendRFQRequest, StartConversationRequest, TurnResult,
    WeightEntry, WeightsPayload, WeightUpdate,
)
from .scoring import score_quotes
from .storage import BriefingStore, ConversationStore, JsonStorage, Outbox, QuoteStore, WeightStore
from .weights import WeightConfiguration

logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    One lock per briefing; different briefings never wait on each other.

    A briefing's lock only lives while someone holds or waits for it, so the
    map is bounded by the number of in-flight requests.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders + waiters]
        self._locks: Dict[str, list] = {}

    @contextmanager
    def __call__(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def _error_body(err: QuoteflowError) -> Dict[str, Any]:
    body = {"error": err.user_message}
    if err.details:
        body["details"] = err.details
    return body


def create_app(storage: Optional[JsonStorage] = None,
               assistant: Optional[RFQAssistant] = None,
               configure_logging: bool = True) -> FastAPI:
    if configure_logging:
        setup_logging()

    storage = storage or JsonStorage()
    assistant = assistant or RFQAssistant(get_adapter())
    briefings = BriefingStore(storage)
    quotes = QuoteStore(storage)
    weight_store = WeightStore(storage)
    outbox = Outbox(storage)
    conversations = RFQConversation(assistant, ConversationStore(storage),
                                    ActiveConversations(), outbox)
    locks = KeyedLocks()

    app = FastAPI(title="Quoteflow RFQ API")
    app.state.storage = storage
    app.state.conversations = conversations
    app.state.locks = locks

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InputError)
    async def _input_error(request: Request, err: InputError):
        return JSONResponse(status_code=400, content=_error_body(err))

    @app.exception_handler(ConsistencyError)
    async def _consistency_error(request: Request, err: ConsistencyError):
        logger.info("%s %s: %s", request.method, request.url.path, err.details or err.user_message)
        return JSONResponse(status_code=404, content={"error": err.user_message})

    @app.exception_handler(ExternalServiceError)
    async def _external_error(request: Request, err: ExternalServiceError):
        # full detail is already logged where the call failed
        return JSONResponse(status_code=503 if err.retriable else 502,
                            content={"error": err.user_message})

    def load_weights(briefing_id: str, quote_list: List[Quote]) -> WeightConfiguration:
        eligible = eligible_parameters(quote_list)
        return WeightConfiguration.initialize(eligible, weight_store.load(briefing_id))

    # --- health ---
    @app.get("/")
    def health():
        return {
            "status": "ok",
            "ai": "openai" if assistant.adapter is not None else "mock",
            "endpoints": {
                "conversation": "POST /api/v1/briefings/{id}/conversation/start|reply",
                "quotes": "GET|POST /api/v1/briefings/{id}/quotes",
                "ranking": "GET /api/v1/briefings/{id}/ranking",
            },
        }

    # --- briefings ---
    @app.post("/api/v1/briefings", response_model=Briefing)
    def create_briefing(body: BriefingCreate):
        return briefings.create(body.title)

    @app.get("/api/v1/briefings/{briefing_id}", response_model=Briefing)
    def get_briefing(briefing_id: str):
        return briefings.require(briefing_id)

    # --- conversation ---
    @app.post("/api/v1/briefings/{briefing_id}/conversation/start", response_model=TurnResult)
    def start_conversation(briefing_id: str, body: StartConversationRequest):
        briefings.require(briefing_id)
        with locks(briefing_id):
            return conversations.start(briefing_id, body.description)

    @app.post("/api/v1/briefings/{briefing_id}/conversation/reply", response_model=TurnResult)
    def reply(briefing_id: str, body: ReplyRequest):
        with locks(briefing_id):
            return conversations.reply(briefing_id, body.message)

    @app.get("/api/v1/briefings/{briefing_id}/conversation", response_model=ConversationState)
    def get_conversation(briefing_id: str):
        with locks(briefing_id):
            return conversations.resume(briefing_id)

    @app.delete("/api/v1/briefings/{briefing_id}/conversation")
    def reset_conversation(briefing_id: str):
        with locks(briefing_id):
            conversations.reset(briefing_id)
        return {"status": "reset"}

    @app.post("/api/v1/briefings/{briefing_id}/conversation/send", response_model=TurnResult)
    def send_rfq(briefing_id: str, body: SendRFQRequest):
        with locks(briefing_id):
            result = conversations.send_request(briefing_id, [str(r) for r in body.recipients], body.subject)
        briefings.update(briefing_id, {"status": "sent"})
        return result

    @app.get("/api/v1/briefings/{briefing_id}/outbox")
    def list_outbox(briefing_id: str):
        return outbox.list(briefing_id)

    # --- quotes ---
    @app.get("/api/v1/briefings/{briefing_id}/quotes", response_model=List[Quote])
    def list_quotes(briefing_id: str):
        return quotes.list(briefing_id)

    @app.post("/api/v1/briefings/{briefing_id}/quotes", response_model=Quote)
    def create_quote(briefing_id: str, body: QuoteCreate):
        briefings.require(briefing_id)
        return quotes.insert({**body.model_dump(), "briefing_id": briefing_id})

    @app.post("/api/v1/briefings/{briefing_id}/quotes/analyze", response_model=Quote)
    def analyze_quote(briefing_id: str, body: AnalyzeQuoteRequest):
        if not body.text.strip():
            raise InputError("No quote text provided")
        briefings.require(briefing_id)
        extracted = assistant.analyze_quote_text(body.text)
        return quotes.insert(quote_from_extraction(extracted, briefing_id))

    @app.post("/api/v1/briefings/{briefing_id}/quotes/analyze-pdf", response_model=Quote)
    def analyze_quote_pdf(briefing_id: str, file: UploadFile = File(...)):
        briefings.require(briefing_id)
        text = extract_pdf_text(file.file.read(config.PDF_MAX_BYTES + 1))
        logger.info("Analyzing PDF quote %s for %s", file.filename, briefing_id,
                    extra={"briefing_id": briefing_id})
        extracted = assistant.analyze_quote_text(text)
        return quotes.insert(quote_from_extraction(extracted, briefing_id))

    @app.patch("/api/v1/quotes/{quote_id}", response_model=Quote)
    def update_quote(quote_id: str, body: QuoteUpdate):
        return quotes.update(quote_id, body.model_dump(exclude_unset=True))

    @app.delete("/api/v1/quotes/{quote_id}")
    def delete_quote(quote_id: str):
        quotes.delete(quote_id)
        return {"status": "deleted", "id": quote_id}

    # --- supplier self-submission ---
    @app.post("/api/v1/briefings/{briefing_id}/supplier-link")
    def supplier_link(briefing_id: str):
        briefings.require(briefing_id)
        token = briefings.issue_supplier_token(briefing_id)
        return {
            "token": token,
            "supplier_link": f"{config.FRONTEND_URL}/supplier-response/{token}",
            "briefing_id": briefing_id,
        }

    @app.get("/api/v1/supplier/{token}")
    def supplier_briefing(token: str):
        briefing = briefings.find_by_token(token)
        if briefing is None:
            raise ConsistencyError("Invalid or expired link")
        transcript = conversations.store.load_transcript(briefing.id) or []
        description = next((t.content for t in transcript if t.role == "user"), "No description available")
        return {"id": briefing.id, "title": briefing.title, "description": description}

    @app.post("/api/v1/supplier/{token}/quote", response_model=Quote)
    def supplier_submit(token: str, body: QuoteFields):
        briefing = briefings.find_by_token(token)
        if briefing is None:
            raise ConsistencyError("Invalid or expired link")
        return quotes.insert({**body.model_dump(), "briefing_id": briefing.id, "source": "supplier"})

    # --- comparison ---
    @app.get("/api/v1/briefings/{briefing_id}/parameters", response_model=List[EligibleParameter])
    def list_parameters(briefing_id: str):
        return eligible_parameters(quotes.list(briefing_id))

    @app.get("/api/v1/briefings/{briefing_id}/weights", response_model=Dict[str, WeightEntry])
    def get_weights(briefing_id: str):
        return load_weights(briefing_id, quotes.list(briefing_id)).entries

    @app.put("/api/v1/briefings/{briefing_id}/weights", response_model=Dict[str, WeightEntry])
    def save_weights(briefing_id: str, body: WeightsPayload):
        eligible = eligible_parameters(quotes.list(briefing_id))
        cfg = WeightConfiguration.initialize(eligible, body.weights or {})
        with locks(briefing_id):
            weight_store.save(briefing_id, cfg.to_dict())
        return cfg.entries

    @app.patch("/api/v1/briefings/{briefing_id}/weights/{key}", response_model=Dict[str, WeightEntry])
    def update_weight(briefing_id: str, key: str, body: WeightUpdate):
        with locks(briefing_id):
            cfg = load_weights(briefing_id, quotes.list(briefing_id))
            cfg.update(key, body.model_dump(exclude_none=True))
            weight_store.save(briefing_id, cfg.to_dict())
        return cfg.entries

    @app.post("/api/v1/briefings/{briefing_id}/weights/equalize", response_model=Dict[str, WeightEntry])
    def equalize_weights(briefing_id: str):
        with locks(briefing_id):
            cfg = load_weights(briefing_id, quotes.list(briefing_id))
            cfg.equalize()
            weight_store.save(briefing_id, cfg.to_dict())
        return cfg.entries

    @app.post("/api/v1/briefings/{briefing_id}/weights/reset", response_model=Dict[str, WeightEntry])
    def reset_weights(briefing_id: str):
        with locks(briefing_id):
            cfg = load_weights(briefing_id, quotes.list(briefing_id))
            cfg.reset_all()
            weight_store.save(briefing_id, cfg.to_dict())
        return cfg.entries

    @app.get("/api/v1/briefings/{briefing_id}/ranking", response_model=List[ScoredQuote])
    def ranking(briefing_id: str):
        quote_list = quotes.list(briefing_id)
        if weight_store.load(briefing_id) is None:
            # nothing applied yet
            return score_quotes(quote_list, None)
        cfg = load_weights(briefing_id, quote_list)
        return score_quotes(quote_list, cfg if cfg.has_active_weights() else None)

    @app.post("/api/v1/briefings/{briefing_id}/compare", response_model=List[ScoredQuote])
    def compare(briefing_id: str, body: WeightsPayload):
        # speculative: score with unsaved weights
        quote_list = quotes.list(briefing_id)
        if body.weights is None:
            return score_quotes(quote_list, None)
        eligible = eligible_parameters(quote_list)
        cfg = WeightConfiguration.initialize(eligible, body.weights or {})
        return score_quotes(quote_list, cfg)

    return app


def quote_from_extraction(extracted: Dict[str, Any], briefing_id: str) -> Dict[str, Any]:
    """
    First-class columns from an extraction result; the rest goes into `analysis`.

    Model output is untrusted: numbers in text columns become strings, and lists or
    objects there are kept in `analysis` instead.
    """
    fields: Dict[str, Any] = {}
    analysis: Dict[str, Any] = {}
    for key, value in extracted.items():
        if key in NUMERIC_QUOTE_FIELDS:
            fields[key] = value
        elif key in TEXT_QUOTE_FIELDS and (value is None or isinstance(value, str)):
            fields[key] = value
        elif key in TEXT_QUOTE_FIELDS and isinstance(value, (int, float)) and not isinstance(value, bool):
            fields[key] = str(value)
        else:
            analysis[key] = value
    fields["analysis"] = analysis
    fields["briefing_id"] = briefing_id
    fields["source"] = "extracted"
    return fields


app = create_app()
