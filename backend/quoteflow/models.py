# models.py
# Pydantic models shared by the core and the API

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .catalog import to_number

Direction = Literal["lower", "higher"]

NUMERIC_QUOTE_FIELDS = (
    "total_price",
    "unit_price",
    "quantity",
    "lead_time_days",
    "warranty_months",
    "shipping_cost",
)

TEXT_QUOTE_FIELDS = (
    "supplier_name",
    "contact_email",
    "currency",
    "payment_terms",
    "warranty_period",
    "notes",
)


class QuoteFields(BaseModel):
    supplier_name: Optional[str] = None
    contact_email: Optional[str] = None
    total_price: Optional[float] = None
    unit_price: Optional[float] = None
    quantity: Optional[float] = None
    lead_time_days: Optional[float] = None
    warranty_months: Optional[float] = None
    shipping_cost: Optional[float] = None
    currency: str = "USD"
    payment_terms: Optional[str] = None
    warranty_period: Optional[str] = None
    notes: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None

    # empty strings, NaN and infinities never get past this point
    @field_validator(*NUMERIC_QUOTE_FIELDS, mode="before")
    @classmethod
    def _finite_or_none(cls, v):
        return to_number(v)

    @field_validator("currency", mode="before")
    @classmethod
    def _default_currency(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return "USD"
        return str(v).strip().upper()


class QuoteCreate(QuoteFields):
    source: str = "manual"


class QuoteUpdate(BaseModel):
    supplier_name: Optional[str] = None
    contact_email: Optional[str] = None
    total_price: Optional[float] = None
    unit_price: Optional[float] = None
    quantity: Optional[float] = None
    lead_time_days: Optional[float] = None
    warranty_months: Optional[float] = None
    shipping_cost: Optional[float] = None
    currency: Optional[str] = None
    payment_terms: Optional[str] = None
    warranty_period: Optional[str] = None
    notes: Optional[str] = None

    @field_validator(*NUMERIC_QUOTE_FIELDS, mode="before")
    @classmethod
    def _finite_or_none(cls, v):
        return to_number(v)


class Quote(QuoteFields):
    id: str
    briefing_id: Optional[str] = None
    source: str = "manual"
    created_at: Optional[datetime] = None


class ParameterScore(BaseModel):
    original_value: float
    normalized_score: float
    weight: float
    raw_contribution: float
    contribution_percent: float = 0.0
    min: float
    max: float
    direction: Direction


class ScoredQuote(Quote):
    parameter_scores: Dict[str, ParameterScore] = Field(default_factory=dict)
    score: Optional[float] = None
    raw_weighted_sum: float = 0.0
    total_weights: float = 0.0
    enabled_param_count: int = 0


class EligibleParameter(BaseModel):
    key: str
    name: str
    direction: Direction
    count: int
    description: Optional[str] = None


class WeightEntry(BaseModel):
    enabled: bool = True
    weight: float = 1.0
    direction: Direction


class WeightUpdate(BaseModel):
    enabled: Optional[bool] = None
    weight: Optional[float] = None


class Briefing(BaseModel):
    id: str
    title: str = "New Briefing"
    status: str = "draft"
    supplier_link_token: Optional[str] = None
    created_at: Optional[datetime] = None


class BriefingCreate(BaseModel):
    title: str = "New Briefing"


class Supplier(BaseModel):
    key: str
    name: str
    contact_email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    note: str = ""


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    # "start", "question", "email", ... mark turns the transcript replay needs to recognise
    kind: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None


class ConversationPhase(str, Enum):
    NO_DESCRIPTION = "no_description"
    AWAITING_LOCATION = "awaiting_location"
    ASKING_QUESTIONS = "asking_questions"
    COMPOSING = "composing"
    SUPPLIER_SELECTION = "supplier_selection"
    TERMINATED = "terminated"


class ConversationState(BaseModel):
    briefing_id: str
    phase: ConversationPhase = ConversationPhase.NO_DESCRIPTION
    description: str = ""
    location: str = ""
    history: List[ChatTurn] = Field(default_factory=list)
    questions: List[str] = Field(default_factory=list)
    question_index: int = 0
    answers: List[str] = Field(default_factory=list)
    email: Optional[str] = None
    suppliers: List[Supplier] = Field(default_factory=list)


class TurnResult(BaseModel):
    briefing_id: str
    phase: ConversationPhase
    messages: List[str] = Field(default_factory=list)
    question_index: int = 0
    total_questions: int = 0
    email: Optional[str] = None
    suppliers: List[Supplier] = Field(default_factory=list)
    done: bool = False


class StartConversationRequest(BaseModel):
    description: str


class ReplyRequest(BaseModel):
    message: str


class SendRFQRequest(BaseModel):
    recipients: List[EmailStr] = Field(default_factory=list)
    subject: Optional[str] = None


class AnalyzeQuoteRequest(BaseModel):
    text: str


class WeightsPayload(BaseModel):
    # raw entries; legacy 0-100 weights are converted on the way in
    weights: Optional[Dict[str, Dict[str, Any]]] = None
