# ai_helpers.py
# OpenAI wrapper + deterministic fallbacks used when no key is configured
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import openai

from . import config
from .errors import SERVICE_BUSY_MESSAGE, ExternalServiceError
from .models import Supplier
from .retry import retry_with_backoff

logger = logging.getLogger(__name__)

MAX_SUPPLIERS = 7

QUOTE_FIELDS = (
    "supplier_name", "contact_email", "contact_phone", "total_price", "currency",
    "unit_price", "quantity", "lead_time_days", "delivery_date", "materials_included",
    "specifications", "payment_terms", "warranty_period", "warranty_months",
    "shipping_cost", "additional_fees", "certifications", "notes",
)

RETRIABLE_STATUS = (429, 503)


@dataclass
class AIResponse:
    text: str


class OpenAIAdapter:
    """Text in, text out. Makes no promise that the text is valid JSON."""

    def __init__(self, api_key: str, model: str = config.OPENAI_MODEL):
        self.model = model
        self.client = openai.OpenAI(api_key=api_key)

    def generate(self, prompt: str) -> AIResponse:
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0,
        )
        return AIResponse(text=resp.choices[0].message.content or "")


def get_adapter() -> Optional[OpenAIAdapter]:
    if not config.OPENAI_KEY:
        return None
    return OpenAIAdapter(config.OPENAI_KEY, config.OPENAI_MODEL)


def is_retriable_error(err: Exception) -> bool:
    """Overload / rate-limit / connectivity failures are worth another try; bad requests are not."""
    if isinstance(err, (openai.RateLimitError, openai.InternalServerError, openai.APIConnectionError)):
        return True
    status = getattr(err, "status_code", None) or getattr(err, "status", None)
    return status in RETRIABLE_STATUS


_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def _balanced_end(text: str, start: int) -> int:
    """Index one past the bracket closing text[start], or -1."""
    stack = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return -1
            if not stack:
                return i + 1
    return -1


def extract_json(text: str) -> Any:
    """Parse the first balanced {...} or [...] in model output."""
    cleaned = strip_code_fences(text)
    for match in re.finditer(r"[\[{]", cleaned):
        end = _balanced_end(cleaned, match.start())
        if end == -1:
            continue
        try:
            return json.loads(cleaned[match.start():end])
        except json.JSONDecodeError:
            continue
    raise ValueError("No JSON object found in model output")


def is_usable_question(q: Any) -> bool:
    return isinstance(q, str) and len(q.strip()) > 10 and "?" in q


def question_lines(text: str) -> List[str]:
    """Plain-text fallback: one question per line, list markers stripped."""
    lines = [re.sub(r"^[\s\-*\d.)]+", "", l).strip() for l in (text or "").splitlines()]
    return [l for l in lines if "?" in l]


# --- deterministic parsers (no API key) ---

def parse_quote_from_text_mock(text: str) -> Dict[str, Any]:
    lower = text.lower()
    m = re.search(r"total[^$\d]{0,20}\$?\s*(\d[\d,]*(?:\.\d+)?)", lower) or re.search(r"\$(\d[\d,]*(?:\.\d+)?)", text)
    total_price = float(m.group(1).replace(",", "")) if m else None
    m = re.search(r"(\d+)\s*(?:business\s+)?days", lower)
    lead = int(m.group(1)) if m else None
    if lead is None:
        m = re.search(r"(\d+)\s*weeks?", lower)
        lead = int(m.group(1)) * 7 if m else None
    m = re.search(r"(\d+)\s*months?\s+warranty|warranty[^\d]{0,20}(\d+)\s*months?", lower)
    warranty = int(m.group(1) or m.group(2)) if m else None
    if warranty is None:
        m = re.search(r"(\d+)\s*years?\s+warranty|warranty[^\d]{0,20}(\d+)\s*years?", lower)
        warranty = int(m.group(1) or m.group(2)) * 12 if m else None
    m = re.search(r"shipping[^$\d]{0,20}\$?\s*(\d[\d,]*(?:\.\d+)?)", lower)
    shipping = float(m.group(1).replace(",", "")) if m else None
    m = re.search(r"net\s*(\d+)", lower)
    payment_terms = f"net {m.group(1)}" if m else None
    m = re.search(r"[\w.+-]+@[\w-]+\.[\w.]+", text)
    email = m.group(0) if m else None
    return {
        "supplier_name": None,
        "contact_email": email,
        "total_price": total_price,
        "currency": "USD",
        "lead_time_days": lead,
        "warranty_months": warranty,
        "shipping_cost": shipping,
        "payment_terms": payment_terms,
        "notes": text[:800],
    }


def mock_questions(description: str) -> List[str]:
    subject = description.strip().rstrip(".") or "this request"
    return [
        f"How many units of {subject} do you need, and in what sizes or variants?",
        "What is your deadline for delivery?",
        "Are there quality standards, materials or certifications the supplier must meet?",
        "Do you have a budget range in mind?",
    ]


def mock_email(description: str, location: str, qa: Sequence[Tuple[str, str]]) -> str:
    lines = [
        f"Subject: Request for Quote - {description[:60]}",
        "",
        "Hello,",
        "",
        f"We are requesting a quotation for: {description}.",
    ]
    if location:
        lines.append(f"Delivery location: {location}.")
    if qa:
        lines += ["", "Requirements:"]
        lines += [f"- {q} {a}".strip() for q, a in qa]
    lines += [
        "",
        "Please include total price, unit price, lead time, warranty and shipping cost in your reply.",
        "",
        "Kind regards,",
    ]
    return "\n".join(lines)


def supplier_key(name: str, website: Optional[str], email: Optional[str]) -> str:
    raw = "|".join([name.lower(), (website or "").lower(), (email or "").lower()])
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:12]


def normalize_suppliers(items: Any) -> List[Supplier]:
    suppliers = []
    for s in (items or [])[:MAX_SUPPLIERS]:
        if not isinstance(s, dict):
            continue
        name = s.get("name") or s.get("title")
        if not name:
            continue
        email = s.get("contact_email") or s.get("email")
        website = s.get("website") or s.get("url")
        suppliers.append(Supplier(
            key=supplier_key(str(name), website, email),
            name=str(name),
            contact_email=email,
            phone=s.get("phone") or s.get("tel"),
            website=website,
            note=s.get("note") or "",
        ))
    return suppliers


class RFQAssistant:
    """The AI-facing operations the conversation and quote intake need."""

    def __init__(self, adapter=None, max_attempts: int = config.AI_MAX_ATTEMPTS,
                 base_delay: float = config.AI_BASE_DELAY,
                 sleep: Optional[Callable[[float], None]] = None):
        self.adapter = adapter
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep

    def _generate(self, prompt: str, max_attempts: Optional[int] = None,
                  base_delay: Optional[float] = None) -> str:
        kwargs = {}
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        try:
            resp = retry_with_backoff(
                lambda: self.adapter.generate(prompt),
                max_attempts=max_attempts or self.max_attempts,
                base_delay=self.base_delay if base_delay is None else base_delay,
                is_retriable=is_retriable_error,
                **kwargs,
            )
        except Exception as err:
            retriable = is_retriable_error(err)
            logger.error("AI call failed (retriable=%s): %s", retriable, err, exc_info=True)
            message = SERVICE_BUSY_MESSAGE if retriable else "The AI request failed."
            raise ExternalServiceError(message, retriable=retriable, original_error=err) from err
        return (resp.text or "").strip()

    def generate_questions(self, description: str, location: str = "",
                           previous_answer: str = "") -> Tuple[str, List[str]]:
        """
        Without previous_answer: an opening batch of clarifying questions.
        With it: [] when the answer is fine, or exactly one follow-up question.
        """
        if self.adapter is None:
            if previous_answer:
                return "", []
            return ("Perfect! I have some questions to help create your quote request:",
                    mock_questions(description))

        if previous_answer:
            prompt = (
                "A buyer is preparing a Request for Quote.\n"
                f"Request: {description}\nLocation: {location or 'unspecified'}\n"
                f"Their latest answer: {previous_answer}\n\n"
                'If the answer is vague or off-topic return {"message": "<short note>", '
                '"questions": ["<one clarifying question>"]}. Otherwise return '
                '{"message": "", "questions": []}. JSON only.'
            )
        else:
            prompt = (
                "A buyer wants to request quotes from suppliers.\n"
                f"Request: {description}\nLocation: {location or 'unspecified'}\n\n"
                "Write 3 to 6 specific questions covering quantity, specifications, "
                "deadline, quality requirements and budget. Return JSON only: "
                '{"message": "<one friendly sentence>", "questions": ["..."]}'
            )
        text = self._generate(prompt)
        try:
            data = extract_json(text)
        except ValueError:
            return "", question_lines(text)
        if isinstance(data, list):
            return "", [q for q in data if isinstance(q, str)]
        questions = data.get("questions")
        if isinstance(questions, str):
            questions = question_lines(questions)
        elif not isinstance(questions, list):
            questions = []
        return str(data.get("message") or ""), [q for q in questions if isinstance(q, str)]

    def compose_email(self, description: str, location: str,
                      questions: Sequence[str], answers: Sequence[str]) -> str:
        qa = list(zip(questions, answers))
        # answers beyond the batch are replies to follow-up questions
        qa += [("", a) for a in answers[len(questions):]]
        if self.adapter is None:
            email = mock_email(description, location, qa)
        else:
            transcript = "\n".join(f"Q: {q}\nA: {a}" if q else f"A: {a}" for q, a in qa)
            prompt = (
                "Write a professional RFQ email to suppliers. Start with a line "
                '"Subject: ...", then greeting, the requirements as bullet points, '
                "the information suppliers must include (price, lead time, warranty, "
                "shipping) and a closing with the signature left blank. No markdown.\n\n"
                f"Request: {description}\nDelivery location: {location or 'unspecified'}\n"
                f"Details gathered:\n{transcript}"
            )
            email = strip_code_fences(self._generate(
                prompt, config.EMAIL_MAX_ATTEMPTS, config.EMAIL_BASE_DELAY))
        footer = config.EMAIL_FOOTER
        if footer and footer not in email:
            email = f"{email}\n\n---\n{footer}"
        return email

    def search_suppliers(self, description: str, location: str) -> List[Supplier]:
        """Best effort: any failure means no suppliers."""
        if self.adapter is None:
            return []
        prompt = (
            "Suggest suppliers for this Request for Quote.\n"
            f"Request: {description}\nLocation: {location or 'unspecified'}\n\n"
            f'Return JSON only: {{"suppliers": [{{"name": "", "contact_email": null, '
            f'"phone": null, "website": null, "note": ""}}], "queries": []}} with at most '
            f"{MAX_SUPPLIERS} suppliers, preferring local ones."
        )
        try:
            data = extract_json(self._generate(prompt))
        except (ExternalServiceError, ValueError) as err:
            logger.warning("Supplier search failed: %s", err)
            return []
        if isinstance(data, list):
            return normalize_suppliers(data)
        return normalize_suppliers(data.get("suppliers"))

    def analyze_quote_text(self, text: str) -> Dict[str, Any]:
        if self.adapter is None:
            return parse_quote_from_text_mock(text)
        prompt = (
            "Extract factual data from this supplier quote. Do not rate or infer. "
            "Durations in days, warranty in months, numbers without currency symbols, "
            "null when not stated. Return JSON only with keys: "
            + ", ".join(QUOTE_FIELDS)
            + '. additional_fees is a list of {"description", "amount"}.\n\nQUOTE:\n'
            + text
        )
        raw = self._generate(prompt)
        try:
            data = extract_json(raw)
        except ValueError as err:
            logger.error("Unparseable extraction output: %s", raw[:500])
            raise ExternalServiceError("Could not read the quote data.", original_error=err) from err
        if not isinstance(data, dict):
            raise ExternalServiceError("Could not read the quote data.")
        return {k: data.get(k) for k in QUOTE_FIELDS}
