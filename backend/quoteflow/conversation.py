# conversation.py
# Turn-based RFQ dialogue: description -> location -> clarifying questions -> email.
#
#   NO_DESCRIPTION -> AWAITING_LOCATION -> ASKING_QUESTIONS(i) -> COMPOSING
#       -> SUPPLIER_SELECTION (suppliers found) -> TERMINATED
#       -> TERMINATED         (no suppliers)
#
# The user's message is recorded before any AI call; everything else is only
# committed once the AI calls for the turn have succeeded, so a failed turn can
# simply be retried.
import logging
import re
from typing import Dict, List, Optional, Sequence

from .ai_helpers import RFQAssistant, is_usable_question
from .errors import ConsistencyError, InputError
from .models import ChatTurn, ConversationPhase, ConversationState, Supplier, TurnResult
from .storage import ConversationStore, Outbox

logger = logging.getLogger(__name__)

Phase = ConversationPhase

LOCATION_PROMPT = "Thanks! Now, which city and country are you located in? (e.g., Lisbon, Portugal)"
QUESTIONS_INTRO = "Perfect! I have some questions to help create your quote request:"
NO_QUESTIONS_MESSAGE = "I couldn't generate questions. Please try rephrasing your request."
UNUSABLE_QUESTIONS_MESSAGE = (
    "Sorry, I couldn't generate questions from that. "
    "Could you describe what you need more specifically?"
)
COMPOSING_MESSAGE = "Perfect! Let me create a professional quote request email for you..."
EMAIL_READY_MESSAGE = "Here's your professional quote request email:"
SUPPLIERS_FOUND_MESSAGE = "I found {count} suppliers that may fit. Choose who should receive the request."
NO_SUPPLIERS_MESSAGE = "I couldn't find suppliers automatically. You can copy the email and send it yourself."
NOT_FOUND_MESSAGE = "Conversation not found. Please start a new conversation."
FINISHED_MESSAGE = "This conversation has finished. Please start a new conversation."

# assistant turns that close a pending user message during replay
_DECISIVE_KINDS = {"location_prompt", "rephrase", "question", "followup", "email", "sent"}


class ActiveConversations:
    """In-memory conversations keyed by briefing id."""

    def __init__(self):
        self._data: Dict[str, ConversationState] = {}

    def get(self, briefing_id: str) -> Optional[ConversationState]:
        return self._data.get(briefing_id)

    def set(self, briefing_id: str, state: ConversationState) -> None:
        self._data[briefing_id] = state

    def delete(self, briefing_id: str) -> None:
        self._data.pop(briefing_id, None)

    def __contains__(self, briefing_id: str) -> bool:
        return briefing_id in self._data


def question_turn(index: int, questions: Sequence[str]) -> ChatTurn:
    return ChatTurn(
        role="assistant",
        content=f"Question {index + 1}: {questions[index]}",
        kind="question",
        meta={"index": index, "questions": list(questions)},
    )


def replay_transcript(briefing_id: str, turns: Sequence[ChatTurn]) -> ConversationState:
    """Rebuild the latest conversation of a briefing from its chat transcript."""
    starts = [i for i, t in enumerate(turns) if t.kind == "start"]
    if starts:
        begin = starts[-1]
    else:
        begin = next((i for i, t in enumerate(turns) if t.role == "user"), None)
        if begin is None:
            raise ConsistencyError(NOT_FOUND_MESSAGE, "transcript has no user turns")

    state = ConversationState(briefing_id=briefing_id, history=list(turns[begin:]))
    pending: Optional[str] = None

    for i, turn in enumerate(turns[begin:]):
        if turn.role == "user":
            if i == 0 or turn.kind in ("start", "description") or state.phase == Phase.NO_DESCRIPTION:
                state.description = turn.content
                state.phase = Phase.AWAITING_LOCATION
                state.questions, state.answers, state.question_index = [], [], 0
                pending = None
            else:
                pending = turn.content
            continue

        if turn.kind not in _DECISIVE_KINDS:
            continue
        meta = turn.meta or {}
        if turn.kind == "rephrase":
            state.location = pending or state.location
            state.phase = Phase.NO_DESCRIPTION
        elif turn.kind == "question":
            if state.phase == Phase.AWAITING_LOCATION:
                state.location = pending or ""
                state.phase = Phase.ASKING_QUESTIONS
            elif pending is not None:
                state.answers.append(pending)
            state.questions = list(meta.get("questions") or state.questions)
            state.question_index = int(meta.get("index", state.question_index))
        elif turn.kind == "followup":
            if pending is not None:
                state.answers.append(pending)
        elif turn.kind == "email":
            if pending is not None and state.phase == Phase.ASKING_QUESTIONS:
                state.answers.append(pending)
            state.email = turn.content
            state.question_index = len(state.questions)
            state.suppliers = [Supplier.model_validate(s) for s in meta.get("suppliers") or []]
            state.phase = Phase.SUPPLIER_SELECTION if state.suppliers else Phase.TERMINATED
        elif turn.kind == "sent":
            state.phase = Phase.TERMINATED
        pending = None

    return state


class RFQConversation:
    """Drives one conversation per briefing. Callers serialize turns per briefing."""

    def __init__(self, assistant: RFQAssistant, store: ConversationStore,
                 active: Optional[ActiveConversations] = None, outbox: Optional[Outbox] = None):
        self.assistant = assistant
        self.store = store
        self.active = active if active is not None else ActiveConversations()
        self.outbox = outbox

    # --- public operations ---

    def start(self, briefing_id: str, description: str) -> TurnResult:
        """Begin a new conversation, abandoning any in progress."""
        if not briefing_id:
            raise InputError("Briefing ID is required")
        if not description or not description.strip():
            raise InputError("Description is required")
        logger.info("Starting conversation for briefing %s", briefing_id,
                    extra={"briefing_id": briefing_id})
        self.reset(briefing_id)
        state = ConversationState(briefing_id=briefing_id)
        return self._turn(state, description.strip(), kind="start")

    def reply(self, briefing_id: str, message: str) -> TurnResult:
        if not briefing_id:
            raise InputError("Briefing ID is required")
        if not message or not message.strip():
            raise InputError("Message is required")
        state = self.resume(briefing_id)
        if state.phase == Phase.SUPPLIER_SELECTION:
            raise InputError("Choose the suppliers to send the request to, or start a new conversation.")
        kind = "description" if state.phase == Phase.NO_DESCRIPTION else None
        return self._turn(state, message.strip(), kind=kind)

    def resume(self, briefing_id: str) -> ConversationState:
        """Active copy, else persisted state, else rebuilt from the transcript."""
        state = self.active.get(briefing_id)
        if state is None:
            state = self.store.load_state(briefing_id)
            if state is None:
                transcript = self.store.load_transcript(briefing_id)
                if not transcript:
                    raise ConsistencyError(NOT_FOUND_MESSAGE, f"no state or transcript for {briefing_id}")
                state = replay_transcript(briefing_id, transcript)
                logger.info("Conversation for %s rebuilt from transcript (phase=%s)",
                            briefing_id, state.phase.value,
                            extra={"briefing_id": briefing_id, "phase": state.phase.value})
            if state.phase == Phase.TERMINATED:
                raise ConsistencyError(FINISHED_MESSAGE)
            self.active.set(briefing_id, state)
        return state

    def reset(self, briefing_id: str) -> None:
        self.active.delete(briefing_id)
        self.store.delete_state(briefing_id)

    def send_request(self, briefing_id: str, recipients: Sequence[str],
                     subject: Optional[str] = None) -> TurnResult:
        """Send the composed email to the chosen suppliers and finish."""
        recipients = [r.strip() for r in recipients or [] if r and r.strip()]
        if not recipients:
            raise InputError("At least one recipient is required")
        state = self.resume(briefing_id)
        if state.phase != Phase.SUPPLIER_SELECTION or not state.email:
            raise InputError("There is no composed request waiting to be sent.")
        subject = subject or _subject_of(state.email)
        if self.outbox is not None:
            for to in recipients:
                self.outbox.append({
                    "briefing_id": briefing_id,
                    "to": to,
                    "subject": subject,
                    "body": state.email,
                })
        noun = "supplier" if len(recipients) == 1 else "suppliers"
        turn = ChatTurn(role="assistant", content=f"Request sent to {len(recipients)} {noun}.",
                        kind="sent", meta={"recipients": recipients})
        state.phase = Phase.TERMINATED
        return self._commit(state, [turn])

    # --- state machine ---

    def _turn(self, state: ConversationState, text: str, kind: Optional[str]) -> TurnResult:
        user_turn = ChatTurn(role="user", content=text, kind=kind)
        state.history.append(user_turn)
        self.store.append_transcript(state.briefing_id, [user_turn])
        self._persist(state)

        logger.info("Turn for %s in phase %s", state.briefing_id, state.phase.value,
                    extra={"briefing_id": state.briefing_id, "phase": state.phase.value})
        handler = {
            Phase.NO_DESCRIPTION: self._on_description,
            Phase.AWAITING_LOCATION: self._on_location,
            Phase.ASKING_QUESTIONS: self._on_answer,
        }.get(state.phase)
        if handler is None:
            raise ConsistencyError(FINISHED_MESSAGE, f"no handler for phase {state.phase.value}")
        return self._commit(state, handler(state, text))

    def _on_description(self, state: ConversationState, text: str) -> List[ChatTurn]:
        state.description = text
        state.phase = Phase.AWAITING_LOCATION
        return [ChatTurn(role="assistant", content=LOCATION_PROMPT, kind="location_prompt")]

    def _on_location(self, state: ConversationState, text: str) -> List[ChatTurn]:
        message, questions = self.assistant.generate_questions(state.description, text)
        state.location = text
        if not questions:
            state.phase = Phase.NO_DESCRIPTION
            return [ChatTurn(role="assistant", content=NO_QUESTIONS_MESSAGE, kind="rephrase")]
        usable = [q.strip() for q in questions if is_usable_question(q)]
        if not usable:
            state.phase = Phase.NO_DESCRIPTION
            return [ChatTurn(role="assistant", content=UNUSABLE_QUESTIONS_MESSAGE, kind="rephrase")]

        state.questions = usable
        state.question_index = 0
        state.answers = []
        state.phase = Phase.ASKING_QUESTIONS
        return [
            ChatTurn(role="assistant", content=message or QUESTIONS_INTRO, kind="intro"),
            question_turn(0, usable),
        ]

    def _on_answer(self, state: ConversationState, text: str) -> List[ChatTurn]:
        message, follow_up = self.assistant.generate_questions(
            state.description, state.location, previous_answer=text)

        # exactly one question back means "clarify that answer", not progress
        if len(follow_up) == 1 and follow_up[0].strip():
            state.answers.append(text)
            turns = []
            if message:
                turns.append(ChatTurn(role="assistant", content=message, kind="note"))
            turns.append(ChatTurn(role="assistant", content=follow_up[0].strip(), kind="followup"))
            return turns

        next_index = state.question_index + 1
        if next_index < len(state.questions):
            state.answers.append(text)
            state.question_index = next_index
            return [question_turn(next_index, state.questions)]
        return self._compose(state, pending_answer=text)

    def _compose(self, state: ConversationState, pending_answer: Optional[str] = None) -> List[ChatTurn]:
        answers = state.answers + ([pending_answer] if pending_answer is not None else [])
        logger.info("Composing RFQ email for %s", state.briefing_id,
                    extra={"briefing_id": state.briefing_id, "phase": Phase.COMPOSING.value})
        email = self.assistant.compose_email(state.description, state.location, state.questions, answers)
        suppliers = self.assistant.search_suppliers(state.description, state.location)

        state.answers = answers
        state.question_index = len(state.questions)
        state.email = email
        state.suppliers = suppliers
        turns = [
            ChatTurn(role="assistant", content=COMPOSING_MESSAGE, kind="composing"),
            ChatTurn(role="assistant", content=EMAIL_READY_MESSAGE, kind="note"),
            ChatTurn(role="assistant", content=email, kind="email",
                     meta={"suppliers": [s.model_dump() for s in suppliers]}),
        ]
        if suppliers:
            state.phase = Phase.SUPPLIER_SELECTION
            turns.append(ChatTurn(role="assistant", kind="suppliers",
                                  content=SUPPLIERS_FOUND_MESSAGE.format(count=len(suppliers))))
        else:
            state.phase = Phase.TERMINATED
            turns.append(ChatTurn(role="assistant", content=NO_SUPPLIERS_MESSAGE, kind="note"))
        return turns

    # --- persistence ---

    def _persist(self, state: ConversationState) -> None:
        self.active.set(state.briefing_id, state)
        self.store.save_state(state.briefing_id, state)

    def _commit(self, state: ConversationState, turns: List[ChatTurn]) -> TurnResult:
        state.history.extend(turns)
        self.store.append_transcript(state.briefing_id, turns)
        result = TurnResult(
            briefing_id=state.briefing_id,
            phase=state.phase,
            messages=[t.content for t in turns],
            question_index=state.question_index,
            total_questions=len(state.questions),
            email=state.email,
            suppliers=state.suppliers,
            done=state.email is not None,
        )
        if state.phase == Phase.TERMINATED:
            # history stays in the transcript
            self.reset(state.briefing_id)
            logger.info("Conversation for %s finished", state.briefing_id,
                        extra={"briefing_id": state.briefing_id})
        else:
            self._persist(state)
        return result


def _subject_of(email: str) -> str:
    m = re.search(r"^\s*Subject:\s*(.+)$", email or "", re.MULTILINE)
    return m.group(1).strip() if m else "Quote Request"
