# storage.py
# JSON file storage. One file per collection, writes serialized by a lock.

import json
import os
import secrets
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from .errors import ConsistencyError
from .models import Briefing, ChatTurn, ConversationState, Quote

LIST_COLLECTIONS = ("briefings", "quotes", "outbox")
MAP_COLLECTIONS = ("weights", "conversations", "transcripts")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonStorage:
    def __init__(self, data_dir=None):
        self.data_dir = Path(data_dir or config.DATA_DIR)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        for key in LIST_COLLECTIONS + MAP_COLLECTIONS:
            p = self.path(key)
            if not p.exists():
                p.write_text("[]" if key in LIST_COLLECTIONS else "{}")

    def path(self, key: str) -> Path:
        if key not in LIST_COLLECTIONS + MAP_COLLECTIONS:
            raise KeyError(f"Unknown collection: {key}")
        return self.data_dir / f"{key}.json"

    def read_json(self, key: str):
        with self._lock:
            return json.loads(self.path(key).read_text())

    def write_json(self, key: str, obj: Any):
        p = self.path(key)
        with self._lock:
            # write-then-rename so a crash never leaves half a file
            fd, tmp = tempfile.mkstemp(dir=str(self.data_dir), suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                json.dump(obj, f, indent=2, default=str)
            os.replace(tmp, p)

    def lock(self):
        return self._lock


class BriefingStore:
    def __init__(self, storage: JsonStorage):
        self.storage = storage

    def create(self, title: str = "New Briefing") -> Briefing:
        briefing = Briefing(id=str(uuid.uuid4()), title=title or "New Briefing", created_at=_now())
        with self.storage.lock():
            rows = self.storage.read_json("briefings")
            rows.append(briefing.model_dump(mode="json"))
            self.storage.write_json("briefings", rows)
        return briefing

    def get(self, briefing_id: str) -> Optional[Briefing]:
        row = next((b for b in self.storage.read_json("briefings") if b["id"] == briefing_id), None)
        return Briefing.model_validate(row) if row else None

    def require(self, briefing_id: str) -> Briefing:
        briefing = self.get(briefing_id)
        if briefing is None:
            raise ConsistencyError("Briefing not found")
        return briefing

    def update(self, briefing_id: str, fields: Dict[str, Any]) -> Briefing:
        with self.storage.lock():
            rows = self.storage.read_json("briefings")
            row = next((b for b in rows if b["id"] == briefing_id), None)
            if row is None:
                raise ConsistencyError("Briefing not found")
            row.update(fields)
            self.storage.write_json("briefings", rows)
        return Briefing.model_validate(row)

    def issue_supplier_token(self, briefing_id: str) -> str:
        token = secrets.token_hex(32)
        self.update(briefing_id, {"supplier_link_token": token})
        return token

    def find_by_token(self, token: str) -> Optional[Briefing]:
        if not token:
            return None
        row = next(
            (b for b in self.storage.read_json("briefings") if b.get("supplier_link_token") == token),
            None,
        )
        return Briefing.model_validate(row) if row else None


class QuoteStore:
    def __init__(self, storage: JsonStorage):
        self.storage = storage

    def list(self, briefing_id: Optional[str] = None) -> List[Quote]:
        rows = self.storage.read_json("quotes")
        if briefing_id is not None:
            rows = [r for r in rows if r.get("briefing_id") == briefing_id]
        quotes = [Quote.model_validate(r) for r in rows]
        # newest first
        quotes.sort(key=lambda q: q.created_at.timestamp() if q.created_at else 0.0, reverse=True)
        return quotes

    def get(self, quote_id: str) -> Optional[Quote]:
        row = next((r for r in self.storage.read_json("quotes") if r["id"] == quote_id), None)
        return Quote.model_validate(row) if row else None

    def insert(self, fields: Dict[str, Any]) -> Quote:
        quote = Quote.model_validate({**fields, "id": str(uuid.uuid4()), "created_at": _now()})
        with self.storage.lock():
            rows = self.storage.read_json("quotes")
            rows.append(quote.model_dump(mode="json"))
            self.storage.write_json("quotes", rows)
        return quote

    def update(self, quote_id: str, fields: Dict[str, Any]) -> Quote:
        with self.storage.lock():
            rows = self.storage.read_json("quotes")
            idx = next((i for i, r in enumerate(rows) if r["id"] == quote_id), None)
            if idx is None:
                raise ConsistencyError("Quote not found")
            fields = {k: v for k, v in fields.items() if k not in ("id", "created_at")}
            quote = Quote.model_validate({**rows[idx], **fields})
            rows[idx] = quote.model_dump(mode="json")
            self.storage.write_json("quotes", rows)
        return quote

    def delete(self, quote_id: str) -> None:
        with self.storage.lock():
            rows = self.storage.read_json("quotes")
            kept = [r for r in rows if r["id"] != quote_id]
            if len(kept) == len(rows):
                raise ConsistencyError("Quote not found")
            self.storage.write_json("quotes", kept)


class WeightStore:
    """Opaque per-briefing weight blobs."""

    def __init__(self, storage: JsonStorage):
        self.storage = storage

    def load(self, briefing_id: str) -> Optional[Dict[str, Any]]:
        return self.storage.read_json("weights").get(briefing_id)

    def save(self, briefing_id: str, weights: Dict[str, Any]) -> None:
        with self.storage.lock():
            data = self.storage.read_json("weights")
            data[briefing_id] = weights
            self.storage.write_json("weights", data)


class ConversationStore:
    """Persisted conversation state plus the append-only chat transcript."""

    def __init__(self, storage: JsonStorage):
        self.storage = storage

    def save_state(self, briefing_id: str, state: ConversationState) -> None:
        with self.storage.lock():
            data = self.storage.read_json("conversations")
            data[briefing_id] = state.model_dump(mode="json")
            self.storage.write_json("conversations", data)

    def load_state(self, briefing_id: str) -> Optional[ConversationState]:
        row = self.storage.read_json("conversations").get(briefing_id)
        return ConversationState.model_validate(row) if row else None

    def delete_state(self, briefing_id: str) -> None:
        with self.storage.lock():
            data = self.storage.read_json("conversations")
            if data.pop(briefing_id, None) is not None:
                self.storage.write_json("conversations", data)

    def append_transcript(self, briefing_id: str, turns: List[ChatTurn]) -> None:
        if not turns:
            return
        with self.storage.lock():
            data = self.storage.read_json("transcripts")
            data.setdefault(briefing_id, []).extend(t.model_dump(mode="json") for t in turns)
            self.storage.write_json("transcripts", data)

    def load_transcript(self, briefing_id: str) -> Optional[List[ChatTurn]]:
        rows = self.storage.read_json("transcripts").get(briefing_id)
        if not rows:
            return None
        return [ChatTurn.model_validate(r) for r in rows]


class Outbox:
    """Simulated outbound email: messages are recorded, not delivered."""

    def __init__(self, storage: JsonStorage):
        self.storage = storage

    def append(self, message: Dict[str, Any]) -> Dict[str, Any]:
        message = {"id": str(uuid.uuid4()), "created_at": _now(), **message}
        with self.storage.lock():
            rows = self.storage.read_json("outbox")
            rows.append(message)
            self.storage.write_json("outbox", rows)
        return message

    def list(self, briefing_id: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = self.storage.read_json("outbox")
        if briefing_id is not None:
            rows = [r for r in rows if r.get("briefing_id") == briefing_id]
        return rows
