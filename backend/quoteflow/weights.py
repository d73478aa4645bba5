# weights.py
# User intent: which comparable parameters matter, and how much (0-5 in 0.5 steps)
import logging
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .catalog import get_parameter
from .errors import InputError
from .models import EligibleParameter, WeightEntry

logger = logging.getLogger(__name__)

MIN_WEIGHT = 0.0
MAX_WEIGHT = 5.0
DEFAULT_WEIGHT = 1.0


def clamp_weight(value: float) -> float:
    return max(MIN_WEIGHT, min(MAX_WEIGHT, value))


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def convert_legacy_weight(value: float) -> float:
    """Weights above 5 come from the old 0-100 percentage scale."""
    if value > MAX_WEIGHT:
        # half-up rounding to the nearest 0.5
        value = math.floor(value / 100 * 5 * 2 + 0.5) / 2
    return clamp_weight(value)


def _key_of(param: Union[EligibleParameter, str]) -> str:
    return param if isinstance(param, str) else param.key


class WeightConfiguration:
    """Per-parameter enabled flag and importance multiplier for one briefing."""

    def __init__(self, entries: Optional[Dict[str, WeightEntry]] = None,
                 eligible_keys: Optional[Iterable[str]] = None):
        self.entries: Dict[str, WeightEntry] = dict(entries or {})
        self.eligible_keys: List[str] = (
            list(eligible_keys) if eligible_keys is not None else list(self.entries)
        )

    @classmethod
    def initialize(cls, eligible: Iterable[Union[EligibleParameter, str]],
                   saved: Optional[Mapping[str, Any]] = None) -> "WeightConfiguration":
        eligible_keys = [_key_of(p) for p in eligible]
        entries: Dict[str, WeightEntry] = {}

        for key, raw in (saved or {}).items():
            param = get_parameter(key)
            if param is None:
                logger.debug("Dropping saved weight for unknown parameter %s", key)
                continue
            if isinstance(raw, WeightEntry):
                raw = raw.model_dump()
            if not isinstance(raw, Mapping):
                continue
            weight = raw.get("weight", DEFAULT_WEIGHT)
            weight = convert_legacy_weight(weight) if _is_number(weight) else DEFAULT_WEIGHT
            # direction always comes from the catalog, never from saved data
            entries[key] = WeightEntry(
                enabled=bool(raw.get("enabled", True)),
                weight=weight,
                direction=param.direction,
            )

        for key in eligible_keys:
            if key not in entries:
                entries[key] = cls._default_entry(key)

        return cls(entries, eligible_keys)

    @staticmethod
    def _default_entry(key: str) -> WeightEntry:
        param = get_parameter(key)
        if param is None:
            raise InputError(f"Unknown comparison parameter: {key}")
        return WeightEntry(enabled=True, weight=DEFAULT_WEIGHT, direction=param.direction)

    def update(self, key: str, changes: Mapping[str, Any]) -> WeightEntry:
        """Apply a partial change. Non-numeric weights are ignored; weights are clamped to 0-5."""
        entry = self.entries.get(key) or self._default_entry(key)
        data = entry.model_dump()

        if changes.get("enabled") is not None:
            data["enabled"] = bool(changes["enabled"])

        weight = changes.get("weight")
        if _is_number(weight):
            data["weight"] = clamp_weight(float(weight))

        self.entries[key] = WeightEntry(**data)
        return self.entries[key]

    def equalize(self) -> None:
        for key, entry in self.entries.items():
            if entry.enabled:
                self.entries[key] = entry.model_copy(update={"weight": DEFAULT_WEIGHT})

    def reset_all(self) -> None:
        self.entries = {key: self._default_entry(key) for key in self.eligible_keys}

    def has_active_weights(self) -> bool:
        # an enabled entry counts even at weight 0
        return any(entry.enabled for entry in self.entries.values())

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {key: entry.model_dump() for key, entry in self.entries.items()}

    def __getitem__(self, key: str) -> WeightEntry:
        return self.entries[key]

    def __contains__(self, key: str) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)
