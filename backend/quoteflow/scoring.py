# scoring.py
# Weighted multi-criteria ranking of supplier quotes.
#
# Each enabled parameter is min-max normalized across the quotes that report it
# (1 = best among them), multiplied by its weight, and summed. A quote's score is
# that sum divided by the weights of the parameters *it* reports, times 100, so a
# missing value costs the quote only that parameter's relative advantage.
import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .availability import eligible_parameters
from .catalog import CATALOG, ParameterDefinition, to_number
from .models import ParameterScore, Quote, ScoredQuote

logger = logging.getLogger(__name__)


def _read_entry(entry: Any) -> Tuple[bool, float]:
    if isinstance(entry, Mapping):
        enabled, weight = entry.get("enabled", False), entry.get("weight")
    else:
        enabled, weight = getattr(entry, "enabled", False), getattr(entry, "weight", None)
    return bool(enabled), to_number(weight) or 0.0


def normalize(value: float, low: float, high: float, direction: str) -> float:
    """Rescale into [0, 1] where 1 is the best value in [low, high]."""
    if low == high:
        # identical quotes must not penalize anyone
        return 1.0
    if not math.isfinite(high - low):
        # range wider than a float holds
        value, low, high = value / 2, low / 2, high / 2
    if direction == "higher":
        return (value - low) / (high - low)
    return (high - value) / (high - low)


def _rank_key(quote: ScoredQuote):
    created = quote.created_at.timestamp() if quote.created_at else 0.0
    return (-(quote.score or 0.0), -created, quote.id)


def rank(quotes: Sequence[ScoredQuote]) -> List[ScoredQuote]:
    """Best score first; ties go to the newer quote, then the lower id."""
    return sorted(quotes, key=_rank_key)


def score_quotes(
    quotes: Sequence[Quote],
    weights: Optional[Mapping[str, Any]],
    catalog: Optional[Sequence[ParameterDefinition]] = None,
) -> List[ScoredQuote]:
    """
    Score and rank quotes against a weight configuration.

    `weights` maps parameter key -> entry with `enabled` and `weight` (a
    WeightConfiguration, WeightEntry models or plain dicts). With no weights, or
    none enabled, the quotes come back unscored in their original order.
    """
    catalog = CATALOG if catalog is None else catalog
    quotes = [q if isinstance(q, Quote) else Quote.model_validate(q) for q in quotes]
    scored = [ScoredQuote.model_validate(q.model_dump()) for q in quotes]

    entries = getattr(weights, "entries", weights) or {}
    config = {key: _read_entry(entry) for key, entry in entries.items()}
    if not any(enabled for enabled, _ in config.values()):
        return scored

    eligible = {p.key for p in eligible_parameters(quotes, catalog)}
    enabled_params = [
        p for p in catalog
        if p.key in eligible and p.key in config and config[p.key][0] and config[p.key][1] > 0
    ]

    breakdowns: List[Dict[str, ParameterScore]] = [{} for _ in quotes]
    for param in enabled_params:
        weight = config[param.key][1]
        values = [param.read(q) for q in quotes]
        present = [v for v in values if v is not None]
        if not present:
            logger.debug("No valid values for %s, skipping", param.key)
            continue
        low, high = min(present), max(present)
        for i, value in enumerate(values):
            if value is None:
                continue
            norm = normalize(value, low, high, param.direction)
            breakdowns[i][param.key] = ParameterScore(
                original_value=value,
                normalized_score=norm,
                weight=weight,
                raw_contribution=norm * weight,
                min=low,
                max=high,
                direction=param.direction,
            )

    for quote, breakdown in zip(scored, breakdowns):
        total_raw = sum(ps.raw_contribution for ps in breakdown.values())
        total_possible = sum(ps.weight for ps in breakdown.values())
        for ps in breakdown.values():
            ps.contribution_percent = ps.raw_contribution / total_raw * 100 if total_raw > 0 else 0.0
        quote.parameter_scores = breakdown
        quote.raw_weighted_sum = total_raw
        quote.total_weights = total_possible
        quote.enabled_param_count = len(enabled_params)
        quote.score = total_raw / total_possible * 100 if total_possible > 0 else 0.0

    return rank(scored)
