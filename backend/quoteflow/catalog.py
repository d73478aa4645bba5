# catalog.py
# Every attribute quotes can be compared on, and how to read it off a quote.
# Adding a comparison parameter means adding one entry to CATALOG.
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional


def to_number(value: Any) -> Optional[float]:
    """Coerce to a finite float; None for anything that is not a usable number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            num = float(value)
        except (OverflowError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return None
        try:
            num = float(text)
        except (OverflowError, ValueError):
            return None
    else:
        return None
    if not math.isfinite(num):
        return None
    return num


def _attr(name: str) -> Callable[[Any], Optional[float]]:
    def accessor(quote) -> Optional[float]:
        return to_number(getattr(quote, name, None))
    return accessor


def _analysis(quote) -> Dict[str, Any]:
    blob = getattr(quote, "analysis", None)
    return blob if isinstance(blob, dict) else {}


def business_rating(quote) -> Optional[float]:
    # {"business_rating": {"value": 4.2, "scale": 5}} or a bare number
    raw = _analysis(quote).get("business_rating")
    if isinstance(raw, dict):
        value = to_number(raw.get("value"))
        scale = to_number(raw.get("scale"))
        if value is None:
            return None
        if scale:
            return value / scale * 5
        return value
    return to_number(raw)


def additional_fees_total(quote) -> Optional[float]:
    fees = _analysis(quote).get("additional_fees")
    if not isinstance(fees, list):
        return None
    amounts = [
        to_number(fee.get("amount")) if isinstance(fee, dict) else to_number(fee)
        for fee in fees
    ]
    amounts = [a for a in amounts if a is not None]
    # an empty list means "not stated", not "no fees"
    if not amounts:
        return None
    return sum(amounts)


@dataclass(frozen=True)
class ParameterDefinition:
    key: str
    name: str
    direction: str  # "lower" | "higher"
    accessor: Callable[[Any], Optional[float]]
    description: Optional[str] = None

    def __post_init__(self):
        if self.direction not in ("lower", "higher"):
            raise ValueError(f"Parameter {self.key!r} has invalid direction {self.direction!r}")
        if not callable(self.accessor):
            raise ValueError(f"Parameter {self.key!r} accessor is not callable")

    def read(self, quote) -> Optional[float]:
        return to_number(self.accessor(quote))


CATALOG: List[ParameterDefinition] = [
    ParameterDefinition("total_price", "Total Price", "lower", _attr("total_price")),
    ParameterDefinition("unit_price", "Unit Price", "lower", _attr("unit_price")),
    ParameterDefinition("lead_time_days", "Lead Time (days)", "lower", _attr("lead_time_days")),
    ParameterDefinition("warranty_months", "Warranty (months)", "higher", _attr("warranty_months")),
    ParameterDefinition("shipping_cost", "Shipping Cost", "lower", _attr("shipping_cost")),
    ParameterDefinition(
        "additional_fees", "Additional Fees", "lower", additional_fees_total,
        description="Sum of extra fees listed in the quote",
    ),
    ParameterDefinition(
        "business_rating", "Business Rating", "higher", business_rating,
        description="Supplier rating, rescaled to 0-5",
    ),
]

CATALOG_BY_KEY: Dict[str, ParameterDefinition] = {p.key: p for p in CATALOG}


def get_parameter(key: str) -> Optional[ParameterDefinition]:
    return CATALOG_BY_KEY.get(key)
