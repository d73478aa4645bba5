# availability.py
# Which catalog parameters have enough data to be compared
from typing import Iterable, List, Optional, Sequence

from .catalog import CATALOG, ParameterDefinition
from .models import EligibleParameter, Quote

# one data point has no range to normalize against
MIN_VALID_QUOTES = 2


def count_valid(param: ParameterDefinition, quotes: Iterable[Quote]) -> int:
    return sum(1 for q in quotes if param.read(q) is not None)


def eligible_parameters(
    quotes: Sequence[Quote],
    catalog: Optional[Sequence[ParameterDefinition]] = None,
) -> List[EligibleParameter]:
    """Parameters with a valid value in at least two quotes, most-reported first."""
    catalog = CATALOG if catalog is None else catalog
    eligible = []
    for param in catalog:
        count = count_valid(param, quotes)
        if count < MIN_VALID_QUOTES:
            continue
        eligible.append(
            EligibleParameter(
                key=param.key,
                name=param.name,
                direction=param.direction,
                count=count,
                description=param.description,
            )
        )
    # stable: catalog order among equal counts
    eligible.sort(key=lambda p: -p.count)
    return eligible
