from __future__ import annotations

from typing import Iterable, Optional

from ire.domain.models import Ingredient


def match_ingredient(name: Optional[str], catalog: Iterable[Ingredient]) -> Optional[Ingredient]:
    """Resolve a free-text item name to a catalog ingredient.

    Stages run on the trimmed name and the first stage with a hit wins;
    within a stage the first ingredient in catalog order wins:
      1. exact, case-sensitive
      2. exact, case-insensitive
      3. either name contains the other, case-insensitive
    """
    needle = (name or "").strip()
    if not needle:
        return None
    candidates = list(catalog)
    if not candidates:
        return None

    for ing in candidates:
        if ing.name == needle:
            return ing

    lowered = needle.lower()
    for ing in candidates:
        if ing.name.lower() == lowered:
            return ing

    for ing in candidates:
        other = ing.name.lower()
        if other and (other in lowered or lowered in other):
            return ing

    return None
