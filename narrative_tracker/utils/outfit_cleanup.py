"""
Outfit cleanup after character extraction.

The generator sometimes reports a removed garment as ``"jeans (removed)"``
instead of clearing the slot. Those slots are cleared here and the garment is
moved into the location's props as ``"{name}'s {item}"`` unless a matching
prop is already listed.
"""

from __future__ import annotations

import re
from typing import List, Optional, Sequence, Set, Tuple

from narrative_tracker.schemas.state import OUTFIT_SLOTS, Character, LocationState

NULL_VALUES = frozenset({"none", "nothing", "bare", "naked", "n/a", "na", "-", ""})

REMOVED_PATTERNS = (
    re.compile(
        r"^(.+?)\s*\((?:removed|off|taken off|discarded|dropped|on (?:the )?floor"
        r"|on (?:the )?ground|cast aside|tossed aside)\)$",
        re.IGNORECASE,
    ),
    re.compile(r"^(.+?)\s*-\s*(?:removed|off|taken off)$", re.IGNORECASE),
    re.compile(r"^(?:removed|off|none|nothing|bare|naked)$", re.IGNORECASE),
)

# More specific terms first
CLOTHING_KEYWORDS = (
    "sneakers", "trainers", "boots", "heels", "sandals", "loafers", "flats", "shoes", "slippers",
    "stockings", "tights", "thigh-highs", "knee-highs", "socks", "jeans", "trousers", "pants",
    "shorts", "skirt", "leggings", "sweatpants",
    "panties", "knickers", "thong", "boxers", "briefs", "underwear", "sports bra", "bralette", "bra",
    "blouse", "t-shirt", "tshirt", "shirt", "tank top", "top", "vest", "camisole", "sweater",
    "jumper", "hoodie", "cardigan", "pullover",
    "jacket", "coat", "blazer", "parka", "windbreaker",
    "sundress", "dress", "gown",
    "hat", "cap", "beanie", "hood",
)


def extract_clothing_type(item: str) -> Optional[str]:
    """``"dark blue Levi's jeans"`` -> ``"jeans"``."""
    lower = item.lower()
    for keyword in CLOTHING_KEYWORDS:
        if keyword in lower:
            return keyword
    return None


def _search_terms(item: str) -> List[str]:
    lower = item.lower()
    terms = [lower]
    clothing_type = extract_clothing_type(item)
    if clothing_type:
        terms.append(clothing_type)
    else:
        terms.extend(w for w in lower.split() if len(w) > 2 and w not in ("the", "and", "with"))
    return list(dict.fromkeys(terms))


def prop_already_exists(item: str, character: str, existing_props: Set[str]) -> bool:
    """True when a prop already describes *character*'s *item*.

    A prop matches when it contains one of the item's search terms and either
    names the character or is not possessive at all (``"jeans on the floor"``).
    """
    name = character.lower()
    terms = _search_terms(item)
    for prop in existing_props:
        prop = prop.lower()
        if prop in terms:
            return True
        possessive = "'s" in prop or "belonging to" in prop
        for term in terms:
            if term in prop and (name in prop or not possessive):
                return True
    return False


def _removed_item(value: str) -> Tuple[bool, Optional[str]]:
    """``(removed, item_name)`` for one outfit value."""
    for pattern in REMOVED_PATTERNS:
        match = pattern.match(value)
        if match:
            item = match.group(1).strip() if match.groups() else None
            return True, item or None
    return False, None


def cleanup_outfits(
    characters: Sequence[Character],
    location: LocationState,
) -> Tuple[List[Character], LocationState, List[str]]:
    """Clear removed outfit slots and move the items into *location*'s props.

    Returns ``(characters, location, moved_items)``; the inputs are not
    mutated.
    """
    moved: List[str] = []
    existing = {p.lower() for p in location.props}
    cleaned: List[Character] = []

    for character in characters:
        outfit = character.outfit.model_copy()
        for slot in OUTFIT_SLOTS:
            value = getattr(outfit, slot)
            if value is None:
                continue
            trimmed = value.strip()

            if trimmed.lower() in NULL_VALUES:
                setattr(outfit, slot, None)
                continue

            removed, item = _removed_item(trimmed)
            if not removed:
                continue
            setattr(outfit, slot, None)
            if item and item.lower() not in NULL_VALUES and not prop_already_exists(item, character.name, existing):
                entry = f"{character.name}'s {item}"
                moved.append(entry)
                existing.add(entry.lower())

        cleaned.append(character.model_copy(update={"outfit": outfit}))

    if moved:
        location = location.model_copy(update={"props": [*location.props, *moved]})
    return cleaned, location, moved
