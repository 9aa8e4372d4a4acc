from __future__ import annotations

from typing import Any, List, Optional

from narrative_tracker.errors import ExtractionParseError
from narrative_tracker.extractors.base import StageContext, build_prompt, dump_model, run_stage
from narrative_tracker.schemas.state import OUTFIT_SLOTS, Character, CharacterOutfit, LocationState
from narrative_tracker.utils.json_extractor import (
    as_optional_string,
    as_string,
    as_string_array,
    is_object,
)

SYSTEM_PROMPT = "You are a character state analysis agent for roleplay. Return only valid JSON."

CHARACTERS_EXAMPLE = [
    {
        "name": "Elena",
        "position": "Sitting at the bar",
        "activity": "Nursing a whiskey",
        "mood": ["anxious", "guarded"],
        "physical_state": ["tired"],
        "outfit": {
            "head": None, "neck": "silver chain", "jacket": "leather jacket", "back": None,
            "torso": "black tank top", "legs": "dark jeans", "footwear": "ankle boots",
            "socks": "black socks", "underwear": "black bra and panties",
        },
    },
]


def _parse_outfit(data: Any) -> CharacterOutfit:
    if not is_object(data):
        return CharacterOutfit()
    return CharacterOutfit(**{slot: as_optional_string(data.get(slot)) for slot in OUTFIT_SLOTS})


def parse_characters(data: Any) -> List[Character]:
    """Entries without a name are dropped; duplicate names keep the first entry."""
    if is_object(data):
        data = data.get("characters")
    if not isinstance(data, list):
        raise ExtractionParseError("characters", "expected a list of characters")

    characters: List[Character] = []
    seen = set()
    for entry in data:
        if not is_object(entry):
            continue
        name = as_string(entry.get("name"), "").strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        characters.append(Character(
            name=name,
            position=as_string(entry.get("position"), ""),
            activity=as_optional_string(entry.get("activity")),
            mood=as_string_array(entry.get("mood")),
            physical_state=as_string_array(entry.get("physical_state")),
            outfit=_parse_outfit(entry.get("outfit")),
        ))
    return characters


async def extract_characters(
    ctx: StageContext,
    *,
    is_initial: bool,
    messages: str,
    location: LocationState,
    user_info: str,
    character_info: str,
    previous: Optional[List[Character]],
) -> List[Character]:
    location_text = f"{location.area} - {location.place} ({location.position})"
    if is_initial or previous is None:
        prompt = build_prompt(
            SYSTEM_PROMPT,
            "List every character present in the scene with position, activity, mood, "
            "physical state and outfit. Use null for empty outfit slots.",
            {
                "user_info": user_info,
                "character_info": character_info,
                "location": location_text,
                "messages": messages,
            },
            CHARACTERS_EXAMPLE,
        )
        data = await run_stage(ctx, "characters", "characters_initial", prompt, shape="auto")
    else:
        prompt = build_prompt(
            SYSTEM_PROMPT,
            "Update the characters present. Remove characters who left, add arrivals, "
            "and set outfit slots to null when an item is taken off.",
            {"location": location_text, "previous_state": dump_model(previous), "messages": messages},
            CHARACTERS_EXAMPLE,
        )
        data = await run_stage(ctx, "characters", "characters_update", prompt, shape="auto")

    return parse_characters(data)
