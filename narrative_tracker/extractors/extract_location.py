from __future__ import annotations

from typing import Any, Optional

from narrative_tracker.extractors.base import (
    StageContext,
    build_prompt,
    default_location,
    dump_model,
    run_stage,
)
from narrative_tracker.schemas.state import LocationState
from narrative_tracker.utils.json_extractor import as_string, as_string_array, is_object

SYSTEM_PROMPT = "You are a location analysis agent for roleplay. Return only valid JSON."

LOCATION_EXAMPLE = {
    "area": "Downtown Seattle",
    "place": "The Rusty Nail bar",
    "position": "Corner booth",
    "props": ["half-empty beer glass", "flickering neon sign"],
}


def parse_location(data: Any, previous: Optional[LocationState]) -> LocationState:
    """Missing fields keep their previous value, or the default when there is none."""
    fallback = previous or default_location()
    if not is_object(data):
        return fallback.model_copy(deep=True)

    props = data.get("props")
    return LocationState(
        area=as_string(data.get("area"), fallback.area).strip() or fallback.area,
        place=as_string(data.get("place"), fallback.place).strip() or fallback.place,
        position=as_string(data.get("position"), fallback.position).strip() or fallback.position,
        props=as_string_array(props) if isinstance(props, list) else list(fallback.props),
    )


async def extract_location(
    ctx: StageContext,
    *,
    is_initial: bool,
    messages: str,
    character_info: str,
    previous: Optional[LocationState],
) -> LocationState:
    if is_initial or previous is None:
        prompt = build_prompt(
            SYSTEM_PROMPT,
            "Determine where this scene takes place: the wider area, the specific place, "
            "the characters' position within it and notable props nearby.",
            {"character_info": character_info, "messages": messages},
            LOCATION_EXAMPLE,
        )
        data = await run_stage(ctx, "location", "location_initial", prompt)
    else:
        prompt = build_prompt(
            SYSTEM_PROMPT,
            "Update the location for these messages. Keep fields that did not change; "
            "drop props that were taken away and add new ones.",
            {"previous_state": dump_model(previous), "messages": messages},
            LOCATION_EXAMPLE,
        )
        data = await run_stage(ctx, "location", "location_update", prompt)

    return parse_location(data, previous)
