from __future__ import annotations

from typing import Any, List, Optional

from narrative_tracker.errors import ExtractionParseError
from narrative_tracker.extractors.base import StageContext, build_prompt, dump_model, run_stage
from narrative_tracker.schemas.state import (
    Character,
    Scene,
    Tension,
    TensionDirection,
    TensionLevel,
    TensionType,
)
from narrative_tracker.utils.json_extractor import as_enum, as_string, is_object
from narrative_tracker.utils.tension import calculate_tension_direction

SYSTEM_PROMPT = "You are a scene analysis agent for roleplay. Return only valid JSON."

SCENE_EXAMPLE = {
    "topic": "Marcus's heist plans",
    "tone": "Hushed, secretive",
    "tension": {"level": "tense", "direction": "escalating", "type": "negotiation"},
}


def should_extract_scene(is_assistant_message: bool, force: bool = False) -> bool:
    """Tension needs a full exchange, so only assistant turns trigger it."""
    return force or is_assistant_message


def parse_scene(data: Any) -> Scene:
    if not is_object(data):
        raise ExtractionParseError("scene", "expected object")

    topic = data.get("topic")
    if not isinstance(topic, str) or not topic.strip():
        raise ExtractionParseError("scene", "missing topic")

    tension = data.get("tension") if is_object(data.get("tension")) else {}
    return Scene(
        topic=topic,
        tone=as_string(data.get("tone"), "neutral"),
        tension=Tension(
            level=as_enum(TensionLevel, tension.get("level"), TensionLevel.relaxed),
            direction=as_enum(TensionDirection, tension.get("direction"), TensionDirection.stable),
            type=as_enum(TensionType, tension.get("type"), TensionType.conversation),
        ),
    )


def summarize_characters(characters: List[Character]) -> str:
    return "\n".join(
        f"{c.name}: {', '.join(c.mood)} - {c.activity or c.position}" for c in characters
    )


async def extract_scene(
    ctx: StageContext,
    *,
    is_initial: bool,
    messages: str,
    characters: List[Character],
    character_info: str,
    previous: Optional[Scene],
) -> Scene:
    summary = summarize_characters(characters)
    if is_initial:
        prompt = build_prompt(
            SYSTEM_PROMPT,
            "Summarise the scene: a 3-5 word topic, the dominant tone, and the tension "
            "level and type.",
            {"character_info": character_info, "characters": summary, "messages": messages},
            SCENE_EXAMPLE,
        )
        data = await run_stage(ctx, "scene", "scene_initial", prompt)
    else:
        prompt = build_prompt(
            SYSTEM_PROMPT,
            "Update the scene topic, tone and tension for these messages.",
            {"characters": summary, "previous_state": dump_model(previous), "messages": messages},
            SCENE_EXAMPLE,
        )
        data = await run_stage(ctx, "scene", "scene_update", prompt)

    scene = parse_scene(data)
    # Direction always comes from the level change, never from the answer
    previous_level = previous.tension.level if previous is not None else None
    scene.tension.direction = calculate_tension_direction(scene.tension.level, previous_level)
    return scene
