"""
Shared plumbing for every extraction stage.

A stage builds an :class:`ExtractionPrompt`, calls :func:`run_stage` with its
temperature key, and turns the parsed JSON into schema values through the
``as_*`` helpers of :mod:`narrative_tracker.utils.json_extractor`.
"""

from __future__ import annotations

import dataclasses
import json
import time
from datetime import datetime
from typing import Any, Dict, Optional

from narrative_tracker.config import Settings
from narrative_tracker.schemas.state import (
    LocationState,
    NarrativeDateTime,
    Scene,
    Tension,
)
from narrative_tracker.services.generator import CancellationToken, ExtractionPrompt, Generator
from narrative_tracker.utils.json_extractor import parse_json_response
from narrative_tracker.utils.logging_config import get_logger

logger = get_logger("tracker.extractors")


@dataclasses.dataclass
class StageContext:
    """What every stage needs to talk to the generator."""
    generator: Generator
    settings: Settings
    cancel: CancellationToken
    message_id: Optional[int] = None
    chat_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Defaults for categories that are off or not extracted yet
# ---------------------------------------------------------------------------

def default_time() -> NarrativeDateTime:
    return NarrativeDateTime(
        year=datetime.now().year, month=6, day=15,
        hour=12, minute=0, second=0, day_of_week="Monday",
    )


def default_location() -> LocationState:
    return LocationState(area="Unknown Area", place="Unknown Place", position="Main area", props=[])


def default_scene() -> Scene:
    return Scene(topic="Scene in progress", tone="neutral", tension=Tension())


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------

def build_prompt(system: str, task: str, sections: Dict[str, str], example: Any) -> ExtractionPrompt:
    """Assemble a stage prompt from tagged context blocks and an output example.

    Empty sections are left out.
    """
    parts = [task, ""]
    for tag, body in sections.items():
        if not body:
            continue
        parts.append(f"<{tag}>\n{body}\n</{tag}>")
    parts.append(f"<output_example>\n{json.dumps(example, indent=2)}\n</output_example>")
    parts.append("Return only valid JSON with no commentary.")
    return ExtractionPrompt(system=system, user="\n\n".join(parts))


def dump_model(model) -> str:
    """Pretty JSON of a previous value, for update prompts."""
    if model is None:
        return "null"
    if isinstance(model, list):
        return json.dumps([m.model_dump(mode="json") for m in model], indent=2)
    return json.dumps(model.model_dump(mode="json"), indent=2)


# ---------------------------------------------------------------------------
# Generator call
# ---------------------------------------------------------------------------

async def run_stage(
    ctx: StageContext,
    stage: str,
    temperature_key: str,
    prompt: ExtractionPrompt,
    shape: str = "object",
) -> Any:
    """Call the generator for one stage and parse its JSON answer.

    Cancellation is checked before the call and raced against it, so an
    aborted token raises ``ExtractionAborted`` without waiting for the
    generator. Parse failures raise ``ExtractionParseError``.
    """
    extra = {"stage": stage, "message_id": ctx.message_id, "chat_id": ctx.chat_id}
    ctx.cancel.raise_if_cancelled()

    started = time.monotonic()
    logger.debug("Stage %s started", stage, extra=extra)

    text = await ctx.cancel.run(ctx.generator.generate(
        prompt,
        temperature=ctx.settings.get_temperature(temperature_key),
        max_tokens=ctx.settings.max_response_tokens,
        cancel=ctx.cancel,
    ))
    parsed = parse_json_response(text, shape=shape, stage=stage)

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info("Stage %s finished", stage, extra={**extra, "duration_ms": duration_ms})
    return parsed
