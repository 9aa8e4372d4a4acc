"""
Climate stage.

When a procedural weather provider is wired in (and enabled in settings) the
climate comes from it as a black box, together with an optional transition
hint and refreshed caches. Otherwise the generator reads the weather off the
messages.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Optional, Protocol

from narrative_tracker.extractors.base import StageContext, build_prompt, dump_model, run_stage
from narrative_tracker.schemas.state import Climate, LocationState, NarrativeDateTime, WeatherType
from narrative_tracker.services.generator import CancellationToken
from narrative_tracker.state.chapters import format_date_time
from narrative_tracker.utils.json_extractor import as_enum, as_number, as_optional_string, is_object
from narrative_tracker.utils.logging_config import get_logger

logger = get_logger("tracker.extractors.climate")

SYSTEM_PROMPT = "You are a climate analysis agent for roleplay scenes. Return only valid JSON."

CLIMATE_EXAMPLE = {"weather": "rainy", "temperature": 52}


@dataclasses.dataclass
class ClimateResult:
    climate: Climate
    transition: Optional[str] = None
    # Replacement caches; None leaves the stored cache untouched
    forecast_cache: Optional[List[Dict[str, Any]]] = None
    location_mappings: Optional[List[Dict[str, Any]]] = None


class WeatherProvider(Protocol):
    async def get_climate(
        self,
        *,
        time: NarrativeDateTime,
        location: LocationState,
        previous: Optional[Climate],
        forecast_cache: List[Dict[str, Any]],
        location_mappings: List[Dict[str, Any]],
        cancel: CancellationToken,
    ) -> ClimateResult:
        ...


def parse_climate(data: Any) -> Climate:
    """Invalid weather becomes ``sunny``; a missing temperature becomes 70."""
    if not is_object(data):
        return Climate()
    return Climate(
        weather=as_enum(WeatherType, data.get("weather"), WeatherType.sunny),
        temperature=as_number(data.get("temperature"), 70),
        conditions=as_optional_string(data.get("conditions")),
    )


async def extract_climate(
    ctx: StageContext,
    *,
    is_initial: bool,
    messages: str,
    time: NarrativeDateTime,
    location: LocationState,
    character_info: str,
    previous: Optional[Climate],
    forecast_cache: List[Dict[str, Any]],
    location_mappings: List[Dict[str, Any]],
    weather_provider: Optional[WeatherProvider] = None,
) -> ClimateResult:
    if weather_provider is not None and ctx.settings.use_procedural_weather:
        logger.debug("Using procedural weather", extra={"stage": "climate", "message_id": ctx.message_id})
        return await ctx.cancel.run(weather_provider.get_climate(
            time=time,
            location=location,
            previous=previous,
            forecast_cache=forecast_cache,
            location_mappings=location_mappings,
            cancel=ctx.cancel,
        ))

    sections = {
        "narrative_time": format_date_time(time),
        "location": f"{location.area} - {location.place} ({location.position})",
    }
    if is_initial or previous is None:
        sections.update({"character_info": character_info, "messages": messages})
        key = "climate_initial"
        task = ("Determine the current weather and temperature in Fahrenheit. "
                "Indoors, give the outdoor weather but the indoor temperature.")
    else:
        sections.update({"previous_state": dump_model(previous), "messages": messages})
        key = "climate_update"
        task = "Update the weather and temperature (Fahrenheit) for these messages."

    prompt = build_prompt(SYSTEM_PROMPT, task, sections, CLIMATE_EXAMPLE)
    data = await run_stage(ctx, "climate", key, prompt)
    return ClimateResult(climate=parse_climate(data))
