from __future__ import annotations

import dataclasses
from typing import Any, Optional, Sequence

from narrative_tracker.errors import ExtractionAborted, TrackerError
from narrative_tracker.extractors.base import StageContext, build_prompt, run_stage
from narrative_tracker.schemas.state import (
    Chapter,
    ChapterOutcomes,
    NarrativeDateTime,
    NarrativeState,
    TimestampedEvent,
)
from narrative_tracker.state.chapters import create_empty_chapter, finalize_chapter
from narrative_tracker.state.events import format_events_for_injection
from narrative_tracker.state.relationships import format_relationships_for_prompt
from narrative_tracker.utils.json_extractor import as_bool, as_string, as_string_array, is_object
from narrative_tracker.utils.logging_config import get_logger

logger = get_logger("tracker.extractors.chapter")

SYSTEM_PROMPT = (
    "You are a narrative analysis agent for roleplay. Analyze chapter boundaries and "
    "summarize story progression. Return only valid JSON."
)

CHAPTER_EXAMPLE = {
    "is_chapter_boundary": True,
    "title": "The Midnight Confession",
    "summary": "Elena revealed her past to Marcus under the stars. Their trust deepened.",
    "outcomes": {
        "relationship_changes": ["Elena and Marcus grew closer through shared vulnerability"],
        "secrets_revealed": ["Elena's criminal past"],
        "new_complications": ["Marcus must decide whether to keep Elena's secret"],
    },
}


@dataclasses.dataclass
class ChapterExtractionResult:
    is_chapter_boundary: bool
    chapter: Optional[Chapter] = None


@dataclasses.dataclass
class ChapterData:
    is_chapter_boundary: bool
    title: str
    summary: str
    outcomes: ChapterOutcomes


def parse_chapter_data(data: Any) -> ChapterData:
    if not is_object(data):
        return ChapterData(False, "", "", ChapterOutcomes())

    outcomes = data.get("outcomes")
    if is_object(outcomes):
        parsed_outcomes = ChapterOutcomes(
            relationship_changes=as_string_array(outcomes.get("relationship_changes")),
            secrets_revealed=as_string_array(outcomes.get("secrets_revealed")),
            new_complications=as_string_array(outcomes.get("new_complications")),
        )
    else:
        parsed_outcomes = ChapterOutcomes()

    return ChapterData(
        is_chapter_boundary=as_bool(data.get("is_chapter_boundary"), False),
        title=as_string(data.get("title"), "Untitled Chapter"),
        summary=as_string(data.get("summary"), ""),
        outcomes=parsed_outcomes,
    )


async def extract_chapter_boundary(
    ctx: StageContext,
    *,
    events: Sequence[TimestampedEvent],
    narrative: NarrativeState,
    chapter_index: int,
    start: NarrativeDateTime,
    end: NarrativeDateTime,
    primary_location: str,
    force_create: bool = False,
) -> ChapterExtractionResult:
    """Ask whether a detected discontinuity really closes a chapter.

    The answer's ``is_chapter_boundary = false`` is a veto unless
    *force_create* is set. Failures other than an abort count as "not a
    boundary".
    """
    prompt = build_prompt(
        SYSTEM_PROMPT,
        "A location change or time jump was detected. Decide whether these events form a "
        "finished chapter; if so give it a short title, a 2-3 sentence summary and outcomes.",
        {
            "current_events": format_events_for_injection(list(events)),
            "current_relationships": format_relationships_for_prompt(
                narrative.relationships, include_secrets=ctx.settings.include_relationship_secrets,
            ),
        },
        CHAPTER_EXAMPLE,
    )

    try:
        data = await run_stage(ctx, "chapter", "chapter_boundary", prompt)
    except ExtractionAborted:
        raise
    except TrackerError:
        logger.warning(
            "Chapter extraction failed; treating as no boundary",
            extra={"stage": "chapter", "message_id": ctx.message_id}, exc_info=True,
        )
        return ChapterExtractionResult(is_chapter_boundary=False)

    result = parse_chapter_data(data)
    if not force_create and not result.is_chapter_boundary:
        return ChapterExtractionResult(is_chapter_boundary=False)

    chapter = create_empty_chapter(chapter_index).model_copy(update={
        "title": result.title,
        "summary": result.summary,
        "outcomes": result.outcomes,
    })
    return ChapterExtractionResult(
        is_chapter_boundary=True,
        chapter=finalize_chapter(chapter, events, start, end, primary_location),
    )
