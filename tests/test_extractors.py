"""Tests for the individual extraction stages, driven by a scripted generator."""

import asyncio

import pytest

from narrative_tracker.errors import ExtractionAborted, ExtractionParseError, GeneratorError
from narrative_tracker.extractors.extract_chapter import extract_chapter_boundary, parse_chapter_data
from narrative_tracker.extractors.extract_characters import extract_characters, parse_characters
from narrative_tracker.extractors.extract_climate import ClimateResult, extract_climate, parse_climate
from narrative_tracker.extractors.extract_event import (
    build_event,
    infer_milestone_types,
    parse_event_types,
    parse_relationship_signal,
)
from narrative_tracker.extractors.extract_location import extract_location, parse_location
from narrative_tracker.extractors.extract_relationships import (
    extract_initial_relationship,
    parse_relationship,
    refresh_relationship,
)
from narrative_tracker.extractors.extract_scene import extract_scene, should_extract_scene
from narrative_tracker.extractors.extract_time import apply_time_delta, extract_time, parse_datetime
from narrative_tracker.schemas.state import (
    Climate,
    MilestoneEvent,
    NarrativeState,
    RelationshipStatus,
    Scene,
    Tension,
    TensionDirection,
    TensionLevel,
    TensionType,
    WeatherType,
)
from narrative_tracker.state.relationships import add_milestone, create_relationship

from fakes import FakeGenerator, dt, event, make_settings, place, stage_ctx


def run(coro):
    return asyncio.run(coro)


def event_milestone(kind):
    return MilestoneEvent(type=kind, timestamp=dt(), message_id=1)


# ---------------------------------------------------------------------------
# Stage plumbing
# ---------------------------------------------------------------------------

class HangingGenerator:
    """Never answers; used to abort a call that is in flight."""

    async def generate(self, prompt, *, temperature, max_tokens, cancel=None):
        await asyncio.Event().wait()


class TestStagePlumbing:

    def test_cancelled_token_skips_generator(self):
        generator = FakeGenerator({"time": {"year": 2024}})
        ctx = stage_ctx(generator)
        ctx.cancel.cancel()
        with pytest.raises(ExtractionAborted):
            run(extract_time(ctx, is_initial=True, messages="", previous=None))
        assert generator.calls == []

    def test_abort_while_generator_is_running(self):
        async def scenario():
            ctx = stage_ctx(HangingGenerator())
            task = asyncio.ensure_future(
                extract_location(ctx, is_initial=True, messages="", character_info="", previous=None)
            )
            await asyncio.sleep(0.01)
            ctx.cancel.cancel()
            with pytest.raises(ExtractionAborted):
                await task

        run(scenario())

    def test_temperature_override_reaches_generator(self):
        seen = []

        class Recording(FakeGenerator):
            async def generate(self, prompt, *, temperature, max_tokens, cancel=None):
                seen.append((temperature, max_tokens))
                return await super().generate(prompt, temperature=temperature,
                                              max_tokens=max_tokens, cancel=cancel)

        settings = make_settings(custom_temperatures={"time_datetime": 0.9}, max_response_tokens=123)
        run(extract_time(stage_ctx(Recording({"time": {}}), settings), is_initial=True, messages="", previous=None))
        assert seen == [(0.9, 123)]


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

class TestTimeStage:

    def test_initial_datetime(self):
        result = run(extract_time(
            stage_ctx(FakeGenerator({"time": {"year": 2024, "month": 6, "day": 15, "hour": 21, "minute": 5}})),
            is_initial=True, messages="Marcus: Evening.", previous=None,
        ))
        assert (result.hour, result.minute) == (21, 5)
        assert result.day_of_week == "Saturday"

    def test_out_of_range_fields_are_clamped(self):
        result = parse_datetime({"year": 2024, "month": 2, "day": 31, "hour": 30, "minute": -4})
        assert (result.month, result.day, result.hour, result.minute) == (2, 29, 23, 0)

    def test_delta_rolls_over_midnight(self):
        result = apply_time_delta(dt(hour=22), {"hours": 3})
        assert (result.day, result.hour) == (16, 1)
        assert result.day_of_week == "Sunday"

    def test_delta_never_goes_backwards(self):
        assert apply_time_delta(dt(hour=22), {"hours": -5, "minutes": -1}) == dt(hour=22)

    def test_update_uses_delta_prompt(self):
        generator = FakeGenerator({"time": {"minutes": 2}})
        result = run(extract_time(stage_ctx(generator), is_initial=False, messages="", previous=dt()))
        assert result.minute == 2
        assert "current_time" in generator.calls[0][1].user


# ---------------------------------------------------------------------------
# Location and climate
# ---------------------------------------------------------------------------

class TestLocationStage:

    def test_missing_fields_keep_previous(self):
        previous = place()
        previous.props = ["beer glass"]
        result = parse_location({"position": "At the bar"}, previous)
        assert result.place == "The Rusty Anchor"
        assert result.position == "At the bar"
        assert result.props == ["beer glass"]

    def test_no_previous_falls_back_to_default(self):
        assert parse_location("nonsense", None).area == "Unknown Area"

    def test_update(self):
        generator = FakeGenerator({"location": {"area": "Old Town", "place": "The Docks",
                                                "position": "Pier", "props": []}})
        result = run(extract_location(stage_ctx(generator), is_initial=False, messages="",
                                      character_info="", previous=place()))
        assert result.place == "The Docks"


class StubWeather:
    def __init__(self):
        self.calls = 0

    async def get_climate(self, **kwargs):
        self.calls += 1
        return ClimateResult(
            climate=Climate(weather=WeatherType.snowy, temperature=20),
            transition="Snow begins to fall.",
            forecast_cache=[{"area": "Old Town"}],
        )


class TestClimateStage:

    def test_invalid_values_fall_back(self):
        climate = parse_climate({"weather": "hail", "temperature": "cold"})
        assert climate.weather == WeatherType.sunny
        assert climate.temperature == 70

    def test_generator_path(self):
        result = run(extract_climate(
            stage_ctx(FakeGenerator({"climate": {"weather": "rainy", "temperature": 52}})),
            is_initial=True, messages="", time=dt(), location=place(), character_info="",
            previous=None, forecast_cache=[], location_mappings=[],
        ))
        assert result.climate.weather == WeatherType.rainy
        assert result.transition is None
        assert result.forecast_cache is None

    def test_weather_provider_replaces_generator(self):
        generator = FakeGenerator()
        provider = StubWeather()
        result = run(extract_climate(
            stage_ctx(generator), is_initial=True, messages="", time=dt(), location=place(),
            character_info="", previous=None, forecast_cache=[], location_mappings=[],
            weather_provider=provider,
        ))
        assert provider.calls == 1
        assert generator.calls == []
        assert result.transition == "Snow begins to fall."

    def test_provider_ignored_when_procedural_weather_is_off(self):
        provider = StubWeather()
        run(extract_climate(
            stage_ctx(FakeGenerator({"climate": {"weather": "cloudy"}}), make_settings(use_procedural_weather=False)),
            is_initial=True, messages="", time=dt(), location=place(), character_info="",
            previous=None, forecast_cache=[], location_mappings=[], weather_provider=provider,
        ))
        assert provider.calls == 0


# ---------------------------------------------------------------------------
# Characters and scene
# ---------------------------------------------------------------------------

class TestCharactersStage:

    def test_parse_wrapped_list(self):
        characters = parse_characters({"characters": [
            {"name": "Elena", "mood": ["calm", 3], "outfit": {"legs": "jeans", "head": 5}},
            {"name": ""},
            {"name": "elena", "mood": ["duplicate"]},
            "not an object",
        ]})
        assert [c.name for c in characters] == ["Elena"]
        assert characters[0].mood == ["calm"]
        assert characters[0].outfit.legs == "jeans"
        assert characters[0].outfit.head is None

    def test_non_list_raises(self):
        with pytest.raises(ExtractionParseError):
            parse_characters({"name": "Elena"})

    def test_update_accepts_bare_array(self):
        generator = FakeGenerator({"characters": '[{"name": "Marcus", "position": "bar"}]'})
        characters = run(extract_characters(
            stage_ctx(generator), is_initial=False, messages="", location=place(),
            user_info="", character_info="", previous=[],
        ))
        assert characters[0].position == "bar"


class TestSceneStage:

    def test_only_assistant_messages_by_default(self):
        assert should_extract_scene(True)
        assert not should_extract_scene(False)
        assert should_extract_scene(False, force=True)

    def test_missing_topic_fails(self):
        with pytest.raises(ExtractionParseError):
            run(extract_scene(stage_ctx(FakeGenerator({"scene": {"tone": "calm"}})), is_initial=True,
                              messages="", characters=[], character_info="", previous=None))

    def test_invalid_enums_fall_back(self):
        scene = run(extract_scene(
            stage_ctx(FakeGenerator({"scene": {"topic": "Drinks", "tension": {"level": "furious", "type": "war"}}})),
            is_initial=True, messages="", characters=[], character_info="", previous=None,
        ))
        assert scene.tension.level == TensionLevel.relaxed
        assert scene.tension.type == TensionType.conversation

    def test_direction_comes_from_level_change(self):
        previous = Scene(topic="Drinks", tension=Tension(level=TensionLevel.aware))
        scene = run(extract_scene(
            stage_ctx(FakeGenerator({"scene": {"topic": "Drinks", "tension": {
                "level": "charged", "direction": "decreasing"}}})),
            is_initial=False, messages="", characters=[], character_info="", previous=previous,
        ))
        assert scene.tension.direction == TensionDirection.escalating


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class TestEventStage:

    def _build(self, data, relationships=()):
        return build_event(
            data, message_id=4, time=dt(), location=place(),
            tension_type=TensionType.vulnerable, tension_level=TensionLevel.tense,
            relationships=list(relationships),
        )

    def test_event_types_are_filtered(self):
        assert parse_event_types(["Confession", "bogus", "confession"]) == ["confession"]
        assert parse_event_types(["bogus"]) == ["conversation"]

    def test_signal_needs_two_distinct_names(self):
        assert parse_relationship_signal({"pair": ["Elena", "elena"]}) is None
        assert parse_relationship_signal({"pair": ["Elena"]}) is None
        signal = parse_relationship_signal({"pair": ["Marcus", "Elena"], "changes": [
            {"from_character": "Elena", "toward": "Marcus", "feeling": "relieved"},
            {"from": "Elena", "feeling": "missing target"},
        ]})
        assert signal.pair == ("Elena", "Marcus")
        assert len(signal.changes) == 1

    def test_first_meeting_inferred_for_new_pair(self):
        assert infer_milestone_types(["confession", "laugh"], ("Elena", "Marcus"), None) == [
            "first_meeting", "confession", "first_laugh",
        ]

    def test_existing_milestones_are_not_inferred_again(self):
        existing = create_relationship("Elena", "Marcus")
        add_milestone(existing, event_milestone("first_laugh"))
        assert infer_milestone_types(["laugh", "gift"], ("Elena", "Marcus"), existing) == ["first_gift"]

    def test_pair_attribution_limits_milestones(self):
        types = infer_milestone_types(
            ["intimate_kiss", "laugh"], ("Elena", "Marcus"), create_relationship("Elena", "Marcus"),
            {"intimate_kiss": [("Ava", "Marcus")]},
        )
        assert types == ["first_laugh"]

    def test_build_event(self):
        built = self._build({
            "summary": "Elena admitted her past.",
            "event_types": ["confession"],
            "witnesses": ["Elena", "Marcus"],
            "relationship_signal": {"pair": ["Elena", "Marcus"]},
        })
        assert built.message_id == 4
        assert built.location == "Old Town - The Rusty Anchor"
        assert built.tension_level == TensionLevel.tense
        milestones = built.relationship_signal.milestones
        assert [m.type for m in milestones] == ["first_meeting", "confession"]
        assert all(m.message_id == 4 and m.location == "The Rusty Anchor, Old Town" for m in milestones)

    def test_empty_summary_is_no_event(self):
        assert self._build({"summary": "  ", "event_types": ["laugh"]}) is None


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------

RELATIONSHIP_ANSWER = {
    "status": "strangers",
    "attitudes": {
        "elena": {"feelings": ["curious"], "secrets": ["was a thief"], "wants": ["a fresh start"]},
        "Marcus": {"feelings": ["wary"], "wants": []},
    },
}


class TestRelationshipStage:

    def test_parse_maps_attitudes_by_name(self):
        relationship = parse_relationship(("Elena", "Marcus"), RELATIONSHIP_ANSWER)
        assert relationship.a_to_b.secrets == ["was a thief"]
        assert relationship.b_to_a.feelings == ["wary"]
        # "curious" lifts the proposed status to its floor
        assert relationship.status == RelationshipStatus.friendly

    def test_parse_legacy_layout_and_bad_status(self):
        relationship = parse_relationship(("Elena", "Marcus"), {
            "status": "besties", "a_to_b": {"feelings": []}, "b_to_a": {},
        })
        assert relationship.status == RelationshipStatus.acquaintances

    def test_initial_seeds_first_meeting(self):
        relationship = run(extract_initial_relationship(
            stage_ctx(FakeGenerator({"relationship": RELATIONSHIP_ANSWER})),
            char1="Marcus", char2="Elena", messages="", character_info="",
            message_id=3, time=dt(hour=21), location=place(),
        ))
        assert relationship.pair == ("Elena", "Marcus")
        assert [v.message_id for v in relationship.versions] == [3]
        (first,) = relationship.milestones
        assert first.type == "first_meeting"
        assert "at night" in first.description

    def test_initial_failure_returns_none(self):
        relationship = run(extract_initial_relationship(
            stage_ctx(FakeGenerator({"relationship": GeneratorError("boom")})),
            char1="Elena", char2="Marcus", messages="", character_info="",
        ))
        assert relationship is None

    def test_refresh_parse_failure_returns_none(self):
        existing = create_relationship("Elena", "Marcus", message_id=1)
        refreshed = run(refresh_relationship(
            stage_ctx(FakeGenerator({"relationship": "no json here"})),
            relationship=existing, events=[event(2)], messages="",
        ))
        assert refreshed is None

    def test_refresh_abort_propagates(self):
        ctx = stage_ctx(FakeGenerator({"relationship": RELATIONSHIP_ANSWER}))
        ctx.cancel.cancel()
        with pytest.raises(ExtractionAborted):
            run(refresh_relationship(ctx, relationship=create_relationship("Elena", "Marcus"),
                                     events=[], messages=""))


# ---------------------------------------------------------------------------
# Chapters
# ---------------------------------------------------------------------------

class TestChapterStage:

    def _extract(self, answer, force_create=False):
        return run(extract_chapter_boundary(
            stage_ctx(FakeGenerator({"chapter": answer})),
            events=[event(1), event(2)], narrative=NarrativeState(), chapter_index=3,
            start=dt(hour=9), end=dt(hour=12), primary_location="Old Town - Home",
            force_create=force_create,
        ))

    def test_parse_defaults(self):
        data = parse_chapter_data({})
        assert data.is_chapter_boundary is False
        assert data.title == "Untitled Chapter"
        assert data.summary == ""

    def test_accepted_boundary_builds_chapter(self):
        result = self._extract({"is_chapter_boundary": True, "title": "Dawn", "summary": "They left.",
                                "outcomes": {"secrets_revealed": ["the map"]}})
        assert result.is_chapter_boundary
        chapter = result.chapter
        assert (chapter.index, chapter.title) == (3, "Dawn")
        assert chapter.outcomes.secrets_revealed == ["the map"]
        assert [e.message_id for e in chapter.events] == [1, 2]
        assert chapter.time_range.end.hour == 12

    def test_veto(self):
        assert not self._extract({"is_chapter_boundary": False, "title": "Nope"}).is_chapter_boundary

    def test_force_create_overrides_veto(self):
        assert self._extract({"is_chapter_boundary": False}, force_create=True).is_chapter_boundary

    def test_failure_is_not_a_boundary(self):
        result = self._extract(GeneratorError("timeout"))
        assert not result.is_chapter_boundary
        assert result.chapter is None
