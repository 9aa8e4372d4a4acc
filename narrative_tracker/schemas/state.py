"""
Narrative state schemas.

Everything the tracker stores lives here: the per-message ``TrackedState``
snapshot, the events and relationships it references, and the chat-scoped
``NarrativeState`` aggregate. Models are serialised with
``model_dump(mode="json")`` into the host's opaque storage slots and read back
with ``model_validate``.

Characters are referenced by name everywhere, so relationships and characters
are flat collections with no ownership cycle between them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

NARRATIVE_STATE_VERSION = 2

Pair = Tuple[str, str]


# ─── Enums ────────────────────────────────────────────────────────────────────

class RelationshipStatus(str, Enum):
    """Relationship status, totally ordered by ``rank``.

    ``complicated`` shares rank 0 with ``strangers`` and is never produced by
    rank arithmetic.
    """

    def __new__(cls, value: str, rank: int):
        member = str.__new__(cls, value)
        member._value_ = value
        member.rank = rank
        return member

    hostile = ("hostile", -2)
    strained = ("strained", -1)
    strangers = ("strangers", 0)
    complicated = ("complicated", 0)
    acquaintances = ("acquaintances", 1)
    friendly = ("friendly", 2)
    close = ("close", 3)
    intimate = ("intimate", 4)

    @classmethod
    def from_rank(cls, rank: int) -> "RelationshipStatus":
        for status in cls:
            if status.rank == rank and status is not cls.complicated:
                return status
        return cls.acquaintances

    @classmethod
    def parse(cls, value: Any) -> "RelationshipStatus":
        """Validate an untrusted value, defaulting to ``acquaintances``."""
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.acquaintances


class TensionLevel(str, Enum):
    """Scene tension, ordered from calmest to most intense."""
    relaxed = "relaxed"
    aware = "aware"
    guarded = "guarded"
    tense = "tense"
    charged = "charged"
    volatile = "volatile"
    explosive = "explosive"

    @property
    def ordinal(self) -> int:
        return _TENSION_ORDER.index(self.value)


_TENSION_ORDER = [level.value for level in TensionLevel]


class TensionDirection(str, Enum):
    escalating = "escalating"
    stable = "stable"
    decreasing = "decreasing"


class TensionType(str, Enum):
    confrontation = "confrontation"
    intimate = "intimate"
    vulnerable = "vulnerable"
    celebratory = "celebratory"
    negotiation = "negotiation"
    suspense = "suspense"
    conversation = "conversation"


class WeatherType(str, Enum):
    sunny = "sunny"
    cloudy = "cloudy"
    snowy = "snowy"
    rainy = "rainy"
    windy = "windy"
    thunderstorm = "thunderstorm"


class BoundaryReason(str, Enum):
    location_change = "location_change"
    time_jump = "time_jump"
    both = "both"
    manual = "manual"


# ─── Event and milestone vocabularies ─────────────────────────────────────────

EVENT_TYPES: Tuple[str, ...] = (
    # conversation & social
    "conversation", "confession", "argument", "negotiation",
    # discovery
    "discovery", "secret_shared", "secret_revealed",
    # emotional
    "emotional", "supportive", "rejection", "comfort", "apology", "forgiveness",
    # bonding
    "laugh", "gift", "compliment", "tease", "flirt", "date", "i_love_you",
    "sleepover", "shared_meal", "shared_activity",
    # romantic intimacy
    "intimate_touch", "intimate_kiss", "intimate_embrace", "intimate_heated",
    # sexual activity
    "intimate_foreplay", "intimate_oral", "intimate_manual",
    "intimate_penetrative", "intimate_climax",
    # action
    "action", "combat", "danger",
    # commitments
    "decision", "promise", "betrayal", "lied",
    # life events
    "exclusivity", "marriage", "pregnancy", "childbirth",
    # social
    "social", "achievement",
)

MILESTONE_TYPES: Tuple[str, ...] = (
    "first_meeting", "first_conflict", "first_alliance",
    "confession", "emotional_intimacy",
    "first_laugh", "first_gift", "first_date", "first_i_love_you",
    "first_sleepover", "first_shared_meal",
    "first_touch", "first_kiss", "first_embrace", "first_heated",
    "first_foreplay", "first_oral", "first_manual", "first_penetrative",
    "first_climax",
    "promised_exclusivity", "marriage", "pregnancy", "had_child",
    "promise_made", "promise_broken", "betrayal", "reconciliation", "sacrifice",
    "secret_shared", "secret_revealed",
    "major_argument", "major_reconciliation",
)

EVENT_TYPE_TO_MILESTONE: Dict[str, str] = {
    "laugh": "first_laugh",
    "gift": "first_gift",
    "date": "first_date",
    "i_love_you": "first_i_love_you",
    "sleepover": "first_sleepover",
    "shared_meal": "first_shared_meal",
    "intimate_touch": "first_touch",
    "intimate_kiss": "first_kiss",
    "intimate_embrace": "first_embrace",
    "intimate_heated": "first_heated",
    "intimate_foreplay": "first_foreplay",
    "intimate_oral": "first_oral",
    "intimate_manual": "first_manual",
    "intimate_penetrative": "first_penetrative",
    "intimate_climax": "first_climax",
    "confession": "confession",
    "secret_shared": "secret_shared",
    "secret_revealed": "secret_revealed",
    "promise": "promise_made",
    "betrayal": "betrayal",
    "exclusivity": "promised_exclusivity",
    "marriage": "marriage",
    "pregnancy": "pregnancy",
    "childbirth": "had_child",
    "argument": "first_conflict",
    "combat": "first_conflict",
}

# Without one of these a relationship cannot rise above "close"
ROMANTIC_GATE_MILESTONES = frozenset({
    "first_kiss",
    "first_date",
    "first_i_love_you",
    "promised_exclusivity",
    "marriage",
    "first_foreplay",
    "first_oral",
    "first_manual",
    "first_penetrative",
    "first_climax",
})


# ─── Time, place, climate ─────────────────────────────────────────────────────

class NarrativeDateTime(BaseModel):
    year: int
    month: int = Field(ge=1, le=12)
    day: int = Field(ge=1, le=31)
    hour: int = Field(ge=0, le=23)
    minute: int = Field(ge=0, le=59)
    second: int = Field(default=0, ge=0, le=59)
    day_of_week: str = "Monday"


class LocationState(BaseModel):
    area: str
    place: str
    position: str
    props: List[str] = Field(default_factory=list)


class Climate(BaseModel):
    weather: WeatherType = WeatherType.sunny
    temperature: float = 70  # Fahrenheit
    conditions: Optional[str] = None


# ─── Characters and scene ─────────────────────────────────────────────────────

class CharacterOutfit(BaseModel):
    head: Optional[str] = None
    neck: Optional[str] = None
    jacket: Optional[str] = None
    back: Optional[str] = None
    torso: Optional[str] = None
    legs: Optional[str] = None
    footwear: Optional[str] = None
    socks: Optional[str] = None
    underwear: Optional[str] = None


OUTFIT_SLOTS: Tuple[str, ...] = tuple(CharacterOutfit.model_fields)


class Character(BaseModel):
    name: str
    position: str = ""
    activity: Optional[str] = None
    mood: List[str] = Field(default_factory=list)
    physical_state: List[str] = Field(default_factory=list)
    outfit: CharacterOutfit = Field(default_factory=CharacterOutfit)


class Tension(BaseModel):
    level: TensionLevel = TensionLevel.relaxed
    direction: TensionDirection = TensionDirection.stable
    type: TensionType = TensionType.conversation


class Scene(BaseModel):
    topic: str
    tone: str = "neutral"
    tension: Tension = Field(default_factory=Tension)


# ─── Events ───────────────────────────────────────────────────────────────────

class DirectionalChange(BaseModel):
    """One character's feeling toward another shifted."""
    from_character: str
    toward: str
    feeling: str


class MilestoneEvent(BaseModel):
    type: str
    description: str = ""
    timestamp: NarrativeDateTime
    location: str = ""  # "place, area"
    message_id: Optional[int] = None


class RelationshipSignal(BaseModel):
    """Cheap relationship hint emitted alongside an event."""
    pair: Pair
    changes: List[DirectionalChange] = Field(default_factory=list)
    milestones: List[MilestoneEvent] = Field(default_factory=list)


class TimestampedEvent(BaseModel):
    timestamp: NarrativeDateTime
    summary: str
    event_types: List[str] = Field(default_factory=lambda: ["conversation"])
    # Which character pairs each event type applies to
    event_type_pairs: Dict[str, List[Pair]] = Field(default_factory=dict)
    tension_type: TensionType = TensionType.conversation
    tension_level: TensionLevel = TensionLevel.relaxed
    witnesses: List[str] = Field(default_factory=list)
    location: str = ""
    relationship_signal: Optional[RelationshipSignal] = None
    # Join key for every re-extraction reconciliation
    message_id: Optional[int] = None


# ─── Relationships ────────────────────────────────────────────────────────────

class RelationshipAttitude(BaseModel):
    feelings: List[str] = Field(default_factory=list)
    secrets: List[str] = Field(default_factory=list)
    wants: List[str] = Field(default_factory=list)


class RelationshipVersion(BaseModel):
    message_id: int
    status: RelationshipStatus
    a_to_b: RelationshipAttitude
    b_to_a: RelationshipAttitude
    milestones: List[MilestoneEvent] = Field(default_factory=list)


class Relationship(BaseModel):
    """Asymmetric relationship between an alphabetically sorted pair."""
    pair: Pair
    status: RelationshipStatus = RelationshipStatus.strangers
    a_to_b: RelationshipAttitude = Field(default_factory=RelationshipAttitude)
    b_to_a: RelationshipAttitude = Field(default_factory=RelationshipAttitude)
    milestones: List[MilestoneEvent] = Field(default_factory=list)
    versions: List[RelationshipVersion] = Field(default_factory=list)


# ─── Chapters ─────────────────────────────────────────────────────────────────

class ChapterOutcomes(BaseModel):
    relationship_changes: List[str] = Field(default_factory=list)
    secrets_revealed: List[str] = Field(default_factory=list)
    new_complications: List[str] = Field(default_factory=list)


class TimeRange(BaseModel):
    start: NarrativeDateTime
    end: NarrativeDateTime


class Chapter(BaseModel):
    index: int
    title: str
    summary: str = ""
    time_range: Optional[TimeRange] = None
    primary_location: str = ""
    events: List[TimestampedEvent] = Field(default_factory=list)
    outcomes: ChapterOutcomes = Field(default_factory=ChapterOutcomes)


class ChapterEndedSummary(BaseModel):
    index: int
    title: str
    summary: str
    event_count: int
    reason: BoundaryReason


# ─── Snapshots ────────────────────────────────────────────────────────────────

class TrackedState(BaseModel):
    """Derived narrative facts attached to one chat message."""
    time: Optional[NarrativeDateTime] = None
    location: Optional[LocationState] = None
    climate: Optional[Climate] = None
    scene: Optional[Scene] = None
    characters: Optional[List[Character]] = None
    current_chapter: int = 0
    current_events: Optional[List[TimestampedEvent]] = None
    chapter_ended: Optional[ChapterEndedSummary] = None


class StoredStateData(BaseModel):
    state: TrackedState
    extracted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NarrativeState(BaseModel):
    """Chat-scoped aggregate stored on the first message of the chat."""
    version: int = NARRATIVE_STATE_VERSION
    chapters: List[Chapter] = Field(default_factory=list)
    relationships: List[Relationship] = Field(default_factory=list)
    # Opaque caches owned by the weather provider
    forecast_cache: List[Dict[str, Any]] = Field(default_factory=list)
    location_mappings: List[Dict[str, Any]] = Field(default_factory=list)
