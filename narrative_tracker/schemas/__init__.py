# Tracked state and narrative models
from .state import (
    NARRATIVE_STATE_VERSION,
    RelationshipStatus,
    TensionLevel,
    TensionDirection,
    TensionType,
    WeatherType,
    BoundaryReason,
    NarrativeDateTime,
    LocationState,
    Climate,
    CharacterOutfit,
    Character,
    Tension,
    Scene,
    DirectionalChange,
    MilestoneEvent,
    RelationshipSignal,
    TimestampedEvent,
    RelationshipAttitude,
    RelationshipVersion,
    Relationship,
    ChapterOutcomes,
    TimeRange,
    Chapter,
    ChapterEndedSummary,
    TrackedState,
    StoredStateData,
    NarrativeState,
)

# HTTP bodies
from .api import (
    CreateChatRequest,
    AppendMessageRequest,
    MessageResponse,
    ChatResponse,
    ExtractRequest,
    ExtractResponse,
    AbortResponse,
    MessageStateResponse,
    NarrativeResponse,
)
