"""
Defines the typed records for browsing sessions and the message models exchanged
with the navigation event source and the popup/visualization clients.
"""
from datetime import datetime
from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Browser tab ids are integers; other event sources may use strings.
ContextId = Union[int, str]


class _Record(BaseModel):
    """camelCase on the wire and in storage, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenRecord(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# --- Session Records ---

class ArticleIdentity(_FrozenRecord):
    """The canonical identity of a trackable article page."""
    title: str = Field(..., description="Decoded article title with underscores replaced by spaces.")
    url: str = Field(..., description="The URL exactly as it was navigated to.")
    language: str = Field(..., description="Locale code taken from the subdomain label.")


class Visit(_FrozenRecord):
    """One classified navigation to an article. Never edited once appended."""
    article: str
    url: str
    language: str = "en"
    timestamp: datetime
    referrer: str | None = None
    originating_context: ContextId


class Session(_Record):
    """
    A bounded run of visits. Only the SessionManager replaces the active
    session; everyone else works on copies.
    """
    id: str
    started_at: datetime
    ended_at: datetime | None = None
    visits: List[Visit] = Field(default_factory=list)
    last_activity: datetime

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


# --- Derived Graph ---

class GraphNode(_FrozenRecord):
    id: str
    label: str
    url: str
    language: str
    visit_count: int = Field(..., ge=1)
    first_visit: datetime


class GraphEdge(_FrozenRecord):
    source: str
    target: str
    timestamp: datetime
    order: int = Field(..., ge=0, description="Index of the generating visit within the session.")


class SessionGraph(_Record):
    session_id: str
    started_at: datetime
    ended_at: datetime | None = None
    nodes: List[GraphNode]
    edges: List[GraphEdge]


# --- Messages (tagged by ``action``) ---

class NavigationEvent(_Record):
    action: Literal["navigation"] = "navigation"
    context: ContextId
    url: str
    load_complete: bool = True


class ContextClosedEvent(_Record):
    action: Literal["contextClosed"] = "contextClosed"
    context: ContextId
    # The browser's own view of the tracked contexts still open, when it has one.
    remaining_contexts: List[ContextId] | None = None


class GetSessionData(_Record):
    action: Literal["getSessionData"] = "getSessionData"


class ToggleTracking(_Record):
    action: Literal["toggleTracking"] = "toggleTracking"


class ClearSession(_Record):
    action: Literal["clearSession"] = "clearSession"


class ExportSession(_Record):
    action: Literal["exportSession"] = "exportSession"


Command = Annotated[
    Union[GetSessionData, ToggleTracking, ClearSession, ExportSession],
    Field(discriminator="action"),
]

Message = Annotated[
    Union[NavigationEvent, ContextClosedEvent, GetSessionData, ToggleTracking, ClearSession, ExportSession],
    Field(discriminator="action"),
]


# --- Responses ---

class SessionData(_Record):
    current_session: Session | None = None
    sessions: List[Session] = Field(default_factory=list)
    is_tracking: bool


class TrackingState(_Record):
    is_tracking: bool


class ClearResult(_Record):
    success: bool


class NavigationResult(_Record):
    recorded: bool
    visit: Visit | None = None


class ContextClosedResult(_Record):
    session_ended: bool


class SessionSummary(_Record):
    """Headline numbers for the popup."""
    session_id: str | None = None
    visit_count: int = 0
    duration: str = "0m"
    recent_articles: List[str] = Field(default_factory=list)
    past_sessions: int = 0
    is_tracking: bool = True


class HistoryEntry(_Record):
    session_id: str
    started_at: datetime
    ended_at: datetime | None = None
    visit_count: int
    article_count: int
    duration: str
