"""
Turns a session's ordered visit log into the navigation graph consumed by the
visualization, plus the small summaries shown by the popup and history views.

Everything here is a pure function of the session snapshot it is given.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List

from state import GraphEdge, GraphNode, HistoryEntry, Session, SessionGraph, SessionSummary

logger = logging.getLogger("wikipath.graph")

RECENT_ARTICLE_LIMIT = 5


def derive(session: Session) -> SessionGraph:
    """
    Builds one node per distinct article and one edge per visit that has a
    referrer. Parallel edges and cycles are kept: the result is a directed
    multigraph in visit order.
    """
    first_seen: Dict[str, dict] = {}
    counts: Dict[str, int] = {}
    edges: List[GraphEdge] = []

    for index, visit in enumerate(session.visits):
        if visit.article not in first_seen:
            # Display fields come from the first occurrence only.
            first_seen[visit.article] = {
                "id": visit.article,
                "label": visit.article,
                "url": visit.url,
                "language": visit.language or "en",
                "first_visit": visit.timestamp,
            }
        counts[visit.article] = counts.get(visit.article, 0) + 1

        if visit.referrer is not None and visit.referrer != visit.article:
            edges.append(GraphEdge(
                source=visit.referrer,
                target=visit.article,
                timestamp=visit.timestamp,
                order=index,
            ))

    nodes = [GraphNode(visit_count=counts[article], **fields) for article, fields in first_seen.items()]
    logger.debug("Derived graph for %s: %d nodes, %d edges", session.id, len(nodes), len(edges))
    return SessionGraph(
        session_id=session.id,
        started_at=session.started_at,
        ended_at=session.ended_at,
        nodes=nodes,
        edges=edges,
    )


def load_session_graph(manager, session_id: str) -> SessionGraph:
    """
    Looks the session up (active first, then history) and derives its graph.
    Raises SessionNotFoundError rather than returning an empty graph.
    """
    return derive(manager.find_session(session_id))


# --- Summaries ---

def _elapsed_minutes(start: datetime, end: datetime) -> int:
    return max(int((end - start).total_seconds() // 60), 0)


def format_elapsed(start: datetime, now: datetime) -> str:
    """Compact running duration, e.g. ``12m`` or ``1h 5m``."""
    minutes = _elapsed_minutes(start, now)
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h {minutes % 60}m"


def format_duration(start: datetime, end: datetime | None) -> str:
    """Duration of an archived session, e.g. ``12 min`` or ``1h 5m``."""
    if end is None:
        return "In progress"
    minutes = _elapsed_minutes(start, end)
    if minutes < 60:
        return f"{minutes} min"
    return f"{minutes // 60}h {minutes % 60}m"


def summarize_session(
    session: Session | None,
    now: datetime,
    past_sessions: int = 0,
    is_tracking: bool = True,
) -> SessionSummary:
    if session is None or not session.visits:
        return SessionSummary(
            session_id=session.id if session else None,
            past_sessions=past_sessions,
            is_tracking=is_tracking,
        )
    recent = [visit.article for visit in session.visits[-RECENT_ARTICLE_LIMIT:]]
    recent.reverse()
    return SessionSummary(
        session_id=session.id,
        visit_count=len(session.visits),
        duration=format_elapsed(session.started_at, now),
        recent_articles=recent,
        past_sessions=past_sessions,
        is_tracking=is_tracking,
    )


def history_entries(sessions: Iterable[Session]) -> List[HistoryEntry]:
    return [
        HistoryEntry(
            session_id=session.id,
            started_at=session.started_at,
            ended_at=session.ended_at,
            visit_count=len(session.visits),
            article_count=len({visit.article for visit in session.visits}),
            duration=format_duration(session.started_at, session.ended_at),
        )
        for session in sessions
    ]
