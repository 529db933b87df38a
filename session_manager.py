"""
Owns the single active browsing session.

A session starts on the first qualifying visit, accumulates visits (each with
its referrer inside the originating context), and is archived on an explicit
end, after a period of inactivity, or once no tracked contexts remain open.
Every change is written through to the key-value store before it is applied
in memory, so a persistence failure leaves the manager untouched and reaches
the caller.
"""
import asyncio
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Collection, Dict, List, Tuple

from errors import SessionNotFoundError, StoreError
from state import ArticleIdentity, ContextId, Session, SessionData, Visit
from storage import (
    CURRENT_SESSION_KEY,
    IS_TRACKING_KEY,
    SESSIONS_KEY,
    KeyValueStore,
    initialize_storage,
)

logger = logging.getLogger("wikipath.session")

SESSION_TIMEOUT = timedelta(minutes=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id(now: datetime) -> str:
    millis = int(now.timestamp() * 1000)
    return f"session_{millis}_{uuid.uuid4().hex[:9]}"


def _dump(session: Session | None) -> Dict[str, Any] | None:
    if session is None:
        return None
    return session.model_dump(mode="json", by_alias=True)


class InactivityTimer:
    """A single cancellable deferred callback running on the asyncio loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, delay: float, callback: Callable[[], None]) -> None:
        """Replaces any pending callback with ``callback`` after ``delay`` seconds."""
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()

        async def _fire() -> None:
            await asyncio.sleep(max(delay, 0.0))
            if self._task is asyncio.current_task():
                self._task = None
            try:
                callback()
            except Exception:
                logger.exception("Inactivity callback failed")

        self._task = loop.create_task(_fire())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


class SessionManager:
    """
    Single writer for the active session record. All mutating operations run
    under one re-entrant lock; readers only ever receive copies.
    """

    def __init__(
        self,
        store: KeyValueStore,
        timer: InactivityTimer | None = None,
        timeout: timedelta = SESSION_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._timer = timer if timer is not None else InactivityTimer()
        self.timeout = timeout
        self._clock = clock
        self._lock = threading.RLock()
        self._active: Session | None = None
        self._history: List[Session] = []
        self._is_tracking = True
        # Bumped on every visit and archive so a stale timer firing is ignored.
        self._generation = 0
        self._loaded = False

    # --- Loading ---

    def load(self) -> None:
        """
        Reads persisted state. A session left active by a previous run is
        archived straight away if it has been idle past the timeout, otherwise
        the timer is armed for the time it has left.
        """
        with self._lock:
            initialize_storage(self._store)
            self._history = [Session.model_validate(raw) for raw in self._store.get(SESSIONS_KEY) or []]
            self._is_tracking = bool(self._store.get(IS_TRACKING_KEY, True))
            raw_current = self._store.get(CURRENT_SESSION_KEY)
            self._active = Session.model_validate(raw_current) if raw_current else None
            self._loaded = True
            logger.info(
                "Loaded %d archived sessions (active=%s, tracking=%s)",
                len(self._history),
                self._active.id if self._active else None,
                self._is_tracking,
            )

            if self._active is not None:
                now = self._clock()
                idle = now - self._active.last_activity
                if idle >= self.timeout:
                    logger.info("Restored session %s was idle for %s. Archiving.", self._active.id, idle)
                    self._archive(now)
                else:
                    self._arm_timer(self.timeout - idle)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    # --- Lifecycle ---

    def start(self, now: datetime | None = None) -> Session:
        """Starts a session. Does nothing if one is already active."""
        with self._lock:
            self._ensure_loaded()
            if self._active is not None:
                return self._active.model_copy(deep=True)
            now = now or self._clock()
            session = self._new_session(now)
            self._commit_active(session)
            logger.info("Started new session: %s", session.id)
            return session.model_copy(deep=True)

    def record_visit(
        self,
        context: ContextId,
        identity: ArticleIdentity,
        observed_at: datetime | None = None,
    ) -> Visit | None:
        """
        Appends a visit to the active session, starting one if needed.

        The referrer is the article of the latest visit from the same context,
        unless that is the article being visited now. Returns None without
        touching any state while tracking is paused.
        """
        with self._lock:
            self._ensure_loaded()
            if not self._is_tracking:
                logger.debug("Tracking paused. Ignoring visit to %s", identity.title)
                return None

            now = observed_at or self._clock()
            started = self._active is None
            session = self._new_session(now) if started else self._active
            if session.visits and now < session.visits[-1].timestamp:
                # Clock went backwards; keep the visit log ordered.
                now = session.visits[-1].timestamp

            visit = Visit(
                article=identity.title,
                url=identity.url,
                language=identity.language,
                timestamp=now,
                referrer=self._referrer_for(session, context, identity.title),
                originating_context=context,
            )
            updated = session.model_copy(update={
                "visits": [*session.visits, visit],
                "last_activity": now,
            })
            self._commit_active(updated)
            if started:
                logger.info("Started new session: %s", updated.id)
            logger.debug(
                "Tracked visit: %s (referrer=%s, context=%s, visits=%d)",
                visit.article, visit.referrer, context, len(updated.visits),
            )
            return visit

    def end(self, now: datetime | None = None) -> Session | None:
        """Archives the active session. Does nothing if there is none."""
        with self._lock:
            self._ensure_loaded()
            if self._active is None:
                return None
            return self._archive(now or self._clock())

    def end_if_no_contexts(self, open_contexts: Collection[ContextId]) -> Session | None:
        """Ends the active session once no tracked contexts remain open."""
        with self._lock:
            self._ensure_loaded()
            if open_contexts or self._active is None:
                return None
            logger.info("No tracked contexts remaining, ending session %s", self._active.id)
            return self._archive(self._clock())

    def shutdown(self) -> None:
        """Stops the timer. The active session stays persisted for the next run."""
        with self._lock:
            self._timer.cancel()

    def now(self) -> datetime:
        return self._clock()

    # --- Tracking flag ---

    @property
    def is_tracking(self) -> bool:
        with self._lock:
            self._ensure_loaded()
            return self._is_tracking

    def toggle_tracking(self) -> bool:
        """Flips the tracking flag. The active session is left as it is."""
        with self._lock:
            self._ensure_loaded()
            new_state = not self._is_tracking
            self._store.set(IS_TRACKING_KEY, new_state)
            self._is_tracking = new_state
            logger.info("Tracking %s", "resumed" if new_state else "paused")
            return new_state

    # --- Queries ---

    def get_active(self) -> Session | None:
        with self._lock:
            self._ensure_loaded()
            return self._active.model_copy(deep=True) if self._active else None

    def get_history(self) -> Tuple[Session, ...]:
        """Archived sessions in the order they were archived."""
        with self._lock:
            self._ensure_loaded()
            return tuple(session.model_copy(deep=True) for session in self._history)

    def session_data(self) -> SessionData:
        with self._lock:
            return SessionData(
                current_session=self.get_active(),
                sessions=list(self.get_history()),
                is_tracking=self.is_tracking,
            )

    def find_session(self, session_id: str) -> Session:
        """Snapshot of the active session or an archived one, checked in that order."""
        with self._lock:
            self._ensure_loaded()
            if self._active is not None and self._active.id == session_id:
                return self._active.model_copy(deep=True)
            for session in self._history:
                if session.id == session_id:
                    return session.model_copy(deep=True)
        raise SessionNotFoundError(session_id)

    # --- Internals ---

    def _new_session(self, now: datetime) -> Session:
        return Session(id=generate_session_id(now), started_at=now, last_activity=now)

    @staticmethod
    def _referrer_for(session: Session, context: ContextId, article: str) -> str | None:
        for previous in reversed(session.visits):
            if previous.originating_context == context:
                return previous.article if previous.article != article else None
        return None

    def _archive(self, now: datetime) -> Session:
        active = self._active
        ended = active.model_copy(update={"ended_at": max(now, active.last_activity)})
        history = [*self._history, ended]
        self._store.set_many({
            SESSIONS_KEY: [_dump(session) for session in history],
            CURRENT_SESSION_KEY: None,
        })

        self._history = history
        self._active = None
        self._generation += 1
        self._timer.cancel()
        logger.info("Ended session: %s (%d visits)", ended.id, len(ended.visits))
        return ended.model_copy(deep=True)

    def _commit_active(self, session: Session) -> None:
        """
        Persists ``session`` as the active one and restarts the inactivity
        timer. The timer is scheduled first so a scheduling error (no running
        event loop) leaves nothing changed, and a failed write puts the
        previous timer back.
        """
        generation = self._generation + 1
        self._arm_timer(self.timeout, generation)
        try:
            self._store.set(CURRENT_SESSION_KEY, _dump(session))
        except Exception:
            self._restore_timer()
            raise
        self._active = session
        self._generation = generation

    def _restore_timer(self) -> None:
        if self._active is None:
            self._timer.cancel()
        else:
            self._arm_timer(self.timeout - (self._clock() - self._active.last_activity))

    def _arm_timer(self, delay: timedelta, generation: int | None = None) -> None:
        if generation is None:
            generation = self._generation
        self._timer.schedule(delay.total_seconds(), lambda: self._on_inactivity(generation))

    def _on_inactivity(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._active is None:
                return
            logger.info("Session %s timed out due to inactivity", self._active.id)
            try:
                self._archive(self._clock())
            except StoreError:
                logger.exception("Failed to archive timed-out session %s. Retrying later.", self._active.id)
                self._arm_timer(self.timeout)
