import asyncio
import unittest
import sys
import os

# Add project root and this directory to sys.path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from dispatcher import ContextRegistry, EventDispatcher
from errors import DispatcherNotRunning, StoreError
from session_manager import SessionManager
from storage import CURRENT_SESSION_KEY, InMemoryStore
from state import (
    ClearSession,
    ContextClosedEvent,
    ExportSession,
    GetSessionData,
    NavigationEvent,
    SessionData,
    ToggleTracking,
)
from fakes import FailingStore, FakeClock, FakeTimer, article, at


def wiki(title: str) -> str:
    return f"https://en.wikipedia.org/wiki/{title}"


class DispatcherTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.store = FailingStore()
        self.manager = SessionManager(self.store, timer=FakeTimer(), clock=FakeClock())
        self.manager.load()
        self.dispatcher = EventDispatcher(self.manager, maxsize=4)
        self.dispatcher.start()

    async def asyncTearDown(self):
        await self.dispatcher.stop()

    async def navigate(self, context, url, load_complete=True):
        return await self.dispatcher.submit(NavigationEvent(context=context, url=url, load_complete=load_complete))


class TestNavigation(DispatcherTestCase):

    async def test_completed_article_load_is_recorded(self):
        result = await self.navigate(7, wiki("Graph_theory"))
        self.assertTrue(result.recorded)
        self.assertEqual(result.visit.article, "Graph theory")
        self.assertEqual(result.visit.originating_context, 7)

    async def test_incomplete_load_is_ignored(self):
        result = await self.navigate(7, wiki("Graph_theory"), load_complete=False)
        self.assertFalse(result.recorded)
        self.assertIsNone(self.manager.get_active())

    async def test_non_article_is_ignored(self):
        for url in (wiki("Special:Random"), "https://example.com/"):
            result = await self.navigate(7, url)
            self.assertFalse(result.recorded)
        self.assertIsNone(self.manager.get_active())

    async def test_interleaved_contexts_lose_no_visits(self):
        events = [
            NavigationEvent(context=context, url=wiki(f"Page_{context}_{step}"))
            for step in range(10)
            for context in range(5)
        ]
        results = await asyncio.gather(*(self.dispatcher.submit(event) for event in events))
        self.assertTrue(all(result.recorded for result in results))

        visits = self.manager.get_active().visits
        self.assertEqual(len(visits), 50)
        for visit in visits:
            context, step = visit.article.split(" ")[1:]
            expected = None if step == "0" else f"Page {context} {int(step) - 1}"
            self.assertEqual(visit.referrer, expected)


class TestContextClosed(DispatcherTestCase):

    async def test_session_ends_after_last_tracked_context_closes(self):
        await self.navigate(1, wiki("A"))
        await self.navigate(2, wiki("B"))

        first = await self.dispatcher.submit(ContextClosedEvent(context=1))
        self.assertFalse(first.session_ended)
        self.assertIsNotNone(self.manager.get_active())

        second = await self.dispatcher.submit(ContextClosedEvent(context=2))
        self.assertTrue(second.session_ended)
        self.assertIsNone(self.manager.get_active())
        self.assertEqual(len(self.manager.get_history()), 1)

    async def test_context_that_left_wikipedia_is_not_tracked(self):
        await self.navigate(1, wiki("A"))
        await self.navigate(1, "https://example.com/")
        result = await self.dispatcher.submit(ContextClosedEvent(context=99))
        self.assertTrue(result.session_ended)

    async def test_special_pages_keep_a_context_tracked(self):
        await self.navigate(1, wiki("A"))
        await self.navigate(2, wiki("Special:Search"))
        result = await self.dispatcher.submit(ContextClosedEvent(context=1))
        self.assertFalse(result.session_ended)

    async def test_browser_supplied_remaining_contexts_win(self):
        await self.navigate(1, wiki("A"))
        await self.navigate(2, wiki("B"))
        result = await self.dispatcher.submit(ContextClosedEvent(context=1, remaining_contexts=[]))
        self.assertTrue(result.session_ended)


class TestRestoredSession(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        previous = SessionManager(InMemoryStore(), timer=FakeTimer(), clock=FakeClock())
        previous.record_visit(7, article("A"))
        store = InMemoryStore({
            CURRENT_SESSION_KEY: previous.get_active().model_dump(mode="json", by_alias=True),
        })
        self.manager = SessionManager(store, timer=FakeTimer(), clock=FakeClock(at(5)))
        self.manager.load()
        self.dispatcher = EventDispatcher(self.manager)
        self.dispatcher.start()

    async def asyncTearDown(self):
        await self.dispatcher.stop()

    async def test_restored_contexts_count_as_open(self):
        self.assertEqual(self.dispatcher.registry.open_contexts(), frozenset({7}))
        result = await self.dispatcher.submit(ContextClosedEvent(context=99))
        self.assertFalse(result.session_ended)
        self.assertIsNotNone(self.manager.get_active())

    async def test_closing_restored_context_ends_session(self):
        result = await self.dispatcher.submit(ContextClosedEvent(context=7))
        self.assertTrue(result.session_ended)
        self.assertEqual(len(self.manager.get_history()), 1)


class TestCommands(DispatcherTestCase):

    async def test_get_and_export_share_payload_shape(self):
        await self.navigate(1, wiki("A"))
        data = await self.dispatcher.submit(GetSessionData())
        exported = await self.dispatcher.submit(ExportSession())
        self.assertIsInstance(data, SessionData)
        self.assertEqual(data, exported)
        self.assertEqual(data.current_session.visits[0].article, "A")
        self.assertTrue(data.is_tracking)

    async def test_toggle_tracking_gates_visits_only(self):
        await self.navigate(1, wiki("A"))
        before = self.manager.get_active()

        paused = await self.dispatcher.submit(ToggleTracking())
        self.assertFalse(paused.is_tracking)
        skipped = await self.navigate(1, wiki("B"))
        self.assertFalse(skipped.recorded)
        self.assertEqual(self.manager.get_active(), before)

        resumed = await self.dispatcher.submit(ToggleTracking())
        self.assertTrue(resumed.is_tracking)
        recorded = await self.navigate(1, wiki("C"))
        self.assertEqual(recorded.visit.referrer, "A")

    async def test_clear_session_archives(self):
        await self.navigate(1, wiki("A"))
        result = await self.dispatcher.submit(ClearSession())
        self.assertTrue(result.success)
        data = await self.dispatcher.submit(GetSessionData())
        self.assertIsNone(data.current_session)
        self.assertEqual(len(data.sessions), 1)

    async def test_clear_without_session_succeeds(self):
        result = await self.dispatcher.submit(ClearSession())
        self.assertTrue(result.success)
        self.assertEqual(self.manager.get_history(), ())


class TestFailures(DispatcherTestCase):

    async def test_store_failure_reaches_submitter_and_dispatcher_survives(self):
        self.store.fail = True
        with self.assertRaises(StoreError):
            await self.navigate(1, wiki("A"))
        self.store.fail = False
        result = await self.navigate(1, wiki("A"))
        self.assertTrue(result.recorded)
        self.assertEqual(len(self.manager.get_active().visits), 1)

    async def test_unknown_message_type(self):
        with self.assertRaises(TypeError):
            await self.dispatcher.submit(object())

    async def test_submit_after_stop(self):
        await self.dispatcher.stop()
        with self.assertRaises(DispatcherNotRunning):
            await self.dispatcher.submit(GetSessionData())


class TestContextRegistry(unittest.TestCase):

    def test_registry_tracks_content_host_contexts(self):
        registry = ContextRegistry()
        registry.observe(1, wiki("A"))
        registry.observe(2, "https://example.com/")
        self.assertEqual(registry.open_contexts(), frozenset({1}))
        registry.close(1)
        registry.close(3)
        self.assertEqual(registry.open_contexts(), frozenset())


if __name__ == '__main__':
    unittest.main()
