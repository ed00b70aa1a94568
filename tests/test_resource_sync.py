import asyncio
import itertools
import unittest

from planner_sync.cache import LocalCache, MemoryStorage
from planner_sync.config.models import SyncSettings
from planner_sync.core.clock import ManualClock
from planner_sync.core.errors import NotAuthenticatedError, SyncClosedError
from planner_sync.core.models import Record, SessionIdentity
from planner_sync.store.errors import (
    MalformedResponseError,
    ServiceUnavailableError,
    StoreRequestError,
    TransientStoreError,
)
from planner_sync.store.memory import InMemoryRemoteStore
from planner_sync.sync.resource_sync import ResourceSync


class _GatedStore(InMemoryRemoteStore):
    """Computes each page immediately but holds the response until `gate` is set."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.gate.set()

    async def fetch_page(self, resource, filters=None, cursor=None):
        page = await super().fetch_page(resource, filters, cursor)
        await self.gate.wait()
        return page


class _HeldWriteStore(InMemoryRemoteStore):
    """Holds create and update calls open until `release` is set, signalling `started` once they arrive."""

    def __init__(self, *, apply_before_hold: bool = True, **kwargs) -> None:
        super().__init__(**kwargs)
        self.apply_before_hold = apply_before_hold
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def _hold(self, write):
        self.started.set()
        if self.apply_before_hold:
            record = await write()
            await self.release.wait()
            return record
        await self.release.wait()
        return await write()

    async def create(self, resource, fields):
        return await self._hold(lambda: super(_HeldWriteStore, self).create(resource, fields))

    async def update(self, resource, record_id, fields):
        return await self._hold(lambda: super(_HeldWriteStore, self).update(resource, record_id, fields))


class ResourceSyncTestCase(unittest.IsolatedAsyncioTestCase):
    resource = "goals"

    async def asyncSetUp(self) -> None:
        self.clock = ManualClock()
        self.store = InMemoryRemoteStore(first_id=42)
        self.cache = LocalCache(MemoryStorage(), ttl_seconds=300, clock=self.clock)
        self._placeholder_ids = (f"tmp-{n}" for n in itertools.count(1))

    def make_sync(self, *, identity: SessionIdentity = SessionIdentity("student-1"), **settings) -> ResourceSync:
        return ResourceSync(
            self.resource,
            store=self.store,
            cache=self.cache,
            settings=SyncSettings(**settings),
            identity=identity,
            clock=self.clock,
            id_factory=lambda: next(self._placeholder_ids),
        )

    async def advance(self, sync: ResourceSync, seconds: float) -> None:
        self.clock.advance(seconds)
        await sync.mutator.scheduler.drain()

    def titles(self, sync: ResourceSync) -> list:
        return [r.fields.get("title") for r in sync.records]


class ReadPathTests(ResourceSyncTestCase):
    async def test_load_serves_fresh_cache_and_refetches_once_stale(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Finish FAFSA"})])
        sync = self.make_sync()

        await sync.load()
        await sync.load()
        self.assertEqual(len(self.store.calls_for("fetch_page")), 1)

        self.clock.advance(301)
        await sync.load()
        self.assertEqual(len(self.store.calls_for("fetch_page")), 2)
        self.assertEqual(self.titles(sync), ["Finish FAFSA"])

    async def test_load_more_appends_next_page(self) -> None:
        self.store.page_size = 2
        self.store.seed("goals", [Record(id=str(i), fields={"title": f"Goal {i}"}) for i in range(1, 6)])
        sync = self.make_sync()

        await sync.load()
        self.assertTrue(sync.has_more)
        await sync.load_more()
        await sync.load_more()

        self.assertEqual([r.id for r in sync.records], ["1", "2", "3", "4", "5"])
        self.assertFalse(sync.has_more)
        self.assertEqual(sync.total, 5)
        self.assertEqual(len(self.cache.get("goals").records), 5)

    async def test_filters_select_their_own_cache_entry(self) -> None:
        self.store.seed(
            "goals",
            [
                Record(id="1", fields={"title": "FAFSA", "category": "Financial"}),
                Record(id="2", fields={"title": "Essay", "category": "Academic"}),
            ],
        )
        sync = self.make_sync()

        await sync.load({"category": "Academic", "status": "All"})

        self.assertEqual(sync.cache_key, "goals?category=Academic")
        self.assertEqual(self.titles(sync), ["Essay"])
        self.assertIsNone(self.cache.get("goals"))

    async def test_unknown_filter_is_rejected(self) -> None:
        sync = self.make_sync()

        with self.assertRaises(ValueError):
            await sync.load({"studentId": "5"})

    async def test_read_failure_keeps_records_and_reports_error(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Finish FAFSA"})])
        sync = self.make_sync()
        await sync.load()

        self.store.online = False
        with self.assertLogs("planner_sync.sync.resource_sync", level="WARNING"):
            await sync.refresh()

        self.assertIsInstance(sync.last_error, TransientStoreError)
        self.assertEqual(self.titles(sync), ["Finish FAFSA"])
        self.assertEqual(sync.notices, [])

    async def test_malformed_page_shows_no_data(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Finish FAFSA"})])
        sync = self.make_sync()
        await sync.load()

        self.store.fail_next(MalformedResponseError("bad body", resource="goals"))
        with self.assertLogs("planner_sync.sync.resource_sync", level="WARNING"):
            await sync.refresh()

        self.assertEqual(sync.records, [])
        self.assertIsInstance(sync.last_error, MalformedResponseError)

    async def test_unauthenticated_session_reads_nothing_and_cannot_write(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Finish FAFSA"})])
        sync = self.make_sync(identity=SessionIdentity(""))

        self.assertEqual(await sync.load(), [])
        self.assertEqual(self.store.calls_for("fetch_page"), [])

        with self.assertRaises(NotAuthenticatedError):
            sync.create({"title": "Nope"})
        self.assertEqual([n.level for n in sync.notices], ["error"])

    async def test_late_page_after_close_is_discarded(self) -> None:
        self.store = _GatedStore()
        self.store.seed("goals", [Record(id="1", fields={"title": "Finish FAFSA"})])
        self.store.gate.clear()
        sync = self.make_sync()

        task = asyncio.create_task(sync.load())
        await asyncio.sleep(0)
        await sync.close()
        self.store.gate.set()
        await task

        self.assertEqual(sync.records, [])
        self.assertIsNone(self.cache.get("goals"))
        with self.assertRaises(SyncClosedError):
            await sync.load()

    async def test_newer_load_supersedes_slower_one(self) -> None:
        self.store = _GatedStore()
        self.store.seed(
            "goals",
            [
                Record(id="1", fields={"title": "FAFSA", "category": "Financial"}),
                Record(id="2", fields={"title": "Essay", "category": "Academic"}),
            ],
        )
        sync = self.make_sync()
        self.store.gate.clear()

        slow = asyncio.create_task(sync.load({"category": "Financial"}))
        await asyncio.sleep(0)
        fast = asyncio.create_task(sync.load({"category": "Academic"}))
        await asyncio.sleep(0)
        self.store.gate.set()
        await asyncio.gather(slow, fast)

        self.assertEqual(self.titles(sync), ["Essay"])
        self.assertEqual(sync.cache_key, "goals?category=Academic")


class OptimisticWriteTests(ResourceSyncTestCase):
    async def test_goal_created_offline_is_confirmed_after_reconnect(self) -> None:
        sync = self.make_sync()
        await sync.load()
        self.store.online = False

        placeholder_id = sync.create({"title": "Finish FAFSA", "category": "Academic"})
        self.assertEqual(placeholder_id, "tmp-1")
        self.assertEqual([(r.id, r.confirmed) for r in sync.records], [("tmp-1", False)])

        with self.assertLogs("planner_sync.sync.mutator", level="WARNING"):
            await self.advance(sync, 2.0)
        self.assertEqual([(r.id, r.confirmed) for r in sync.records], [("tmp-1", False)])
        self.assertEqual([n.level for n in sync.notices], ["warning"])
        self.assertTrue(sync.has_unsaved_changes)

        self.store.online = True
        await sync.retry_unconfirmed()

        self.assertEqual(len(sync.records), 1)
        confirmed = sync.records[0]
        self.assertEqual(confirmed.id, "42")
        self.assertTrue(confirmed.confirmed)
        self.assertEqual(confirmed.fields, {"title": "Finish FAFSA", "category": "Academic"})
        self.assertEqual([r.id for r in self.cache.get("goals").records], ["42"])
        self.assertFalse(sync.has_unsaved_changes)

    async def test_edit_to_placeholder_after_confirmation_updates_authoritative_record(self) -> None:
        sync = self.make_sync()
        await sync.load()

        placeholder_id = sync.create({"title": "Draft"})
        await self.advance(sync, 2.0)
        record_id = sync.edit(placeholder_id, {"title": "Final"})
        await self.advance(sync, 2.0)

        self.assertEqual(record_id, "42")
        self.assertEqual([r.id for r in sync.records], ["42"])
        self.assertEqual(self.store.records("goals")[0].fields["title"], "Final")
        self.assertEqual(len(self.store.calls_for("create")), 1)

    async def test_failed_edit_reverts_to_saved_value_with_error_notice(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Old"})])
        sync = self.make_sync()
        await sync.load()

        sync.edit("1", {"title": "New"})
        self.assertEqual(self.titles(sync), ["New"])

        self.store.fail_next(StoreRequestError("HTTP 400", resource="goals", status=400))
        with self.assertLogs("planner_sync.sync.mutator", level="WARNING"):
            await self.advance(sync, 2.0)

        self.assertEqual(self.titles(sync), ["Old"])
        self.assertEqual([n.level for n in sync.notices], ["error"])
        sync.dismiss_notice(sync.notices[0])
        self.assertEqual(sync.notices, [])

    async def test_unavailable_store_is_retried_after_fixed_delay(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Old"})])
        sync = self.make_sync()
        await sync.load()

        sync.edit("1", {"title": "New"})
        self.store.fail_next(ServiceUnavailableError("HTTP 503", resource="goals"))
        with self.assertLogs("planner_sync.sync.mutator", level="WARNING"):
            await self.advance(sync, 2.0)
        self.assertEqual(self.titles(sync), ["New"])
        self.assertEqual(sync.notices, [])

        await self.advance(sync, 4.0)
        self.assertEqual(len(self.store.calls_for("update")), 1)
        await self.advance(sync, 1.0)

        self.assertEqual(len(self.store.calls_for("update")), 2)
        self.assertEqual(self.store.records("goals")[0].fields["title"], "New")
        self.assertEqual(sync.notices, [])

    async def test_unavailable_store_twice_reverts(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Old"})])
        sync = self.make_sync()
        await sync.load()

        sync.edit("1", {"title": "New"})
        self.store.fail_next(ServiceUnavailableError("HTTP 503", resource="goals"))
        self.store.fail_next(ServiceUnavailableError("HTTP 503", resource="goals"))
        with self.assertLogs("planner_sync.sync.mutator", level="WARNING"):
            await self.advance(sync, 2.0)
            await self.advance(sync, 5.0)

        self.assertEqual(self.titles(sync), ["Old"])
        self.assertEqual([n.level for n in sync.notices], ["error"])

    async def test_network_failure_on_regular_edit_is_not_retried(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Old"})])
        sync = self.make_sync()
        await sync.load()

        sync.edit("1", {"title": "New"})
        self.store.fail_next(TransientStoreError("offline", resource="goals"))
        with self.assertLogs("planner_sync.sync.mutator", level="WARNING"):
            await self.advance(sync, 2.0)
            await self.advance(sync, 5.0)

        self.assertEqual(len(self.store.calls_for("update")), 1)
        self.assertEqual(self.titles(sync), ["Old"])

    async def test_failed_create_keeps_unconfirmed_placeholder(self) -> None:
        sync = self.make_sync()
        await sync.load()

        sync.create({"title": "Finish FAFSA"})
        self.store.fail_next(StoreRequestError("HTTP 400", resource="goals", status=400))
        with self.assertLogs("planner_sync.sync.mutator", level="WARNING"):
            await self.advance(sync, 2.0)

        self.assertEqual([(r.id, r.confirmed) for r in sync.records], [("tmp-1", False)])
        self.assertEqual([n.level for n in sync.notices], ["warning"])
        self.assertEqual(self.cache.get("goals").records, [])

    async def test_pending_edit_survives_a_refresh(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Old"})])
        sync = self.make_sync()
        await sync.load()

        sync.edit("1", {"title": "Typing"})
        await sync.refresh()

        self.assertEqual(self.titles(sync), ["Typing"])
        await self.advance(sync, 2.0)
        self.assertEqual(self.store.records("goals")[0].fields["title"], "Typing")

    async def test_close_flushes_pending_edits(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Old"})])
        sync = self.make_sync()
        await sync.load()

        sync.edit("1", {"title": "Saved on exit"})
        await sync.close()

        self.assertEqual(self.store.records("goals")[0].fields["title"], "Saved on exit")
        with self.assertRaises(SyncClosedError):
            sync.edit("1", {"title": "After close"})

    async def test_confirmed_edit_is_written_to_cache(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "Old", "category": "Academic"})])
        sync = self.make_sync()
        await sync.load()

        sync.edit("1", {"title": "New"})
        await sync.flush()

        cached = self.cache.get("goals").records[0]
        self.assertEqual(cached.fields, {"title": "New", "category": "Academic"})


class RemoveTests(ResourceSyncTestCase):
    async def test_delete_removes_record_from_every_cached_view(self) -> None:
        self.store.seed(
            "goals",
            [
                Record(id="1", fields={"title": "FAFSA", "category": "Academic"}),
                Record(id="2", fields={"title": "Essay", "category": "Academic"}),
            ],
        )
        sync = self.make_sync()
        await sync.load({"category": "Academic"})
        await sync.load()

        self.assertTrue(await sync.remove("1"))

        self.assertEqual([r.id for r in sync.records], ["2"])
        self.assertEqual([r.id for r in self.cache.get("goals").records], ["2"])
        self.assertEqual([r.id for r in self.cache.get("goals?category=Academic").records], ["2"])
        self.assertEqual([r.id for r in self.store.records("goals")], ["2"])

    async def test_delete_of_already_missing_record_still_removes_it_locally(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "FAFSA"})])
        sync = self.make_sync()
        await sync.load()
        await self.store.delete("goals", "1")

        self.assertTrue(await sync.remove("1"))
        self.assertEqual(sync.records, [])

    async def test_failed_delete_keeps_record_and_notifies(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "FAFSA"})])
        sync = self.make_sync()
        await sync.load()

        self.store.online = False
        with self.assertLogs("planner_sync.sync.mutator", level="WARNING"):
            self.assertFalse(await sync.remove("1"))

        self.assertEqual([r.id for r in sync.records], ["1"])
        self.assertEqual([n.level for n in sync.notices], ["error"])

    async def test_removing_unconfirmed_placeholder_never_calls_the_store(self) -> None:
        sync = self.make_sync()
        await sync.load()
        placeholder_id = sync.create({"title": "Draft"})

        self.assertTrue(await sync.remove(placeholder_id))
        await self.advance(sync, 2.0)

        self.assertEqual(sync.records, [])
        self.assertEqual(self.store.calls_for("create"), [])
        self.assertEqual(self.store.calls_for("delete"), [])

    async def test_failed_delete_keeps_the_unsaved_edit_queued(self) -> None:
        self.store.seed("goals", [Record(id="1", fields={"title": "FAFSA"})])
        sync = self.make_sync()
        await sync.load()
        sync.edit("1", {"title": "Finish FAFSA"})

        self.store.online = False
        with self.assertLogs("planner_sync.sync.mutator", level="WARNING"):
            self.assertFalse(await sync.remove("1"))

        self.assertEqual(self.titles(sync), ["Finish FAFSA"])
        self.assertTrue(sync.has_unsaved_changes)

        self.store.online = True
        await self.advance(sync, 2.0)

        self.assertEqual(len(self.store.calls_for("update")), 1)
        self.assertEqual(self.store.records("goals")[0].fields["title"], "Finish FAFSA")
        self.assertFalse(sync.has_unsaved_changes)

    async def _remove_during_update(self, *, apply_before_hold: bool) -> ResourceSync:
        self.store = _HeldWriteStore(apply_before_hold=apply_before_hold, first_id=42)
        self.store.seed("goals", [Record(id="1", fields={"title": "FAFSA"})])
        sync = self.make_sync()
        await sync.load()
        sync.edit("1", {"title": "Finish FAFSA"})

        self.clock.advance(2.0)
        await self.store.started.wait()
        self.assertTrue(await sync.remove("1"))
        self.store.release.set()
        await sync.mutator.scheduler.drain()
        return sync

    async def test_update_answered_after_delete_does_not_restore_the_record(self) -> None:
        sync = await self._remove_during_update(apply_before_hold=True)

        self.assertEqual(sync.records, [])
        self.assertEqual(self.cache.get("goals").records, [])
        self.assertEqual(self.store.records("goals"), [])
        self.assertEqual(sync.notices, [])

        reopened = self.make_sync()
        self.assertEqual(await reopened.load(), [])
        self.assertEqual(len(self.store.calls_for("fetch_page")), 1)

    async def test_update_rejected_after_delete_is_not_reported(self) -> None:
        sync = await self._remove_during_update(apply_before_hold=False)

        self.assertEqual(sync.records, [])
        self.assertEqual(self.cache.get("goals").records, [])
        self.assertEqual(sync.notices, [])

    async def test_placeholder_removed_while_its_create_is_in_flight_is_deleted_on_the_server(self) -> None:
        self.store = _HeldWriteStore(first_id=42)
        sync = self.make_sync()
        await sync.load()
        placeholder_id = sync.create({"title": "Draft"})

        self.clock.advance(2.0)
        await self.store.started.wait()
        self.assertTrue(await sync.remove(placeholder_id))
        self.store.release.set()
        await sync.mutator.scheduler.drain()

        self.assertEqual([call.record_id for call in self.store.calls_for("delete")], ["42"])
        self.assertEqual(self.store.records("goals"), [])
        self.assertEqual(sync.records, [])
        self.assertEqual(sync.notices, [])


class StaleFetchTests(ResourceSyncTestCase):
    async def _race(self, **settings) -> ResourceSync:
        self.store = _GatedStore()
        self.store.seed("goals", [Record(id="1", fields={"title": "Old"})])
        sync = self.make_sync(**settings)
        await sync.load()

        sync.edit("1", {"title": "New"})
        self.store.gate.clear()
        refresh = asyncio.create_task(sync.refresh())
        await asyncio.sleep(0)
        await self.advance(sync, 2.0)
        self.store.gate.set()
        await refresh
        return sync

    async def test_stale_page_wins_by_default(self) -> None:
        sync = await self._race()

        self.assertEqual(self.titles(sync), ["Old"])

    async def test_confirmed_edit_can_be_protected_from_stale_page(self) -> None:
        sync = await self._race(protect_confirmed_edits=True)

        self.assertEqual(self.titles(sync), ["New"])
        self.assertEqual(self.cache.get("goals").records[0].fields["title"], "New")


class ProfileAutosaveTests(ResourceSyncTestCase):
    resource = "profileFields"

    async def test_profile_uses_autosave_delay_and_retries_network_failure_once(self) -> None:
        self.store.seed("profileFields", [Record(id="student-1", fields={"first_name": "Ana"})])
        sync = self.make_sync()
        await sync.load()

        record_id = sync.edit(None, {"last_name": "Diaz"})
        self.assertEqual(record_id, "student-1")
        self.store.fail_next(TransientStoreError("offline", resource="profileFields"))

        await self.advance(sync, 2.0)
        self.assertEqual(self.store.calls_for("update"), [])
        with self.assertLogs("planner_sync.sync.mutator", level="WARNING"):
            await self.advance(sync, 3.0)
        await self.advance(sync, 5.0)

        self.assertEqual(len(self.store.calls_for("update")), 2)
        self.assertEqual(self.store.records("profileFields")[0].fields, {"first_name": "Ana", "last_name": "Diaz"})
        self.assertEqual(sync.notices, [])


if __name__ == "__main__":
    unittest.main()
