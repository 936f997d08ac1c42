"""
Unit Tests for the pending-action lifecycle (human-approval gate).

Key properties:
1. Double approval executes the mutations exactly once
2. Modify leaves exactly one live PendingAction/back-reference pair
3. A stale back-reference heals itself instead of raising
4. One failing action never blocks the others
"""

import asyncio
import json

from standup.collaborators import LookupCache
from standup.models import ProposedAction
from standup.pending_actions import (
    NOTHING_TO_UPDATE_TEXT,
    ActionExecutor,
    PendingActionService,
    find_user_id,
    summarize_results,
)
from standup.state_store import pending_action_key, pending_ref_key
from tests.conftest import FakeTaskSource, status_action, async_test

CHANNEL = "C-TEAM"
THREAD = "1700000000.000001"


async def live_pairs(kv):
    actions = await kv.list_all("pending-action:")
    refs = await kv.list_all("pending-ref:")
    return len(actions), len(refs)


class TestHelpers:

    def test_find_user_id_exact_then_partial(self):
        directory = {"Alice Smith": "u-1", "Bob": "u-2"}
        assert find_user_id(directory, "Bob") == "u-2"
        assert find_user_id(directory, "Alice") == "u-1"
        assert find_user_id(directory, "Carol") is None
        assert find_user_id(directory, "") is None

    def test_summarize_empty(self):
        assert summarize_results([]) == NOTHING_TO_UPDATE_TEXT


class TestActionExecutor:

    @async_test
    async def test_updates_are_dispatched_per_type(self):
        source = FakeTaskSource()
        executor = ActionExecutor(source)
        results = await executor.execute([
            ProposedAction("update_status", "1", "A", "Done"),
            ProposedAction("update_size", "2", "B", "5"),
            ProposedAction("update_due", "3", "C", "2026-10-20"),
            ProposedAction("update_collection", "4", "D", ""),
        ])
        assert all(r.success for r in results)
        assert source.updates == [("1", "status", "Done"), ("2", "size", 5.0), ("3", "due", "2026-10-20")]
        assert source.moves == [("4", None)]

    @async_test
    async def test_one_failure_does_not_block_others(self):
        source = FakeTaskSource()
        source.fail_on = {"bad"}
        results = await ActionExecutor(source).execute([
            status_action("bad"),
            status_action("good"),
        ])
        assert [r.success for r in results] == [False, True]
        assert source.updates == [("good", "status", "Done")]

    @async_test
    async def test_assignee_updates_are_not_enabled(self):
        source = FakeTaskSource()
        results = await ActionExecutor(source).execute([ProposedAction("update_assignee", "1", "A", "Bob")])
        assert results[0].success is False
        assert source.updates == []

    @async_test
    async def test_create_resolves_assignee_once_per_cache(self):
        source = FakeTaskSource()
        source.directory = {"Alice": "u-1"}
        cache = LookupCache()
        fields = json.dumps({"name": "New item", "assignee": "Alice"})
        results = await ActionExecutor(source).execute(
            [ProposedAction("create_item", "", "New item", fields), ProposedAction("create_item", "", "Other", fields)],
            cache,
        )
        assert all(r.success for r in results)
        assert source.created[0]["assignee_id"] == "u-1"
        assert source.directory_loads == 1

    @async_test
    async def test_dry_run_touches_nothing(self):
        source = FakeTaskSource()
        results = await ActionExecutor(source, dry_run=True).execute([
            status_action(),
            ProposedAction("create_item", "", "New", json.dumps({"name": "New"})),
        ])
        assert all(r.success for r in results)
        assert source.updates == [] and source.created == []


class TestPendingActionService:

    @async_test
    async def test_propose_persists_pair(self, pending, store, gateway):
        posted = await pending.propose(CHANNEL, THREAD, [status_action()], "U1")
        assert gateway.last_post()["thread_id"] == THREAD
        assert await store.get_pending_action(CHANNEL, posted.message_id) is not None
        ref = await store.get_pending_ref(CHANNEL, THREAD)
        assert ref.confirmation_message_id == posted.message_id

    @async_test
    async def test_double_approval_executes_once(self, pending, source, store, gateway):
        posted = await pending.propose(CHANNEL, THREAD, [status_action()], "U1")

        first = await pending.approve(CHANNEL, posted.message_id, "U2")
        second = await pending.approve(CHANNEL, posted.message_id, "U2", original_text="confirm")

        assert [r.success for r in first] == [True]
        assert second is None
        assert source.updates == [("item-1", "status", "Done")]
        assert await store.get_pending_ref(CHANNEL, THREAD) is None

    @async_test
    async def test_concurrent_reaction_and_button_execute_once(self, pending, source):
        posted = await pending.propose(CHANNEL, THREAD, [status_action()], "U1")
        results = await asyncio.gather(
            pending.approve(CHANNEL, posted.message_id, "U2"),
            pending.approve(CHANNEL, posted.message_id, "U3", original_text="confirm"),
        )
        assert sum(1 for r in results if r is not None) == 1
        assert source.updates == [("item-1", "status", "Done")]

    @async_test
    async def test_approve_by_button_rewrites_message_and_notifies(self, pending, gateway):
        posted = await pending.propose(CHANNEL, THREAD, [status_action()], "U1")
        await pending.approve(CHANNEL, posted.message_id, "U2", original_text="Please confirm")

        assert gateway.updates[-1]["message_id"] == posted.message_id
        assert gateway.updates[-1]["text"].startswith("Please confirm")
        assert gateway.last_post()["channel"] == "C-NOTIFY"

    @async_test
    async def test_reject_deletes_without_executing(self, pending, source, store, gateway):
        posted = await pending.propose(CHANNEL, THREAD, [status_action()], "U1")
        assert await pending.reject(CHANNEL, posted.message_id, "U2", original_text="confirm") is True

        assert source.updates == []
        assert await store.get_pending_action(CHANNEL, posted.message_id) is None
        assert await store.get_pending_ref(CHANNEL, THREAD) is None
        assert "Cancelled" in gateway.updates[-1]["text"]
        assert await pending.approve(CHANNEL, posted.message_id, "U2") is None

    @async_test
    async def test_modify_then_approve_keeps_single_pair(self, pending, source, kv):
        first = await pending.propose(CHANNEL, THREAD, [status_action(value="Doing")], "U1")
        assert await live_pairs(kv) == (1, 1)

        second = await pending.supersede(CHANNEL, THREAD, [status_action(value="Done")], "U1")
        assert await live_pairs(kv) == (1, 1)
        assert await kv.get(pending_action_key(CHANNEL, first.message_id)) is None
        assert json.loads(await kv.get(pending_ref_key(CHANNEL, THREAD)))["confirmation_message_id"] == second.message_id

        assert await pending.approve(CHANNEL, first.message_id, "U2") is None
        await pending.approve(CHANNEL, second.message_id, "U2")
        assert source.updates == [("item-1", "status", "Done")]
        assert await live_pairs(kv) == (0, 0)

    @async_test
    async def test_stale_back_reference_heals(self, pending, store, kv):
        posted = await pending.propose(CHANNEL, THREAD, [status_action()], "U1")
        await store.delete_pending_action(CHANNEL, posted.message_id)

        assert await pending.resolve_for_thread(CHANNEL, THREAD) is None
        assert await kv.get(pending_ref_key(CHANNEL, THREAD)) is None
        assert await pending.begin_modification(CHANNEL, THREAD) is None

    @async_test
    async def test_request_modification_keeps_proposal_live(self, pending, store, gateway):
        posted = await pending.propose(CHANNEL, THREAD, [status_action()], "U1")
        await pending.request_modification(CHANNEL, posted.message_id, THREAD, "U2", original_text="confirm")
        assert await store.get_pending_action(CHANNEL, posted.message_id) is not None
        assert gateway.last_post()["thread_id"] == THREAD

    @async_test
    async def test_no_notification_without_channel(self, store, gateway, source):
        service = PendingActionService(store, gateway, ActionExecutor(source))
        posted = await service.propose(CHANNEL, THREAD, [status_action()], "U1")
        await service.approve(CHANNEL, posted.message_id, "U2")
        assert all(p["channel"] != "C-NOTIFY" for p in gateway.posts)
