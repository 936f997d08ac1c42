"""
Unit Tests for the scheduled flows.
"""

from datetime import timedelta

import pytest

from standup.collaborators import Collection, Member, SourceItem
from standup.config import AppConfig
from standup.dedup import NotificationDeduplicator
from standup.errors import ConfigurationError
from standup.flows import CHECKIN_REMINDER_TEXT, FlowRunner, format_checkin, group_by_assignee
from standup.models import ReminderSubscription
from standup.snapshots import FlowClock
from tests.conftest import async_test


def make_config(**overrides):
    settings = dict(
        checkin_channel_id="C-CHECKIN",
        report_channel_id="C-REPORT",
        report_user_id="U-LEAD",
        notify_channel_id="C-NOTIFY",
        utc_offset_hours=9,
    )
    settings.update(overrides)
    return AppConfig(**settings)


def make_runner(config, store, gateway, source, analyzer, checkin, report, reminders, snapshots, kv):
    return FlowRunner(
        config, store, gateway, source, analyzer, checkin, report, reminders, snapshots, NotificationDeduplicator(kv)
    )


@pytest.fixture
def runner_factory(store, gateway, source, analyzer, checkin, report, reminders, snapshots, kv):
    def factory(**overrides):
        return make_runner(
            make_config(**overrides), store, gateway, source, analyzer, checkin, report, reminders, snapshots, kv
        )
    return factory


@pytest.fixture
def runner(runner_factory):
    return runner_factory()


class TestHelpers:

    def test_group_by_assignee_keeps_order(self):
        items = [
            SourceItem(id="1", name="a", assignee="Bob"),
            SourceItem(id="2", name="b"),
            SourceItem(id="3", name="c", assignee="Bob"),
        ]
        grouped = group_by_assignee(items)
        assert list(grouped) == ["Bob", "(unassigned)"]
        assert [i.id for i in grouped["Bob"]] == ["1", "3"]

    def test_format_checkin_mentions_known_user(self):
        text = format_checkin("Alice", [SourceItem(id="1", name="Login page", status="Todo", size=3.0)], "UA")
        assert text.startswith("<@UA>")
        assert "Login page (status: Todo, size: 3.0)" in text


class TestRun:

    @async_test
    async def test_unknown_flow(self, runner, flow_clock):
        with pytest.raises(KeyError):
            await runner.run("weekly-digest", flow_clock)

    def test_flow_names(self, runner):
        assert runner.flow_names == [
            "checkin", "checkin-reminders", "report", "sprint-summary", "subscription-reminders"
        ]


class TestCheckinFlows:

    @async_test
    async def test_opens_one_thread_per_assignee_with_open_items(self, runner, source, gateway, store, flow_clock):
        source.members = [Member(name="Alice", chat_user_id="UA")]
        source.items.append(SourceItem(id="item-4", name="Retro", status="Done", size=1.0, assignee="Carol"))

        result = await runner.run("checkin", flow_clock)

        assert result == {"threads_opened": 2}
        assert [p["channel"] for p in gateway.posts] == ["C-CHECKIN", "C-CHECKIN"]
        assert gateway.posts[0]["text"].startswith("<@UA>")
        assert "Release notes" not in gateway.posts[0]["text"]
        active = await store.get_active_threads(flow_clock.today)
        assert [a.assignee_name for a in active] == ["Alice", "Bob"]

    @async_test
    async def test_checkin_requires_channel(self, runner_factory, flow_clock):
        with pytest.raises(ConfigurationError):
            await runner_factory(checkin_channel_id=None).run("checkin", flow_clock)

    @async_test
    async def test_reminders_only_for_pending_threads(self, runner, checkin, gateway, flow_clock):
        await runner.run("checkin", flow_clock)
        first = gateway.posts[0]
        await checkin.handle_reply(first["channel"], first["message_id"], "Login page is nearly done", "UA")

        result = await runner.run("checkin-reminders", flow_clock)

        assert result == {"threads_reminded": 1}
        reminder = gateway.last_post()
        assert reminder["text"] == CHECKIN_REMINDER_TEXT
        assert reminder["thread_id"] == gateway.posts[1]["message_id"]
        assert reminder["blocks"] is not None


class TestReportFlow:

    @async_test
    async def test_opens_report_once_per_day(self, runner, analyzer, gateway, store, flow_clock):
        assert await runner.run("report", flow_clock) == {"opened": True}
        assert await runner.run("report", flow_clock) == {"opened": False}

        assert len(analyzer.contexts) == 1
        assert gateway.last_post()["text"] == "<@U-LEAD> Move 2 points from A to B"
        assert (await store.get_report_thread(flow_clock.today)).is_pending

    @async_test
    async def test_context_includes_replies_and_analytics(self, runner, checkin, analyzer, gateway, flow_clock):
        await runner.run("checkin", flow_clock)
        first = gateway.posts[0]
        await checkin.handle_reply(first["channel"], first["message_id"], "Login page is nearly done", "UA")

        await runner.run("report", flow_clock)

        context = analyzer.contexts[0]
        assert context["date"] == "2026-10-18"
        assert context["collection"] == {"id": "coll-1", "name": "Sprint 42"}
        assert context["items"][0]["assignee"] == "Alice"
        assert context["replies"][0] == {"assignee": "Alice", "replies": ["Login page is nearly done"]}
        assert "analytics" in context

    @async_test
    async def test_pinned_collection(self, runner_factory, source, analyzer, flow_clock):
        source.collections.append(Collection(id="coll-2", name="Sprint 43", start_date="2026-10-26", end_date="2026-11-08"))
        await runner_factory(collection_id="coll-2").run("report", flow_clock)
        assert analyzer.contexts[0]["collection"]["id"] == "coll-2"

    @async_test
    async def test_unknown_pinned_collection_falls_back(self, runner_factory, analyzer, flow_clock):
        await runner_factory(collection_id="coll-404").run("report", flow_clock)
        assert analyzer.contexts[0]["collection"]["id"] == "coll-1"

    @async_test
    async def test_report_requires_channel(self, runner_factory, flow_clock):
        with pytest.raises(ConfigurationError):
            await runner_factory(report_channel_id=None).run("report", flow_clock)


class TestSprintSummaryFlow:

    @async_test
    async def test_writes_snapshot_and_suppresses_repeat(self, runner, snapshots, gateway, flow_clock):
        first = await runner.run("sprint-summary", flow_clock)
        second = await runner.run("sprint-summary", flow_clock)

        assert first == {"posted": True, "duplicate": False}
        assert second == {"posted": False, "duplicate": True}
        assert len(gateway.posts) == 1
        assert gateway.last_post()["text"].startswith("*Sprint 42* status")

        saved = await snapshots.load("coll-1", flow_clock.today)
        assert [i.id for i in saved] == ["item-1", "item-2"]

    @async_test
    async def test_changed_content_is_posted_again(self, runner, source, gateway, flow_clock):
        await runner.run("sprint-summary", flow_clock)
        source.items[1] = SourceItem(id="item-2", name="Signup API", status="Done", size=5.0, assignee="Bob")
        await runner.run("sprint-summary", FlowClock.capture(9, flow_clock.now + timedelta(days=1)))
        assert len(gateway.posts) == 2


class TestSubscriptionRemindersFlow:

    @async_test
    async def test_sends_due_reminders(self, runner, store, gateway, flow_clock):
        stale = (flow_clock.now - timedelta(hours=2)).isoformat()
        await store.save_reminder(ReminderSubscription("U1", "C1", "1.0", created_at=stale, last_reminded_at=stale))
        result = await runner.run("subscription-reminders", flow_clock)
        assert result == {"reminders_sent": 1}
        assert gateway.last_post()["channel"] == "DU1"
