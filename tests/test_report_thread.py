"""
Unit Tests for the report-thread state machine.
"""

import asyncio

from standup.report_thread import APPROVE_ALL_TEXT, NO_ACTIONS_TEXT, REPORT_APPROVE_ACTION_ID, ReportThreadMachine
from standup.state_store import pending_ref_key
from tests.conftest import FakeAnalyzer, status_action, async_test

DATE = "2026-10-18"
PROPOSAL = {"summary": "Move item-1 to Done", "moves": [{"item": "item-1"}]}


async def open_report(report):
    return await report.open_report(DATE, "C-REPORT", PROPOSAL, "Today's proposal")


class TestOpenReport:

    @async_test
    async def test_records_pending_state_with_approve_button(self, report, store, gateway):
        posted = await open_report(report)
        state = await store.get_report_thread(DATE)
        assert state.is_pending
        assert state.matches("C-REPORT", posted.message_id)
        action_ids = [e["action_id"] for e in gateway.last_post()["blocks"][1]["elements"]]
        assert action_ids == [REPORT_APPROVE_ACTION_ID]


class TestReplies:

    @async_test
    async def test_reply_goes_through_approval_gate(self, report, store, source, kv):
        posted = await open_report(report)
        handled = await report.handle_reply(DATE, "C-REPORT", posted.message_id, "Yes but keep Bob's item", "U1")

        assert handled is True
        assert source.updates == []
        assert await kv.get(pending_ref_key("C-REPORT", posted.message_id)) is not None
        assert not (await store.get_report_thread(DATE)).is_pending

    @async_test
    async def test_second_reply_is_noop(self, report, analyzer):
        posted = await open_report(report)
        await report.handle_reply(DATE, "C-REPORT", posted.message_id, "first", "U1")
        assert await report.handle_reply(DATE, "C-REPORT", posted.message_id, "second", "U1") is False
        assert analyzer.interpretations == ["first"]

    @async_test
    async def test_reply_without_actions_asks_again(self, store, gateway, pending, executor):
        report = ReportThreadMachine(store, gateway, FakeAnalyzer(actions=[]), pending, executor)
        posted = await open_report(report)
        await report.handle_reply(DATE, "C-REPORT", posted.message_id, "hmm", "U1")
        assert gateway.last_post()["text"] == NO_ACTIONS_TEXT

    @async_test
    async def test_reply_in_other_thread_is_not_handled(self, report):
        await open_report(report)
        assert await report.handle_reply(DATE, "C-REPORT", "other.thread", "text", "U1") is False

    @async_test
    async def test_no_report_for_the_day(self, report):
        assert await report.handle_reply(DATE, "C-REPORT", "1.0", "text", "U1") is False


class TestApproval:

    @async_test
    async def test_approve_executes_directly(self, report, analyzer, source, store):
        posted = await open_report(report)
        results = await report.approve(DATE, "C-REPORT", posted.message_id, "U1")

        assert [r.success for r in results] == [True]
        assert analyzer.interpretations == [APPROVE_ALL_TEXT]
        assert source.updates == [("item-1", "status", "Done")]
        assert not (await store.get_report_thread(DATE)).is_pending

    @async_test
    async def test_reaction_then_button_executes_once(self, report, source):
        posted = await open_report(report)
        await report.approve(DATE, "C-REPORT", posted.message_id, "U1")
        second = await report.approve(DATE, "C-REPORT", posted.message_id, "U1", original_text="Today's proposal")
        assert second is None
        assert len(source.updates) == 1

    @async_test
    async def test_concurrent_approvals_execute_once(self, report, source):
        posted = await open_report(report)
        results = await asyncio.gather(
            report.approve(DATE, "C-REPORT", posted.message_id, "U1"),
            report.approve(DATE, "C-REPORT", posted.message_id, "U2", original_text="x"),
        )
        assert sum(1 for r in results if r is not None) == 1
        assert len(source.updates) == 1

    @async_test
    async def test_reply_then_approval_is_noop(self, report, source):
        posted = await open_report(report)
        await report.handle_reply(DATE, "C-REPORT", posted.message_id, "change it", "U1")
        assert await report.approve(DATE, "C-REPORT", posted.message_id, "U1") is None
        assert source.updates == []

    @async_test
    async def test_approve_other_message_is_noop(self, report):
        await open_report(report)
        assert await report.approve(DATE, "C-REPORT", "other.message", "U1") is None

    @async_test
    async def test_button_approval_updates_message(self, report, gateway):
        posted = await open_report(report)
        await report.approve(DATE, "C-REPORT", posted.message_id, "U1", original_text="Today's proposal")
        assert gateway.updates[-1]["message_id"] == posted.message_id


class SlowAnalyzer(FakeAnalyzer):

    async def interpret_reply(self, proposal, text):
        await asyncio.sleep(0.01)
        return await super().interpret_reply(proposal, text)


class TestReplyApprovalRace:

    @async_test
    async def test_reply_and_approval_together_act_once(self, store, gateway, pending, executor, source, kv):
        analyzer = SlowAnalyzer(actions=[status_action()])
        report = ReportThreadMachine(store, gateway, analyzer, pending, executor)
        posted = await open_report(report)

        replied, approved = await asyncio.gather(
            report.handle_reply(DATE, "C-REPORT", posted.message_id, "keep Bob's item", "U1"),
            report.approve(DATE, "C-REPORT", posted.message_id, "U2"),
        )

        assert replied != (approved is not None)
        assert len(analyzer.interpretations) == 1
        proposed = await kv.get(pending_ref_key("C-REPORT", posted.message_id)) is not None
        assert proposed != bool(source.updates)

    @async_test
    async def test_date_locks_are_released(self, report):
        posted = await open_report(report)
        await report.handle_reply(DATE, "C-REPORT", posted.message_id, "first", "U1")
        await report.approve(DATE, "C-REPORT", posted.message_id, "U1")
        assert report._locks == {}
