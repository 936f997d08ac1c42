"""
Unit Tests for work submission.
"""

import logging

from fastapi import BackgroundTasks

from standup.submitter import BackgroundSubmitter, InlineSubmitter, run_guarded
from tests.conftest import async_test


class TestRunGuarded:

    @async_test
    async def test_failure_is_logged_not_raised(self, caplog):
        async def explode():
            raise RuntimeError("boom")

        with caplog.at_level(logging.ERROR, logger="standup.submitter"):
            await run_guarded("explode", explode)
        assert "task=explode" in caplog.text


class TestSubmitters:

    @async_test
    async def test_inline_runs_before_returning(self):
        calls = []

        async def work():
            calls.append("ran")

        await InlineSubmitter().submit("work", work)
        assert calls == ["ran"]

    @async_test
    async def test_background_defers_until_tasks_run(self):
        calls = []

        async def work():
            calls.append("ran")

        tasks = BackgroundTasks()
        await BackgroundSubmitter(tasks).submit("work", work)
        assert calls == []

        await tasks()
        assert calls == ["ran"]
