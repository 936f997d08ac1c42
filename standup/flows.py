"""
Scheduled Flows

Entry points triggered by an external scheduler (POST /flows/{name}):

    checkin                 - post one check-in thread per assignee
    checkin-reminders       - nudge check-in threads still pending
    report                  - open the daily report thread with a proposal
    sprint-summary          - write today's snapshot, post deduplicated metrics
    subscription-reminders  - send due reminder DMs

Each invocation captures one FlowClock and uses its civil day throughout.
"""

import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .checkin import CheckinMachine, build_quick_reply_blocks
from .collaborators import Collection, LookupCache, Member, MessagingGateway, ProposalAnalyzer, SourceItem, TaskSource
from .config import AppConfig
from .dedup import NotificationDeduplicator, build_dedup_key
from .errors import ConfigurationError
from .reminders import ReminderService
from .report_thread import ReportThreadMachine
from .snapshots import CollectionAnalytics, FlowClock, SnapshotStore, collect_analytics, save_daily_snapshot
from .state_store import WorkflowStateStore

logger = logging.getLogger("standup.flows")

CHECKIN_REMINDER_TEXT = "Friendly reminder: how are your items going today?"
UNASSIGNED = "(unassigned)"


def group_by_assignee(items: List[SourceItem]) -> "OrderedDict[str, List[SourceItem]]":
    grouped: "OrderedDict[str, List[SourceItem]]" = OrderedDict()
    for item in items:
        grouped.setdefault(item.assignee or UNASSIGNED, []).append(item)
    return grouped


def format_checkin(assignee_name: str, items: List[SourceItem], chat_user_id: Optional[str]) -> str:
    who = f"<@{chat_user_id}>" if chat_user_id else assignee_name
    lines = [f"• {i.name} (status: {i.status or '-'}, size: {i.size if i.size is not None else '-'})" for i in items]
    return f"{who} Good morning! How are these going?\n" + "\n".join(lines)


def format_summary(collection_name: str, analytics: CollectionAnalytics) -> str:
    lines = [f"*{collection_name}* status"]
    if analytics.consumption is not None:
        label = "required pace" if not analytics.consumption.is_actual_pace else "avg daily consumption"
        lines.append(f"• {label}: {analytics.consumption.value:.2f}")
    else:
        lines.append("• avg daily consumption: insufficient data")

    weekly = analytics.weekly_diff
    if weekly.has_data:
        lines.append(
            f"• this week: {len(weekly.completed)} completed ({weekly.completed_size:g}), "
            f"{len(weekly.added)} added ({weekly.added_size:g})"
        )
    else:
        lines.append("• this week: no data")

    for change in analytics.day_over_day.changes:
        lines.append(f"• {change.name}: {change.before or '-'} → {change.after or '-'}")
    for item in analytics.stagnant:
        lines.append(f"• stagnant {item.days}d: {item.name} ({item.status})")
    return "\n".join(lines)


class FlowRunner:

    def __init__(
        self,
        config: AppConfig,
        store: WorkflowStateStore,
        gateway: MessagingGateway,
        source: TaskSource,
        analyzer: ProposalAnalyzer,
        checkin: CheckinMachine,
        report: ReportThreadMachine,
        reminders: ReminderService,
        snapshots: SnapshotStore,
        dedup: NotificationDeduplicator,
    ):
        self._config = config
        self._store = store
        self._gateway = gateway
        self._source = source
        self._analyzer = analyzer
        self._checkin = checkin
        self._report = report
        self._reminders = reminders
        self._snapshots = snapshots
        self._dedup = dedup
        self._flows: Dict[str, Callable[[FlowClock], Awaitable[Dict[str, Any]]]] = {
            "checkin": self.run_checkin,
            "checkin-reminders": self.run_checkin_reminders,
            "report": self.run_report,
            "sprint-summary": self.run_sprint_summary,
            "subscription-reminders": self.run_subscription_reminders,
        }

    @property
    def flow_names(self) -> List[str]:
        return list(self._flows)

    async def run(self, flow_name: str, clock: Optional[FlowClock] = None) -> Dict[str, Any]:
        """
        Raises:
            KeyError: unknown flow name
        """
        flow = self._flows[flow_name]
        clock = clock or FlowClock.capture(self._config.utc_offset_hours)
        logger.info(f"FLOW START: name={flow_name} | day={clock.today}")
        result = await flow(clock)
        logger.info(f"FLOW DONE: name={flow_name} | result={result}")
        return result

    async def _resolve_collection(self) -> Collection:
        pinned = self._config.collection_id
        if pinned:
            for collection in await self._source.list_collections():
                if collection.id == pinned:
                    return collection
            logger.warning(f"FLOW: pinned collection not found, using current | collection_id={pinned}")
        return await self._source.current_collection()

    async def _collection_items(self):
        collection = await self._resolve_collection()
        items = await self._source.list_items(collection.id)
        return collection, items

    # -------------------------------------------------------------------------
    # Flows
    # -------------------------------------------------------------------------
    async def run_checkin(self, clock: FlowClock) -> Dict[str, Any]:
        channel = self._config.checkin_channel_id
        if not channel:
            raise ConfigurationError("SLACK_CHECKIN_CHANNEL_ID not configured")

        cache = LookupCache()
        _, items = await self._collection_items()
        members: List[Member] = await cache.get_or_load("members", self._source.list_members)
        user_ids = {m.name: m.chat_user_id for m in members}

        opened = 0
        for assignee, assigned in group_by_assignee(items).items():
            open_items = [i for i in assigned if not i.to_tracked().is_completed]
            if not open_items:
                continue
            await self._checkin.open_thread(
                channel,
                assignee,
                [i.to_tracked() for i in open_items],
                clock.today,
                format_checkin(assignee, open_items, user_ids.get(assignee)),
            )
            opened += 1
        return {"threads_opened": opened}

    async def run_checkin_reminders(self, clock: FlowClock) -> Dict[str, Any]:
        reminded = 0
        for entry, _state in await self._checkin.pending_threads(clock.today):
            await self._gateway.post_message(
                entry.channel,
                CHECKIN_REMINDER_TEXT,
                thread_id=entry.message_id,
                blocks=build_quick_reply_blocks(CHECKIN_REMINDER_TEXT),
            )
            reminded += 1
        return {"threads_reminded": reminded}

    async def run_report(self, clock: FlowClock) -> Dict[str, Any]:
        channel = self._config.report_channel_id
        if not channel:
            raise ConfigurationError("SLACK_REPORT_CHANNEL_ID not configured")
        if await self._store.get_report_thread(clock.today) is not None:
            logger.info(f"FLOW: report already opened | day={clock.today}")
            return {"opened": False}

        collection, items = await self._collection_items()
        tracked = [i.to_tracked() for i in items]
        analytics = await collect_analytics(
            self._snapshots,
            collection.id,
            clock.today,
            tracked,
            period_start=collection.start_date,
            period_end=collection.end_date,
            planned_size=collection.planned_size,
            current_remaining=collection.remaining_size,
        )

        replies = []
        for entry in await self._store.get_active_threads(clock.today):
            thread_replies = await self._store.get_replies(entry.channel, entry.message_id)
            replies.append({"assignee": entry.assignee_name, "replies": [r.text for r in thread_replies]})

        proposal = await self._analyzer.propose_allocation({
            "date": clock.today,
            "collection": {"id": collection.id, "name": collection.name},
            "items": [dict(i.to_tracked().to_dict(), assignee=i.assignee) for i in items],
            "replies": replies,
            "analytics": analytics.to_context(),
        })

        mention = f"<@{self._config.report_user_id}> " if self._config.report_user_id else ""
        text = mention + str(proposal.get("summary") or "Today's proposal is ready.")
        await self._report.open_report(clock.today, channel, proposal, text)
        return {"opened": True}

    async def run_sprint_summary(self, clock: FlowClock) -> Dict[str, Any]:
        channel = self._config.notify_channel_id
        if not channel:
            raise ConfigurationError("SLACK_NOTIFY_CHANNEL_ID not configured")

        collection, items = await self._collection_items()
        tracked = [i.to_tracked() for i in items]
        await save_daily_snapshot(self._snapshots, collection.id, clock.today, tracked)
        analytics = await collect_analytics(
            self._snapshots,
            collection.id,
            clock.today,
            tracked,
            period_start=collection.start_date,
            period_end=collection.end_date,
            planned_size=collection.planned_size,
            current_remaining=collection.remaining_size,
        )

        text = format_summary(collection.name, analytics)
        key = build_dedup_key("collection-summary", collection.id)
        if await self._dedup.is_duplicate_payload(key, text):
            return {"posted": False, "duplicate": True}

        await self._gateway.post_message(channel, text)
        return {"posted": True, "duplicate": False}

    async def run_subscription_reminders(self, clock: FlowClock) -> Dict[str, Any]:
        sent = await self._reminders.send_due_reminders(clock.now)
        return {"reminders_sent": sent}
