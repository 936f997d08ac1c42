"""
Pending-Action Lifecycle (human-approval gate)

No proposed mutation is ever applied directly. It is stored as a
PendingAction keyed by the confirmation message just posted, plus a
back-reference from the originating thread to that confirmation message.

Transitions:
- approve: execute every action (per-action results), then delete the record
  and its back-reference. A missing record is a no-op (already consumed).
- reject: delete record and back-reference, mark the message cancelled.
- supersede: delete the current record and back-reference BEFORE posting the
  replacement proposal, so a thread never has two live proposals.
- resolve_for_thread: a back-reference whose target is gone is deleted and
  treated as "no pending state".

Approvals and rejections for the same record are serialized with an
in-process lock. Two instances racing on one record are NOT guarded; the
store offers no conditional delete.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .collaborators import LookupCache, MessagingGateway, PostedMessage, TaskSource
from .models import ActionType, PendingAction, PendingActionRef, ProposedAction, utc_now_iso
from .state_store import WorkflowStateStore, pending_action_key

logger = logging.getLogger("standup.pending_actions")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
APPROVE_SUFFIX = "_approve"
MODIFY_SUFFIX = "_modify"
CANCEL_SUFFIX = "_cancel"
TASK_ACTION_PREFIX = "task_action"

CONFIRM_HEADER = "I'll apply the following changes. React with :white_check_mark: or press Approve to confirm:"
NOTHING_TO_UPDATE_TEXT = ":white_check_mark: Nothing to update."
DRY_RUN_PREFIX = "(dry run) "

USER_DIRECTORY_CACHE_KEY = "user_directory"


# -----------------------------------------------------------------------------
# Message helpers
# -----------------------------------------------------------------------------
def build_approval_blocks(text: str, prefix: str = TASK_ACTION_PREFIX) -> List[Dict[str, Any]]:
    """Section + Approve/Modify/Cancel buttons."""
    def button(label: str, suffix: str, style: Optional[str] = None) -> Dict[str, Any]:
        element: Dict[str, Any] = {
            "type": "button",
            "text": {"type": "plain_text", "text": label, "emoji": True},
            "action_id": f"{prefix}{suffix}",
        }
        if style:
            element["style"] = style
        return element

    return [
        {"type": "section", "text": {"type": "mrkdwn", "text": text}},
        {
            "type": "actions",
            "elements": [
                button("Approve", APPROVE_SUFFIX, "primary"),
                button("Modify", MODIFY_SUFFIX),
                button("Cancel", CANCEL_SUFFIX, "danger"),
            ],
        },
    ]


def text_section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def describe_action(action: ProposedAction) -> str:
    if action.is_create:
        return f"• create: {action.item_name}"
    if action.action == ActionType.UPDATE_COLLECTION.value and not action.new_value:
        return f"• {action.item_name}: move to backlog"
    return f"• {action.item_name}: {action.action} → {action.new_value}"


def format_confirmation(actions: Sequence[ProposedAction], header: str = CONFIRM_HEADER) -> str:
    return header + "\n\n" + "\n".join(describe_action(a) for a in actions)


# -----------------------------------------------------------------------------
# Executor
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ActionResult:
    action: ProposedAction
    success: bool
    message: str


def find_user_id(directory: Dict[str, str], name: str) -> Optional[str]:
    """Exact name match first, then either name containing the other."""
    if not name:
        return None
    if name in directory:
        return directory[name]
    for known_name, user_id in directory.items():
        if known_name in name or name in known_name:
            logger.info(f"Assignee partial match: {name!r} -> {known_name!r}")
            return user_id
    return None


class ActionExecutor:
    """
    Applies approved actions to the task source.

    Creates run concurrently, updates sequentially. Each action is isolated:
    a failure becomes a failed ActionResult and never stops the others.
    """

    def __init__(self, source: TaskSource, dry_run: bool = False):
        self._source = source
        self._dry_run = dry_run

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def execute(self, actions: Sequence[ProposedAction], cache: Optional[LookupCache] = None) -> List[ActionResult]:
        cache = cache or LookupCache()
        creates = [a for a in actions if a.is_create]
        updates = [a for a in actions if not a.is_create]

        results: List[ActionResult] = []
        if creates:
            results.extend(await asyncio.gather(*(self._create(a, cache) for a in creates)))
        for action in updates:
            results.append(await self._update(action))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"EXECUTE: total={len(results)} | succeeded={succeeded} | failed={len(results) - succeeded} | dry_run={self._dry_run}")
        return results

    async def _update(self, action: ProposedAction) -> ActionResult:
        if action.action == ActionType.UPDATE_ASSIGNEE.value:
            logger.info(f"EXECUTE: update_assignee not enabled | item={action.item_name} | value={action.new_value}")
            return ActionResult(action, False, f"(not enabled) {action.item_name}: assignee → {action.new_value}")

        if self._dry_run:
            return ActionResult(action, True, DRY_RUN_PREFIX + describe_action(action))

        try:
            if action.action == ActionType.UPDATE_COLLECTION.value:
                await self._source.move_to_collection(action.item_id, action.new_value or None)
            elif action.action == ActionType.UPDATE_DUE.value:
                await self._source.update_field(action.item_id, "due", action.new_value)
            elif action.action == ActionType.UPDATE_SIZE.value:
                await self._source.update_field(action.item_id, "size", float(action.new_value))
            elif action.action == ActionType.UPDATE_STATUS.value:
                await self._source.update_field(action.item_id, "status", action.new_value)
            else:
                return ActionResult(action, False, f"{action.item_name}: unsupported action {action.action}")
        except Exception as e:
            logger.error(f"EXECUTE FAILED: action={action.action} | item_id={action.item_id} | error={e}")
            return ActionResult(action, False, f"• {action.item_name}: update failed ({e})")

        return ActionResult(action, True, describe_action(action))

    async def _create(self, action: ProposedAction, cache: LookupCache) -> ActionResult:
        try:
            fields = json.loads(action.new_value or "{}")
            assignee_name = fields.get("assignee") or ""
            directory = await cache.get_or_load(USER_DIRECTORY_CACHE_KEY, self._source.user_directory)
            assignee_id = find_user_id(directory, assignee_name)
            if assignee_id:
                fields["assignee_id"] = assignee_id

            if self._dry_run:
                return ActionResult(action, True, f"{DRY_RUN_PREFIX}would create {action.item_name} (assignee: {assignee_name or '-'})")

            item_id = await self._source.create_item(fields)
        except Exception as e:
            logger.error(f"EXECUTE FAILED: create_item | name={action.item_name} | error={e}")
            return ActionResult(action, False, f"Failed to create {action.item_name}: {e}")

        note = "" if assignee_id or not assignee_name else " (assignee not found, left unassigned)"
        logger.info(f"EXECUTE: created item | id={item_id} | name={action.item_name}")
        return ActionResult(action, True, f"Created {action.item_name}{note}")


def summarize_results(results: Sequence[ActionResult]) -> str:
    if not results:
        return NOTHING_TO_UPDATE_TEXT
    return ":white_check_mark: Updates applied\n\n" + "\n".join(r.message for r in results)


# -----------------------------------------------------------------------------
# Lifecycle Service
# -----------------------------------------------------------------------------
class PendingActionService:

    def __init__(
        self,
        store: WorkflowStateStore,
        gateway: MessagingGateway,
        executor: ActionExecutor,
        notify_channel: Optional[str] = None,
    ):
        self._store = store
        self._gateway = gateway
        self._executor = executor
        self._notify_channel = notify_channel
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, channel: str, message_id: str) -> asyncio.Lock:
        return self._locks.setdefault(pending_action_key(channel, message_id), asyncio.Lock())

    def _release_lock(self, channel: str, message_id: str) -> None:
        key = pending_action_key(channel, message_id)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    async def propose(
        self,
        channel: str,
        thread_id: str,
        actions: Sequence[ProposedAction],
        requested_by: str,
        text: Optional[str] = None,
    ) -> PostedMessage:
        """Post a confirmation into the thread and persist the pending record + back-reference."""
        text = text or format_confirmation(actions)
        posted = await self._gateway.post_message(
            channel,
            text,
            thread_id=thread_id,
            blocks=build_approval_blocks(text),
        )
        pending = PendingAction(
            actions=tuple(actions),
            requested_by=requested_by,
            requested_at=utc_now_iso(),
            thread_id=thread_id,
        )
        await self._store.save_pending_action(posted.channel, posted.message_id, pending)
        await self._store.save_pending_ref(channel, thread_id, PendingActionRef(confirmation_message_id=posted.message_id))
        logger.info(f"PENDING ACTION CREATED: channel={posted.channel} | confirmation={posted.message_id} | thread={thread_id} | actions={len(actions)}")
        return posted

    async def resolve_for_thread(self, channel: str, thread_id: str) -> Optional[Tuple[PendingActionRef, PendingAction]]:
        """Current pending record for a thread; heals a dangling back-reference."""
        ref = await self._store.get_pending_ref(channel, thread_id)
        if ref is None:
            return None
        pending = await self._store.get_pending_action(channel, ref.confirmation_message_id)
        if pending is None:
            await self._store.delete_pending_ref(channel, thread_id)
            logger.info(f"STALE BACK-REFERENCE REMOVED: channel={channel} | thread={thread_id} | target={ref.confirmation_message_id}")
            return None
        return ref, pending

    async def begin_modification(self, channel: str, thread_id: str) -> Optional[PendingAction]:
        """Delete the thread's current proposal and back-reference; return what was removed."""
        resolved = await self.resolve_for_thread(channel, thread_id)
        if resolved is None:
            return None
        ref, pending = resolved
        await self._store.delete_pending_action(channel, ref.confirmation_message_id)
        await self._store.delete_pending_ref(channel, thread_id)
        logger.info(f"PENDING ACTION SUPERSEDED: channel={channel} | confirmation={ref.confirmation_message_id}")
        return pending

    async def supersede(
        self,
        channel: str,
        thread_id: str,
        actions: Sequence[ProposedAction],
        requested_by: str,
        text: Optional[str] = None,
    ) -> PostedMessage:
        """Replace the thread's proposal: delete the old pair, then create the new pair."""
        await self.begin_modification(channel, thread_id)
        return await self.propose(channel, thread_id, actions, requested_by, text)

    async def approve(
        self,
        channel: str,
        message_id: str,
        user_id: str,
        cache: Optional[LookupCache] = None,
        original_text: Optional[str] = None,
    ) -> Optional[List[ActionResult]]:
        """
        Execute and consume a pending record.

        Args:
            original_text: Text of the confirmation message when approved via
                button; the message is then rewritten in place. Otherwise the
                summary is posted as a thread reply.

        Returns:
            Per-action results, or None when nothing was pending
        """
        async with self._lock_for(channel, message_id):
            pending = await self._store.get_pending_action(channel, message_id)
            if pending is None:
                logger.info(f"APPROVE NO-OP: no pending action | channel={channel} | message_id={message_id}")
                return None

            results = await self._executor.execute(pending.actions, cache)
            await self._store.delete_pending_action(channel, message_id)
            if pending.thread_id:
                await self._store.delete_pending_ref(channel, pending.thread_id)
        self._release_lock(channel, message_id)

        summary = summarize_results(results)
        if original_text is not None:
            await self._gateway.update_message(
                channel,
                message_id,
                f"{original_text}\n\n{summary}",
                blocks=[text_section(original_text), text_section(f"<@{user_id}> approved\n\n{summary}")],
            )
        else:
            await self._gateway.post_message(channel, summary, thread_id=pending.thread_id or message_id)
        await self.notify_completion(results)

        logger.info(f"PENDING ACTION APPROVED: channel={channel} | message_id={message_id} | by={user_id}")
        return results

    async def reject(self, channel: str, message_id: str, user_id: str, original_text: str = "") -> bool:
        async with self._lock_for(channel, message_id):
            pending = await self._store.get_pending_action(channel, message_id)
            if pending is None:
                logger.info(f"REJECT NO-OP: no pending action | channel={channel} | message_id={message_id}")
                return False
            await self._store.delete_pending_action(channel, message_id)
            if pending.thread_id:
                await self._store.delete_pending_ref(channel, pending.thread_id)
        self._release_lock(channel, message_id)

        await self._gateway.update_message(
            channel,
            message_id,
            f"{original_text}\n\n:x: Cancelled",
            blocks=[text_section(original_text), text_section(f":x: <@{user_id}> cancelled")],
        )
        logger.info(f"PENDING ACTION REJECTED: channel={channel} | message_id={message_id} | by={user_id}")
        return True

    async def request_modification(
        self,
        channel: str,
        message_id: str,
        thread_id: str,
        user_id: str,
        original_text: str = "",
    ) -> None:
        """Modify button: keep the proposal live and ask for the change in the thread."""
        await self._gateway.update_message(
            channel,
            message_id,
            original_text,
            blocks=[text_section(original_text), text_section(f":pencil2: <@{user_id}> asked for changes")],
        )
        await self._gateway.post_message(
            channel,
            f"<@{user_id}> Reply in this thread with the changes, e.g. \"set size to 5\" or \"due next Friday\".",
            thread_id=thread_id,
        )

    async def notify_completion(self, results: Sequence[ActionResult]) -> None:
        if not self._notify_channel or not results:
            return
        prefix = DRY_RUN_PREFIX if self._executor.dry_run else ""
        lines = "\n".join(r.message for r in results)
        await self._gateway.post_message(self._notify_channel, f"{prefix}:white_check_mark: Task list updated\n\n{lines}")
