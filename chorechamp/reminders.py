import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone

from .connection_registry import ConnectionRegistry
from .family_store import FamilyStore
from .history_store import HistoryStore
from .ws_constants import MESSAGE_TYPE_REMINDER, MSG_AGENT_MESSAGE, PARTY_CHILD, ROLE_AGENT

logger = logging.getLogger(__name__)

REMINDER_INTERVAL = int(os.environ.get("CHORECHAMP_REMINDER_INTERVAL", str(30 * 60)))  # seconds
INACTIVITY_WINDOW = timedelta(hours=2)


def _completed_recently(chores: list[dict], now: datetime) -> bool:
    cutoff = now - INACTIVITY_WINDOW
    for chore in chores:
        completed_at = chore.get("completedAt")
        if not completed_at:
            continue
        try:
            completed = datetime.fromisoformat(completed_at)
        except ValueError:
            continue
        if completed.tzinfo is None:
            completed = completed.replace(tzinfo=timezone.utc)
        if completed >= cutoff:
            return True
    return False


class ReminderScheduler:
    """Periodically nudges online children who have chores waiting.

    A child gets a reminder when they have at least one uncompleted chore and
    have not completed anything in the last two hours. Reminders are stored
    in the child's chat history and pushed to their live connections.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        family_store: FamilyStore,
        history_store: HistoryStore,
        agent,
        *,
        interval: float = REMINDER_INTERVAL,
    ):
        self.registry = registry
        self.family_store = family_store
        self.history_store = history_store
        self.agent = agent
        self.interval = interval
        self._task: asyncio.Task | None = None

    async def send_reminders(self) -> int:
        """Run one reminder pass. Returns the number of children reminded."""
        now = datetime.now(timezone.utc)
        sent = 0
        for party in await self.registry.connected_parties():
            if party.type != PARTY_CHILD:
                continue
            try:
                if await self._remind(party, now):
                    sent += 1
            except Exception:
                logger.exception("Failed to send reminder to %s", party)
        if sent:
            logger.info("Sent %d reminder(s)", sent)
        return sent

    async def _remind(self, party, now: datetime) -> bool:
        child = await self.family_store.get_child(party.id)
        if child is None:
            return False
        chores = await self.family_store.list_assigned_chores(party.id)
        pending = [c for c in chores if not c.get("completedAt")]
        if not pending or _completed_recently(chores, now):
            return False

        content = await self.agent.generate_reminder(child, pending)
        stored = await self.history_store.append(
            party, ROLE_AGENT, content, message_type=MESSAGE_TYPE_REMINDER,
        )
        await self.registry.send(party, {
            "type": MSG_AGENT_MESSAGE,
            "content": content,
            "messageType": MESSAGE_TYPE_REMINDER,
            "timestamp": stored["createdAt"],
        })
        logger.info("Reminded %s about %d pending chore(s)", party, len(pending))
        return True

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.send_reminders()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reminder loop iteration failed")

    def start(self):
        if self._task is None:
            self._task = asyncio.ensure_future(self._loop())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
