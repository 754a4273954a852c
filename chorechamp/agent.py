import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from claude_code_sdk import ClaudeSDKClient, ClaudeCodeOptions, AssistantMessage, TextBlock

from .family_store import ChildNotFound, FamilyStore
from .history_store import HistoryStore
from .materializer import KIND_EXERCISE, KIND_LEARNING_GOAL, KIND_TASK
from .party import Party
from .ws_constants import (
    MESSAGE_TYPE_ENCOURAGEMENT,
    MESSAGE_TYPE_FAMILY_STATUS,
    MESSAGE_TYPE_GENERAL,
    MESSAGE_TYPE_GOAL_COACHING,
    MESSAGE_TYPE_REMINDER,
    PARTY_CHILD,
    ROLE_USER,
)

logger = logging.getLogger(__name__)


CONNECT_TIMEOUT = 15  # seconds
RESPONSE_TIMEOUT = 60  # seconds
MAX_RETRIES = 2
RETRY_BACKOFF = 1.0  # seconds
HISTORY_CONTEXT_MESSAGES = 5

QueryFn = Callable[[str, str], Awaitable[str]]


class GeneratorFailure(Exception):
    """The AI collaborator errored or returned unusable output."""


CHILD_PERSONA = """You are ChoreChamp Agent, a friendly AI companion for {name}, a {age}-year-old.

Be encouraging but never patronizing. Celebrate wins without going over the top,
respect their growing independence, and use light humor or an emoji sparingly.

CURRENT CONTEXT:
- {name} has {pending_tasks} pending tasks
- Completed {completed_today} tasks today
- Has {active_goals} learning goals active
- Currently at Level {level} with {total_points} total points

Keep responses conversational and brief (1-3 sentences). Ask questions to keep
them engaged and suggest a next step when it fits."""

PARENT_PERSONA = """You are ChoreChamp Agent, an AI companion helping a parent manage their family's activities and growth.

Be friendly, practical and data-driven. Respect parenting decisions and never give
medical, legal or professional advice.

FAMILY CONTEXT:
- Children: {children_summary}
- Pending Tasks: {pending_tasks}
- Completed Today: {completed_today}
- Active Learning Goals: {active_goals}

Keep responses conversational (2-4 sentences) and specific about family data when relevant."""

CHAT_PROMPT = """Recent conversation:
{recent_chat}

{speaker} just said: "{message}"

Respond as ChoreChamp Agent."""

SUGGESTION_SYSTEM_PROMPT = (
    "Generate suggestions for kids and tweens. Return a valid JSON array only, "
    "with no commentary."
)

SUGGESTION_PROMPTS = {
    KIND_TASK: (
        "Generate {count} engaging tasks for a {age}-year-old that take about "
        "{timebox} minutes each. Categories: {categories}.\n"
        "For each task provide: title, description (1-2 sentences), category "
        "(one of the categories), pointValue (15-30), frequency (\"daily\", "
        "\"weekly\" or \"custom\")."
    ),
    KIND_EXERCISE: (
        "Generate {count} safe, fun exercise activities for a {age}-year-old at "
        "{fitness_level} fitness level, doable at home without dangerous equipment.\n"
        "For each exercise provide: title, description (2-3 sentences), duration "
        "(minutes, 5-20), equipment, pointValue (10-25), safetyNotes (1 sentence)."
    ),
    KIND_LEARNING_GOAL: (
        "Generate {count} age-appropriate learning goals for a {age}-year-old. "
        "{interests}Difficulty: {difficulty}.\n"
        "For each goal provide: subject, rationale (1 sentence), "
        "suggestedTargetUnits (3-8), pointsPerUnit (10-25)."
    ),
}

DEFAULT_SUGGESTION_COUNT = {KIND_TASK: 4, KIND_EXERCISE: 3, KIND_LEARNING_GOAL: 3}
MAX_SUGGESTION_COUNT = 10

REMINDER_PROMPT = """Send a friendly reminder to {name}, a {age}-year-old.

PENDING TASKS:
{task_list}

Be motivational but not pushy, maybe mention the points they can earn. Keep it to 1-2 sentences."""


async def query_claude(system_prompt: str, prompt: str) -> str:
    """Run a single-turn query and return the concatenated response text.

    Retries with backoff on connection or timeout errors. Each call uses its
    own client, so concurrent callers never wait on each other.
    """
    last_exc: Exception | None = None
    for attempt in range(1 + MAX_RETRIES):
        if attempt > 0:
            await asyncio.sleep(RETRY_BACKOFF * attempt)
        client = ClaudeSDKClient(ClaudeCodeOptions(
            system_prompt=system_prompt,
            allowed_tools=[],
            max_turns=1,
        ))
        try:
            await asyncio.wait_for(client.connect(), timeout=CONNECT_TIMEOUT)
            await asyncio.wait_for(client.query(prompt), timeout=RESPONSE_TIMEOUT)

            async def _collect() -> str:
                text = ""
                async for msg in client.receive_response():
                    if isinstance(msg, AssistantMessage):
                        for block in msg.content:
                            if isinstance(block, TextBlock):
                                text += block.text
                return text

            return await asyncio.wait_for(_collect(), timeout=RESPONSE_TIMEOUT)
        except Exception as exc:
            last_exc = exc
            logger.warning("Claude query attempt %d failed: %s", attempt + 1, exc)
        finally:
            try:
                await client.disconnect()
            except Exception:
                logger.debug("Claude client disconnect failed", exc_info=True)
    raise GeneratorFailure("AI collaborator unavailable") from last_exc


def clean_json_response(text: str) -> str:
    """Strip Markdown code fences around a JSON answer."""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_candidates(text: str) -> list:
    """Parse a generator answer into a list of candidate payloads."""
    try:
        data = json.loads(clean_json_response(text))
    except (json.JSONDecodeError, ValueError) as exc:
        raise GeneratorFailure("Generator returned unparseable output") from exc
    if isinstance(data, dict):
        # Some answers wrap the array: {"suggestions": [...]}
        lists = [v for v in data.values() if isinstance(v, list)]
        data = lists[0] if len(lists) == 1 else [data]
    if not isinstance(data, list):
        raise GeneratorFailure("Generator output is not a list")
    return data


_CHILD_KEYWORDS = (
    (MESSAGE_TYPE_REMINDER, ("task", "chore", "remember")),
    (MESSAGE_TYPE_ENCOURAGEMENT, ("great", "awesome", "nice")),
    (MESSAGE_TYPE_GOAL_COACHING, ("goal", "learn", "study")),
)

_PARENT_KEYWORDS = (
    (MESSAGE_TYPE_FAMILY_STATUS, ("progress", "status", "doing")),
    (MESSAGE_TYPE_REMINDER, ("task", "chore", "remember")),
    (MESSAGE_TYPE_ENCOURAGEMENT, ("great", "awesome", "congratulations")),
    (MESSAGE_TYPE_GOAL_COACHING, ("goal", "suggest", "recommend")),
)


def classify_reply(text: str, party_type: str) -> str:
    """Tag an agent reply with a message category by keyword."""
    lowered = text.lower()
    table = _CHILD_KEYWORDS if party_type == PARTY_CHILD else _PARENT_KEYWORDS
    for message_type, keywords in table:
        if any(k in lowered for k in keywords):
            return message_type
    return MESSAGE_TYPE_GENERAL


def _chore_stats(chores: list[dict]) -> tuple[int, int]:
    today = datetime.now(timezone.utc).date().isoformat()
    pending = sum(1 for c in chores if not c.get("completedAt"))
    completed_today = sum(
        1 for c in chores
        if c.get("completedAt") and c["completedAt"].startswith(today)
    )
    return pending, completed_today


class ChoreAgent:
    """The AI collaborator behind chat replies, suggestions and reminders."""

    def __init__(
        self,
        family_store: FamilyStore,
        history_store: HistoryStore,
        *,
        query: QueryFn = query_claude,
    ):
        self.family_store = family_store
        self.history_store = history_store
        self._query = query

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    async def child_context(self, child_id: str) -> dict:
        child = await self.family_store.get_child(child_id)
        if child is None:
            raise ChildNotFound(child_id)
        chores = await self.family_store.list_assigned_chores(child_id)
        goals = await self.family_store.list_learning_goals(child_id)
        pending, completed_today = _chore_stats(chores)
        return {
            "child": child,
            "pending_tasks": pending,
            "completed_today": completed_today,
            "active_goals": sum(1 for g in goals if g.get("isActive")),
        }

    async def family_context(self, parent_id: str) -> dict:
        children = await self.family_store.list_children(parent_id)
        pending = completed_today = active_goals = 0
        for child in children:
            ctx = await self.child_context(child["id"])
            pending += ctx["pending_tasks"]
            completed_today += ctx["completed_today"]
            active_goals += ctx["active_goals"]
        return {
            "children": children,
            "pending_tasks": pending,
            "completed_today": completed_today,
            "active_goals": active_goals,
        }

    async def _recent_chat(self, party: Party, text: str) -> str:
        history = await self.history_store.conversation(party, HISTORY_CONTEXT_MESSAGES + 1)
        # The triggering message is already persisted; don't repeat it
        if history and history[-1]["role"] == ROLE_USER and history[-1]["content"] == text:
            history = history[:-1]
        history = history[-HISTORY_CONTEXT_MESSAGES:]
        return "\n".join(f"{m['role']}: {m['content']}" for m in history)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def reply(self, party: Party, text: str) -> dict:
        """Generate the agent's answer to ``text``.

        Returns ``{"content", "type", "actionSuggestion"}``. Raises
        GeneratorFailure when the AI call fails and ChildNotFound for an
        unknown child party.
        """
        if party.type == PARTY_CHILD:
            ctx = await self.child_context(party.id)
            child = ctx["child"]
            system_prompt = CHILD_PERSONA.format(
                name=child["name"],
                age=child["age"],
                pending_tasks=ctx["pending_tasks"],
                completed_today=ctx["completed_today"],
                active_goals=ctx["active_goals"],
                level=child.get("level", 1),
                total_points=child.get("totalPoints", 0),
            )
            speaker = child["name"]
            action = "Check out your pending tasks!" if ctx["pending_tasks"] > 0 else None
        else:
            ctx = await self.family_context(party.id)
            children_summary = ", ".join(
                f"{c['name']} ({c['age']}yo, Level {c.get('level', 1)}, "
                f"{c.get('totalPoints', 0)} points)"
                for c in ctx["children"]
            )
            system_prompt = PARENT_PERSONA.format(
                children_summary=children_summary or "No children yet",
                pending_tasks=ctx["pending_tasks"],
                completed_today=ctx["completed_today"],
                active_goals=ctx["active_goals"],
            )
            speaker = "Parent"
            action = (
                "You have several pending tasks to review"
                if ctx["pending_tasks"] > 5 else None
            )

        prompt = CHAT_PROMPT.format(
            recent_chat=await self._recent_chat(party, text) or "Starting new conversation",
            speaker=speaker,
            message=text,
        )
        content = (await self._query(system_prompt, prompt)).strip()
        if not content:
            raise GeneratorFailure("Empty reply from AI collaborator")
        return {
            "content": content,
            "type": classify_reply(content, party.type),
            "actionSuggestion": action,
        }

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def generate_suggestions(self, kind: str, context: dict, params: dict) -> list:
        """Ask the AI for raw candidate payloads of ``kind``.

        The candidates are not validated here. Raises GeneratorFailure when
        the AI is unreachable or the answer cannot be parsed.
        """
        template = SUGGESTION_PROMPTS.get(kind)
        if template is None:
            raise ValueError(f"Unknown suggestion kind: {kind}")
        child = context["child"]
        count = params.get("count") or DEFAULT_SUGGESTION_COUNT[kind]
        count = max(1, min(int(count), MAX_SUGGESTION_COUNT))
        interests = params.get("interests") or []
        prompt = template.format(
            count=count,
            age=child["age"],
            timebox=params.get("timeboxMinutes", 20),
            categories=", ".join(params.get("categories") or ["educational", "fitness", "creative"]),
            fitness_level=params.get("fitnessLevel", "beginner"),
            interests=f"Interests: {', '.join(interests)}. " if interests else "",
            difficulty=params.get("difficulty", "medium"),
        )
        text = await self._query(SUGGESTION_SYSTEM_PROMPT, prompt + "\n\nReturn as JSON array.")
        return parse_candidates(text)

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def generate_reminder(self, child: dict, pending: list[dict]) -> str:
        """Write a short reminder about ``pending`` chores, with a canned fallback."""
        task_list = "\n".join(
            f"- {c['choreTemplate'].get('name', 'Chore')} "
            f"({c['choreTemplate'].get('pointValue', 0)} points)"
            for c in pending
        )
        try:
            text = await self._query(
                "You are a friendly AI agent for kids. Keep reminders brief and encouraging.",
                REMINDER_PROMPT.format(name=child["name"], age=child["age"], task_list=task_list),
            )
            if text.strip():
                return text.strip()
        except GeneratorFailure:
            logger.exception("Reminder generation failed for child %s", child["id"])
        return (
            f"Hey {child['name']}! You've got {len(pending)} tasks waiting for you. "
            "Ready to earn some points? 💪"
        )
