"""WebSocket protocol constants: frame types, party types and close codes.

Pure data module -- no imports, no logic. Safe to import from any chorechamp
module (server or client side) without risk of circular dependencies.
"""

# ── Client -> Server frame types ──────────────────────────────────────

MSG_AUTH = "auth"
MSG_CHAT = "chat"

# ── Server -> Client frame types ──────────────────────────────────────

MSG_AGENT_MESSAGE = "agent_message"
MSG_ERROR = "error"

# ── Party types ───────────────────────────────────────────────────────

PARTY_PARENT = "parent"
PARTY_CHILD = "child"
PARTY_TYPES = (PARTY_PARENT, PARTY_CHILD)

# ── Message roles and categories (persisted in the history store) ─────

ROLE_USER = "user"
ROLE_AGENT = "agent"

MESSAGE_TYPE_GENERAL = "general_chat"
MESSAGE_TYPE_GREETING = "greeting"
MESSAGE_TYPE_REMINDER = "reminder"
MESSAGE_TYPE_ENCOURAGEMENT = "encouragement"
MESSAGE_TYPE_GOAL_COACHING = "goal_coaching"
MESSAGE_TYPE_FAMILY_STATUS = "family_status"
