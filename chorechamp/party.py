"""Party identity: the parent user or child profile that owns a chat or suggestion."""

import re
from dataclasses import dataclass

from .ws_constants import PARTY_CHILD, PARTY_TYPES

# Ids also name the party's history file, so they stay filename-safe
PARTY_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]{0,127}$")


def is_valid_party_id(party_id) -> bool:
    return isinstance(party_id, str) and bool(PARTY_ID_RE.match(party_id))


@dataclass(frozen=True)
class Party:
    type: str
    id: str

    def __post_init__(self):
        if self.type not in PARTY_TYPES:
            raise ValueError(f"Invalid party type: {self.type!r}")
        if not is_valid_party_id(self.id):
            raise ValueError(f"Invalid party id: {self.id!r}")

    @property
    def key(self) -> str:
        return f"{self.type}-{self.id}"

    def to_dict(self) -> dict:
        return {"partyType": self.type, "partyId": self.id}

    def __str__(self) -> str:
        return self.key


def party_from_auth_frame(msg: dict) -> Party:
    """Resolve the Party declared by an ``auth`` frame.

    Accepts ``{partyType, partyId}`` and the legacy child-only form
    ``{childId}``. Raises ValueError when neither form yields a valid Party.
    """
    party_type = msg.get("partyType")
    party_id = msg.get("partyId")
    if party_type is None and party_id is None and "childId" in msg:
        party_type, party_id = PARTY_CHILD, msg.get("childId")
    return Party(type=party_type, id=party_id)
