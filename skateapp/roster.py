"""Roster records and the RSVP state machine.

Every helper here is pure: it takes a list of players and returns a new list,
leaving the input untouched. Persistence and HTTP concerns live elsewhere.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, List, Sequence, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


class RsvpStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    NO_REPLY = "NO_REPLY"


class Position(str, Enum):
    FORWARD = "Forward"
    DEFENSE = "Defense"
    GOALIE = "Goalie"


class Role(str, Enum):
    REGULAR = "Regular"
    SUB = "Sub"


RESPONSE_STATUSES = frozenset({RsvpStatus.ACCEPTED, RsvpStatus.DECLINED})
UNANSWERED_STATUSES = frozenset({RsvpStatus.PENDING, RsvpStatus.NO_REPLY})
IMMUTABLE_FIELDS = frozenset({"id"})


class PlayerNotFoundError(LookupError):
    """Raised when no player matches an id or email."""


class DuplicateEmailError(ValueError):
    """Raised when a new player reuses an email already on the roster."""


class InvalidStatusError(ValueError):
    """Raised when a status is outside the states allowed for a transition."""


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
        extra="ignore",
    )


class Player(_CamelModel):
    """One roster entry, serialized with camelCase keys."""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    skill_level: int = Field(default=5, ge=1, le=10)
    position: Position = Position.FORWARD
    role: Role = Role.REGULAR
    fees_paid: bool = False
    status: RsvpStatus = RsvpStatus.PENDING
    notes: str | None = None

    model_config = ConfigDict(frozen=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SessionConfig(_CamelModel):
    """Details of one scheduled session; never persisted server-side."""

    date: str = ""
    time: str = ""
    location: str = ""
    max_players: int = Field(default=22, ge=1)
    max_goalies: int = Field(default=2, ge=0)
    invite_message: str = ""


_ROSTER_ADAPTER = TypeAdapter(List[Player])


def parse_roster(payload: Any) -> list[Player]:
    """Validate a decoded JSON document into players.

    Raises ``ValueError`` when the payload is not a list, a record is invalid,
    or two records share an id.
    """
    if not isinstance(payload, list):
        raise ValueError("Roster must be a JSON array of players.")
    try:
        players = _ROSTER_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid player record: {exc.errors()[0]['msg']}") from exc
    seen: set[str] = set()
    for player in players:
        if player.id in seen:
            raise ValueError(f"Duplicate player id {player.id!r}.")
        seen.add(player.id)
    return players


def dump_roster(players: Iterable[Player]) -> list[dict[str, Any]]:
    return [player.to_json() for player in players]


def normalize_email(email: str) -> str:
    return email.strip().casefold()


def find_by_email(players: Sequence[Player], email: str) -> Player | None:
    """Return the first player whose email matches, ignoring case."""
    wanted = normalize_email(email)
    if not wanted:
        return None
    return next((player for player in players if normalize_email(player.email) == wanted), None)


def _index_of(players: Sequence[Player], player_id: str) -> int:
    for index, player in enumerate(players):
        if player.id == player_id:
            return index
    raise PlayerNotFoundError(f"Player {player_id} not found")


def new_player(
    *,
    name: str,
    email: str,
    position: Position | str = Position.FORWARD,
    role: Role | str = Role.REGULAR,
    skill_level: int = 5,
    fees_paid: bool = False,
    notes: str | None = None,
) -> Player:
    """Create a fresh ``PENDING`` player with a newly minted id."""
    return Player(
        id=uuid4().hex,
        name=name.strip(),
        email=email.strip(),
        position=position,
        role=role,
        skill_level=skill_level,
        fees_paid=fees_paid,
        status=RsvpStatus.PENDING,
        notes=notes,
    )


def add_player(players: Sequence[Player], player: Player) -> list[Player]:
    if find_by_email(players, player.email) is not None:
        raise DuplicateEmailError(f"{player.email} is already on the roster")
    if any(existing.id == player.id for existing in players):
        raise ValueError(f"Duplicate player id {player.id!r}.")
    return [*players, player]


def update_player(players: Sequence[Player], player_id: str, **changes: Any) -> list[Player]:
    """Apply field edits to one player. The id can never change."""
    if IMMUTABLE_FIELDS & changes.keys():
        raise ValueError("Player id is immutable.")
    index = _index_of(players, player_id)
    current = players[index]
    if "email" in changes:
        clash = find_by_email(players, changes["email"])
        if clash is not None and clash.id != player_id:
            raise DuplicateEmailError(f"{changes['email']} is already on the roster")
    # Round-trip through validation so edits obey the same rules as new records.
    updated = Player.model_validate({**current.model_dump(), **changes})
    result = list(players)
    result[index] = updated
    return result


def remove_player(players: Sequence[Player], player_id: str) -> list[Player]:
    index = _index_of(players, player_id)
    return [player for position, player in enumerate(players) if position != index]


def set_status(players: Sequence[Player], player_id: str, status: RsvpStatus | str) -> list[Player]:
    """Admin override: move one player to any of the four states."""
    try:
        target = RsvpStatus(status)
    except ValueError as exc:
        raise InvalidStatusError(f"Unknown status {status!r}") from exc
    index = _index_of(players, player_id)
    result = list(players)
    result[index] = players[index].model_copy(update={"status": target})
    return result


def respond(players: Sequence[Player], email: str, status: RsvpStatus | str) -> Tuple[list[Player], Player]:
    """Self-service RSVP keyed by email.

    Only ``ACCEPTED`` and ``DECLINED`` are accepted. The first matching player
    is updated; repeating the current answer leaves the roster unchanged.
    """
    try:
        target = RsvpStatus(status)
    except ValueError as exc:
        raise InvalidStatusError("Status must be ACCEPTED or DECLINED") from exc
    if target not in RESPONSE_STATUSES:
        raise InvalidStatusError("Status must be ACCEPTED or DECLINED")

    player = find_by_email(players, email)
    if player is None:
        raise PlayerNotFoundError("Player not found on roster")
    if player.status is target:
        return list(players), player
    updated = set_status(players, player.id, target)
    return updated, updated[_index_of(updated, player.id)]


def reset_statuses(players: Sequence[Player]) -> list[Player]:
    """Start a new invite round: everybody back to ``PENDING``."""
    return [player.model_copy(update={"status": RsvpStatus.PENDING}) for player in players]


def finalize_no_replies(players: Sequence[Player]) -> list[Player]:
    """Decline everyone who has not answered; answered players are untouched."""
    return [
        player.model_copy(update={"status": RsvpStatus.DECLINED})
        if player.status in UNANSWERED_STATUSES
        else player
        for player in players
    ]


def accepted_players(players: Iterable[Player]) -> list[Player]:
    return [player for player in players if player.status is RsvpStatus.ACCEPTED]


SEED_PLAYERS: tuple[dict[str, Any], ...] = (
    {"id": "1", "name": "Scott Skates", "email": "scott.skates@example.com"},
    {"id": "2", "name": "Aleks Tran", "email": "aleks.tran@example.com"},
    {"id": "3", "name": "Andre Beaulieu", "email": "andre.beaulieu@example.com", "position": "Defense"},
    {"id": "4", "name": "Dan Briggs", "email": "dan.briggs@example.com"},
    {"id": "5", "name": "Jason Choi", "email": "jason.choi@example.com"},
    {"id": "6", "name": "Kip Theno", "email": "kip.theno@example.com", "position": "Defense"},
    {"id": "7", "name": "Kolin Watts", "email": "kolin.watts@example.com"},
    {"id": "8", "name": "Lindsay Costello", "email": "lindsay.costello@example.com"},
    {"id": "9", "name": "Paul Magaletta", "email": "paul.magaletta@example.com", "position": "Defense"},
    {"id": "10", "name": "Vito Buranabul", "email": "vito.buranabul@example.com"},
    {"id": "11", "name": "Roy Remsburg", "email": "roy.remsburg@example.com"},
    {"id": "12", "name": "Mike Malinowski", "email": "mike.malinowski@example.com", "position": "Goalie"},
    {"id": "13", "name": "Andrew Neal", "email": "andrew.neal@example.com"},
    {"id": "14", "name": "Jason Withee", "email": "jason.withee@example.com", "position": "Defense"},
    {"id": "15", "name": "Ian Davis", "email": "ian.davis@example.com"},
)


def seed_roster() -> list[Player]:
    """Return the fixed dataset written to a fresh deployment."""
    return parse_roster(
        [
            {
                "position": "Forward",
                "skillLevel": 5,
                "status": "PENDING",
                "role": "Regular",
                "feesPaid": False,
                **entry,
            }
            for entry in SEED_PLAYERS
        ]
    )
