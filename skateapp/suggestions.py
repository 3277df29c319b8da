"""Invite drafting and team splitting backed by a text-generation service.

Both suggestions are cosmetic: whenever the backend is missing, slow, failing
or returns something unusable, the deterministic fallback answers instead.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import httpx

from .roster import SessionConfig

SUGGESTION_API_KEY = os.getenv("SUGGESTION_API_KEY")
SUGGESTION_BASE_URL = os.getenv(
    "SUGGESTION_BASE_URL", "https://dashscope-intl.aliyuncs.com/compatible-mode/v1"
)
SUGGESTION_EMAIL_MODEL = os.getenv("SUGGESTION_EMAIL_MODEL", "qwen-flash")
SUGGESTION_TEAMS_MODEL = os.getenv("SUGGESTION_TEAMS_MODEL", "qwen-plus")

FALLBACK_INVITE_TEXT = "Hey team, Sk8 is on this week! Please RSVP."
JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TeamCandidate:
    name: str
    skill_level: int = 5
    position: str = "Forward"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TeamCandidate":
        """Build a candidate from loose client JSON; an unusable skill level counts as 5."""
        try:
            skill_level = int(payload.get("skillLevel", 5))
        except (TypeError, ValueError):
            skill_level = 5
        return cls(
            name=str(payload.get("name", "")),
            skill_level=skill_level,
            position=str(payload.get("position", "Forward") or "Forward"),
        )


@dataclass(frozen=True)
class TeamSplit:
    white: list[str]
    dark: list[str]

    def as_dict(self) -> dict[str, list[str]]:
        return {"white": list(self.white), "dark": list(self.dark)}


def invite_prompt(session: SessionConfig) -> str:
    return (
        "Write a high-energy, fun, and concise email invitation for a hockey drop-in scrimmage.\n"
        "Use hockey slang (chirps, celly, dangles) but keep it readable.\n\n"
        "Details:\n"
        f"- Date: {session.date}\n"
        f"- Time: {session.time}\n"
        f"- Rink: {session.location}\n"
        f"- Max Skater Spots: {session.max_players}\n"
        f"- Max Goalie Spots: {session.max_goalies}\n\n"
        "The call to action is to reply or click the link to claim a spot.\n"
        "Keep it under 150 words."
    )


def teams_prompt(players: Iterable[TeamCandidate]) -> str:
    roster = "\n".join(
        f"- {player.name} (Skill: {player.skill_level}/10, Pos: {player.position})" for player in players
    )
    return (
        'I have a list of hockey players. Please split them into two balanced teams: "Team White" and "Team Dark".\n'
        "Try to balance the total skill level and positions (ensure goalies are split if possible).\n\n"
        f"Players:\n{roster}\n\n"
        "Return ONLY valid JSON in this exact format, with no other text:\n"
        '{"white": ["Player Name 1", "Player Name 2"], "dark": ["Player Name 3", "Player Name 4"]}'
    )


def parse_team_split(text: str) -> TeamSplit:
    """Pull the first JSON object out of a model reply and validate its shape."""
    match = JSON_OBJECT_PATTERN.search(text or "")
    if not match:
        raise ValueError("Could not find JSON in the team split reply")
    payload = json.loads(match.group(0))
    if not isinstance(payload, dict):
        raise ValueError("Team split reply is not an object")
    teams: dict[str, list[str]] = {}
    for side in ("white", "dark"):
        names = payload.get(side)
        if not isinstance(names, list) or not all(isinstance(name, str) for name in names):
            raise ValueError(f"Team split reply has no usable {side!r} list")
        teams[side] = names
    return TeamSplit(white=teams["white"], dark=teams["dark"])


class Suggester:
    """Source of invite drafts and team splits."""

    async def draft_invite(self, session: SessionConfig) -> str:
        raise NotImplementedError

    async def split_teams(self, players: Sequence[TeamCandidate]) -> TeamSplit:
        raise NotImplementedError


class FallbackSuggester(Suggester):
    """Deterministic answers used offline and whenever the backend fails."""

    async def draft_invite(self, session: SessionConfig) -> str:
        return FALLBACK_INVITE_TEXT

    async def split_teams(self, players: Sequence[TeamCandidate]) -> TeamSplit:
        midpoint = math.ceil(len(players) / 2)
        return TeamSplit(
            white=[player.name for player in players[:midpoint]],
            dark=[player.name for player in players[midpoint:]],
        )


class ChatCompletionSuggester(FallbackSuggester):
    """Ask an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = SUGGESTION_BASE_URL,
        email_model: str = SUGGESTION_EMAIL_MODEL,
        teams_model: str = SUGGESTION_TEAMS_MODEL,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 20.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.email_model = email_model
        self.teams_model = teams_model
        self._transport = transport
        self._timeout = timeout

    async def _complete(self, prompt: str, *, model: str, max_tokens: int) -> str:
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": model,
                    "messages": [{"role": "user", "content": prompt}],
                    "max_tokens": max_tokens,
                },
            )
            response.raise_for_status()
            data = response.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError("Completion reply has no message content") from exc
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Completion reply is empty")
        return content

    async def draft_invite(self, session: SessionConfig) -> str:
        try:
            return await self._complete(invite_prompt(session), model=self.email_model, max_tokens=512)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Invite drafting failed, using fallback: %s", exc)
            return await super().draft_invite(session)

    async def split_teams(self, players: Sequence[TeamCandidate]) -> TeamSplit:
        if not players:
            return await super().split_teams(players)
        try:
            text = await self._complete(teams_prompt(players), model=self.teams_model, max_tokens=2048)
            return parse_team_split(text)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Team balancing failed, using simple split: %s", exc)
            return await super().split_teams(players)


def suggester_from_env() -> Suggester:
    if SUGGESTION_API_KEY:
        return ChatCompletionSuggester(SUGGESTION_API_KEY)
    logger.info("SUGGESTION_API_KEY not configured; suggestions use the offline fallback.")
    return FallbackSuggester()
