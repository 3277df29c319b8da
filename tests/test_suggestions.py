import json

import httpx
import pytest

from skateapp import create_app
from skateapp.roster import SessionConfig
from skateapp.suggestions import (
    FALLBACK_INVITE_TEXT,
    ChatCompletionSuggester,
    FallbackSuggester,
    TeamCandidate,
    parse_team_split,
    teams_prompt,
)

PLAYERS = [
    {"name": "Ana", "skillLevel": 8, "position": "Forward"},
    {"name": "Ben", "skillLevel": 4, "position": "Defense"},
    {"name": "Cal", "skillLevel": 6, "position": "Goalie"},
]


def _completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def _suggester(handler):
    return ChatCompletionSuggester("sk-test", base_url="https://llm.example.com/v1", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fallback_split_puts_extra_player_on_white():
    candidates = [TeamCandidate.from_payload(entry) for entry in PLAYERS]
    split = await FallbackSuggester().split_teams(candidates)
    assert split.as_dict() == {"white": ["Ana", "Ben"], "dark": ["Cal"]}
    empty = await FallbackSuggester().split_teams([])
    assert empty.as_dict() == {"white": [], "dark": []}


def test_parse_team_split_extracts_embedded_json():
    split = parse_team_split('Sure! Here you go:\n{"white": ["Ana"], "dark": ["Ben", "Cal"]}\nGood luck!')
    assert split.white == ["Ana"]
    assert split.dark == ["Ben", "Cal"]


@pytest.mark.parametrize(
    "text",
    [
        "no json here",
        '{"white": ["Ana"]}',
        '{"white": "Ana", "dark": []}',
        '{"white": [1], "dark": []}',
        "{not json}",
    ],
)
def test_parse_team_split_rejects_bad_replies(text):
    with pytest.raises(ValueError):
        parse_team_split(text)


def test_teams_prompt_lists_players():
    prompt = teams_prompt([TeamCandidate.from_payload(entry) for entry in PLAYERS])
    assert "- Ana (Skill: 8/10, Pos: Forward)" in prompt
    assert "Team White" in prompt


@pytest.mark.asyncio
async def test_chat_completion_draft_invite():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return _completion("Lace up, it's go time!")

    text = await _suggester(handler).draft_invite(SessionConfig(date="2025-11-15", time="19:30", location="Rink 2"))
    assert text == "Lace up, it's go time!"
    assert seen["url"] == "https://llm.example.com/v1/chat/completions"
    assert seen["body"]["model"] == "qwen-flash"
    assert "Rink: Rink 2" in seen["body"]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_chat_completion_failures_fall_back():
    def broken(request):
        return httpx.Response(500, json={"error": "boom"})

    def empty(request):
        return httpx.Response(200, json={"choices": []})

    def chatty(request):
        return _completion("I would rather not pick teams.")

    candidates = [TeamCandidate.from_payload(entry) for entry in PLAYERS]
    assert await _suggester(broken).draft_invite(SessionConfig()) == FALLBACK_INVITE_TEXT
    assert await _suggester(empty).draft_invite(SessionConfig()) == FALLBACK_INVITE_TEXT
    split = await _suggester(chatty).split_teams(candidates)
    assert split.as_dict() == {"white": ["Ana", "Ben"], "dark": ["Cal"]}


@pytest.mark.asyncio
async def test_chat_completion_split_teams():
    def handler(request):
        body = json.loads(request.content)
        assert body["model"] == "qwen-plus"
        return _completion('```json\n{"white": ["Ana", "Cal"], "dark": ["Ben"]}\n```')

    split = await _suggester(handler).split_teams([TeamCandidate.from_payload(entry) for entry in PLAYERS])
    assert split.as_dict() == {"white": ["Ana", "Cal"], "dark": ["Ben"]}


@pytest.mark.asyncio
async def test_empty_player_list_skips_backend():
    def handler(request):
        raise AssertionError("backend should not be called")

    split = await _suggester(handler).split_teams([])
    assert split.as_dict() == {"white": [], "dark": []}


@pytest.mark.asyncio
async def test_suggestion_endpoints_always_answer(async_client):
    draft = await async_client.post("/suggest/email-draft", json={"date": "2025-11-15", "time": "19:30"})
    assert draft.status_code == 200
    assert draft.json() == {"text": FALLBACK_INVITE_TEXT}

    no_body = await async_client.post("/suggest/email-draft")
    assert no_body.json() == {"text": FALLBACK_INVITE_TEXT}

    split = await async_client.post("/suggest/team-split", json={"players": PLAYERS})
    assert split.json() == {"white": ["Ana", "Ben"], "dark": ["Cal"]}

    bare_list = await async_client.post("/suggest/team-split", json=PLAYERS[:2])
    assert bare_list.json() == {"white": ["Ana"], "dark": ["Ben"]}

    garbage = await async_client.post("/suggest/team-split", content=b"not json")
    assert garbage.status_code == 200
    assert garbage.json() == {"white": [], "dark": []}


@pytest.mark.asyncio
async def test_suggestion_endpoint_uses_backend(store):
    def handler(request):
        return _completion('{"white": ["Ben"], "dark": ["Ana"]}')

    app = create_app(store=store, mailer=None, suggester=_suggester(handler))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.post("/suggest/team-split", json={"players": PLAYERS[:2]})
    assert response.json() == {"white": ["Ben"], "dark": ["Ana"]}


def test_candidate_with_unusable_skill_level_defaults_to_five():
    assert TeamCandidate.from_payload({"name": "B", "skillLevel": "high"}).skill_level == 5
    assert TeamCandidate.from_payload({"name": "B", "skillLevel": None}).skill_level == 5
    assert TeamCandidate.from_payload({"name": "B", "skillLevel": "7"}).skill_level == 7


@pytest.mark.asyncio
async def test_one_malformed_entry_keeps_the_split(async_client):
    response = await async_client.post(
        "/suggest/team-split",
        json=[{"name": "A", "skillLevel": 6}, {"name": "B", "skillLevel": "high"}, {"name": "C"}],
    )
    assert response.status_code == 200
    assert response.json() == {"white": ["A", "B"], "dark": ["C"]}
