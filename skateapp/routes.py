from __future__ import annotations

import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .notifications import (
    REGISTRATION_SUBJECT,
    Mailer,
    MailerError,
    OutboundEmail,
    build_announcement_messages,
    build_registration_email,
    send_in_batches,
)
from .roster import (
    DuplicateEmailError,
    InvalidStatusError,
    Player,
    PlayerNotFoundError,
    RESPONSE_STATUSES,
    SessionConfig,
    add_player,
    dump_roster,
    find_by_email,
    new_player,
    parse_roster,
    respond,
    seed_roster,
)
from .storage import (
    MalformedRosterError,
    RosterSnapshot,
    RosterStore,
    RosterStoreError,
    StoreUnavailableError,
    VersionConflictError,
)
from .suggestions import FALLBACK_INVITE_TEXT, FallbackSuggester, Suggester, TeamCandidate

router = APIRouter()
logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 3


def get_store(request: Request) -> RosterStore:
    return request.app.state.roster_store


def get_mailer(request: Request) -> Mailer | None:
    return request.app.state.mailer


def get_suggester(request: Request) -> Suggester:
    return request.app.state.suggester


def _etag(version: int) -> str:
    return f'"{version}"'


def _parse_if_match(value: str | None) -> int | None:
    if value is None or value.strip() == "*":
        return None
    try:
        return int(value.strip().removeprefix("W/").strip('"'))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid If-Match header") from exc


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        raise HTTPException(status_code=400, detail="Missing body")
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc


async def _read_json_object(request: Request) -> dict[str, Any]:
    payload = await _read_json(request)
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return payload


def _given(payload: dict[str, Any], key: str, default: Any) -> Any:
    """``payload[key]``, or ``default`` only when the key is absent or null."""
    value = payload.get(key)
    return default if value is None else value


def _load_snapshot(store: RosterStore) -> RosterSnapshot | None:
    try:
        return store.get()
    except StoreUnavailableError as exc:
        logger.error("Failed to load roster: %s", exc)
        raise HTTPException(
            status_code=503,
            detail="Service unavailable: roster storage is not reachable. Please contact admin.",
        ) from exc
    except MalformedRosterError as exc:
        logger.error("Stored roster is malformed: %s", exc)
        raise HTTPException(status_code=500, detail="Invalid roster data") from exc


def _current_or_seed(store: RosterStore) -> tuple[list[Player], int, bool]:
    """Return ``(players, version, is_seed)``; a missing or empty document yields the seed."""
    snapshot = _load_snapshot(store)
    if snapshot is None or snapshot.is_empty:
        return seed_roster(), snapshot.version if snapshot else 0, True
    return snapshot.players, snapshot.version, False


def _require_populated(store: RosterStore) -> RosterSnapshot:
    snapshot = _load_snapshot(store)
    if snapshot is None or snapshot.is_empty:
        logger.warning("RSVP attempted against an empty or uninitialized roster")
        raise HTTPException(status_code=404, detail="Roster is empty or not initialized")
    return snapshot


# ============ ROSTER ============

@router.get("/roster", name="read_roster")
async def read_roster(store: RosterStore = Depends(get_store)):
    players, version, is_seed = _current_or_seed(store)
    if is_seed:
        try:
            version = store.set(players, expected_version=version)
            logger.info("Roster store empty, seeded with %s players", len(players))
        except VersionConflictError:
            # A concurrent request seeded or wrote first; serve what it stored.
            players, version, _ = _current_or_seed(store)
        except RosterStoreError as exc:
            logger.error("Failed to seed roster: %s", exc)
            raise HTTPException(status_code=503, detail="Service unavailable: could not seed roster") from exc
    return JSONResponse(dump_roster(players), headers={"ETag": _etag(version)})


@router.post("/roster", name="write_roster")
async def write_roster(request: Request, store: RosterStore = Depends(get_store)):
    expected_version = _parse_if_match(request.headers.get("if-match"))
    payload = await _read_json(request)
    try:
        players = parse_roster(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        version = store.set(players, expected_version=expected_version)
    except VersionConflictError as exc:
        logger.warning("Rejected stale roster write: %s", exc)
        raise HTTPException(status_code=409, detail="Roster has changed since it was loaded") from exc
    except StoreUnavailableError as exc:
        logger.error("Failed to save roster: %s", exc)
        raise HTTPException(status_code=503, detail="Service unavailable: roster storage is not reachable") from exc

    logger.info("Roster saved (%s players, version %s)", len(players), version)
    return JSONResponse({"success": True, "version": version}, headers={"ETag": _etag(version)})


@router.post("/roster/players", name="register_player", status_code=201)
async def register_player(request: Request, store: RosterStore = Depends(get_store)):
    payload = await _read_json_object(request)
    name = str(payload.get("name") or "").strip()
    email = str(payload.get("email") or "").strip()
    if not name or not email:
        raise HTTPException(status_code=400, detail="Missing required fields: name, email")
    try:
        player = new_player(
            name=name,
            email=email,
            position=payload.get("position") or "Forward",
            role=payload.get("role") or "Sub",
            skill_level=_given(payload, "skillLevel", 5),
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid registration: {exc.errors()[0]['msg']}") from exc

    for attempt in range(1, WRITE_ATTEMPTS + 1):
        players, version, _ = _current_or_seed(store)
        try:
            updated = add_player(players, player)
        except DuplicateEmailError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        try:
            store.set(updated, expected_version=version)
        except VersionConflictError:
            logger.info("Registration for %s lost a write race (attempt %s)", email, attempt)
            continue
        except RosterStoreError as exc:
            logger.error("Failed to save registration: %s", exc)
            raise HTTPException(status_code=500, detail="Failed to save registration") from exc
        logger.info("Registered %s as %s", player.name, player.role.value)
        return JSONResponse(player.to_json(), status_code=201)

    raise HTTPException(status_code=409, detail="Roster is busy, please try again")


# ============ RSVP ============

@router.get("/rsvp", name="lookup_rsvp")
async def lookup_rsvp(email: str | None = Query(default=None), store: RosterStore = Depends(get_store)):
    if not email or not email.strip():
        raise HTTPException(status_code=400, detail="Missing email parameter")
    snapshot = _require_populated(store)
    player = find_by_email(snapshot.players, email)
    if player is None:
        raise HTTPException(status_code=404, detail="Player not found on roster")
    return {
        "id": player.id,
        "name": player.name,
        "email": player.email,
        "position": player.position.value,
        "status": player.status.value,
    }


@router.post("/rsvp", name="submit_rsvp")
async def submit_rsvp(request: Request, store: RosterStore = Depends(get_store)):
    payload = await _read_json_object(request)
    email = payload.get("email")
    status = payload.get("status")
    if not email or not status:
        raise HTTPException(status_code=400, detail="Missing email or status")
    if not isinstance(status, str) or status not in {value.value for value in RESPONSE_STATUSES}:
        raise HTTPException(status_code=400, detail="Status must be ACCEPTED or DECLINED")

    for attempt in range(1, WRITE_ATTEMPTS + 1):
        snapshot = _require_populated(store)
        try:
            updated, player = respond(snapshot.players, str(email), status)
        except PlayerNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Player not found on roster") from exc
        except InvalidStatusError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        if updated == snapshot.players:
            logger.info("RSVP unchanged: %s already %s", player.name, player.status.value)
            return {"success": True, "name": player.name, "status": player.status.value}

        try:
            store.set(updated, expected_version=snapshot.version)
        except VersionConflictError:
            logger.info("RSVP for %s lost a write race (attempt %s), retrying", player.name, attempt)
            continue
        except RosterStoreError as exc:
            logger.error("Failed to save RSVP: %s", exc)
            raise HTTPException(status_code=500, detail="Failed to save response") from exc

        logger.info("RSVP updated: %s -> %s", player.name, player.status.value)
        return {"success": True, "name": player.name, "status": player.status.value}

    logger.error("RSVP for %s gave up after %s conflicting writes", email, WRITE_ATTEMPTS)
    raise HTTPException(status_code=500, detail="Failed to save response")


# ============ NOTIFICATIONS ============

@router.post("/notify/registration", name="notify_registration")
async def notify_registration(request: Request, mailer: Mailer | None = Depends(get_mailer)):
    if mailer is None:
        logger.error("Registration email requested but no email provider is configured")
        raise HTTPException(status_code=500, detail="Email service not configured")

    payload = await _read_json_object(request)
    name = payload.get("name")
    email = payload.get("email")
    if not name or not email:
        raise HTTPException(status_code=400, detail="Missing required fields: name, email")

    message = OutboundEmail(
        sender=mailer.sender,
        to=str(email),
        subject=REGISTRATION_SUBJECT,
        html=build_registration_email(
            str(name),
            str(payload.get("position") or "Forward"),
            str(payload.get("role") or "Sub"),
        ),
    )
    try:
        email_id = await mailer.send(message)
    except MailerError as exc:
        logger.error("Registration email to %s failed: %s", email, exc)
        raise HTTPException(status_code=500, detail="Failed to send email") from exc

    logger.info("Registration email sent to %s, id: %s", email, email_id)
    return {"success": True, "emailId": email_id}


def _parse_recipients(value: Any) -> list[dict[str, str]]:
    if not isinstance(value, list) or not value:
        raise HTTPException(status_code=400, detail="No recipients provided")
    recipients: list[dict[str, str]] = []
    for entry in value:
        if not isinstance(entry, dict) or not entry.get("email"):
            raise HTTPException(status_code=400, detail="Every recipient needs an email")
        recipients.append({"email": str(entry["email"]), "name": str(entry.get("name") or "")})
    return recipients


@router.post("/notify/announcement", name="notify_announcement")
async def notify_announcement(request: Request, mailer: Mailer | None = Depends(get_mailer)):
    admin_secret = request.app.state.admin_secret
    if mailer is None or not admin_secret:
        logger.error("Announcement requested but email provider or ADMIN_SECRET is missing")
        raise HTTPException(status_code=500, detail="Email service not configured")

    payload = await _read_json_object(request)
    secret = payload.get("secret")
    if not isinstance(secret, str) or not hmac.compare_digest(secret.encode("utf-8"), admin_secret.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Unauthorized: invalid admin secret")

    recipients = _parse_recipients(payload.get("recipients"))
    if not payload.get("sessionDate") or not payload.get("sessionTime") or not payload.get("location"):
        raise HTTPException(status_code=400, detail="Missing session details (date, time, location)")
    try:
        session = SessionConfig(
            date=str(payload["sessionDate"]),
            time=str(payload["sessionTime"]),
            location=str(payload["location"]),
            max_players=_given(payload, "maxPlayers", 22),
            max_goalies=_given(payload, "maxGoalies", 2),
            invite_message=str(payload.get("inviteMessage") or ""),
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid session details: {exc.errors()[0]['msg']}") from exc

    messages = build_announcement_messages(mailer.sender, recipients, session)
    report = await send_in_batches(mailer, messages, batch_size=request.app.state.email_batch_size)
    return JSONResponse(report.as_dict(), status_code=200 if report.success else 207)


# ============ SUGGESTIONS ============

async def _optional_json(request: Request) -> Any:
    try:
        return await _read_json(request)
    except HTTPException:
        return None


@router.post("/suggest/email-draft", name="suggest_email_draft")
async def suggest_email_draft(request: Request, suggester: Suggester = Depends(get_suggester)):
    payload = await _optional_json(request)
    try:
        session = SessionConfig.model_validate(payload if isinstance(payload, dict) else {})
    except ValidationError:
        session = SessionConfig()
    try:
        text = await suggester.draft_invite(session)
    except Exception:  # pragma: no cover - suggestions must never fail the request
        logger.exception("Invite drafting raised; using fallback text")
        text = FALLBACK_INVITE_TEXT
    return {"text": text or FALLBACK_INVITE_TEXT}


@router.post("/suggest/team-split", name="suggest_team_split")
async def suggest_team_split(request: Request, suggester: Suggester = Depends(get_suggester)):
    payload = await _optional_json(request)
    entries = payload.get("players", []) if isinstance(payload, dict) else payload
    candidates: list[TeamCandidate] = []
    if isinstance(entries, list):
        candidates = [TeamCandidate.from_payload(entry) for entry in entries if isinstance(entry, dict)]
    try:
        split = await suggester.split_teams(candidates)
    except Exception:  # pragma: no cover - suggestions must never fail the request
        logger.exception("Team balancing raised; using simple split")
        split = await FallbackSuggester().split_teams(candidates)
    return split.as_dict()


# ============ HEALTH CHECK ============

@router.get("/health", name="health")
async def health_check():
    return {"status": "ok"}
