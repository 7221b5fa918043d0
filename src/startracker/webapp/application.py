"""FastAPI frontend for Star Tracker.

Every route resolves the caller from the signed session cookie, hands the
request to the :class:`StarTracker` facade and returns the facade's tagged
result as JSON. Parents sign in with the household PIN; children sign in with
their id and personal PIN and only ever see their own stars.
"""

from __future__ import annotations

import hmac
import threading
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Form, Query, Request
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from ..config import DEFAULT_HISTORY_LIMIT, DEFAULT_TRANSACTION_LIMIT, PARENT_PIN, PARENT_USER_ID, SESSION_SECRET
from ..models import ActorContext, OperationResult, Rating, Role
from ..service import StarTracker


# ---------------------------------------------------------------------------
# FastAPI application setup
# ---------------------------------------------------------------------------
app = FastAPI(title="Star Tracker")
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    same_site="lax",
    max_age=None,
)

_tracker: Optional[StarTracker] = None
_tracker_lock = threading.Lock()

_STATUS_BY_CODE: Dict[str, int] = {
    "validation_error": 400,
    "not_found": 404,
    "duplicate_action": 409,
    "insufficient_stars": 409,
    "permission_denied": 403,
    "storage_error": 500,
}


def get_tracker() -> StarTracker:
    global _tracker
    if _tracker is None:
        with _tracker_lock:
            if _tracker is None:
                _tracker = StarTracker()
    return _tracker


def set_tracker(tracker: Optional[StarTracker]) -> None:
    """Swap the tracker used by the routes (tests point this at a temporary database)."""

    global _tracker
    with _tracker_lock:
        _tracker = tracker


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------
def current_actor(request: Request) -> Optional[ActorContext]:
    role = request.session.get("role")
    user_id = request.session.get("user_id")
    if not role or not user_id:
        return None
    try:
        resolved = Role(role)
    except ValueError:
        return None
    return ActorContext(user_id=user_id, role=resolved, child_id=request.session.get("child_id"))


def _unauthenticated() -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": "Sign in first.", "code": "not_authenticated"},
        status_code=401,
    )


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, "code": "validation_error"}, status_code=400)


def respond(result: OperationResult, *, created: bool = False) -> JSONResponse:
    if result.ok:
        return JSONResponse(result.to_dict(), status_code=201 if created else 200)
    return JSONResponse(result.to_dict(), status_code=_STATUS_BY_CODE.get(result.code or "", 400))


def _parse_int(raw: Any, label: str) -> int:
    text = str(raw if raw is not None else "").strip()
    try:
        return int(text)
    except ValueError as exc:
        raise ValueError(f"{label} must be a whole number.") from exc


def _parse_optional_int(raw: Any, label: str) -> Optional[int]:
    if raw is None or str(raw).strip() == "":
        return None
    return _parse_int(raw, label)


def _form_flag(raw: Optional[str]) -> Optional[bool]:
    if raw is None:
        return None
    return str(raw).strip().lower() in {"1", "true", "on", "yes"}


def _parse_date(raw: Optional[str]) -> Optional[date]:
    if raw is None or not raw.strip():
        return None
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as exc:
        raise ValueError("Dates use the YYYY-MM-DD format.") from exc


def _changes(**fields: Any) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


# ---------------------------------------------------------------------------
# Sign in
# ---------------------------------------------------------------------------
@app.post("/session/parent")
def parent_login(request: Request, pin: str = Form(...)):
    if not hmac.compare_digest((pin or "").strip().encode("utf-8"), PARENT_PIN.encode("utf-8")):
        get_tracker().logger.log("parent_login_failed")
        return JSONResponse({"success": False, "error": "Incorrect PIN.", "code": "not_authenticated"}, status_code=401)
    request.session.clear()
    request.session["role"] = Role.PARENT.value
    request.session["user_id"] = PARENT_USER_ID
    return JSONResponse({"success": True, "role": Role.PARENT.value, "user_id": PARENT_USER_ID})


@app.post("/session/child")
def child_login(request: Request, child_id: str = Form(...), pin: str = Form(...)):
    actor = get_tracker().authenticate_child(child_id.strip(), pin)
    if actor is None:
        return JSONResponse(
            {"success": False, "error": "Invalid child id or PIN.", "code": "not_authenticated"},
            status_code=401,
        )
    request.session.clear()
    request.session["role"] = actor.role.value
    request.session["user_id"] = actor.user_id
    request.session["child_id"] = actor.child_id
    return JSONResponse({"success": True, "role": actor.role.value, "child_id": actor.child_id})


@app.post("/logout")
def logout(request: Request):
    request.session.clear()
    return JSONResponse({"success": True})


# ---------------------------------------------------------------------------
# Children
# ---------------------------------------------------------------------------
@app.get("/children")
def list_children(request: Request):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().list_children(actor))


@app.post("/children")
def create_child(
    request: Request,
    name: str = Form(...),
    avatar_url: str = Form(""),
    birth_date: Optional[str] = Form(None),
    pin: Optional[str] = Form(None),
):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    try:
        born = _parse_date(birth_date)
    except ValueError as exc:
        return _bad_request(str(exc))
    result = get_tracker().create_child(
        actor, name, avatar_url=avatar_url, birth_date=born, pin=(pin or "").strip() or None
    )
    return respond(result, created=True)


@app.get("/children/{child_id}")
def get_child(request: Request, child_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().get_child(actor, child_id))


@app.post("/children/{child_id}/update")
def update_child(
    request: Request,
    child_id: str,
    name: Optional[str] = Form(None),
    avatar_url: Optional[str] = Form(None),
    birth_date: Optional[str] = Form(None),
    pin: Optional[str] = Form(None),
):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    try:
        born = _parse_date(birth_date)
    except ValueError as exc:
        return _bad_request(str(exc))
    changes = _changes(name=name, avatar_url=avatar_url, birth_date=born, pin=pin)
    return respond(get_tracker().update_child(actor, child_id, **changes))


@app.post("/children/{child_id}/delete")
def delete_child(request: Request, child_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().delete_child(actor, child_id))


# ---------------------------------------------------------------------------
# Stars
# ---------------------------------------------------------------------------
@app.get("/balances")
def all_balances(request: Request):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().get_all_balances(actor))


@app.get("/children/{child_id}/balance")
def child_balance(request: Request, child_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().get_balance(actor, child_id))


@app.get("/children/{child_id}/transactions")
def child_transactions(request: Request, child_id: str, limit: int = Query(DEFAULT_TRANSACTION_LIMIT)):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().get_star_transactions(actor, child_id, limit))


# ---------------------------------------------------------------------------
# Daily evaluations
# ---------------------------------------------------------------------------
def _ratings_from_form(form: Any) -> List[Rating]:
    """Collect ``rating_<activity id>`` fields; blank values mean "not rated"."""

    ratings: List[Rating] = []
    for key in form.keys():
        if not key.startswith("rating_"):
            continue
        raw = form.get(key)
        if raw is None or not str(raw).strip():
            continue
        activity_type_id = key[len("rating_"):]
        ratings.append(Rating(activity_type_id=activity_type_id, level=_parse_int(raw, f"Rating for {activity_type_id}")))
    return ratings


@app.post("/children/{child_id}/evaluations")
async def submit_evaluation(request: Request, child_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    form = await request.form()
    try:
        ratings = _ratings_from_form(form)
    except ValueError as exc:
        return _bad_request(str(exc))
    penalty_ids: List[str] = []
    if hasattr(form, "getlist"):
        penalty_ids = [value.strip() for value in form.getlist("penalty_id") if value and value.strip()]
    notes = str(form.get("notes") or "").strip()
    return respond(get_tracker().submit_evaluation(actor, child_id, ratings, penalty_ids, notes))


@app.get("/children/{child_id}/evaluations/today")
def today_evaluation(request: Request, child_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().get_today_evaluation(actor, child_id))


@app.get("/children/{child_id}/evaluations/month")
def month_evaluations(request: Request, child_id: str, year: int = Query(...), month: int = Query(...)):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().get_month_evaluations(actor, child_id, year, month))


@app.get("/children/{child_id}/evaluations")
def evaluation_history(request: Request, child_id: str, limit: int = Query(DEFAULT_HISTORY_LIMIT)):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().get_evaluation_history(actor, child_id, limit))


# ---------------------------------------------------------------------------
# Weekly challenges
# ---------------------------------------------------------------------------
@app.post("/children/{child_id}/challenges/{reward_id}/check-in")
def weekly_check_in(request: Request, child_id: str, reward_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().check_in_weekly_challenge(actor, child_id, reward_id))


@app.get("/children/{child_id}/challenges")
def weekly_progress(request: Request, child_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().get_weekly_challenge_progress(actor, child_id))


# ---------------------------------------------------------------------------
# Redemptions
# ---------------------------------------------------------------------------
@app.post("/children/{child_id}/rewards/{reward_id}/redeem")
def redeem_reward(request: Request, child_id: str, reward_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().redeem_reward(actor, child_id, reward_id), created=True)


@app.get("/children/{child_id}/redemptions")
def child_redemptions(request: Request, child_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().get_redemptions(actor, child_id))


@app.get("/redemptions/pending")
def pending_redemptions(request: Request):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().get_pending_redemptions(actor))


@app.post("/redemptions/{redemption_id}/approve")
def approve_redemption(request: Request, redemption_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().approve_redemption(actor, redemption_id))


@app.post("/redemptions/{redemption_id}/reject")
def reject_redemption(
    request: Request,
    redemption_id: str,
    child_id: str = Form(...),
    refund_amount: Optional[str] = Form(None),
):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    try:
        refund = _parse_optional_int(refund_amount, "Refund amount")
    except ValueError as exc:
        return _bad_request(str(exc))
    return respond(get_tracker().reject_redemption(actor, redemption_id, child_id, refund))


@app.post("/redemptions/{redemption_id}/delete")
def delete_redemption(
    request: Request,
    redemption_id: str,
    child_id: str = Form(...),
    refund_amount: Optional[str] = Form(None),
):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    try:
        refund = _parse_optional_int(refund_amount, "Refund amount")
    except ValueError as exc:
        return _bad_request(str(exc))
    return respond(get_tracker().delete_redemption(actor, redemption_id, child_id, refund))


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
@app.get("/catalog/activities")
def list_activities(request: Request, include_inactive: bool = Query(False)):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().list_activity_types(actor, include_inactive=include_inactive))


@app.post("/catalog/activities")
def create_activity(
    request: Request,
    name: str = Form(...),
    icon: str = Form(""),
    description: str = Form(""),
    star_level_1: Optional[str] = Form(None),
    star_level_2: Optional[str] = Form(None),
    star_level_3: Optional[str] = Form(None),
    sort_order: str = Form("0"),
):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    raw_levels = (star_level_1, star_level_2, star_level_3)
    try:
        levels = None
        if any(value not in (None, "") for value in raw_levels):
            levels = [_parse_int(value, f"Star level {index}") for index, value in enumerate(raw_levels, start=1)]
        order = _parse_int(sort_order, "Sort order")
    except ValueError as exc:
        return _bad_request(str(exc))
    result = get_tracker().create_activity_type(
        actor, name, icon=icon, description=description, star_levels=levels, sort_order=order
    )
    return respond(result, created=True)


@app.post("/catalog/activities/{activity_type_id}/update")
def update_activity(
    request: Request,
    activity_type_id: str,
    name: Optional[str] = Form(None),
    icon: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    star_level_1: Optional[str] = Form(None),
    star_level_2: Optional[str] = Form(None),
    star_level_3: Optional[str] = Form(None),
    sort_order: Optional[str] = Form(None),
    is_active: Optional[str] = Form(None),
):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    try:
        changes = _changes(
            name=name,
            icon=icon,
            description=description,
            star_level_1=_parse_optional_int(star_level_1, "Star level 1"),
            star_level_2=_parse_optional_int(star_level_2, "Star level 2"),
            star_level_3=_parse_optional_int(star_level_3, "Star level 3"),
            sort_order=_parse_optional_int(sort_order, "Sort order"),
            is_active=_form_flag(is_active),
        )
    except ValueError as exc:
        return _bad_request(str(exc))
    return respond(get_tracker().update_activity_type(actor, activity_type_id, **changes))


@app.get("/catalog/penalties")
def list_penalties(request: Request, include_inactive: bool = Query(False)):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().list_penalty_types(actor, include_inactive=include_inactive))


@app.post("/catalog/penalties")
def create_penalty(
    request: Request,
    name: str = Form(...),
    kind: str = Form("penalty"),
    star_deduction: str = Form("1"),
    description: str = Form(""),
    icon: str = Form(""),
):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    try:
        stars = _parse_int(star_deduction, "Star deduction")
    except ValueError as exc:
        return _bad_request(str(exc))
    result = get_tracker().create_penalty_type(
        actor, name, kind=kind.strip().lower(), star_deduction=stars, description=description, icon=icon
    )
    return respond(result, created=True)


@app.post("/catalog/penalties/{penalty_type_id}/update")
def update_penalty(
    request: Request,
    penalty_type_id: str,
    name: Optional[str] = Form(None),
    kind: Optional[str] = Form(None),
    star_deduction: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    icon: Optional[str] = Form(None),
    is_active: Optional[str] = Form(None),
):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    try:
        changes = _changes(
            name=name,
            kind=kind.strip().lower() if kind else None,
            star_deduction=_parse_optional_int(star_deduction, "Star deduction"),
            description=description,
            icon=icon,
            is_active=_form_flag(is_active),
        )
    except ValueError as exc:
        return _bad_request(str(exc))
    return respond(get_tracker().update_penalty_type(actor, penalty_type_id, **changes))


@app.post("/catalog/penalties/{penalty_type_id}/delete")
def delete_penalty(request: Request, penalty_type_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().delete_penalty_type(actor, penalty_type_id))


@app.get("/catalog/rewards")
def list_rewards(request: Request, include_inactive: bool = Query(False)):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().list_rewards(actor, include_inactive=include_inactive))


@app.post("/catalog/rewards")
def create_reward(
    request: Request,
    name: str = Form(...),
    star_cost: Optional[str] = Form(None),
    tier: str = Form("weekly"),
    description: str = Form(""),
    image_url: str = Form(""),
    is_free_daily: Optional[str] = Form(None),
    is_weekly_challenge: Optional[str] = Form(None),
    weekly_bonus_stars: Optional[str] = Form(None),
):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    try:
        fields = _changes(
            star_cost=_parse_optional_int(star_cost, "Star cost"),
            weekly_bonus_stars=_parse_optional_int(weekly_bonus_stars, "Weekly bonus"),
        )
    except ValueError as exc:
        return _bad_request(str(exc))
    result = get_tracker().create_reward(
        actor,
        name,
        tier=tier.strip().lower(),
        description=description,
        image_url=image_url,
        is_free_daily=bool(_form_flag(is_free_daily)),
        is_weekly_challenge=bool(_form_flag(is_weekly_challenge)),
        **fields,
    )
    return respond(result, created=True)


@app.post("/catalog/rewards/{reward_id}/update")
def update_reward(
    request: Request,
    reward_id: str,
    name: Optional[str] = Form(None),
    star_cost: Optional[str] = Form(None),
    tier: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    image_url: Optional[str] = Form(None),
    is_free_daily: Optional[str] = Form(None),
    is_weekly_challenge: Optional[str] = Form(None),
    weekly_bonus_stars: Optional[str] = Form(None),
    is_active: Optional[str] = Form(None),
):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    try:
        changes = _changes(
            name=name,
            star_cost=_parse_optional_int(star_cost, "Star cost"),
            tier=tier.strip().lower() if tier else None,
            description=description,
            image_url=image_url,
            is_free_daily=_form_flag(is_free_daily),
            is_weekly_challenge=_form_flag(is_weekly_challenge),
            weekly_bonus_stars=_parse_optional_int(weekly_bonus_stars, "Weekly bonus"),
            is_active=_form_flag(is_active),
        )
    except ValueError as exc:
        return _bad_request(str(exc))
    return respond(get_tracker().update_reward(actor, reward_id, **changes))


@app.post("/catalog/rewards/{reward_id}/delete")
def delete_reward(request: Request, reward_id: str):
    if (actor := current_actor(request)) is None:
        return _unauthenticated()
    return respond(get_tracker().delete_reward(actor, reward_id))


# ---------------------------------------------------------------------------
# Parent activity log
# ---------------------------------------------------------------------------
@app.get("/admin/log")
def activity_log(request: Request, limit: int = Query(50), event: Optional[str] = Query(None)):
    actor = current_actor(request)
    if actor is None:
        return _unauthenticated()
    if not actor.is_parent:
        return JSONResponse(
            {"success": False, "error": "Only a parent can do this.", "code": "permission_denied"},
            status_code=403,
        )
    tracker = get_tracker()
    audit = [
        {
            "actor": entry.actor,
            "action": entry.action,
            "target": entry.target,
            "child_id": entry.child_id,
            "timestamp": entry.timestamp.isoformat(),
            "details": entry.details,
        }
        for entry in (tracker.audit_log.entries()[-limit:] if limit > 0 else ())
    ]
    events = [dict(entry) for entry in tracker.logger.tail(limit, event=event)] if limit > 0 else []
    return JSONResponse({"success": True, "events": events, "audit": audit})


__all__ = [
    "app",
    "current_actor",
    "get_tracker",
    "respond",
    "set_tracker",
]
