import logging
from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from erecht24_sync.config import WEBHOOK_PATH
from erecht24_sync.dependencies import Container, get_container
from erecht24_sync.errors import MethodNotAllowed, WebhookRejected
from erecht24_sync.models.legal_text import ALL, PING, WEBHOOK_TYPES, LegalTextType
from erecht24_sync.services.authenticator import WebhookCredentials
from erecht24_sync.services.sync_engine import outcome_from_result

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)
router = APIRouter()

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

# Failure detail stays in the log and the admin API.
_PUBLIC_OUTCOME_FIELDS = {"type", "ok", "action", "page_id"}


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _record(container: Container, status: str) -> None:
    container.store.set("last_webhook_status", status)
    container.store.set("last_webhook_time", datetime.now(timezone.utc).isoformat())


async def _collect_params(request: Request) -> Dict[str, str]:
    """Query parameters, completed by form fields on POST."""
    params = dict(request.query_params)
    content_type = request.headers.get("content-type", "")
    if request.method == "POST" and content_type.startswith(_FORM_TYPES):
        form = await request.form()
        for key, value in form.items():
            if isinstance(value, str):
                params.setdefault(key, value)
    return params


def _check_method(push_type: str, method: str) -> None:
    """``ping`` is read-only (GET); every other push type changes state (POST)."""
    expected = "GET" if push_type == PING else "POST"
    if method != expected:
        raise MethodNotAllowed(f"{push_type} requires {expected}, got {method}")


@router.api_route(WEBHOOK_PATH, methods=["GET", "POST"], summary="eRecht24 push webhook")
@router.api_route(WEBHOOK_PATH + "/", methods=["GET", "POST"], include_in_schema=False)
@limiter.limit("60/minute")
async def erecht24_webhook(
    request: Request, container: Container = Depends(get_container)
) -> JSONResponse:
    """Receive a push from eRecht24 and re-synchronise the announced legal texts.

    * ``ping`` (GET) – connectivity check, answers ``pong``.
    * ``imprint`` / ``privacyPolicy`` / ``privacyPolicySocialMedia`` (POST) –
      sync one legal text.
    * ``all`` (POST) – sync every legal text; one failing type does not stop
      the others.
    """
    params = await _collect_params(request)
    credentials = WebhookCredentials.from_sources(params, request.headers)
    logger.info("eRecht24 webhook received: %s", credentials.type or "no type")

    if not credentials.type:
        return _error(400, "Missing erecht24_type parameter")

    # ── Step 1: method and authentication ────────────────────────────────────
    try:
        if credentials.type in WEBHOOK_TYPES:
            _check_method(credentials.type, request.method)
        await run_in_threadpool(container.authenticator.validate, credentials)
    except WebhookRejected as exc:
        # Detail stays in the log; the caller only gets the generic message.
        logger.warning(
            "eRecht24 webhook rejected (%s): %s", type(exc).__name__, exc,
            extra={"client": request.client.host if request.client else None},
        )
        return _error(exc.http_status, exc.public_message)

    # ── Step 2: route by type ────────────────────────────────────────────────
    if credentials.type == PING:
        await run_in_threadpool(_record, container, "success")
        return JSONResponse(status_code=200, content={"code": 200, "message": "pong"})

    try:
        engine = await run_in_threadpool(container.sync_engine)
        if credentials.type == ALL:
            outcomes = await engine.sync_all()
        else:
            result = await engine.sync_type(LegalTextType(credentials.type))
            outcomes = [outcome_from_result(result)]
    except Exception as exc:
        logger.error("eRecht24 webhook error for %s: %s", credentials.type, exc)
        await run_in_threadpool(_record, container, "error")
        return _error(500, "Internal server error")

    if not any(outcome.ok for outcome in outcomes):
        logger.error("eRecht24 webhook %s: no legal text could be synchronised", credentials.type)
        await run_in_threadpool(_record, container, "error")
        return _error(500, "Internal server error")

    all_ok = all(outcome.ok for outcome in outcomes)
    await run_in_threadpool(_record, container, "success" if all_ok else "error")
    return JSONResponse(
        status_code=200,
        content={
            "status": 200,
            "message": "Success",
            "results": [
                outcome.model_dump(include=_PUBLIC_OUTCOME_FIELDS) for outcome in outcomes
            ],
        },
    )
