"""Administrator endpoints: manual sync, preview, registration, status.

Messages are written for the site administrator (German, like the eRecht24
service itself) and carry the failure detail the webhook never reveals.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool

from erecht24_sync.dependencies import Container, get_container, require_admin
from erecht24_sync.errors import Erecht24Error, FetchError, NotConfigured, RegistrationFailed
from erecht24_sync.models.legal_text import ALL, LegalTextType
from erecht24_sync.models.request import PreviewRequest, SyncRequest
from erecht24_sync.models.response import (
    PageList,
    PingCheckResponse,
    PreviewResponse,
    RegistrationResponse,
    StatusResponse,
    SyncResponse,
)
from erecht24_sync.services.registration import (
    ping_webhook,
    register_client,
    reset_registration,
    rotate_webhook_secret,
)
from erecht24_sync.services.sync_engine import last_sync_key, outcome_from_result

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _status_for(exc: Erecht24Error) -> int:
    if isinstance(exc, NotConfigured):
        return 400
    return exc.http_status


@router.get("/status", response_model=StatusResponse, summary="Configuration and sync status")
def status(container: Container = Depends(get_container)) -> StatusResponse:
    config = container.config
    return StatusResponse(
        registered=config.is_client_registered(),
        client_id=config.client_id if config.is_client_registered() else None,
        webhook_url=config.webhook_url,
        api_key_configured=bool(config.api_key),
        webhook_secret_configured=bool(config.webhook_secret),
        overridden=config.overridden_keys(),
        last_webhook_status=container.store.get("last_webhook_status"),
        last_webhook_time=container.store.get("last_webhook_time"),
        last_sync={t.value: container.store.get(last_sync_key(t)) for t in LegalTextType},
    )


@router.post("/sync", response_model=SyncResponse, summary="Synchronise legal texts now")
async def sync(body: SyncRequest, container: Container = Depends(get_container)) -> SyncResponse:
    try:
        engine = await run_in_threadpool(container.sync_engine)
        if body.type == ALL:
            outcomes = await engine.sync_all()
            failed = [o.type for o in outcomes if not o.ok]
            if failed:
                message = "Fehler bei der Synchronisation: " + ", ".join(
                    f"{o.type}: {o.error}" for o in outcomes if not o.ok
                )
            else:
                message = "Alle Rechtstexte wurden erfolgreich synchronisiert."
        else:
            result = await engine.sync_type(LegalTextType(body.type))
            outcomes = [outcome_from_result(result)]
            message = "Rechtstext wurde erfolgreich synchronisiert."
    except Erecht24Error as exc:
        logger.warning("Manual sync of %s failed: %s", body.type, exc)
        raise HTTPException(
            status_code=_status_for(exc), detail=f"Fehler bei der Synchronisation: {exc}"
        )
    return SyncResponse(message=message, results=outcomes)


@router.post("/preview", response_model=PreviewResponse, summary="Dry-run fetch of a legal text")
async def preview(
    body: PreviewRequest, container: Container = Depends(get_container)
) -> PreviewResponse:
    try:
        engine = await run_in_threadpool(container.sync_engine)
        return await engine.preview(body.type)
    except Erecht24Error as exc:
        raise HTTPException(status_code=_status_for(exc), detail=f"Fehler bei der Vorschau: {exc}")


@router.post("/register", response_model=RegistrationResponse, summary="Register with eRecht24")
async def register(container: Container = Depends(get_container)) -> RegistrationResponse:
    try:
        fetcher = await run_in_threadpool(container.fetcher)
        client_id = await register_client(container.config, fetcher)
    except NotConfigured as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except (RegistrationFailed, FetchError) as exc:
        raise HTTPException(
            status_code=502, detail=f"Fehler bei der Client-Registrierung: {exc}"
        )
    return RegistrationResponse(
        message=f"API-Client erfolgreich bei eRecht24 registriert! Client ID: {client_id}",
        client_id=client_id,
    )


@router.post("/reset-registration", response_model=RegistrationResponse)
def reset(container: Container = Depends(get_container)) -> RegistrationResponse:
    if not reset_registration(container.config):
        raise HTTPException(
            status_code=500, detail="Fehler beim Zurücksetzen der Registrierung."
        )
    return RegistrationResponse(
        message=(
            "API-Client Registrierung wurde erfolgreich zurückgesetzt. "
            "Sie können sich nun erneut registrieren."
        )
    )


@router.post("/webhook-secret", summary="Generate a new webhook secret")
def new_webhook_secret(container: Container = Depends(get_container)) -> dict:
    if container.config.is_overridden("webhook_secret"):
        raise HTTPException(
            status_code=409, detail="Das Webhook Secret wird über die Umgebung gesetzt."
        )
    secret = rotate_webhook_secret(container.config)
    if secret is None:
        raise HTTPException(status_code=500, detail="Webhook Secret konnte nicht gespeichert werden.")
    return {"message": "Neues Webhook Secret erzeugt.", "webhook_secret": secret}


@router.post("/test-ping", response_model=PingCheckResponse, summary="Ping our own webhook")
async def test_ping(container: Container = Depends(get_container)) -> PingCheckResponse:
    try:
        status_code, body = await ping_webhook(container.config)
    except NotConfigured as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return PingCheckResponse(ok=status_code == 200, status_code=status_code, body=body)


@router.get("/pages", response_model=PageList, summary="Recently synchronised pages")
def recent_pages(
    limit: int = Query(default=10, ge=1, le=100),
    container: Container = Depends(get_container),
) -> PageList:
    return PageList(pages=container.repository.recent(limit))
