from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from starlette.websockets import WebSocketState

from .events import ControlEvent, InvalidEventError
from .history import InvalidDurationError
from .models import (
    AliasModel,
    AliasUpdateRequest,
    ConfigResponse,
    EventSubmission,
    StatusResponse,
    SubmitResponse,
    SystemModel,
    TalkgroupModel,
    TalkgroupUpdateRequest,
    TalkgroupUpdateResponse,
)
from .registry import InvalidAliasError, InvalidRecordError, InvalidSystemNameError, is_valid_short_name
from .state import AppState
from .storage import StorageError

logger = logging.getLogger(__name__)

router = APIRouter()

# Close code sent to a subscriber that fell behind; it should re-sync from history
WS_CLOSE_LAGGED = 1013


def get_state(request: Request) -> AppState:
    state: AppState | None = getattr(request.app.state, "app_state", None)
    if state is None:
        raise RuntimeError("AppState not initialized")
    return state


# ----------------------------------------------------------------------
# Ingestion
# ----------------------------------------------------------------------


@router.post("/event", response_model=SubmitResponse)
async def submit_event(body: EventSubmission, state: AppState = Depends(get_state)) -> dict[str, Any]:
    try:
        result = await state.dedup.submit(body.to_document())
    except InvalidEventError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.error(f"Failed to log event: {e}")
        raise HTTPException(status_code=500, detail="Failed to log event")
    return result.to_dict()


# ----------------------------------------------------------------------
# Talkgroups
# ----------------------------------------------------------------------


@router.get("/talkgroups")
def get_talkgroups(state: AppState = Depends(get_state)) -> dict[str, Any]:
    return state.talkgroups.snapshot()


@router.post("/talkgroups/reload", response_model=StatusResponse)
async def reload_talkgroups(state: AppState = Depends(get_state)) -> StatusResponse:
    count = await state.talkgroups.load()
    state.broadcaster.publish_control(ControlEvent.TALKGROUPS_RELOADED)
    return StatusResponse(status="success", message=f"Reloaded {count} talkgroups")


@router.post("/talkgroups/{decimal}", response_model=TalkgroupUpdateResponse)
async def update_talkgroup(
    decimal: str,
    body: TalkgroupUpdateRequest,
    state: AppState = Depends(get_state),
) -> TalkgroupUpdateResponse:
    fields = body.model_dump(exclude={"shortName"}, exclude_none=True)
    try:
        record = await state.talkgroups.upsert(decimal, fields, system=body.shortName)
    except InvalidRecordError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return TalkgroupUpdateResponse(
        status="success",
        message="Talkgroup updated",
        talkgroup=TalkgroupModel(**record.to_dict()),
    )


@router.get("/talkgroups/{decimal}/history")
async def get_talkgroup_history(decimal: str, state: AppState = Depends(get_state)) -> dict[str, Any]:
    try:
        return await state.history.talkgroup_history(decimal)
    except StorageError as e:
        logger.error(f"Error fetching talkgroup history: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch talkgroup history")


@router.get("/history/{duration}")
async def get_history(duration: str, state: AppState = Depends(get_state)) -> list[dict[str, Any]]:
    try:
        return await state.history.events_since(duration)
    except InvalidDurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.error(f"Error fetching history: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch history")


# ----------------------------------------------------------------------
# Systems
# ----------------------------------------------------------------------


@router.get("/systems", response_model=list[SystemModel])
def list_systems(state: AppState = Depends(get_state)) -> list[dict[str, str]]:
    return state.known_systems()


@router.get("/systems/{short_name}/alias", response_model=AliasModel)
def get_system_alias(short_name: str, state: AppState = Depends(get_state)) -> AliasModel:
    if not is_valid_short_name(short_name):
        raise HTTPException(status_code=400, detail=f"Invalid system short name: {short_name}")
    return AliasModel(shortName=short_name, alias=state.aliases.get_alias(short_name))


@router.put("/systems/{short_name}/alias", response_model=AliasModel)
async def set_system_alias(
    short_name: str,
    body: AliasUpdateRequest,
    state: AppState = Depends(get_state),
) -> AliasModel:
    try:
        alias = await state.aliases.update_alias(short_name, body.alias or "")
    except (InvalidSystemNameError, InvalidAliasError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AliasModel(shortName=short_name, alias=alias)


@router.get("/config", response_model=ConfigResponse)
def get_client_config(state: AppState = Depends(get_state)) -> dict[str, Any]:
    return {"systemFilters": state.known_systems()}


@router.get("/status")
def get_status(state: AppState = Depends(get_state)) -> dict[str, Any]:
    return {
        "consumer": state.consumer.to_dict(),
        "dedup": state.dedup.get_stats(),
        "broadcaster": state.broadcaster.get_stats(),
        "talkgroups": {
            "count": state.talkgroups.count,
            "systems": state.talkgroups.systems(),
            "pendingSaves": state.talkgroups.writer.pending,
            "failedSaves": state.talkgroups.writer.failures,
        },
        "aliases": state.aliases.to_dict(),
    }


# ----------------------------------------------------------------------
# Broadcast channel
# ----------------------------------------------------------------------


@router.websocket("/stream")
async def stream_events(websocket: WebSocket) -> None:
    """Live enriched events and registry change notices.

    Messages are ``{"type": "radioEvent", "event": {...}}`` and
    ``{"type": "control", "event": "<kind>"}``. A subscriber that cannot
    keep up is closed with code 1013.
    """
    app_state: AppState = websocket.app.state.app_state
    await websocket.accept()
    sub = app_state.broadcaster.subscribe()

    async def drain_incoming() -> None:
        # Clients do not send anything meaningful; reading detects disconnects
        while True:
            await websocket.receive_text()

    reader = asyncio.create_task(drain_incoming())
    try:
        while True:
            next_message = asyncio.ensure_future(sub.next())
            done, _ = await asyncio.wait({next_message, reader}, return_when=asyncio.FIRST_COMPLETED)
            if reader in done:
                next_message.cancel()
                break
            message = next_message.result()
            if message is None:
                if sub.lagged and websocket.application_state == WebSocketState.CONNECTED:
                    await websocket.close(code=WS_CLOSE_LAGGED, reason="subscriber lagged")
                break
            await websocket.send_json(message)
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        logger.info(f"Stream subscriber {sub.id} cancelled")
        raise
    finally:
        reader.cancel()
        await asyncio.gather(reader, return_exceptions=True)
        app_state.broadcaster.unsubscribe(sub)
