"""
Relay API Routes

Chat relay and public client configuration for widget instances.

OpenAPI Tags:
- relay: Chat request forwarding and client configuration
"""

import asyncio
from functools import lru_cache
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Body, Depends, Request, Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from flowchat.chat.models import ClientProfile
from flowchat.config import Settings, get_settings
from flowchat.relay.proxy import ClientDisconnected, RelayProxy
from flowchat.relay.store import (
    ConfigurationStore,
    InMemoryConfigurationStore,
    JsonFileConfigurationStore,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/instances", tags=["Relay"])

# nginx convention for "client closed request"
CLIENT_CLOSED_REQUEST = 499


# =============================================================================
# DEPENDENCIES
# =============================================================================


@lru_cache
def _store_for(instances_file: str | None) -> ConfigurationStore:
    if not instances_file:
        logger.warning("No instances file configured; every instance will be unknown")
        return InMemoryConfigurationStore()
    return JsonFileConfigurationStore(instances_file)


def get_configuration_store(
    settings: Annotated[Settings, Depends(get_settings)],
) -> ConfigurationStore:
    return _store_for(settings.instances_file)


def get_relay_proxy(
    store: Annotated[ConfigurationStore, Depends(get_configuration_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> RelayProxy:
    return RelayProxy(store, settings)


async def _wait_for_disconnect(request: Request) -> None:
    # The body has been read, so the next message is the disconnect
    while (await request.receive())["type"] != "http.disconnect":
        pass


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.post(
    "/{instance_id}/chat",
    summary="Relay a chat message",
    response_class=StreamingResponse,
    responses={
        200: {
            "description": "Upstream reply, forwarded as it arrives",
            "content": {
                "text/event-stream": {},
                "application/x-ndjson": {},
                "application/json": {},
            },
        },
        403: {"description": "Instance disabled"},
        404: {"description": "Unknown instance"},
        422: {"description": "Message too long or body not a JSON object"},
        429: {"description": "Upstream rate limited"},
        502: {"description": "Upstream unreachable or failed"},
        503: {"description": "Instance has no endpoint configured"},
        504: {"description": "Upstream timed out"},
    },
)
async def relay_chat(
    instance_id: str,
    request: Request,
    payload: Annotated[dict[str, Any], Body()],
    proxy: Annotated[RelayProxy, Depends(get_relay_proxy)],
) -> Response:
    listener = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        connection = await proxy.open_stream(instance_id, payload, disconnected=listener)
        status_code = connection.status_code or 200
        if not connection.streaming:
            content = await connection.read(listener)
        elif listener.done():
            await connection.aclose(outcome="client_disconnected")
            raise ClientDisconnected()
    except ClientDisconnected:
        # Nobody is listening; the status only reaches the access log
        logger.info("Chat request abandoned by client", instance_id=instance_id)
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    finally:
        # StreamingResponse watches for the disconnect itself from here on
        listener.cancel()

    if not connection.streaming:
        return Response(content=content, status_code=status_code, media_type=connection.media_type)

    async def relay_body():
        try:
            async for chunk in connection.iter_bytes(request.is_disconnected):
                yield chunk
        finally:
            # No-op when the upstream finished on its own
            await connection.aclose(outcome="client_disconnected")

    return StreamingResponse(
        relay_body(),
        status_code=status_code,
        media_type=connection.media_type,
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
        background=BackgroundTask(connection.aclose),
    )


@router.get(
    "/{instance_id}/config",
    response_model=ClientProfile,
    summary="Public client configuration",
    description="Secret-free settings a widget needs to talk to this instance.",
)
async def client_config(
    instance_id: str,
    proxy: Annotated[RelayProxy, Depends(get_relay_proxy)],
) -> ClientProfile:
    return await proxy.client_profile(instance_id)
