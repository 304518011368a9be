from fastapi import APIRouter, WebSocket

from logging_config import get_logger
from realtime.connection import Endpoint, iter_keepalive_messages
from realtime.gatekeeper import admit
from realtime.hub import ChatHub

logger = get_logger(__name__)

realtime_router = APIRouter(tags=["realtime"])


@realtime_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Live chat connection.

    Authenticate with `?token=<jwt>` or an `Authorization: Bearer` header.
    Frames are JSON objects `{"event": ..., "data": {...}}` in both directions.
    """
    hub: ChatHub = websocket.app.state.hub
    identity = await admit(websocket, hub.identity_provider)
    if identity is None:
        return

    await websocket.accept()
    endpoint = Endpoint(websocket, identity, outbox_size=websocket.app.state.outbox_size)
    endpoint.start()
    logger.info(f"User {identity.display_name} connected with endpoint {endpoint.endpoint_id}")

    try:
        await hub.connect(endpoint)
        message_count = 0
        async for frame in iter_keepalive_messages(
            endpoint,
            ping_interval=hub.heartbeat_interval,
            idle_timeout=hub.heartbeat_timeout,
        ):
            message_count += 1
            logger.debug(f"Received frame #{message_count} from {identity.display_name}")
            await hub.handle_frame(endpoint, frame)
    except Exception as e:
        logger.error(f"WebSocket error for {identity.display_name} ({endpoint.endpoint_id}): {e}", exc_info=True)
    finally:
        await hub.disconnect(endpoint)
        await endpoint.close()
        logger.info(f"User {identity.display_name} disconnected from endpoint {endpoint.endpoint_id}")
