"""
WebSocket Endpoint

Streams sync progress to dashboards.
Supports:
- Tenant room joined on connect
- Following single sync runs via ``sync:{runId}`` rooms
- Ping/pong heartbeat
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
import logging
import json

from segmentflow.services.websocket_manager import manager, sync_room
from segmentflow.utils.dates import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    tenant_id: str = Query(..., alias="tenantId"),
):
    """
    WebSocket endpoint for sync progress.

    Connection URL: ws://host/ws?tenantId=<tenant id>

    Message Protocol:
    - Client -> Server:
        - {"type": "ping"} - Heartbeat ping
        - {"type": "follow", "syncRunId": "..."} - Join the room of one sync run
        - {"type": "unfollow", "syncRunId": "..."} - Leave it again

    - Server -> Client:
        - {"type": "connected", "tenantId": "..."} - Connection confirmation
        - {"type": "progress" | "completed" | "failed", "data": SyncProgress, "timestamp": "..."}
        - {"type": "pong", "timestamp": "..."} - Heartbeat response
        - {"type": "error", "message": "..."} - Error message
    """
    await manager.connect(websocket, tenant_id)

    try:
        await websocket.send_json(
            {
                "type": "connected",
                "tenantId": tenant_id,
                "timestamp": utcnow().isoformat(),
            }
        )

        while True:
            try:
                data = await websocket.receive_json()
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON format"})
                continue

            message_type = data.get("type")
            run_id = data.get("syncRunId")

            if message_type == "ping":
                manager.update_heartbeat(websocket)
                await websocket.send_json({"type": "pong", "timestamp": utcnow().isoformat()})

            elif message_type == "follow" and run_id:
                await manager.join(websocket, sync_room(run_id))
                await websocket.send_json({"type": "following", "syncRunId": run_id})

            elif message_type == "unfollow" and run_id:
                manager.leave(websocket, sync_room(run_id))
                await websocket.send_json({"type": "unfollowed", "syncRunId": run_id})

            else:
                await websocket.send_json(
                    {"type": "error", "message": f"Unknown message type: {message_type}"}
                )

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: tenant_id={tenant_id}")
    except Exception as e:
        logger.error(f"WebSocket error for tenant {tenant_id}: {e}")
    finally:
        manager.disconnect(websocket)


@router.get("/ws/stats")
async def get_websocket_stats():
    """Connection and room counts."""
    return manager.get_connection_stats()
