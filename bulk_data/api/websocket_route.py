import logging
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from bulk_data.api.websocket import manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/ws/{job_id}")
async def websocket_endpoint(websocket: WebSocket, job_id: str):
    """WebSocket endpoint for real-time job progress."""
    await manager.connect(websocket, job_id)
    try:
        await websocket.send_json({
            "type": "connected",
            "job_id": job_id,
            "message": f"Connected to job {job_id}"
        })
        logger.debug("WebSocket connected for job %s", job_id[:8])

        while True:
            # Any client message is a keep-alive ping
            await websocket.receive_text()
            await websocket.send_json({
                "type": "pong",
                "message": "connection alive",
                "job_id": job_id
            })
    except WebSocketDisconnect:
        logger.debug("WebSocket disconnected for job %s", job_id[:8])
    finally:
        manager.disconnect(websocket, job_id)
