import logging
from typing import Any, Dict, List
from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections subscribed to job progress."""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, job_id: str):
        """Accept a new WebSocket connection for a specific job."""
        await websocket.accept()
        self.active_connections.setdefault(job_id, []).append(websocket)

    def disconnect(self, websocket: WebSocket, job_id: str):
        """Remove a WebSocket connection."""
        if job_id in self.active_connections:
            if websocket in self.active_connections[job_id]:
                self.active_connections[job_id].remove(websocket)
            if not self.active_connections[job_id]:
                del self.active_connections[job_id]

    def has_listeners(self, job_id: str) -> bool:
        return bool(self.active_connections.get(job_id))

    async def _broadcast(self, job_id: str, message: Dict[str, Any]):
        disconnected = []
        for connection in list(self.active_connections.get(job_id, [])):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug("Dropping websocket of job %s: %s", job_id[:8], e)
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn, job_id)

    async def broadcast_progress(self, job_id: str, snapshot: Dict[str, Any]):
        """Send a task state snapshot to all connections for a job."""
        await self._broadcast(job_id, {"type": "progress", "job_id": job_id, **snapshot})

    async def broadcast_complete(self, job_id: str, success: bool, message: str):
        """Broadcast completion status to all connections for a job."""
        await self._broadcast(job_id, {
            "type": "complete",
            "job_id": job_id,
            "success": success,
            "message": message
        })


manager = ConnectionManager()
