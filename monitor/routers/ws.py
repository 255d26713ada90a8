"""WebSocket event feed."""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from monitor.core.auth import bearer_token, token_matches
from monitor.core.events import SCHEDULER_STATUS

router = APIRouter()

logger = logging.getLogger(__name__)


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    ctx = ws.app.state.context
    supplied = bearer_token(ws.headers.get("authorization")) or ws.query_params.get("token")
    if not token_matches(supplied, ctx.config.api_token):
        logger.warning("Rejected websocket client without a valid token")
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await ctx.feed.connect(ws)

    current = ctx.scheduler.get_status()
    await ws.send_json(
        {
            "type": SCHEDULER_STATUS,
            "running": current["running"],
            "interval": current["interval"],
            "next_refresh": current["interval"] if current["running"] else None,
        }
    )

    try:
        while True:
            msg = await ws.receive_text()
            if msg == "ping":
                await ws.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.debug("Websocket client disconnected")
        ctx.feed.disconnect(ws)
