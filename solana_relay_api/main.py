import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import config as app_config
from .connections import ConnectionManager
from .models import PARSE_ERROR, RelayStatus, error_response
from .relay import UpstreamRelay
from .rpc_proxy import forward_rpc

# Initialize logging
logging.basicConfig(level=app_config.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)


def create_relay() -> UpstreamRelay:
    return UpstreamRelay(
        url=app_config.upstream_ws_url,
        base_delay=app_config.RELAY_BASE_DELAY,
        max_delay=app_config.RELAY_MAX_DELAY,
        max_attempts=app_config.RELAY_MAX_RECONNECT_ATTEMPTS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    logger.info("Starting up...")
    if not app_config.HELIUS_API_KEY:
        logger.warning("HELIUS_API_KEY is not set; upstream requests will be unauthenticated")

    relay = create_relay()
    app.state.relay = relay
    app.state.manager = ConnectionManager()
    await relay.start()
    logger.info("Upstream relay started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await relay.stop()


app = FastAPI(lifespan=lifespan)

# Health check endpoint for Dokku
@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.get("/api/v1/relay/status", response_model=RelayStatus)
async def relay_status(request: Request):
    return request.app.state.relay.status()


@app.post("/api/v1/rpc")
async def rpc_proxy(request: Request):
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        return JSONResponse(status_code=400, content=error_response(PARSE_ERROR, "Invalid JSON format"))

    status_code, body = await forward_rpc(payload)
    return JSONResponse(status_code=status_code, content=body)


@app.websocket("/api/v1/ws")
async def websocket_relay(websocket: WebSocket):
    relay: UpstreamRelay = websocket.app.state.relay
    manager: ConnectionManager = websocket.app.state.manager

    session = await manager.connect(websocket)

    try:
        # Process messages
        while True:
            data = await websocket.receive_text()
            try:
                await relay.handle_client_message(session, data)
            except Exception as e:
                logger.error(f"Error processing message from client {session.id}: {str(e)}", exc_info=True)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for client {session.id}: {str(e)}", exc_info=True)
    finally:
        manager.disconnect(session)
        removed = relay.disconnect_client(session)
        if removed:
            logger.info(f"Dropped {len(removed)} subscriptions for client {session.id}")


logger.info("Routes registered:")
for route in app.routes:
    route_info = f"  - path={getattr(route, 'path', '?')}, type={type(route).__name__}"
    if hasattr(route, 'methods'):
        route_info += f", methods={route.methods}"
    logger.info(route_info)

app.add_middleware(
    CORSMiddleware,
    allow_origins=app_config.cors_origins,
    allow_credentials=True,
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=app_config.HOST, port=app_config.PORT)
