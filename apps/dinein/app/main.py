import logging
from typing import Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from sqlalchemy import text

from dinein_shared import (
    RequestIDMiddleware,
    add_standard_health,
    configure_cors,
    get_request_id,
    register_startup,
    setup_json_logging,
)

from . import catalog, orders, payments, reports, sessions, stocks, waitlist
from .config import ALLOWED_ORIGINS, is_prod_env
from .db import Base, engine
from .errors import DomainError
from .ws import hub

_log = logging.getLogger("dinein.errors")


def _db_ping() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


app = FastAPI(title="Dine-in POS API", version="0.1.0")
setup_json_logging(service="dinein")
app.add_middleware(RequestIDMiddleware)
configure_cors(app, ALLOWED_ORIGINS)
add_standard_health(app, checks={"db": _db_ping})


@register_startup(app)
def _create_tables():
    Base.metadata.create_all(engine)


@register_startup(app)
async def _bind_hub():
    hub.bind_loop()


@app.exception_handler(DomainError)
async def _domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        _log.warning("upstream failure", extra={"path": request.url.path, "error": exc.message})
        if is_prod_env():
            return JSONResponse(status_code=exc.status_code, content={"detail": "upstream error", "request_id": get_request_id()})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    rid = get_request_id()
    _log.exception("unhandled exception", extra={"path": request.url.path})
    payload: dict[str, Any] = {"detail": "internal error" if is_prod_env() else str(exc), "request_id": rid}
    return JSONResponse(status_code=500, content=payload)


app.include_router(catalog.router)
app.include_router(sessions.router)
app.include_router(reports.router)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(stocks.router)
app.include_router(waitlist.router)


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await hub.connect(ws)
    try:
        await ws.send_json({"event": "connected", "data": {"rooms": ["global"]}})
        while True:
            try:
                msg = await ws.receive_json()
            except ValueError:
                await ws.send_json({"event": "error", "data": {"message": "invalid JSON"}})
                continue
            await hub.handle_client_message(ws, msg)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(ws)
