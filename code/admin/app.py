# =============================================================================
#  Copycord
#  Copyright (C) 2021 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import contextlib
import uuid
from typing import Any, Optional
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, Body
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware

from common.config import CURRENT_VERSION
from common.logging_setup import get_logger, scope_var
from cloner.errors import CapacityExceeded, OperationNotFound, Unauthorized
from cloner.registry import OperationRegistry

LOGGER = get_logger("admin.api")

NOT_FOUND = {"status": "not_found"}
WS_NOT_FOUND_CODE = 4404


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token_s = scope_var.set(request.url.path or "-")
        response = None
        try:
            response = await call_next(request)
        finally:
            if response is not None:
                response.headers["X-Request-ID"] = rid
            scope_var.reset(token_s)
        return response


def _int_field(payload: dict, *names: str) -> Optional[int]:
    for n in names:
        v = payload.get(n)
        if v is None or v == "":
            continue
        try:
            return int(v)
        except (TypeError, ValueError):
            return None
    return None


def _bad_request(error: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": error}, status_code=422)


async def _close_ws_quietly(ws: WebSocket, code: int = 1000, reason: str = ""):
    with contextlib.suppress(RuntimeError, WebSocketDisconnect):
        await ws.close(code=code, reason=reason)


def create_app(registry: OperationRegistry) -> FastAPI:
    """Admin HTTP/WebSocket surface over an ``OperationRegistry``."""
    app = FastAPI(title="Copycord guild cloner", version=CURRENT_VERSION)
    app.state.registry = registry
    app.add_middleware(RequestContextMiddleware)

    @app.on_event("shutdown")
    async def _shutdown():
        LOGGER.info("[🛑] Admin API shutting down; cancelling active clones")
        await registry.aclose()

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return "ok"

    @app.get("/version", response_class=JSONResponse)
    async def version():
        return {"version": CURRENT_VERSION}

    @app.post("/api/clones", response_class=JSONResponse)
    async def start_clone(payload: dict = Body(...)):
        source_id = _int_field(payload, "source_id", "guild_id")
        if source_id is None:
            return _bad_request("invalid-source_id")
        requester_id = _int_field(payload, "requester_id", "user_id")
        if requester_id is None:
            return _bad_request("invalid-requester_id")
        options: Any = payload.get("options") or {}
        if not isinstance(options, dict):
            return _bad_request("invalid-options")

        try:
            op_id = registry.start(source_id, requester_id, options)
        except CapacityExceeded as e:
            LOGGER.warning("Clone request rejected: %s", e.message)
            return JSONResponse(
                {"ok": False, "error": "capacity-exceeded", "limit": e.limit},
                status_code=429,
            )
        return JSONResponse({"ok": True, "operation_id": op_id}, status_code=202)

    @app.get("/api/clones", response_class=JSONResponse)
    async def list_clones():
        return {"items": [s.to_dict() for s in registry.list_active()]}

    @app.get("/api/clones/{operation_id}", response_class=JSONResponse)
    async def clone_status(operation_id: str):
        try:
            st = registry.get_status(operation_id)
        except OperationNotFound:
            return JSONResponse(NOT_FOUND, status_code=404)
        return st.to_dict()

    @app.post("/api/clones/{operation_id}/cancel", response_class=JSONResponse)
    async def cancel_clone(operation_id: str, payload: dict = Body(...)):
        requester_id = _int_field(payload, "requester_id", "user_id")
        if requester_id is None:
            return _bad_request("invalid-requester_id")
        try:
            registry.request_cancel(operation_id, requester_id)
        except OperationNotFound:
            return JSONResponse(NOT_FOUND, status_code=404)
        except Unauthorized:
            return JSONResponse(
                {"ok": False, "error": "not-your-clone"}, status_code=403
            )
        return {"ok": True, "operation_id": operation_id}

    @app.websocket("/api/clones/{operation_id}/events")
    async def clone_events(ws: WebSocket, operation_id: str):
        await ws.accept()
        log = get_logger("admin.ws", op_id=operation_id)
        try:
            q = registry.subscribe(operation_id)
        except OperationNotFound:
            await ws.send_json(NOT_FOUND)
            await _close_ws_quietly(ws, code=WS_NOT_FOUND_CODE, reason="not_found")
            return

        sent = 0
        log.debug("Event subscriber attached")
        try:
            while True:
                ev = await q.get()
                if ev is None:
                    break
                await ws.send_json(ev.to_dict())
                sent += 1
                if ev.terminal:
                    break
        except WebSocketDisconnect:
            log.debug("Event subscriber disconnected after %d event(s)", sent)
        finally:
            registry.unsubscribe(operation_id, q)
            await _close_ws_quietly(ws)
        log.debug("Event stream closed after %d event(s)", sent)

    return app


