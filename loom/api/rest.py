"""REST API for the Loom runtime.

Endpoints:
  POST   /sessions/{session_id}/messages                  - Run one turn, stream events (SSE)
  POST   /sessions/{session_id}/cancel                    - Cancel the in-flight turn
  POST   /sessions/{session_id}/permissions/{request_id}  - Answer a permission request
  POST   /sessions/{session_id}/questions/{request_id}    - Answer an ask_user question
  GET    /sessions/{session_id}                           - Session summary
  DELETE /sessions/{session_id}                           - Delete a session
  GET    /sessions/{session_id}/tools                     - Tools and the session tool filter
  PUT    /sessions/{session_id}/tools                     - Replace the tool filter
  GET    /sessions/{session_id}/system-prompt             - Configured and effective system prompt
  PUT    /sessions/{session_id}/system-prompt             - Set or reset the system prompt
  PUT    /sessions/{session_id}/model                     - Switch model
  POST   /sessions/{session_id}/clear                     - Clear conversation history
  GET    /health                                          - Health check (DB connectivity)
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from loom.api.models import Session, ToolFilter
from loom.api.sessions import SessionCoordinator
from loom.config import Settings
from loom.errors import SessionBusyError
from loom.events import QueueTransport
from loom.storage.database import Database

logger = logging.getLogger(__name__)


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def _summary(session: Session) -> dict[str, Any]:
    return {
        "session_id": session.id,
        "model": session.model,
        "message_count": len(session.messages),
        "processing": session.processing,
        "last_input_tokens": session.last_input_tokens,
        "pending_requests": len(session.pending),
        "tool_filter": session.tool_filter.to_dict(),
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
    }


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    coordinator: SessionCoordinator,
    settings: Settings,
    database: Database | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def send_message(request: Request) -> Response:
        """POST /sessions/{session_id}/messages - SSE stream of one turn."""
        session_id = request.path_params["session_id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)
        model = body.get("model")
        if model is not None and not isinstance(model, str):
            return JSONResponse({"error": "model must be a string"}, status_code=400)

        if coordinator.is_processing(session_id):
            return JSONResponse(
                {"error": f"Session {session_id} is already processing a message"},
                status_code=409,
            )

        transport = QueueTransport()
        task = asyncio.create_task(
            coordinator.send_message(session_id, message, transport=transport, model=model),
            name=f"turn-{session_id}",
        )
        task.add_done_callback(lambda _: transport.close())

        async def event_generator():
            try:
                async for event in transport.events():
                    yield _sse(event.to_dict())
                try:
                    await task
                except SessionBusyError as e:
                    yield _sse({"type": "error", "session_id": session_id, "message": str(e)})
                except Exception as e:
                    logger.error("Stream error: %s", e)
                    yield _sse({"type": "error", "session_id": session_id, "message": str(e)})
            finally:
                if not task.done():
                    # Client went away mid-turn
                    logger.info("Client disconnected from session %s; cancelling turn", session_id)
                    transport.close()
                    coordinator.cancel(session_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def cancel(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/cancel - Stop the current turn."""
        session_id = request.path_params["session_id"]
        if not coordinator.cancel(session_id):
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse({"status": "cancelled", "session_id": session_id})

    async def respond_permission(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/permissions/{request_id} - Approve or deny a tool call."""
        session_id = request.path_params["session_id"]
        request_id = request.path_params["request_id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        approved = body.get("approved")
        if not isinstance(approved, bool):
            return JSONResponse({"error": "approved must be a boolean"}, status_code=400)

        resolved = coordinator.respond_permission(
            session_id, request_id, approved, remember=bool(body.get("remember", False))
        )
        if not resolved:
            return JSONResponse({"error": "No pending permission request"}, status_code=404)
        return JSONResponse({"status": "resolved", "request_id": request_id})

    async def answer_question(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/questions/{request_id} - Answer an ask_user question."""
        session_id = request.path_params["session_id"]
        request_id = request.path_params["request_id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        answer = body.get("answer")
        if not isinstance(answer, str):
            return JSONResponse({"error": "Missing required field: answer"}, status_code=400)

        if not coordinator.answer_question(session_id, request_id, answer):
            return JSONResponse({"error": "No pending question"}, status_code=404)
        return JSONResponse({"status": "resolved", "request_id": request_id})

    async def get_session(request: Request) -> JSONResponse:
        """GET /sessions/{session_id} - Session summary."""
        session = await coordinator.find(request.path_params["session_id"])
        if session is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse(_summary(session))

    async def delete_session(request: Request) -> JSONResponse:
        """DELETE /sessions/{session_id} - Cancel and delete a session."""
        session_id = request.path_params["session_id"]
        if not await coordinator.delete(session_id):
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse({"status": "deleted", "session_id": session_id})

    async def get_tools(request: Request) -> JSONResponse:
        """GET /sessions/{session_id}/tools - Registered tools and the session's filter."""
        session_id = request.path_params["session_id"]
        tools = await coordinator.available_tools(session_id)
        if tools is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        session = coordinator.get(session_id)
        return JSONResponse({"tools": tools, "tool_filter": session.tool_filter.to_dict()})

    async def update_tools(request: Request) -> JSONResponse:
        """PUT /sessions/{session_id}/tools - Replace the session's tool filter."""
        session_id = request.path_params["session_id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        allowed = body.get("allowed")
        disabled = body.get("disabled", [])
        if allowed is not None and not _is_str_list(allowed):
            return JSONResponse({"error": "allowed must be a list of tool names or null"}, status_code=400)
        if not _is_str_list(disabled):
            return JSONResponse({"error": "disabled must be a list of tool names"}, status_code=400)

        try:
            session = await coordinator.update_tool_filter(
                session_id, ToolFilter(allowed=allowed, disabled=set(disabled))
            )
        except SessionBusyError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        if session is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse({"status": "updated", "tool_filter": session.tool_filter.to_dict()})

    async def get_system_prompt(request: Request) -> JSONResponse:
        """GET /sessions/{session_id}/system-prompt - Configured and effective prompt."""
        prompt = await coordinator.system_prompt(request.path_params["session_id"])
        if prompt is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse(prompt)

    async def update_system_prompt(request: Request) -> JSONResponse:
        """PUT /sessions/{session_id}/system-prompt - Set or reset (null) the system prompt."""
        session_id = request.path_params["session_id"]
        body = await _json_body(request)
        if body is None or "system_prompt" not in body:
            return JSONResponse({"error": "Missing required field: system_prompt"}, status_code=400)
        prompt = body["system_prompt"]
        if prompt is not None and not isinstance(prompt, str):
            return JSONResponse({"error": "system_prompt must be a string or null"}, status_code=400)

        try:
            session = await coordinator.update_system_prompt(session_id, prompt or None)
        except SessionBusyError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        if session is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse({"status": "updated", "session_id": session_id})

    async def set_model(request: Request) -> JSONResponse:
        """PUT /sessions/{session_id}/model - Switch the model used for later turns."""
        session_id = request.path_params["session_id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        model = body.get("model")
        if not isinstance(model, str) or not model.strip():
            return JSONResponse({"error": "Missing required field: model"}, status_code=400)

        try:
            session = await coordinator.set_model(session_id, model.strip())
        except SessionBusyError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        if session is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse({"status": "updated", "model": session.model})

    async def clear_history(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/clear - Drop the conversation history."""
        session_id = request.path_params["session_id"]
        try:
            session = await coordinator.clear_history(session_id)
        except SessionBusyError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        if session is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse({"status": "cleared", "session_id": session_id})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            if database is not None:
                from sqlalchemy import text

                async with database.session() as session:
                    await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy", "model": settings.model})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/sessions/{session_id}/messages", send_message, methods=["POST"]),
        Route("/sessions/{session_id}/cancel", cancel, methods=["POST"]),
        Route("/sessions/{session_id}/permissions/{request_id}", respond_permission, methods=["POST"]),
        Route("/sessions/{session_id}/questions/{request_id}", answer_question, methods=["POST"]),
        Route("/sessions/{session_id}", get_session, methods=["GET"]),
        Route("/sessions/{session_id}", delete_session, methods=["DELETE"]),
        Route("/sessions/{session_id}/tools", get_tools, methods=["GET"]),
        Route("/sessions/{session_id}/tools", update_tools, methods=["PUT"]),
        Route("/sessions/{session_id}/system-prompt", get_system_prompt, methods=["GET"]),
        Route("/sessions/{session_id}/system-prompt", update_system_prompt, methods=["PUT"]),
        Route("/sessions/{session_id}/model", set_model, methods=["PUT"]),
        Route("/sessions/{session_id}/clear", clear_history, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
