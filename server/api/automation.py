"""
Automation API endpoints.

Status polling, human-input delivery and session teardown for the
per-session automation runs.
"""

import base64
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse

from formpilot.state import AutomationStatus

logger = logging.getLogger(__name__)


def get_runtime(request: Request):
    """Get the automation runtime attached to the application."""
    return request.app.state.runtime


def _body_value(data: dict, snake: str, camel: str):
    return data.get(snake, data.get(camel))


async def api_automation_status(request: Request):
    """Report the automation state of a session (idle when unknown)."""
    try:
        session_id = request.path_params["session_id"]
        state = get_runtime(request).state_store.get(session_id)
        if state is None:
            return JSONResponse(
                {
                    "session_id": session_id,
                    "status": AutomationStatus.IDLE.value,
                    "current_step_index": 0,
                    "task": None,
                    "pending_prompt": None,
                    "screenshot": None,
                    "failure_message": None,
                }
            )

        result = state.to_dict()
        result.pop("run_id", None)
        result["screenshot"] = (
            base64.b64encode(state.last_screenshot).decode("ascii")
            if state.last_screenshot
            else None
        )
        return JSONResponse(result)
    except Exception as e:
        logger.error(f"Error reading automation status: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)


async def api_automation_input(request: Request):
    """Deliver a human answer to the run waiting on a session."""
    try:
        try:
            data = await request.json()
        except ValueError:
            return JSONResponse({"error": "Request body must be JSON"}, status_code=400)
        if not isinstance(data, dict):
            return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

        session_id = _body_value(data, "session_id", "sessionId")
        value = data.get("input")
        if not session_id or not isinstance(session_id, str) or value is None:
            return JSONResponse({"error": "Missing session_id or input"}, status_code=400)
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            return JSONResponse({"error": "Input must be a string or a number"}, status_code=400)

        accepted = get_runtime(request).broker.deliver(session_id, str(value))
        if not accepted:
            return JSONResponse(
                {
                    "accepted": False,
                    "error": "No automation is waiting for input for this session",
                },
                status_code=409,
            )
        return JSONResponse({"accepted": True})
    except Exception as e:
        logger.error(f"Error delivering automation input: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)


async def api_end_session(request: Request):
    """Drop a session's automation record, collected data and chat history."""
    try:
        session_id = request.path_params["session_id"]
        get_runtime(request).end_session(session_id)
        return JSONResponse({"success": True, "session_id": session_id})
    except Exception as e:
        logger.error(f"Error ending session: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)
