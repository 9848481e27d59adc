"""
Chat API endpoints.

Messages go to the intent resolver; a start_automation intent in the reply is
handed to the run dispatcher.
"""

import json
import logging
import uuid

from starlette.requests import Request
from starlette.responses import JSONResponse

from formpilot.errors import StepValidationError

from .automation import get_runtime

logger = logging.getLogger(__name__)

CONFIRMATION_MESSAGE = (
    "I have verified the following details from the document: {data}. "
    "You may proceed with the next steps or automation."
)


async def _read_json_object(request: Request):
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


async def api_chat(request: Request):
    """Send a chat message for a session (a new session id is minted if absent)."""
    try:
        data = await _read_json_object(request)
        if data is None:
            return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            return JSONResponse({"error": "Missing message"}, status_code=400)
        session_id = data.get("session_id") or data.get("sessionId") or uuid.uuid4().hex

        result = await get_runtime(request).handle_message(session_id, message)
        return JSONResponse(result)
    except Exception as e:
        logger.error(f"Error handling chat message: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)


async def api_confirm_data(request: Request):
    """Store reviewed document data and tell the assistant it was confirmed."""
    try:
        data = await _read_json_object(request)
        if data is None:
            return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

        confirmed = data.get("data")
        if not isinstance(confirmed, dict):
            return JSONResponse({"error": "Missing or invalid data"}, status_code=400)
        session_id = data.get("session_id") or data.get("sessionId") or uuid.uuid4().hex

        runtime = get_runtime(request)
        try:
            runtime.session_data.merge(session_id, confirmed)
        except StepValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        message = CONFIRMATION_MESSAGE.format(data=json.dumps(confirmed))
        result = await runtime.handle_message(session_id, message)
        return JSONResponse(result)
    except Exception as e:
        logger.error(f"Error confirming data: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)
