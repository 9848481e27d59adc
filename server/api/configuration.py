"""
Configuration API endpoints.

Read-only view of the effective settings plus per-setting reset.
"""

from starlette.requests import Request
from starlette.responses import JSONResponse
from config import env


async def api_get_configuration(request: Request):
    """Get current configuration settings (secrets masked)."""
    try:
        return JSONResponse(env.get_all_configuration())
    except Exception as e:
        return JSONResponse({"error": str(e)}, status_code=500)


async def api_reset_setting(request: Request):
    """Reset a specific setting to its default value."""
    try:
        setting_name = request.path_params.get("setting_name")
        if not setting_name:
            return JSONResponse(
                {"success": False, "error": "Missing setting name"}, status_code=400
            )

        result = env.reset_setting(setting_name)
        if result.get("success"):
            return JSONResponse(result)
        else:
            return JSONResponse(result, status_code=400)
    except Exception as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)
