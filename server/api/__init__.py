"""
API routes aggregation module.

This module imports all API endpoints from the individual modules and
aggregates them into a single api_routes list for use by the main server.
"""

from starlette.routing import Route

from .automation import (
    api_automation_status,
    api_automation_input,
    api_end_session,
)

from .chat import (
    api_chat,
    api_confirm_data,
)

from .configuration import (
    api_get_configuration,
    api_reset_setting,
)

# Aggregate all routes into a single list
api_routes = [
    # Automation endpoints
    Route("/api/automation/status/{session_id}", endpoint=api_automation_status, methods=["GET"]),
    Route("/api/automation/input", endpoint=api_automation_input, methods=["POST"]),
    Route("/api/automation/session/{session_id}", endpoint=api_end_session, methods=["DELETE"]),

    # Chat endpoints
    Route("/api/chat", endpoint=api_chat, methods=["POST"]),
    Route("/api/confirm-data", endpoint=api_confirm_data, methods=["POST"]),

    # Configuration endpoints
    Route("/api/configuration", endpoint=api_get_configuration, methods=["GET"]),
    Route("/api/configuration/reset/{setting_name}", endpoint=api_reset_setting, methods=["POST"]),
]
