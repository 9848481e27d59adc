"""FormPilot HTTP server."""
