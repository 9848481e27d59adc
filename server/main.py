import contextlib
import logging
from pathlib import Path
from typing import Optional

import click

# Starlette and uvicorn imports
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

import uvicorn

from config import env
from formpilot.errors import ConfigurationError
from formpilot.runtime import AutomationRuntime
from server.api import api_routes


async def health(request: Request):
    runtime = request.app.state.runtime
    return JSONResponse(
        {
            "status": "ok",
            "active_runs": runtime.dispatcher.active_run_count,
        }
    )


def create_app(runtime: AutomationRuntime) -> Starlette:
    """Create the Starlette application around an automation runtime.

    The runtime's background maintenance starts with the application and
    in-flight runs are cancelled when it shuts down.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        await runtime.start()
        try:
            yield
        finally:
            await runtime.shutdown()

    routes = [
        Route("/health", endpoint=health, methods=["GET"]),
    ] + api_routes

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.runtime = runtime
    return app


# Setup function for logging and environment
def setup():
    # Setup logging
    SCRIPT_DIR = Path(__file__).resolve().parent
    # Ensure the logs directory exists
    log_dir = SCRIPT_DIR / ".logs"
    log_dir.mkdir(exist_ok=True)

    # Use Path consistently for the log file path
    log_file = log_dir / "server.log"

    # Reset the logging configuration
    # This is important as basicConfig won't do anything if the root logger
    # already has handlers configured
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
        handler.close()

    # Configure logging with explicit handler setup
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # File handler
    file_handler = logging.FileHandler(str(log_file.absolute()))
    file_handler.setLevel(logging.DEBUG)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)

    # Formatter
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    # Add handlers
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    # Initialize environment
    env.load()
    logger.info(
        f"Initialized environment: browser={env.get_setting('browser_type')}, "
        f"templates={env.get_setting('template_path')}"
    )


@click.command()
@click.option("--port", default=None, type=int, help="Port to run the server on")
def main(port: Optional[int] = None) -> None:
    # Run setup first (non-async)
    setup()

    try:
        runtime = AutomationRuntime.from_environment(env)
    except ConfigurationError as e:
        logging.error(f"Configuration error: {e}")
        raise click.ClickException(str(e))

    # Determine port from CLI argument, environment variable, or default
    if port is None:
        port = env.get_server_port()

    logging.info(f"Starting server on port {port}")

    # Then run uvicorn directly without nested asyncio.run
    uvicorn.run(create_app(runtime), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
