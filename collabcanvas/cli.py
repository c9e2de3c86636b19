from __future__ import annotations

import json
import logging
import os

import typer

from collabcanvas.config.feature_flags import load_feature_flags
from collabcanvas.config.settings import load_settings
from collabcanvas.logging_config import init_logging

app = typer.Typer(add_completion=False, help="collabcanvas command line utilities.")
logger = logging.getLogger(__name__)


@app.command()
def serve(
    host: str = typer.Option(os.getenv("COLLABCANVAS_HOST", "127.0.0.1"), help="Bind address."),
    port: int = typer.Option(int(os.getenv("COLLABCANVAS_PORT", "8010")), help="Bind port."),
    log_level: str = typer.Option("info", help="Log level for the app and uvicorn."),
) -> None:
    """Run the canvas sync server."""
    import uvicorn

    from collabcanvas.server.app import create_app

    init_logging(level=log_level)
    logger.info("Starting collabcanvas on %s:%s", host, port)
    uvicorn.run(create_app(), host=host, port=port, log_level=log_level.lower())


@app.command()
def settings() -> None:
    """Print the resolved sync settings and feature flags."""
    payload = {
        "sync": load_settings(refresh=True).as_dict(),
        "features": load_feature_flags(refresh=True),
    }
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
