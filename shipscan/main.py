"""Application entry point for the Shipscan API server."""

import uvicorn

from shipscan.api.app import create_app
from shipscan.utils.config import load_config
from shipscan.utils.logger import setup_logging


def main() -> None:
    """Start the FastAPI application server."""
    config = load_config()
    setup_logging(config.log_level)
    uvicorn.run(create_app(config), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
