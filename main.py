"""
Main entry point for the TubeGrab conversion service.

This script loads the configuration, sets up logging, installs global
exception handlers, and runs the aiohttp server until interrupted.
"""

import sys
import logging
import asyncio
from types import TracebackType
from typing import Type

from aiohttp import web

from tubegrab.config import load_settings
from tubegrab.logging_config import setup_logging
from tubegrab.server import create_app
from tubegrab._version import __version__

def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))

def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def main():
    """
    Main entry point for the service.
    """
    # 1. Load configuration before setting up logging
    settings = load_settings()

    # 2. Use the configured log level
    setup_logging(settings.log_level, settings.log_dir)

    # 3. Set up global exception handlers
    sys.excepthook = handle_exception

    # 4. Build the application; the controller is created inside
    app = create_app(settings)

    async def install_loop_exception_handler(app: web.Application):
        """Sets the asyncio exception handler for the running loop."""
        asyncio.get_running_loop().set_exception_handler(handle_async_exception)

    app.on_startup.insert(0, install_loop_exception_handler)

    logging.info(f"TubeGrab {__version__} starting on {settings.host}:{settings.port}")
    try:
        web.run_app(app, host=settings.host, port=settings.port, print=None)
    except KeyboardInterrupt:
        logging.info("Service interrupted by user.")


if __name__ == "__main__":
    main()
