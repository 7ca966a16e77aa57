from __future__ import annotations

import logging
import sys
from pathlib import Path

APP_LOGGER_NAME = "taskshare_api"


def setup_logging(*, level: str | int = "INFO", log_file: str | Path | None = None) -> logging.Logger:
    """Attach handlers to the package logger.

    Safe to call more than once: handlers installed by an earlier call are
    replaced, and records still propagate to the root logger so test log
    capture keeps working.
    """
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    app_logger.setLevel(level)

    for handler in list(app_logger.handlers):
        if getattr(handler, "_taskshare_handler", False):
            app_logger.removeHandler(handler)
            handler.close()

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(fmt)
    console._taskshare_handler = True  # type: ignore[attr-defined]
    app_logger.addHandler(console)

    if log_file is not None:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(path), encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(fmt)
        file_handler._taskshare_handler = True  # type: ignore[attr-defined]
        app_logger.addHandler(file_handler)

    return app_logger
