import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ROOT_LOGGER_NAME = "colloquy"


def _configure_root_logger() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(os.getenv("COLLOQUY_LOG_LEVEL", "INFO").upper())
    return root


def get_logger(name: str) -> logging.Logger:
    """
    Returns a logger that lives under the ``colloquy`` logger hierarchy.

    The root ``colloquy`` logger is configured once with a stream handler. Its level is read from the
    ``COLLOQUY_LOG_LEVEL`` environment variable and defaults to INFO.

    :param name: Dotted logger name, e.g. ``colloquy.execution``. Names outside the hierarchy are
        prefixed with ``colloquy.``.
    :return: The configured logger.
    """
    _configure_root_logger()
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
