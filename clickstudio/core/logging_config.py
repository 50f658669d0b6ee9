"""
Root logger setup for the RBAC server.

Components log through named standard-library loggers (``"auth"``,
``"audit"``, ``"client-manager"``, ...). ``setup_logging`` installs one
stream handler on the root logger; calling it again only adjusts the level,
so building several apps in one process does not duplicate output.
"""

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
HANDLER_NAME = "clickstudio"

# Chatty at INFO; kept at WARNING unless the server itself runs quieter.
_NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "urllib3", "clickhouse_connect")


def resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName((level or "").strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: int | str = logging.INFO) -> None:
    root = logging.getLogger()
    resolved = resolve_level(level)
    if not any(h.get_name() == HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler()
        handler.set_name(HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(resolved)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
