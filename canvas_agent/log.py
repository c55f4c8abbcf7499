"""
log.py - Logging configuration

Module loggers everywhere, configured once from LOG_LEVEL. DEBUG_LOG=true
additionally dumps every raw model request and collected response, which is
the quickest way to see what the model was actually shown.
"""

import json
import logging

from .config import SETTINGS

_CONFIGURED = False


def setup_logging(level: str | None = None) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    logging.basicConfig(
        level=level or SETTINGS.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _CONFIGURED = True


def log_api_call(caller: str, system: str, messages: list, tools: list):
    if not SETTINGS.debug_log:
        return
    logger = logging.getLogger("canvas_agent.api")
    logger.info(
        "\n%s\n[API CALL] from: %s\n%s\n%s\n%s",
        "=" * 80, caller, "=" * 80,
        json.dumps({"system": system, "messages": messages, "tools": tools},
                   ensure_ascii=False, indent=2, default=str),
        "=" * 80,
    )


def log_api_response(caller: str, response):
    if not SETTINGS.debug_log:
        return
    logger = logging.getLogger("canvas_agent.api")
    logger.info(
        "\n%s\n[API RESPONSE] from: %s\n%s\n%s\n%s",
        "=" * 80, caller, "=" * 80, response, "=" * 80,
    )
