"""
Centralized logging configuration for the chat client.

Configure once in the entry point, not per module.
"""

import logging
import sys

import structlog

from dataset_chat.core.config_loader import load_logging_config


def configure_logging(level: int | str | None = None) -> None:
    """
    Configure Python logging for the entire application.

    Truly idempotent: safe to call multiple times without side effects.
    Checks if root logger already has handlers before configuring.

    Args:
        level: Root level override; defaults to root_level from config/logging.yaml
    """
    root_logger = logging.getLogger()

    # Only configure if no handlers exist (truly idempotent)
    if root_logger.handlers:
        return

    config = load_logging_config()
    root_level = level if level is not None else config["root_level"]
    if isinstance(root_level, str):
        root_level = root_level.upper()

    logging.basicConfig(
        level=root_level,
        format=config["format"],
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    for module_name, module_level in config["module_levels"].items():
        logging.getLogger(module_name).setLevel(module_level)

    # Reduce noise
    for module_name, module_level in config["reduce_noise"].items():
        logging.getLogger(module_name).setLevel(module_level)

    # Route structlog through stdlib logging so the levels above apply to it
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"], sort_keys=True),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
