import logging

import structlog


def configure_logging(config):
    """stdlib logging underneath, structlog on top. Console output in
    development, one JSON object per line in production."""
    logging.basicConfig(
        format="%(message)s", level=getattr(logging, config.log_level.upper(), logging.INFO)
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if config.is_production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
