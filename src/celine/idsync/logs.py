import logging

import structlog

from celine.idsync.config import Settings, settings as default_settings


def resolve_level(raw: str | int) -> int:
    # Accept both standard level names (e.g. "INFO") and numeric values.
    if isinstance(raw, int):
        return raw
    level = getattr(logging, str(raw).upper(), None)
    if isinstance(level, int):
        return level
    try:
        return int(raw)
    except ValueError:
        return logging.INFO


def _service_tagger(service_name: str):
    def add_service(_logger, _method, event_dict):
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service


def configure_logging(
    settings: Settings | None = None,
    level: str | int | None = None,
) -> None:
    """Configure stdlib logging and structlog.

    `level` overrides settings.log_level (the CLI passes DEBUG for --verbose).
    """
    settings = settings or default_settings
    level = resolve_level(level if level is not None else settings.log_level)

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # Quiet down httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    processors = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _service_tagger(settings.service_name),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
