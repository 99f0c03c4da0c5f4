import logging
import logging.config
from typing import Any, Protocol

logger = logging.getLogger("app.events")


class EventSink(Protocol):
    def __call__(self, event: str, **fields: Any) -> None: ...


def log_event(event: str, **fields: Any) -> None:
    """Default sink: one structured log line per mutation outcome."""
    logger.info(
        "%s %s",
        event,
        " ".join(f"{k}={v}" for k, v in sorted(fields.items())),
        extra={"event": event, "fields": fields},
    )


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"handlers": ["console"], "level": level.upper()},
        }
    )
