import logging
import sys
from pythonjsonlogger import jsonlogger
from estate_contracts.core.config import Settings
from estate_contracts.core.middleware import RequestIdLogFilter


def configure_logging(settings: Settings) -> None:
    """
    Structured logging (JSON) for the API process and the sweep worker.

    Call sites pass identifiers through ``extra=`` (contract_id, payment_id,
    event_type, ...) so they land as top-level JSON fields.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    # clear handlers if reloaded
    root.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    fmt = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"levelname": "level", "name": "logger"},
    )
    handler.setFormatter(fmt)
    handler.addFilter(RequestIdLogFilter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(level)
    logging.getLogger("uvicorn.error").setLevel(level)
    # SQL echo stays off unless explicitly asked for
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
