"""Structured logging configuration for keel."""
import contextvars
import logging
import uuid

import structlog

run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "run_id", default=""
)


def new_run_id() -> str:
    """Generate a new short run (correlation) ID."""
    return str(uuid.uuid4())[:8]


def add_run_id(logger, method_name, event_dict):
    """Structlog processor to add the current run ID."""
    rid = run_id_var.get("")
    if rid and "run_id" not in event_dict:
        event_dict["run_id"] = rid
    return event_dict


def configure_logging(level: int | str = logging.INFO) -> None:
    """Configure stdlib logging and structlog for the engine."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    # Stdlib root logger so logging.getLogger("keel.*") reaches stderr;
    # force=True in case basicConfig already ran as an import side-effect.
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_run_id,
            structlog.dev.ConsoleRenderer() if level <= logging.DEBUG else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
