"""
Logging setup for the quoteflow service.
Call setup_logging() once at app startup.
"""
import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone

from . import config


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record):
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "func": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        for key in ("briefing_id", "phase", "route", "attempt", "delay"):
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    def format(self, record):
        ts = datetime.now().strftime("%H:%M:%S")
        line = f"{ts} [{record.levelname[0]}] {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[0]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level=None, json_logs=None, log_dir=None):
    """
    Configure the root logger.

    Args:
        level: override log level (default: LOG_LEVEL env or INFO)
        json_logs: JSON console lines (default: True when LOG_JSON is set)
        log_dir: directory for the rotating file log (default: <data dir>/logs)
    """
    if level is None:
        level = config.LOG_LEVEL
    if json_logs is None:
        json_logs = config.LOG_JSON
    if log_dir is None:
        log_dir = os.path.join(str(config.DATA_DIR), "logs")

    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(JSONFormatter() if json_logs else HumanFormatter())
    root.addHandler(console)

    # rotates at 5MB, keeps 5 backups
    try:
        os.makedirs(log_dir, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, "quoteflow.log"),
            maxBytes=5_000_000, backupCount=5,
        )
        fh.setFormatter(JSONFormatter())
        root.addHandler(fh)
    except OSError:
        root.warning("File logging disabled: %s is not writable", log_dir)

    for name in ("httpx", "httpcore", "openai", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("quoteflow").info("Logging initialized at %s", level)
