import logging
import json
from typing import Dict, Any

# Record attributes worth carrying into the JSON document when present
EXTRA_FIELDS = ("client_id", "session_id", "strategy")


class JSONFormatter(logging.Formatter):
    """
    One JSON document per record, for log shippers (LOG_JSON=true).
    """
    def format(self, record: logging.LogRecord) -> str:
        logobj: Dict[str, Any] = {}
        logobj["level"] = record.levelname
        logobj["time"] = self.formatTime(record, self.datefmt)
        logobj["logger"] = record.name
        logobj["message"] = record.getMessage()

        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                logobj[field] = getattr(record, field)

        if record.exc_info:
            logobj["exception"] = self.formatException(record.exc_info)

        return json.dumps(logobj, default=str)
