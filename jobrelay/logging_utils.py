import enum
import json
import logging
import time

# job and trigger context callers may pass through `extra`
EXTRA_FIELDS = ("request_id", "job_id", "job_type", "status", "event", "trigger", "count")

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in EXTRA_FIELDS:
            value = getattr(record, k, None)
            if value is None:
                continue
            # JobStatus and friends go out as their plain value
            base[k] = value.value if isinstance(value, enum.Enum) else value
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        if record.threadName != "MainThread":
            base["thread"] = record.threadName
        return json.dumps(base, ensure_ascii=False, default=str)

def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
