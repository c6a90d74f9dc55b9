import logging
import re

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_UNSAFE = re.compile(r"[\n\r\x00-\x1f\x7f-\x9f]")


def configure_logging(app):
    level = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)


def sanitize(value, max_length: int = 255) -> str:
    """Strip control characters from user-supplied values before logging them."""
    if value is None or value == "":
        return "unknown"
    return _UNSAFE.sub("", str(value).strip())[:max_length]
