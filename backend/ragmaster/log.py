# ragmaster/log.py
import logging

from .config import LOG_LEVEL

_root = logging.getLogger("ragmaster")
if not _root.handlers:
    h = logging.StreamHandler()
    h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    _root.addHandler(h)
    _root.setLevel(LOG_LEVEL)

def get_logger(name: str) -> logging.Logger:
    if not name.startswith("ragmaster"):
        name = f"ragmaster.{name}"
    return logging.getLogger(name)
