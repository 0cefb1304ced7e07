from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .config import FAVICON_PATH


logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]


def now_timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class RequestLog:
    """Forwards formatted lines to the host's log collector.

    The sink is called synchronously; anything it raises is logged locally
    and dropped so a broken collector never changes a response.
    """

    def __init__(self, sink: Optional[LogSink] = None) -> None:
        self._sink = sink

    def emit(self, message: str) -> None:
        line = f"[{now_timestamp()}] {message}"
        logger.info(message)
        if self._sink is None:
            return
        try:
            self._sink(line)
        except Exception:
            logger.exception("Log sink failed")

    def request(self, client: str, method: str, uri: str) -> None:
        if uri.split("?", 1)[0] == FAVICON_PATH:
            return
        self.emit(f"{client} {method} {uri}")

    def error(self, message: str) -> None:
        self.emit(f"ERROR: {message}")
