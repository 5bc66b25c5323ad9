import logging
from collections import namedtuple

logger = logging.getLogger(__name__)

ProxyEvent = namedtuple("ProxyEvent", ["name", "fields"])


class EventLog:
    """Request-scoped diagnostics.

    Every event is recorded in order and forwarded to ``logging`` so the same
    trail is visible in the server log and inspectable from tests.
    """

    def __init__(self, log=None):
        self.events = []
        self._log = log or logger

    def emit(self, name: str, message: str = None, level: int = logging.INFO, **fields):
        self.events.append(ProxyEvent(name, fields))
        if message:
            self._log.log(level, message)
        else:
            self._log.debug(f"{name} {fields}")

    def names(self) -> list:
        return [event.name for event in self.events]

    def find(self, name: str) -> list:
        return [event for event in self.events if event.name == name]
