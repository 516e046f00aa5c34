import threading
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger()

STARTED = "started"
STEP = "step"
COMPLETED = "completed"
ERROR = "error"
EVENTS = (STARTED, STEP, COMPLETED, ERROR)

Handler = Callable[[Dict[str, Any]], None]


class EventChannel:
    ''' Lifecycle notifications of one client: started, step, completed, error '''
    def __init__(self):
        self.lock = threading.Lock()   # guards the handler lists
        self._handlers: Dict[str, List[Handler]] = {name: [] for name in EVENTS}

    def on(self, name: str, handler: Handler) -> Handler:
        '''
        Register a handler for an event. Returns the handler so it can be used as a
        decorator or passed back to off().
        '''
        self._check(name)
        with self.lock:
            self._handlers[name].append(handler)
        return handler

    def off(self, name: str, handler: Handler) -> None:
        ''' Remove a handler; removing an unknown handler is a no-op '''
        self._check(name)
        with self.lock:
            try:
                self._handlers[name].remove(handler)
            except ValueError:
                pass

    def once(self, name: str, handler: Handler) -> Handler:
        ''' Register a handler that is removed after its first call '''
        def wrapper(payload: Dict[str, Any]) -> None:
            self.off(name, wrapper)
            handler(payload)
        return self.on(name, wrapper)

    def listeners(self, name: str) -> List[Handler]:
        self._check(name)
        with self.lock:
            return list(self._handlers[name])

    def emit(self, name: str, payload: Dict[str, Any]) -> None:
        '''
        Call every handler of an event with the payload, in registration order.
        A failing handler is logged and skipped so it cannot break the running operation.
        '''
        for handler in self.listeners(name):
            try:
                handler(payload)
            except Exception:
                logger.exception("event_handler_failed", event=name)

    def _check(self, name: str) -> None:
        if name not in self._handlers:
            raise ValueError(f"unknown event: {name!r} (expected one of {', '.join(EVENTS)})")
