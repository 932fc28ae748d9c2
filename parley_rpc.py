import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from parley_codec import error_response
from parley_errors import UnmatchedResponse, kERROR_REQUEST_TIMEOUT
from parley_typing import LSPResponseMessage

# Called with the session and the response message.
ResponseCallback = Callable[[Any, LSPResponseMessage], None]

# Called with the session and the message's params.
MessageListener = Callable[[Any, Any], None]

# Called with the session and event arguments.
EventListener = Callable[..., None]


@dataclass
class PendingRequest:
    id: int
    method: str
    callback: Optional[ResponseCallback]
    # Enqueue timestamp; time.monotonic.
    timestamp: float = field(default_factory=time.monotonic)
    # Absolute time.monotonic deadline.
    deadline: Optional[float] = None


class Correlator:
    """Matches responses to the requests that produced them.

    IDs are issued by a monotonic counter and never reused,
    so a late or duplicate reply can't be mistaken for the answer to a newer request.
    """

    def __init__(
        self,
        logger: logging.Logger,
        name: str,
        owner: Any,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._logger = logger
        self._name = name
        self._owner = owner
        self._clock = clock
        self._last_id = 0
        self._pending: Dict[int, PendingRequest] = {}

    def __len__(self):
        return len(self._pending)

    def __contains__(self, id):
        return id in self._pending

    def pending(self) -> List[PendingRequest]:
        return list(self._pending.values())

    def next_id(self) -> int:
        self._last_id += 1

        return self._last_id

    def register(
        self,
        id: int,
        method: str,
        callback: Optional[ResponseCallback],
        timeout: Optional[float] = None,
    ) -> PendingRequest:
        now = self._clock()

        pending = PendingRequest(
            id=id,
            method=method,
            callback=callback,
            timestamp=now,
            deadline=now + timeout if timeout is not None else None,
        )

        self._pending[id] = pending

        return pending

    def resolve(
        self,
        id: Optional[Union[int, str]],
        response: LSPResponseMessage,
    ) -> bool:
        """
        Invoke the callback of the request `id` with `response`.

        Returns False if there's no request pending for `id`;
        servers occasionally double-reply or reply after a cancellation.
        """
        pending = self._pending.pop(id, None) if isinstance(id, (int, str)) else None

        if pending is None:
            self._logger.warning(f"[{self._name}] Unmatched response; {UnmatchedResponse(id)}")

            return False

        if pending.callback:
            try:
                pending.callback(self._owner, response)
            except Exception:
                self._logger.exception(
                    f"[{self._name}] Request callback error ({pending.method})"
                )

        return True

    def fail_all(self, code: int, message: str) -> int:
        """
        Resolve every pending request with a synthetic error response.

        Returns the number of requests failed.
        """
        pending_ids = list(self._pending)

        if pending_ids:
            self._logger.warning(
                f"[{self._name}] Failing {len(pending_ids)} pending request(s): {message}"
            )

        for id in pending_ids:
            self.resolve(id, error_response(id, code, message))

        return len(pending_ids)

    def expire(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now

        expired = [
            pending
            for pending in self._pending.values()
            if pending.deadline is not None and pending.deadline <= now
        ]

        for pending in expired:
            self._logger.warning(
                f"[{self._name}] Request {pending.id} ({pending.method}) timed out"
            )

            self.resolve(
                pending.id,
                error_response(
                    pending.id,
                    kERROR_REQUEST_TIMEOUT,
                    f"Request {pending.method} timed out after {now - pending.timestamp:.1f}s",
                ),
            )

        return len(expired)


class DispatchRegistry:
    """Ordered listeners for lifecycle events and JSON-RPC methods.

    Every listener registered for a name is invoked, in registration order.
    A failing listener is logged and doesn't stop the others.
    """

    def __init__(self, logger: logging.Logger, name: str):
        self._logger = logger
        self._name = name
        self._events: Dict[str, List[EventListener]] = {}
        self._methods: Dict[str, List[MessageListener]] = {}

    def on_event(self, name: str, callback: EventListener):
        self._events.setdefault(name, []).append(callback)

    def on_method(self, name: str, callback: MessageListener):
        self._methods.setdefault(name, []).append(callback)

    def has_method(self, name: str) -> bool:
        return bool(self._methods.get(name))

    def fire_event(self, name: str, session: Any, *args) -> int:
        listeners = list(self._events.get(name, []))

        for callback in listeners:
            try:
                callback(session, *args)
            except Exception:
                self._logger.exception(
                    f"[{self._name}] Error handling event '{name}'"
                )

        return len(listeners)

    def fire_method(self, name: str, session: Any, params: Any) -> int:
        listeners = list(self._methods.get(name, []))

        for callback in listeners:
            try:
                callback(session, params)
            except Exception:
                self._logger.exception(f"[{self._name}] Error handling '{name}'")

        return len(listeners)
