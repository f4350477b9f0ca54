"""
The shared event bus.

Listeners subscribe by exact name or by a glob with `*` wildcards
(`window:*`, `command:*`). Emission is synchronous: every listener registered
at the moment of `emit` is called in subscription order. A listener that
returns an awaitable has it scheduled as a task on the running loop.
"""
import asyncio
import inspect
import os
import re
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from retroscript.retro_datatypes import RequestTimeoutError, Payload

Listener = Callable[['Event'], Any]


def dbg(enabled: bool, *parts):
    """Trace to stderr when enabled or when RETRO_DEBUG is set."""
    if enabled or os.environ.get("RETRO_DEBUG"):
        try:
            print("[DBG]", *parts, file=sys.stderr)
        except Exception:
            pass


@dataclass
class Event:
    name: str
    payload: Payload = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


def new_request_id() -> str:
    return uuid.uuid4().hex


class _Subscription:
    __slots__ = ("pattern", "callback", "regex", "once")

    def __init__(self, pattern: str, callback: Listener, once: bool = False):
        self.pattern = pattern
        self.callback = callback
        self.once = once
        # Compiled once per subscription.
        self.regex = re.compile('^' + '.*'.join(re.escape(p) for p in pattern.split('*')) + '$') \
            if '*' in pattern else None

    def matches(self, name: str) -> bool:
        if self.regex is None:
            return self.pattern == name
        return self.regex.match(name) is not None


class EventBus:
    """Publish/subscribe with wildcard patterns and request/response round trips."""

    def __init__(self, debug: bool = False):
        self._subscriptions: List[_Subscription] = []
        self._tasks: set = set()
        self.debug = debug

    def _dbg(self, *parts):
        dbg(self.debug, *parts)

    # --- Subscription -------------------------------------------------

    def on(self, pattern: str, callback: Listener) -> Callable[[], None]:
        """Subscribe; returns a function that removes the subscription."""
        sub = _Subscription(pattern, callback)
        self._subscriptions.append(sub)
        return lambda: self._remove(sub)

    def once(self, pattern: str, callback: Listener) -> Callable[[], None]:
        sub = _Subscription(pattern, callback, once=True)
        self._subscriptions.append(sub)
        return lambda: self._remove(sub)

    def off(self, pattern: str, callback: Optional[Listener] = None):
        """Remove subscriptions for pattern; all of them when callback is None."""
        self._subscriptions = [
            s for s in self._subscriptions
            if not (s.pattern == pattern and (callback is None or s.callback == callback))
        ]

    def _remove(self, sub: _Subscription):
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    def listener_count(self, name: Optional[str] = None) -> int:
        if name is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions if s.matches(name))

    def clear(self):
        self._subscriptions.clear()

    # --- Emission -----------------------------------------------------

    def emit(self, name: str, payload: Optional[Payload] = None) -> Event:
        if payload is not None and not isinstance(payload, dict):
            payload = {'data': payload}
        event = Event(name, dict(payload or {}))
        self._dbg("emit", name, event.payload)
        # Only listeners present now receive this event.
        for sub in [s for s in self._subscriptions if s.matches(name)]:
            if sub.once:
                self._remove(sub)
            try:
                result = sub.callback(event)
            except Exception as e:
                self._report(name, sub.pattern, e)
                continue
            if inspect.isawaitable(result):
                self._schedule(name, sub.pattern, result)
        return event

    def _schedule(self, name: str, pattern: str, awaitable):
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task):
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self._report(name, pattern, exc)

        task.add_done_callback(_done)

    def _report(self, name: str, pattern: str, exc: BaseException):
        where = f" (pattern {pattern!r})" if pattern != name else ""
        print(f"[EventBus] Error in listener for {name!r}{where}: {exc}", file=sys.stderr)

    async def drain(self):
        """Wait until every listener task scheduled so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_tasks(self) -> int:
        count = len(self._tasks)
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        return count

    # --- Round trips --------------------------------------------------

    async def wait_for(self, name: str, predicate: Optional[Callable[[Event], bool]] = None,
                       timeout_ms: Optional[float] = None) -> Event:
        """Suspend until an event matching name (and predicate) is emitted."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def _listener(event: Event):
            if future.done():
                return
            if predicate is None or predicate(event):
                future.set_result(event)

        unsubscribe = self.on(name, _listener)
        try:
            if timeout_ms is None:
                return await future
            return await asyncio.wait_for(future, timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"Timed out waiting for '{name}'") from None
        finally:
            unsubscribe()

    async def request(self, name: str, payload: Optional[Payload] = None,
                      timeout_ms: float = 5000) -> Payload:
        """
        Emit `name` with a fresh requestId and wait for `<name>:response`
        carrying the same id. Returns the response payload.
        """
        request_id = new_request_id()
        body = dict(payload or {})
        body['requestId'] = request_id
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def _listener(event: Event):
            if not future.done() and event.payload.get('requestId') == request_id:
                future.set_result(event.payload)

        unsubscribe = self.on(f"{name}:response", _listener)
        try:
            self.emit(name, body)
            return await asyncio.wait_for(future, timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"Request '{name}' timed out after {timeout_ms}ms") from None
        finally:
            unsubscribe()

    def respond(self, request: Event, **data) -> Event:
        """Answer a request event on `<name>:response`."""
        body = {'requestId': request.payload.get('requestId')}
        body.update(data)
        return self.emit(f"{request.name}:response", body)
