"""
Command Dispatch: named command handlers, query topics, timers and macros,
all reached through the shared EventBus.

    bus = EventBus()
    commands = CommandBus(bus)
    commands.register('app:launch', launch_handler)
    data = await commands.execute_async('app:launch', {'appId': 'notepad'})
"""
import asyncio
import copy
import inspect
import time
from typing import Any, Callable, Dict, List, Optional

from retroscript.retro_datatypes import CommandTimeoutError, HandlerError, Payload, RequestTimeoutError
from retroscript.retro_events import Event, EventBus, dbg, new_request_id
from retroscript.retro_serialize import serialize, deserialize

Handler = Callable[[Payload], Any]


class CommandBus:
    """Routes `command:*` and `query:*` events to registered handlers."""

    def __init__(self, events: EventBus, debug: bool = False):
        self.events = events
        self.debug = debug
        self._handlers: Dict[str, Handler] = {}
        self._query_handlers: Dict[str, Callable[[], None]] = {}
        self._timers: Dict[str, Dict[str, Any]] = {}
        self._macros: Dict[str, List[Payload]] = {}
        self._recording: Optional[Dict[str, Any]] = None
        self._unsubscribers: List[Callable[[], None]] = [
            events.on('command:*', self._on_command),
            events.on('timer:set', self._on_timer_set),
            events.on('timer:clear', self._on_timer_clear),
            events.on('macro:record:start', self._on_record_start),
            events.on('macro:record:stop', self._on_record_stop),
            events.on('macro:play', self._on_play),
            events.on('macro:save', self._on_save),
        ]

    def _dbg(self, *parts):
        dbg(self.debug, *parts)

    def dispose(self):
        """Cancel timers and detach every listener this bus installed."""
        for timer_id in list(self._timers):
            self.clear_timer(timer_id)
        if self._recording is not None:
            self._recording['unsubscribe']()
            self._recording = None
        for unsubscribe in self._unsubscribers + list(self._query_handlers.values()):
            unsubscribe()
        self._unsubscribers.clear()
        self._query_handlers.clear()

    # ==========================================
    # Commands
    # ==========================================

    def register(self, name: str, handler: Handler):
        self._handlers[name] = handler

    def unregister(self, name: str):
        self._handlers.pop(name, None)

    async def execute(self, name: str, payload: Optional[Payload] = None) -> Payload:
        """
        Run the handler for name. Never raises: the outcome is returned as
        {'success': True, 'data': ...} or {'success': False, 'error': ...},
        and also published on `action:result` when the payload has a requestId.
        """
        payload = payload if payload is not None else {}
        request_id = payload.get('requestId')
        handler = self._handlers.get(name)
        if handler is None:
            self._dbg("unknown command", name)
            return self._finish(request_id, False, error=f"Unknown command: {name}")
        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._dbg("command failed", name, repr(e))
            message = e.message if isinstance(e, HandlerError) else str(e)
            return self._finish(request_id, False, error=message or type(e).__name__)
        return self._finish(request_id, True, data=result)

    def _finish(self, request_id, success: bool, data=None, error=None) -> Payload:
        if request_id:
            self.events.emit('action:result', {
                'requestId': request_id, 'success': success, 'data': data, 'error': error,
            })
        if success:
            return {'success': True, 'data': data}
        return {'success': False, 'error': error}

    async def execute_async(self, name: str, payload: Optional[Payload] = None,
                            timeout_ms: float = 5000) -> Any:
        """
        Publish `command:<name>` and wait for its correlated `action:result`.
        Returns the handler's data; raises HandlerError on failure and
        CommandTimeoutError when no result arrives in time.
        """
        request_id = new_request_id()
        body = dict(payload or {})
        body['requestId'] = request_id
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def _listener(event: Event):
            if not future.done() and event.payload.get('requestId') == request_id:
                future.set_result(event.payload)

        unsubscribe = self.events.on('action:result', _listener)
        try:
            self.events.emit(f"command:{name}", body)
            result = await asyncio.wait_for(future, timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise CommandTimeoutError(f"Command timeout: {name}") from None
        finally:
            unsubscribe()
        if not result.get('success'):
            raise HandlerError(name, result.get('error') or f"Command failed: {name}")
        return result.get('data')

    def _on_command(self, event: Event):
        name = event.name[len('command:'):]
        return self.execute(name, event.payload)

    def get_commands(self) -> List[str]:
        return list(self._handlers)

    def has_command(self, name: str) -> bool:
        return name in self._handlers

    # ==========================================
    # Queries
    # ==========================================

    def register_query(self, topic: str, handler: Handler):
        """Answer `query:<topic>` with `query:<topic>:response` {requestId, data|error}."""
        previous = self._query_handlers.pop(topic, None)
        if previous is not None:
            previous()

        async def _answer(event: Event):
            request_id = event.payload.get('requestId')
            try:
                result = handler(event.payload)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                self._dbg("query failed", topic, repr(e))
                self.events.emit(f"query:{topic}:response", {'requestId': request_id, 'error': str(e)})
                return
            self.events.emit(f"query:{topic}:response", {'requestId': request_id, 'data': result})

        self._query_handlers[topic] = self.events.on(f"query:{topic}", _answer)

    def has_query(self, topic: str) -> bool:
        return topic in self._query_handlers

    async def query(self, topic: str, payload: Optional[Payload] = None,
                    timeout_ms: float = 5000) -> Any:
        try:
            response = await self.events.request(f"query:{topic}", payload, timeout_ms)
        except RequestTimeoutError:
            raise CommandTimeoutError(f"Query timeout: {topic}") from None
        if response.get('error') is not None:
            raise HandlerError(f"query:{topic}", response['error'])
        return response.get('data')

    # ==========================================
    # Timers
    # ==========================================

    def set_timer(self, timer_id: str, delay: float, event: Optional[str] = None,
                  payload: Optional[Payload] = None, repeat: bool = False):
        """Schedule a timer; an existing timer with the same id is cancelled first."""
        self.clear_timer(timer_id)
        loop = asyncio.get_running_loop()
        seconds = max(float(delay or 0), 0) / 1000

        def _fire():
            entry = self._timers.get(timer_id)
            if entry is None:
                return
            if entry['repeat']:
                entry['handle'] = loop.call_later(seconds, _fire)
            else:
                del self._timers[timer_id]
            self.events.emit('timer:fired', {'timerId': timer_id})
            if event:
                self.events.emit(event, dict(payload or {}))

        self._timers[timer_id] = {
            'handle': loop.call_later(seconds, _fire),
            'event': event,
            'repeat': bool(repeat),
        }
        self._dbg("timer set", timer_id, delay, "repeat" if repeat else "once")

    def clear_timer(self, timer_id: str) -> bool:
        entry = self._timers.pop(timer_id, None)
        if entry is None:
            return False
        entry['handle'].cancel()
        return True

    def get_active_timers(self) -> List[str]:
        return list(self._timers)

    def _on_timer_set(self, event: Event):
        p = event.payload
        self.set_timer(p.get('timerId'), p.get('delay', 0), p.get('event'), p.get('payload'), p.get('repeat', False))

    def _on_timer_clear(self, event: Event):
        self.clear_timer(event.payload.get('timerId'))

    # ==========================================
    # Macros
    # ==========================================

    @property
    def is_recording(self) -> bool:
        return self._recording is not None

    def start_recording(self, macro_id: Optional[str] = None) -> str:
        if self._recording is not None:
            self._recording['unsubscribe']()
        macro_id = macro_id or f"macro_{int(time.time() * 1000)}"
        state = {'macroId': macro_id, 'events': [], 'last': time.monotonic()}

        def _record(event: Event):
            now = time.monotonic()
            body = copy.deepcopy(event.payload)
            body.pop('requestId', None)
            state['events'].append({
                'event': event.name,
                'payload': body,
                'delay': round((now - state['last']) * 1000),
            })
            state['last'] = now

        state['unsubscribe'] = self.events.on('command:*', _record)
        self._recording = state
        self.events.emit('macro:recording', {'macroId': macro_id, 'started': True})
        return macro_id

    def stop_recording(self) -> Optional[str]:
        state = self._recording
        if state is None:
            return None
        self._recording = None
        state['unsubscribe']()
        self._macros[state['macroId']] = list(state['events'])
        self.events.emit('macro:recorded', {'macroId': state['macroId'], 'eventCount': len(state['events'])})
        return state['macroId']

    async def play_macro(self, macro_id: str, speed: float = 1.0) -> bool:
        """Re-emit the recorded events in order, waiting delay / speed before each."""
        events = self._macros.get(macro_id)
        if not events:
            self._dbg("macro not found or empty", macro_id)
            return False
        speed = float(speed) if speed and float(speed) > 0 else 1.0
        self.events.emit('macro:playing', {'macroId': macro_id, 'eventCount': len(events)})
        for entry in events:
            await asyncio.sleep(max(float(entry.get('delay', 0)), 0) / 1000 / speed)
            self.events.emit(entry['event'], copy.deepcopy(entry.get('payload') or {}))
        self.events.emit('macro:complete', {'macroId': macro_id})
        return True

    def save_macro(self, macro_id: str, events: List[Payload]):
        self._macros[macro_id] = [dict(e) for e in events or []]

    def get_saved_macros(self) -> List[str]:
        return list(self._macros)

    def get_macro(self, macro_id: str) -> Optional[List[Payload]]:
        return self._macros.get(macro_id)

    def export_macros(self, fmt: str = 'json') -> str:
        return serialize(self._macros, fmt=fmt)

    def import_macros(self, data: str, fmt: Optional[str] = None) -> int:
        loaded = deserialize(data, fmt=fmt)
        if not isinstance(loaded, dict):
            raise ValueError("Macro data must be a mapping of macro id to event list")
        for macro_id, events in loaded.items():
            if not isinstance(events, list):
                raise ValueError(f"Macro {macro_id!r} must be a list of events")
            self.save_macro(str(macro_id), events)
        return len(loaded)

    def _on_record_start(self, event: Event):
        self.start_recording(event.payload.get('macroId'))

    def _on_record_stop(self, event: Event):
        self.stop_recording()

    def _on_play(self, event: Event):
        return self.play_macro(event.payload.get('macroId'), event.payload.get('speed', 1.0))

    def _on_save(self, event: Event):
        self.save_macro(event.payload.get('macroId'), event.payload.get('events'))
