import asyncio
import inspect
import time
from typing import Any, Callable, Dict, List, Optional

from retroscript.retro_config import EngineConfig
from retroscript.retro_datatypes import (
    Statement, Block, Launch, Close, Wait, Set, Print, Emit, On, If, Loop, While,
    ForEach, FunctionDef, Call, Return, Break, Continue, Dialog, Notify, WindowOp,
    Play, Write, Read, Mkdir, Delete, Try, Throw, Assert, Command,
    RetroError, ScriptRuntimeError, ScriptTimeoutError, CommandTimeoutError,
    RequestTimeoutError, IterationLimitError, HandlerError,
    UserFunction, ExecutionContext, Payload,
)
from retroscript.retro_events import Event, EventBus, dbg
from retroscript.retro_printer import to_display
from retroscript.retro_values import ValueResolver, strict_number, to_number

# Loops hand control back to the event loop this often.
YIELD_EVERY = 100
# `wait` sleeps in slices so stop() and the script timeout stay responsive.
WAIT_SLICE = 0.05


class Interpreter:
    """
    Walks a statement tree. One interpreter owns one variable environment
    and one function table; `on` handlers run in forks that share both.
    """

    def __init__(self, events: EventBus, commands, host=None, config: Optional[EngineConfig] = None,
                 *, functions: Optional[Dict[str, Any]] = None, variables: Optional[Dict[str, Any]] = None,
                 side_effects: Optional[List[Dict]] = None, subscriptions: Optional[List[Callable]] = None):
        self.events = events
        self.commands = commands
        self.host = host
        self.config = config or EngineConfig()
        self.functions: Dict[str, Any] = functions if functions is not None else {}
        self.globals: Dict[str, Any] = variables if variables is not None else {}
        self.variables: Dict[str, Any] = self.globals
        self.side_effects: List[Dict] = side_effects if side_effects is not None else []
        self.subscriptions: List[Callable] = subscriptions if subscriptions is not None else []
        self.context: Optional[ExecutionContext] = None
        self.resolver = ValueResolver(lambda: self.variables, self.call_function)

    def _dbg(self, *parts):
        dbg(self.config.debug, *parts)

    def fork(self) -> 'Interpreter':
        return Interpreter(self.events, self.commands, self.host, self.config,
                           functions=self.functions, variables=self.globals,
                           side_effects=self.side_effects, subscriptions=self.subscriptions)

    def new_context(self, timeout_ms: Optional[int] = None) -> ExecutionContext:
        return ExecutionContext(
            timeout_ms=self.config.timeout_ms if timeout_ms is None else timeout_ms,
            started_at=time.monotonic(),
        )

    async def run(self, statements, context: ExecutionContext) -> Any:
        """Execute a parsed script under context. Errors propagate to the caller."""
        self.context = context
        self.variables = self.globals
        try:
            result = await self.execute_block(statements)
            if context.returning:
                result = context.return_value
            return result
        finally:
            context.running = False
            self.variables = self.globals

    def stop(self):
        if self.context is not None:
            self.context.break_requested = True
            self.context.running = False

    def cleanup(self) -> int:
        """Remove every `on` subscription made by scripts."""
        count = len(self.subscriptions)
        for unsubscribe in self.subscriptions:
            unsubscribe()
        self.subscriptions.clear()
        return count

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def _check_timeout(self):
        ctx = self.context
        if ctx.timeout_ms and (time.monotonic() - ctx.started_at) * 1000 > ctx.timeout_ms:
            raise ScriptTimeoutError(f"Script timeout after {ctx.timeout_ms}ms")

    def _halted(self) -> bool:
        ctx = self.context
        return ctx.break_requested or not ctx.running

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    async def execute_block(self, statements) -> Any:
        ctx = self.context
        result = None
        for stmt in statements:
            if self._halted() or ctx.interrupted:
                break
            self._check_timeout()
            ctx.current_line = stmt.line
            try:
                result = await self.execute_statement(stmt)
            except RetroError as e:
                if e.line is None:
                    e.line = stmt.line
                if e.stack is None:
                    e.stack = list(ctx.call_stack)
                raise
            except Exception as e:
                raise ScriptRuntimeError(str(e) or type(e).__name__, line=stmt.line,
                                         stack=list(ctx.call_stack)) from e
            ctx.last_result = result
            if ctx.returning:
                return ctx.return_value
        return result

    async def execute_statement(self, stmt: Statement) -> Any:
        ctx = self.context
        resolve = self.resolver.resolve
        match stmt:
            case Block(statements=statements):
                return await self.execute_block(statements)

            case Set(name=name, value=value):
                resolved = await resolve(value)
                self.variables[name] = resolved
                return resolved

            case Print(message=message):
                text = to_display(await resolve(message))
                self.side_effects.append({'topics': ['stdout'], 'message': text})
                self.events.emit('script:output', {'message': text})
                return text

            case If(condition=condition, then_body=then_body, else_body=else_body):
                if await self.resolver.evaluate_condition(condition):
                    return await self.execute_block(then_body)
                if else_body:
                    return await self.execute_block(else_body)
                return None

            case Loop(count=count, body=body):
                return await self._loop(int(to_number(await resolve(count))), body)

            case While(condition=condition, body=body):
                return await self._while(condition, body)

            case ForEach(var=var, iterable=iterable, body=body):
                items = await resolve(iterable)
                return await self._foreach(var, items if isinstance(items, list) else [], body)

            case FunctionDef(name=name, params=params, body=body):
                self.functions[name] = UserFunction(name, params, body)
                return None

            case Call(name=name, args=args):
                resolved = [await resolve(a) for a in args]
                return await self.call_function(name, resolved)

            case Return(value=value):
                ctx.return_value = await resolve(value)
                ctx.returning = True
                return ctx.return_value

            case Break():
                # Outside a loop break and continue do nothing.
                if ctx.loop_depth:
                    ctx.loop_break = True
                return None

            case Continue():
                if ctx.loop_depth:
                    ctx.continue_requested = True
                return None

            case Try(body=body, error_var=error_var, catch_body=catch_body):
                try:
                    return await self.execute_block(body)
                except RetroError as e:
                    if e.fatal:
                        raise
                    self._dbg("caught", type(e).__name__, e.message)
                    self.variables[error_var] = e.message
                return await self.execute_block(catch_body)

            case Throw(message=message):
                raise ScriptRuntimeError(to_display(await resolve(message)))

            case Assert(condition=condition, message=message):
                if not await self.resolver.evaluate_condition(condition):
                    text = to_display(await resolve(message)) if message is not None else "Assertion failed"
                    raise ScriptRuntimeError(text)
                return True

            case Wait(duration=duration):
                return await self._wait(await resolve(duration))

            case Emit(event=event, payload=payload):
                name = await resolve(event)
                body = {key: await resolve(val) for key, val in payload}
                self.events.emit(name, body)
                return {'event': name, 'payload': body}

            case On(event=event, body=body):
                return self._subscribe(event, body)

            case Launch(app=app, params=params):
                body = {key: await resolve(val) for key, val in params}
                return await self._command('app:launch', {'appId': await resolve(app), 'params': body})

            case Close(target=target):
                window_id = await resolve(target)
                if window_id is None:
                    windows = self.host.get_state('windows') if self.host is not None else None
                    if not windows:
                        return None
                    window_id = windows[-1]['id']
                return await self._command('window:close', {'windowId': window_id})

            case WindowOp(op=op, target=target):
                return await self._command(f'window:{op}', {'windowId': await resolve(target)})

            case Dialog(mode=mode, message=message, default=default, into=into):
                return await self._dialog(mode, await resolve(message), await resolve(default), into)

            case Notify(message=message):
                self.events.emit('notification:show', {'message': await resolve(message)})
                return None

            case Play(sound=sound):
                self.events.emit('sound:play', {'type': await resolve(sound)})
                return None

            case Write(content=content, path=path):
                target = await resolve(path)
                self._files().write_file(target, to_display(await resolve(content)))
                return {'written': target}

            case Read(path=path, into=into):
                target = await resolve(path)
                try:
                    content = self._files().read_file(target)
                except (OSError, ValueError) as e:
                    self._dbg("read failed", target, e)
                    content = None
                self.variables[into] = content
                return content

            case Mkdir(path=path):
                target = await resolve(path)
                self._files().create_directory(target)
                return {'created': target}

            case Delete(path=path):
                target = await resolve(path)
                fs = self._files()
                try:
                    node = fs.get_node(target)
                    if node is not None and node.get('type') == 'directory':
                        fs.delete_directory(target)
                    else:
                        fs.delete_file(target)
                except OSError as e:
                    return {'error': str(e)}
                return {'deleted': target}

            case Command(name=name, args=args):
                if not self.commands.has_command(name):
                    raise ScriptRuntimeError(f"Unknown command: {name}")
                resolved = [await resolve(a) for a in args]
                return await self._command(name, {'args': resolved})

        raise ScriptRuntimeError(f"Unknown statement type: {stmt.kind}")

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def _after_iteration(self) -> bool:
        """Clear per-iteration flags; True when the loop must end."""
        ctx = self.context
        ctx.continue_requested = False
        if ctx.loop_break:
            ctx.loop_break = False
            return True
        return ctx.returning or self._halted()

    async def _loop(self, count: int, body) -> Any:
        ctx = self.context
        last = None
        ctx.loop_depth += 1
        try:
            for i in range(max(count, 0)):
                if self._halted():
                    break
                self._check_timeout()
                self.variables['i'] = i
                last = await self.execute_block(body)
                if self._after_iteration():
                    break
                if (i + 1) % YIELD_EVERY == 0:
                    await asyncio.sleep(0)
        finally:
            ctx.loop_depth -= 1
        return last

    async def _while(self, condition, body) -> Any:
        ctx = self.context
        max_iters = self.config.max_loop_iterations
        last = None
        iter_count = 0
        ctx.loop_depth += 1
        try:
            while not self._halted():
                self._check_timeout()
                if not await self.resolver.evaluate_condition(condition):
                    break
                last = await self.execute_block(body)
                if self._after_iteration():
                    break
                iter_count += 1
                if iter_count % YIELD_EVERY == 0:
                    await asyncio.sleep(0)
                if max_iters and iter_count >= max_iters:
                    raise IterationLimitError(f"while: iteration limit exceeded ({max_iters})")
        finally:
            ctx.loop_depth -= 1
        return last

    async def _foreach(self, var: str, items: list, body) -> Any:
        ctx = self.context
        last = None
        ctx.loop_depth += 1
        try:
            for i, item in enumerate(list(items)):
                if self._halted():
                    break
                self._check_timeout()
                self.variables[var] = item
                self.variables['i'] = i
                last = await self.execute_block(body)
                if self._after_iteration():
                    break
                if (i + 1) % YIELD_EVERY == 0:
                    await asyncio.sleep(0)
        finally:
            ctx.loop_depth -= 1
        return last

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    async def call_function(self, name: str, args: List[Any]) -> Any:
        fn = self.functions.get(name)
        if fn is None:
            raise ScriptRuntimeError(f"Unknown function: {name}")
        if isinstance(fn, UserFunction):
            return await self._invoke(fn, args)
        self._dbg("native call", name, "argc", len(args))
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                result = await result
        except RetroError:
            raise
        except Exception as e:
            raise ScriptRuntimeError(f"{name}: {e}") from e
        return result

    async def _invoke(self, fn: UserFunction, args: List[Any]) -> Any:
        ctx = self.context
        saved = self.variables
        # Dynamic scope: the callee sees a copy of the caller's environment.
        self.variables = dict(saved)
        for idx, param in enumerate(fn.params):
            self.variables[param] = args[idx] if idx < len(args) else None
        saved_flags = (ctx.loop_break, ctx.continue_requested, ctx.loop_depth)
        ctx.loop_break = ctx.continue_requested = False
        ctx.loop_depth = 0
        ctx.call_stack.append(fn.name)
        try:
            result = await self.execute_block(fn.body)
            return ctx.return_value if ctx.returning else result
        finally:
            ctx.call_stack.pop()
            ctx.returning = False
            ctx.return_value = None
            ctx.loop_break, ctx.continue_requested, ctx.loop_depth = saved_flags
            self.variables = saved

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _command(self, name: str, payload: Payload) -> Payload:
        """Round trip through Command Dispatch. Failures become a result, not an error."""
        try:
            data = await self.commands.execute_async(name, payload, self.config.command_timeout_ms)
        except (HandlerError, CommandTimeoutError) as e:
            self._dbg("command failed", name, e.message)
            return {'success': False, 'error': e.message}
        return {'success': True, 'data': data}

    async def _wait(self, duration) -> Any:
        ms = strict_number(duration)
        if ms is None:
            ms = 1000
        remaining = max(ms, 0) / 1000
        while remaining > 0 and not self._halted():
            self._check_timeout()
            step = min(remaining, WAIT_SLICE)
            await asyncio.sleep(step)
            remaining -= step
        self._check_timeout()
        return ms

    async def _dialog(self, mode: str, message: Any, default: Any, into: Optional[str]) -> Any:
        if mode == 'alert':
            self.events.emit('dialog:alert', {'message': message})
            return None
        if mode == 'confirm':
            try:
                response = await self.events.request('dialog:confirm', {'message': message},
                                                     self.config.confirm_timeout_ms)
                answer = bool(response.get('result'))
            except RequestTimeoutError:
                answer = False
        else:
            try:
                response = await self.events.request('dialog:prompt', {'message': message, 'default': default},
                                                     self.config.prompt_timeout_ms)
                answer = response.get('result')
            except RequestTimeoutError:
                answer = None
        self.variables[into or 'result'] = answer
        return answer

    def _files(self):
        files = getattr(self.host, 'files', None) if self.host is not None else None
        if files is None:
            raise ScriptRuntimeError("No file system available")
        return files

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _subscribe(self, event_name: str, body) -> Payload:
        async def _handler(event: Event):
            handler = self.fork()
            handler.globals['event'] = dict(event.payload)
            await handler.run_handler(event.name, body)

        self.subscriptions.append(self.events.on(event_name, _handler))
        self._dbg("subscribed", event_name)
        return {'subscribed': event_name}

    async def run_handler(self, event_name: str, body) -> Any:
        """Run an `on` body in its own context. Errors are reported, not raised."""
        context = self.new_context()
        try:
            return await self.run(body, context)
        except RetroError as e:
            message = f"Error in handler for '{event_name}': {e.message}"
            self.side_effects.append({'topics': ['stderr'], 'message': message})
            self.events.emit('script:error', {
                'scriptId': f'on:{event_name}', 'error': e.message, 'line': e.line, 'stack': e.stack,
            })
            return None
