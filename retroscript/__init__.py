from retroscript.retro_datatypes import (
    RetroError, ParseError, ScriptRuntimeError, ScriptTimeoutError, CommandTimeoutError,
    RequestTimeoutError, IterationLimitError, HandlerError,
)
from retroscript.retro_config import EngineConfig
from retroscript.retro_events import EventBus, Event
from retroscript.retro_commands import CommandBus
from retroscript.retro_host import RetroHost, HeadlessHost, MemoryFileStore, install_host_commands, script_api
from retroscript.retro_parser import Parser, parse
from retroscript.retro_tokenizer import tokenize
from retroscript.retro_runtime import ScriptEngine, ExecutionResult

__all__ = [
    "ScriptEngine", "ExecutionResult", "EngineConfig",
    "EventBus", "Event", "CommandBus",
    "RetroHost", "HeadlessHost", "MemoryFileStore", "install_host_commands", "script_api",
    "Parser", "parse", "tokenize",
    "RetroError", "ParseError", "ScriptRuntimeError", "ScriptTimeoutError", "CommandTimeoutError",
    "RequestTimeoutError", "IterationLimitError", "HandlerError",
]
