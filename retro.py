import asyncio
import sys
from pathlib import Path

from retroscript import ScriptEngine, HeadlessHost, EngineConfig
from retroscript.retro_printer import Printer


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


class ConsoleHost(HeadlessHost):
    """Headless desktop that prints dialogs and notifications to the terminal."""

    def alert(self, message):
        super().alert(message)
        print(f"[alert] {Printer().pformat(message)}")

    def notify(self, payload):
        super().notify(payload)
        print(f"[notify] {Printer().pformat(payload.get('message'))}")


def make_engine() -> ScriptEngine:
    return ScriptEngine(host=ConsoleHost(), config=EngineConfig.load())


async def flush_effects(engine: ScriptEngine):
    """Let `on` handlers and timers settle, then print everything the run produced."""
    await engine.events.drain()
    for effect in engine.side_effects:
        stream = sys.stderr if effect.get('topics') == ['stderr'] else sys.stdout
        print(effect.get('message', ''), file=stream)


async def run_script_file(file_path: str):
    """Run a RetroScript file non-interactively and exit with appropriate status."""
    engine = make_engine()
    printer = Printer()
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    result = await engine.run(source)
    await flush_effects(engine)
    engine.cleanup()
    if not result.success:
        raise SystemExit(1)
    if result.value is not None:
        print(printer.pformat(result.value))


async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_script_file(arg)
            return

    print("RetroScript REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    engine = make_engine()
    printer = Printer()

    # REPL Loop
    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break

            result = await engine.run(line)
            await flush_effects(engine)

            if result.success and result.value is not None:
                print(printer.pformat(result.value))

        except EOFError:
            print("\nExiting.")
            break
    engine.cleanup()


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    cli()
