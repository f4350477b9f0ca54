import asyncio
import time

import pytest

from retroscript import ScriptEngine, HeadlessHost, EngineConfig


async def run_retro(src: str, **kwargs):
    engine = ScriptEngine(**kwargs)
    return await engine.run(src)


def stdout(res):
    return [e['message'] for e in res.side_effects if e['topics'] == ['stdout']]


def assert_ok(res, expected=None):
    assert res.success, res.format_error()
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str | None = None):
    assert not res.success, f"expected error, got success: {res.value!r}"
    if contains is not None:
        assert contains in (res.error or ""), f"error did not contain {contains!r}: {res.error!r}"


@pytest.mark.asyncio
async def test_arithmetic_and_print():
    res = await run_retro("set $x = 2 + 3; print $x")
    assert_ok(res)
    assert stdout(res) == ["5"]


@pytest.mark.asyncio
async def test_concat_and_division_by_zero():
    res = await run_retro('set $a = "a" + 1\nset $b = 5 / 0\nprint "$a $b"')
    assert_ok(res)
    assert stdout(res) == ["a1 0"]


@pytest.mark.asyncio
async def test_function_call_uses_copy_of_environment():
    engine = ScriptEngine()
    res = await engine.run("func add($a,$b){ return $a + $b }\nset $a = 100; call add 1 2")
    assert_ok(res, 3)
    assert engine.get_variable('a') == 100


@pytest.mark.asyncio
async def test_writes_inside_function_do_not_leak():
    engine = ScriptEngine()
    res = await engine.run("def bump { set $counter = 99 }\nset $counter = 1\ncall bump\nprint $counter")
    assert_ok(res)
    assert stdout(res) == ["1"]


@pytest.mark.asyncio
async def test_value_position_call_and_missing_args():
    res = await run_retro("function pair(a, b) { return [$a, $b] }\nset $p = pair(1)\nprint $p")
    assert_ok(res)
    assert stdout(res) == ["[1, null]"]


@pytest.mark.asyncio
async def test_recursion():
    src = """
        func fact($n) {
            if $n <= 1 then { return 1 }
            set $m = fact($n - 1)
            return $n * $m
        }
        set $r = call fact 5
        print $r
    """
    res = await run_retro(src)
    assert_ok(res)
    assert stdout(res) == ["120"]


@pytest.mark.asyncio
async def test_break_only_leaves_the_loop():
    res = await run_retro("loop 5 { if $i == 2 then { break } print $i }\nprint done")
    assert_ok(res)
    assert stdout(res) == ["0", "1", "done"]


@pytest.mark.asyncio
async def test_break_and_continue_outside_a_loop_do_nothing():
    res = await run_retro("if true then { break }\nprint after")
    assert_ok(res)
    assert stdout(res) == ["after"]
    res = await run_retro("continue\nprint after")
    assert_ok(res)
    assert stdout(res) == ["after"]


@pytest.mark.asyncio
async def test_break_inside_function_does_not_stop_callers_loop():
    res = await run_retro("func leave {\n  break\n}\nloop 3 {\n  call leave\n  print $i\n}")
    assert_ok(res)
    assert stdout(res) == ["0", "1", "2"]


@pytest.mark.asyncio
async def test_continue_skips_rest_of_iteration():
    res = await run_retro("loop 4 { if $i == 1 then { continue } print $i }")
    assert_ok(res)
    assert stdout(res) == ["0", "2", "3"]


@pytest.mark.asyncio
async def test_while_and_foreach():
    src = """
        set $n = 0
        while $n < 3 { set $n = $n + 1 }
        foreach $name in ["a", "b"] { print "$i:$name" }
        foreach $x in "not a list" { print never }
        print $n
    """
    res = await run_retro(src)
    assert_ok(res)
    assert stdout(res) == ["0:a", "1:b", "3"]


@pytest.mark.asyncio
async def test_if_else_chain():
    src = """
        set $x = 7
        if $x > 10 then { print big } else if $x > 5 then { print medium } else { print small }
    """
    res = await run_retro(src)
    assert stdout(res) == ["medium"]


@pytest.mark.asyncio
async def test_return_at_top_level_stops_script():
    res = await run_retro("print a\nreturn 42\nprint b")
    assert_ok(res, 42)
    assert stdout(res) == ["a"]


@pytest.mark.asyncio
async def test_try_catch_binds_message():
    res = await run_retro('try { throw "boom" } catch $e { print "caught $e" }\nprint after')
    assert_ok(res)
    assert stdout(res) == ["caught boom", "after"]


@pytest.mark.asyncio
async def test_try_catches_unknown_function_and_default_variable():
    res = await run_retro("try {\n  call nope\n}\ncatch {\n  print $error\n}")
    assert_ok(res)
    assert stdout(res) == ["Unknown function: nope"]


@pytest.mark.asyncio
async def test_error_in_catch_propagates():
    res = await run_retro('try { throw one } catch { throw two }')
    assert_error(res, "two")


@pytest.mark.asyncio
async def test_call_stack_restored_after_caught_error():
    src = """
        func inner { throw deep }
        func outer { call inner }
        try { call outer } catch { print $error }
        call missing
    """
    res = await run_retro(src)
    assert_error(res, "Unknown function: missing")
    assert res.stack == []
    assert res.line == 5


@pytest.mark.asyncio
async def test_uncaught_error_reports_line_and_stack():
    src = "func inner { throw deep }\nfunc outer { call inner }\ncall outer"
    res = await run_retro(src)
    assert_error(res, "deep")
    assert res.line == 1
    assert res.stack == ["outer", "inner"]
    assert "RetroScript stacktrace: (outer) (inner)" in res.format_error()


@pytest.mark.asyncio
async def test_assert():
    assert_ok(await run_retro("set $x = 5\nassert $x == 5"))
    res = await run_retro('set $x = 4\nassert $x == 5, "x should be 5"')
    assert_error(res, "x should be 5")
    assert_error(await run_retro("assert false"), "Assertion failed")


@pytest.mark.asyncio
async def test_timeout_is_fatal_and_prompt():
    engine = ScriptEngine()
    engine.set_timeout(50)
    started = time.monotonic()
    res = await engine.run("try { while true { wait 10 } } catch { print caught }")
    assert_error(res, "timeout")
    assert time.monotonic() - started < 2
    assert stdout(res) == []


@pytest.mark.asyncio
async def test_iteration_ceiling():
    res = await run_retro("while true { }", config=EngineConfig(timeout_ms=0, max_loop_iterations=500))
    assert_error(res, "iteration limit")


@pytest.mark.asyncio
async def test_wait_respects_timeout():
    engine = ScriptEngine(config=EngineConfig(timeout_ms=100))
    started = time.monotonic()
    res = await engine.run("wait 5000")
    assert_error(res, "timeout")
    assert time.monotonic() - started < 1


@pytest.mark.asyncio
async def test_parse_error_prevents_execution():
    engine = ScriptEngine()
    res = await engine.run("set $ran = 1\nif $x { print never }")
    assert_error(res, "then")
    assert res.line == 2
    assert engine.get_variable('ran') is None


@pytest.mark.asyncio
async def test_unknown_command_is_runtime_error():
    assert_error(await run_retro("frobnicate now"), "Unknown command: frobnicate")


@pytest.mark.asyncio
async def test_builtin_globals_and_context():
    engine = ScriptEngine()
    res = await engine.run("if $flag == TRUE then { print $who }", {'flag': True, 'who': 'Ada'})
    assert_ok(res)
    assert stdout(res) == ["Ada"]


@pytest.mark.asyncio
async def test_on_handler_receives_payload():
    engine = ScriptEngine()
    res = await engine.run("on ping { set $got = $event.value }")
    assert_ok(res, {'subscribed': 'ping'})
    engine.events.emit('ping', {'value': 42})
    await engine.events.drain()
    assert engine.get_variable('got') == 42
    assert engine.cleanup() == 1
    engine.events.emit('ping', {'value': 7})
    await engine.events.drain()
    assert engine.get_variable('got') == 42


@pytest.mark.asyncio
async def test_emit_reaches_listeners():
    engine = ScriptEngine()
    seen = []
    engine.events.on('user:*', lambda e: seen.append((e.name, e.payload)))
    res = await engine.run('set $n = 3\nemit user:login name="Ada" count=$n')
    assert_ok(res)
    assert seen == [('user:login', {'name': 'Ada', 'count': 3})]


@pytest.mark.asyncio
async def test_stop_unwinds_running_script():
    engine = ScriptEngine(config=EngineConfig(timeout_ms=0))
    task = asyncio.create_task(engine.run("while true { wait 10 }"))
    await asyncio.sleep(0.05)
    engine.stop()
    res = await asyncio.wait_for(task, 1)
    assert_ok(res)


@pytest.mark.asyncio
async def test_desktop_statements_against_headless_host():
    host = HeadlessHost()
    engine = ScriptEngine(host=host)
    src = """
        launch notepad
        launch calculator
        minimize notepad-1
        close
        alert "Hello"
        notify "Saved"
        play ding
    """
    res = await engine.run(src)
    assert_ok(res)
    await engine.events.drain()
    windows = host.get_state('windows')
    assert [w['id'] for w in windows] == ['notepad-1']
    assert windows[0]['minimized'] is True
    assert host.alerts == ['Hello']
    assert host.notifications == [{'message': 'Saved'}]
    assert host.sounds == [{'type': 'ding'}]


@pytest.mark.asyncio
async def test_failed_command_is_a_result_not_an_error():
    engine = ScriptEngine(host=HeadlessHost())
    res = await engine.run("launch doom")
    assert_ok(res)
    assert res.value == {'success': False, 'error': 'Failed to launch app: doom'}


@pytest.mark.asyncio
async def test_confirm_and_prompt_round_trips():
    host = HeadlessHost(confirm_answer=False, prompt_answer="Ada")
    engine = ScriptEngine(host=host)
    res = await engine.run('confirm "Sure?" into $ok\nprompt "Name?" into $name\nprint "$ok $name"')
    assert_ok(res)
    assert stdout(res) == ["false Ada"]


@pytest.mark.asyncio
async def test_confirm_times_out_to_false():
    engine = ScriptEngine(config=EngineConfig(confirm_timeout_ms=20))
    res = await engine.run('confirm "Anyone there?" into $ok')
    assert_ok(res, False)
    assert engine.get_variable('ok') is False


@pytest.mark.asyncio
async def test_file_statements():
    host = HeadlessHost()
    engine = ScriptEngine(host=host)
    src = """
        mkdir "C:/Notes"
        write "line one" to "C:/Notes/a.txt"
        read "C:/Notes/a.txt" into $text
        read "C:/Notes/missing.txt" into $missing
        delete "C:/Notes/a.txt"
        print "$text|$missing"
    """
    res = await engine.run(src)
    assert_ok(res)
    assert stdout(res) == ["line one|null"]
    assert host.files.get_node("C:/Notes") == {'type': 'directory', 'children': {}}


@pytest.mark.asyncio
async def test_file_statement_without_host_is_error():
    assert_error(await run_retro('write x to "C:/a.txt"'), "No file system available")
