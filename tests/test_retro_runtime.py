import pytest

from retroscript import ScriptEngine, ExecutionResult, HeadlessHost, MemoryFileStore


async def run_value(src: str, engine: ScriptEngine | None = None):
    engine = engine or ScriptEngine()
    res = await engine.run(src)
    assert res.success, res.format_error()
    return res.value


# --- Builtins -------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ("set $v = upper(\"retro\")", "RETRO"),
    ("set $v = trim(\"  pad  \")", "pad"),
    ("set $v = length(\"hello\")", 5),
    ("set $v = length([1, 2, 3])", 3),
    ("set $v = substr(\"abcdef\", 2, 3)", "cde"),
    ("set $v = replace(\"a-b-c\", \"-\", \"+\")", "a+b-c"),
    ("set $v = replaceAll(\"a-b-c\", \"-\", \"+\")", "a+b+c"),
    ("set $v = split(\"a,b\", \",\")", ["a", "b"]),
    ("set $v = join([1, 2, 3], \"-\")", "1-2-3"),
    ("set $v = contains(\"desktop\", \"top\")", True),
    ("set $v = startsWith(\"notepad\", \"note\")", True),
    ("set $v = padStart(\"7\", 3, \"0\")", "007"),
    ("set $v = indexOf([1, 2, 3], 2)", 1),
    ("set $v = round(2.5)", 3),
    ("set $v = round(-2.5)", -2),
    ("set $v = max(3, 9, 4)", 9),
    ("set $v = min([3, 9, 4])", 3),
    ("set $v = abs(-4)", 4),
    ("set $v = first([\"x\", \"y\"])", "x"),
    ("set $v = last([])", None),
    ("set $v = push([1], 2)", [1, 2]),
    ("set $v = sort([3, 1, 2])", [1, 2, 3]),
    ("set $v = unique([1, 1, 2])", [1, 2]),
    ("set $v = range(3)", [0, 1, 2]),
    ("set $v = sum([1, 2, 3.5])", 6.5),
    ("set $v = avg([2, 4])", 3),
    ("set $v = keys({a: 1, b: 2})", ["a", "b"]),
    ("set $v = reverse(\"abc\")", "cba"),
    ("set $v = concat(\"a\", 1, true)", "a1true"),
    ("set $v = arrayConcat([1, 2], 3, [4])", [1, 2, 3, 4]),
    ("set $v = filter([1, 2, 1, 3], 1)", [1, 1]),
    ("set $v = reject([1, 2, 1, 3], 1)", [2, 3]),
    ("set $v = map([1, 2, 3], \"double\")", [2, 4, 6]),
    ("set $v = map([2, 3], \"square\")", [4, 9]),
    ("set $v = map([1, 0], \"boolean\")", [True, False]),
    ("set $v = map([1, 2], \"unknown\")", [1, 2]),
    ("set $v = find([\"a\", \"b\"], \"b\")", "b"),
    ("set $v = find([\"a\"], \"z\")", None),
    ("set $v = findIndex([5, 6, 7], 7)", 2),
    ("set $v = findIndex([5], 9)", -1),
    ("set $v = flatten([1, [2, [3]]])", [1, 2, [3]]),
    ("set $v = flatten([1, [2, [3]]], 2)", [1, 2, 3]),
    ("set $v = fill(3, 0)", [0, 0, 0]),
    ("set $v = shift([4, 5])", 4),
    ("set $v = unshift([3], 1, 2)", [1, 2, 3]),
    ("set $v = splice([1, 2, 3, 4], 1, 2)", [1, 4]),
    ("set $v = splice([1, 2, 3], -1, 1, 9, 8)", [1, 2, 9, 8]),
    ("set $v = splice([1, 2, 3], 1)", [1]),
    ("set $v = product([2, 3, 4])", 24),
    ("set $v = sortDesc([3, 1, 2])", [3, 2, 1]),
    ("set $v = lastIndexOf([1, 2, 1], 1)", 2),
    ("set $v = lastIndexOf(\"a-b-c\", \"-\")", 3),
    ("set $v = lastIndexOf(\"a-b-c\", \"-\", 2)", 1),
    ("set $v = charAt(\"retro\", 1)", "e"),
    ("set $v = charAt(\"retro\", 9)", ""),
    ("set $v = charCode(\"A\")", 65),
    ("set $v = fromCharCode(72, 105)", "Hi"),
    ("set $v = substring(\"desktop\", 4, 1)", "esk"),
    ("set $v = substring(\"desktop\", 4)", "top"),
    ("set $v = trimStart(\"  pad  \")", "pad  "),
    ("set $v = trimEnd(\"  pad  \")", "  pad"),
])
async def test_builtins(src, expected):
    assert await run_value(src) == expected


@pytest.mark.asyncio
async def test_random_stays_in_range():
    engine = ScriptEngine()
    for _ in range(20):
        value = await run_value("set $v = random(1, 3)", engine)
        assert 1 <= value <= 3


@pytest.mark.asyncio
async def test_get_env_and_now():
    env = await run_value("set $v = getEnv()")
    assert env['language'] == 'RetroScript'
    assert isinstance(await run_value("set $v = now()"), int)


@pytest.mark.asyncio
async def test_builtin_error_is_catchable():
    res = await ScriptEngine().run('try { set $v = substr() } catch { print $error }')
    assert res.success
    assert res.side_effects[0]['message'].startswith("substr:")


@pytest.mark.asyncio
async def test_query_and_exec_builtins():
    engine = ScriptEngine(host=HeadlessHost())
    value = await run_value("launch notepad\nset $v = query(\"windows\")", engine)
    assert [w['id'] for w in value] == ['notepad-1']
    result = await run_value("set $v = exec(\"nope\")", engine)
    assert result == {'success': False, 'error': 'Unknown command: nope'}
    assert [w['appId'] for w in await run_value("set $v = getWindows()", engine)] == ['notepad']


@pytest.mark.asyncio
async def test_system_builtins_use_the_host():
    host = HeadlessHost()
    engine = ScriptEngine(host=host)
    assert {'id': 'paint', 'name': 'Paint'} in await run_value("set $v = getApps()", engine)
    assert await run_value("set $v = setStorage(\"score\", 12)", engine) is True
    assert await run_value("set $v = getStorage(\"score\")", engine) == 12
    assert await run_value("set $v = copyToClipboard(\"hello\")", engine) is True
    assert host.clipboard == "hello"


@pytest.mark.asyncio
async def test_system_builtins_without_host():
    assert await run_value("set $v = getApps()") == []
    assert await run_value("set $v = getStorage(\"score\")") is None
    assert await run_value("set $v = setStorage(\"score\", 1)") is False
    assert await run_value("set $v = copyToClipboard(\"x\")") is False


# --- Embedding surface ----------------------------------------------

@pytest.mark.asyncio
async def test_define_function_sync_and_async():
    engine = ScriptEngine()
    engine.define_function('double', lambda x: x * 2)

    async def fetch(key):
        return {'key': key}

    engine.define_function('fetch', fetch)
    assert await run_value("set $v = double(21)", engine) == 42
    assert await run_value("set $v = fetch(\"k\")", engine) == {'key': 'k'}
    assert await run_value("call double 4", engine) == 8


@pytest.mark.asyncio
async def test_variables_persist_between_runs():
    engine = ScriptEngine()
    engine.set_variable('greeting', 'hi')
    await run_value("set $count = 1", engine)
    assert await run_value("set $v = \"$greeting $count\"", engine) == "hi 1"


@pytest.mark.asyncio
async def test_run_file_reads_from_host_files():
    files = MemoryFileStore()
    files.write_file("C:/Scripts/hello.retro", 'print "hello"\nreturn 7')
    engine = ScriptEngine(host=HeadlessHost(files=files))
    res = await engine.run_file("C:/Scripts/hello.retro")
    assert res.success and res.value == 7
    missing = await engine.run_file("C:/Scripts/none.retro")
    assert not missing.success
    assert "File not found" in missing.error


# --- Lifecycle events and error reports -----------------------------

@pytest.mark.asyncio
async def test_lifecycle_events():
    engine = ScriptEngine()
    seen = []
    engine.events.on('script:*', lambda e: seen.append((e.name, e.payload)))
    await engine.run("print hi")
    await engine.run("throw bad")
    names = [name for name, _ in seen]
    assert names == ['script:execute', 'script:output', 'script:complete', 'script:execute', 'script:error']
    assert seen[2][1]['result'] == 'hi'
    assert seen[0][1]['scriptId'] != seen[3][1]['scriptId']
    assert seen[4][1]['error'] == 'bad' and seen[4][1]['line'] == 1


@pytest.mark.asyncio
async def test_handler_errors_are_reported_as_script_errors():
    engine = ScriptEngine()
    errors = []
    engine.events.on('script:error', lambda e: errors.append(e.payload))
    await engine.run("on boom { throw kaboom }")
    engine.events.emit('boom')
    await engine.events.drain()
    assert errors == [{'scriptId': 'on:boom', 'error': 'kaboom', 'line': 1, 'stack': []}]
    assert any("kaboom" in e['message'] for e in engine.side_effects if e['topics'] == ['stderr'])


@pytest.mark.asyncio
async def test_format_error_shows_source_excerpt_and_stacktrace():
    src = "func check($v) {\n  assert $v > 0, \"must be positive\"\n}\n\ncall check -1"
    res = await ScriptEngine().run(src)
    assert not res.success
    report = res.format_error()
    assert report.startswith("RuntimeError: must be positive (line 2)")
    assert "> 2 |   assert $v > 0" in report
    assert "|   ^" in report
    assert report.rstrip().endswith("RetroScript stacktrace: (check)")
    assert res.side_effects[-1] == {'topics': ['stderr'], 'message': report}


@pytest.mark.asyncio
async def test_parse_error_report():
    res = await ScriptEngine().run("print ok\ntry { print x }")
    assert not res.success
    assert res.format_error().startswith("ParseError:")
    assert res.side_effects == [{'topics': ['stderr'], 'message': res.format_error()}]


def test_execution_result_helpers():
    ok = ExecutionResult(True, value=3)
    assert ok.format_error() == ""
    assert ok.to_dict() == {'success': True, 'result': 3}
    failed = ExecutionResult(False, error="boom", line=4, stack=['f'])
    assert failed.format_error() == "Error on line 4: boom"
    assert failed.to_dict() == {'success': False, 'error': 'boom', 'line': 4, 'stack': ['f']}


@pytest.mark.asyncio
async def test_side_effects_are_per_run():
    engine = ScriptEngine()
    first = await engine.run("print one")
    second = await engine.run("print two")
    assert [e['message'] for e in first.side_effects] == ['one']
    assert [e['message'] for e in second.side_effects] == ['two']
