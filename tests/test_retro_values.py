import pytest

from retroscript.retro_datatypes import (
    VariableRef, Expression, FunctionCall, ObjectLiteral, Comparison, Logical, Negation, ParseError,
)
from retroscript.retro_values import (
    parse_literal, parse_value, parse_condition, split_top_level,
    to_number, truthy, loose_equals, compare, apply_binary, interpolate, ValueResolver,
)


def make_resolver(variables, functions=None):
    functions = functions or {}

    async def call(name, args):
        return functions[name](*args)

    return ValueResolver(lambda: variables, call)


def test_literal_order():
    assert parse_literal('"42"') == '42'
    assert parse_literal('$user.name') == VariableRef('user', ('name',))
    assert parse_literal('$items[0]') == VariableRef('items', (0,))
    assert parse_literal('42') == 42
    assert parse_literal('-2.5') == -2.5
    assert parse_literal('TRUE') is True
    assert parse_literal('null') is None
    assert parse_literal('{name: "Ada", age: 36}') == ObjectLiteral((('name', 'Ada'), ('age', 36)))
    assert parse_literal('max(1, 2)') == FunctionCall('max', (1, 2))
    assert parse_literal('(1 + 2)') == Expression('+', 1, 2)
    assert parse_literal('notepad') == 'notepad'


def test_split_top_level_nesting():
    assert split_top_level('1, [2, 3], {a: 1, b: 2}, "x,y"') == ['1', '[2, 3]', '{a: 1, b: 2}', '"x,y"']


def test_arithmetic_never_fails():
    assert apply_binary('/', 5, 0) == 0
    assert apply_binary('%', 5, 0) == 0
    assert apply_binary('-', 'abc', 2) == -2
    assert apply_binary('/', 6, 3) == 2 and isinstance(apply_binary('/', 6, 3), int)
    assert apply_binary('/', 7, 2) == 3.5


def test_plus_concatenates_when_either_side_is_text():
    assert apply_binary('+', 'a', 1) == 'a1'
    assert apply_binary('+', 1.0, 'x') == '1x'
    assert apply_binary('+', '2', 3) == '23'
    assert apply_binary('+', True, None) == 1


def test_conversions():
    assert to_number('12') == 12
    assert to_number('abc') == 0
    assert to_number(None) == 0
    assert truthy([]) is True
    assert truthy({}) is True
    assert truthy('') is False
    assert truthy(0) is False
    assert truthy('0') is True


def test_loose_equality_and_ordering():
    assert loose_equals(5, '5')
    assert loose_equals(1, True)
    assert not loose_equals('a', 0)
    assert not loose_equals(None, 0)
    assert compare('<', 'apple', 'banana')
    assert compare('>=', '10', 9)


def test_condition_precedence():
    cond = parse_condition('$a == 1 || $b > 2 && !$c')
    assert cond == Logical(
        '||',
        Comparison('==', VariableRef('a'), 1),
        Logical('&&', Comparison('>', VariableRef('b'), 2), Negation(VariableRef('c'))),
    )


def test_incomplete_comparison_is_parse_error():
    with pytest.raises(ParseError):
        parse_condition('$a ==')
    with pytest.raises(ParseError):
        parse_condition('   ')


def test_interpolation_leaves_unbound_names():
    assert interpolate('Hi $name, $missing', {'name': 'Ada'}) == 'Hi Ada, $missing'
    assert interpolate('n=$n', {'n': 2.0}) == 'n=2'


@pytest.mark.asyncio
async def test_resolver_walks_paths_and_literals():
    variables = {'user': {'name': 'Ada', 'tags': ['x', 'y']}, 'i': 1}
    r = make_resolver(variables, {'upper': lambda s: s.upper()})
    assert await r.resolve(parse_value('$user.name')) == 'Ada'
    assert await r.resolve(parse_value('$user.tags[1]')) == 'y'
    assert await r.resolve(parse_value('$user.tags.length')) == 2
    assert await r.resolve(parse_value('$user.missing')) is None
    assert await r.resolve(parse_value('upper($user.name)')) == 'ADA'
    assert await r.resolve(parse_value('[$i, $i + 1, "hi $i"]')) == [1, 2, 'hi 1']
    assert await r.resolve(parse_value('{a: $i, b: [1, 2]}')) == {'a': 1, 'b': [1, 2]}


@pytest.mark.asyncio
async def test_resolver_conditions_short_circuit():
    calls = []

    def boom():
        calls.append('boom')
        return True

    r = make_resolver({'x': 0}, {'boom': boom})
    assert await r.evaluate_condition(parse_condition('$x == 1 && boom()')) is False
    assert await r.evaluate_condition(parse_condition('$x == 0 || boom()')) is True
    assert calls == []
