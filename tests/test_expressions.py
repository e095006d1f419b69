"""Tests for expressions module."""

import copy
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from expressions import (
    UNKNOWN,
    changed_keys,
    contains_unknown,
    find_references,
    get_path,
    resolve,
    rewrite,
    split_reference,
    to_jsonable,
    to_text,
    values_equal,
)


class TestFindReferences:
    """Tests for find_references()."""

    def test_nested_structures(self):
        value = {
            'a': '${var.env}',
            'b': ['x-${null_resource.n.id}', {'c': '${module.data.endpoint}'}],
            'd': 42,
        }
        assert find_references(value) == ['var.env', 'null_resource.n.id', 'module.data.endpoint']

    def test_multiple_in_one_string(self):
        assert find_references('${a.b.c}-${d.e.f}') == ['a.b.c', 'd.e.f']

    def test_whitespace_inside_braces(self):
        assert find_references('${ var.env }') == ['var.env']

    def test_plain_values(self):
        assert find_references('no refs here') == []
        assert find_references(None) == []


class TestRewrite:
    """Tests for rewrite()."""

    def test_whole_token_returns_raw_replacement(self):
        assert rewrite('${var.ports}', lambda body: [80, 443]) == [80, 443]

    def test_embedded_token_rendered_as_text(self):
        assert rewrite('port-${var.port}', lambda body: 8080) == 'port-8080'
        assert rewrite('on=${var.on}', lambda body: True) == 'on=true'

    def test_does_not_mutate_input(self):
        value = {'a': ['${var.x}']}
        original = copy.deepcopy(value)
        rewrite(value, lambda body: 'y')
        assert value == original


class TestResolve:
    """Tests for resolve()."""

    def test_whole_unknown(self):
        assert resolve('${a.b.id}', lambda body: UNKNOWN) is UNKNOWN

    def test_embedded_unknown_makes_string_unknown(self):
        assert resolve('db-${a.b.id}', lambda body: UNKNOWN) is UNKNOWN

    def test_known_values(self):
        values = {'a.b.id': 'abc', 'a.b.port': 5432}
        result = resolve({'url': 'pg://${a.b.id}:${a.b.port}', 'port': '${a.b.port}'}, values.get)
        assert result == {'url': 'pg://abc:5432', 'port': 5432}

    def test_contains_unknown(self):
        assert contains_unknown({'a': [1, UNKNOWN]})
        assert not contains_unknown({'a': [1, 2]})


class TestSplitReference:
    """Tests for split_reference()."""

    def test_root_resource(self):
        assert split_reference('null_resource.net.id') == ('null_resource.net', ['id'])

    def test_module_resource(self):
        assert split_reference('module.data.aws_db.main.endpoint') == \
            ('module.data.aws_db.main', ['endpoint'])

    def test_nested_module(self):
        assert split_reference('module.a.module.b.t.n') == ('module.a.module.b.t.n', [])

    def test_deep_path(self):
        assert split_reference('t.n.tags.0') == ('t.n', ['tags', '0'])

    def test_not_a_resource(self):
        with pytest.raises(ValueError):
            split_reference('module.data')


class TestGetPath:
    """Tests for get_path()."""

    def test_dict_and_list(self):
        data = {'tags': ['a', 'b'], 'meta': {'owner': 'ops'}}
        assert get_path(data, ['tags', '1']) == 'b'
        assert get_path(data, ['meta', 'owner']) == 'ops'
        assert get_path(data, []) is data

    def test_missing(self):
        with pytest.raises(KeyError):
            get_path({'a': 1}, ['b'])
        with pytest.raises(KeyError):
            get_path({'a': [1]}, ['a', '5'])
        with pytest.raises(KeyError):
            get_path({'a': 1}, ['a', 'b'])


class TestEquality:
    """Tests for values_equal() and changed_keys()."""

    def test_bool_is_not_int(self):
        assert not values_equal(True, 1)
        assert values_equal(True, True)

    def test_int_float(self):
        assert values_equal(1, 1.0)

    def test_unknown_never_equal(self):
        assert not values_equal(UNKNOWN, UNKNOWN)

    def test_deep(self):
        assert values_equal({'a': [1, {'b': 2}]}, {'a': [1, {'b': 2}]})
        assert not values_equal({'a': [1, 2]}, {'a': [2, 1]})
        assert not values_equal({'a': 1}, {'a': 1, 'b': 2})
        assert not values_equal([1], {'0': 1})

    def test_changed_keys(self):
        desired = {'a': 1, 'b': 2, 'c': 3}
        prior = {'a': 1, 'b': 5, 'd': 4}
        assert changed_keys(desired, prior) == ['b', 'c', 'd']
        assert changed_keys(desired, prior, frozenset({'b', 'd'})) == ['c']


class TestRendering:
    """Tests for to_text() and to_jsonable()."""

    def test_to_text(self):
        assert to_text(None) == ''
        assert to_text(False) == 'false'
        assert to_text({'b': 1, 'a': 2}) == '{"a": 2, "b": 1}'

    def test_to_jsonable(self):
        assert to_jsonable({'a': [UNKNOWN]}) == {'a': ['(known after apply)']}

    def test_unknown_survives_deepcopy(self):
        assert copy.deepcopy({'a': UNKNOWN})['a'] is UNKNOWN
