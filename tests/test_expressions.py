"""
test_expressions.py - Tests for the mapping expression language.
"""

import pytest

from tablesync.errors import ValidationError
from tablesync.mapping.expressions import compile_expression, evaluate, is_truthy, matches_filter

ROW = {"Name": "  Ada Lovelace ", "Email": "ADA@Example.com", "Age": 36, "Score": 9.5, "Nick": None, "Active": 1}


class TestFunctions:
    """Tests for built-in functions."""

    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("upper(Email)", "ADA@EXAMPLE.COM"),
            ("lower(Email)", "ada@example.com"),
            ("trim(Name)", "Ada Lovelace"),
            ("length(trim(Name))", 12),
            ("concat(trim(Name), ' <', lower(Email), '>')", "Ada Lovelace <ada@example.com>"),
            ("coalesce(Nick, '', 'anon')", "anon"),
            ("substring('abcdef', 2, 3)", "bcd"),
            ("substring('abcdef', 4)", "def"),
            ("replace(Email, 'Example', 'test')", "ADA@test.com"),
            ("left('abcdef', 2)", "ab"),
            ("right('abcdef', 2)", "ef"),
            ("upper(Nick)", None),
        ],
    )
    def test_function(self, expression, expected):
        assert evaluate(expression, ROW) == expected

    def test_pipes(self):
        assert evaluate("Name |> trim() |> upper()", ROW) == "ADA LOVELACE"
        assert evaluate("Email |> replace('ADA', 'bob') |> lower()", ROW) == "bob@example.com"

    def test_column_lookup_is_case_insensitive(self):
        assert evaluate("email", ROW) == "ADA@Example.com"
        assert evaluate("missing", ROW) is None

    def test_literals(self):
        assert evaluate("42", ROW) == 42
        assert evaluate("-1.5", ROW) == -1.5
        assert evaluate("'it\\'s'", ROW) == "it's"
        assert evaluate("true", ROW) is True
        assert evaluate("null", ROW) is None


class TestConditions:
    """Tests for comparisons used by filters and query subscriptions."""

    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("Age = 36", True),
            ("Age != 36", False),
            ("Age <> 30", True),
            ("Age > 30 and Score < 10", True),
            ("Age > 40 or Active", True),
            ("not Active", False),
            ("Nick = null", True),
            ("Nick > 3", False),
            ("lower(Email) = 'ada@example.com'", True),
            ("(Age >= 36) and not (Score <= 9)", True),
            ("Age = '36'", True),
        ],
    )
    def test_condition(self, expression, expected):
        assert matches_filter(expression, ROW) is expected

    def test_empty_filter_matches(self):
        assert matches_filter(None, ROW)
        assert matches_filter("", ROW)

    def test_truthiness(self):
        assert not is_truthy("false")
        assert not is_truthy("0")
        assert not is_truthy("")
        assert is_truthy("yes")
        assert not is_truthy(None)
        assert is_truthy(2)


class TestErrors:
    """Tests for rejected expressions."""

    @pytest.mark.parametrize("expression", ["", "upper(", "Age = ", "a b", "Age # 3", "concat('a',)"])
    def test_syntax_errors(self, expression):
        with pytest.raises(ValidationError):
            compile_expression(expression)

    def test_unknown_function(self):
        with pytest.raises(ValidationError):
            evaluate("explode(Name)", ROW)

    def test_bad_arguments(self):
        with pytest.raises(ValidationError):
            evaluate("upper(Name, Email)", ROW)
        with pytest.raises(ValidationError):
            evaluate("left(Name, 'many')", ROW)
