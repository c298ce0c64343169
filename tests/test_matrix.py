"""Tests for MatrixExpander — cartesian product, exclude, include, instance ids."""

from __future__ import annotations

import pytest

from conduit.engine.matrix import MatrixExpander
from conduit.engine.models import JobTemplate
from conduit.errors import ConfigError, InvalidMatrix


def make_template(matrix: dict | None = None, name: str = "test") -> JobTemplate:
    raw: dict = {"name": name, "steps": [{"run": "make test"}]}
    if matrix is not None:
        raw["matrix"] = matrix
    return JobTemplate.model_validate(raw)


@pytest.fixture
def expander():
    return MatrixExpander()


class TestExpansion:
    def test_no_matrix_is_single_instance(self, expander):
        assert expander.expand(make_template()) == [("test", {})]

    def test_cartesian_product_in_declaration_order(self, expander):
        result = expander.expand(make_template({"a": [1, 2], "b": ["x", "y"]}))
        assert [assignment for _, assignment in result] == [
            {"a": 1, "b": "x"},
            {"a": 1, "b": "y"},
            {"a": 2, "b": "x"},
            {"a": 2, "b": "y"},
        ]
        assert [iid for iid, _ in result] == ["test#1-x", "test#1-y", "test#2-x", "test#2-y"]

    def test_exclude_removes_matching_combination(self, expander):
        result = expander.expand(
            make_template({"a": [1, 2], "b": ["x", "y"], "exclude": [{"a": 1, "b": "y"}]})
        )
        assert len(result) == 3
        assert {"a": 1, "b": "y"} not in [a for _, a in result]

    def test_partial_exclude_removes_every_match(self, expander):
        result = expander.expand(make_template({"a": [1, 2], "b": ["x", "y"], "exclude": [{"a": 1}]}))
        assert [a for _, a in result] == [{"a": 2, "b": "x"}, {"a": 2, "b": "y"}]

    def test_include_appends_new_combination(self, expander):
        result = expander.expand(
            make_template(
                {
                    "a": [1, 2],
                    "b": ["x", "y"],
                    "exclude": [{"a": 1, "b": "y"}],
                    "include": [{"a": 3, "b": "z"}],
                }
            )
        )
        assert len(result) == 4
        assert result[-1] == ("test#3-z", {"a": 3, "b": "z"})

    def test_include_only_matrix(self, expander):
        result = expander.expand(make_template({"include": [{"os": "linux"}, {"os": "mac"}]}))
        assert [iid for iid, _ in result] == ["test#linux", "test#mac"]

    def test_duplicate_include_is_ignored(self, expander):
        result = expander.expand(make_template({"a": [1, 2], "include": [{"a": 1}]}))
        assert len(result) == 2

    def test_expansion_is_deterministic(self, expander):
        template = make_template({"node": [18, 20], "os": ["linux", "mac"]})
        assert expander.expand(template) == expander.expand(template)

    def test_bool_values_render_lowercase(self, expander):
        result = expander.expand(make_template({"debug": [True, False]}))
        assert [iid for iid, _ in result] == ["test#true", "test#false"]

    def test_bool_does_not_match_int_in_exclude(self, expander):
        result = expander.expand(make_template({"flag": [1, True], "exclude": [{"flag": True}]}))
        assert [a for _, a in result] == [{"flag": 1}]

    def test_colliding_labels_get_digest_suffix(self, expander):
        # "1" (str) and 1 (int) render to the same label
        result = expander.expand(make_template({"v": [1, "1"]}))
        ids = [iid for iid, _ in result]
        assert len(set(ids)) == 2
        assert all(iid.startswith("test#") and len(iid) == len("test#") + 8 for iid in ids)


class TestInvalidMatrix:
    def test_empty_axis(self, expander):
        with pytest.raises(InvalidMatrix, match="axis 'a' has no values"):
            expander.expand(make_template({"a": []}))

    def test_exclude_naming_undeclared_axis(self, expander):
        with pytest.raises(InvalidMatrix, match="undeclared"):
            expander.expand(make_template({"a": [1], "exclude": [{"zzz": 1}]}))

    def test_everything_excluded(self, expander):
        with pytest.raises(InvalidMatrix, match="no combinations"):
            expander.expand(make_template({"a": [1], "exclude": [{"a": 1}]}))

    def test_empty_include_entry(self, expander):
        with pytest.raises(InvalidMatrix):
            expander.expand(make_template({"a": [1], "include": [{}]}))

    def test_invalid_matrix_is_config_error(self, expander):
        with pytest.raises(ConfigError):
            expander.expand(make_template({"a": []}))
