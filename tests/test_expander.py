"""Tests for matrix expansion and include handling."""

from __future__ import annotations

import pytest

from matrixci.errors import ConfigError
from matrixci.expander import Matrix, expand_matrix, expand_rows, matrix, policy_predicate


class TestCrossProduct:
    """Base cross-product of the axes."""

    def test_size_is_product_of_axis_sizes(self):
        axes = {"a": ["1", "2", "3"], "b": ["x", "y"], "c": ["p", "q"]}
        assert len(expand_matrix(axes)) == 3 * 2 * 2

    def test_order_follows_axis_and_value_order(self):
        instances = expand_matrix({"toolchain": ["stable", "nightly"], "target": ["A", "B"]})
        assert [dict(i.values) for i in instances] == [
            {"toolchain": "stable", "target": "A"},
            {"toolchain": "stable", "target": "B"},
            {"toolchain": "nightly", "target": "A"},
            {"toolchain": "nightly", "target": "B"},
        ]
        assert [i.index for i in instances] == [0, 1, 2, 3]

    def test_expansion_is_deterministic(self):
        axes = {"os": ["l", "m"], "py": ["3.11", "3.12"]}
        include = [{"os": "w", "py": "3.12"}]
        first = [dict(i.values) for i in expand_matrix(axes, include)]
        second = [dict(i.values) for i in expand_matrix(axes, include)]
        assert first == second

    def test_empty_axis_is_config_error(self):
        with pytest.raises(ConfigError):
            expand_matrix({"toolchain": ["stable"], "target": []}, job="build")

    def test_string_axis_is_config_error(self):
        with pytest.raises(ConfigError):
            expand_matrix({"toolchain": "stable"})

    def test_no_matrix_runs_once(self):
        instances = expand_matrix({}, job="lint")
        assert len(instances) == 1
        assert dict(instances[0].values) == {}
        assert instances[0].name == "lint"

    def test_scalars_are_coerced_to_strings(self):
        instances = expand_matrix({"py": [3.12], "debug": [True]})
        assert dict(instances[0].values) == {"py": "3.12", "debug": "true"}

    def test_instance_values_are_read_only(self):
        inst = expand_matrix({"a": ["1"]})[0]
        with pytest.raises(TypeError):
            inst.values["a"] = "2"


class TestInclude:
    """Include entries either patch matching base instances or add new ones."""

    def test_full_match_merges_without_adding(self):
        axes = {"toolchain": ["stable", "nightly"], "target": ["A", "B"]}
        instances = expand_matrix(axes, [{"toolchain": "stable", "target": "A", "experimental": "no"}])
        assert len(instances) == 4
        assert instances[0].values["experimental"] == "no"
        assert instances[1].values["experimental"] is None

    def test_no_match_appends_exactly_one(self):
        axes = {"toolchain": ["stable", "beta", "nightly"], "target": ["A", "B"], "os": ["ubuntu-latest"]}
        base = len(expand_matrix(axes))
        instances = expand_matrix(axes, [{"toolchain": "stable", "target": "x86_64-apple-darwin", "os": "macos-latest"}])
        assert len(instances) == base + 1
        assert dict(instances[-1].values) == {
            "toolchain": "stable",
            "target": "x86_64-apple-darwin",
            "os": "macos-latest",
        }

    def test_new_axis_from_include_with_nulls(self):
        rows = expand_rows({"target": ["A", "B"], "os": ["L"]}, [{"target": "C", "os": "M", "toolchain": "stable"}])
        assert rows == [
            {"target": "A", "os": "L", "toolchain": None},
            {"target": "B", "os": "L", "toolchain": None},
            {"target": "C", "os": "M", "toolchain": "stable"},
        ]

    def test_partial_entry_leaves_unmentioned_axes_null(self):
        rows = expand_rows({"target": ["A"], "os": ["L"]}, [{"target": "Z"}])
        assert rows[-1] == {"target": "Z", "os": None}

    def test_partial_match_patches_every_matching_instance(self):
        rows = expand_rows({"os": ["L", "M"], "py": ["1", "2"]}, [{"os": "L", "flag": "x"}])
        assert [r["flag"] for r in rows] == ["x", "x", None, None]

    def test_entry_without_axes_patches_all(self):
        rows = expand_rows({"os": ["L", "M"]}, [{"flag": "x"}])
        assert [r["flag"] for r in rows] == ["x", "x"]

    def test_later_include_wins_on_conflict(self):
        rows = expand_rows(
            {"os": ["L"], "py": ["1", "2"]},
            [{"os": "L", "flag": "first"}, {"py": "2", "flag": "second"}],
        )
        assert [r["flag"] for r in rows] == ["first", "second"]

    def test_include_only_matrix(self):
        rows = expand_rows({}, [{"os": "L"}, {"os": "M"}])
        assert rows == [{"os": "L"}, {"os": "M"}]

    def test_appended_instances_are_patched_by_later_entries(self):
        instances = expand_matrix({"os": ["L"]}, [{"os": "M"}, {"os": "M", "flag": "x"}])
        assert [dict(i.values) for i in instances] == [
            {"os": "L", "flag": None},
            {"os": "M", "flag": "x"},
        ]

    def test_later_entry_overrides_value_added_by_include(self):
        rows = expand_rows(
            {"os": ["L"]},
            [{"os": "M", "flag": "first"}, {"os": "M", "flag": "second"}, {"flag": "all"}],
        )
        assert rows == [{"os": "L", "flag": "all"}, {"os": "M", "flag": "all"}]

    def test_partially_specified_appended_instance_matches_on_its_axes(self):
        rows = expand_rows({"os": ["L"], "py": ["1"]}, [{"os": "M"}, {"os": "M", "flag": "x"}])
        assert rows == [
            {"os": "L", "py": "1", "flag": None},
            {"os": "M", "py": None, "flag": "x"},
        ]

    def test_empty_include_entry_is_config_error(self):
        with pytest.raises(ConfigError):
            expand_rows({"os": ["L"]}, [{}])


class TestContinueOnError:
    """continue-on-error resolution per instance."""

    def test_nightly_instances_are_tolerant(self):
        instances = expand_matrix(
            {"toolchain": ["stable", "nightly"], "target": ["A", "B"]},
            continue_on_error="toolchain == 'nightly'",
        )
        assert [i.continue_on_error for i in instances] == [False, False, True, True]

    def test_wrapped_expression_with_matrix_prefix(self):
        instances = expand_matrix(
            {"toolchain": ["stable", "nightly"]},
            continue_on_error="${{ matrix.toolchain == 'nightly' }}",
        )
        assert [i.continue_on_error for i in instances] == [False, True]

    def test_callable_predicate(self):
        instances = expand_matrix({"py": ["3.11", "3.13"]}, continue_on_error=lambda v: v["py"] == "3.13")
        assert [i.continue_on_error for i in instances] == [False, True]

    def test_bool_policy(self):
        assert all(i.continue_on_error for i in expand_matrix({"a": ["1", "2"]}, continue_on_error=True))

    def test_predicate_is_pure(self):
        pred = policy_predicate("toolchain == 'nightly'")
        values = {"toolchain": "nightly"}
        assert [pred(values) for _ in range(5)] == [True] * 5

    def test_undefined_variable_in_policy_is_config_error(self):
        with pytest.raises(ConfigError):
            expand_matrix({"a": ["1"]}, continue_on_error="toolchain == 'nightly'")

    def test_invalid_policy_type(self):
        with pytest.raises(ConfigError):
            policy_predicate(42)


class TestMatrixBuilder:
    def test_builder_matches_functional_form(self):
        m = matrix(toolchain=["stable"], target=["A"]).include(toolchain="nightly", target="B")
        assert isinstance(m, Matrix)
        assert len(m) == 2
        names = [i.name for i in m.expand(job="build")]
        assert names == ["build (stable, A)", "build (nightly, B)"]

    def test_axis_method(self):
        m = Matrix().axis("os", "L", "M")
        assert len(m) == 2
