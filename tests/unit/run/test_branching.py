"""Tests for shape resolution, slicing and aggregation."""

import pytest

from targetflow.exceptions import LengthMismatch, UnknownSymbol
from targetflow.run.branching import (
    GroupedValue,
    aggregate,
    assign_groups,
    make_slices,
    plan_branches,
    resolve_pattern_shape,
    slice_value,
    slices_of_value,
)
from targetflow.run.pattern import Cross, Head, Map, Sample, Tail


def indices(shape, name):
    return [dict(combo)[name] for combo in shape]


class TestResolvePatternShape:
    """Tests for the pure shape resolver."""

    def test_map(self):
        shape = resolve_pattern_shape(Map("a", "b"), {"a": 3, "b": 3})
        assert shape == [
            (("a", 0), ("b", 0)),
            (("a", 1), ("b", 1)),
            (("a", 2), ("b", 2)),
        ]

    def test_map_length_mismatch(self):
        with pytest.raises(LengthMismatch) as exc:
            resolve_pattern_shape(Map("a", "b"), {"a": 3, "b": 2}, name="p")
        assert exc.value.lengths == {"a": 3, "b": 2}
        assert exc.value.pattern == "p"

    def test_cross_rightmost_fastest(self):
        shape = resolve_pattern_shape(Cross("a", "b"), {"a": 2, "b": 3})
        assert len(shape) == 6
        assert [(dict(c)["a"], dict(c)["b"]) for c in shape] == [
            (0, 0), (0, 1), (0, 2), (1, 0), (1, 1), (1, 2),
        ]

    def test_cross_with_nested_map(self):
        """cross(w, map(x, y)) with w=2 and x=y=3 gives 6 branches."""
        shape = resolve_pattern_shape(Cross("w", Map("x", "y")), {"w": 2, "x": 3, "y": 3})
        assert len(shape) == 6
        for combo in shape:
            d = dict(combo)
            assert d["x"] == d["y"]
            assert [name for name, _ in combo] == ["w", "x", "y"]
        assert indices(shape, "w") == [0, 0, 0, 1, 1, 1]
        assert indices(shape, "x") == [0, 1, 2, 0, 1, 2]

    def test_nested_map_mismatch_detected(self):
        with pytest.raises(LengthMismatch):
            resolve_pattern_shape(Cross("w", Map("x", "y")), {"w": 2, "x": 3, "y": 1})

    def test_map_of_cross(self):
        """A nested cross acts as one composite argument of map."""
        shape = resolve_pattern_shape(Map(Cross("a", "b"), "c"), {"a": 2, "b": 2, "c": 4})
        assert len(shape) == 4
        assert indices(shape, "c") == [0, 1, 2, 3]

    def test_head(self):
        shape = resolve_pattern_shape(Head(Map("a"), 2), {"a": 5})
        assert indices(shape, "a") == [0, 1]

    def test_tail(self):
        shape = resolve_pattern_shape(Tail("a", 2), {"a": 5})
        assert indices(shape, "a") == [3, 4]

    def test_head_tail_larger_than_list(self):
        assert len(resolve_pattern_shape(Head("a", 10), {"a": 3})) == 3
        assert len(resolve_pattern_shape(Tail("a", 10), {"a": 3})) == 3

    def test_head_zero(self):
        assert resolve_pattern_shape(Head("a", 0), {"a": 3}) == []

    def test_sample_reproducible(self):
        p = Sample(Cross("a", "b"), 3, seed=11)
        first = resolve_pattern_shape(p, {"a": 4, "b": 4}, name="p")
        second = resolve_pattern_shape(p, {"a": 4, "b": 4}, name="p")
        assert first == second
        assert len(first) == 3
        assert len(set(first)) == 3

    def test_sample_keeps_original_order(self):
        full = resolve_pattern_shape(Map("a"), {"a": 20})
        picked = resolve_pattern_shape(Sample("a", 5, seed=1), {"a": 20}, name="p")
        positions = [full.index(c) for c in picked]
        assert positions == sorted(positions)

    def test_sample_seed_changes_selection(self):
        picks = {
            tuple(resolve_pattern_shape(Sample("a", 3, seed=s), {"a": 30}, name="p"))
            for s in range(5)
        }
        assert len(picks) > 1

    def test_sample_larger_than_list(self):
        assert len(resolve_pattern_shape(Sample("a", 10), {"a": 3})) == 3

    def test_group_keys_as_lengths(self):
        shape = resolve_pattern_shape(Map("g"), {"g": ["x", "y"]})
        assert indices(shape, "g") == [0, 1]

    def test_zero_length(self):
        assert resolve_pattern_shape(Cross("a", "b"), {"a": 0, "b": 3}) == []

    def test_missing_length(self):
        with pytest.raises(UnknownSymbol):
            resolve_pattern_shape(Map("a", "b"), {"a": 1})

    def test_plain_data_pattern(self):
        shape = resolve_pattern_shape({"cross": ["a", "b"]}, {"a": 2, "b": 2})
        assert len(shape) == 4


class TestSlicing:
    """Tests for slicing upstream values."""

    def test_vector_list(self):
        assert slice_value([1, 2, 3], "vector") == [1, 2, 3]

    def test_vector_table_rows(self):
        table = {"x": [1, 2], "y": ["a", "b"]}
        assert slice_value(table, "vector") == [{"x": [1], "y": ["a"]}, {"x": [2], "y": ["b"]}]

    def test_vector_scalar(self):
        assert slice_value(5, "vector") == [5]

    def test_list_mapping_values(self):
        assert slice_value({"a": 1, "b": 2}, "list") == [1, 2]

    def test_group_requires_grouped_value(self):
        with pytest.raises(TypeError):
            slice_value([1, 2], "group")

    def test_assign_groups_sorted_keys(self):
        records = [{"k": "b", "v": 1}, {"k": "a", "v": 2}, {"k": "b", "v": 3}]
        grouped = assign_groups(records, "k")
        assert grouped.keys == ["a", "b"]
        assert grouped.groups == [[{"k": "a", "v": 2}], [{"k": "b", "v": 1}, {"k": "b", "v": 3}]]
        assert grouped.positions == [[1], [0, 2]]
        assert slice_value(grouped, "group") == grouped.groups

    def test_assign_groups_table(self):
        table = {"k": [2, 1, 2], "v": [10, 20, 30]}
        grouped = assign_groups(table, "k")
        assert grouped.keys == [1, 2]
        assert grouped.groups == [{"k": [1], "v": [20]}, {"k": [2, 2], "v": [10, 30]}]

    def test_slice_identity_follows_content(self):
        """Inserting an element does not change the identity of the others."""
        before, _ = slices_of_value("a", [10, 20, 30], "vector")
        after, _ = slices_of_value("a", [10, 15, 20, 30], "vector")
        assert {s.id for s in before} <= {s.id for s in after}

    def test_equal_slices_get_distinct_ids(self):
        slices = make_slices("a", ["h", "h", "h"])
        assert len({s.id for s in slices}) == 3


class TestPlanBranches:
    """Tests for branch identities."""

    def test_unchanged_slices_keep_branch_names(self):
        a1, _ = slices_of_value("a", [1, 2, 3], "vector")
        a2, _ = slices_of_value("a", [1, 2, 99], "vector")
        first = plan_branches("p", Map("a"), {"a": a1})
        second = plan_branches("p", Map("a"), {"a": a2})

        assert [b.name for b in first[:2]] == [b.name for b in second[:2]]
        assert first[2].name != second[2].name

    def test_branch_names_carry_pattern_prefix(self):
        a, _ = slices_of_value("a", [1], "vector")
        (branch,) = plan_branches("fit", Map("a"), {"a": a})
        assert branch.name.startswith("fit_")
        assert len(branch.name) == len("fit_") + 8
        assert branch.index == 0
        assert branch.slice_for("a") is a[0]
        assert branch.slice_for("b") is None

    def test_creation_index_is_position(self):
        w, _ = slices_of_value("w", ["p", "q"], "vector")
        x, _ = slices_of_value("x", [1, 2, 3], "vector")
        branches = plan_branches("p", Cross("w", "x"), {"w": w, "x": x})
        assert [b.index for b in branches] == list(range(6))
        assert len({b.name for b in branches}) == 6


class TestAggregate:
    """Tests for reassembling branch values."""

    def test_list_iteration_no_flattening(self):
        assert aggregate([[1, 2], [3]], "list") == [[1, 2], [3]]

    def test_vector_scalars(self):
        assert aggregate([1, 2, 3], "vector") == [1, 2, 3]

    def test_vector_concatenates_lists(self):
        assert aggregate([[1, 2], [3], []], "vector") == [1, 2, 3]

    def test_vector_tables_round_trip(self):
        """Mapping over rows and aggregating reproduces the table."""
        table = {"x": [1, 2, 3], "y": ["a", "b", "c"]}
        rows = slice_value(table, "vector")
        assert aggregate(rows, "vector") == table

    def test_group_ascending_group_index(self):
        values = [["b1", "b2"], ["a1"], ["c1"]]
        assert aggregate(values, "group", [1, 0, 2]) == ["a1", "b1", "b2", "c1"]

    def test_mismatched_tables(self):
        with pytest.raises(ValueError):
            aggregate([{"x": [1]}, {"y": [2]}], "vector")

    def test_grouped_value_len(self):
        grouped = GroupedValue(keys=["a", "b"], groups=[[1], [2]])
        assert len(grouped) == 2
        assert grouped.group_index("b") == 1
