"""Tests for DAG builder and topological sort."""

import pytest

from targetflow.exceptions import CyclicDependency, InvalidTarget, UnknownSymbol
from targetflow.run.dag import DAG
from targetflow.run.pattern import Cross, Map
from targetflow.run.target import Registry, Target


def noop(**kwargs):
    return None


def t(name, *deps, **kwargs):
    return Target(name, noop, deps=list(deps), **kwargs)


def test_simple_dag():
    """Test building DAG from simple target dependencies."""
    dag = DAG([t("a"), t("b", "a"), t("c", "b")])

    assert dag.get_dependencies("a") == set()
    assert dag.get_dependencies("b") == {"a"}
    assert dag.get_dependencies("c") == {"b"}

    assert dag.get_dependents("a") == {"b"}
    assert dag.get_dependents("b") == {"c"}
    assert dag.get_dependents("c") == set()


def test_pattern_names_are_dependencies():
    """Names inside a pattern are structural dependencies."""
    dag = DAG([t("w"), t("x"), t("y"), t("p", pattern=Cross("w", Map("x", "y")))])
    assert dag.get_dependencies("p") == {"w", "x", "y"}


def test_topological_sort_linear():
    dag = DAG([t("a"), t("b", "a"), t("c", "b")])
    assert dag.topological_sort() == [["a"], ["b"], ["c"]]


def test_topological_sort_diamond():
    """Test diamond: a -> b,c -> d."""
    dag = DAG([t("a"), t("b", "a"), t("c", "a"), t("d", "b", "c")])
    levels = dag.topological_sort()

    assert levels == [["a"], ["b", "c"], ["d"]]


def test_topological_order_ties_follow_registration():
    """Independent targets keep registration order, run after run."""
    targets = [t("z"), t("m"), t("a"), t("after_z", "z")]
    assert DAG(targets).topological_order() == ["z", "m", "a", "after_z"]

    reordered = [t("a"), t("m"), t("z"), t("after_z", "z")]
    assert DAG(reordered).topological_order() == ["a", "m", "z", "after_z"]


def test_topological_order_respects_edges_over_registration():
    dag = DAG([t("b", "a"), t("a")])
    assert dag.topological_order() == ["a", "b"]


def test_cycle_detection():
    dag = DAG([t("a", "b"), t("b", "a")])

    cycle = dag.check_cycles()
    assert cycle is not None
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b"}

    with pytest.raises(CyclicDependency) as exc:
        dag.validate()
    assert "a -> b -> a" in str(exc.value) or "b -> a -> b" in str(exc.value)


def test_longer_cycle_is_named_in_full():
    dag = DAG([t("a", "c"), t("b", "a"), t("c", "b"), t("d")])
    with pytest.raises(CyclicDependency) as exc:
        dag.topological_order()
    assert len(exc.value.cycle) == 4
    assert set(exc.value.cycle) == {"a", "b", "c"}


def test_unknown_dependency():
    dag = DAG([t("a", "ghost"), t("b", pattern=Map("phantom"))])
    with pytest.raises(UnknownSymbol) as exc:
        dag.validate()

    assert exc.value.names == ["ghost", "phantom"]
    assert exc.value.missing["ghost"] == ["a"]
    assert exc.value.missing["phantom"] == ["b"]


def test_no_cycles_in_valid_dag():
    dag = DAG([t("a"), t("b", "a"), t("c", "a")])
    assert dag.check_cycles() is None
    dag.validate()


def test_ancestors_and_descendants():
    dag = DAG([t("a"), t("b", "a"), t("c", "b"), t("d")])

    assert dag.ancestors("c") == {"a", "b"}
    assert dag.descendants("a") == {"b", "c"}
    assert dag.descendants("d") == set()


def test_downstream_weights():
    dag = DAG([t("a"), t("b", "a"), t("c", "b"), t("d", "a")])
    weights = dag.downstream_weights()

    assert weights == {"a": 3, "b": 1, "c": 0, "d": 0}


def test_filter_to_targets():
    """Filtering keeps the targets and their upstream closure."""
    dag = DAG([t("a"), t("b", "a"), t("c", "b"), t("unrelated")])
    filtered = dag.filter_to_targets(["b"])

    assert set(filtered.targets) == {"a", "b"}
    assert filtered.topological_order() == ["a", "b"]


def test_filter_to_unknown_target():
    dag = DAG([t("a")])
    with pytest.raises(UnknownSymbol) as exc:
        dag.filter_to_targets(["nope"])
    assert exc.value.names == ["nope"]


class TestRegistry:
    """Tests for target validation in the registry."""

    def test_duplicate_names(self):
        with pytest.raises(InvalidTarget, match="duplicate"):
            Registry([t("a"), t("a")])

    def test_self_dependency(self):
        with pytest.raises(InvalidTarget, match="itself"):
            Registry([t("a", "a")])

    def test_bad_choice(self):
        with pytest.raises(InvalidTarget, match="iteration"):
            Registry([t("a", iteration="matrix")])

    def test_bad_name(self):
        with pytest.raises(InvalidTarget):
            Registry([t("1abc")])

    def test_repeated_pattern_name(self):
        with pytest.raises(InvalidTarget, match="more than once"):
            Registry([t("x"), t("p", pattern=Cross("x", "x"))])

    def test_outs_need_shell_file_target(self):
        with pytest.raises(InvalidTarget, match="outs"):
            Registry([t("a", outs=["a.txt"])])
        Registry([Target("a", "touch a.txt", format="file", outs=["a.txt"])])

    def test_timeout_must_be_positive(self):
        with pytest.raises(InvalidTarget, match="timeout"):
            Registry([t("a", resources={"timeout": 0})])

    def test_order_and_subset(self):
        registry = Registry([t("c"), t("a"), t("b")])
        assert registry.names() == ["c", "a", "b"]
        assert registry.index("a") == 1
        assert registry.subset(["b", "c"]).names() == ["c", "b"]

    def test_kind(self):
        assert t("a").kind == "stem"
        assert t("p", pattern=Map("a")).kind == "pattern"
        assert t("p", pattern="a").pattern == Map("a")

    def test_dependency_names_merge_pattern(self):
        target = t("p", "cfg", pattern=Cross("w", Map("x", "y")))
        assert target.get_dependency_names() == ["cfg", "w", "x", "y"]
        assert target.get_pattern_names() == ["w", "x", "y"]
