"""Tests for targetflow.yaml parser."""

from pathlib import Path

import pytest

from targetflow.exceptions import PipelineFileError
from targetflow.run.parser import PipelineParser
from targetflow.run.pattern import Cross, Head, Map, Sample


def write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "targetflow.yaml"
    path.write_text(content)
    return path


def test_parse_simple(tmp_path):
    path = write(tmp_path, """
targets:
  raw:
    cmd: "echo 3"
  clean:
    command: "builtins:dict"
    deps: [raw]
    desc: Clean the data
""")
    pipeline = PipelineParser(path).parse()

    assert pipeline.registry.names() == ["raw", "clean"]
    raw = pipeline.registry["raw"]
    assert raw.is_shell
    assert raw.command == "echo 3"

    clean = pipeline.registry["clean"]
    assert clean.command is dict
    assert clean.deps == ["raw"]
    assert clean.desc == "Clean the data"
    assert pipeline.config == {}


def test_parse_patterns(tmp_path):
    path = write(tmp_path, """
targets:
  w: {command: "builtins:list"}
  x: {command: "builtins:list"}
  y: {command: "builtins:list"}
  crossed:
    command: "builtins:dict"
    pattern: {cross: [w, {map: [x, y]}]}
    iteration: list
  first:
    command: "builtins:dict"
    pattern: {head: {pattern: {map: [x]}, n: 2}}
  picked:
    command: "builtins:dict"
    pattern: {sample: {pattern: w, n: 1, seed: 4}}
  bare:
    command: "builtins:dict"
    pattern: x
""")
    registry = PipelineParser(path).parse().registry

    assert registry["crossed"].pattern == Cross("w", Map("x", "y"))
    assert registry["crossed"].iteration == "list"
    assert registry["first"].pattern == Head(Map("x"), 2)
    assert registry["picked"].pattern == Sample("w", 1, 4)
    assert registry["bare"].pattern == Map("x")


def test_cmd_list_joined(tmp_path):
    path = write(tmp_path, """
targets:
  build:
    cmd:
      - mkdir -p out
      - touch out/a.txt
    format: file
    outs: [out/a.txt]
""")
    target = PipelineParser(path).parse().registry["build"]
    assert target.command == "mkdir -p out && touch out/a.txt"
    assert target.outs == ["out/a.txt"]


def test_config_block(tmp_path):
    path = write(tmp_path, """
config:
  max_workers: 2
  seed: 7
  error: continue
targets:
  a: {cmd: "echo a"}
""")
    assert PipelineParser(path).parse().config == {"max_workers": 2, "seed": 7, "error": "continue"}


def test_imports_module_next_to_pipeline(tmp_path):
    (tmp_path / "parser_local_steps.py").write_text("def load():\n    return 42\n")
    path = write(tmp_path, """
targets:
  a:
    command: "parser_local_steps:load"
""")
    target = PipelineParser(path).parse().registry["a"]
    assert target.command() == 42


def test_missing_file(tmp_path):
    with pytest.raises(PipelineFileError, match="not found"):
        PipelineParser(tmp_path / "nope.yaml").parse()


@pytest.mark.parametrize(
    "content,match",
    [
        ("stages: {}", "targets"),
        ("targets: [a, b]", "mapping"),
        ("targets:\n  a: {deps: [b]}", "exactly one"),
        ("targets:\n  a: {cmd: x, command: 'builtins:dict'}", "exactly one"),
        ("targets:\n  a: {cmd: x, colour: blue}", "unknown key"),
        ("targets:\n  a: {command: 'builtins'}", "module:function"),
        ("targets:\n  a: {command: 'no_such_module_xyz:f'}", "cannot import"),
        ("targets:\n  a: {command: 'builtins:__doc__'}", "not callable"),
        ("targets:\n  a: {cmd: x, iteration: matrix}", "iteration"),
        ("targets:\n  a: {cmd: x, pattern: {zip: [b]}}", "Unknown pattern"),
        ("config: {workers_count: 3}\ntargets:\n  a: {cmd: x}", "Unknown config"),
        ("targets: {a: {cmd: x}", "Malformed"),
    ],
)
def test_invalid_pipelines(tmp_path, content, match):
    path = write(tmp_path, content)
    with pytest.raises(PipelineFileError, match=match):
        PipelineParser(path).parse()
