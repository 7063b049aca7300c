import json

import pytest

from loomwork.errors import ParseError
from loomwork.parser import YamlWorkflowParser, parse

THREE_STEP = """
name: three_step
inputs:
  pattern: null
tasks:
  ps:
    command: "ps"
    outputs: {procs: stdout}
  cgrep:
    inputs: [in_file, pattern]
    command: "grep '${pattern}' ${in_file} | wc -l"
    outputs: {count: read_int(stdout)}
  wc:
    inputs: [in_file]
    command: "cat ${in_file} | wc -l"
    outputs: {count: read_int(stdout)}
calls:
  ps: {task: ps}
  cgrep:
    task: cgrep
    inputs: {in_file: "${ps.procs}", pattern: "${inputs.pattern}"}
  wc:
    task: wc
    inputs: {in_file: "${ps.procs}"}
outputs: [cgrep.count, "wc.*"]
"""


def test_parse_three_step_graph():
    graph = parse(THREE_STEP, json.dumps({"three_step.pattern": "bash"}))

    assert graph.name == "three_step"
    assert graph.inputs == {"pattern": "bash"}
    assert set(graph.calls) == {"three_step.ps", "three_step.cgrep", "three_step.wc"}
    assert graph.upstream("three_step.cgrep") == {"three_step.ps"}
    assert graph.downstream("three_step.ps") == {"three_step.cgrep", "three_step.wc"}
    assert graph.topological_order()[0] == "three_step.ps"
    assert graph.outputs == ["three_step.cgrep.count", "three_step.wc.*"]
    assert graph.declared_outputs() == ["three_step.cgrep.count", "three_step.wc.count"]


def test_bare_input_names_are_accepted():
    graph = YamlWorkflowParser().parse(THREE_STEP, '{"pattern": "x"}')
    assert graph.inputs["pattern"] == "x"


def test_missing_required_input_is_rejected():
    with pytest.raises(ParseError, match="three_step.pattern"):
        parse(THREE_STEP, "{}")


def test_unexpected_input_is_rejected():
    with pytest.raises(ParseError, match="Unexpected workflow input"):
        parse(THREE_STEP, '{"pattern": "x", "other": 1}')


def test_defaults_fill_optional_inputs():
    source = """
name: greet
inputs:
  who: world
tasks:
  hello:
    inputs: [who]
    command: "echo hello ${who}"
    outputs: {message: read_string(stdout)}
calls:
  hello:
    inputs: {who: "${inputs.who}"}
"""
    graph = parse(source)
    assert graph.inputs == {"who": "world"}
    assert graph.calls["greet.hello"].task.name == "hello"


@pytest.mark.parametrize(
    "source, message",
    [
        ("- not a mapping", "must be a mapping"),
        ("name: wf\ncalls: {}", "declares no calls"),
        ("name: wf\ntasks: {}\ncalls: {a: {task: nope}}", "unknown task"),
        (
            "name: wf\ntasks: {t: {command: 'echo ${x}'}}\ncalls: {t: {}}",
            "undeclared input",
        ),
        (
            "name: wf\ntasks: {t: {command: 'echo', outputs: {o: 'glob(\"*\")'}}}\ncalls: {t: {}}",
            "Unsupported output expression",
        ),
        (
            "name: wf\ntasks: {t: {command: 'echo', inputs: [a]}}\ncalls: {t: {}}",
            "does not bind inputs",
        ),
        (
            "name: wf\ntasks: {t: {command: 'echo', inputs: [a]}}\n"
            "calls: {t: {inputs: {a: '${missing.out}'}}}",
            "unknown call",
        ),
        (
            "name: wf\ntasks: {t: {command: 'echo', inputs: [a], outputs: {o: stdout}}}\n"
            "calls: {t: {inputs: {a: '${t.nope}'}}}",
            "unknown output",
        ),
        (
            "name: wf\ntasks: {t: {command: 'echo', inputs: [a], outputs: {o: stdout}}}\n"
            "calls: {t: {inputs: {a: '${t.o}'}}}",
            "depends on itself",
        ),
        (
            "name: wf\ntasks: {t: {command: 'echo'}}\ncalls: {t: {scatter: nope}}",
            "unknown scatter",
        ),
        (
            "name: wf\ntasks: {t: {command: 'echo'}}\ncalls: {t: {}}\noutputs: [other.x]",
            "does not name a call output",
        ),
        (
            "name: wf\ntasks: {t: {command: 'echo', runtime: {cpu: many}}}\ncalls: {t: {}}",
            "Invalid runtime attributes",
        ),
    ],
)
def test_invalid_workflows_are_rejected(source, message):
    with pytest.raises(ParseError, match=message):
        parse(source)


def test_invalid_yaml_and_json_are_rejected():
    with pytest.raises(ParseError, match="not valid YAML"):
        parse("name: [unclosed")
    with pytest.raises(ParseError, match="not valid JSON"):
        parse(THREE_STEP, "{not json")


def test_cycles_are_rejected():
    source = """
name: loop
tasks:
  t:
    inputs: [a]
    command: "echo ${a}"
    outputs: {o: read_string(stdout)}
calls:
  first:
    task: t
    inputs: {a: "${second.o}"}
  second:
    task: t
    inputs: {a: "${first.o}"}
"""
    with pytest.raises(ParseError, match="Cycle detected"):
        parse(source)


def test_scatter_calls_inherit_collection_dependencies():
    source = """
name: fan
tasks:
  names:
    command: "printf 'a\\nb\\n'"
    outputs: {lines: read_lines(stdout)}
  greet:
    inputs: [who]
    command: "echo ${who}"
    outputs: {message: read_string(stdout)}
scatters:
  each: {items: "${names.lines}", variable: who}
calls:
  names: {}
  greet:
    inputs: {who: "${who}"}
    scatter: each
"""
    graph = parse(source)
    assert graph.scatters["each"].upstream == {"fan.names"}
    assert graph.upstream("fan.greet") == {"fan.names"}
    assert graph.scattered_calls("each") == ["fan.greet"]


def test_scatter_variable_cannot_shadow_calls():
    source = """
name: fan
inputs:
  xs: [1, 2]
tasks:
  t:
    inputs: [x]
    command: "echo ${x}"
scatters:
  each: {items: "${inputs.xs}", variable: t}
calls:
  t:
    inputs: {x: "${t}"}
    scatter: each
"""
    with pytest.raises(ParseError, match="shadows"):
        parse(source)
