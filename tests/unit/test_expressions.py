import pytest

from loomwork.errors import OutputEvaluationError
from loomwork.expressions import (
    evaluate,
    evaluate_output,
    is_valid_output_expression,
    references,
    render_command,
)


def test_references_walk_nested_values():
    value = {"a": "${inputs.x}", "b": ["${call.out}", "plain ${var}"], "c": 3}
    assert references(value) == ["inputs.x", "call.out", "var"]


def test_whole_reference_keeps_value_type():
    values = {"inputs.xs": [1, 2, 3], "inputs.flag": True}
    assert evaluate("${inputs.xs}", values.__getitem__) == [1, 2, 3]
    assert evaluate(" ${inputs.flag} ", values.__getitem__) is True


def test_embedded_references_are_interpolated():
    values = {"inputs.xs": [1, 2], "inputs.flag": False, "name": "bob"}
    result = evaluate("--items ${inputs.xs} --flag=${inputs.flag} ${name}", values.__getitem__)
    assert result == "--items 1 2 --flag=false bob"


def test_unknown_reference_raises_key_error():
    with pytest.raises(KeyError):
        evaluate("${inputs.missing}", {}.__getitem__)


def test_render_command_uses_task_inputs():
    assert render_command("grep '${pattern}' ${in_file}", {"pattern": "a b", "in_file": "/x"}) == (
        "grep 'a b' /x"
    )


@pytest.mark.parametrize(
    "expression, valid",
    [
        ("stdout", True),
        ("read_int(stdout)", True),
        ('read_json("out/data.json")', True),
        ("file('result.txt')", True),
        ("literal text", True),
        (42, True),
        ("glob('*.txt')", False),
        ("read_int(somewhere)", False),
    ],
)
def test_output_expression_validation(expression, valid):
    assert is_valid_output_expression(expression) is valid


def _streams(tmp_path, stdout="", stderr=""):
    out = tmp_path / "stdout"
    err = tmp_path / "stderr"
    out.write_text(stdout)
    err.write_text(stderr)
    return out, err


def test_evaluate_output_reads_streams_and_files(tmp_path):
    out, err = _streams(tmp_path, stdout=" 17\n", stderr="warning\n")
    (tmp_path / "data.json").write_text('{"k": [1, 2]}')
    (tmp_path / "lines.txt").write_text("a\n\nb\n")
    kwargs = dict(call_root=tmp_path, stdout=out, stderr=err, inputs={"name": "x"})

    assert evaluate_output("stdout", **kwargs) == str(out)
    assert evaluate_output("read_int(stdout)", **kwargs) == 17
    assert evaluate_output("read_float(stdout)", **kwargs) == 17.0
    assert evaluate_output("read_string(stderr)", **kwargs) == "warning"
    assert evaluate_output('read_json("data.json")', **kwargs) == {"k": [1, 2]}
    assert evaluate_output("read_lines('lines.txt')", **kwargs) == ["a", "b"]
    assert evaluate_output('file("data.json")', **kwargs) == str(tmp_path / "data.json")
    assert evaluate_output("prefix-${name}", **kwargs) == "prefix-x"
    assert evaluate_output(5, **kwargs) == 5


@pytest.mark.parametrize(
    "expression",
    [
        "read_int(stdout)",
        'read_string("missing.txt")',
        'file("missing.txt")',
        "${unknown}",
    ],
)
def test_evaluate_output_failures(tmp_path, expression):
    out, err = _streams(tmp_path, stdout="not a number")
    with pytest.raises(OutputEvaluationError):
        evaluate_output(expression, call_root=tmp_path, stdout=out, stderr=err, inputs={})
