"""Reference and output expression evaluation.

Bindings use ``${...}`` references: ``${inputs.name}`` for workflow inputs,
``${call.output}`` for upstream outputs and ``${name}`` for scatter variables
or task inputs. A binding that consists of exactly one reference evaluates to
the referenced value itself; otherwise references are interpolated as text.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Callable, Dict, List

from .errors import OutputEvaluationError

REFERENCE = re.compile(r"\$\{\s*([A-Za-z_]\w*(?:\.[A-Za-z_]\w*)?)\s*\}")

_READ_FUNCTIONS = ("read_string", "read_int", "read_float", "read_lines", "read_json")
_QUOTED = r"\"[^\"]*\"|'[^']*'"
_READ = re.compile(
    rf"^({'|'.join(_READ_FUNCTIONS)})\(\s*(stdout|stderr|{_QUOTED})\s*\)$"
)
_FILE = re.compile(rf"^file\(\s*({_QUOTED})\s*\)$")


def references(value: Any) -> List[str]:
    """Return every reference found in ``value`` preserving order."""
    found: List[str] = []
    if isinstance(value, str):
        found.extend(m.group(1) for m in REFERENCE.finditer(value))
    elif isinstance(value, list):
        for item in value:
            found.extend(references(item))
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(references(item))
    return found


def stringify(value: Any) -> str:
    """Render ``value`` the way it is interpolated into commands."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return " ".join(stringify(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def evaluate(value: Any, lookup: Callable[[str], Any]) -> Any:
    """Resolve references in ``value`` using ``lookup``.

    ``lookup`` raises ``KeyError`` for unknown references; the error is
    propagated to the caller.
    """
    if isinstance(value, str):
        whole = REFERENCE.fullmatch(value.strip())
        if whole:
            return lookup(whole.group(1))
        return REFERENCE.sub(lambda m: stringify(lookup(m.group(1))), value)
    if isinstance(value, list):
        return [evaluate(v, lookup) for v in value]
    if isinstance(value, dict):
        return {k: evaluate(v, lookup) for k, v in value.items()}
    return value


def render_command(template: str, inputs: Dict[str, Any]) -> str:
    """Interpolate task inputs into a command template."""
    return REFERENCE.sub(lambda m: stringify(inputs[m.group(1)]), template)


def is_valid_output_expression(expression: Any) -> bool:
    """Return ``True`` when ``expression`` is a supported output expression."""
    if not isinstance(expression, str):
        return True
    expr = expression.strip()
    if expr in ("stdout", "stderr"):
        return True
    if _READ.match(expr) or _FILE.match(expr):
        return True
    # anything else is a literal, possibly with input references
    return not re.match(r"^\w+\(", expr)


def _unquote(token: str) -> str:
    return token[1:-1]


def _resolve_path(token: str, call_root: Path, stdout: Path, stderr: Path) -> Path:
    if token == "stdout":
        return stdout
    if token == "stderr":
        return stderr
    path = Path(_unquote(token))
    return path if path.is_absolute() else call_root / path


def _read(function: str, path: Path) -> Any:
    try:
        text = path.read_text()
    except OSError as exc:
        raise OutputEvaluationError(f"Could not read {path}: {exc}") from exc
    try:
        if function == "read_string":
            return text.strip()
        if function == "read_int":
            return int(text.strip())
        if function == "read_float":
            return float(text.strip())
        if function == "read_lines":
            return [line for line in text.splitlines() if line]
        return json.loads(text)
    except ValueError as exc:
        raise OutputEvaluationError(f"{function}({path.name}) failed: {exc}") from exc


def evaluate_output(
    expression: Any,
    *,
    call_root: Path,
    stdout: Path,
    stderr: Path,
    inputs: Dict[str, Any],
) -> Any:
    """Evaluate a task output expression after a job completed.

    Raises:
        OutputEvaluationError: If a file cannot be read or parsed, or the
            expression references an unknown input.
    """
    if not isinstance(expression, str):
        return expression
    expr = expression.strip()
    if expr in ("stdout", "stderr"):
        return str(_resolve_path(expr, call_root, stdout, stderr))

    read = _READ.match(expr)
    if read:
        function, token = read.groups()
        return _read(function, _resolve_path(token, call_root, stdout, stderr))

    file_ref = _FILE.match(expr)
    if file_ref:
        path = _resolve_path(file_ref.group(1), call_root, stdout, stderr)
        if not path.exists():
            raise OutputEvaluationError(f"Output file {path} does not exist")
        return str(path)

    def lookup(name: str) -> Any:
        try:
            return inputs[name]
        except KeyError:
            raise OutputEvaluationError(f"Unknown reference '{name}' in output '{expr}'")

    return evaluate(expr, lookup)
