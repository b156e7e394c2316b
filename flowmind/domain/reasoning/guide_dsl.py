"""Guide condition/action mini-language.

Conditions are clauses joined by ``&``::

    priority > 0.5 & tags =~ urgent & metadata.source = "email"

Operators: ``= != > < >= <= =~ !~``. ``=~``/``!~`` mean contains / does not
contain (list membership for lists, case-insensitive substring for text).
``tag=<name>`` is shorthand for tag membership.

Actions are a single command; the separator after the command name is
``=``, ``:`` or whitespace::

    add_tag=chore
    set priority=0.9
    set metadata.source:"email"
    link_to <targetId>:blocks
    run_tool GenerateEmbeddingTool:{"text": "..."}
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
import json
import re

import structlog

logger = structlog.get_logger(__name__)

OPERATORS = (">=", "<=", "!=", "=~", "!~", "=", ">", "<")
NUMERIC_OPERATORS = {">", "<", ">=", "<="}
SETTABLE_FIELDS = {"content", "type", "priority"}
PROTECTED_METADATA = {"createdAt", "updatedAt", "status", "pendingTask"}

_CLAUSE = re.compile(
    r"^\s*(?P<key>[A-Za-z_][\w.]*)\s*(?P<op>" + "|".join(re.escape(op) for op in OPERATORS) + r")\s*(?P<value>.*?)\s*$"
)
_COMMAND = re.compile(r"^\s*(?P<name>[A-Za-z_]+)(?:\s*[=:]\s*|\s+)(?P<value>.*?)\s*$", re.DOTALL)


# Condition AST

@dataclass(frozen=True)
class FieldClause:
    path: Tuple[str, ...]
    op: str
    value: str


@dataclass(frozen=True)
class TagClause:
    tag: str
    present: bool = True


@dataclass(frozen=True)
class MalformedClause:
    text: str
    reason: str


Clause = Union[FieldClause, TagClause, MalformedClause]


@dataclass(frozen=True)
class Condition:
    clauses: Tuple[Clause, ...]

    @property
    def malformed(self) -> List[MalformedClause]:
        return [clause for clause in self.clauses if isinstance(clause, MalformedClause)]


# Action AST

@dataclass(frozen=True)
class SetCommand:
    path: Tuple[str, ...]
    value: str


@dataclass(frozen=True)
class AddTagCommand:
    tag: str


@dataclass(frozen=True)
class RemoveTagCommand:
    tag: str


@dataclass(frozen=True)
class CreateTaskCommand:
    content: str


@dataclass(frozen=True)
class LinkToCommand:
    target_id: str
    relationship: str = "related"


@dataclass(frozen=True)
class RunToolCommand:
    tool_name: str
    params: Dict[str, Any] = field(default_factory=dict, hash=False, compare=True)


@dataclass(frozen=True)
class UnknownCommand:
    name: str


@dataclass(frozen=True)
class MalformedCommand:
    text: str
    reason: str


Command = Union[
    SetCommand, AddTagCommand, RemoveTagCommand, CreateTaskCommand,
    LinkToCommand, RunToolCommand, UnknownCommand, MalformedCommand
]


def unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def split_clauses(text: str) -> List[str]:
    """Split on '&' outside quotes"""

    parts, current, quote = [], [], None
    for char in text:
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "&":
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return parts


def parse_clause(text: str) -> Clause:
    match = _CLAUSE.match(text)
    if match is None:
        return MalformedClause(text.strip(), "expected 'key op value'")

    key, op, value = match.group("key"), match.group("op"), unquote(match.group("value"))
    if not value:
        return MalformedClause(text.strip(), "missing value")

    if key in ("tag", "tags"):
        if op in ("=", "=~"):
            return TagClause(value, present=True)
        if op in ("!=", "!~"):
            return TagClause(value, present=False)
        return MalformedClause(text.strip(), f"operator {op} does not apply to tags")

    path = tuple(key.split("."))
    if any(not part for part in path):
        return MalformedClause(text.strip(), f"invalid field '{key}'")
    return FieldClause(path, op, value)


def parse_condition(text: str) -> Condition:
    if not text or not text.strip():
        return Condition((MalformedClause(text or "", "empty condition"),))
    return Condition(tuple(parse_clause(part) for part in split_clauses(text)))


def parse_action(text: str) -> Command:
    match = _COMMAND.match(text or "")
    if match is None:
        return MalformedCommand((text or "").strip(), "expected 'command=value'")

    name, value = match.group("name").lower(), match.group("value").strip()
    if not value:
        return MalformedCommand(text.strip(), "missing value")

    if name == "set":
        key, separator, raw = value.partition("=")
        if not separator:
            key, separator, raw = value.partition(":")
        key = key.strip()
        if not separator or not key:
            return MalformedCommand(text.strip(), "set needs key=value")
        path = tuple(key.split("."))
        if path[0] == "metadata":
            if len(path) != 2 or not path[1]:
                return MalformedCommand(text.strip(), f"invalid metadata key '{key}'")
            if path[1] in PROTECTED_METADATA:
                return MalformedCommand(text.strip(), f"metadata.{path[1]} is managed by the system")
        elif len(path) != 1 or key not in SETTABLE_FIELDS:
            return MalformedCommand(text.strip(), f"field '{key}' cannot be set")
        return SetCommand(path, unquote(raw))

    if name == "add_tag":
        return AddTagCommand(unquote(value))
    if name == "remove_tag":
        return RemoveTagCommand(unquote(value))
    if name == "create_task":
        return CreateTaskCommand(unquote(value))

    if name == "link_to":
        target, _, relationship = value.partition(":")
        target = unquote(target)
        if not target:
            return MalformedCommand(text.strip(), "link_to needs a target id")
        return LinkToCommand(target, unquote(relationship) or "related")

    if name == "run_tool":
        tool_name, _, raw_params = value.partition(":")
        tool_name = tool_name.strip()
        if not tool_name:
            return MalformedCommand(text.strip(), "run_tool needs a tool name")
        params: Dict[str, Any] = {}
        if raw_params.strip():
            try:
                params = json.loads(raw_params)
            except ValueError as e:
                return MalformedCommand(text.strip(), f"invalid tool params: {e}")
            if not isinstance(params, dict):
                return MalformedCommand(text.strip(), "tool params must be a JSON object")
        return RunToolCommand(tool_name, params)

    return UnknownCommand(name)


def coerce_literal(raw: str) -> Any:
    """JSON literal if it parses, else the raw string"""

    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _parse_number(text: str) -> Optional[float]:
    try:
        return float(text)
    except ValueError:
        return None


def resolve(record: Dict[str, Any], path: Tuple[str, ...]) -> Any:
    """Walk a dotted path through a Thought's wire form"""

    current: Any = record
    for part in path:
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _equals(actual: Any, expected: str) -> bool:
    number = _as_number(actual)
    if number is not None:
        target = _parse_number(expected)
        return target is not None and number == target
    if isinstance(actual, bool):
        return str(actual).lower() == expected.lower()
    if actual is None:
        return expected.lower() in ("null", "none")
    return str(actual) == expected


def _contains(actual: Any, expected: str) -> Optional[bool]:
    if isinstance(actual, list):
        return expected in [str(item) for item in actual]
    if isinstance(actual, str):
        return expected.lower() in actual.lower()
    return None


def evaluate_clause(clause: Clause, record: Dict[str, Any]) -> bool:
    match clause:
        case TagClause(tag=tag, present=present):
            tags = record.get("metadata", {}).get("tags") or []
            return (tag in tags) == present

        case FieldClause(path=path, op=op, value=expected):
            actual = resolve(record, path)
            match op:
                case "=":
                    return _equals(actual, expected)
                case "!=":
                    return not _equals(actual, expected)
                case "=~":
                    return bool(_contains(actual, expected))
                case "!~":
                    contained = _contains(actual, expected)
                    return actual is None or contained is False
                case _ if op in NUMERIC_OPERATORS:
                    number, target = _as_number(actual), _parse_number(expected)
                    if number is None or target is None:
                        return False
                    return {
                        ">": number > target,
                        "<": number < target,
                        ">=": number >= target,
                        "<=": number <= target,
                    }[op]
            return False

        case MalformedClause(text=text, reason=reason):
            logger.warning("Malformed guide clause", clause=text, reason=reason)
            return False

    return False


def evaluate_condition(condition: Condition, record: Dict[str, Any]) -> bool:
    """All clauses must hold; a malformed clause is false"""
    return all(evaluate_clause(clause, record) for clause in condition.clauses)
