from typing import Any, Dict, List

from flowmind.domain.errors import ToolParameterError

# Parameter type name -> accepted Python types
TYPE_MAP = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


class ToolParameterValidator:
    """Checks a parameter bag against a tool's declared parameter spec"""

    @staticmethod
    def errors(spec: Dict[str, Dict[str, Any]], params: Dict[str, Any]) -> List[str]:
        problems = []
        for name, rules in spec.items():
            value = params.get(name)
            if value is None:
                if rules.get("required"):
                    problems.append(f"missing required parameter '{name}'")
                continue

            expected = TYPE_MAP.get(rules.get("type", ""))
            if expected is None:
                continue
            # bool is an int subclass; keep it out of numeric parameters
            if isinstance(value, bool) and bool not in expected:
                problems.append(f"parameter '{name}' must be {rules['type']}")
            elif not isinstance(value, expected):
                problems.append(f"parameter '{name}' must be {rules['type']}")
        return problems

    @classmethod
    def validate(cls, tool_name: str, spec: Dict[str, Dict[str, Any]], params: Dict[str, Any]) -> Dict[str, Any]:
        """Return params with defaults filled in, or raise ToolParameterError"""

        problems = cls.errors(spec, params)
        if problems:
            raise ToolParameterError(tool_name, problems)

        filled = dict(params)
        for name, rules in spec.items():
            if filled.get(name) is None and "default" in rules:
                filled[name] = rules["default"]
        return filled
