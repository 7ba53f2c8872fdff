"""Execution variables, template rendering and condition evaluation."""

import re
from typing import Any, Dict, Optional

from jinja2 import StrictUndefined, TemplateError, UndefinedError
from jinja2.sandbox import SandboxedEnvironment

from .errors import ExpressionError

# Legacy "$name" variable references are accepted in conditions
_DOLLAR_VAR = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")
_WHOLE_EXPRESSION = re.compile(r"^\s*\{\{(.*)\}\}\s*$", re.DOTALL)


class ExecutionContext:
    """
    Variables visible to the steps of one execution.

    Conditions use the Jinja2 expression grammar (comparisons, ``and``/``or``/
    ``not``, ``in``, arithmetic, filters) evaluated in a sandbox. Undefined
    names in a condition are an error rather than silently false.
    """

    def __init__(
        self,
        execution_id: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Initialize execution context.

        Args:
            execution_id: Execution these variables belong to
            variables: Initial variables (trigger context)
        """
        self.execution_id = execution_id
        self.variables: Dict[str, Any] = dict(variables or {})
        self._condition_env = SandboxedEnvironment(undefined=StrictUndefined)
        self._template_env = SandboxedEnvironment(autoescape=False)

    def set_variable(self, name: str, value: Any) -> None:
        """Set a variable in the context."""
        self.variables[name] = value

    def get_variable(self, name: str, default: Any = None) -> Any:
        """Get a variable from the context."""
        return self.variables.get(name, default)

    def evaluate_condition(self, condition: str, step_id: str = "unknown") -> bool:
        """
        Evaluate a boolean expression against the variables.

        Args:
            condition: Jinja2 expression, e.g. ``error_rate > 0.1 and env == 'prod'``
            step_id: Step id for error context

        Returns:
            Truthiness of the expression result

        Raises:
            ExpressionError: If the expression cannot be parsed or evaluated
        """
        source = _DOLLAR_VAR.sub(r"\1", condition).strip()
        if not source:
            raise ExpressionError(
                step_id, condition, ValueError("empty expression"), self.variables
            )

        try:
            compiled = self._condition_env.compile_expression(
                source, undefined_to_none=False
            )
            return bool(compiled(**self.variables))
        except (TemplateError, UndefinedError, TypeError, ValueError, ZeroDivisionError) as e:
            raise ExpressionError(step_id, condition, e, self.variables) from e

    def render_value(self, value: Any, step_id: str = "unknown") -> Any:
        """
        Render templates inside a value, recursing into dicts and lists.

        A string that is exactly one ``{{ expression }}`` yields the native
        value of the expression (so numbers and dicts keep their type);
        any other string containing template markup is rendered to text.

        Args:
            value: Value possibly containing template strings
            step_id: Step id for error context

        Returns:
            Rendered value

        Raises:
            ExpressionError: On template syntax errors
        """
        if isinstance(value, dict):
            return {k: self.render_value(v, step_id) for k, v in value.items()}
        if isinstance(value, list):
            return [self.render_value(item, step_id) for item in value]
        if not isinstance(value, str) or "{" not in value:
            return value

        try:
            match = _WHOLE_EXPRESSION.match(value)
            if match and "{{" not in match.group(1):
                compiled = self._template_env.compile_expression(match.group(1).strip())
                return compiled(**self.variables)

            template = self._template_env.from_string(value)
            return template.render(**self.variables)
        except TemplateError as e:
            raise ExpressionError(step_id, value, e, self.variables) from e

    def snapshot(self) -> Dict[str, Any]:
        """Shallow copy of the current variables."""
        return dict(self.variables)
