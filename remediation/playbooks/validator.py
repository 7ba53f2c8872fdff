"""PlaybookValidator - validates remediation playbooks before registration."""

import argparse
import re
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from jinja2 import TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment

from .errors import GraphError
from .graph import execution_waves, validate_playbook_graph
from .loader import PlaybookLoader
from .logging_config import setup_logging_from_settings
from .models import (
    ConditionalBranchStep,
    OnFailure,
    RemediationPlaybook,
    SafetyCheckType,
    StepBase,
)
from .settings import EngineSettings

_CONDITION_KEYWORDS = {
    "True",
    "False",
    "None",
    "true",
    "false",
    "none",
    "and",
    "or",
    "not",
    "in",
    "is",
    "if",
    "else",
}

_TEMPLATE_VAR = re.compile(r"\{\{\s*([A-Za-z_]\w*)")
_CONDITION_NAME = re.compile(r"\$?\b([A-Za-z_]\w*)")
_QUOTED = re.compile(r"'[^']*'|\"[^\"]*\"")

_RESET = "\033[0m"


class ValidationLevel(Enum):
    """How serious a validation finding is."""

    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"
    SUCCESS = "SUCCESS"


_ANSI = {
    ValidationLevel.ERROR: "\033[91m",
    ValidationLevel.WARNING: "\033[93m",
    ValidationLevel.INFO: "\033[94m",
    ValidationLevel.SUCCESS: "\033[92m",
}


@dataclass
class ValidationMessage:
    """One finding, pointing at a step and/or field when it can."""

    level: ValidationLevel
    message: str
    step_id: Optional[str] = None
    field: Optional[str] = None

    def format(self, color: bool = True) -> str:
        """Render as ``[LEVEL] Step 'id' (field): message``."""
        where = "".join(
            [
                f" Step '{self.step_id}'" if self.step_id else "",
                f" ({self.field})" if self.field else "",
            ]
        )
        text = f"[{self.level.value}]{where}: {self.message}"
        return f"{_ANSI[self.level]}{text}{_RESET}" if color else text

    def __str__(self) -> str:
        return self.format(color=True)


class PlaybookValidator:
    """
    Validate remediation playbooks before they are registered or run.

    Checks:
    - Metadata completeness and approval configuration
    - Step graph (duplicates, dangling references, cycles, branch ordering)
    - Handler coverage for every step type (optional)
    - Branch condition syntax
    - Data flow (unused ``output_var``)
    - Rollback policy without a rollback plan
    - Safety check configuration
    """

    def __init__(self, handler_registry: Optional[Any] = None) -> None:
        """
        Args:
            handler_registry: When given, every step type must have a handler in it
        """
        self.handler_registry = handler_registry
        self.messages: List[ValidationMessage] = []
        self._jinja_env = SandboxedEnvironment()

    def validate(self, playbook: RemediationPlaybook) -> bool:
        """
        Run every check against ``playbook``, replacing earlier messages.

        Returns:
            False if any ERROR was recorded; warnings do not fail validation
        """
        self.messages = []
        checks = (
            self._validate_metadata,
            self._validate_graph,
            self._validate_handlers,
            self._validate_conditions,
            self._validate_data_flow,
            self._validate_rollback,
            self._validate_safety_checks,
        )
        for check in checks:
            check(playbook)

        if not self.messages:
            self._add(ValidationLevel.SUCCESS, "Playbook validation passed")

        return self.count(ValidationLevel.ERROR) == 0

    def _add(
        self,
        level: ValidationLevel,
        message: str,
        step_id: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        self.messages.append(
            ValidationMessage(level=level, message=message, step_id=step_id, field=field)
        )

    def _validate_metadata(self, playbook: RemediationPlaybook) -> None:
        """Validate playbook metadata."""
        if not playbook.description.strip():
            self._add(
                ValidationLevel.WARNING,
                "Playbook description is missing",
                field="description",
            )

        if playbook.require_approval and not playbook.approval_roles:
            self._add(
                ValidationLevel.WARNING,
                "Approval is required but no approval_roles are set; any approver is accepted",
                field="approval_roles",
            )

        if not re.match(r"^\d+\.\d+\.\d+", playbook.version):
            self._add(
                ValidationLevel.WARNING,
                f"Version '{playbook.version}' is not semantic (MAJOR.MINOR.PATCH)",
                field="version",
            )

    def _validate_graph(self, playbook: RemediationPlaybook) -> None:
        """Validate the step dependency graph."""
        try:
            validate_playbook_graph(playbook)
        except GraphError as e:
            self._add(
                ValidationLevel.ERROR,
                str(e).strip(),
                step_id=e.step_id,
                field="dependencies",
            )

    def _validate_handlers(self, playbook: RemediationPlaybook) -> None:
        """Validate every step type has a handler."""
        if self.handler_registry is None:
            return

        for step in self._all_steps(playbook):
            if step.step_type not in self.handler_registry:
                self._add(
                    ValidationLevel.ERROR,
                    f"No handler registered for step type '{step.step_type.value}'",
                    step_id=step.id,
                    field="type",
                )

    def _validate_conditions(self, playbook: RemediationPlaybook) -> None:
        """Validate branch condition syntax."""
        for step in playbook.steps:
            if not isinstance(step, ConditionalBranchStep):
                continue
            source = step.config.condition.replace("$", "")
            try:
                self._jinja_env.compile_expression(source)
            except TemplateSyntaxError as e:
                self._add(
                    ValidationLevel.ERROR,
                    f"Invalid condition syntax: {e}",
                    step_id=step.id,
                    field="config.condition",
                )

    def _validate_data_flow(self, playbook: RemediationPlaybook) -> None:
        """Warn about ``output_var`` values no step or condition reads."""
        produced_by: Dict[str, str] = {}
        read: Set[str] = set()

        for step in self._all_steps(playbook):
            if step.output_var:
                produced_by[step.output_var] = step.id
            if isinstance(step, ConditionalBranchStep):
                read |= _condition_names(step.config.condition)
            else:
                read |= _template_names(step.config.model_dump())

        for name, step_id in produced_by.items():
            if name not in read:
                self._add(
                    ValidationLevel.WARNING,
                    f"Output variable '{name}' is never used",
                    step_id=step_id,
                    field="output_var",
                )

    def _validate_rollback(self, playbook: RemediationPlaybook) -> None:
        """Steps asking for rollback need a rollback plan."""
        if playbook.rollback_plan:
            return
        for step in playbook.steps:
            if step.on_failure == OnFailure.ROLLBACK:
                self._add(
                    ValidationLevel.WARNING,
                    "on_failure is 'rollback' but the playbook has no rollback_plan",
                    step_id=step.id,
                    field="on_failure",
                )

    def _validate_safety_checks(self, playbook: RemediationPlaybook) -> None:
        """Validate safety check configuration."""
        seen: Set[str] = set()
        for check in playbook.safety_checks:
            field = f"safety_checks.{check.id}"
            if check.id in seen:
                self._add(
                    ValidationLevel.ERROR,
                    f"Duplicate safety check id '{check.id}'",
                    field=field,
                )
            seen.add(check.id)

            if not check.enabled:
                self._add(ValidationLevel.INFO, "Safety check is disabled", field=field)

            if check.type == SafetyCheckType.TIME_WINDOW:
                for key in ("allowed_hours_start", "allowed_hours_end"):
                    hour = check.config.get(key)
                    if hour is not None and not (0 <= int(hour) <= 23):
                        self._add(
                            ValidationLevel.ERROR,
                            f"{key} must be between 0 and 23, got {hour}",
                            field=field,
                        )
                for day in check.config.get("allowed_days") or []:
                    if not (0 <= int(day) <= 6):
                        self._add(
                            ValidationLevel.ERROR,
                            f"allowed_days entries must be 0 (Sunday) to 6, got {day}",
                            field=field,
                        )

            if check.type == SafetyCheckType.CUSTOM:
                expression = check.config.get("expression")
                if expression:
                    try:
                        self._jinja_env.compile_expression(expression)
                    except TemplateSyntaxError as e:
                        self._add(
                            ValidationLevel.ERROR,
                            f"Invalid custom check expression: {e}",
                            field=field,
                        )
                elif not check.config.get("validator"):
                    self._add(
                        ValidationLevel.WARNING,
                        "Custom check has neither 'expression' nor 'validator' and always passes",
                        field=field,
                    )

    @staticmethod
    def _all_steps(playbook: RemediationPlaybook) -> List[StepBase]:
        return list(playbook.steps) + list(playbook.rollback_plan)

    def print_messages(self, show_info: bool = True, color: bool = True) -> None:
        """Print findings, hiding INFO unless ``show_info``."""
        for finding in self.messages:
            if finding.level != ValidationLevel.INFO or show_info:
                print(finding.format(color=color))

    def count(self, level: ValidationLevel) -> int:
        return sum(1 for m in self.messages if m.level == level)

    def get_error_count(self) -> int:
        return self.count(ValidationLevel.ERROR)

    def get_warning_count(self) -> int:
        return self.count(ValidationLevel.WARNING)


def _template_names(value: Any) -> Set[str]:
    """Root variable names referenced by ``{{ }}`` placeholders anywhere in ``value``."""
    if isinstance(value, str):
        return set(_TEMPLATE_VAR.findall(value))
    if isinstance(value, dict):
        value = list(value.values())
    if isinstance(value, list):
        names: Set[str] = set()
        for item in value:
            names |= _template_names(item)
        return names
    return set()


def _condition_names(condition: str) -> Set[str]:
    """Root variable names in a branch condition, ignoring literals and keywords."""
    unquoted = _QUOTED.sub("", condition)
    names = set()
    for match in _CONDITION_NAME.finditer(unquoted):
        # Attribute access after a dot is not a root name
        if match.start() > 0 and unquoted[match.start() - 1] == ".":
            continue
        names.add(match.group(1))
    return names - _CONDITION_KEYWORDS


def format_plan(playbook: RemediationPlaybook) -> str:
    """
    Render the execution plan of a playbook as text.

    Raises:
        GraphError: If the step graph is cyclic
    """
    lines = [f"Playbook: {playbook.name} v{playbook.version}"]
    if playbook.description:
        lines.append(f"Description: {playbook.description}")

    waves = execution_waves(playbook.steps)
    steps = {step.id: step for step in playbook.steps}
    lines.append("")
    lines.append(f"Execution Plan ({len(playbook.steps)} steps, {len(waves)} waves):")

    for i, wave in enumerate(waves, 1):
        lines.append(f"  Wave {i}:")
        for step_id in wave:
            step = steps[step_id]
            line = f"    - [{step.step_type.value.upper()}] {step.id}"
            if step.dependencies:
                line += f" (after {', '.join(step.dependencies)})"
            if step.on_failure != OnFailure.STOP:
                line += f" on_failure={step.on_failure.value}"
            lines.append(line)

    if playbook.rollback_plan:
        lines.append("")
        lines.append(f"Rollback Plan ({len(playbook.rollback_plan)} steps):")
        for i, step in enumerate(playbook.rollback_plan, 1):
            lines.append(f"  {i}. [{step.step_type.value.upper()}] {step.id}")

    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> None:
    """Console entry point: ``playbook-validate FILE [--plan]``; exits 1 on errors."""
    parser = argparse.ArgumentParser(description="Check a remediation playbook file")
    parser.add_argument("playbook", help="Playbook YAML file")
    parser.add_argument("--plan", action="store_true", help="Also print the execution waves")
    parser.add_argument("--no-color", action="store_true", help="Plain output")
    parser.add_argument("--show-info", action="store_true", help="Include INFO findings")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override PLAYBOOK_LOG_LEVEL",
    )
    args = parser.parse_args(argv)
    color = not args.no_color
    setup_logging_from_settings(EngineSettings(), args.log_level, stream=sys.stderr)

    try:
        playbook = PlaybookLoader().load_from_file(args.playbook)
    except Exception as e:
        failure = ValidationMessage(ValidationLevel.ERROR, f"Could not load playbook: {e}")
        print(failure.format(color=color), file=sys.stderr)
        sys.exit(1)

    validator = PlaybookValidator()
    is_valid = validator.validate(playbook)
    validator.print_messages(show_info=args.show_info, color=color)

    errors, warnings = validator.get_error_count(), validator.get_warning_count()
    if errors or warnings:
        print(f"\n{errors} error(s), {warnings} warning(s)")

    if args.plan and is_valid:
        print()
        print(format_plan(playbook))

    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
