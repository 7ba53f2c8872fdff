"""PlaybookLoader - reads remediation playbook definitions from YAML."""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from jinja2 import DebugUndefined, Environment, TemplateError, TemplateSyntaxError
from pydantic import ValidationError

from .errors import PlaybookLoadError
from .models import RemediationPlaybook, StepType

logger = logging.getLogger(__name__)

KNOWN_STEP_TYPES = tuple(t.value for t in StepType)


class PlaybookLoader:
    """
    Turns YAML documents into validated ``RemediationPlaybook`` models.

    Loading happens in three passes: optional Jinja2 substitution of
    load-time variables over the raw text, YAML parsing, then model
    validation of the playbook and its tagged step union. Placeholders
    with no load-time value survive as ``{{ name }}`` and are rendered
    against execution variables when the step runs.

    Example:
        loader = PlaybookLoader()
        playbook = loader.load_from_file("scenarios/db_connection.yaml")

        # Pin the environment before registering
        playbook = loader.load_from_file(
            "scenarios/restart_service.yaml",
            variables={"environment": "production"},
        )
    """

    def __init__(self) -> None:
        self._jinja_env = Environment(autoescape=False, undefined=DebugUndefined)

    def load_from_file(
        self, file_path: Union[str, Path], variables: Optional[Dict[str, Any]] = None
    ) -> RemediationPlaybook:
        """
        Read and load a playbook file.

        Raises:
            PlaybookLoadError: If the file is missing, unreadable or invalid
        """
        path = Path(file_path)
        if not path.is_file():
            reason = "is not a file" if path.exists() else "not found"
            raise PlaybookLoadError(f"Playbook file {reason}: {path}")

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise PlaybookLoadError(f"Could not read {path}: {e}") from e

        logger.debug("Loading playbook from %s", path)
        return self.load_from_string(text, variables)

    def load_from_string(
        self, yaml_content: str, variables: Optional[Dict[str, Any]] = None
    ) -> RemediationPlaybook:
        """
        Load a playbook from YAML text.

        Args:
            yaml_content: The YAML document
            variables: Values substituted into ``{{ }}`` placeholders before parsing

        Raises:
            PlaybookLoadError: If substitution, parsing or validation fails
        """
        text = self._substitute(yaml_content, variables) if variables else yaml_content

        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise PlaybookLoadError(f"Failed to parse YAML: {e}") from e

        if not isinstance(document, dict):
            raise PlaybookLoadError("Top level of a playbook must be a dictionary")

        return self.load_from_dict(document)

    def load_from_dict(self, data: Dict[str, Any]) -> RemediationPlaybook:
        """
        Validate an already parsed definition.

        Accepts the bare definition or one wrapped in a ``playbook:`` key.
        """
        if set(data) == {"playbook"} and isinstance(data["playbook"], dict):
            data = data["playbook"]

        for required in ("name", "steps"):
            if required not in data:
                raise PlaybookLoadError(f"Playbook is missing the '{required}' field")

        self._precheck_steps("steps", data["steps"])
        self._precheck_steps("rollback_plan", data.get("rollback_plan") or [])

        try:
            return RemediationPlaybook.model_validate(data)
        except ValidationError as e:
            raise PlaybookLoadError(f"Playbook validation failed: {e}") from e

    @staticmethod
    def _precheck_steps(section: str, entries: Any) -> None:
        # Short messages for common mistakes; the union error report is noisy
        if not isinstance(entries, list):
            raise PlaybookLoadError(f"'{section}' must be a list")

        for index, entry in enumerate(entries):
            where = f"{section}[{index}]"
            if not isinstance(entry, dict):
                raise PlaybookLoadError(f"{where} must be a dictionary")
            step_type = entry.get("type")
            if step_type is None:
                raise PlaybookLoadError(f"{where} must have a 'type' field")
            if step_type not in KNOWN_STEP_TYPES:
                raise PlaybookLoadError(
                    f"{where} has unknown type '{step_type}' "
                    f"(expected one of {', '.join(KNOWN_STEP_TYPES)})"
                )

    def _substitute(self, text: str, variables: Dict[str, Any]) -> str:
        try:
            return self._jinja_env.from_string(text).render(**variables)
        except TemplateSyntaxError as e:
            raise PlaybookLoadError(f"Template syntax error: {e}") from e
        except TemplateError as e:
            raise PlaybookLoadError(f"Load-time substitution failed: {e}") from e
