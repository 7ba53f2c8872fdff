"""Unit tests for bundled playbook templates."""

import pytest

from remediation.playbooks import PlaybookRegistry, PlaybookValidator
from remediation.playbooks.errors import PlaybookNotFoundError
from remediation.playbooks.models import OnFailure, SafetyCheckType, StepType, TriggerType
from remediation.playbooks.templates import (
    create_template_playbook,
    list_templates,
    load_template,
)


class TestTemplates:
    """Test suite for the scenario templates."""

    def test_list_templates(self) -> None:
        """Test the bundled scenarios are discovered."""
        assert "database_connection_issue" in list_templates()

    def test_database_connection_template(self) -> None:
        """Test the database scenario shape."""
        playbook = load_template("database_connection_issue")

        assert playbook.name == "Database Connection Remediation"
        assert playbook.approval_roles == ["admin", "dba"]
        assert playbook.step_ids == [
            "check_db_health",
            "restart_connection_pool",
            "verify_connectivity",
        ]
        assert playbook.get_step("restart_connection_pool").on_failure == OnFailure.ROLLBACK
        assert playbook.rollback_plan[0].step_type == StepType.ROLLBACK_STEP
        assert playbook.triggers[0].type == TriggerType.TRIAGE_RESULT
        assert playbook.safety_checks[0].type == SafetyCheckType.TIME_WINDOW

    def test_template_validates(self) -> None:
        """Test the bundled scenario passes validation."""
        validator = PlaybookValidator()

        assert validator.validate(load_template("database_connection_issue"))

    def test_unknown_template(self) -> None:
        """Test unknown scenarios raise PlaybookNotFoundError."""
        with pytest.raises(PlaybookNotFoundError):
            load_template("printer_on_fire")

    def test_create_from_template(self) -> None:
        """Test each creation registers a fresh playbook."""
        registry = PlaybookRegistry()

        first = create_template_playbook(registry, "database_connection_issue")
        second = create_template_playbook(registry, "database_connection_issue", created_by="alice")

        assert first.id != second.id
        assert first.created_by == "system"
        assert second.created_by == "alice"
        assert len(registry) == 2
