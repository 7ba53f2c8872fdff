"""Unit tests for PlaybookValidator."""

from pathlib import Path

import pytest

from remediation.handlers import HandlerRegistry, NotificationHandler
from remediation.playbooks.models import RemediationPlaybook
from remediation.playbooks.validator import (
    PlaybookValidator,
    ValidationLevel,
    format_plan,
    main,
)


def agent_step(step_id: str, *deps: str, **kwargs) -> dict:
    return {
        "id": step_id,
        "type": "agent_action",
        "config": {"agent_id": "agent-1", "action": step_id},
        "dependencies": list(deps),
        **kwargs,
    }


def build(*steps: dict, **kwargs) -> RemediationPlaybook:
    kwargs.setdefault("description", "Test playbook")
    return RemediationPlaybook(name="validator_test", steps=list(steps), **kwargs)


def messages_at(validator: PlaybookValidator, level: ValidationLevel) -> list:
    return [m.message for m in validator.messages if m.level == level]


class TestPlaybookValidator:
    """Test suite for PlaybookValidator."""

    def test_valid_playbook(self) -> None:
        """Test a clean playbook reports success."""
        validator = PlaybookValidator()

        assert validator.validate(build(agent_step("a"), agent_step("b", "a")))
        assert validator.messages[0].level == ValidationLevel.SUCCESS

    def test_cycle_is_error(self) -> None:
        """Test graph errors surface as ERROR messages."""
        validator = PlaybookValidator()

        assert not validator.validate(build(agent_step("a", "b"), agent_step("b", "a")))
        assert validator.get_error_count() == 1
        assert "Circular dependency" in messages_at(validator, ValidationLevel.ERROR)[0]

    def test_missing_description_warns(self) -> None:
        """Test missing description is a warning only."""
        validator = PlaybookValidator()

        assert validator.validate(build(agent_step("a"), description=""))
        assert "Playbook description is missing" in messages_at(
            validator, ValidationLevel.WARNING
        )

    def test_non_semver_version_warns(self) -> None:
        """Test non-semantic versions are flagged."""
        validator = PlaybookValidator()
        validator.validate(build(agent_step("a"), version="latest"))

        assert any("not semantic" in m for m in messages_at(validator, ValidationLevel.WARNING))

    def test_approval_without_roles_warns(self) -> None:
        """Test require_approval with empty roles is flagged."""
        validator = PlaybookValidator()
        validator.validate(build(agent_step("a"), approval_roles=[]))

        assert any("approval_roles" in m for m in messages_at(validator, ValidationLevel.WARNING))

    def test_invalid_condition_syntax(self) -> None:
        """Test malformed branch conditions are errors."""
        branch = {
            "id": "branch",
            "type": "conditional_branch",
            "config": {"condition": "cpu >"},
        }
        validator = PlaybookValidator()

        assert not validator.validate(build(branch))
        assert any("Invalid condition syntax" in m for m in messages_at(validator, ValidationLevel.ERROR))

    def test_branch_target_without_dependency_is_error(self) -> None:
        """Test branch targets must depend on their branch."""
        branch = {
            "id": "branch",
            "type": "conditional_branch",
            "config": {"condition": "ok", "true_step": "a"},
        }
        validator = PlaybookValidator()

        assert not validator.validate(build(agent_step("a"), branch))
        assert any(
            "does not depend on branch step 'branch'" in m
            for m in messages_at(validator, ValidationLevel.ERROR)
        )

    def test_unused_output_var_warns(self) -> None:
        """Test output variables nobody reads are flagged."""
        validator = PlaybookValidator()
        validator.validate(build(agent_step("a", output_var="health")))

        assert "Output variable 'health' is never used" in messages_at(
            validator, ValidationLevel.WARNING
        )

    def test_used_output_var_not_flagged(self) -> None:
        """Test output variables used by a later step are fine."""
        consumer = {
            "id": "b",
            "type": "agent_action",
            "dependencies": ["a"],
            "config": {
                "agent_id": "agent-1",
                "action": "restart",
                "parameters": {"host": "{{ health.host }}"},
            },
        }
        validator = PlaybookValidator()
        validator.validate(build(agent_step("a", output_var="health"), consumer))

        assert not any("never used" in m for m in messages_at(validator, ValidationLevel.WARNING))

    def test_rollback_policy_without_plan(self) -> None:
        """Test on_failure=rollback with no plan warns."""
        validator = PlaybookValidator()
        validator.validate(build(agent_step("a", on_failure="rollback")))

        assert any("no rollback_plan" in m for m in messages_at(validator, ValidationLevel.WARNING))

    def test_time_window_hours_out_of_range(self) -> None:
        """Test time window hours must be 0-23."""
        check = {
            "id": "window",
            "type": "time_window",
            "config": {"allowed_hours_start": 9, "allowed_hours_end": 25},
        }
        validator = PlaybookValidator()

        assert not validator.validate(build(agent_step("a"), safety_checks=[check]))

    def test_custom_check_without_logic_warns(self) -> None:
        """Test custom checks with nothing to evaluate are flagged."""
        check = {"id": "custom", "type": "custom", "config": {}}
        validator = PlaybookValidator()
        validator.validate(build(agent_step("a"), safety_checks=[check]))

        assert any("always passes" in m for m in messages_at(validator, ValidationLevel.WARNING))

    def test_disabled_check_is_info(self) -> None:
        """Test disabled checks are reported at INFO level."""
        check = {"id": "cpu", "type": "resource_limits", "enabled": False}
        validator = PlaybookValidator()
        validator.validate(build(agent_step("a"), safety_checks=[check]))

        assert "Safety check is disabled" in messages_at(validator, ValidationLevel.INFO)

    def test_missing_handler(self) -> None:
        """Test step types without a handler are errors."""
        registry = HandlerRegistry([NotificationHandler()])
        validator = PlaybookValidator(handler_registry=registry)

        assert not validator.validate(build(agent_step("a")))
        assert any("No handler registered" in m for m in messages_at(validator, ValidationLevel.ERROR))

    def test_format_without_color(self) -> None:
        """Test plain message formatting."""
        validator = PlaybookValidator()
        validator.validate(build(agent_step("a", output_var="unused")))

        text = validator.messages[0].format(color=False)
        assert text.startswith("[WARNING] Step 'a' (output_var):")
        assert "\033[" not in text


class TestFormatPlan:
    """Test suite for execution plan rendering."""

    def test_plan_lists_waves_and_rollback(self) -> None:
        """Test waves and the rollback plan are printed."""
        playbook = build(
            agent_step("a"),
            agent_step("b", "a", on_failure="rollback"),
            agent_step("c", "a"),
            rollback_plan=[agent_step("undo")],
        )

        plan = format_plan(playbook)

        assert "Execution Plan (3 steps, 2 waves)" in plan
        assert "Wave 2:" in plan
        assert "[AGENT_ACTION] b (after a) on_failure=rollback" in plan
        assert "Rollback Plan (1 steps)" in plan


class TestValidatorCli:
    """Test suite for the validator command line."""

    def test_valid_file_exits_zero(self, tmp_path: Path, capsys) -> None:
        """Test a valid playbook exits with status 0."""
        path = tmp_path / "ok.yaml"
        path.write_text(
            """
name: ok
description: fine
steps:
  - id: a
    type: agent_action
    config: {agent_id: agent-1, action: go}
""",
            encoding="utf-8",
        )

        with pytest.raises(SystemExit) as exc_info:
            main([str(path), "--plan", "--no-color"])

        assert exc_info.value.code == 0
        assert "Wave 1:" in capsys.readouterr().out

    def test_missing_file_exits_one(self, tmp_path: Path) -> None:
        """Test load errors exit with status 1."""
        with pytest.raises(SystemExit) as exc_info:
            main([str(tmp_path / "missing.yaml"), "--no-color"])

        assert exc_info.value.code == 1
