"""Unit tests for playbook and execution models."""

import pytest
from pydantic import TypeAdapter, ValidationError

from remediation.playbooks.models import (
    AgentActionStep,
    ApprovalRequiredStep,
    ExecutionStatus,
    FileOperationConfig,
    OnFailure,
    PlaybookExecution,
    PlaybookStep,
    PlaybookTrigger,
    RemediationPlaybook,
    SafetyCheck,
    SafetyCheckType,
    StepType,
)

STEP_ADAPTER = TypeAdapter(PlaybookStep)


def agent_step(step_id: str, **kwargs) -> dict:
    return {
        "id": step_id,
        "type": "agent_action",
        "config": {"capability": "database_admin", "action": step_id},
        **kwargs,
    }


class TestSteps:
    """Test suite for the tagged step union."""

    def test_discriminator_selects_step_class(self) -> None:
        """Test the type tag picks the concrete step model."""
        step = STEP_ADAPTER.validate_python(agent_step("restart"))

        assert isinstance(step, AgentActionStep)
        assert step.step_type == StepType.AGENT_ACTION

    def test_step_defaults(self) -> None:
        """Test documented step defaults."""
        step = STEP_ADAPTER.validate_python(agent_step("restart"))

        assert step.name == "restart"
        assert step.timeout_seconds == 300
        assert step.retry_count == 0
        assert step.retry_delay_seconds == 30
        assert step.on_failure == OnFailure.STOP
        assert step.dependencies == []

    def test_unknown_type_rejected(self) -> None:
        """Test an unknown step type fails validation."""
        with pytest.raises(ValidationError):
            STEP_ADAPTER.validate_python({"id": "x", "type": "teleport", "config": {}})

    def test_agent_action_needs_target(self) -> None:
        """Test agent_action requires agent_id or capability."""
        with pytest.raises(ValidationError, match="agent_id or capability"):
            STEP_ADAPTER.validate_python(
                {"id": "x", "type": "agent_action", "config": {"action": "restart"}}
            )

    def test_move_requires_destination(self) -> None:
        """Test file move without destination is rejected."""
        with pytest.raises(ValidationError, match="destination"):
            FileOperationConfig(operation="move", path="/tmp/a")

    def test_approval_step_config_defaults(self) -> None:
        """Test approval_required steps need no config."""
        step = STEP_ADAPTER.validate_python({"id": "gate", "type": "approval_required"})

        assert isinstance(step, ApprovalRequiredStep)
        assert step.config.timeout_minutes == 30
        assert step.timeout_seconds == 1800
        assert step.wait_seconds == 1800

    def test_human_step_wait_is_tighter_timeout(self) -> None:
        """Test an explicit step timeout shorter than timeout_minutes wins."""
        step = STEP_ADAPTER.validate_python(
            {
                "id": "swap",
                "type": "manual_step",
                "timeout_seconds": 90,
                "config": {"instructions": "Swap the disk", "timeout_minutes": 10},
            }
        )

        assert step.wait_seconds == 90

    def test_negative_retry_count_rejected(self) -> None:
        """Test retry_count must be non-negative."""
        with pytest.raises(ValidationError):
            STEP_ADAPTER.validate_python(agent_step("x", retry_count=-1))

    def test_retry_delay_backoff(self) -> None:
        """Test exponential backoff of retry delays."""
        step = STEP_ADAPTER.validate_python(
            agent_step("x", retry_delay_seconds=2, retry_backoff=3)
        )

        assert step.retry_delay_for(1) == 2
        assert step.retry_delay_for(2) == 6
        assert step.retry_delay_for(3) == 18

    def test_steps_are_immutable(self) -> None:
        """Test step snapshots cannot be mutated."""
        step = STEP_ADAPTER.validate_python(agent_step("x"))

        with pytest.raises(ValidationError):
            step.retry_count = 5


class TestPlaybook:
    """Test suite for RemediationPlaybook."""

    def test_playbook_defaults(self) -> None:
        """Test playbook-level defaults."""
        playbook = RemediationPlaybook(name="Restart", steps=[agent_step("restart")])

        assert playbook.version == "1.0.0"
        assert playbook.require_approval is True
        assert playbook.approval_roles == ["admin", "devops"]
        assert playbook.max_concurrent_executions == 1
        assert playbook.is_active is True
        assert playbook.id.startswith("playbook_")

    def test_playbook_requires_steps(self) -> None:
        """Test a playbook with no steps is rejected."""
        with pytest.raises(ValidationError, match="at least one step"):
            RemediationPlaybook(name="Empty", steps=[])

    def test_get_step(self) -> None:
        """Test lookup of forward steps by id."""
        playbook = RemediationPlaybook(
            name="Two", steps=[agent_step("a"), agent_step("b", dependencies=["a"])]
        )

        assert playbook.get_step("b").dependencies == ["a"]
        assert playbook.get_step("missing") is None
        assert playbook.step_ids == ["a", "b"]

    def test_trigger_priority_bounds(self) -> None:
        """Test trigger priority is limited to 1-5."""
        with pytest.raises(ValidationError):
            PlaybookTrigger(type="alert", priority=6)

    def test_custom_validation_alias(self) -> None:
        """Test the legacy custom_validation check type maps to custom."""
        check = SafetyCheck(id="c", type="custom_validation")

        assert check.type == SafetyCheckType.CUSTOM


class TestExecution:
    """Test suite for PlaybookExecution."""

    def test_finish_stamps_timing(self) -> None:
        """Test finish records status, completion time and duration."""
        execution = PlaybookExecution(playbook_id="p")
        execution.started_at = execution.created_at
        execution.current_steps = ["a"]

        execution.finish(ExecutionStatus.FAILED, error="boom")

        assert execution.is_terminal
        assert execution.error == "boom"
        assert execution.current_steps == []
        assert execution.completed_at is not None
        assert execution.total_duration_seconds >= 0

    def test_finish_without_start_has_no_duration(self) -> None:
        """Test executions that never ran have no duration."""
        execution = PlaybookExecution(playbook_id="p")

        execution.finish(ExecutionStatus.CANCELLED)

        assert execution.total_duration_seconds is None
