"""Tests for custom error classes."""

from remediation.playbooks.errors import (
    ApprovalRejected,
    ApprovalTimeout,
    ExpressionError,
    GraphError,
    PortNotConfiguredError,
    RollbackFailure,
    SafetyCheckFailure,
    SchedulingError,
    StepFailure,
    StepTimeoutError,
)
from remediation.playbooks.models import (
    FailAction,
    SafetyCheckRecord,
    SafetyCheckType,
    Severity,
)


class TestGraphError:
    """Test GraphError."""

    def test_dangling_reference_without_suggestions(self):
        """Test no suggestion section when nothing is close."""
        error = GraphError.dangling_reference("verify", "zzz", ["check", "restart"])

        error_msg = str(error)
        assert "Did you mean" not in error_msg
        assert "Defined steps (2)" in error_msg
        assert "- check" in error_msg

    def test_cyclic_message(self):
        """Test cycle path formatting."""
        error = GraphError.cyclic(["a", "b", "a"])

        assert "a -> b -> a" in str(error)
        assert error.step_id == "a"


class TestStepErrors:
    """Test step failure hierarchy."""

    def test_timeout_is_step_failure(self):
        """Test timeouts are retryable step failures."""
        error = StepTimeoutError("restart", 1.5)

        assert isinstance(error, StepFailure)
        assert "timed out after 1.5s" in str(error)
        assert error.step_id == "restart"

    def test_approval_timeout_is_timeout(self):
        """Test step approval timeouts reuse the timeout type."""
        assert isinstance(ApprovalTimeout("gate", 60), StepTimeoutError)

    def test_approval_rejected_names_approver(self):
        """Test rejection message includes the approver."""
        error = ApprovalRejected("gate", "alice")

        assert "denied by 'alice'" in str(error)

    def test_port_not_configured_has_tip(self):
        """Test missing port errors explain how to fix them."""
        error = PortNotConfiguredError("query", "queries")

        error_msg = str(error)
        assert "'queries' port" in error_msg
        assert "Tip:" in error_msg
        assert "EnginePorts(queries=...)" in error_msg

    def test_expression_error_lists_variables(self):
        """Test expression errors show available variables."""
        error = ExpressionError("branch", "cpu >", SyntaxError("bad"), ["cpu", "host"])

        error_msg = str(error)
        assert "Expression: cpu >" in error_msg
        assert "- cpu" in error_msg
        assert "- host" in error_msg

    def test_expression_error_without_variables(self):
        """Test expression errors with an empty context."""
        error = ExpressionError("branch", "x", NameError("x"))

        assert "(no variables available)" in str(error)


class TestOtherErrors:
    """Test scheduling, safety and rollback errors."""

    def test_scheduling_error_lists_pending(self):
        """Test blocked steps are listed in order."""
        error = SchedulingError("execution_1", {"c", "b"})

        assert error.pending_steps == ["b", "c"]
        assert "b, c" in str(error)

    def test_safety_check_failure_summarises_records(self):
        """Test blocking failures are summarised."""
        record = SafetyCheckRecord(
            check_id="cpu",
            type=SafetyCheckType.RESOURCE_LIMITS,
            passed=False,
            message="CPU usage 95% exceeds limit 80%",
            severity=Severity.HIGH,
            fail_action=FailAction.BLOCK,
        )

        error = SafetyCheckFailure([record])

        assert "1 blocking safety check(s) failed" in str(error)
        assert "cpu [high]: CPU usage 95%" in str(error)

    def test_rollback_failure_wraps_original(self):
        """Test rollback failures keep the original error."""
        original = RuntimeError("agent offline")
        error = RollbackFailure("undo", original)

        assert error.original_error is original
        assert "RuntimeError: agent offline" in str(error)
