"""Unit tests for built-in step handlers and the handler registry."""

import asyncio
import time

import pytest

from remediation.handlers import (
    AgentActionHandler,
    AgentInfo,
    ApiCallHandler,
    ApprovalStepHandler,
    ConditionalBranchHandler,
    DatabaseQueryHandler,
    EnginePorts,
    FileOperationHandler,
    HandlerRegistry,
    HttpxHealthProbe,
    ManualStepHandler,
    NotificationHandler,
    RollbackActionHandler,
    build_default_handlers,
)
from remediation.playbooks.approval import StepInteractionBroker
from remediation.playbooks.context import ExecutionContext
from remediation.playbooks.errors import ApprovalTimeout, PortNotConfiguredError, StepFailure
from remediation.playbooks.events import EventBus
from remediation.playbooks.executor import StepContext
from remediation.playbooks.models import (
    AgentActionStep,
    ApiCallStep,
    ApprovalRequiredStep,
    ConditionalBranchStep,
    DatabaseQueryStep,
    FileOperationStep,
    ManualStep,
    NotificationStep,
    RollbackStep,
    StepType,
)

from conftest import (
    FakeAgentGateway,
    FakeApiClient,
    FakeFileOperator,
    FakeNotificationSender,
    FakeQueryRunner,
)


def make_context(ports: EnginePorts, **variables) -> StepContext:
    bus = EventBus()
    return StepContext(
        execution_id="execution_1",
        playbook_id="playbook_1",
        variables=ExecutionContext("execution_1", variables),
        ports=ports,
        interactions=StepInteractionBroker(bus),
        events=bus,
    )


class TestAgentActionHandler:
    """Test suite for agent and rollback handlers."""

    @pytest.mark.asyncio
    async def test_explicit_agent(self) -> None:
        """Test dispatch to an explicit agent id."""
        gateway = FakeAgentGateway()
        step = AgentActionStep(
            id="restart", config={"agent_id": "agent-web", "action": "restart", "parameters": {"n": 1}}
        )

        output = await AgentActionHandler().execute(step, make_context(EnginePorts(agents=gateway)))

        assert output["agent_id"] == "agent-web"
        assert output["message_id"] == "msg-1"
        assert gateway.sent[0]["parameters"] == {"n": 1}
        assert gateway.sent[0]["step_id"] == "restart"

    @pytest.mark.asyncio
    async def test_capability_lookup_skips_inactive(self) -> None:
        """Test capability lookup picks the first active agent."""
        gateway = FakeAgentGateway(
            agents=[
                AgentInfo(id="old", name="Old", capabilities=["database_admin"], active=False),
                AgentInfo(id="new", name="New", capabilities=["database_admin"]),
            ]
        )
        step = AgentActionStep(id="vacuum", config={"capability": "database_admin", "action": "vacuum"})

        output = await AgentActionHandler().execute(step, make_context(EnginePorts(agents=gateway)))

        assert output["agent_id"] == "new"

    @pytest.mark.asyncio
    async def test_no_capable_agent(self) -> None:
        """Test a capability nobody has fails the step."""
        step = AgentActionStep(id="scan", config={"capability": "security_scan", "action": "scan"})

        with pytest.raises(StepFailure, match="security_scan"):
            await AgentActionHandler().execute(
                step, make_context(EnginePorts(agents=FakeAgentGateway()))
            )

    @pytest.mark.asyncio
    async def test_missing_port(self) -> None:
        """Test steps fail when the agents port is absent."""
        step = AgentActionStep(id="restart", config={"agent_id": "a", "action": "restart"})

        with pytest.raises(PortNotConfiguredError) as exc_info:
            await AgentActionHandler().execute(step, make_context(EnginePorts()))

        assert exc_info.value.port_name == "agents"

    @pytest.mark.asyncio
    async def test_rollback_reports_target(self) -> None:
        """Test rollback output names the compensated step."""
        step = RollbackStep(
            id="undo",
            config={"agent_id": "agent-db", "action": "restore", "target_step": "restart"},
        )

        output = await RollbackActionHandler().execute(
            step, make_context(EnginePorts(agents=FakeAgentGateway()))
        )

        assert output["target_step"] == "restart"
        assert output["action"] == "restore"


class TestPortHandlers:
    """Test suite for handlers that wrap a single port."""

    @pytest.mark.asyncio
    async def test_api_call_uses_step_timeout(self) -> None:
        """Test the API timeout falls back to the step timeout."""
        client = FakeApiClient()
        step = ApiCallStep(
            id="scale", timeout_seconds=12, config={"url": "http://api/scale", "method": "POST", "body": {"n": 3}}
        )

        output = await ApiCallHandler().execute(step, make_context(EnginePorts(api=client)))

        assert output["status_code"] == 200
        assert client.requests[0]["timeout"] == 12
        assert client.requests[0]["method"] == "POST"

    @pytest.mark.asyncio
    async def test_database_query(self) -> None:
        """Test queries go through the query port."""
        runner = FakeQueryRunner()
        step = DatabaseQueryStep(
            id="count", config={"query": "SELECT count(*) FROM pg_stat_activity", "database": "main"}
        )

        output = await DatabaseQueryHandler().execute(step, make_context(EnginePorts(queries=runner)))

        assert output["row_count"] == 1
        assert runner.queries[0]["database"] == "main"

    @pytest.mark.asyncio
    async def test_file_operation(self) -> None:
        """Test file operations go through the file port."""
        operator = FakeFileOperator()
        step = FileOperationStep(
            id="rotate", config={"operation": "move", "path": "/var/log/app.log", "destination": "/tmp/app.log"}
        )

        await FileOperationHandler().execute(step, make_context(EnginePorts(files=operator)))

        assert operator.operations[0]["destination"] == "/tmp/app.log"

    @pytest.mark.asyncio
    async def test_notification_sent(self) -> None:
        """Test notification output carries sent and sent_at."""
        sender = FakeNotificationSender()
        step = NotificationStep(
            id="notify", config={"channel": "slack", "recipients": ["#ops"], "message": "done"}
        )

        output = await NotificationHandler().execute(
            step, make_context(EnginePorts(notifications=sender))
        )

        assert output["sent"] is True
        assert output["sent_at"] == "2026-01-01T00:00:00+00:00"
        assert sender.sent[0]["channel"] == "slack"

    @pytest.mark.asyncio
    async def test_notification_failure_fails_step(self) -> None:
        """Test a sender error fails the step."""
        step = NotificationStep(id="notify", config={"message": "done"})

        with pytest.raises(StepFailure, match="Notification via email failed"):
            await NotificationHandler().execute(
                step, make_context(EnginePorts(notifications=FakeNotificationSender(fail=True)))
            )


class TestConditionalBranchHandler:
    """Test suite for ConditionalBranchHandler."""

    @pytest.mark.asyncio
    async def test_true_branch(self) -> None:
        """Test a true condition selects true_step."""
        step = ConditionalBranchStep(
            id="check",
            config={"condition": "connections > 100", "true_step": "restart", "false_step": "monitor"},
        )

        output = await ConditionalBranchHandler().execute(
            step, make_context(EnginePorts(), connections=150)
        )

        assert output["result"] is True
        assert output["next_step"] == "restart"
        assert output["skipped_step"] == "monitor"

    @pytest.mark.asyncio
    async def test_false_branch(self) -> None:
        """Test a false condition selects false_step."""
        step = ConditionalBranchStep(
            id="check",
            config={"condition": "connections > 100", "true_step": "restart", "false_step": "monitor"},
        )

        output = await ConditionalBranchHandler().execute(
            step, make_context(EnginePorts(), connections=5)
        )

        assert output["next_step"] == "monitor"


class TestInteractionHandlers:
    """Test suite for approval and manual step handlers."""

    @pytest.mark.asyncio
    async def test_approval_step(self) -> None:
        """Test the approval handler waits on the broker."""
        context = make_context(EnginePorts())
        step = ApprovalRequiredStep(id="gate", config={"approvers": ["alice"]})
        waiting = asyncio.create_task(ApprovalStepHandler().execute(step, context))

        while not context.interactions.pending():
            await asyncio.sleep(0)
        request = context.interactions.pending()[0]
        assert request.payload["message"] == "Approval required for step 'gate'"
        context.interactions.approve_step("execution_1", "gate", "alice")

        output = await waiting
        assert output["approved"] is True
        assert ApprovalStepHandler.manages_timeout

    @pytest.mark.asyncio
    async def test_manual_step(self) -> None:
        """Test the manual handler returns the completion record."""
        context = make_context(EnginePorts())
        step = ManualStep(id="swap", config={"instructions": "Swap the disk"})
        waiting = asyncio.create_task(ManualStepHandler().execute(step, context))

        while not context.interactions.pending():
            await asyncio.sleep(0)
        context.interactions.complete_manual_step("execution_1", "swap", "ops", {"slot": 2})

        output = await waiting
        assert output["completed_by"] == "ops"
        assert output["output"] == {"slot": 2}

    @pytest.mark.asyncio
    async def test_manual_step_honours_step_timeout(self) -> None:
        """Test the step timeout caps the wait when it is shorter than timeout_minutes."""
        context = make_context(EnginePorts())
        step = ManualStep(id="swap", timeout_seconds=0.2, config={"instructions": "Swap the disk"})

        started = time.monotonic()
        with pytest.raises(ApprovalTimeout) as exc_info:
            await ManualStepHandler().execute(step, context)
        elapsed = time.monotonic() - started

        assert 0.15 <= elapsed < 1.5
        assert exc_info.value.timeout_seconds == 0.2
        assert context.interactions.pending() == []

    @pytest.mark.asyncio
    async def test_approval_step_honours_step_timeout(self) -> None:
        """Test an approval with a short step timeout expires on that timeout."""
        context = make_context(EnginePorts())
        step = ApprovalRequiredStep(id="gate", timeout_seconds=0.1, config={"timeout_minutes": 30})

        started = time.monotonic()
        with pytest.raises(ApprovalTimeout):
            await ApprovalStepHandler().execute(step, context)

        assert 0.05 <= time.monotonic() - started < 1.5

    @pytest.mark.asyncio
    async def test_wrong_step_type_fails_step(self) -> None:
        """Test a handler given another step type fails the step instead of running it."""
        step = NotificationStep(id="notify", config={"message": "done"})

        with pytest.raises(StepFailure, match="cannot run as ManualStep"):
            await ManualStepHandler().execute(step, make_context(EnginePorts()))


class TestHandlerRegistry:
    """Test suite for HandlerRegistry."""

    def test_default_registry_is_complete(self) -> None:
        """Test the built-in registry covers every step type."""
        registry = build_default_handlers()

        assert registry.missing_types() == []
        assert len(registry) == len(StepType)
        assert "agent_action" in registry
        assert "unknown" not in registry

    def test_duplicate_rejected(self) -> None:
        """Test registering a second handler for a type fails."""
        registry = HandlerRegistry([NotificationHandler()])

        with pytest.raises(ValueError, match="already registered"):
            registry.register(NotificationHandler())

    def test_replace(self) -> None:
        """Test replace=True overrides the handler."""
        registry = HandlerRegistry([NotificationHandler()])
        replacement = NotificationHandler()

        registry.register(replacement, replace=True)

        assert registry.get(StepType.NOTIFICATION) is replacement

    def test_non_handler_rejected(self) -> None:
        """Test only StepHandler instances are accepted."""
        with pytest.raises(TypeError):
            HandlerRegistry().register(object())  # type: ignore[arg-type]

    def test_get_or_raise(self) -> None:
        """Test missing types raise KeyError."""
        registry = HandlerRegistry()

        assert StepType.MANUAL_STEP in registry.missing_types()
        with pytest.raises(KeyError):
            registry.get_or_raise("manual_step")


class TestHttpxHealthProbe:
    """Test suite for the default health probe's service map."""

    @pytest.mark.asyncio
    async def test_service_map(self) -> None:
        """Test unknown services default to healthy."""
        probe = HttpxHealthProbe({"db": False})

        assert await probe.service_healthy("db") is False
        assert await probe.service_healthy("cache") is True
