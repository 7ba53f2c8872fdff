"""Unit tests for RollbackExecutor and rollback through the scheduler."""

import pytest

from remediation.handlers import EnginePorts, build_default_handlers
from remediation.playbooks.approval import StepInteractionBroker
from remediation.playbooks.context import ExecutionContext
from remediation.playbooks.events import EventBus
from remediation.playbooks.executor import StepContext, StepExecutor
from remediation.playbooks.models import (
    ExecutionStatus,
    PlaybookExecution,
    RemediationPlaybook,
    StepStatus,
)
from remediation.playbooks.rollback import RollbackExecutor
from remediation.playbooks.scheduler import DagScheduler

from conftest import FakeAgentGateway


def agent_step(step_id: str, *deps: str, **kwargs) -> dict:
    return {
        "id": step_id,
        "type": "agent_action",
        "config": {"agent_id": "agent-db", "action": step_id},
        "dependencies": list(deps),
        **kwargs,
    }


def undo_step(step_id: str, target: str, **kwargs) -> dict:
    return {
        "id": step_id,
        "type": "rollback_step",
        "config": {"agent_id": "agent-db", "action": step_id, "target_step": target},
        **kwargs,
    }


class TestRollbackExecutor:
    """Test suite for RollbackExecutor."""

    @pytest.fixture
    def gateway(self) -> FakeAgentGateway:
        return FakeAgentGateway()

    @pytest.fixture
    def executor(self) -> StepExecutor:
        async def no_sleep(delay: float) -> None:
            pass

        return StepExecutor(build_default_handlers(), sleep=no_sleep)

    def context_for(self, execution: PlaybookExecution, gateway: FakeAgentGateway) -> StepContext:
        bus = EventBus()
        return StepContext(
            execution_id=execution.id,
            playbook_id=execution.playbook_id,
            variables=ExecutionContext(execution.id, {"pool_size": 20}),
            ports=EnginePorts(agents=gateway),
            interactions=StepInteractionBroker(bus),
            events=bus,
        )

    @pytest.mark.asyncio
    async def test_runs_plan_in_order(
        self, executor: StepExecutor, gateway: FakeAgentGateway
    ) -> None:
        """Test rollback steps run sequentially in declared order."""
        playbook = RemediationPlaybook(
            name="pool",
            steps=[agent_step("resize")],
            rollback_plan=[undo_step("restore_size", "resize"), undo_step("flush", "resize")],
        )
        execution = PlaybookExecution(playbook_id=playbook.id)

        actions = await RollbackExecutor(executor).run(
            playbook, execution, self.context_for(execution, gateway)
        )

        assert actions == ["restore_size", "flush"]
        assert gateway.actions == ["restore_size", "flush"]

    @pytest.mark.asyncio
    async def test_failures_recorded_and_plan_continues(
        self, executor: StepExecutor, gateway: FakeAgentGateway
    ) -> None:
        """Test a failing rollback step is recorded, not raised."""
        gateway.failures["restore_size"] = -1
        playbook = RemediationPlaybook(
            name="pool",
            steps=[agent_step("resize")],
            rollback_plan=[
                undo_step("restore_size", "resize", retry_count=1),
                undo_step("flush", "resize"),
            ],
        )
        execution = PlaybookExecution(playbook_id=playbook.id)

        actions = await RollbackExecutor(executor).run(
            playbook, execution, self.context_for(execution, gateway)
        )

        assert actions == ["flush"]
        assert "agent rejected 'restore_size'" in execution.rollback_failures["restore_size"]
        assert gateway.actions == ["restore_size", "restore_size", "flush"]

    @pytest.mark.asyncio
    async def test_empty_plan(self, executor: StepExecutor, gateway: FakeAgentGateway) -> None:
        """Test a playbook without a plan does nothing."""
        playbook = RemediationPlaybook(name="pool", steps=[agent_step("resize")])
        execution = PlaybookExecution(playbook_id=playbook.id)

        actions = await RollbackExecutor(executor).run(
            playbook, execution, self.context_for(execution, gateway)
        )

        assert actions == []
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_scheduler_rolls_back(
        self, executor: StepExecutor, gateway: FakeAgentGateway
    ) -> None:
        """Test on_failure=rollback ends the execution rolled_back."""
        gateway.failures["verify"] = -1
        playbook = RemediationPlaybook(
            name="pool",
            steps=[
                agent_step("resize"),
                agent_step("verify", "resize", on_failure="rollback"),
                agent_step("announce", "verify"),
            ],
            rollback_plan=[undo_step("restore_size", "resize")],
        )
        execution = PlaybookExecution(playbook_id=playbook.id)
        bus = EventBus()
        scheduler = DagScheduler(executor, RollbackExecutor(executor), bus)

        await scheduler.run(playbook, execution, self.context_for(execution, gateway))

        assert execution.status == ExecutionStatus.ROLLED_BACK
        assert execution.rollback_actions == ["restore_size"]
        assert execution.error.startswith("Step 'verify' failed:")
        assert execution.step_results["announce"].status == StepStatus.SKIPPED
        assert gateway.actions == ["resize", "verify", "restore_size"]
