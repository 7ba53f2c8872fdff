"""Built-in handlers for every step type."""

import logging
from typing import Any, Dict

from ..playbooks.errors import StepFailure
from ..playbooks.models import (
    AgentActionConfig,
    AgentActionStep,
    ApiCallStep,
    ApprovalRequiredStep,
    ConditionalBranchStep,
    DatabaseQueryStep,
    FileOperationStep,
    ManualStep,
    NotificationStep,
    RollbackStep,
    StepBase,
    StepType,
    utcnow,
)
from .base import StepContext, StepHandler
from .registry import HandlerRegistry

logger = logging.getLogger(__name__)


class AgentActionHandler(StepHandler):
    """
    Send an action to an agent resolved by id or by capability.

    Fire-and-forget: the step completes once the agent acknowledges, it does
    not wait for the agent to finish the work.
    """

    step_type = StepType.AGENT_ACTION
    name = "agent_action"
    description = "Dispatch an action to an agent"

    async def execute(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        step = self.expect(step, AgentActionStep)
        return await self._dispatch(step, step.config, context)

    async def _dispatch(
        self, step: StepBase, config: AgentActionConfig, context: StepContext
    ) -> Dict[str, Any]:
        gateway = self.require_port(step, context.ports.agents, "agents")

        agent_id = config.agent_id
        if not agent_id:
            agents = await gateway.find_agents(config.capability or "")
            active = [a for a in agents if a.active]
            if not active:
                raise StepFailure(
                    step.id,
                    f"No active agent found with capability '{config.capability}'",
                )
            agent_id = active[0].id

        logger.debug(
            "Dispatching '%s' to agent %s (execution=%s, step=%s)",
            config.action,
            agent_id,
            context.execution_id,
            step.id,
        )
        ack = await gateway.send(
            agent_id,
            config.action,
            config.parameters,
            context.execution_id,
            step.id,
        )
        return {
            "agent_id": agent_id,
            "action": config.action,
            "message_id": ack.get("message_id"),
            "acknowledgement": ack,
            "sent_at": utcnow().isoformat(),
        }


class RollbackActionHandler(AgentActionHandler):
    """Compensating agent action used in rollback plans."""

    step_type = StepType.ROLLBACK_STEP
    name = "rollback_step"
    description = "Dispatch a compensating action to an agent"

    async def execute(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        step = self.expect(step, RollbackStep)
        output = await self._dispatch(step, step.config, context)
        output["target_step"] = step.config.target_step
        return output


class ApiCallHandler(StepHandler):
    step_type = StepType.API_CALL
    name = "api_call"
    description = "Call an HTTP API"

    async def execute(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        step = self.expect(step, ApiCallStep)
        client = self.require_port(step, context.ports.api, "api")
        config = step.config
        return await client.request(
            config.method,
            config.url,
            config.headers,
            config.body,
            config.timeout_seconds or step.timeout_seconds,
        )


class DatabaseQueryHandler(StepHandler):
    step_type = StepType.DATABASE_QUERY
    name = "database_query"
    description = "Run a database query"

    async def execute(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        step = self.expect(step, DatabaseQueryStep)
        runner = self.require_port(step, context.ports.queries, "queries")
        config = step.config
        return await runner.run(config.query, config.parameters, config.database)


class FileOperationHandler(StepHandler):
    step_type = StepType.FILE_OPERATION
    name = "file_operation"
    description = "Read, write, delete or move a file"

    async def execute(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        step = self.expect(step, FileOperationStep)
        operator = self.require_port(step, context.ports.files, "files")
        config = step.config
        return await operator.perform(
            config.operation, config.path, config.content, config.destination
        )


class NotificationHandler(StepHandler):
    """Send a notification; the output always carries ``sent`` and ``sent_at``."""

    step_type = StepType.NOTIFICATION
    name = "notification"
    description = "Send a notification"

    async def execute(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        step = self.expect(step, NotificationStep)
        sender = self.require_port(step, context.ports.notifications, "notifications")
        config = step.config

        try:
            receipt = await sender.send(
                config.channel, config.recipients, config.subject, config.message
            )
        except Exception as e:
            raise StepFailure(
                step.id, f"Notification via {config.channel} failed: {e}"
            ) from e

        return {
            "sent": True,
            "channel": config.channel,
            "recipients": config.recipients,
            "sent_at": (receipt or {}).get("sent_at") or utcnow().isoformat(),
        }


class ApprovalStepHandler(StepHandler):
    """
    Block until an approver decides on this step.

    Waits for the shorter of the step timeout and the config's
    ``timeout_minutes``, then fails the step with an approval timeout.
    """

    step_type = StepType.APPROVAL_REQUIRED
    name = "approval_required"
    description = "Wait for a step-level approval"
    manages_timeout = True

    async def execute(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        step = self.expect(step, ApprovalRequiredStep)
        config = step.config
        return await context.interactions.request_approval(
            context.execution_id,
            context.playbook_id,
            step.id,
            approvers=config.approvers,
            message=config.message or f"Approval required for step '{step.name}'",
            timeout_seconds=step.wait_seconds,
        )


class ManualStepHandler(StepHandler):
    """Hand a task to an operator and block until it is marked complete."""

    step_type = StepType.MANUAL_STEP
    name = "manual_step"
    description = "Wait for an operator to complete a manual task"
    manages_timeout = True

    async def execute(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        step = self.expect(step, ManualStep)
        config = step.config
        return await context.interactions.request_manual(
            context.execution_id,
            context.playbook_id,
            step.id,
            instructions=config.instructions,
            assignee=config.assignee,
            timeout_seconds=step.wait_seconds,
        )


class ConditionalBranchHandler(StepHandler):
    """
    Evaluate the branch condition and report the successor to take.

    The scheduler skips the branch target that was not taken.
    """

    step_type = StepType.CONDITIONAL_BRANCH
    name = "conditional_branch"
    description = "Choose a successor from a boolean expression"

    async def execute(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        step = self.expect(step, ConditionalBranchStep)
        config = step.config
        result = context.variables.evaluate_condition(config.condition, step.id)
        return {
            "condition": config.condition,
            "result": result,
            "next_step": config.true_step if result else config.false_step,
            "skipped_step": config.false_step if result else config.true_step,
        }


def build_default_handlers() -> HandlerRegistry:
    """Registry holding a built-in handler for every step type."""
    return HandlerRegistry(
        [
            AgentActionHandler(),
            ApiCallHandler(),
            DatabaseQueryHandler(),
            FileOperationHandler(),
            NotificationHandler(),
            ApprovalStepHandler(),
            ConditionalBranchHandler(),
            ManualStepHandler(),
            RollbackActionHandler(),
        ]
    )
