"""RollbackExecutor - runs a playbook's rollback plan."""

import dataclasses
import logging
from typing import List

from .errors import RollbackFailure
from .executor import StepContext, StepExecutor
from .models import PlaybookExecution, RemediationPlaybook

logger = logging.getLogger(__name__)


class RollbackExecutor:
    """
    Executes the rollback plan sequentially, in declared order.

    Rollback steps go through the same executor as forward steps (config
    templating, timeout, their own retry policy) but never through the DAG
    scheduler. A failing rollback step is recorded in
    ``execution.rollback_failures`` and the plan continues with the next
    step; rollback is never triggered recursively.
    """

    def __init__(self, executor: StepExecutor) -> None:
        self.executor = executor

    async def run(
        self,
        playbook: RemediationPlaybook,
        execution: PlaybookExecution,
        context: StepContext,
    ) -> List[str]:
        """
        Run the rollback plan against the execution's context.

        Args:
            playbook: Playbook snapshot the execution runs
            execution: Execution being rolled back
            context: Step context of the execution

        Returns:
            Ids of rollback steps that succeeded, in order
        """
        if not playbook.rollback_plan:
            logger.warning(
                "Execution %s requested rollback but playbook %s has no rollback plan",
                execution.id,
                playbook.id,
            )
            return execution.rollback_actions

        logger.info(
            "Rolling back execution %s (%d steps)",
            execution.id,
            len(playbook.rollback_plan),
        )

        for step in playbook.rollback_plan:
            step_context = dataclasses.replace(context, attempt=1)
            outcome = await self.executor.execute(step, step_context)

            if outcome.succeeded:
                execution.rollback_actions.append(step.id)
                continue

            failure = RollbackFailure(
                step.id, outcome.exception or RuntimeError(outcome.error or "unknown error")
            )
            logger.error("%s (execution %s)", failure, execution.id)
            execution.rollback_failures[step.id] = outcome.error or str(failure)

        return execution.rollback_actions
