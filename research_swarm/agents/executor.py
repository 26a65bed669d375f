# =============================================================================
# Executor — Parallel Fan-Out of Plan Tasks to Expert Sessions
# =============================================================================
#
# All tasks of a plan are flattened (step order, then task order) and
# dispatched concurrently, one expert turn per task. Each turn goes
# through the Retry Envelope with the run's cancellation token.
#
# FAILURE POLICY (per task, never fatal to the batch):
#   unknown expert name        → "Error: Expert not assigned."
#   gateway failure / retries  → "Error: Retrieval failed."
#   empty reply                → "No response."
# Cancellation is the exception: the first Aborted cancels every
# in-flight task and propagates, so a stopped run never returns a
# partial batch.
#
# Results come back in task-declaration order regardless of which
# expert answered first (asyncio.gather preserves argument order).
# =============================================================================

from __future__ import annotations

import asyncio
import logging

from research_swarm.agents.experts import ExpertRegistry
from research_swarm.models.schemas import ExpertResult, Plan, Task
from research_swarm.services.cancellation import Aborted, CancellationToken

logger = logging.getLogger(__name__)

EXPERT_NOT_ASSIGNED = "Error: Expert not assigned."
RETRIEVAL_FAILED = "Error: Retrieval failed."
NO_RESPONSE = "No response."


async def dispatch_task(
    task: Task,
    registry: ExpertRegistry,
    token: CancellationToken,
) -> ExpertResult:
    """Run one task against its expert, converting failures to results."""
    token.raise_if_cancelled()
    expert = registry.get(task.expert)
    if expert is None:
        logger.warning("Task targets unknown expert '%s'", task.expert)
        return ExpertResult(
            expert=task.expert, question=task.question, answer=EXPERT_NOT_ASSIGNED,
        )

    try:
        answer = await expert.ask(task.question, token)
    except Aborted:
        raise
    except Exception as e:
        logger.warning("Expert '%s' failed: %s", task.expert, e)
        answer = RETRIEVAL_FAILED

    return ExpertResult(
        expert=task.expert, question=task.question, answer=answer or NO_RESPONSE,
    )


async def execute_tasks(
    plan: Plan,
    registry: ExpertRegistry,
    token: CancellationToken,
) -> list[ExpertResult]:
    """
    Execute every task of `plan` concurrently.

    Returns:
        One ExpertResult per task, in declaration order.

    Raises:
        Aborted: The run was cancelled; no partial results are returned.
    """
    tasks = plan.all_tasks()
    if not tasks:
        return []

    token.raise_if_cancelled()
    logger.info("Execution: Deploying %d tasks...", len(tasks))

    futures = [
        asyncio.ensure_future(dispatch_task(task, registry, token))
        for task in tasks
    ]
    try:
        results = await asyncio.gather(*futures)
    except (Aborted, asyncio.CancelledError):
        for future in futures:
            future.cancel()
        await asyncio.gather(*futures, return_exceptions=True)
        raise

    failed = sum(1 for r in results if r.answer.startswith("Error:"))
    logger.info("Execution complete: %d results (%d failed)", len(results), failed)
    return list(results)
