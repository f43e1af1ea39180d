"""
Executor Agent - Runs a task's steps in order through the LLM.
Executor 智能体 —— 通过 LLM 依次执行任务中的步骤。

Satisfies the controller's Executor protocol:  await executor(node) -> ExecutionResult
满足控制器的 Executor 协议：await executor(node) -> ExecutionResult

For each step (sorted by `order`) the LLM reports {success, output, error};
execution stops at the first failed step. Outputs of earlier steps are passed
as context to later ones.
按 order 排序逐步执行，每一步由 LLM 返回 {success, output, error}；
遇到第一个失败的步骤即停止。前序步骤的输出作为后续步骤的上下文。
"""

from __future__ import annotations

import logging
import time
from typing import Any

from pydantic import BaseModel, ValidationError

from agents.base import BaseAgent
from llm.client import LLMClient
from schema import ExecutionResult, Step, Task, TaskNode

logger = logging.getLogger(__name__)

EXECUTOR_SYSTEM_PROMPT = """\
You are a task execution agent. You receive one step of a larger task together
with the results of the previous steps. Carry out the step as well as you can
and report the outcome.

Respond with a valid JSON object in this exact format:
{
  "success": true/false,
  "output": "What was produced by this step",
  "error": "Why the step failed (empty when success is true)"
}
"""


class StepOutcome(BaseModel):
    """Structured reply for one step. / 单个步骤的结构化结果。"""
    step_id: str = ""
    success: bool
    output: str = ""
    error: str | None = None


def task_from_node(node: TaskNode) -> Task:
    """
    Interpret a node's payload as a Task. Plain strings become a one-step task.
    将节点 payload 解释为 Task；纯字符串视为只有一个步骤的任务。
    """
    if isinstance(node.payload, Task):
        return node.payload
    if isinstance(node.payload, dict):
        return Task.model_validate({"id": node.id, **node.payload})
    description = str(node.payload or node.id)
    return Task(id=node.id, description=description, steps=[Step(id=f"{node.id}_step_1", action=description)])


class ExecutorAgent(BaseAgent):
    """
    Step-by-step LLM executor with a per-task execution history.
    按步骤执行的 LLM 执行者，保存每个任务的执行历史。
    """

    def __init__(self, llm_client: LLMClient):
        super().__init__(
            name="Executor",
            system_prompt=EXECUTOR_SYSTEM_PROMPT,
            llm_client=llm_client,
        )
        self._history: dict[str, list[ExecutionResult]] = {}

    async def __call__(self, node: TaskNode) -> ExecutionResult:
        return await self.execute(node)

    async def execute(self, node: TaskNode) -> ExecutionResult:
        task = task_from_node(node)
        started = time.monotonic()
        logger.info("[Executor] Executing task %s: %s", task.id, task.description[:80])

        outcomes: list[StepOutcome] = []
        for step in task.ordered_steps():
            outcome = await self._execute_step(task, step, outcomes)
            outcomes.append(outcome)
            if not outcome.success:
                logger.warning("[Executor] Step %s failed: %s", step.id, outcome.error)
                break

        success = all(o.success for o in outcomes)
        failed = next((o for o in outcomes if not o.success), None)
        result = ExecutionResult(
            task_id=node.id,
            success=success,
            output={
                "steps": [o.model_dump() for o in outcomes],
                "summary": self._summarize(outcomes),
            },
            error=None if success else (failed.error if failed else None) or "Unknown error",
            duration_ms=(time.monotonic() - started) * 1000,
        )
        self._history.setdefault(node.id, []).append(result)
        logger.info("[Executor] Task %s finished: success=%s (%.0fms)", node.id, success, result.duration_ms)
        return result

    async def _execute_step(self, task: Task, step: Step, previous: list[StepOutcome]) -> StepOutcome:
        context = "\n".join(
            f"- {o.step_id}: {'SUCCESS' if o.success else 'FAILED'} - {o.output[:300]}" for o in previous
        ) or "This is the first step."
        prompt = (
            f"TASK ({task.id}): {task.description}\n\n"
            f"CURRENT STEP ({step.id}): {step.action}\n"
            f"PARAMETERS: {step.parameters}\n"
            f"EXPECTED RESULT: {step.expected_result or 'not specified'}\n\n"
            f"PREVIOUS STEPS:\n{context}"
        )
        try:
            data: Any = await self.ask_json(prompt, temperature=0.3)
            return StepOutcome.model_validate({**data, "step_id": step.id})
        except (ValidationError, TypeError) as exc:
            return StepOutcome(step_id=step.id, success=False, error=f"Malformed step result: {exc}")
        except Exception as exc:
            logger.error("[Executor] LLM call failed for step %s: %s", step.id, exc)
            return StepOutcome(step_id=step.id, success=False, error=f"Step execution error: {exc}")

    @staticmethod
    def _summarize(outcomes: list[StepOutcome]) -> str:
        ok = sum(1 for o in outcomes if o.success)
        return f"{ok}/{len(outcomes)} steps succeeded, {len(outcomes) - ok} failed"

    def get_history(self, task_id: str) -> list[ExecutionResult]:
        return list(self._history.get(task_id, []))

    def clear_history(self) -> None:
        self._history.clear()
