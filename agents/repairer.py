"""
Repair Agent - Proposes a modified task after a failed validation.
Repair 智能体 —— 验证失败后给出修改后的任务。

Satisfies the Repairer protocol:
    await repairer(node, result, issues) -> TaskNode | None

Returning None means "unrepairable": the controller fails the task at once
instead of spending the remaining retry budget.
返回 None 表示「无法修复」：控制器会立即判定任务失败，不再消耗剩余重试次数。
"""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, Field

from agents.base import BaseAgent
from agents.executor import task_from_node
from llm.client import LLMClient
from schema import ExecutionResult, Step, TaskNode

logger = logging.getLogger(__name__)

REPAIR_SYSTEM_PROMPT = """\
You are a task repair agent. A task was executed but its result failed
validation. Analyse the root cause and, if possible, rewrite the task's steps
so that a new attempt will succeed.

Principles:
- Keep the original intent of the task.
- Change as little as possible.
- Make sure every modified step is executable.

Respond with a valid JSON object in this exact format:
{
  "can_repair": true/false,
  "strategy": "How the task is being fixed",
  "modified_steps": [
    {"action": "...", "parameters": {}, "expected_result": "...", "order": 1}
  ]
}
"""


class _RepairStep(BaseModel):
    action: str
    parameters: dict = Field(default_factory=dict)
    expected_result: str = ""
    order: int | None = None


class _RepairPlan(BaseModel):
    can_repair: bool
    strategy: str = ""
    modified_steps: list[_RepairStep] = Field(default_factory=list)


class RepairAgent(BaseAgent):
    def __init__(self, llm_client: LLMClient):
        super().__init__(
            name="Repairer",
            system_prompt=REPAIR_SYSTEM_PROMPT,
            llm_client=llm_client,
        )

    async def __call__(self, node: TaskNode, result: ExecutionResult, issues: list[str]) -> TaskNode | None:
        return await self.repair(node, result, issues)

    async def repair(self, node: TaskNode, result: ExecutionResult, issues: list[str]) -> TaskNode | None:
        task = task_from_node(node)
        current_steps = "\n".join(f"  - {s.id}: {s.action}" for s in task.ordered_steps()) or "  (none)"
        prompt = (
            f"TASK ({task.id}): {task.description}\n"
            f"CURRENT STEPS:\n{current_steps}\n\n"
            f"EXECUTION OUTPUT:\n{json.dumps(result.output, ensure_ascii=False, default=str)[:2000]}\n"
            f"EXECUTION ERROR: {result.error or 'none'}\n\n"
            f"ISSUES FOUND:\n" + "\n".join(f"- {i}" for i in issues)
        )

        try:
            plan = _RepairPlan.model_validate(await self.ask_json(prompt, temperature=0.3))
        except Exception as exc:
            logger.error("[Repairer] Could not generate repair plan for %s: %s", node.id, exc)
            return None

        if not plan.can_repair or not plan.modified_steps:
            logger.warning("[Repairer] %s cannot be repaired automatically", node.id)
            return None

        steps = [
            Step(
                id=f"{task.id}_step_{i}",
                action=s.action,
                parameters=s.parameters,
                expected_result=s.expected_result,
                order=s.order or i,
            )
            for i, s in enumerate(plan.modified_steps, start=1)
        ]
        repaired = task.model_copy(update={
            "steps": steps,
            "metadata": {
                **task.metadata,
                "repair_strategy": plan.strategy,
                "repair_count": task.metadata.get("repair_count", 0) + 1,
            },
        })
        logger.info("[Repairer] %s repaired with %d steps: %s", node.id, len(steps), plan.strategy[:80])
        return node.model_copy(update={"payload": repaired})
