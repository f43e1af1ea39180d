"""
Planner Agent - Decomposes a natural-language goal into a TaskPlan.
Planner 智能体 —— 将自然语言目标分解为 TaskPlan。

One LLM call returns tasks with ids, dependencies, priorities and steps.
The reply is normalised before it reaches the scheduler:
  - dependencies on unknown ids are dropped (with a warning)
  - the plan is capped at config.MAX_TASKS_PER_PLAN tasks
  - an unparseable reply degrades to a single-task plan

一次 LLM 调用返回任务（含 ID、依赖、优先级和步骤）。交给调度器前先做规范化：
  - 丢弃指向未知 ID 的依赖（记录警告）
  - 任务数不超过 config.MAX_TASKS_PER_PLAN
  - 无法解析时降级为单任务计划
"""

from __future__ import annotations

import logging
from typing import Any

import config
from agents.base import BaseAgent
from llm.client import LLMClient
from schema import Step, Task, TaskPlan, TaskPriority

logger = logging.getLogger(__name__)

PLANNER_SYSTEM_PROMPT = """\
You are a task planning agent. Decompose the user's goal into a small set of
dependent tasks that can be executed by another agent.

Rules:
1. Create between 1 and {max_tasks} tasks. Independent tasks should NOT depend
   on each other so they can run in parallel.
2. Task ids are short strings such as "task_1", "task_2".
3. "dependencies" lists ids of tasks that must finish first. Never create cycles.
4. "priority" is one of "low", "medium", "high", "critical".
5. Each task has 1-4 concrete steps with an action, parameters and expected result.

You MUST respond with a valid JSON object in this exact format:
{{
  "summary": "One sentence describing the plan",
  "tasks": [
    {{
      "id": "task_1",
      "description": "What this task accomplishes",
      "priority": "high",
      "dependencies": [],
      "steps": [
        {{"action": "Concrete action", "parameters": {{}}, "expected_result": "What success looks like"}}
      ]
    }}
  ]
}}
"""

_PRIORITY_NAMES = {p.name.lower(): p for p in TaskPriority}


class PlannerAgent(BaseAgent):
    """
    Goal -> TaskPlan.
    目标 -> 任务计划。
    """

    def __init__(self, llm_client: LLMClient, max_tasks: int | None = None):
        self.max_tasks = max_tasks or config.MAX_TASKS_PER_PLAN
        super().__init__(
            name="Planner",
            system_prompt=PLANNER_SYSTEM_PROMPT.format(max_tasks=self.max_tasks),
            llm_client=llm_client,
        )

    async def create_plan(self, goal: str) -> TaskPlan:
        """
        Ask the LLM for a decomposition and return a normalised TaskPlan.
        请求 LLM 分解目标，并返回规范化后的 TaskPlan。
        """
        self.reset()
        logger.info("[Planner] Creating plan for: %s", goal[:80])
        try:
            data = await self.think_json(f"Create an execution plan for this goal:\n\nGoal: {goal}", temperature=0.3)
            plan = self._parse_plan(goal, data)
        except Exception as exc:
            logger.warning("[Planner] Could not build plan from LLM reply (%s); using single-task fallback", exc)
            plan = self._fallback_plan(goal)

        if not plan.tasks:
            logger.warning("[Planner] LLM returned no tasks; using single-task fallback")
            plan = self._fallback_plan(goal)

        logger.info("[Planner] Plan %s created with %d tasks", plan.id, len(plan.tasks))
        return plan

    # ------------------------------------------------------------------
    # Parsing helpers
    # 解析辅助方法
    # ------------------------------------------------------------------

    def _parse_plan(self, goal: str, data: Any) -> TaskPlan:
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")

        raw_tasks = data.get("tasks") or []
        if len(raw_tasks) > self.max_tasks:
            logger.warning("[Planner] Plan has %d tasks, keeping the first %d", len(raw_tasks), self.max_tasks)
            raw_tasks = raw_tasks[: self.max_tasks]

        tasks: list[Task] = []
        seen: set[str] = set()
        for i, raw in enumerate(raw_tasks, start=1):
            task_id = str(raw.get("id") or f"task_{i}")
            if task_id in seen:
                task_id = f"{task_id}_{i}"
            seen.add(task_id)
            tasks.append(Task(
                id=task_id,
                description=str(raw.get("description", "")),
                steps=self._parse_steps(task_id, raw.get("steps") or []),
                dependencies=[str(d) for d in raw.get("dependencies") or []],
                priority=self._parse_priority(raw.get("priority")),
            ))

        # 丢弃指向未知任务（或自身）的依赖
        for task in tasks:
            kept = [d for d in task.dependencies if d in seen and d != task.id]
            dropped = set(task.dependencies) - set(kept)
            if dropped:
                logger.warning("[Planner] %s: dropping unknown dependencies %s", task.id, sorted(dropped))
                task.dependencies = kept

        return TaskPlan(original_input=goal, summary=str(data.get("summary", "")), tasks=tasks)

    @staticmethod
    def _parse_steps(task_id: str, raw_steps: list[Any]) -> list[Step]:
        steps = []
        for order, raw in enumerate(raw_steps, start=1):
            if isinstance(raw, str):
                raw = {"action": raw}
            steps.append(Step(
                id=f"{task_id}_step_{order}",
                action=str(raw.get("action", "")),
                parameters=raw.get("parameters") or {},
                expected_result=str(raw.get("expected_result", "")),
                order=int(raw.get("order", order)),
            ))
        return steps

    @staticmethod
    def _parse_priority(value: Any) -> TaskPriority:
        if isinstance(value, int) and value in TaskPriority._value2member_map_:
            return TaskPriority(value)
        return _PRIORITY_NAMES.get(str(value).lower(), TaskPriority.MEDIUM)

    @staticmethod
    def _fallback_plan(goal: str) -> TaskPlan:
        task = Task(
            id="task_1",
            description=goal,
            steps=[Step(id="task_1_step_1", action=goal, expected_result="The goal is accomplished")],
        )
        return TaskPlan(original_input=goal, summary="Single-task fallback plan", tasks=[task])
