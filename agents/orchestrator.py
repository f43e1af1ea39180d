"""
Orchestrator Agent - Goal in, RunSummary out.
Orchestrator 智能体 —— 输入目标，输出 RunSummary。

    User goal
       |
       v
    [Planner.create_plan()] ── TaskPlan (tasks + dependencies + steps)
       |
       v
    [ExecutionController.run()]
       |   per round: ready tasks run concurrently through the queue
       |   per task:  Executor -> Validator -> (Repairer -> retry)*
       v
    RunSummary

    用户目标 -> Planner 生成计划 -> ExecutionController 按轮并发执行，
    每个任务经过「执行 -> 验证 -> (修复 -> 重试)*」 -> RunSummary
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import config
from agents.audit import audited
from agents.executor import ExecutorAgent
from agents.planner import PlannerAgent
from agents.repairer import RepairAgent
from agents.validator import ValidatorAgent
from dag.controller import ExecutionController
from llm.client import LLMClient
from schema import ControllerStatus, RunSummary, TaskPlan

logger = logging.getLogger(__name__)


class OrchestratorAgent:
    """
    Top-level coordinator wiring the LLM collaborators into an ExecutionController.
    顶层协调者，把基于 LLM 的协作者接入 ExecutionController。
    """

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        on_event: Callable[[str, Any], None] | None = None,
        max_concurrent: int | None = None,
        max_retries: int | None = None,
        audit: bool | None = None,
    ):
        self.llm_client = llm_client or LLMClient()  # 共享 LLM 客户端

        # Sub-agents（各专用子智能体）
        self.planner = PlannerAgent(self.llm_client)
        self.executor_agent = ExecutorAgent(self.llm_client)
        self.validator = ValidatorAgent(self.llm_client)
        self.repairer = RepairAgent(self.llm_client)

        self._on_event = on_event or (lambda *_: None)
        audit = config.AUDIT_ENABLED if audit is None else audit
        executor = audited(self.executor_agent, name="llm-executor") if audit else self.executor_agent

        self.controller = ExecutionController(
            executor=executor,
            validator=self.validator,
            repairer=self.repairer,
            max_concurrent=max_concurrent,
            max_retries=max_retries,
            on_event=self._emit,
        )
        self._planning = False
        self.current_plan: TaskPlan | None = None

    @property
    def status(self) -> ControllerStatus:
        if self._planning:
            return ControllerStatus.PLANNING
        return self.controller.status

    # ------------------------------------------------------------------
    # Main entry point
    # 主入口
    # ------------------------------------------------------------------

    async def run(self, goal: str) -> RunSummary:
        """
        Plan `goal` and execute the plan.
        规划目标并执行计划。

        Raises CyclicDependencyError if the planner produced a cyclic plan.
        若计划存在循环依赖则抛出 CyclicDependencyError。
        """
        self._emit("goal", {"goal": goal})

        self._planning = True
        self._emit("phase", "Planning...")
        try:
            plan = await self.planner.create_plan(goal)
        finally:
            self._planning = False
        self.current_plan = plan
        self._emit("plan", plan)

        self._emit("phase", f"Executing {len(plan.tasks)} tasks...")
        timeout_ms = config.TASK_TIMEOUT_MS or None
        summary = await self.controller.run(plan.to_nodes(timeout_ms=timeout_ms), plan_id=plan.id)
        logger.info(
            "[Orchestrator] Goal finished: success=%s (%d/%d completed)",
            summary.success, summary.completed_tasks, summary.total_tasks,
        )
        return summary

    def get_progress(self) -> dict[str, int]:
        return self.controller.get_progress()

    def _emit(self, event: str, data: Any = None) -> None:
        """
        Forward an event to the UI callback.
        向 UI 回调函数转发事件；UI 异常不影响主流程。
        """
        try:
            self._on_event(event, data)
        except Exception:
            logger.debug("[Orchestrator] on_event callback failed for %s", event, exc_info=True)
