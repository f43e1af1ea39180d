"""
Validator Agent - Quality gate for execution results.
Validator 智能体 —— 执行结果的质量门控。

Satisfies the Validator protocol:  await validator(node, result) -> ValidationResult
满足 Validator 协议：await validator(node, result) -> ValidationResult

  - a failed execution is invalid without calling the LLM
  - otherwise valid iff the LLM says valid AND score >= threshold
  - an LLM error yields an invalid result (never a silent pass)

  - 执行失败的结果直接判定无效，不调用 LLM
  - 否则仅当 LLM 判定有效且评分 >= 阈值时才有效
  - LLM 调用异常时判定无效（不会默认通过）
"""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, Field

import config
from agents.base import BaseAgent
from agents.executor import task_from_node
from llm.client import LLMClient
from schema import ExecutionResult, TaskNode, ValidationResult

logger = logging.getLogger(__name__)

VALIDATOR_SYSTEM_PROMPT = """\
You are a quality verification agent. Given a task and the result of executing
it, judge whether the result satisfies the task.

Check:
1. Completeness: every step was carried out.
2. Correctness: the output matches the expected results.
3. Quality: score the output from 0 to 100.

Respond with a valid JSON object in this exact format:
{
  "valid": true/false,
  "score": 0-100,
  "issues": ["problem 1", "problem 2"],
  "suggestions": ["suggestion 1"]
}
"""


class _Verdict(BaseModel):
    valid: bool
    score: float = Field(ge=0, le=100)
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class ValidatorAgent(BaseAgent):
    def __init__(self, llm_client: LLMClient, threshold: float | None = None):
        super().__init__(
            name="Validator",
            system_prompt=VALIDATOR_SYSTEM_PROMPT,
            llm_client=llm_client,
        )
        self.threshold = threshold if threshold is not None else config.VALIDATION_THRESHOLD

    async def __call__(self, node: TaskNode, result: ExecutionResult) -> ValidationResult:
        return await self.validate(node, result)

    async def validate(self, node: TaskNode, result: ExecutionResult) -> ValidationResult:
        if not result.success:
            return ValidationResult(
                valid=False,
                score=0,
                issues=[result.error or "Task execution failed"],
                suggestions=["Fix the execution error and retry"],
            )

        task = task_from_node(node)
        expected = ", ".join(s.expected_result for s in task.ordered_steps() if s.expected_result)
        prompt = (
            f"TASK ({task.id}): {task.description}\n"
            f"STEPS: {len(task.steps)}\n"
            f"EXPECTED RESULTS: {expected or 'not specified'}\n\n"
            f"EXECUTION OUTPUT:\n{json.dumps(result.output, ensure_ascii=False, default=str)[:3000]}"
        )

        try:
            data = await self.ask_json(prompt, temperature=0.1)
            verdict = _Verdict.model_validate(data)
        except Exception as exc:
            logger.error("[Validator] Validation error for %s: %s", node.id, exc)
            return ValidationResult(
                valid=False,
                score=0,
                issues=[f"Validation error: {exc}"],
                suggestions=["Retry validation"],
            )

        valid = verdict.valid and verdict.score >= self.threshold
        if verdict.valid and not valid:
            verdict.issues.append(f"Quality score {verdict.score:g} is below threshold {self.threshold:g}")
        logger.info("[Validator] %s: %s (score=%g)", node.id, "VALID" if valid else "INVALID", verdict.score)
        return ValidationResult(
            valid=valid,
            score=verdict.score,
            issues=verdict.issues,
            suggestions=verdict.suggestions,
        )
