"""
Audit - Decorator that records every Executor call.
审计 —— 记录每一次执行者调用的装饰器。

The scheduler never knows it is being audited: `audited()` wraps an Executor
and returns another Executor with the same call signature.
调度器对审计无感知：audited() 包装一个 Executor，并返回签名相同的新 Executor。

    executor = audited(ExecutorAgent(llm), name="llm-executor")
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any

from pydantic import BaseModel, Field

from dag.controller import Executor
from schema import ExecutionResult, TaskNode

logger = logging.getLogger(__name__)


class AuditRecord(BaseModel):
    """One audited executor call. / 一次被审计的执行者调用。"""
    executor: str
    task_id: str
    payload_preview: str = ""
    success: bool = False
    error: str | None = None
    duration_ms: float = 0.0
    timestamp: float = Field(default_factory=time.time)


def audited(executor: Executor, name: str = "executor", sink: list[AuditRecord] | None = None) -> Executor:
    """
    Wrap `executor` so each call is logged under [Audit] and optionally
    appended to `sink`. Exceptions are recorded and then re-raised unchanged.

    包装 executor：每次调用都以 [Audit] 标签写日志，并可选地追加到 sink 列表。
    异常会被记录后原样重新抛出，交由控制器处理。
    """

    async def wrapper(node: TaskNode) -> ExecutionResult:
        record = AuditRecord(executor=name, task_id=node.id, payload_preview=repr(node.payload)[:200])
        logger.info("[Audit] %s <- %s", name, node.id)
        started = time.monotonic()
        try:
            result = await executor(node)
        except Exception as exc:
            record.error = str(exc) or type(exc).__name__
            raise
        else:
            record.success = bool(getattr(result, "success", True))
            record.error = getattr(result, "error", None)
            return result
        finally:
            record.duration_ms = (time.monotonic() - started) * 1000
            logger.info(
                "[Audit] %s -> %s success=%s (%.0fms)%s",
                name, node.id, record.success, record.duration_ms,
                f" error={record.error}" if record.error else "",
            )
            if sink is not None:
                sink.append(record)

    # 代理实例（如 ExecutorAgent）没有 __name__ 等属性，update_wrapper 会忽略缺失项
    functools.update_wrapper(wrapper, executor, updated=())
    return wrapper
