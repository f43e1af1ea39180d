"""
Base Agent - Foundation class for the LLM-backed collaborators.
BaseAgent —— 基于 LLM 的协作者的基础类。

Provides common functionality:
  - System prompt management
  - Message history tracking (think_json)
  - Stateless one-shot calls (ask_json) for collaborators that the
    controller invokes concurrently for several tasks at once

提供通用功能：
  - System prompt 管理
  - 对话历史追踪（think_json）
  - 无状态单轮调用（ask_json）：控制器会并发地为多个任务调用同一个协作者，
    共享的消息历史在并发下会相互污染，因此这类调用不写入历史
"""

from __future__ import annotations

import logging
from typing import Any

from llm.client import LLMClient

logger = logging.getLogger(__name__)


class BaseAgent:
    """
    Base class that all specialized agents inherit from.
    所有专用智能体继承的基类。
    """

    def __init__(self, name: str, system_prompt: str, llm_client: LLMClient):
        self.name = name                            # 智能体名称，用于日志标识
        self.system_prompt = system_prompt          # 系统提示词，定义智能体的角色和行为
        self.llm_client = llm_client                # 共享 LLM 客户端
        self._messages: list[dict[str, Any]] = [
            {"role": "system", "content": system_prompt}
        ]

    # ------------------------------------------------------------------
    # Message management
    # 消息管理
    # ------------------------------------------------------------------

    def add_message(self, role: str, content: str) -> None:
        self._messages.append({"role": role, "content": content})

    def get_messages(self) -> list[dict[str, Any]]:
        """Return a copy of all messages. / 返回消息副本。"""
        return list(self._messages)

    def reset(self) -> None:
        """
        Clear conversation history, keeping only the system prompt.
        清空对话历史，只保留 system prompt。
        """
        self._messages = [{"role": "system", "content": self.system_prompt}]

    # ------------------------------------------------------------------
    # Stateful LLM interaction
    # 有状态的 LLM 交互（写入历史）
    # ------------------------------------------------------------------

    async def think_json(self, user_input: str, **kwargs: Any) -> Any:
        """
        Send user_input and expect a JSON response.
        发送 user_input，要求 LLM 返回 JSON 格式的响应。
        """
        self.add_message("user", user_input)
        result = await self.llm_client.chat_json(self._messages, **kwargs)
        self.add_message("assistant", str(result))
        return result

    # ------------------------------------------------------------------
    # Stateless one-shot calls
    # 无状态单轮调用（并发安全）
    # ------------------------------------------------------------------

    def _one_shot(self, user_input: str) -> list[dict[str, Any]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": user_input},
        ]

    async def ask_json(self, user_input: str, **kwargs: Any) -> Any:
        result = await self.llm_client.chat_json(self._one_shot(user_input), **kwargs)
        logger.debug("[%s] JSON response: %s", self.name, str(result)[:200])
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, messages={len(self._messages)})"
