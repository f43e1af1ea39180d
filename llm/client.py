"""
LLM Client - Async wrapper for OpenAI-compatible chat completion APIs.
LLM 客户端 —— OpenAI 兼容 chat completions API 的异步封装。

Works with any provider exposing an OpenAI-compatible endpoint
(DeepSeek, Qwen/DashScope, Ollama, vLLM, ...). Used only by the
reference agents; the scheduling core never talks to a model.
适用于任何提供 OpenAI 兼容接口的服务商。
仅供参考协作者（agents/）使用，调度核心不会直接调用模型。
"""

from __future__ import annotations

import json
import logging
from typing import Any

from openai import AsyncOpenAI

import config

logger = logging.getLogger(__name__)


class LLMClient:
    """
    Shared async client; every agent of one orchestrator uses the same instance.
    共享的异步客户端，同一编排器下的所有智能体共用一个实例。
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float = 60.0,
    ):
        self.model = model or config.LLM_MODEL
        self._client = AsyncOpenAI(
            base_url=base_url or config.LLM_BASE_URL,
            api_key=api_key or config.LLM_API_KEY or "not-set",  # 空密钥时由服务端返回 401，而非构造时报错
            timeout=timeout,
        )

    async def chat(
        self,
        messages: list[dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: int = 4096,
        **kwargs: Any,
    ) -> str:
        """Plain chat completion returning the assistant's text. / 返回 assistant 文本。"""
        resp = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        text = resp.choices[0].message.content or ""
        logger.debug("[LLM] %d chars returned by %s", len(text), self.model)
        return text

    async def chat_json(
        self,
        messages: list[dict[str, Any]],
        temperature: float = 0.3,
        max_tokens: int = 4096,
        **kwargs: Any,
    ) -> Any:
        """
        Request a JSON reply. Falls back to plain text + extraction when the
        provider rejects `response_format`.

        要求 LLM 返回 JSON。若服务端不支持 response_format（如部分 Ollama 模型），
        降级为普通文本模式再从中提取 JSON。
        """
        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
                **kwargs,
            )
            text = resp.choices[0].message.content or "{}"
        except Exception as exc:
            logger.warning("[LLM] JSON mode rejected (%s), falling back to plain text", exc)
            text = await self.chat(messages, temperature=temperature, max_tokens=max_tokens)

        return self.parse_json(text)

    @staticmethod
    def parse_json(text: str) -> Any:
        """
        Best-effort JSON extraction from model output.
        从模型输出中尽力提取 JSON：
          1. 纯 JSON 字符串
          2. Markdown 代码块（```json ... ``` 或 ``` ... ```）
          3. 文本中第一个 { 到最后一个 } 之间的片段
        都失败时抛出 ValueError。
        """
        text = text.strip()
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        for fence in ("```json", "```"):
            if fence in text:
                start = text.index(fence) + len(fence)
                end = text.find("```", start)
                chunk = text[start:end if end != -1 else None].strip()
                try:
                    return json.loads(chunk)
                except json.JSONDecodeError:
                    break

        first, last = text.find("{"), text.rfind("}")
        if first != -1 and last > first:
            try:
                return json.loads(text[first:last + 1])
            except json.JSONDecodeError:
                pass
        raise ValueError(f"Could not parse JSON from LLM output:\n{text[:300]}")
