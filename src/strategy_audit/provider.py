"""
Reasoning Provider - the one narrow seam to a large language model.

Every agent in the pipeline talks to the model through
`invoke(system_instruction, user_prompt) -> text`. Nothing about the
returned text is trusted; callers extract structure with
strategy_audit.parsing.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Optional, Protocol

from anthropic import AsyncAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from strategy_audit.config import AuditConfig, default_config
from strategy_audit.errors import ProviderError, ProviderTimeoutError
from strategy_audit.observability import log_agent_call

logger = logging.getLogger(__name__)


class ReasoningProvider(Protocol):
    """Anything that turns an instruction and a prompt into free text."""

    async def invoke(self, system_instruction: str, user_prompt: str) -> str:
        ...


class AnthropicProvider:
    """Reasoning provider backed by the Anthropic Messages API."""

    def __init__(
        self,
        model: str,
        max_tokens: int = 4096,
        api_key: Optional[str] = None,
    ) -> None:
        api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable required for AnthropicProvider")
        self.model = model
        self.max_tokens = max_tokens
        self._client = AsyncAnthropic(api_key=api_key)

    async def invoke(self, system_instruction: str, user_prompt: str) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system_instruction,
            messages=[{"role": "user", "content": user_prompt}],
        )
        parts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        return "\n".join(parts).strip()


class LangChainProvider:
    """Reasoning provider backed by an OpenAI chat model through LangChain."""

    def __init__(self, model: str, max_tokens: int = 4096) -> None:
        self.model = model
        self._llm = ChatOpenAI(model=model, max_tokens=max_tokens, temperature=0.2)

    async def invoke(self, system_instruction: str, user_prompt: str) -> str:
        message = await self._llm.ainvoke(
            [SystemMessage(content=system_instruction), HumanMessage(content=user_prompt)]
        )
        content = message.content
        if isinstance(content, list):
            content = "\n".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )
        return str(content).strip()


class BoundedProvider:
    """Wrap a provider with a timeout, uniform errors and call logging.

    Any failure of the inner provider surfaces as ProviderError, so call
    sites only need to handle one exception type.
    """

    def __init__(
        self,
        inner: ReasoningProvider,
        timeout_seconds: Optional[float] = None,
        label: str = "provider",
    ) -> None:
        self.inner = inner
        self.timeout_seconds = timeout_seconds
        self.label = label

    async def invoke(self, system_instruction: str, user_prompt: str) -> str:
        agent = system_instruction.strip().splitlines()[0][:60] if system_instruction.strip() else self.label
        model = getattr(self.inner, "model", None)
        start = time.perf_counter()
        try:
            if self.timeout_seconds:
                text = await asyncio.wait_for(
                    self.inner.invoke(system_instruction, user_prompt),
                    timeout=self.timeout_seconds,
                )
            else:
                text = await self.inner.invoke(system_instruction, user_prompt)
        except asyncio.TimeoutError as e:
            log_agent_call(
                agent,
                model=model,
                prompt_chars=len(user_prompt),
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
                error="timeout",
            )
            raise ProviderTimeoutError(
                f"{self.label} call exceeded {self.timeout_seconds}s"
            ) from e
        except Exception as e:
            log_agent_call(
                agent,
                model=model,
                prompt_chars=len(user_prompt),
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
                error=str(e)[:200],
            )
            raise ProviderError(f"{self.label} call failed: {e}") from e

        log_agent_call(
            agent,
            model=model,
            prompt_chars=len(user_prompt),
            response_chars=len(text or ""),
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return text or ""


def build_provider(
    config: AuditConfig = default_config,
    fast: bool = False,
) -> BoundedProvider:
    """Create the configured provider, wrapped with the configured timeout.

    Args:
        config: Audit configuration
        fast: Use the cheaper model for interrogation and discovery
            (Anthropic only; OpenAI always uses openai_model)
    """
    if config.provider == "openai":
        inner: ReasoningProvider = LangChainProvider(
            model=config.openai_model,
            max_tokens=config.max_tokens,
        )
    elif config.provider == "anthropic":
        inner = AnthropicProvider(
            model=config.fast_model if fast else config.anthropic_model,
            max_tokens=config.max_tokens,
        )
    else:
        raise ValueError(f"Unknown reasoning provider: {config.provider}")

    logger.info(f"Using {config.provider} reasoning provider ({getattr(inner, 'model', '?')})")
    return BoundedProvider(
        inner,
        timeout_seconds=config.provider_timeout_seconds,
        label=config.provider,
    )
