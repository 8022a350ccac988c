"""Settings-backed LLM factory and the inference backend used by the actor and pipeline."""

from __future__ import annotations

import logging
import re

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from services.errors import InferenceError

logger = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)


def create_chat_model(
    provider_type: str,
    model_name: str,
    *,
    api_key: str = "",
    base_url: str = "",
    temperature: float | None = None,
    timeout: int | None = None,
    max_retries: int | None = None,
) -> BaseChatModel:
    kwargs: dict = {"model": model_name}
    if temperature is not None:
        kwargs["temperature"] = temperature
    if timeout is not None:
        kwargs["timeout"] = timeout
    if max_retries is not None:
        kwargs["max_retries"] = max_retries

    if provider_type == "openai":
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(api_key=api_key, **kwargs)

    if provider_type == "anthropic":
        from langchain_anthropic import ChatAnthropic
        return ChatAnthropic(api_key=api_key, **kwargs)

    if provider_type == "openai_compatible":
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(api_key=api_key, base_url=base_url, **kwargs)

    raise ValueError(f"Unsupported provider type: {provider_type}")


def create_chat_model_from_settings(settings, model_name: str) -> BaseChatModel:
    return create_chat_model(
        settings.LLM_PROVIDER,
        model_name,
        api_key=settings.LLM_API_KEY,
        base_url=settings.LLM_BASE_URL,
        temperature=settings.LLM_TEMPERATURE,
        timeout=settings.LLM_TIMEOUT,
        max_retries=settings.LLM_MAX_RETRIES,
    )


def to_langchain_messages(messages: list[dict]) -> list[BaseMessage]:
    """Convert ``{"role", "content"}`` dicts to LangChain message objects."""
    out: list[BaseMessage] = []
    for entry in messages:
        role = entry["role"]
        content = entry["content"]
        if role == "system":
            out.append(SystemMessage(content=content))
        elif role == "assistant":
            out.append(AIMessage(content=content))
        elif role == "user":
            out.append(HumanMessage(content=content))
        else:
            raise ValueError(f"Unsupported message role: {role}")
    return out


def strip_thinking_tags(text: str) -> str:
    """Remove <think>...</think> blocks from a model response."""
    cleaned = _THINK_RE.sub("", text)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def _response_text(response) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        # Anthropic-style content blocks
        content = "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return content if isinstance(content, str) else ""


class InferenceBackend:
    """``complete(messages) -> text``; an empty completion is an error."""

    def __init__(self, llm: BaseChatModel, *, name: str = "chat"):
        self._llm = llm
        self.name = name

    def complete(self, messages: list[dict]) -> str:
        try:
            response = self._llm.invoke(to_langchain_messages(messages))
        except Exception as exc:
            logger.warning("%s model call failed: %s", self.name, exc)
            raise InferenceError(f"{self.name} model call failed: {exc}") from exc

        text = strip_thinking_tags(_response_text(response))
        if not text:
            raise InferenceError(f"The {self.name} model returned an empty response")
        return text
