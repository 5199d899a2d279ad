# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
from typing import Any, Dict, List, Optional

import httpx
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from src.utils.config import LLMConfig, get_config
from src.utils.errors import ConfigurationError, UpstreamError
from src.utils.json_utils import parse_json_object

logger = logging.getLogger(__name__)

_ROLE_TO_MESSAGE = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}


def to_langchain_messages(messages: List[Dict[str, str]]) -> List[BaseMessage]:
    """Convert role/content dictionaries into langchain messages."""
    converted = []
    for message in messages:
        role = message.get("role", "user")
        message_cls = _ROLE_TO_MESSAGE.get(role)
        if message_cls is None:
            raise ValueError(f"Unknown message role: {role}")
        converted.append(message_cls(content=str(message.get("content", ""))))
    return converted


def _create_chat_model(conf: LLMConfig) -> BaseChatModel:
    """Create the chat model from configuration."""
    if not conf.api_key:
        raise ConfigurationError("No API key configured for the completion backend")

    kwargs: Dict[str, Any] = {
        "model": conf.model,
        "api_key": conf.api_key,
        "temperature": conf.temperature,
        "max_tokens": conf.max_tokens,
        "max_retries": conf.max_retries,
        "http_client": httpx.Client(timeout=conf.timeout),
    }
    if conf.base_url:
        kwargs["base_url"] = conf.base_url

    logger.info(
        f"[LLM-CONFIG] Creating completion client: model={conf.model}, "
        f"base_url={conf.base_url or 'default'}"
    )
    return ChatOpenAI(**kwargs)


class CompletionClient:
    """
    Thin completion boundary used by the classifier and the plan generator.

    Every failure mode (transport, timeout, non-JSON or malformed output)
    surfaces as UpstreamError so callers can tell it apart from a valid
    empty result.
    """

    def __init__(self, llm: Optional[BaseChatModel] = None, conf: Optional[LLMConfig] = None):
        self._conf = conf or get_config().llm
        self._llm = llm

    @property
    def llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = _create_chat_model(self._conf)
        return self._llm

    def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.1,
        json_mode: bool = True,
    ) -> Dict[str, Any]:
        """
        Run one completion.

        Args:
            messages: Role/content dictionaries, system first
            temperature: Sampling temperature
            json_mode: Ask the backend for a JSON object and parse it

        Returns:
            Parsed JSON object, or {"content": text} when json_mode is False
        """
        try:
            model = self.llm.bind(temperature=temperature)
            if json_mode:
                model = model.bind(response_format={"type": "json_object"})
            response = model.invoke(to_langchain_messages(messages))
        except ConfigurationError as e:
            raise UpstreamError(e.message)
        except Exception as e:
            logger.warning(f"Completion call failed: {e}")
            raise UpstreamError(f"Completion call failed: {e}", {"exception": type(e).__name__})

        content = response.content if hasattr(response, "content") else str(response)
        if not isinstance(content, str):
            content = str(content)

        if not json_mode:
            return {"content": content}

        try:
            return parse_json_object(content)
        except ValueError as e:
            logger.warning(f"Completion returned malformed JSON: {e}")
            raise UpstreamError(f"Malformed completion output: {e}", {"content": content[:500]})


def get_completion_client() -> Optional[CompletionClient]:
    """Return a completion client when a backend is configured, otherwise None."""
    conf = get_config().llm
    if not conf.enabled:
        return None
    return CompletionClient(conf=conf)
