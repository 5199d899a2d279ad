"""
Unit tests for configuration, errors, JSON parsing, logging and the completion client
"""

import json
import logging

import pytest
from unittest.mock import MagicMock
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from src.llms import llm as llm_module
from src.llms.llm import CompletionClient, get_completion_client, to_langchain_messages
from src.utils.config import Config, LLMConfig, get_config, reload_config
from src.utils.errors import ErrorCode, UpstreamError, ValidationError, error_handler
from src.utils.json_utils import parse_json_object
from src.utils.logger import JSONFormatter, log_call


@pytest.fixture
def chat_model():
    """Mock chat model whose bound variants are reachable for assertions."""
    return MagicMock()


class TestJsonUtils:
    """Tests for completion output parsing."""

    def test_plain_and_fenced(self):
        """Test plain JSON and JSON inside code fences."""
        assert parse_json_object('{"kind": "question"}') == {"kind": "question"}
        assert parse_json_object('```json\n{"kind": "command"}\n```') == {"kind": "command"}

    def test_trailing_tokens_are_dropped(self):
        """Test extra text after the object is ignored."""
        assert parse_json_object('{"type": "task_delete", "selector": {"id": 3}} hope this helps') == {
            "type": "task_delete", "selector": {"id": 3}
        }

    def test_truncated_object_is_repaired(self):
        """Test incomplete objects are repaired."""
        assert parse_json_object('{"kind": "question", "question": "Who owns it?"') == {
            "kind": "question", "question": "Who owns it?"
        }

    @pytest.mark.parametrize("content", ["", "   ", "sure, here you go", "[1, 2]"])
    def test_rejected(self, content):
        """Test non-object content raises ValueError."""
        with pytest.raises(ValueError):
            parse_json_object(content)


class TestErrors:
    """Tests for error types and the error handler."""

    def test_typed_error(self):
        """Test typed errors carry code and details."""
        error = ValidationError("Task title is required.", {"field": "title"})
        assert error.to_dict() == {
            "error_code": "VAL_001", "message": "Task title is required.", "details": {"field": "title"}
        }
        info = error_handler(error)
        assert info["type"] == "ValidationError"
        assert info["error_code"] == ErrorCode.VALIDATION_ERROR.value

    def test_unknown_error(self):
        """Test plain exceptions map to the unknown code."""
        info = error_handler(RuntimeError("boom"))
        assert info["error_code"] == "UNKNOWN_001"
        assert info["message"] == "boom"


class TestConfig:
    """Tests for environment and YAML configuration."""

    def test_environment(self, monkeypatch):
        """Test values are read from the environment."""
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.setenv("LLM_API_KEY", "test-key")
        monkeypatch.setenv("ASSISTANT_HISTORY_LIMIT", "50")
        monkeypatch.setenv("ASSISTANT_DEFAULT_METHODOLOGY", "spiral")

        config = Config()

        assert config.llm.enabled
        assert config.assistant.history_limit == 50
        assert config.assistant.classifier_history == 15
        assert config.assistant.default_methodology == "kanban"

    def test_yaml_merge(self, monkeypatch):
        """Test known YAML keys override defaults and unknown keys are ignored."""
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = Config()
        config._merge_yaml_config({"assistant": {"result_limit": 5}, "llm": {"model": "gpt-4o", "bogus": 1}})

        assert config.assistant.result_limit == 5
        assert config.llm.model == "gpt-4o"
        assert not hasattr(config.llm, "bogus")
        assert not config.llm.enabled

    def test_reload_config(self, monkeypatch):
        """Test reloading picks up environment changes."""
        monkeypatch.setenv("ASSISTANT_RESULT_LIMIT", "7")
        config = reload_config()
        assert config is get_config()
        assert config.assistant.result_limit == 7

        monkeypatch.delenv("ASSISTANT_RESULT_LIMIT")
        assert reload_config().assistant.result_limit == 10


class TestLogger:
    """Tests for logging helpers."""

    def test_json_formatter(self):
        """Test log records become one JSON object."""
        record = logging.LogRecord("src.test", logging.INFO, __file__, 10, "Planned %s", ("task_update",), None)
        entry = json.loads(JSONFormatter().format(record))
        assert entry["level"] == "INFO"
        assert entry["message"] == "Planned task_update"
        assert entry["logger"] == "src.test"

    def test_log_call_reraises(self):
        """Test the call decorator passes results and exceptions through."""
        @log_call
        def double(value):
            if value < 0:
                raise ValueError("negative")
            return value * 2

        assert double(2) == 4
        with pytest.raises(ValueError):
            double(-1)


class TestCompletionClient:
    """Tests for the completion boundary."""

    def test_json_mode(self, chat_model):
        """Test JSON mode binds the response format and parses the reply."""
        json_model = chat_model.bind.return_value.bind.return_value
        json_model.invoke.return_value = AIMessage(content='{"kind": "command"}')
        client = CompletionClient(llm=chat_model, conf=LLMConfig(api_key="k"))

        result = client.complete(
            [{"role": "system", "content": "route"}, {"role": "user", "content": "delete #1"}], temperature=0.1
        )

        assert result == {"kind": "command"}
        chat_model.bind.assert_called_once_with(temperature=0.1)
        chat_model.bind.return_value.bind.assert_called_once_with(response_format={"type": "json_object"})
        sent = json_model.invoke.call_args[0][0]
        assert isinstance(sent[0], SystemMessage) and isinstance(sent[1], HumanMessage)

    def test_text_mode(self, chat_model):
        """Test text mode returns the raw content."""
        chat_model.bind.return_value.invoke.return_value = AIMessage(content="There are 5 tasks.")
        client = CompletionClient(llm=chat_model, conf=LLMConfig(api_key="k"))

        assert client.complete([{"role": "user", "content": "count"}], json_mode=False) == {
            "content": "There are 5 tasks."
        }

    def test_transport_failure(self, chat_model):
        """Test backend exceptions surface as UpstreamError."""
        chat_model.bind.return_value.bind.return_value.invoke.side_effect = TimeoutError("read timeout")
        client = CompletionClient(llm=chat_model, conf=LLMConfig(api_key="k"))

        with pytest.raises(UpstreamError, match="read timeout"):
            client.complete([{"role": "user", "content": "hi"}])

    def test_malformed_output(self, chat_model):
        """Test non-JSON replies in JSON mode surface as UpstreamError."""
        chat_model.bind.return_value.bind.return_value.invoke.return_value = AIMessage(content="I think so")
        client = CompletionClient(llm=chat_model, conf=LLMConfig(api_key="k"))

        with pytest.raises(UpstreamError, match="Malformed completion output"):
            client.complete([{"role": "user", "content": "hi"}])

    def test_missing_api_key(self):
        """Test a client without credentials fails as an upstream error."""
        client = CompletionClient(conf=LLMConfig(api_key=""))
        with pytest.raises(UpstreamError, match="No API key"):
            client.complete([{"role": "user", "content": "hi"}])

    def test_unknown_role(self):
        """Test message conversion rejects unknown roles."""
        with pytest.raises(ValueError):
            to_langchain_messages([{"role": "tool", "content": "x"}])

    def test_get_completion_client(self, monkeypatch):
        """Test a client is only created when a key is configured."""
        config = MagicMock()
        config.llm = LLMConfig(api_key="")
        monkeypatch.setattr(llm_module, "get_config", lambda: config)
        assert get_completion_client() is None

        config.llm = LLMConfig(api_key="k")
        assert isinstance(get_completion_client(), CompletionClient)
