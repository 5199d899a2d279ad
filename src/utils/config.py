"""
Configuration management for the project assistant
Provides environment-based, type-safe configuration with validation
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration"""
    url: str = "sqlite:///./project_assistant.db"
    echo: bool = False


@dataclass
class LLMConfig:
    """Completion backend configuration"""
    api_key: str = ""
    model: str = "gpt-4o-mini"
    base_url: str = ""
    temperature: float = 0.1
    max_tokens: int = 2000
    timeout: int = 30
    max_retries: int = 3

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass
class AssistantConfig:
    """Assistant pipeline limits and defaults"""
    history_limit: int = 100
    classifier_history: int = 15
    result_limit: int = 10
    default_methodology: str = "kanban"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    log_file: str = "logs/app.log"


@dataclass
class Config:
    """Main configuration class"""
    environment: str = "development"
    debug: bool = False

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    assistant: AssistantConfig = field(default_factory=AssistantConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        """Load configuration from environment and files"""
        load_dotenv()
        self._load_from_env()
        self._load_from_yaml()
        self._validate()

    def _load_from_env(self):
        """Load configuration from environment variables"""
        self.environment = os.getenv('ENVIRONMENT', self.environment)
        self.debug = os.getenv('DEBUG', 'false').lower() == 'true'

        # Database
        self.database.url = os.getenv('DATABASE_URL', self.database.url)
        self.database.echo = os.getenv('DB_ECHO', 'false').lower() == 'true'

        # LLM
        self.llm.api_key = os.getenv('LLM_API_KEY', os.getenv('OPENAI_API_KEY', self.llm.api_key))
        self.llm.model = os.getenv('LLM_MODEL', self.llm.model)
        self.llm.base_url = os.getenv('LLM_BASE_URL', self.llm.base_url)
        self.llm.temperature = float(os.getenv('LLM_TEMPERATURE', str(self.llm.temperature)))
        self.llm.max_tokens = int(os.getenv('LLM_MAX_TOKENS', str(self.llm.max_tokens)))
        self.llm.timeout = int(os.getenv('LLM_TIMEOUT', str(self.llm.timeout)))
        self.llm.max_retries = int(os.getenv('LLM_MAX_RETRIES', str(self.llm.max_retries)))

        # Assistant
        self.assistant.history_limit = int(
            os.getenv('ASSISTANT_HISTORY_LIMIT', str(self.assistant.history_limit))
        )
        self.assistant.classifier_history = int(
            os.getenv('ASSISTANT_CLASSIFIER_HISTORY', str(self.assistant.classifier_history))
        )
        self.assistant.result_limit = int(
            os.getenv('ASSISTANT_RESULT_LIMIT', str(self.assistant.result_limit))
        )
        self.assistant.default_methodology = os.getenv(
            'ASSISTANT_DEFAULT_METHODOLOGY', self.assistant.default_methodology
        )

        # Logging
        self.logging.level = os.getenv('LOG_LEVEL', self.logging.level)
        self.logging.log_file = os.getenv('LOG_FILE', self.logging.log_file)

    def _load_from_yaml(self):
        """Load configuration from config/<environment>.yaml"""
        env_file = Path('config') / f'{self.environment}.yaml'
        if not env_file.exists():
            return

        try:
            with open(env_file, 'r', encoding='utf-8') as f:
                self._merge_yaml_config(yaml.safe_load(f))
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not load YAML config from {env_file}: {e}")

    def _merge_yaml_config(self, yaml_config: Optional[Dict[str, Any]]):
        """Merge YAML configuration into current config"""
        if not yaml_config:
            return

        for section in ('database', 'llm', 'assistant', 'logging'):
            values = yaml_config.get(section) or {}
            target = getattr(self, section)
            for key, value in values.items():
                if hasattr(target, key):
                    setattr(target, key, value)

    def _validate(self):
        """Validate configuration"""
        warnings = []

        if not self.llm.api_key:
            warnings.append("LLM API key not set, the assistant will use local parsing only")

        if self.assistant.classifier_history <= 0:
            warnings.append("Classifier history window must be positive, using 15")
            self.assistant.classifier_history = 15

        if self.assistant.default_methodology not in ('kanban', 'scrum', 'agile', 'waterfall', 'lean'):
            warnings.append(
                f"Unknown default methodology '{self.assistant.default_methodology}', using kanban"
            )
            self.assistant.default_methodology = 'kanban'

        for warning in warnings:
            logger.warning(f"⚠️  {warning}")


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config():
    """Reload configuration from environment and files"""
    global _config
    _config = None
    return get_config()
