"""
DevPilot Configuration

Configure via:
1. Environment variables (DEVPILOT_*, plus GEMINI_API_KEY / OPENROUTER_API_KEY / GROQ_API_KEY)
2. Config file (devpilot.config.json or .devpilot/config.json in the project)
3. Direct code configuration

Priority: Direct code > Environment variables > Config file > Defaults

Example config file (devpilot.config.json):
{
    "default_provider": "openrouter",
    "key_pool_enabled": true,
    "agent_persist_mode": "per_task"
}

Example environment variables:
    DEVPILOT_PROVIDER=groq
    DEVPILOT_MAX_TASK_ATTEMPTS=5

The configuration object is passed explicitly to every component; there
is no process-wide instance.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


PROVIDERS = ("gemini", "openrouter", "groq")

DEFAULT_MODELS = {
    "gemini": "gemini-2.5-flash",
    "openrouter": "mistralai/mistral-7b-instruct",
    "groq": "llama3-8b-8192",
}

API_KEY_ENV_VARS = {
    "gemini": "GEMINI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "groq": "GROQ_API_KEY",
}

CONFIG_FILE_NAMES = ("devpilot.config.json", ".devpilot/config.json")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


@dataclass
class DevPilotConfig:
    """
    Configuration for the devpilot engine.

    Attributes:
        default_provider: Provider used when a project names none
        default_models: Provider-specific model used when a call names none
        api_keys: Caller-supplied credential per provider
        key_pool_enabled: Allow falling back to the shared key pool

        max_call_attempts: Model call attempts (initial + retries)
        retry_delay: Seconds between model call attempts
        request_timeout: HTTP timeout for the provider transport

        correction_provider / correction_model: Fixed pair used to repair
            malformed JSON output

        max_task_attempts: Agent loop attempts per task before giving up
        agent_persist_mode: "on_finish" persists an agent run once at the
            end, "per_task" persists after every completed task

        planner_* / coder_* / reviewer_*: Provider and model for each agent
            of the action queue pipeline
        action_delay: Seconds to wait before executing each queued action

        asset_provider / asset_model: Fixed pair used for SVG asset generation

        memory_path: Location of the memory log inside the project tree
        icon_path: File whose content is mirrored into project metadata
        conflict_policy: "best_effort" or "strict" change-set validation
        memory_excerpt_chars: Memory characters included in prompts
    """
    # Providers
    default_provider: str = "gemini"
    default_models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    api_keys: dict[str, str] = field(default_factory=dict)
    key_pool_enabled: bool = False

    # Model call layer
    max_call_attempts: int = 2
    retry_delay: float = 1.5
    request_timeout: float = 120.0

    # Self-correction
    correction_provider: str = "gemini"
    correction_model: str = "gemini-2.5-flash"

    # Agent loop
    max_task_attempts: int = 3
    agent_persist_mode: str = "on_finish"

    # Action queue
    planner_provider: str = "gemini"
    planner_model: str = "gemini-2.5-flash"
    coder_provider: str = "groq"
    coder_model: str = "llama3-8b-8192"
    reviewer_provider: str = "openrouter"
    reviewer_model: str = "mistralai/mistral-7b-instruct"
    action_delay: float = 1.5

    # Assets
    asset_provider: str = "gemini"
    asset_model: str = "gemini-2.5-flash"

    # Project tree
    memory_path: str = ".devpilot/memory.md"
    icon_path: str = "public/icon.svg"
    conflict_policy: str = "best_effort"
    memory_excerpt_chars: int = 8000

    # Debug settings
    debug_logging: bool = False
    log_dir: str = ".devpilot/logs"

    def model_for(self, provider: str, model: Optional[str] = None) -> str:
        """Resolve the model to use for a provider."""
        return model or self.default_models.get(provider) or DEFAULT_MODELS[provider]

    @classmethod
    def from_env(cls) -> 'DevPilotConfig':
        """Load configuration from environment variables."""
        load_dotenv()
        config = cls()
        config._merge_env()
        return config

    def _merge_env(self):
        for provider, var in API_KEY_ENV_VARS.items():
            if os.getenv(var):
                self.api_keys[provider] = os.getenv(var)

        if os.getenv("DEVPILOT_PROVIDER"):
            self.default_provider = os.getenv("DEVPILOT_PROVIDER")

        if os.getenv("DEVPILOT_MODEL"):
            self.default_models[self.default_provider] = os.getenv("DEVPILOT_MODEL")

        if os.getenv("DEVPILOT_KEY_POOL"):
            self.key_pool_enabled = _env_bool(os.getenv("DEVPILOT_KEY_POOL", ""))

        if os.getenv("DEVPILOT_PERSIST_MODE"):
            self.agent_persist_mode = os.getenv("DEVPILOT_PERSIST_MODE")

        if os.getenv("DEVPILOT_DEBUG"):
            self.debug_logging = _env_bool(os.getenv("DEVPILOT_DEBUG", ""))

        for name, var in (
            ("max_call_attempts", "DEVPILOT_MAX_CALL_ATTEMPTS"),
            ("max_task_attempts", "DEVPILOT_MAX_TASK_ATTEMPTS"),
        ):
            if os.getenv(var):
                try:
                    setattr(self, name, int(os.getenv(var)))
                except ValueError:
                    pass

        for name, var in (
            ("retry_delay", "DEVPILOT_RETRY_DELAY"),
            ("action_delay", "DEVPILOT_ACTION_DELAY"),
        ):
            if os.getenv(var):
                try:
                    setattr(self, name, float(os.getenv(var)))
                except ValueError:
                    pass

    @classmethod
    def from_file(cls, path: Path) -> 'DevPilotConfig':
        """Load configuration from a JSON file."""
        config = cls()

        if not path.exists():
            return config

        try:
            with open(path, 'r') as f:
                data = json.load(f)

            if "default_models" in data:
                config.default_models.update({str(k): str(v) for k, v in data["default_models"].items()})

            if "model" in data:  # alias for the default provider's model
                config.default_models[str(data.get("default_provider", config.default_provider))] = str(data["model"])

            for name in (
                "default_provider", "correction_provider", "correction_model",
                "agent_persist_mode", "planner_provider", "planner_model",
                "coder_provider", "coder_model", "reviewer_provider", "reviewer_model",
                "asset_provider", "asset_model",
                "memory_path", "icon_path", "conflict_policy", "log_dir",
            ):
                if name in data:
                    setattr(config, name, str(data[name]))

            for name in ("max_call_attempts", "max_task_attempts", "memory_excerpt_chars"):
                if name in data:
                    setattr(config, name, int(data[name]))

            for name in ("retry_delay", "request_timeout", "action_delay"):
                if name in data:
                    setattr(config, name, float(data[name]))

            for name in ("key_pool_enabled", "debug_logging"):
                if name in data:
                    setattr(config, name, bool(data[name]))

        except (json.JSONDecodeError, ValueError, TypeError, AttributeError):
            # Invalid config file, use defaults
            pass

        return config

    @classmethod
    def load(cls, project_path: Optional[Path] = None) -> 'DevPilotConfig':
        """
        Load configuration from all sources (file, env, defaults).

        Priority: Environment variables > Config file > Defaults

        Args:
            project_path: Project directory to look for config files in

        Returns:
            Merged configuration
        """
        load_dotenv()
        config = cls()

        if project_path:
            for name in CONFIG_FILE_NAMES:
                config_path = Path(project_path) / name
                if config_path.exists():
                    config = cls.from_file(config_path)
                    break

        config._merge_env()
        return config

    def to_dict(self) -> dict:
        """Convert config to dictionary. API keys are never included."""
        return {
            "default_provider": self.default_provider,
            "default_models": dict(self.default_models),
            "key_pool_enabled": self.key_pool_enabled,
            "max_call_attempts": self.max_call_attempts,
            "retry_delay": self.retry_delay,
            "request_timeout": self.request_timeout,
            "correction_provider": self.correction_provider,
            "correction_model": self.correction_model,
            "max_task_attempts": self.max_task_attempts,
            "agent_persist_mode": self.agent_persist_mode,
            "planner_provider": self.planner_provider,
            "planner_model": self.planner_model,
            "coder_provider": self.coder_provider,
            "coder_model": self.coder_model,
            "reviewer_provider": self.reviewer_provider,
            "reviewer_model": self.reviewer_model,
            "action_delay": self.action_delay,
            "asset_provider": self.asset_provider,
            "asset_model": self.asset_model,
            "memory_path": self.memory_path,
            "icon_path": self.icon_path,
            "conflict_policy": self.conflict_policy,
            "memory_excerpt_chars": self.memory_excerpt_chars,
            "debug_logging": self.debug_logging,
            "log_dir": self.log_dir,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
