"""
Configuration Management for Feedbot

Loads configuration from ~/.feedbot/config.json and environment variables.
A .env file in the working directory is read first so local development can
keep tokens out of the shell profile.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field

from dotenv import load_dotenv

# Default config paths
CONFIG_DIR = Path(os.getenv("FEEDBOT_HOME", str(Path.home() / ".feedbot")))
CONFIG_PATH = Path(os.getenv("FEEDBOT_CONFIG", str(CONFIG_DIR / "config.json")))
DATA_DIR = CONFIG_DIR / "data"
APPROVALS_PATH = DATA_DIR / "approvals.json"


@dataclass
class SlackConfig:
    """Slack workspace configuration"""
    bot_token: str = ""
    signing_secret: str = ""
    feedback_channel_name: str = "feedback"
    feedback_channel_id: str = ""
    approval_channel_name: str = "bot-feedback"
    approval_channel_id: str = ""
    assignee_name: str = "John Rice"


@dataclass
class NotionConfig:
    """Notion backlog database configuration"""
    api_key: str = ""
    database_id: str = ""
    api_version: str = "2022-06-28"


@dataclass
class LLMConfig:
    """LLM provider configuration for the feedback extractor"""
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"

    @property
    def model(self) -> str:
        return {
            "openai": self.openai_model,
            "google": self.google_model,
        }.get(self.provider, self.anthropic_model)


@dataclass
class SchedulerConfig:
    """Trigger and maintenance configuration"""
    mode: str = "events"  # "events" (push webhooks) or "poll"
    interval_minutes: float = 10
    max_messages_per_run: int = 50
    lookback_days: int = 1
    min_message_length: int = 20
    confidence_threshold: int = 60
    retention_days: int = 7
    sweep_hour: int = 0  # local hour of the daily sweep


@dataclass
class ServerConfig:
    """Interaction gateway configuration"""
    port: int = 3000
    queue_size: int = 100
    workers: int = 4


@dataclass
class StoreConfig:
    """Approval store backend"""
    backend: str = "json"  # "json" or "sqlite"
    path: str = str(APPROVALS_PATH)


@dataclass
class FeedbotConfig:
    """Main Feedbot configuration"""
    slack: SlackConfig = field(default_factory=SlackConfig)
    notion: NotionConfig = field(default_factory=NotionConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_slack_config(data: dict) -> SlackConfig:
    """Parse slack section from config dict"""
    slack_data = data.get("slack", {})
    return SlackConfig(
        bot_token=slack_data.get("bot_token", ""),
        signing_secret=slack_data.get("signing_secret", ""),
        feedback_channel_name=slack_data.get("feedback_channel_name", "feedback"),
        feedback_channel_id=slack_data.get("feedback_channel_id", ""),
        approval_channel_name=slack_data.get("approval_channel_name", "bot-feedback"),
        approval_channel_id=slack_data.get("approval_channel_id", ""),
        assignee_name=slack_data.get("assignee_name", "John Rice"),
    )


def _parse_notion_config(data: dict) -> NotionConfig:
    """Parse notion section from config dict"""
    notion_data = data.get("notion", {})
    return NotionConfig(
        api_key=notion_data.get("api_key", ""),
        database_id=notion_data.get("database_id", ""),
        api_version=notion_data.get("api_version", "2022-06-28"),
    )


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict.

    Older configs kept the Claude key under ``claude.api_key``; it is still
    honoured when the ``llm`` section does not set one.
    """
    llm_data = data.get("llm", {})
    legacy_key = data.get("claude", {}).get("api_key", "")
    return LLMConfig(
        provider=llm_data.get("provider", "anthropic"),
        anthropic_api_key=llm_data.get("anthropic_api_key", "") or legacy_key,
        anthropic_model=llm_data.get("anthropic_model", "claude-haiku-4-5-20251001"),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", "gpt-4o-mini"),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", "gemini-2.0-flash-exp"),
    )


def _parse_scheduler_config(data: dict) -> SchedulerConfig:
    """Parse scheduler section from config dict"""
    sched_data = data.get("scheduler", {})
    return SchedulerConfig(
        mode=sched_data.get("mode", "events"),
        interval_minutes=sched_data.get("interval_minutes", 10),
        max_messages_per_run=sched_data.get("max_messages_per_run", 50),
        lookback_days=sched_data.get("lookback_days", 1),
        min_message_length=sched_data.get("min_message_length", 20),
        confidence_threshold=sched_data.get("confidence_threshold", 60),
        retention_days=sched_data.get("retention_days", 7),
        sweep_hour=sched_data.get("sweep_hour", 0),
    )


def _parse_server_config(data: dict) -> ServerConfig:
    server_data = data.get("server", {})
    return ServerConfig(
        port=server_data.get("port", 3000),
        queue_size=server_data.get("queue_size", 100),
        workers=server_data.get("workers", 4),
    )


def _parse_store_config(data: dict) -> StoreConfig:
    store_data = data.get("store", {})
    return StoreConfig(
        backend=store_data.get("backend", "json"),
        path=store_data.get("path", str(APPROVALS_PATH)),
    )


# env var -> (section, attribute, converter)
_ENV_MAP = {
    "SLACK_BOT_TOKEN": ("slack", "bot_token", str),
    "SLACK_SIGNING_SECRET": ("slack", "signing_secret", str),
    "FEEDBACK_CHANNEL_NAME": ("slack", "feedback_channel_name", str),
    "FEEDBACK_CHANNEL_ID": ("slack", "feedback_channel_id", str),
    "APPROVAL_CHANNEL_NAME": ("slack", "approval_channel_name", str),
    "APPROVAL_CHANNEL_ID": ("slack", "approval_channel_id", str),
    "ASSIGNEE_NAME": ("slack", "assignee_name", str),
    "NOTION_API_KEY": ("notion", "api_key", str),
    "NOTION_DATABASE_ID": ("notion", "database_id", str),
    "NOTION_VERSION": ("notion", "api_version", str),
    "CLAUDE_API_KEY": ("llm", "anthropic_api_key", str),
    "ANTHROPIC_API_KEY": ("llm", "anthropic_api_key", str),
    "ANTHROPIC_MODEL": ("llm", "anthropic_model", str),
    "OPENAI_API_KEY": ("llm", "openai_api_key", str),
    "OPENAI_MODEL": ("llm", "openai_model", str),
    "GOOGLE_API_KEY": ("llm", "google_api_key", str),
    "GEMINI_API_KEY": ("llm", "google_api_key", str),
    "GOOGLE_MODEL": ("llm", "google_model", str),
    "FEEDBOT_LLM_PROVIDER": ("llm", "provider", str),
    "FEEDBOT_MODE": ("scheduler", "mode", str),
    "SCHEDULER_INTERVAL": ("scheduler", "interval_minutes", float),
    "MAX_MESSAGES_PER_RUN": ("scheduler", "max_messages_per_run", int),
    "LOOKBACK_DAYS": ("scheduler", "lookback_days", int),
    "MIN_MESSAGE_LENGTH": ("scheduler", "min_message_length", int),
    "CONFIDENCE_THRESHOLD": ("scheduler", "confidence_threshold", int),
    "RETENTION_DAYS": ("scheduler", "retention_days", int),
    "SWEEP_HOUR": ("scheduler", "sweep_hour", int),
    "PORT": ("server", "port", int),
    "FEEDBOT_QUEUE_SIZE": ("server", "queue_size", int),
    "FEEDBOT_WORKERS": ("server", "workers", int),
    "FEEDBOT_STORE_BACKEND": ("store", "backend", str),
    "FEEDBOT_STORE_PATH": ("store", "path", str),
}

# Fields blanked by save_config() when they came from the environment
_SECRET_FIELDS = {
    ("slack", "bot_token"),
    ("slack", "signing_secret"),
    ("notion", "api_key"),
    ("llm", "anthropic_api_key"),
    ("llm", "openai_api_key"),
    ("llm", "google_api_key"),
}


def load_config(config_path: Path = None) -> FeedbotConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables (including a local .env file)
    2. Config file (~/.feedbot/config.json)
    3. Default values
    """
    load_dotenv()
    config = FeedbotConfig()
    path = config_path or CONFIG_PATH

    # Load from config file if exists
    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)

            config.slack = _parse_slack_config(data)
            config.notion = _parse_notion_config(data)
            config.llm = _parse_llm_config(data)
            config.scheduler = _parse_scheduler_config(data)
            config.server = _parse_server_config(data)
            config.store = _parse_store_config(data)
        except (json.JSONDecodeError, IOError) as e:
            print(f"[Config] Warning: Failed to load config file: {e}")

    # Environment variable overrides
    for env_var, (section, attr, convert) in _ENV_MAP.items():
        val = os.getenv(env_var)
        if not val:
            continue
        try:
            setattr(getattr(config, section), attr, convert(val))
        except ValueError:
            print(f"[Config] Warning: Ignoring invalid {env_var}={val!r}")
            continue
        config._env_sourced_keys.add((section, attr))

    return config


def save_config(config: FeedbotConfig, config_path: Path = None) -> None:
    """Save configuration to file.

    Secret fields that were sourced from environment variables are written
    as empty strings so that tokens are not persisted to disk.
    """
    path = config_path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    data = {
        "slack": {
            "bot_token": config.slack.bot_token,
            "signing_secret": config.slack.signing_secret,
            "feedback_channel_name": config.slack.feedback_channel_name,
            "feedback_channel_id": config.slack.feedback_channel_id,
            "approval_channel_name": config.slack.approval_channel_name,
            "approval_channel_id": config.slack.approval_channel_id,
            "assignee_name": config.slack.assignee_name,
        },
        "notion": {
            "api_key": config.notion.api_key,
            "database_id": config.notion.database_id,
            "api_version": config.notion.api_version,
        },
        "llm": {
            "provider": config.llm.provider,
            "anthropic_api_key": config.llm.anthropic_api_key,
            "anthropic_model": config.llm.anthropic_model,
            "openai_api_key": config.llm.openai_api_key,
            "openai_model": config.llm.openai_model,
            "google_api_key": config.llm.google_api_key,
            "google_model": config.llm.google_model,
        },
        "scheduler": {
            "mode": config.scheduler.mode,
            "interval_minutes": config.scheduler.interval_minutes,
            "max_messages_per_run": config.scheduler.max_messages_per_run,
            "lookback_days": config.scheduler.lookback_days,
            "min_message_length": config.scheduler.min_message_length,
            "confidence_threshold": config.scheduler.confidence_threshold,
            "retention_days": config.scheduler.retention_days,
            "sweep_hour": config.scheduler.sweep_hour,
        },
        "server": {
            "port": config.server.port,
            "queue_size": config.server.queue_size,
            "workers": config.server.workers,
        },
        "store": {
            "backend": config.store.backend,
            "path": config.store.path,
        },
    }
    for section, attr in _SECRET_FIELDS:
        if (section, attr) in env_sourced:
            data[section][attr] = ""

    with open(path, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    path.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    DATA_DIR.mkdir(parents=True, exist_ok=True)
