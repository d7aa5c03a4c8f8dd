from dataclasses import dataclass
from datetime import timedelta
from dotenv import load_dotenv
import os

from agentchat.errors import ConfigurationError

load_dotenv()

PG_DATABASE_URL = os.environ.get("PG_DATABASE_URL", "sqlite:///agentchat.db")
PRIVY_APP_ID = os.environ.get("PRIVY_APP_ID", "")
GRAPHITE_HOST = os.environ.get("GRAPHITE_HOST", "localhost")
GRAPHITE_HOST_PORT = int(os.environ.get("GRAPHITE_HOST_PORT", "8125"))
METRICS_PREFIX = os.environ.get("METRICS_PREFIX", "production.agentchat")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
REAPER_ENABLED = os.environ.get("REAPER_ENABLED", "true").lower() in ("1", "true", "yes")

# recorded on new sessions; the provider itself is only configured on first use
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TEMPERATURE = float(os.environ.get("OPENAI_TEMPERATURE", "0.7"))

# usage and lifecycle policy
FREE_MESSAGE_QUOTA = 5
DAILY_SESSION_LIMIT = 5
REACTIVATION_WINDOW = timedelta(minutes=30)
INACTIVITY_TIMEOUT = timedelta(minutes=10)
SWEEP_INTERVAL = 30  # seconds
HISTORY_MESSAGE_LIMIT = 100
TOKEN_ESTIMATE_RATIO = 0.75


@dataclass(frozen=True)
class ProviderConfig:
    api_key: str
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    max_tokens: int = 1000
    temperature: float = 0.7
    timeout: float = 30.0
    presence_penalty: float = 0.2
    frequency_penalty: float = 0.1


def get_provider_config() -> ProviderConfig:
    api_key = os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY environment variable is required")

    return ProviderConfig(
        api_key=api_key,
        base_url=os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        model=os.environ.get("OPENAI_MODEL", OPENAI_MODEL),
        max_tokens=int(os.environ.get("OPENAI_MAX_TOKENS", "1000")),
        temperature=float(os.environ.get("OPENAI_TEMPERATURE", OPENAI_TEMPERATURE)),
        timeout=float(os.environ.get("OPENAI_TIMEOUT", "30")),
    )
