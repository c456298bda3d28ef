"""Configuration loader for the Aether usage service.

Reads a JSON config file with the text-generation provider, insight generator
retry settings, per-category cooldowns, store backend and auth keys. Secrets
(API keys, Redis URL) are resolved from environment variables. The tier table
lives in a separate YAML file referenced by ``tier_policy_file``.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

# Hours per category before an insight may be regenerated with unchanged data
DEFAULT_COOLDOWN_HOURS: Dict[str, int] = {
    "communication": 6,
    "personality": 24,
    "behavioral": 12,
    "emotional": 3,
    "growth": 48,
}


@dataclass
class ProviderConfig:
    """OpenAI-compatible text-generation endpoint (OpenRouter by default)."""

    name: str = "openrouter"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: str = "OPENROUTER_API_KEY"
    default_model: str = "openai/gpt-4o-mini"
    premium_model: str = "openai/gpt-5"
    referer: str = "http://localhost:3000"
    title: str = "Aether Server"

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return os.getenv(self.api_key_env)


@dataclass
class GeneratorConfig:
    """Retry and sampling parameters for insight generation."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    attempt_timeout_seconds: float = 45.0
    temperature: float = 0.7
    max_tokens: int = 300


@dataclass
class CooldownConfig:
    """Cooldown window per insight category."""

    minutes: Dict[str, int] = field(
        default_factory=lambda: {k: v * 60 for k, v in DEFAULT_COOLDOWN_HOURS.items()}
    )
    default_minutes: int = 30

    def seconds_for(self, category: str) -> int:
        return int(self.minutes.get(category, self.default_minutes)) * 60


@dataclass
class StoreConfig:
    """Which storage backend holds usage and cooldown state."""

    backend: str = "memory"  # "memory" or "redis"
    redis_url_env: str = "AETHER_REDIS_URL"
    namespace: str = "aether"

    @property
    def redis_url(self) -> Optional[str]:
        return os.getenv(self.redis_url_env)


@dataclass
class AuthConfig:
    """API key authentication configuration."""

    enabled: bool = False
    api_keys: Dict[str, str] = field(default_factory=dict)  # key_name -> sha256_hash


@dataclass
class ServiceConfig:
    """Top-level service configuration."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    cooldowns: CooldownConfig = field(default_factory=CooldownConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    tier_policy_file: Optional[str] = None
    log_file: str = "logs/aether.log"


def load_config(path: Union[str, Path]) -> ServiceConfig:
    """Load service configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved ServiceConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        try:
            raw: Dict[str, Any] = json.load(f)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in config file {path}: {exc}")

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a JSON object at the top level")

    defaults = ProviderConfig()
    provider_raw = raw.get("provider", {})
    provider = ProviderConfig(
        name=provider_raw.get("name", defaults.name),
        base_url=provider_raw.get("base_url", defaults.base_url),
        api_key_env=provider_raw.get("api_key_env", defaults.api_key_env),
        default_model=provider_raw.get("default_model", defaults.default_model),
        premium_model=provider_raw.get("premium_model", defaults.premium_model),
        referer=provider_raw.get("referer", defaults.referer),
        title=provider_raw.get("title", defaults.title),
    )

    generator_raw = raw.get("generator", {})
    generator = GeneratorConfig(
        max_attempts=int(generator_raw.get("max_attempts", 3)),
        base_delay_seconds=float(generator_raw.get("base_delay_seconds", 1.0)),
        attempt_timeout_seconds=float(generator_raw.get("attempt_timeout_seconds", 45.0)),
        temperature=float(generator_raw.get("temperature", 0.7)),
        max_tokens=int(generator_raw.get("max_tokens", 300)),
    )
    if generator.max_attempts < 1:
        raise ValueError("generator.max_attempts must be >= 1")

    cooldown_raw = raw.get("cooldowns", {})
    cooldowns = CooldownConfig(default_minutes=int(cooldown_raw.get("default_minutes", 30)))
    cooldowns.minutes.update(
        {str(k): int(v) for k, v in cooldown_raw.get("minutes", {}).items()}
    )

    store_raw = raw.get("store", {})
    store = StoreConfig(
        backend=store_raw.get("backend", "memory"),
        redis_url_env=store_raw.get("redis_url_env", "AETHER_REDIS_URL"),
        namespace=store_raw.get("namespace", "aether"),
    )
    if store.backend not in ("memory", "redis"):
        raise ValueError(f"Unknown store backend: {store.backend}")

    auth_raw = raw.get("auth", {})
    auth = AuthConfig(
        enabled=auth_raw.get("enabled", False),
        api_keys=auth_raw.get("api_keys", {}),
    )

    return ServiceConfig(
        provider=provider,
        generator=generator,
        cooldowns=cooldowns,
        store=store,
        auth=auth,
        tier_policy_file=raw.get("tier_policy_file"),
        log_file=raw.get("log_file", "logs/aether.log"),
    )
