"""
Configuration management for the engagement engine.

Loads settings from a YAML config file, then applies environment overrides,
and provides typed access.
"""
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()


def _project_root() -> Path:
    """Return project root (parent of engagement package)."""
    return Path(__file__).resolve().parent.parent


DEFAULT_CONFIG_PATH = _project_root() / "config" / "default.yaml"


@dataclass
class EngineConfig:
    """Configuration for the engagement engine."""

    # Store connection
    store_backend: str = "redis"        # "redis" or "memory"
    redis_url: Optional[str] = None     # Takes priority over host/port/db when set
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    store_timeout_ms: int = 250         # Per-operation timeout; failures degrade features
    namespace: str = "engage"           # Prefix for every key written by the engine

    # Affinity
    recently_viewed_capacity: int = 10
    recently_viewed_ttl: int = 604800           # 7 days
    viewed_categories_ttl: int = 2592000        # 30 days
    personalized_category_count: int = 3

    # Co-occurrence
    co_occurrence_top_n: int = 20
    style_match_ttl: int = 7776000              # 90 days

    # Trending
    bucket_seconds: int = 3600                  # 1 hour
    hourly_views_ttl: int = 7200                # current + previous bucket
    popular_products_ttl: int = 2592000         # 30 days

    # Presence
    viewer_mirror_ttl: int = 300                # 5 minutes

    # Cart
    cart_ttl: int = 604800                      # 7 days

    # Identity tokens on the real-time channel
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"

    # Rate limiting (fixed window per identity)
    rate_limit_window_seconds: int = 900        # 15 minutes
    rate_limit_max_requests: int = 100

    # HTTP surface
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    default_limit: int = 4
    log_level: str = "INFO"

    @classmethod
    def from_yaml(cls, config_path: Optional[Path] = None) -> "EngineConfig":
        """Load configuration from YAML file. Missing file means defaults."""
        path = config_path or DEFAULT_CONFIG_PATH
        if not path.exists():
            return cls()

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        store_config = data.get('store', {})
        affinity_config = data.get('affinity', {})
        co_config = data.get('co_occurrence', {})
        trending_config = data.get('trending', {})
        presence_config = data.get('presence', {})
        cart_config = data.get('cart', {})
        auth_config = data.get('auth', {})
        rate_config = data.get('rate_limit', {})
        http_config = data.get('http', {})

        return cls(
            store_backend=store_config.get('backend', 'redis'),
            redis_url=store_config.get('url'),
            redis_host=store_config.get('host', 'localhost'),
            redis_port=store_config.get('port', 6379),
            redis_db=store_config.get('db', 0),
            redis_password=store_config.get('password'),
            store_timeout_ms=store_config.get('timeout_ms', 250),
            namespace=store_config.get('namespace', 'engage'),
            recently_viewed_capacity=affinity_config.get('recently_viewed_capacity', 10),
            recently_viewed_ttl=affinity_config.get('recently_viewed_ttl', 604800),
            viewed_categories_ttl=affinity_config.get('viewed_categories_ttl', 2592000),
            personalized_category_count=affinity_config.get('personalized_category_count', 3),
            co_occurrence_top_n=co_config.get('top_n', 20),
            style_match_ttl=co_config.get('style_match_ttl', 7776000),
            bucket_seconds=trending_config.get('bucket_seconds', 3600),
            hourly_views_ttl=trending_config.get('hourly_views_ttl', 7200),
            popular_products_ttl=trending_config.get('popular_products_ttl', 2592000),
            viewer_mirror_ttl=presence_config.get('viewer_mirror_ttl', 300),
            cart_ttl=cart_config.get('ttl', 604800),
            jwt_secret=auth_config.get('jwt_secret', 'change-me'),
            jwt_algorithm=auth_config.get('jwt_algorithm', 'HS256'),
            rate_limit_window_seconds=rate_config.get('window_seconds', 900),
            rate_limit_max_requests=rate_config.get('max_requests', 100),
            cors_origins=http_config.get('cors_origins', ['*']),
            default_limit=http_config.get('default_limit', 4),
            log_level=data.get('log_level', 'INFO'),
        )

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        """Override fields from environment variables (env wins over YAML)."""
        env = os.environ if environ is None else environ

        overrides: Dict[str, Any] = {}
        if env.get("STORE_BACKEND"):
            overrides["store_backend"] = env["STORE_BACKEND"]
        if env.get("REDIS_URL"):
            overrides["redis_url"] = env["REDIS_URL"]
        if env.get("REDIS_HOST"):
            overrides["redis_host"] = env["REDIS_HOST"]
        if env.get("REDIS_PORT"):
            overrides["redis_port"] = int(env["REDIS_PORT"])
        if env.get("REDIS_DB"):
            overrides["redis_db"] = int(env["REDIS_DB"])
        if env.get("REDIS_PASSWORD"):
            overrides["redis_password"] = env["REDIS_PASSWORD"]
        if env.get("STORE_TIMEOUT_MS"):
            overrides["store_timeout_ms"] = int(env["STORE_TIMEOUT_MS"])
        if env.get("ENGINE_NAMESPACE"):
            overrides["namespace"] = env["ENGINE_NAMESPACE"]
        if env.get("JWT_SECRET"):
            overrides["jwt_secret"] = env["JWT_SECRET"]
        if env.get("JWT_ALGORITHM"):
            overrides["jwt_algorithm"] = env["JWT_ALGORITHM"]
        if env.get("RATE_LIMIT_WINDOW_SECONDS"):
            overrides["rate_limit_window_seconds"] = int(env["RATE_LIMIT_WINDOW_SECONDS"])
        if env.get("RATE_LIMIT_MAX_REQUESTS"):
            overrides["rate_limit_max_requests"] = int(env["RATE_LIMIT_MAX_REQUESTS"])
        if env.get("CORS_ORIGINS"):
            overrides["cors_origins"] = [o.strip() for o in env["CORS_ORIGINS"].split(",") if o.strip()]
        if env.get("LOG_LEVEL"):
            overrides["log_level"] = env["LOG_LEVEL"]

        known = {f.name for f in fields(self)}
        for name, value in overrides.items():
            if name in known:
                setattr(self, name, value)
        return self

    @property
    def store_timeout_seconds(self) -> float:
        return self.store_timeout_ms / 1000.0


# Global config instance
_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = EngineConfig.from_yaml().apply_env()
    return _config


def set_config(config: EngineConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
