"""Configuration management for hookgate.

Configuration Discovery Precedence (Highest to Lowest Priority):
===============================================================

1. **HOOKGATE_CONFIG_DIR Environment Variable** (Highest Priority)
   - Looks for: `${HOOKGATE_CONFIG_DIR}/hookgate.yaml`
   - Use case: Development, testing, custom deployments

2. **~/.hookgate Directory** (Fallback)
   - Looks for: `~/.hookgate/hookgate.yaml`
   - Use case: Default user installations

If no `hookgate.yaml` is found, default configuration is applied.

Example hookgate.yaml:
--------
hookgate:
  debug: false
  coprocess:
    enabled: true
    bundle_path: /var/lib/hookgate/bundles
    hook_timeout: 5
  policies:
    - id: gold
      rate: 1000
      per: 1
      quota_max: 10000
      quota_renewal_rate: 3600
  apis:
    - name: orders
      listen_path: /orders/
      use_keyless_access: false
      enable_coprocess_auth: true
      custom_middleware_bundle: orders-auth
"""

import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from hookgate.stores import Policy

logger = logging.getLogger(__name__)


class CoProcessConfig(BaseModel):
    """Settings for out-of-process hook execution."""

    enabled: bool = True
    """Run bundle hooks at all. When disabled, APIs with bundles are not loaded."""

    bundle_path: Path = Field(default_factory=lambda: Path("./bundles"))
    """Directory holding one sub-directory per bundle ID"""

    python_path: list[str] = Field(default_factory=list)
    """Extra entries prepended to PYTHONPATH of python driver workers"""

    python_executable: str | None = None
    """Interpreter for python driver workers (defaults to the gateway's own)"""

    hook_timeout: float = 5.0
    """Seconds a single hook call may take"""

    pool_size: int = 4
    """Maximum runtime instances per driver"""

    acquire_timeout: float = 10.0
    """Seconds to wait for a free runtime instance"""

    http_runtime_url: str = "http://127.0.0.1:5555"
    """Base URL of the remote runtime used by the http driver"""


class UrlRewriteRule(BaseModel):
    """Pre-computed URL rewrite applied before the post stage."""

    path: str
    method: str = "GET"
    rewrite_to: str


class MethodTransformRule(BaseModel):
    """Pre-computed method transform applied before the post stage."""

    path: str
    method: str = "GET"
    to_method: str


class ApiDefinition(BaseModel):
    """An API served by the gateway."""

    name: str = ""
    listen_path: str = "/"
    strip_listen_path: bool = True
    use_keyless_access: bool = True
    enable_coprocess_auth: bool = False
    custom_middleware_bundle: str | None = None
    url_rewrites: list[UrlRewriteRule] = Field(default_factory=list)
    method_transforms: list[MethodTransformRule] = Field(default_factory=list)

    @property
    def requires_auth(self) -> bool:
        return not self.use_keyless_access


class HookGateConfig(BaseSettings):
    """Main configuration for hookgate that reads from hookgate.yaml."""

    model_config = SettingsConfigDict(
        env_prefix="HOOKGATE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    debug: bool = False
    coprocess: CoProcessConfig = Field(default_factory=CoProcessConfig)
    apis: list[ApiDefinition] = Field(default_factory=list)
    policies: list[Policy] = Field(default_factory=list)

    # Path of the file this configuration was read from
    config_path: Path | None = None

    @classmethod
    def from_yaml(cls, yaml_path: Path, **kwargs: Any) -> "HookGateConfig":
        """Load configuration from a hookgate.yaml file.

        Args:
            yaml_path: Path to the hookgate.yaml file
            **kwargs: Values that take precedence over the file

        Returns:
            HookGateConfig instance
        """
        data: dict[str, Any] = {}
        if yaml_path.exists():
            with yaml_path.open() as f:
                raw = yaml.safe_load(f) or {}
            section = raw.get("hookgate", {})
            if isinstance(section, dict):
                data = section
            else:
                logger.warning(f"Invalid hookgate section in {yaml_path}: {type(section)}")

        data.update(kwargs)
        data["config_path"] = yaml_path
        return cls(**data)


# Global configuration instance
_config_instance: HookGateConfig | None = None
_config_lock = threading.Lock()


def get_config() -> HookGateConfig:
    """Get the configuration instance."""
    global _config_instance

    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                env_config_dir = os.environ.get("HOOKGATE_CONFIG_DIR")
                if env_config_dir:
                    config_dir = Path(env_config_dir)
                    logger.info(f"Using config directory from environment: {config_dir}")
                else:
                    config_dir = Path.home() / ".hookgate"

                yaml_path = config_dir / "hookgate.yaml"
                if yaml_path.exists():
                    logger.info(f"Loading hookgate config from: {yaml_path}")
                    _config_instance = HookGateConfig.from_yaml(yaml_path)
                else:
                    logger.info(f"hookgate.yaml not found at {yaml_path}, using default config")
                    _config_instance = HookGateConfig()

    return _config_instance


def set_config_instance(config: HookGateConfig) -> None:
    """Set the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = config


def clear_config_instance() -> None:
    """Clear the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
