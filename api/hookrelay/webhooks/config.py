"""Seed endpoint configuration loader.

Endpoints are normally managed through the operator API. A YAML file can
pre-register endpoints at startup; entries are matched to existing
endpoints by name.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from hookrelay.config import get_settings
from hookrelay.webhooks.exceptions import ValidationError
from hookrelay.webhooks.registry import EndpointConfig, EndpointRegistry

logger = logging.getLogger(__name__)

DOCKER_SECRETS_PATH = Path("/run/secrets")

SECRET_REF = re.compile(r"^\$\{(\w+)\}$")


@dataclass
class SeedConfig:
    """Endpoints parsed from the seed file."""

    endpoints: list[EndpointConfig] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class WebhookConfigLoader:
    """Loads seed webhook endpoints from YAML."""

    _env_var_secrets: set[str] = set()  # Track secrets loaded from env vars

    @classmethod
    def config_path(cls) -> Path:
        return Path(get_settings().WEBHOOK_CONFIG_PATH)

    @classmethod
    def load(cls, path: Path | None = None) -> SeedConfig:
        """Parse the seed file. Invalid entries are skipped with a warning."""
        cls._env_var_secrets.clear()
        path = path or cls.config_path()

        if not path.exists():
            logger.info("Webhook seed file not found at %s. Nothing to load.", path)
            return SeedConfig()

        try:
            with open(path) as f:
                raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error("Failed to parse webhook configuration: %s", e)
            return SeedConfig()

        seed = SeedConfig()
        for ep_data in raw_config.get("endpoints", []):
            name = ep_data.get("name") if isinstance(ep_data, dict) else None
            try:
                seed.endpoints.append(cls._parse_endpoint(ep_data))
            except ValidationError as e:
                logger.warning("Skipping invalid endpoint %r: %s", name, e)
                seed.skipped.append(str(name))

        cls._log_secret_warnings()

        logger.info("Loaded %d webhook endpoint(s) from %s", len(seed.endpoints), path)
        return seed

    @classmethod
    async def sync(cls, registry: EndpointRegistry, path: Path | None = None) -> SyncResult:
        """Register new seed endpoints and update existing ones by name."""
        seed = cls.load(path)
        result = SyncResult(skipped=list(seed.skipped))

        for config in seed.endpoints:
            try:
                existing = await registry.find_by_name(config.name)
                if existing is None:
                    await registry.register(config)
                    result.created.append(config.name)
                else:
                    await registry.update(existing.id, config.__dict__)
                    result.updated.append(config.name)
            except ValidationError as e:
                logger.warning("Skipping seed endpoint %r: %s", config.name, e)
                result.skipped.append(config.name)

        return result

    @classmethod
    def _parse_endpoint(cls, data: Any) -> EndpointConfig:
        """Parse and validate endpoint configuration."""
        if not isinstance(data, dict):
            raise ValidationError(["endpoint entry must be a mapping"])

        data = dict(data)
        name = data.get("name")
        if not name:
            raise ValidationError(["endpoint missing 'name' field"])

        secret_ref = data.get("secret")
        if secret_ref:
            secret, is_docker_secret = cls._resolve_secret(str(secret_ref), name)
            if not secret:
                raise ValidationError(
                    [f"endpoint '{name}' secret could not be resolved: {secret_ref}"]
                )
            if not is_docker_secret:
                cls._env_var_secrets.add(str(secret_ref))
            data["secret"] = secret

        config = EndpointConfig.from_dict(data)
        config.validate()
        return config

    @classmethod
    def _resolve_secret(cls, secret_ref: str, endpoint_name: str) -> tuple[str | None, bool]:
        """
        Resolve secret value from Docker Secrets or environment variable.
        Returns (secret_value, is_docker_secret).
        """
        match = SECRET_REF.match(secret_ref)
        if not match:
            # Literal value (not recommended but allowed)
            logger.warning(
                "Endpoint '%s' uses literal secret value. "
                "Use ${VAR_NAME} or Docker Secrets instead.",
                endpoint_name,
            )
            return secret_ref, False

        var_name = match.group(1)

        # Try Docker Secrets first (preferred)
        secret_file = DOCKER_SECRETS_PATH / var_name.lower()
        if secret_file.exists():
            try:
                return secret_file.read_text().strip(), True
            except OSError as e:
                logger.warning("Failed to read Docker Secret %s: %s", secret_file, e)

        env_value = os.environ.get(var_name)
        if env_value:
            return env_value, False

        return None, False

    @classmethod
    def _log_secret_warnings(cls) -> None:
        """Log warnings for secrets loaded from environment variables."""
        for secret_ref in cls._env_var_secrets:
            match = SECRET_REF.match(secret_ref)
            if match:
                var_name = match.group(1)
                logger.warning(
                    "Webhook secret '%s' loaded from environment variable. "
                    "For production, use Docker Secrets: /run/secrets/%s",
                    var_name,
                    var_name.lower(),
                )
