"""Startup-time helpers for safe config logging."""

import os

from pydantic_settings import BaseSettings

from consultpay.common.logging import logger


def secret_env_names(*settings_classes: type[BaseSettings]) -> set[str]:
    """Env variable names backing fields tagged secret in the given settings."""

    names = set()
    for settings_cls in settings_classes:
        prefix = settings_cls.model_config.get("env_prefix", "")
        for field_name, field in settings_cls.model_fields.items():
            extra = field.json_schema_extra
            if isinstance(extra, dict) and extra.get("secret"):
                names.add(f"{prefix}{field_name}".upper())
    return names


def _safe_env(name: str, secrets: set[str]) -> str:
    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if name.upper() in secrets:
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str], *settings_classes: type[BaseSettings]) -> None:
    """Log selected startup config keys, hiding values of secret fields."""

    secrets = secret_env_names(*settings_classes)
    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key, secrets)
    logger.info("startup_config=%s", config)
