"""YAML service configuration loader and validator."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from audirectdebit.auth.secret import (
    ALGORITHM_ENV,
    DEFAULT_ALGORITHM,
    DEFAULT_SECRET_FILE,
    MAC_ALGORITHMS,
    SECRET_FILE_ENV,
    SecretStore,
)

DEFAULT_TENANT_HEADER = "X-Tenant-Id"
DEFAULT_PRINCIPAL_HEADER = "X-Principal-Id"


@dataclass
class Settings:
    """Service-level settings (per-request gateway config travels with each request)."""

    secret_file: Path = Path(DEFAULT_SECRET_FILE)
    mac_algorithm: str = DEFAULT_ALGORITHM
    # Headers set by the upstream authenticator for the request scope
    tenant_header: str = DEFAULT_TENANT_HEADER
    principal_header: str = DEFAULT_PRINCIPAL_HEADER

    def secret_store(self) -> SecretStore:
        return SecretStore(self.secret_file, self.mac_algorithm)


def load_config(path: Path) -> Optional[dict[str, Any]]:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to the YAML config file

    Returns:
        Parsed configuration dictionary, or None if file is empty

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    with open(path) as f:
        result: Optional[dict[str, Any]] = yaml.safe_load(f)
        return result


def validate_config(config: dict[str, Any]) -> list[str]:
    """
    Validate a loaded configuration dictionary.

    Returns:
        List of validation error messages (empty list = valid)
    """
    if not isinstance(config, dict):
        return ["Config root must be a YAML mapping"]

    errors: list[str] = []
    for section in ("webformmac", "server"):
        value = config.get(section, {})
        if value is not None and not isinstance(value, dict):
            errors.append(f"'{section}' must be a mapping")
    if errors:
        return errors

    mac = config.get("webformmac") or {}
    algorithm = mac.get("algorithm")
    if algorithm is not None and algorithm not in MAC_ALGORITHMS:
        errors.append(
            f"webformmac.algorithm: unsupported algorithm '{algorithm}' "
            f"(expected one of: {', '.join(MAC_ALGORITHMS)})"
        )
    secret_file = mac.get("secret_file")
    if secret_file is not None and not str(secret_file).strip():
        errors.append("webformmac.secret_file: must not be empty")

    server = config.get("server") or {}
    for key in ("tenant_header", "principal_header"):
        header = server.get(key)
        if header is not None and not str(header).strip():
            errors.append(f"server.{key}: must not be empty")

    return errors


def settings_from_config(config: Optional[dict[str, Any]] = None) -> Settings:
    """
    Build Settings from a validated config dict and the environment.

    WEBFORMMAC_SECRET and WEBFORMMAC_ALGORITHM take precedence over the file.

    Args:
        config: Parsed and validated config dictionary, or None for defaults only

    Returns:
        Settings instance
    """
    config = config or {}
    mac = config.get("webformmac") or {}
    server = config.get("server") or {}

    secret_file = os.environ.get(SECRET_FILE_ENV) or mac.get("secret_file", DEFAULT_SECRET_FILE)
    algorithm = os.environ.get(ALGORITHM_ENV) or mac.get("algorithm", DEFAULT_ALGORITHM)
    return Settings(
        secret_file=Path(secret_file),
        mac_algorithm=str(algorithm),
        tenant_header=str(server.get("tenant_header", DEFAULT_TENANT_HEADER)),
        principal_header=str(server.get("principal_header", DEFAULT_PRINCIPAL_HEADER)),
    )
