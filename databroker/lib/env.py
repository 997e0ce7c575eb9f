"""Environment variable handling for broker configuration.

Connector definitions usually carry credentials and hostnames that differ
per deployment, so YAML values may reference ``${VAR}`` and a ``.env``
file may supply them.

Uses python-dotenv for .env file loading.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional, Union

from dotenv import load_dotenv

__all__ = ["expand_env_vars", "expand_config", "load_env_file"]

# ${VAR_NAME}, ${VAR_NAME:-default} or $VAR_NAME
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Args:
        path: Path to .env file. If None, python-dotenv searches upwards
              from the current directory.
        override: If True, override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Expand environment variables in a string.

    Args:
        value: String potentially containing env var references
        strict: If True, raise KeyError for unset variables without a default

    Returns:
        String with environment variables expanded

    Example:
        >>> os.environ["LIBRARY_HOST"] = "library.example.org"
        >>> expand_env_vars("https://${LIBRARY_HOST}/api")
        'https://library.example.org/api'
        >>> expand_env_vars("${LIBRARY_PORT:-443}")
        '443'
    """

    def replacer(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(3)
        default = match.group(2)
        env_value = os.environ.get(name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        if strict:
            raise KeyError(f"Environment variable not set: {name}")
        return str(match.group(0))

    return ENV_VAR_PATTERN.sub(replacer, value)


def expand_config(value: Any, *, strict: bool = False) -> Any:
    """Recursively expand environment variables in parsed YAML.

    Dicts and lists are rebuilt; non-string scalars pass through unchanged.
    """
    if isinstance(value, str):
        return expand_env_vars(value, strict=strict)
    if isinstance(value, dict):
        return {key: expand_config(item, strict=strict) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_config(item, strict=strict) for item in value]
    return value
