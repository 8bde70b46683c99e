"""Utility functions and helpers."""

import os
import re
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

# Matches ${VAR} and ${VAR:-default}
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

_UA_PLATFORM_RE = re.compile(r"\(([^;]+);.*(rv:[\d.]+)\)", re.IGNORECASE)
_UA_WINDOWS_RE = re.compile(r"windows[^;]+;", re.IGNORECASE)


def prune_user_agent(user_agent: Optional[str]) -> str:
    """Strip platform details from a user-agent string.

    Only the first parenthesised token and the ``rv:`` version are kept, and
    any Windows version collapses to ``Windows NT;``.

    Args:
        user_agent: Raw User-Agent header value (may be None)

    Returns:
        Pruned user-agent string (empty when no header was sent)
    """
    pruned = _UA_PLATFORM_RE.sub(r"(\1; \2)", user_agent or "", count=1)
    return _UA_WINDOWS_RE.sub("Windows NT;", pruned, count=1)


def expand_env(value: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Interpolate ``${VAR}`` and ``${VAR:-default}`` references.

    Unset variables without a default expand to an empty string.

    Args:
        value: String possibly containing references
        environ: Mapping to read variables from (defaults to os.environ)

    Returns:
        Interpolated string
    """
    env = os.environ if environ is None else environ

    def _replace(match: "re.Match[str]") -> str:
        name, default = match.group(1), match.group(2)
        found = env.get(name)
        if found:
            return found
        return default if default is not None else ""

    return _ENV_PATTERN.sub(_replace, value)


def _expand_tree(node: Any, environ: Optional[Mapping[str, str]]) -> Any:
    if isinstance(node, str):
        return expand_env(node, environ)
    if isinstance(node, dict):
        return {key: _expand_tree(val, environ) for key, val in node.items()}
    if isinstance(node, list):
        return [_expand_tree(item, environ) for item in node]
    return node


def load_config_file(
    file_path: str, environ: Optional[Mapping[str, str]] = None
) -> dict:
    """Read a YAML configuration file with environment interpolation.

    Args:
        file_path: Path to the YAML file
        environ: Mapping used for interpolation (defaults to os.environ)

    Returns:
        Parsed configuration dict

    Raises:
        FileNotFoundError: If file doesn't exist
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    return _expand_tree(data, environ)


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to maximum length.

    Args:
        text: Text to truncate
        max_length: Maximum length

    Returns:
        Truncated text with ellipsis if needed
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."
