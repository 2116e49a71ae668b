"""Filtered OpenCode plugin configuration for --no-plugins runs."""

import json
import os
import re
from pathlib import Path
from typing import Optional

from ralph_wiggum.state import get_state_dir

FILTERED_CONFIG_NAME = 'ralph-opencode.no-plugins.json'
CONFIG_SCHEMA_URL = 'https://opencode.ai/config.json'
BLOCK_COMMENT_PATTERN = re.compile(r'/\*.*?\*/', re.DOTALL)
LINE_COMMENT_PATTERN = re.compile(r'^\s*//.*$', re.MULTILINE)
AUTH_PLUGIN_PATTERN = re.compile(r'auth', re.IGNORECASE)


def strip_json_comments(raw: str) -> str:
    """Remove /* */ block comments and whole-line // comments."""
    without_block = BLOCK_COMMENT_PATTERN.sub('', raw)
    return LINE_COMMENT_PATTERN.sub('', without_block)


def load_plugins_from_config(config_path: Path) -> list[str]:
    """Return the string entries of the config's plugin list, or [] if unavailable."""
    try:
        parsed = json.loads(strip_json_comments(config_path.read_text(encoding='utf-8')))
    except (OSError, ValueError):
        return []

    plugins = parsed.get('plugin') if isinstance(parsed, dict) else None
    if not isinstance(plugins, list):
        return []
    return [p for p in plugins if isinstance(p, str)]


def get_user_config_path() -> Path:
    config_home = os.environ.get('XDG_CONFIG_HOME') or str(Path(os.environ.get('HOME', '')) / '.config')
    return Path(config_home) / 'opencode' / 'opencode.json'


def ensure_filtered_plugins_config(workdir: Optional[Path] = None) -> Path:
    """
    Write a config that keeps only authentication plugins.

    Plugins from the user and project configs are merged, de-duplicated in
    order and filtered to names containing "auth".

    Returns:
        Path of the written config, suitable for OPENCODE_CONFIG
    """
    state_dir = get_state_dir(workdir)
    state_dir.mkdir(parents=True, exist_ok=True)

    plugins = load_plugins_from_config(get_user_config_path()) + \
        load_plugins_from_config(state_dir / 'opencode.json')
    filtered = [p for p in dict.fromkeys(plugins) if AUTH_PLUGIN_PATTERN.search(p)]

    config_path = state_dir / FILTERED_CONFIG_NAME
    config_path.write_text(
        json.dumps({'$schema': CONFIG_SCHEMA_URL, 'plugin': filtered}, indent=2),
        encoding='utf-8'
    )
    return config_path
