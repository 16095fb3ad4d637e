# Where: iter_e2e/harness/service_config.py
# What: Render and write the private TOML config for one service instance.
# Why: One template for every backend so local and suite-level runs agree.
from __future__ import annotations

import json
import string
from pathlib import Path

from iter_e2e.harness import constants

LLM_CONFIG_RELATIVE_PATH = Path("tests") / "config" / "config.toml"

CONFIG_TEMPLATE = string.Template(
    """[service]
host = $host
port = $port
data_dir = $data_dir
pid_file = $pid_file
shutdown_timeout_seconds = $shutdown_timeout

[api]
enabled = true
api_key = ""

[mcp]
enabled = true

[logging]
level = "debug"
format = "text"
output = ["stdout"]

[index]
debounce_ms = 100
watch_enabled = true
"""
)


def _toml_string(value: str) -> str:
    # JSON string escapes are valid TOML basic-string escapes.
    return json.dumps(value)


def read_llm_section(project_root: Path) -> str:
    """Contents of tests/config/config.toml, or "" when absent or blank."""
    path = project_root / LLM_CONFIG_RELATIVE_PATH
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return ""
    return content if content.strip() else ""


def render_service_config(
    *,
    port: int,
    data_dir: Path,
    host: str = constants.LOOPBACK_HOST,
    shutdown_timeout: int = 5,
    llm_section: str = "",
) -> str:
    rendered = CONFIG_TEMPLATE.substitute(
        host=_toml_string(host),
        port=port,
        data_dir=_toml_string(str(data_dir)),
        pid_file=_toml_string(str(data_dir / f"{constants.SERVICE_NAME}.pid")),
        shutdown_timeout=shutdown_timeout,
    )
    if llm_section:
        rendered = f"{rendered}\n{llm_section.rstrip()}\n"
    return rendered


def write_service_config(
    path: Path,
    *,
    port: int,
    data_dir: Path,
    project_root: Path | None = None,
    include_llm: bool = True,
    shutdown_timeout: int = 5,
) -> Path:
    llm_section = read_llm_section(project_root) if include_llm and project_root else ""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        render_service_config(
            port=port,
            data_dir=data_dir,
            shutdown_timeout=shutdown_timeout,
            llm_section=llm_section,
        ),
        encoding="utf-8",
    )
    return path
