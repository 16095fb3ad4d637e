# Where: iter_e2e/harness/logs.py
# What: Log sinks, console printing, subprocess streaming and logging setup.
# Why: Build and service output must always land in a file, console output stays optional.
from __future__ import annotations

import logging
import logging.config
import os
import string
import subprocess
import threading
from pathlib import Path
from typing import Callable, TextIO

import yaml

from iter_e2e.harness import constants

DEFAULT_LOGGING_CONFIG = Path(__file__).resolve().parent.parent / "logging.yml"

_OUTPUT_LOCK = threading.Lock()
_SECRET_KEY_MARKERS = ("API_KEY", "TOKEN", "SECRET", "PASSWORD")


def safe_print(message: str = "", *, prefix: str | None = None) -> None:
    with _OUTPUT_LOCK:
        if prefix:
            print(f"{prefix} {message}", flush=True)
        else:
            print(message, flush=True)


class LogSink:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._file: TextIO | None = None
        self._lock = threading.Lock()

    def open(self, mode: str = "w") -> "LogSink":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open(mode, encoding="utf-8")
        return self

    def close(self) -> None:
        with self._lock:
            if self._file:
                self._file.close()
                self._file = None

    @property
    def closed(self) -> bool:
        return self._file is None

    def write_line(self, line: str) -> None:
        if self._file is None:
            raise RuntimeError("LogSink is not open")
        with self._lock:
            self._file.write(f"{line}\n")
            self._file.flush()

    def __enter__(self) -> "LogSink":
        if self._file is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def make_prefix_printer(label: str, phase: str | None = None) -> Callable[[str], None]:
    prefix = f"[{label}][{phase}] |" if phase else f"[{label}]"

    def _printer(line: str) -> None:
        safe_print(line, prefix=prefix)

    return _printer


def run_and_stream(
    cmd: list[str],
    *,
    cwd: Path,
    env: dict[str, str] | None,
    log: LogSink,
    printer: Callable[[str], None] | None = None,
    on_line: Callable[[str], None] | None = None,
) -> int:
    rendered_cmd = f"$ {' '.join(redact_cmd(cmd))}"
    log.write_line(rendered_cmd)
    if printer:
        printer(rendered_cmd)
    proc = subprocess.Popen(
        cmd,
        cwd=str(cwd),
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        bufsize=1,
        errors="replace",
    )
    assert proc.stdout is not None
    for raw_line in proc.stdout:
        line = raw_line.rstrip("\n")
        log.write_line(line)
        if on_line:
            on_line(line)
        if printer:
            printer(line)
    return proc.wait()


def redact_cmd(cmd: list[str]) -> list[str]:
    return [_redact_token(token) for token in cmd]


def _redact_token(token: str) -> str:
    if "=" not in token:
        return token
    key, value = token.split("=", 1)
    canonical_key = key.strip("\"'").lstrip("-").upper()
    if value and any(marker in canonical_key for marker in _SECRET_KEY_MARKERS):
        return f"{key}=***"
    return token


def setup_logging(config_path: Path | str | None = None) -> None:
    """
    Load the YAML logging config, substitute environment variables and apply it.
    Falls back to basicConfig when the file is missing.
    """
    path = Path(config_path) if config_path else DEFAULT_LOGGING_CONFIG
    level = os.environ.get(constants.ENV_LOG_LEVEL, "INFO")
    if not path.exists():
        logging.basicConfig(level=level)
        return

    with open(path, "r", encoding="utf-8") as f:
        template = string.Template(f.read())

    mapping = os.environ.copy()
    mapping.setdefault(constants.ENV_LOG_LEVEL, "INFO")
    config = yaml.safe_load(template.safe_substitute(mapping))
    logging.config.dictConfig(config)
