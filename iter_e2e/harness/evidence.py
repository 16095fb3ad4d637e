"""
Terminal evidence for command-line checks.

Command output is saved as ``<name>.txt`` and a dark-themed ``<name>.html``;
when a browser is available the HTML is also rendered to ``<name>.png`` so the
run has a screenshot like the UI suites do.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from iter_e2e.harness.errors import BrowserError, EnvironmentSkip
from iter_e2e.harness.results import ResultStore

TEMPLATE_DIR = Path(__file__).parent / "templates"


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(TEMPLATE_DIR),
        autoescape=select_autoescape(["html", "j2"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_terminal_html(
    title: str,
    command: str,
    output: str,
    exit_code: int,
    *,
    timestamp: Optional[str] = None,
) -> str:
    template = _environment().get_template("terminal.html.j2")
    return template.render(
        title=title,
        command=command,
        output=output,
        exit_code=exit_code,
        timestamp=timestamp or datetime.now(timezone.utc).isoformat(timespec="seconds"),
    )


def save_terminal_evidence(
    store: ResultStore,
    name: str,
    title: str,
    command: str,
    output: str,
    exit_code: int,
    *,
    browser_factory: Optional[Callable[[], object]] = None,
) -> bool:
    """
    Write ``<name>.html`` and ``<name>.txt``; try ``<name>.png`` when a browser
    factory is given. Returns whether a PNG was produced. A missing or failing
    browser is logged, never raised.
    """
    store.save_text(f"{name}.html", render_terminal_html(title, command, output, exit_code))
    store.save_text(f"{name}.txt", output)
    store.log("Terminal output saved: %s.html, %s.txt", name, name)

    if browser_factory is None:
        return False
    try:
        browser = browser_factory()
    except EnvironmentSkip as exc:
        store.log("Browser not available for screenshot: %s", exc)
        return False
    try:
        browser.navigate_absolute(store.path(f"{name}.html").resolve().as_uri())
        browser.full_page_screenshot(name)
    except BrowserError as exc:
        store.log("Failed to capture terminal screenshot: %s", exc)
        return False
    finally:
        browser.close()
    return True
