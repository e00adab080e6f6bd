"""
Logging setup using Loguru.

Every module logs as `logger.x(f"[Component] ...")`.  A patcher lifts the
bracketed tag into `extra["component"]` so sinks can show it as its own
column and levels can be tuned per component, e.g. `{"Retry": "DEBUG"}`
while everything else stays at INFO.  The file sink is JSON lines.
"""
from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Mapping, Optional

from loguru import logger

_TAG_RE = re.compile(r"^\[(?P<component>[A-Za-z][\w-]*)\]\s*")


def _tag_component(record: dict) -> None:
    match = _TAG_RE.match(record["message"])
    if match:
        record["extra"]["component"] = match.group("component")
        record["message"] = record["message"][match.end():]
    else:
        record["extra"].setdefault("component", (record["name"] or "root").rsplit(".", 1)[-1])


class ComponentFilter:
    """Pass a record when it reaches its component's level (or the default)."""

    def __init__(self, default_level: str, overrides: Optional[Mapping[str, str]] = None) -> None:
        self.default = logger.level(default_level.upper()).no
        self.overrides = {name: logger.level(level.upper()).no for name, level in (overrides or {}).items()}

    @property
    def floor(self) -> int:
        return min([self.default, *self.overrides.values()])

    def __call__(self, record: dict) -> bool:
        component = record["extra"].get("component")
        return record["level"].no >= self.overrides.get(component, self.default)


def setup_logger(
    log_level: str = "INFO",
    log_file: str | None = "logs/ragindex.log",
    component_levels: Optional[Mapping[str, str]] = None,
) -> None:
    """
    Configure loguru for the indexing core.

    - Console: coloured, component column
    - File: JSON lines, rotating, compressed (skipped when log_file is None)
    """
    logger.remove()
    logger.configure(patcher=_tag_component)
    level_filter = ComponentFilter(log_level, component_levels)

    logger.add(
        sys.stderr,
        level=level_filter.floor,
        filter=level_filter,
        format=(
            "<green>{time:HH:mm:ss.SSS}</green> | "
            "<level>{level: <7}</level> | "
            "<magenta>{extra[component]: <12}</magenta> | "
            "<level>{message}</level>"
        ),
        colorize=True,
    )

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level_filter.floor,
            filter=level_filter,
            serialize=True,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            enqueue=True,
        )

    overrides = ", ".join(f"{k}={v}" for k, v in sorted((component_levels or {}).items())) or "none"
    logger.info(f"[Logger] level={log_level} | overrides={overrides} | file={log_file}")
