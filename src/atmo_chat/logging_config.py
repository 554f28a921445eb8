"""Log sinks for the chat service.

Records carry the owner, session and entity they concern through loguru's
``extra`` dict: the gateway wraps each submission in
``logger.contextualize(owner_id=..., session_id=...)`` and the reconciler
emits one ``logger.bind(audit=True, ...)`` record per committed upsert.
The audit sink keeps only those records, one JSON object per line.
"""

import sys
from pathlib import Path
from typing import Any

from loguru import logger

_CONTEXT_DEFAULTS = {"owner_id": "-", "session_id": "-"}

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <cyan>{extra[owner_id]}</cyan> <magenta>{extra[session_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def _is_audit(record: dict) -> bool:
    return record["extra"].get("audit") is True


def _add_console(level: str) -> str:
    logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT)
    return f"console (stderr, {level})"


def _add_jsonl(level: str, path: str = ".atmo/logs/atmo-chat.jsonl", rotation: str = "10 MB", retention: int = 3) -> str:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    logger.add(path, level=level, serialize=True, rotation=rotation, retention=retention)
    return f"jsonl ({path}, {level})"


def _add_audit(level: str, path: str = ".atmo/logs/reconcile-audit.jsonl", rotation: str = "10 MB") -> str:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    # Audit records are kept whatever the configured level.
    logger.add(path, level="DEBUG", serialize=True, rotation=rotation, filter=_is_audit)
    return f"reconcile audit ({path})"


_SINKS = {
    "console": _add_console,
    "jsonl": _add_jsonl,
    "audit": _add_audit,
}

_DEFAULT_CONSUMERS = [
    {"type": "console"},
    {"type": "jsonl"},
    {"type": "audit"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all sinks with ``consumers`` (``LogConsumers`` in config.json).

    Each entry names a sink ``type`` plus its options, e.g.
    ``{"type": "audit", "path": "logs/audit.jsonl"}``. Returns a line per
    registered sink for the startup banner.
    """
    logger.remove()
    logger.configure(extra=dict(_CONTEXT_DEFAULTS))

    descriptions: list[str] = []
    for config in _DEFAULT_CONSUMERS if consumers is None else consumers:
        sink_type = config.get("type", "")
        add = _SINKS.get(sink_type)
        if add is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue
        options = {k: v for k, v in config.items() if k not in ("type", "level")}
        descriptions.append(add(config.get("level", level), **options))
    return descriptions
