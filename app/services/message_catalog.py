from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("message_catalog")

_MESSAGES_PATH = Path(__file__).resolve().parents[1] / "knowledge" / "whatsapp" / "MESSAGES.yaml"


class _SafeFormat(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


@lru_cache(maxsize=2)
def _load_yaml(path: Path) -> dict:
    if not path.exists():
        logger.warning(f"Message catalogue missing: {path}")
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


def load_messages() -> dict:
    return _load_yaml(_MESSAGES_PATH)


def _lookup(key: str) -> Any:
    node: Any = load_messages()
    for part in key.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def has_message(key: str) -> bool:
    return isinstance(_lookup(key), str)


def get_message(key: str, **params: Any) -> str:
    """Render a catalogue entry such as ``"link.prompt"``.

    ``site_url`` and ``support_email`` are always injected from settings so
    they are echoed verbatim. Unknown placeholders are left untouched.
    """
    template = _lookup(key)
    if not isinstance(template, str):
        logger.error(f"Unknown message key: {key}")
        template = _lookup("fallback.default") or ""
    values = _SafeFormat(site_url=settings.site_url, support_email=settings.support_email)
    values.update({k: v for k, v in params.items() if v is not None})
    return template.format_map(values).strip()


def get_fallback(purpose: str, **params: Any) -> str:
    key = f"fallback.{purpose}"
    if has_message(key):
        return get_message(key, **params)
    return get_message("fallback.default", **params)
