"""Prompt text for model calls, kept in ``prompts/prompts.json``.

Entries are addressed by dotted keys (``analysis.summary``) and rendered
with ``string.Template``. An entry may be a string or a list of lines.
"""

from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"


class PromptCatalog:
    def __init__(self, path: Path = PROMPTS_PATH):
        self.path = path
        self._entries: dict[str, str] = {}
        self._mtime_ns: int | None = None

    def _reload_if_changed(self) -> None:
        mtime_ns = self.path.stat().st_mtime_ns
        if self._mtime_ns == mtime_ns:
            return
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Prompt catalog must be a JSON object: {self.path}")
        self._entries = dict(_flatten(payload))
        self._mtime_ns = mtime_ns

    def keys(self) -> list[str]:
        self._reload_if_changed()
        return sorted(self._entries)

    def template(self, key: str) -> Template:
        self._reload_if_changed()
        try:
            return Template(self._entries[key])
        except KeyError:
            raise KeyError(f"Prompt key not found: {key}") from None


def _flatten(node: dict[str, Any], prefix: str = ""):
    for name, value in node.items():
        key = f"{prefix}{name}"
        if isinstance(value, dict):
            yield from _flatten(value, f"{key}.")
        elif isinstance(value, list):
            yield key, "\n".join(str(line) for line in value)
        elif isinstance(value, str):
            yield key, value
        else:
            raise TypeError(f"Prompt key must map to text: {key}")


_catalog = PromptCatalog()


def render_prompt(key: str, **values: Any) -> str:
    try:
        return _catalog.template(key).substitute(**values)
    except KeyError as exc:
        if str(exc.args[0]).startswith("Prompt key not found"):
            raise
        raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc
