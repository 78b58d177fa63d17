from __future__ import annotations

import yaml
from pydantic import BaseModel

from forumai.models import Charter, TranslationItem


class CharterCatalog(BaseModel, frozen=True):
    charters: list[Charter]


def load_charters(path: str) -> dict[str, Charter]:
    with open(path) as f:
        raw = yaml.safe_load(f) or []
    catalog = CharterCatalog.model_validate({"charters": raw})

    by_name: dict[str, Charter] = {}
    for charter in catalog.charters:
        if charter.name in by_name:
            raise ValueError(f"Duplicate charter name: {charter.name!r}")
        by_name[charter.name] = charter
    return by_name


def load_translation_items(path: str) -> list[TranslationItem]:
    """Read a YAML mapping of key -> source text, keeping file order."""
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a mapping of key to text")
    items = []
    for key, value in raw.items():
        if value is None or isinstance(value, (dict, list)):
            raise ValueError(f"{path}: {key!r} must map to a piece of text")
        items.append(TranslationItem(key=str(key), source_text=str(value)))
    return items
