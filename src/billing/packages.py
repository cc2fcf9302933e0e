"""Credit package catalogue loaded from YAML."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

import yaml

from src.core.config import get_settings


@dataclass(frozen=True)
class CreditPackage:
    name: str
    credits: int
    price_cents: Optional[int] = None


def _resolve_packages_path() -> Path:
    settings = get_settings()
    configured = Path(settings.credit_packages_file_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


@lru_cache(maxsize=1)
def load_credit_packages() -> Dict[str, CreditPackage]:
    packages_path = _resolve_packages_path()
    with packages_path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or {}
    if not isinstance(content, dict):
        raise ValueError("Invalid credit packages file format")

    packages: Dict[str, CreditPackage] = {}
    for name, definition in content.items():
        if not isinstance(name, str) or not isinstance(definition, dict):
            continue
        credits = definition.get("credits")
        if not isinstance(credits, int) or credits <= 0:
            continue
        price = definition.get("price_cents")
        packages[name] = CreditPackage(
            name=name,
            credits=credits,
            price_cents=price if isinstance(price, int) else None,
        )
    return packages


def get_credit_package(name: str) -> Optional[CreditPackage]:
    return load_credit_packages().get(name.strip().lower())
