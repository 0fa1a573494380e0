"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dictionary section from a Config, SectionProxy, or plain dict object."""
    if source is None:
        return {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        if isinstance(candidate, Mapping):
            return dict(candidate.to_dict() if hasattr(candidate, 'to_dict') else candidate)

    try:
        candidate = source[section]  # type: ignore[index]
        if isinstance(candidate, Mapping):
            return dict(candidate)
    except (KeyError, TypeError):
        pass

    return {}
