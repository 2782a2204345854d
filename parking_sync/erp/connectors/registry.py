from __future__ import annotations

from typing import Dict, List, Type
from .base import ErpConnector

_PROVIDERS: Dict[str, Type[ErpConnector]] = {}

def _normalize(provider: str) -> str:
    return (provider or "").strip().lower()

def register(provider: str):
    """Class decorator binding a connector to a SoftOneConnection.provider value."""
    name = _normalize(provider)

    def _decorator(cls: Type[ErpConnector]):
        existing = _PROVIDERS.get(name)
        if existing is not None and existing is not cls:
            raise ValueError(f"ERP provider {name!r} is already bound to {existing.__name__}")
        _PROVIDERS[name] = cls
        return cls
    return _decorator

def available_providers() -> List[str]:
    from . import softone  # noqa: F401
    return sorted(_PROVIDERS)

def get_connector_class(provider: str) -> Type[ErpConnector]:
    name = _normalize(provider)
    if name not in available_providers():
        raise ValueError(f"Unsupported ERP provider: {provider}. Registered: {available_providers()}")
    return _PROVIDERS[name]
