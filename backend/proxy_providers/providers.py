from typing import Dict, List

from errors import UnsupportedProxyTypeError
from proxy_registry import ProxyType

_providers: Dict[ProxyType, object] = {}


def register_provider(provider) -> None:
    _providers[provider.proxy_type] = provider


def get_provider(proxy_type):
    parsed = ProxyType.parse(proxy_type)
    provider = _providers.get(parsed)
    if provider is None:
        raise UnsupportedProxyTypeError(f"No configuration provider for proxy type '{parsed.value}'")
    return provider


def list_providers() -> List[ProxyType]:
    return list(_providers)
