"""External catalog providers."""

from catalog_mirror.infrastructure.provider.base import CatalogProvider, ProviderPage
from catalog_mirror.infrastructure.provider.woocommerce import (
    WooCommerceProvider,
    is_configured,
    provider_for_organization,
)

__all__ = [
    "CatalogProvider",
    "ProviderPage",
    "WooCommerceProvider",
    "is_configured",
    "provider_for_organization",
]
