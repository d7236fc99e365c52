"""External catalog provider contract."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass
class ProviderPage:
    """One page of catalog records.

    ``next_cursor`` is None on the last page. ``total`` is the provider's
    total record count when it reports one.
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    total: int | None = None


class CatalogProvider(Protocol):
    """Source of catalog pages. Failures raise ProviderError."""

    async def fetch_products_page(
        self, cursor: str | None, modified_after: datetime | None = None
    ) -> ProviderPage:
        ...

    async def fetch_product(self, product_id: int) -> dict[str, Any]:
        ...

    async def fetch_variations_page(self, parent_id: int, cursor: str | None) -> ProviderPage:
        ...
