"""WooCommerce REST API catalog provider."""

from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx
import structlog

from catalog_mirror.config import get_settings
from catalog_mirror.exceptions import ProviderError, ProviderNotConfigured
from catalog_mirror.infrastructure.database.models import Organization
from catalog_mirror.infrastructure.provider.base import ProviderPage

logger = structlog.get_logger()

API_PREFIX = "/wp-json/wc/v3/"


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def normalize_product(raw: dict[str, Any]) -> dict[str, Any]:
    """Map a WooCommerce product onto mirror field names."""
    return {
        "id": raw.get("id"),
        "sku": _blank_to_none(raw.get("sku")),
        "name": raw.get("name") or "",
        "type": raw.get("type") or "simple",
        "status": raw.get("status"),
        "price": raw.get("price"),
        "regular_price": raw.get("regular_price"),
        "sale_price": raw.get("sale_price"),
        "on_sale": bool(raw.get("on_sale")),
        "manage_stock": bool(raw.get("manage_stock")),
        "stock_quantity": raw.get("stock_quantity"),
        "stock_status": raw.get("stock_status"),
        "updated_at": _blank_to_none(raw.get("date_modified_gmt") or raw.get("date_modified")),
        "variation_ids": raw.get("variations") or [],
    }


def normalize_variation(raw: dict[str, Any], parent_id: int) -> dict[str, Any]:
    """Map a WooCommerce variation onto mirror field names."""
    return {
        "id": raw.get("id"),
        "parent_id": raw.get("parent_id") or parent_id,
        "sku": _blank_to_none(raw.get("sku")),
        "price": raw.get("price"),
        "regular_price": raw.get("regular_price"),
        "sale_price": raw.get("sale_price"),
        "stock_quantity": raw.get("stock_quantity"),
        "stock_status": raw.get("stock_status"),
        "attributes": raw.get("attributes"),
        "updated_at": _blank_to_none(raw.get("date_modified_gmt") or raw.get("date_modified")),
    }


def _int_header(response: httpx.Response, name: str) -> int | None:
    value = response.headers.get(name)
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


class WooCommerceProvider:
    """Paginated reads from ``/wp-json/wc/v3``.

    Cursors are page numbers. Transport errors, 429 and 5xx responses are
    retriable; any other error status is not.
    """

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        page_size: int | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        settings = get_settings()
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size or settings.provider_page_size
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url + API_PREFIX,
            auth=(consumer_key, consumer_secret),
            timeout=timeout or settings.provider_timeout_seconds,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "WooCommerceProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_products_page(
        self, cursor: str | None, modified_after: datetime | None = None
    ) -> ProviderPage:
        params: dict[str, Any] = {"status": "any"}
        if modified_after is not None:
            params["modified_after"] = modified_after.replace(tzinfo=None).isoformat(
                timespec="seconds"
            )
            params["dates_are_gmt"] = "true"
        return await self._fetch_page("products", cursor, normalize_product, extra_params=params)

    async def fetch_product(self, product_id: int) -> dict[str, Any]:
        """Single product by id; a product missing upstream is a non-retriable 404."""
        _, payload = await self._get(f"products/{product_id}")
        if not isinstance(payload, dict):
            raise ProviderError("WooCommerce returned an unexpected payload")
        logger.debug("Fetched catalog product", product_id=product_id)
        return normalize_product(payload)

    async def fetch_variations_page(self, parent_id: int, cursor: str | None) -> ProviderPage:
        return await self._fetch_page(
            f"products/{parent_id}/variations",
            cursor,
            lambda raw: normalize_variation(raw, parent_id),
        )

    async def _get(
        self, path: str, params: dict[str, Any] | None = None
    ) -> tuple[httpx.Response, Any]:
        try:
            response = await self._client.get(path, params=params)
        except httpx.TransportError as e:
            raise ProviderError(f"WooCommerce request failed: {e}", retriable=True) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderError(
                f"WooCommerce API error: {response.status_code} {response.reason_phrase}",
                retriable=True,
                status=response.status_code,
            )
        if response.is_error:
            raise ProviderError(
                f"WooCommerce API error: {response.status_code} {response.reason_phrase}",
                retriable=False,
                status=response.status_code,
            )

        try:
            return response, response.json()
        except ValueError as e:
            raise ProviderError("WooCommerce returned invalid JSON") from e

    async def _fetch_page(
        self,
        path: str,
        cursor: str | None,
        normalize: Callable[[dict[str, Any]], dict[str, Any]],
        extra_params: dict[str, Any] | None = None,
    ) -> ProviderPage:
        try:
            page = int(cursor) if cursor else 1
        except ValueError:
            raise ProviderError(f"Invalid page cursor {cursor!r}") from None

        params = {
            "page": page,
            "per_page": self.page_size,
            "orderby": "id",
            "order": "asc",
            **(extra_params or {}),
        }
        response, payload = await self._get(path, params)
        if not isinstance(payload, list):
            raise ProviderError("WooCommerce returned an unexpected payload")

        total_pages = _int_header(response, "X-WP-TotalPages")
        if total_pages is not None:
            has_more = page < total_pages
        else:
            has_more = len(payload) >= self.page_size

        logger.debug("Fetched catalog page", path=path, page=page, items=len(payload))
        return ProviderPage(
            items=[normalize(item) for item in payload if isinstance(item, dict)],
            next_cursor=str(page + 1) if has_more and payload else None,
            total=_int_header(response, "X-WP-Total"),
        )


_REQUIRED_SETTINGS = ("url", "consumer_key", "consumer_secret")


def _woocommerce_settings(organization: Organization) -> dict[str, Any]:
    settings = organization.settings or {}
    config = settings.get("woocommerce") if isinstance(settings, dict) else None
    return config if isinstance(config, dict) else {}


def is_configured(organization: Organization) -> bool:
    config = _woocommerce_settings(organization)
    return all(config.get(key) for key in _REQUIRED_SETTINGS)


def provider_for_organization(organization: Organization) -> WooCommerceProvider:
    """Build the provider from the organization's stored WooCommerce settings."""
    config = _woocommerce_settings(organization)
    missing = [key for key in _REQUIRED_SETTINGS if not config.get(key)]
    if missing:
        raise ProviderNotConfigured(
            f"WooCommerce is not configured for organization {organization.id} "
            f"(missing {', '.join(missing)})"
        )
    return WooCommerceProvider(
        base_url=config["url"],
        consumer_key=config["consumer_key"],
        consumer_secret=config["consumer_secret"],
    )
