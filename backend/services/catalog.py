# services/catalog.py
# ============================================================================
# DUCK STOREFRONT v1.0 — CATALOG SERVICE
# ============================================================================
# Price lookups for the order pipeline plus the admin-facing product CRUD
# and the shop settings record (cart ceiling).
#
# The order pipeline only ever calls get_price(); it never mutates the
# catalog.
# ============================================================================

import asyncio
import json
import os
from typing import Any, List, Optional

import structlog

from pipeline.errors import ProductNotFound, ValidationError
from schemas.order_definitions import Product, ShopSettings
from storage.json_store import JsonTable, TableName

logger = structlog.get_logger().bind(component="catalog")

SETTINGS_KEY = "shop"


class CatalogService:
    """Product catalog backed by JSON tables."""

    def __init__(
        self,
        products: Optional[JsonTable] = None,
        settings_table: Optional[JsonTable] = None,
        default_ceiling: Optional[int] = None,
    ):
        self._products = products if products is not None else JsonTable()
        self._settings = settings_table if settings_table is not None else JsonTable()
        self._default_ceiling = default_ceiling

    @classmethod
    def from_config(cls, cfg) -> "CatalogService":
        return cls(
            products=JsonTable.for_table(TableName.PRODUCTS, cfg.DATA_DIR),
            settings_table=JsonTable.for_table(TableName.SETTINGS, cfg.DATA_DIR),
            default_ceiling=cfg.CART_CEILING,
        )

    async def load(self, seed_path: Optional[str] = None) -> None:
        await self._products.load()
        await self._settings.load()
        if seed_path and len(self._products) == 0:
            seeded = await self.seed_from_file(seed_path)
            logger.info("catalog_seeded", path=seed_path, products=seeded)
        logger.info("catalog_ready", products=len(self._products))

    async def close(self) -> None:
        await self._products.flush()
        await self._settings.flush()

    # =========================================================================
    # PRICE LOOKUP
    # =========================================================================

    def get_price(self, product_id: str) -> Optional[int]:
        """Current price, or None for unknown or inactive products."""
        doc = self._products.get(str(product_id))
        if doc is None or not doc.get("active", True):
            return None
        return int(doc["price"])

    # =========================================================================
    # PRODUCT CRUD
    # =========================================================================

    def get_product(self, product_id: str) -> Product:
        doc = self._products.get(str(product_id))
        if doc is None:
            raise ProductNotFound(str(product_id))
        return Product.model_validate(doc)

    def list_products(self, include_inactive: bool = False) -> List[Product]:
        products = [Product.model_validate(doc) for doc in self._products.values()]
        if not include_inactive:
            products = [p for p in products if p.active]
        return sorted(products, key=lambda p: p.id)

    async def upsert_product(self, product: Product) -> Product:
        await self._products.put(product.id, product.model_dump(mode="json"))
        logger.info("product_saved", product_id=product.id, price=product.price)
        return product

    async def delete_product(self, product_id: str) -> None:
        if not await self._products.delete(str(product_id)):
            raise ProductNotFound(str(product_id))
        logger.info("product_deleted", product_id=product_id)

    async def seed_from_file(self, path: str) -> int:
        """
        Load products from a JSON seed file.

        Accepts either a list of product objects or a mapping of
        ``product_id -> {"name": ..., "price": ...}``.
        """
        if not os.path.exists(path):
            logger.warning("catalog_seed_missing", path=path)
            return 0

        def read() -> Any:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)

        raw = await asyncio.get_event_loop().run_in_executor(None, read)
        if isinstance(raw, dict):
            entries = [{"id": pid, **fields} for pid, fields in raw.items()]
        elif isinstance(raw, list):
            entries = raw
        else:
            raise ValidationError(f"Unsupported seed format in {path}")

        for entry in entries:
            await self.upsert_product(Product.model_validate(entry))
        return len(entries)

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def get_settings(self) -> ShopSettings:
        doc = self._settings.get(SETTINGS_KEY)
        if doc is None:
            return ShopSettings(cart_ceiling=self._default_ceiling)
        return ShopSettings.model_validate(doc)

    async def update_settings(self, **changes: Any) -> ShopSettings:
        current = self.get_settings().model_dump()
        current.update(changes)
        settings = ShopSettings.model_validate(current)
        await self._settings.put(SETTINGS_KEY, settings.model_dump(mode="json"))
        logger.info("settings_updated", **settings.model_dump())
        return settings

    @property
    def cart_ceiling(self) -> Optional[int]:
        return self.get_settings().ceiling
