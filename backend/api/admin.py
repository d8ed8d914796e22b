# api/admin.py
# ============================================================================
# DUCK STOREFRONT v1.0 — ADMIN ROUTES
# ============================================================================
# Operator surface: order review and completion, catalog maintenance and
# shop settings. Every route requires the admin secret (X-Admin-Secret
# header or ?secret=).
# ============================================================================

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.deps import ShopServices, get_services, require_admin
from pipeline.errors import ValidationError
from schemas.order_definitions import OrderStatus, Product

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# ============================================================================
# REQUEST MODELS
# ============================================================================

class StatusRequest(BaseModel):
    status: OrderStatus
    comment: Optional[str] = Field(default=None, max_length=2000)


class CommentRequest(BaseModel):
    comment: Optional[str] = Field(default=None, max_length=2000)


class ProductRequest(BaseModel):
    name: str = Field(..., min_length=1)
    price: int = Field(..., ge=0)
    description: str = ""
    active: bool = True


class SettingsRequest(BaseModel):
    cart_ceiling: Optional[int] = Field(default=None, ge=0)


# ============================================================================
# ORDERS
# ============================================================================

@router.get("/orders")
async def list_orders(
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=0, le=500),
    offset: int = Query(default=0, ge=0),
    sort: str = "-created_at",
    services: ShopServices = Depends(get_services),
) -> Dict[str, Any]:
    orders = await services.engine.list_orders(status=status, limit=limit, offset=offset, sort=sort)
    return {
        "orders": [o.public_view(include_admin=True) for o in orders],
        "count": len(orders),
        "limit": limit,
        "offset": offset,
    }


@router.get("/orders/{order_id}")
async def get_order(order_id: str, services: ShopServices = Depends(get_services)) -> Dict[str, Any]:
    order = await services.engine.get_order(order_id)
    return order.public_view(include_admin=True)


@router.get("/orders/{order_id}/audit")
async def get_audit_trail(order_id: str, services: ShopServices = Depends(get_services)) -> List[Dict[str, Any]]:
    entries = await services.engine.audit_trail(order_id)
    return [e.model_dump(mode="json") for e in entries]


@router.post("/orders/{order_id}/status")
async def set_order_status(
    order_id: str,
    request: StatusRequest,
    services: ShopServices = Depends(get_services),
) -> Dict[str, Any]:
    order = await services.engine.set_status(order_id, request.status, request.comment)
    return order.public_view(include_admin=True)


@router.post("/orders/{order_id}/comment")
async def set_order_comment(
    order_id: str,
    request: CommentRequest,
    services: ShopServices = Depends(get_services),
) -> Dict[str, Any]:
    order = await services.engine.set_admin_comment(order_id, request.comment)
    return order.public_view(include_admin=True)


# ============================================================================
# CATALOG
# ============================================================================

@router.get("/products")
async def list_all_products(services: ShopServices = Depends(get_services)) -> List[Dict[str, Any]]:
    return [p.model_dump() for p in services.catalog.list_products(include_inactive=True)]


@router.put("/products/{product_id}")
async def upsert_product(
    product_id: str,
    request: ProductRequest,
    services: ShopServices = Depends(get_services),
) -> Dict[str, Any]:
    if not product_id.strip():
        raise ValidationError("Product id is required")
    product = Product(id=product_id, **request.model_dump())
    saved = await services.catalog.upsert_product(product)
    return saved.model_dump()


@router.delete("/products/{product_id}")
async def delete_product(product_id: str, services: ShopServices = Depends(get_services)) -> Dict[str, Any]:
    await services.catalog.delete_product(product_id)
    return {"deleted": product_id}


# ============================================================================
# SETTINGS
# ============================================================================

@router.get("/settings")
async def get_settings(services: ShopServices = Depends(get_services)) -> Dict[str, Any]:
    return services.catalog.get_settings().model_dump()


@router.put("/settings")
async def update_settings(
    request: SettingsRequest,
    services: ShopServices = Depends(get_services),
) -> Dict[str, Any]:
    settings = await services.catalog.update_settings(**request.model_dump())
    return settings.model_dump()
