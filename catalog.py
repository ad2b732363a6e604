"""
Product catalog

Variant lookup, pricing and every write to variant stock. Stock writes are a
compare-and-set on the product's ``version`` field: a writer that read a stale
product loses the update instead of overwriting someone else's decrement.
"""

import logging
import re
from typing import Dict, Iterable, Optional

import config
from database import create_document, object_id, paginate, to_dict, utcnow
from errors import ConflictError, InvalidInputError, NotFoundError
from schemas import Product, ProductStatus, ProductUpdate

logger = logging.getLogger(__name__)

PURCHASABLE = (ProductStatus.ACTIVE.value, ProductStatus.OUT_OF_STOCK.value)


def find_variant(product: dict, color: Optional[str] = None, sku: Optional[str] = None) -> Optional[dict]:
    """SKU wins when given; otherwise the first case-insensitive color match."""
    variants = product.get("variants", [])
    if sku:
        return next((v for v in variants if v.get("sku") == sku), None)
    if color:
        wanted = color.strip().lower()
        return next((v for v in variants if v.get("color", "").lower() == wanted), None)
    return None


def effective_price(product: dict) -> float:
    sale = product.get("sale_price")
    if sale:
        return sale
    return product["base_price"]


def is_low_stock(product: dict) -> bool:
    threshold = product.get("low_stock_threshold")
    return threshold is not None and product.get("total_stock", 0) <= threshold


def serialize(product: dict) -> dict:
    out = to_dict(product)
    out["effective_price"] = effective_price(product)
    return out


def load_products(db, product_ids: Iterable[str]) -> Dict[str, dict]:
    """Fetch products in one query, keyed by string id. Deleted ones are left out."""
    oids = []
    for pid in set(product_ids):
        try:
            oids.append(object_id(pid))
        except NotFoundError:
            continue
    if not oids:
        return {}
    docs = db["product"].find({"_id": {"$in": oids}, "deleted_at": None})
    return {str(d["_id"]): d for d in docs}


def get_product(db, product_id: str) -> dict:
    product = db["product"].find_one({"_id": object_id(product_id, "Product"), "deleted_at": None})
    if not product:
        raise NotFoundError("Product not found")
    return product


def check_stock(db, product_id: str, color: str, quantity: int) -> dict:
    product = get_product(db, product_id)
    variant = find_variant(product, color=color)
    if variant is None:
        raise NotFoundError("Product variant not found")
    return {
        "isAvailable": variant.get("stock", 0) >= quantity,
        "availableStock": variant.get("stock", 0),
        "requestedQuantity": quantity,
    }


def _stock_fields(product: dict, variants: list) -> dict:
    total = sum(v.get("stock", 0) for v in variants)
    status = product.get("status")
    if total == 0 and status == ProductStatus.ACTIVE.value:
        status = ProductStatus.OUT_OF_STOCK.value
    elif total > 0 and status == ProductStatus.OUT_OF_STOCK.value:
        status = ProductStatus.ACTIVE.value
    return {"variants": variants, "total_stock": total, "status": status, "updated_at": utcnow()}


def _version_filter(product: dict):
    if "version" in product:
        return product["version"]
    return {"$exists": False}


def apply_stock_changes(db, product: dict, deltas: Dict[str, int]) -> Optional[dict]:
    """Apply per-SKU stock deltas to the product as it was read.

    Returns the updated product, or None when the stored product changed
    since it was read.
    """
    variants = []
    for variant in product.get("variants", []):
        variant = dict(variant)
        if variant["sku"] in deltas:
            variant["stock"] = variant.get("stock", 0) + deltas[variant["sku"]]
            if variant["stock"] < 0:
                raise InvalidInputError(
                    f"Stock for {product['name']} in {variant['color']} cannot go below zero"
                )
        variants.append(variant)

    updates = _stock_fields(product, variants)
    result = db["product"].update_one(
        {"_id": product["_id"], "version": _version_filter(product)},
        {"$set": updates, "$inc": {"version": 1}},
    )
    if result.matched_count == 0:
        return None
    updated = dict(product)
    updated.update(updates)
    updated["version"] = product.get("version", 0) + 1
    return updated


def adjust_variant_stock(db, product_id: str, sku: str, delta: int) -> bool:
    """Re-read and retry until the delta lands. Missing product or variant is skipped."""
    try:
        oid = object_id(product_id)
    except NotFoundError:
        return False
    for _ in range(config.STOCK_UPDATE_ATTEMPTS * 2):
        product = db["product"].find_one({"_id": oid})
        if product is None:
            logger.warning("Stock adjust skipped, product %s no longer exists", product_id)
            return False
        if find_variant(product, sku=sku) is None:
            logger.warning("Stock adjust skipped, variant %s missing on product %s", sku, product_id)
            return False
        if apply_stock_changes(db, product, {sku: delta}) is not None:
            return True
    logger.error("Gave up adjusting stock of %s/%s by %d", product_id, sku, delta)
    return False


# Admin CRUD

def create_product(db, payload: Product) -> dict:
    if db["product"].find_one({"slug": payload.slug}):
        raise ConflictError(f"slug '{payload.slug}' already exists")
    doc = payload.model_dump(mode="json")
    doc.update(_stock_fields(doc, doc["variants"]))
    doc["version"] = 0
    new_id = create_document(db, "product", doc)
    return serialize(get_product(db, new_id))


def update_product(db, product_id: str, payload: ProductUpdate) -> dict:
    product = get_product(db, product_id)
    updates = payload.model_dump(mode="json", exclude_unset=True)
    if not updates:
        return serialize(product)

    minimum = updates.get("minimum_order", product.get("minimum_order", 1))
    maximum = updates.get("maximum_order", product.get("maximum_order"))
    if maximum is not None and maximum < minimum:
        raise InvalidInputError("maximum_order must not be below minimum_order")

    if "variants" in updates:
        merged = dict(product)
        merged.update(updates)
        updates.update(_stock_fields(merged, updates["variants"]))
    updates["updated_at"] = utcnow()
    db["product"].update_one({"_id": product["_id"]}, {"$set": updates, "$inc": {"version": 1}})
    return serialize(get_product(db, product_id))


def delete_product(db, product_id: str) -> None:
    """Soft delete; orders keep pointing at the product."""
    product = get_product(db, product_id)
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {"deleted_at": utcnow(), "status": ProductStatus.ARCHIVED.value, "updated_at": utcnow()},
         "$inc": {"version": 1}},
    )


def list_products(db, page: int, limit: int, search: Optional[str] = None,
                  category: Optional[str] = None):
    query = {"deleted_at": None, "status": {"$in": list(PURCHASABLE)}}
    if category:
        query["category"] = category
    if search:
        query["name"] = {"$regex": re.escape(search), "$options": "i"}
    products, pagination = paginate(db, "product", query, page, limit)
    for p in products:
        p["effective_price"] = effective_price(p)
    return products, pagination
