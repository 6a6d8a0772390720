"""Product catalog: admin CRUD, public listing and item-reference resolution.

Order line items arrive with one of three identifier shapes: the product's
ObjectId, its legacy numeric catalog number, or a display name. Each raw
reference is parsed once into a ``Reference`` variant and resolved by
``Catalog.resolve`` in a fixed order. Name matching is a fallback for old
clients, not a search feature.

Stock is only ever changed through ``reserve_stock`` / ``release_stock``,
which are single-document conditional updates.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import OBJECT_ID_RE, create_document, get_documents, to_object_id, utcnow
from errors import DuplicateProductNumber, ProductNotFound, ValidationError
from schemas import ProductCreate, ProductUpdate

logger = logging.getLogger(__name__)

NUMERIC_RE = re.compile(r"^[0-9]+$")
# legacy numbers are stored as BSON int64
MAX_LEGACY_NUMBER = 2 ** 63 - 1
SORTABLE_FIELDS = ("created_at", "price", "name", "sold_count", "rating")


@dataclass(frozen=True)
class ByKey:
    key: ObjectId


@dataclass(frozen=True)
class ByLegacyNumber:
    number: int


@dataclass(frozen=True)
class ByName:
    name: str


Reference = Union[ByKey, ByLegacyNumber, ByName]


def parse_reference(raw: Any) -> Reference:
    """Classify a client-supplied item reference.

    A 24-char hex string is always a key, even when it is all digits.
    Numbers outside the int64 range cannot be catalog numbers and are
    looked up as names.
    """
    if isinstance(raw, bool):
        raise ValidationError(f"Invalid item reference: {raw!r}")
    if isinstance(raw, int):
        if 0 <= raw <= MAX_LEGACY_NUMBER:
            return ByLegacyNumber(raw)
        return ByName(str(raw))
    text = str(raw).strip() if raw is not None else ""
    if not text:
        raise ValidationError("Item reference is empty")
    if OBJECT_ID_RE.match(text):
        return ByKey(ObjectId(text))
    if NUMERIC_RE.match(text) and int(text) <= MAX_LEGACY_NUMBER:
        return ByLegacyNumber(int(text))
    return ByName(text)


class Catalog:
    def __init__(self, db: Database, fuzzy_name_match: bool = True):
        self.db = db
        self.products = db["product"]
        self.fuzzy_name_match = fuzzy_name_match

    # -------------------- Resolution --------------------

    def resolve(self, raw_reference: Any, name: Optional[str] = None) -> dict:
        """Return the single active product a line item refers to."""
        reference = parse_reference(raw_reference)
        product = None

        if isinstance(reference, ByKey):
            product = self.products.find_one({"_id": reference.key, "is_active": True})
        elif isinstance(reference, ByLegacyNumber):
            product = self.products.find_one({"product_number": reference.number, "is_active": True})

        if product is None:
            lookup_name = name.strip() if name and name.strip() else None
            if lookup_name is None and isinstance(reference, ByName):
                lookup_name = reference.name
            if lookup_name:
                product = self._find_by_name(lookup_name)

        if product is None:
            raise ProductNotFound(raw_reference)
        logger.debug("resolved %r via %s to %s", raw_reference, type(reference).__name__, product["_id"])
        return product

    def _find_by_name(self, name: str) -> Optional[dict]:
        exact = self.products.find_one({"name": name, "is_active": True}, sort=[("_id", ASCENDING)])
        if exact is not None or not self.fuzzy_name_match:
            return exact
        fuzzy = self.products.find_one(
            {"name": {"$regex": re.escape(name), "$options": "i"}, "is_active": True},
            sort=[("_id", ASCENDING)],
        )
        if fuzzy is not None:
            logger.warning("item %r matched product %r by substring", name, fuzzy.get("name"))
        return fuzzy

    def find_for_reversal(self, snapshot: dict, session=None) -> Optional[dict]:
        """Locate the product behind an order snapshot, active or not."""
        kwargs = {"session": session} if session is not None else {}
        key = to_object_id(snapshot.get("product_id"))
        if key is not None:
            product = self.products.find_one({"_id": key}, **kwargs)
            if product is not None:
                return product
        if snapshot.get("product_number") is not None:
            product = self.products.find_one({"product_number": snapshot["product_number"]}, **kwargs)
            if product is not None:
                return product
        if snapshot.get("name"):
            return self.products.find_one({"name": snapshot["name"]}, sort=[("_id", ASCENDING)], **kwargs)
        return None

    # -------------------- Stock --------------------

    def reserve_stock(self, product_id: ObjectId, quantity: int, session=None) -> Optional[dict]:
        """Decrement stock by ``quantity`` only if that much is available.

        Returns the updated product, or None when the guard did not match.
        """
        kwargs = {"session": session} if session is not None else {}
        return self.products.find_one_and_update(
            {"_id": product_id, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity, "sold_count": quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            **kwargs,
        )

    def release_stock(self, product_id: ObjectId, quantity: int, session=None) -> Optional[dict]:
        kwargs = {"session": session} if session is not None else {}
        return self.products.find_one_and_update(
            {"_id": product_id},
            {"$inc": {"stock": quantity, "sold_count": -quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            **kwargs,
        )

    def current_stock(self, product_id: ObjectId) -> int:
        doc = self.products.find_one({"_id": product_id}, {"stock": 1})
        return int(doc.get("stock", 0)) if doc else 0

    # -------------------- Lookup & listing --------------------

    def find_by_reference(self, raw_reference: str, active_only: bool = True) -> dict:
        """Look a product up by key or legacy number (path parameters)."""
        reference = parse_reference(raw_reference)
        query: Dict[str, Any]
        if isinstance(reference, ByKey):
            query = {"_id": reference.key}
        elif isinstance(reference, ByLegacyNumber):
            query = {"product_number": reference.number}
        else:
            raise ProductNotFound(raw_reference)
        if active_only:
            query["is_active"] = True
        product = self.products.find_one(query)
        if not product:
            raise ProductNotFound(raw_reference)
        return product

    def list_products(
        self,
        category: Optional[str] = None,
        search: Optional[str] = None,
        sort: str = "created_at",
        order: str = "desc",
        page: int = 1,
        limit: int = 100,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"is_active": True}
        if category:
            query["category"] = category
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if sort not in SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort by {sort!r}")
        direction = ASCENDING if order == "asc" else DESCENDING
        page = max(page, 1)
        items = get_documents(
            self.db, "product", query, sort=[(sort, direction), ("_id", direction)],
            skip=(page - 1) * limit, limit=limit,
        )
        total = self.products.count_documents(query)
        return {
            "products": items,
            "pagination": {"total": total, "page": page, "pages": math.ceil(total / limit) if limit else 1},
        }

    def related_products(self, raw_reference: str, limit: int = 4) -> List[dict]:
        product = self.find_by_reference(raw_reference, active_only=False)
        return get_documents(
            self.db,
            "product",
            {"category": product["category"], "_id": {"$ne": product["_id"]}, "is_active": True},
            limit=limit,
        )

    # -------------------- Admin --------------------

    def create_product(self, payload: ProductCreate) -> dict:
        data = payload.model_dump(exclude_none=True)
        data["sold_count"] = 0
        if payload.product_number is not None and self.products.find_one({"product_number": payload.product_number}):
            raise DuplicateProductNumber(payload.product_number)
        try:
            pid = create_document(self.db, "product", data)
        except DuplicateKeyError:
            raise DuplicateProductNumber(payload.product_number)
        logger.info("product created: %s (%s)", pid, payload.name)
        return self.products.find_one({"_id": ObjectId(pid)})

    def update_product(self, raw_reference: str, payload: ProductUpdate) -> dict:
        product = self.find_by_reference(raw_reference, active_only=False)
        update = {k: v for k, v in payload.model_dump().items() if v is not None}
        update["updated_at"] = utcnow()
        self.products.update_one({"_id": product["_id"]}, {"$set": update})
        logger.info("product updated: %s fields=%s", product["_id"], sorted(update))
        return self.products.find_one({"_id": product["_id"]})

    def delete_product(self, raw_reference: str) -> dict:
        product = self.find_by_reference(raw_reference, active_only=False)
        self.products.delete_one({"_id": product["_id"]})
        logger.info("product deleted: %s (%s)", product["_id"], product.get("name"))
        return product
