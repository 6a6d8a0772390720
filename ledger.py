"""Order persistence and queries."""

import logging
import math
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from database import get_documents, to_object_id, utcnow
from errors import OrderNotFound
from schemas import Order

logger = logging.getLogger(__name__)

STATUS_TIMESTAMPS = {
    "confirmed": "confirmed_at",
    "shipping": "shipped_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
}


def order_number(order_id) -> str:
    return str(order_id)[-8:].upper()


class OrderLedger:
    def __init__(self, db: Database):
        self.db = db
        self.orders = db["order"]

    def new_id(self) -> ObjectId:
        return ObjectId()

    def insert(self, order_id: ObjectId, order: Order, session=None) -> dict:
        now = utcnow()
        doc = {"_id": order_id, **order.model_dump(), "order_number": order_number(order_id),
               "created_at": now, "updated_at": now}
        kwargs = {"session": session} if session is not None else {}
        self.orders.insert_one(doc, **kwargs)
        return doc

    def delete(self, order_id: ObjectId) -> None:
        self.orders.delete_one({"_id": order_id})
        logger.info("order %s removed", order_number(order_id))

    def get(self, order_id: str) -> dict:
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid is not None else None
        if not order:
            raise OrderNotFound(str(order_id))
        return order

    def transition(
        self,
        order_id: ObjectId,
        from_statuses,
        to_status: str,
        extra: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> Optional[dict]:
        """Compare-and-set the status; None means another writer got there first."""
        now = utcnow()
        update = {"status": to_status, "updated_at": now}
        stamp = STATUS_TIMESTAMPS.get(to_status)
        if stamp:
            update[stamp] = now
        if extra:
            update.update(extra)
        kwargs = {"session": session} if session is not None else {}
        return self.orders.find_one_and_update(
            {"_id": order_id, "status": {"$in": list(from_statuses)}},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
            **kwargs,
        )

    def list_for_account(self, account_id: str) -> List[dict]:
        return get_documents(
            self.db, "order", {"buyer.kind": "account", "buyer.account_id": account_id},
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
        )

    def list_all(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        page = max(page, 1)
        orders = get_documents(
            self.db, "order", query, sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
            skip=(page - 1) * limit, limit=limit,
        )
        total = self.orders.count_documents(query)
        return {
            "orders": orders,
            "pagination": {"total": total, "page": page, "pages": math.ceil(total / limit) if limit else 1},
        }

    def mark_restocked(self, order_id: ObjectId, line_count: int = 0, session=None) -> None:
        """Stamp the reversal as finished once all ``line_count`` lines are claimed."""
        kwargs = {"session": session} if session is not None else {}
        query: Dict[str, Any] = {"_id": order_id, "stock_restored_at": {"$exists": False}}
        if line_count:
            query["restocked_items"] = {"$all": list(range(line_count))}
        self.orders.update_one(
            query,
            {"$set": {"stock_restored_at": utcnow()}},
            **kwargs,
        )

    def claim_restock(self, order_id: ObjectId, index: int, session=None) -> bool:
        """Reserve line ``index`` of a cancelled order for restocking.

        False means the line was already restocked, or is being restocked
        by another writer.
        """
        kwargs = {"session": session} if session is not None else {}
        result = self.orders.update_one(
            {"_id": order_id, "status": "cancelled", "restocked_items": {"$ne": index}},
            {"$addToSet": {"restocked_items": index}},
            **kwargs,
        )
        return result.modified_count == 1

    def release_restock_claim(self, order_id: ObjectId, index: int) -> None:
        """Hand line ``index`` back and reopen the order for a later reversal."""
        self.orders.update_one(
            {"_id": order_id},
            {"$pull": {"restocked_items": index}, "$unset": {"stock_restored_at": ""}},
        )

    def pending_restocks(self) -> List[dict]:
        """Cancelled orders whose stock reversal did not finish."""
        return get_documents(
            self.db, "order", {"status": "cancelled", "stock_restored_at": {"$exists": False}},
            sort=[("_id", ASCENDING)],
        )
