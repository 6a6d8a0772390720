"""Order placement, status transitions and stock reconciliation.

Placement validates every line item before touching stock. Stock is then
taken with conditional decrements (``stock >= qty``), so two orders racing
for the last unit cannot both win, and the order document is written only
after every decrement landed. Without transactions, a failure part way is
undone by compensating increments.

Cancellation flips the status with a compare-and-set. Stock comes back one
claimed line at a time, and ``stock_restored_at`` is stamped only when all
lines are done, so an interrupted reversal can be resumed without
crediting any line twice.
"""

import logging
import math
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import PyMongoError

from accounts import Caller, valid_phone
from catalog import Catalog
from database import storage_guard, utcnow
from errors import (
    EmptyCart,
    ForbiddenError,
    InsufficientStock,
    InvalidPaymentMethod,
    InvalidQuantity,
    InvalidShippingAddress,
    InvalidStatusTransition,
    MissingBuyerIdentity,
    OrderNotCancellable,
    OrderNotFound,
    TotalMismatch,
    ValidationError,
)
from ledger import OrderLedger, order_number
from schemas import (
    ORDER_STATUSES,
    PAYMENT_METHODS,
    AccountBuyer,
    GuestBuyer,
    GuestInfo,
    Order,
    OrderCreate,
    OrderItem,
    ShippingAddress,
)
from settings import Settings

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("shipping", "cancelled"),
    "shipping": ("delivered",),
    "delivered": (),
    "cancelled": (),
}
CANCELLABLE = ("pending", "confirmed")
MONEY_TOLERANCE = 0.01


class InventoryReconciler:
    def __init__(self, catalog: Catalog, ledger: OrderLedger, settings: Settings, client=None):
        self.catalog = catalog
        self.ledger = ledger
        self.settings = settings
        self.client = client if client is not None else catalog.db.client

    # -------------------- Placement --------------------

    def place_order(self, caller: Optional[Caller], payload: OrderCreate) -> dict:
        with storage_guard("place order"):
            buyer = self._buyer(caller, payload.guest)
            if not payload.items:
                raise EmptyCart()
            for item in payload.items:
                if isinstance(item.quantity, bool) or item.quantity < 1:
                    raise InvalidQuantity(str(item.reference), item.quantity)
            self._check_address(payload.shipping_address)
            if payload.payment_method not in PAYMENT_METHODS:
                raise InvalidPaymentMethod(payload.payment_method)

            snapshots: List[OrderItem] = []
            # product id -> (total quantity, product doc)
            demand: Dict[ObjectId, Tuple[int, dict]] = {}
            for item in payload.items:
                product = self.catalog.resolve(item.reference, item.name)
                wanted = demand.get(product["_id"], (0, product))[0] + item.quantity
                demand[product["_id"]] = (wanted, product)
                snapshots.append(OrderItem(
                    product_id=str(product["_id"]),
                    product_number=product.get("product_number"),
                    name=product["name"],
                    price=float(product.get("price", 0)),
                    quantity=item.quantity,
                    size=item.size,
                    image=product.get("image"),
                ))
            for quantity, product in demand.values():
                available = int(product.get("stock", 0))
                if available < quantity:
                    raise InsufficientStock(product["name"], available, quantity)

            subtotal = round(sum(s.price * s.quantity for s in snapshots), 2)
            shipping_fee = self._shipping_fee(payload.shipping_fee)
            total_amount = round(subtotal + shipping_fee, 2)
            self._check_supplied("subtotal", payload.subtotal, subtotal)
            self._check_supplied("total_amount", payload.total_amount, total_amount)

            order = Order(
                items=snapshots,
                shipping_address=payload.shipping_address,
                payment_method=payload.payment_method,
                note=payload.note,
                subtotal=subtotal,
                shipping_fee=shipping_fee,
                total_amount=total_amount,
                buyer=buyer,
            )
            doc = self._commit(order, demand)

        logger.info(
            "order %s placed: %d items, total %.2f, buyer %s",
            doc["order_number"], len(snapshots), total_amount, buyer.kind,
        )
        return doc

    def _buyer(self, caller: Optional[Caller], guest: Optional[GuestInfo]):
        has_guest = guest is not None and bool(guest.name.strip() or guest.phone.strip())
        if caller is not None:
            if has_guest:
                raise ValidationError("Signed-in orders cannot carry guest contact information")
            return AccountBuyer(account_id=caller.account_id)
        if not has_guest:
            raise MissingBuyerIdentity()
        if not guest.name.strip() or not valid_phone(guest.phone):
            raise MissingBuyerIdentity("Guest orders need a name and a valid phone number")
        return GuestBuyer(name=guest.name.strip(), phone=guest.phone.strip(), email=guest.email)

    def _check_address(self, address: ShippingAddress) -> None:
        for field, label in (("full_name", "recipient name"), ("phone", "phone"), ("address", "street address")):
            if not (getattr(address, field) or "").strip():
                raise InvalidShippingAddress(label)

    def _shipping_fee(self, supplied: Optional[float]) -> float:
        if supplied is None:
            return float(self.settings.shipping_fee)
        if not math.isfinite(supplied) or supplied < 0 or supplied > self.settings.max_shipping_fee:
            raise ValidationError(f"Shipping fee {supplied} is out of range")
        return round(float(supplied), 2)

    def _check_supplied(self, field: str, supplied: Optional[float], computed: float) -> None:
        if supplied is not None and abs(supplied - computed) > MONEY_TOLERANCE:
            raise TotalMismatch(field, supplied, computed)

    def _commit(self, order: Order, demand: Dict[ObjectId, Tuple[int, dict]]) -> dict:
        order_id = self.ledger.new_id()
        if self.settings.order_transactions:
            return self._commit_in_transaction(order_id, order, demand)

        # the order becomes visible only once all of its stock is held
        applied: List[Tuple[ObjectId, int]] = []
        try:
            for product_id, (quantity, product) in demand.items():
                if self.catalog.reserve_stock(product_id, quantity) is None:
                    raise InsufficientStock(product["name"], self.catalog.current_stock(product_id), quantity)
                applied.append((product_id, quantity))
                logger.info("stock -%d for %s (order %s)", quantity, product["name"], order_number(order_id))
            doc = self.ledger.insert(order_id, order)
        except Exception:
            self._roll_back(order_id, applied)
            raise
        return doc

    def _commit_in_transaction(self, order_id: ObjectId, order: Order, demand) -> dict:
        with self.client.start_session() as session:
            with session.start_transaction():
                for product_id, (quantity, product) in demand.items():
                    if self.catalog.reserve_stock(product_id, quantity, session=session) is None:
                        raise InsufficientStock(
                            product["name"], self.catalog.current_stock(product_id), quantity
                        )
                doc = self.ledger.insert(order_id, order, session=session)
        logger.info("order %s committed in transaction", doc["order_number"])
        return doc

    def _roll_back(self, order_id: ObjectId, applied: List[Tuple[ObjectId, int]]) -> None:
        for product_id, quantity in applied:
            try:
                self.catalog.release_stock(product_id, quantity)
                logger.warning("compensated stock +%d for %s", quantity, product_id)
            except PyMongoError as exc:
                logger.error("compensation failed for %s (+%d): %s", product_id, quantity, exc)
        # an insert that failed in flight may still have landed
        try:
            self.ledger.delete(order_id)
        except PyMongoError as exc:
            logger.error("could not remove aborted order %s: %s", order_id, exc)

    # -------------------- Transitions --------------------

    def update_status(self, order_id: str, new_status: str, actor: Caller, reason: Optional[str] = None) -> dict:
        if new_status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown order status: {new_status!r}")
        if new_status == "cancelled":
            return self.cancel_order(order_id, actor, reason)
        if not actor.is_admin:
            raise ForbiddenError("Only admins can change order status")

        with storage_guard("update order status"):
            order = self.ledger.get(order_id)
            current = order["status"]
            if new_status not in TRANSITIONS[current]:
                raise InvalidStatusTransition(current, new_status)
            extra = {}
            if new_status == "delivered" and order.get("payment_method") == "COD":
                extra = {"is_paid": True, "paid_at": utcnow()}
            updated = self.ledger.transition(order["_id"], (current,), new_status, extra)
            if updated is None:
                latest = self.ledger.get(order_id)
                raise InvalidStatusTransition(latest["status"], new_status)

        logger.info("order %s: %s -> %s by %s", updated["order_number"], current, new_status, actor.account_id)
        return updated

    def cancel_order(self, order_id: str, actor: Caller, reason: Optional[str] = None) -> dict:
        with storage_guard("cancel order"):
            order = self.ledger.get(order_id)
            self._authorize(order, actor)
            if order["status"] not in CANCELLABLE:
                if order["status"] == "cancelled" and not order.get("stock_restored_at"):
                    self.resume_restock(order["_id"])
                raise OrderNotCancellable(order["status"])
            if self.settings.order_transactions:
                updated = self._cancel_in_transaction(order["_id"], reason)
            else:
                updated = self.ledger.transition(
                    order["_id"], CANCELLABLE, "cancelled", {"cancel_reason": reason}
                )
                if updated is not None:
                    self._reverse_stock(updated)
            if updated is None:
                latest = self.ledger.get(order_id)
                raise OrderNotCancellable(latest["status"])
            logger.info("order %s cancelled by %s", updated["order_number"], actor.account_id)
            return self.ledger.get(order_id)

    def _cancel_in_transaction(self, order_id: ObjectId, reason: Optional[str]) -> Optional[dict]:
        with self.client.start_session() as session:
            with session.start_transaction():
                updated = self.ledger.transition(
                    order_id, CANCELLABLE, "cancelled", {"cancel_reason": reason}, session=session
                )
                if updated is not None:
                    self._reverse_stock(updated, session=session)
        return updated

    def resume_restock(self, order_id: ObjectId) -> bool:
        """Finish the stock reversal of a cancelled order.

        Returns True once every line is back in stock (or the order needs
        no reversal), False when some lines are still pending.
        """
        with storage_guard("restock order"):
            order = self.ledger.get(order_id)
            if order["status"] != "cancelled" or order.get("stock_restored_at"):
                return True
            return self._reverse_stock(order)

    def restock_pending(self) -> int:
        """Sweep cancelled orders whose reversal was interrupted."""
        finished = 0
        with storage_guard("restock pending orders"):
            for order in self.ledger.pending_restocks():
                if self._reverse_stock(order):
                    finished += 1
        if finished:
            logger.info("finished stock reversal for %d cancelled orders", finished)
        return finished

    def _reverse_stock(self, order: dict, session=None) -> bool:
        """Give each line's stock back, once per line.

        Every line is claimed on the order before its stock is released, so
        concurrent or repeated reversals never credit a line twice. Outside
        a transaction, a line whose release fails is unclaimed again and the
        order stays pending for ``resume_restock``.
        """
        done = set(order.get("restocked_items") or ())
        pending = 0
        for index, item in enumerate(order.get("items", [])):
            if index in done or not self.ledger.claim_restock(order["_id"], index, session=session):
                continue
            try:
                product = self.catalog.find_for_reversal(item, session=session)
                if product is None:
                    logger.warning(
                        "order %s: product %s (%s) is gone, %d units not restocked",
                        order["order_number"], item.get("product_id"), item.get("name"), item["quantity"],
                    )
                    continue
                self.catalog.release_stock(product["_id"], item["quantity"], session=session)
                logger.info("stock +%d for %s (order %s)", item["quantity"], product["name"], order["order_number"])
            except PyMongoError as exc:
                if session is not None:
                    raise
                logger.error("order %s: restock of %s failed: %s", order["order_number"], item.get("name"), exc)
                pending += 1
                try:
                    self.ledger.release_restock_claim(order["_id"], index)
                except PyMongoError as release_exc:
                    logger.error("order %s: could not unclaim line %d: %s", order["order_number"], index, release_exc)
        if pending:
            logger.warning("order %s: %d lines still waiting to be restocked", order["order_number"], pending)
            return False
        self.ledger.mark_restocked(order["_id"], len(order.get("items", [])), session=session)
        return True

    # -------------------- Queries --------------------

    def _authorize(self, order: dict, actor: Caller) -> None:
        if actor.is_admin:
            return
        buyer = order.get("buyer") or {}
        if buyer.get("kind") == "account" and buyer.get("account_id") == actor.account_id:
            return
        raise ForbiddenError("You do not have access to this order")

    def get_order(self, order_id: str, actor: Caller) -> dict:
        order = self.ledger.get(order_id)
        self._authorize(order, actor)
        return order

    def get_guest_order(self, order_id: str, phone: str) -> dict:
        order = self.ledger.get(order_id)
        buyer = order.get("buyer") or {}
        if buyer.get("kind") != "guest" or buyer.get("phone") != (phone or "").strip():
            raise OrderNotFound(order_id)
        return order

    def list_mine(self, actor: Caller) -> List[dict]:
        return self.ledger.list_for_account(actor.account_id)

    def list_all(self, actor: Caller, status: Optional[str] = None, page: int = 1, limit: int = 20) -> dict:
        if not actor.is_admin:
            raise ForbiddenError("Only admins can list all orders")
        if status is not None and status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown order status: {status!r}")
        return self.ledger.list_all(status, page, limit)
