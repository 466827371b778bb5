"""
The order pipeline: intake, persistence, receipt and notification fan-out.

Placing an order only fails on bad input. When the document store is down
the in-memory draft still gets a receipt and notifications, so the admin
email becomes the record of the order. Admin updates are different: they
need the stored order, so store failures propagate to the caller.
"""
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from database import OrderStore, order_filter
from errors import DuplicateReference, NotFound, OrderError, PersistenceUnavailable, ValidationError
from intake import generate_reference, normalize_email, normalize_order, normalize_phone, parse_order_payload
from logging_config import order_ref_var
from notifications import AssetUploader, Notifier, Outcome, attempt, skip
from receipt import render_receipt
from schemas import CanonicalOrder, OrderStatus, OrderUpdate, ProofAttachment
from settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class PersistResult:
    persisted: bool
    id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CreateResult:
    order: CanonicalOrder
    persisted: PersistResult
    receipt: Optional[bytes]
    notifications: Dict[str, Outcome] = field(default_factory=dict)

    def response(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "ref": self.order.reference,
            "id": self.persisted.id,
            "proofUrl": self.order.proof_url,
        }


@dataclass
class UpdateResult:
    order: CanonicalOrder
    id: str
    changes: List[str]
    notification: Outcome


class OrderPipeline:
    max_reference_attempts = 3

    def __init__(self, settings: Settings, store: OrderStore, notifier: Notifier, uploader: AssetUploader):
        self.settings = settings
        self.store = store
        self.notifier = notifier
        self.uploader = uploader

    # creation

    def create(self, body: Any) -> CreateResult:
        incoming = parse_order_payload(body)
        order = normalize_order(incoming, self.settings)

        token = order_ref_var.set(order.reference)
        try:
            persisted = self.persist(order, hinted=bool(incoming.reference_hint))
            if incoming.proof is not None:
                self.attach_proof(order, persisted, incoming.proof)
            receipt = self.render(order)
            notifications = self.notifier.order_created(order, receipt)
        finally:
            order_ref_var.reset(token)

        logger.info(
            f"Order {order.reference} placed",
            extra={
                "extra_fields": {
                    "reference": order.reference,
                    "persisted": persisted.persisted,
                    "receipt": receipt is not None,
                    "notifications": {label: o.status for label, o in notifications.items()},
                }
            },
        )
        return CreateResult(order, persisted, receipt, notifications)

    def upload_proof(self, proof: ProofAttachment, reference: str) -> Optional[str]:
        if not self.uploader.configured:
            skip("proof_upload", "upload service not configured")
            return None
        outcome = attempt("proof_upload", lambda: self.uploader.upload(proof, reference))
        return outcome.value if outcome.ok else None

    def attach_proof(self, order: CanonicalOrder, persisted: PersistResult, proof: ProofAttachment) -> None:
        """Upload ``proof`` under the settled reference and record its URL on the order."""
        order.proof_url = self.upload_proof(proof, order.reference)
        if order.proof_url is None or not persisted.persisted:
            return
        try:
            self.store.update(order_filter(persisted.id), {"proof_url": order.proof_url})
        except PersistenceUnavailable as exc:
            logger.error(f"Proof URL for {order.reference} not saved: {exc}")

    def persist(self, order: CanonicalOrder, hinted: bool = False) -> PersistResult:
        """
        Insert ``order`` once. A store outage yields a not-persisted result
        instead of an error. A generated reference that collides is replaced
        and retried; a customer-supplied one that collides is rejected.
        """
        for _ in range(self.max_reference_attempts):
            try:
                order_id = self.store.create(order.to_document())
                return PersistResult(True, order_id)
            except DuplicateReference:
                if hinted:
                    raise
                order.reference = generate_reference(self.settings.ORDER_REF_PREFIX)
                order_ref_var.set(order.reference)
            except PersistenceUnavailable as exc:
                logger.error(f"Order {order.reference} not persisted, continuing without store: {exc}")
                return PersistResult(False, error=str(exc))
        logger.error(f"Could not allocate a unique reference for order {order.reference}")
        return PersistResult(False, error="reference collision")

    def render(self, order: CanonicalOrder) -> Optional[bytes]:
        try:
            return render_receipt(order, self.settings)
        except Exception:
            logger.exception(f"Receipt for {order.reference} unavailable")
            return None

    # lookups

    def _load(self, order_id: str) -> Tuple[str, CanonicalOrder]:
        doc = self.store.find_one(order_filter(order_id))
        if not doc:
            raise NotFound("Order not found")
        return str(doc["_id"]), CanonicalOrder.from_document(doc)

    def track(self, ref: Optional[str], phone: Optional[str] = None,
              email: Optional[str] = None) -> Tuple[str, CanonicalOrder]:
        """Find an order by reference, but only for someone who knows its contact."""
        ref = (ref or "").strip().upper()
        if not ref:
            raise ValidationError("Missing ref")
        phone = normalize_phone(phone)
        email = normalize_email(email)
        if not phone and not email:
            raise ValidationError("Provide phone or email")

        doc = self.store.find_one({"reference": ref})
        if not doc:
            raise NotFound("Order not found")
        order = CanonicalOrder.from_document(doc)

        match_email = email and order.info.email and order.info.email.lower() == email
        match_phone = phone and order.info.phone and normalize_phone(order.info.phone) == phone
        if not match_email and not match_phone:
            raise NotFound("No order matches that contact")
        return str(doc["_id"]), order

    def receipt(self, ref: Optional[str], phone: Optional[str] = None,
                email: Optional[str] = None) -> Tuple[CanonicalOrder, bytes]:
        _, order = self.track(ref, phone, email)
        pdf = self.render(order)
        if pdf is None:
            raise OrderError("Could not generate receipt")
        return order, pdf

    def list_orders(
        self,
        page: int = 1,
        limit: int = 50,
        status: Optional[OrderStatus] = None,
        ref: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        q: Optional[str] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status.value
        if ref:
            query["reference"] = ref.strip().upper()
        if date_from or date_to:
            query["created_at"] = {}
            if date_from:
                query["created_at"]["$gte"] = date_from
            if date_to:
                query["created_at"]["$lte"] = date_to
        if q:
            term = re.escape(q.strip())
            query["$or"] = [
                {"info.name": {"$regex": term, "$options": "i"}},
                {"info.email": {"$regex": term, "$options": "i"}},
                {"info.phone": {"$regex": term, "$options": "i"}},
                {"reference": {"$regex": term, "$options": "i"}},
            ]

        docs = self.store.find(query, skip=(page - 1) * limit, limit=limit)
        total = self.store.count(query)
        data = [CanonicalOrder.from_document(doc).public_view(str(doc["_id"])) for doc in docs]
        return {
            "ok": True,
            "data": data,
            "page": page,
            "limit": limit,
            "total": total,
            "pages": max(1, math.ceil(total / limit)),
        }

    # admin

    def update(self, order_id: str, update: OrderUpdate) -> UpdateResult:
        """
        Apply a status / payment status change, then email the customer.

        The store write must succeed; the email is best-effort.
        """
        note = (update.note or "").strip()
        if update.status is None and update.payment_status is None and not note:
            raise ValidationError("Provide status, paymentStatus or note")

        current_id, current = self._load(order_id)
        now = datetime.now(timezone.utc)
        changes: Dict[str, Any] = {"updated_at": now}
        summary = []
        if update.status is not None and update.status != current.status:
            changes["status"] = update.status.value
            summary.append(f"Status: {current.status.value} -> {update.status.value}")
        if update.payment_status is not None and update.payment_status != current.payment_status:
            changes["payment_status"] = update.payment_status.value
            summary.append(f"Payment: {current.payment_status.value} -> {update.payment_status.value}")
        if note:
            summary.append(f"Note: {note}")

        doc = self.store.update(
            order_filter(current_id), changes, push={"notes": note} if note else None
        )
        if not doc:
            raise NotFound("Order not found")
        order = CanonicalOrder.from_document(doc)

        token = order_ref_var.set(order.reference)
        try:
            if summary:
                notification = self.notifier.order_updated(order, summary, self.render(order))
            else:
                notification = skip("customer_update_email", "nothing changed")
        finally:
            order_ref_var.reset(token)

        logger.info(
            f"Order {order.reference} updated",
            extra={"extra_fields": {"changes": summary, "notification": notification.status}},
        )
        return UpdateResult(order, current_id, summary, notification)

    def resend(self, order_id: str) -> Dict[str, Outcome]:
        """Run the creation fan-out again for a stored order."""
        _, order = self._load(order_id)
        token = order_ref_var.set(order.reference)
        try:
            return self.notifier.order_created(order, self.render(order))
        finally:
            order_ref_var.reset(token)
