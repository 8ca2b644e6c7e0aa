"""
Public intake: contact messages and sample requests.

Both are accepted even when flagged (duplicate or spam) and are never
deleted. Admin actions only append to their notes, responses and status
history.
"""
import logging
import random
import re
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from config import Settings
from database import insert_with_reference, paginate, parse_sort, serialize_doc, to_object_id, utc_now
from errors import InvalidTransitionError, NotFoundError, RateLimitError, ValidationError
from orders import history_entry, localized_name
from schemas import (
    AdminNote,
    ContactMessage,
    ContactMessageRequest,
    ContactResponse,
    ContactStatus,
    RequestedSample,
    SampleRequest,
    SampleRequestCreate,
    SampleStatus,
    SourceDetails,
)
from spam import content_hash, normalize_text, score_submission

logger = logging.getLogger(__name__)

CONTACT_TRANSITIONS: Dict[str, List[str]] = {
    "new": ["read", "in_progress", "resolved", "closed"],
    "read": ["in_progress", "resolved", "closed"],
    "in_progress": ["resolved", "closed", "read"],
    "resolved": ["closed", "in_progress"],
    "closed": [],
}

SAMPLE_TRANSITIONS: Dict[str, List[str]] = {
    "pending": ["approved", "rejected"],
    "approved": ["processing", "rejected"],
    "processing": ["shipped", "rejected"],
    "shipped": ["delivered"],
    "rejected": ["pending"],
    "delivered": [],
}


def reference_generator(prefix: str):
    def generate() -> str:
        stamp = str(int(time.time() * 1000))[-6:]
        return f"{prefix}{stamp}{random.randint(0, 9999):04d}"
    return generate


class IntakeService:
    collection_name = ""
    reference_field = ""
    reference_prefix = ""
    transitions: Dict[str, List[str]] = {}
    label = "Record"
    sortable = ["created_at", "updated_at", "status"]

    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings
        self.collection = db[self.collection_name]

    def _find(self, record_id: str) -> dict:
        oid = to_object_id(record_id)
        doc = self.collection.find_one({"_id": oid}) if oid else None
        if doc is None:
            raise NotFoundError(f"{self.label} not found: {record_id}")
        return doc

    def _insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_now()
        doc["created_at"] = now
        doc["updated_at"] = now
        insert_with_reference(self.db, self.collection_name, doc, self.reference_field, reference_generator(self.reference_prefix))
        return doc

    def _find_duplicate(self, duplicate_hash: str) -> Optional[dict]:
        since = utc_now() - timedelta(days=self.settings.duplicate_window_days)
        return self.collection.find_one(
            {"duplicate_hash": duplicate_hash, "created_at": {"$gte": since}},
            sort=[("created_at", DESCENDING)],
        )

    def _update(self, record_id: str, guard: Dict[str, Any], update: Dict[str, Any]) -> Optional[dict]:
        update.setdefault("$set", {})["updated_at"] = utc_now()
        return self.collection.find_one_and_update(
            dict(guard, _id=to_object_id(record_id)),
            update,
            return_document=ReturnDocument.AFTER,
        )

    def get(self, record_id: str) -> Dict[str, Any]:
        return serialize_doc(self._find(record_id))

    def list(self, page: int = 1, limit: int = 10, status: Optional[str] = None, search: Optional[str] = None, sort: Optional[str] = None, **filters) -> Dict[str, Any]:
        query: Dict[str, Any] = {k: v for k, v in filters.items() if v is not None}
        if status:
            query["status"] = status
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {self.reference_field: {"$regex": pattern, "$options": "i"}},
                {"customer_info.email": {"$regex": pattern, "$options": "i"}},
            ]
        return paginate(self.collection, query, page, limit, parse_sort(sort, self.sortable))

    def stats(self) -> Dict[str, Any]:
        return {
            "total": self.collection.count_documents({}),
            "duplicates": self.collection.count_documents({"is_duplicate": True}),
            "by_status": {s: self.collection.count_documents({"status": s}) for s in self.transitions},
        }

    def transition(self, record_id: str, new_status: str, actor: str, reason: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        current = self._find(record_id)
        status = current["status"]
        if new_status not in self.transitions.get(status, []):
            logger.warning("%s %s: refused transition %s -> %s", self.label, current[self.reference_field], status, new_status)
            raise InvalidTransitionError(status, new_status)
        updated = self._update(
            record_id,
            {"status": status},
            {
                "$set": dict(extra or {}, status=new_status),
                "$push": {"status_history": history_entry("status", status, new_status, actor, reason)},
            },
        )
        if updated is None:
            latest = self._find(record_id)
            raise InvalidTransitionError(latest["status"], new_status, f"{self.label} changed concurrently, retry")
        logger.info("%s %s moved %s -> %s by %s", self.label, updated[self.reference_field], status, new_status, actor)
        return serialize_doc(updated)

    def add_note(self, record_id: str, note: str, actor: str, is_internal: bool = True) -> Dict[str, Any]:
        self._find(record_id)
        entry = AdminNote(note=note, added_by=actor, added_at=utc_now(), is_internal=is_internal).model_dump()
        updated = self._update(record_id, {}, {"$push": {"admin_notes": entry}})
        return serialize_doc(updated)


class ContactMessageService(IntakeService):
    collection_name = "contactmessage"
    reference_field = "message_number"
    reference_prefix = "CM"
    transitions = CONTACT_TRANSITIONS
    label = "Contact message"

    def _check_rate_limit(self, email: str) -> None:
        now = utc_now()
        hourly = self.collection.count_documents({"customer_info.email": email, "created_at": {"$gte": now - timedelta(hours=1)}})
        if hourly >= self.settings.contact_hourly_limit:
            raise RateLimitError(f"Rate limit exceeded. Maximum {self.settings.contact_hourly_limit} messages per hour allowed.")
        daily = self.collection.count_documents({"customer_info.email": email, "created_at": {"$gte": now - timedelta(days=1)}})
        if daily >= self.settings.contact_daily_limit:
            raise RateLimitError(f"Daily limit exceeded. Maximum {self.settings.contact_daily_limit} messages per day allowed.")

    def _recent_from_ip(self, ip_address: Optional[str]):
        if not ip_address:
            return 0, 0
        now = utc_now()
        base = {"source_details.ip_address": ip_address}
        hour = self.collection.count_documents(dict(base, created_at={"$gte": now - timedelta(hours=1)}))
        day = self.collection.count_documents(dict(base, created_at={"$gte": now - timedelta(days=1)}))
        return hour, day

    def submit(self, req: ContactMessageRequest, source: Optional[SourceDetails] = None) -> Dict[str, Any]:
        source = source or SourceDetails()
        email = req.customer_info.email
        self._check_rate_limit(email)

        duplicate_hash = content_hash(email, [normalize_text(req.message)])
        duplicate = self._find_duplicate(duplicate_hash)
        recent_hour, recent_day = self._recent_from_ip(source.ip_address)
        assessment = score_submission(
            f"{req.subject}\n{req.message}",
            email,
            is_duplicate=duplicate is not None,
            recent_hour=recent_hour,
            recent_day=recent_day,
            threshold=self.settings.spam_threshold,
        )

        now = utc_now()
        history = [history_entry("status", None, ContactStatus.new.value, "customer", "Message received")]
        status = ContactStatus.new
        if assessment.is_spam:
            status = ContactStatus.closed
            history.append(history_entry(
                "status", ContactStatus.new.value, ContactStatus.closed.value, "system",
                "Automatic spam detection: " + ", ".join(assessment.reasons),
            ))

        message = ContactMessage(
            message_number="pending",
            customer_info=req.customer_info,
            subject=req.subject,
            message=req.message,
            category=req.category,
            priority=req.priority,
            preferred_language=req.preferred_language,
            status=status,
            duplicate_hash=duplicate_hash,
            is_duplicate=duplicate is not None,
            duplicate_of=duplicate["message_number"] if duplicate else None,
            spam_score=assessment.score,
            is_spam=assessment.is_spam,
            spam_reasons=assessment.reasons,
            source_details=source,
        )
        doc = message.model_dump()
        doc["status_history"] = history
        doc = self._insert(doc)

        if assessment.is_spam:
            logger.info("Contact message %s flagged as spam (score %d: %s)", doc["message_number"], assessment.score, ", ".join(assessment.reasons))
        else:
            logger.info("Contact message %s received from %s", doc["message_number"], email)
        return serialize_doc(doc)

    def list(self, page: int = 1, limit: int = 10, status: Optional[str] = None, search: Optional[str] = None, sort: Optional[str] = None, category: Optional[str] = None, include_spam: bool = False) -> Dict[str, Any]:
        return super().list(
            page, limit, status, search, sort,
            category=category,
            is_spam=None if include_spam else False,
        )

    def stats(self) -> Dict[str, Any]:
        stats = super().stats()
        stats["spam"] = self.collection.count_documents({"is_spam": True})
        return stats

    def assign(self, record_id: str, user_id: str, actor: str) -> Dict[str, Any]:
        self._find(record_id)
        note = AdminNote(note=f"Message assigned to user {user_id}", added_by=actor, added_at=utc_now()).model_dump()
        updated = self._update(record_id, {}, {"$set": {"assigned_to": user_id}, "$push": {"admin_notes": note}})
        return serialize_doc(updated)

    def add_response(self, record_id: str, message: str, actor: str, method: str = "email") -> Dict[str, Any]:
        current = self._find(record_id)
        response = ContactResponse(message=message, sent_by=actor, sent_at=utc_now(), method=method).model_dump()
        update: Dict[str, Any] = {"$push": {"responses": response}}
        if current["status"] in (ContactStatus.new.value, ContactStatus.read.value):
            update["$set"] = {"status": ContactStatus.in_progress.value}
            update["$push"]["status_history"] = history_entry(
                "status", current["status"], ContactStatus.in_progress.value, actor, "Response sent to customer",
            )
        updated = self._update(record_id, {}, update)
        return serialize_doc(updated)

    def mark_spam(self, record_id: str, actor: str, reasons: Optional[List[str]] = None) -> Dict[str, Any]:
        current = self._find(record_id)
        reasons = reasons or ["manual_flag"]
        updated = self._update(record_id, {}, {
            "$set": {
                "is_spam": True,
                "spam_score": 100,
                "spam_reasons": reasons,
                "status": ContactStatus.closed.value,
            },
            "$push": {"status_history": history_entry("status", current["status"], ContactStatus.closed.value, actor, "Marked as spam")},
        })
        logger.info("Contact message %s marked as spam by %s", updated["message_number"], actor)
        return serialize_doc(updated)


class SampleRequestService(IntakeService):
    collection_name = "samplerequest"
    reference_field = "request_number"
    reference_prefix = "SR"
    transitions = SAMPLE_TRANSITIONS
    label = "Sample request"

    def submit(self, req: SampleRequestCreate, source: Optional[SourceDetails] = None) -> Dict[str, Any]:
        requested: List[RequestedSample] = []
        for line in req.requested_products:
            oid = to_object_id(line.product)
            product = self.db["product"].find_one({"_id": oid}) if oid else None
            if product is None:
                raise ValidationError(f"Product not found: {line.product}", {"product": line.product})
            requested.append(RequestedSample(
                product_id=line.product,
                product_name=localized_name(product, line.product),
                quantity=line.quantity,
                sample_size=line.sample_size,
            ))

        email = req.customer_info.email
        duplicate_hash = content_hash(email, sorted({r.product_id for r in requested}))
        duplicate = self._find_duplicate(duplicate_hash)

        sample = SampleRequest(
            request_number="pending",
            customer_info=req.customer_info,
            requested_products=requested,
            message=req.message,
            preferred_language=req.preferred_language,
            duplicate_hash=duplicate_hash,
            is_duplicate=duplicate is not None,
            duplicate_of=duplicate["request_number"] if duplicate else None,
            source_details=source or SourceDetails(),
        )
        doc = sample.model_dump()
        doc["status_history"] = [history_entry("status", None, SampleStatus.pending.value, "customer", "Request received")]
        doc = self._insert(doc)
        if duplicate:
            logger.info("Sample request %s duplicates %s", doc["request_number"], duplicate["request_number"])
        else:
            logger.info("Sample request %s received from %s", doc["request_number"], email)
        return serialize_doc(doc)

    def transition(self, record_id: str, new_status: str, actor: str, reason: Optional[str] = None, tracking_number: Optional[str] = None) -> Dict[str, Any]:
        extra: Dict[str, Any] = {}
        if new_status == SampleStatus.shipped.value:
            extra["shipping_info.shipped_at"] = utc_now()
        elif new_status == SampleStatus.delivered.value:
            extra["shipping_info.delivered_at"] = utc_now()
        if tracking_number:
            extra["shipping_info.tracking_number"] = tracking_number
        return super().transition(record_id, new_status, actor, reason, extra)
