"""
Single-transaction ingestion for the WhatsApp/AI integration.

Callers identify the user by phone number (in the body), by an integration
token (``X-User-Token``) or by a regular session access token. Names are
resolved case-insensitively against the user's own records.
"""

import math
import re
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from household_ledger.exceptions import RateLimitedError, RequestRejected, StoreError
from household_ledger.lookups import name_key
from household_ledger.models import SecurityEvent, Transaction, TransactionType, utcnow
from household_ledger.parsers import MAX_AMOUNT, round_half_up
from household_ledger.phone import normalize_phone, sha256_hex
from household_ledger.ratelimit import DuplicateGuard, FailureBlocker, RateLimiter
from household_ledger.store import FinanceStore

logger = structlog.get_logger(__name__)

NOTES_MAX_LENGTH = 500
NOTES_PREFIX = "[API]"

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_payload(body: Dict[str, Any], today: date) -> Tuple[Dict[str, Any], List[str]]:
    """
    Check the ingestion payload.

    Returns:
        (cleaned values, list of error messages); values are only usable when
        the error list is empty
    """
    errors: List[str] = []
    values: Dict[str, Any] = {}

    raw_type = body.get("type")
    if raw_type not in ("expense", "income"):
        errors.append("'type' is required and must be 'expense' or 'income'.")
    else:
        values["type"] = TransactionType(raw_type)

    raw_amount = body.get("amount")
    if raw_amount is None or isinstance(raw_amount, bool):
        errors.append("'amount' is required.")
    else:
        try:
            amount = float(str(raw_amount).replace(",", ".", 1))
        except ValueError:
            amount = math.nan
        rounded = round_half_up(amount) if amount < MAX_AMOUNT else None
        if rounded is None or rounded <= 0:
            errors.append("'amount' must be a positive number below 1 trillion.")
        else:
            values["amount"] = rounded

    raw_date = body.get("date")
    if raw_date:
        text = str(raw_date)
        try:
            if not _ISO_DATE.match(text):
                raise ValueError(text)
            values["date"] = date.fromisoformat(text).isoformat()
        except ValueError:
            errors.append("'date' must be a valid date in YYYY-MM-DD format.")
    else:
        values["date"] = today.isoformat()

    person = str(body.get("person") or "").strip()
    if not person:
        errors.append("'person' is required (name of the person).")
    values["person"] = person

    category = str(body.get("category") or "").strip()
    if not category:
        errors.append("'category' is required (name of the category).")
    values["category"] = category

    values["subcategory"] = str(body.get("subcategory") or "").strip()
    notes = body.get("notes")
    values["notes"] = str(notes)[:NOTES_MAX_LENGTH] if notes else None

    return values, errors


class TransactionIngestor:
    def __init__(
        self,
        store: FinanceStore,
        request_limiter: RateLimiter,
        failures: FailureBlocker,
        duplicates: DuplicateGuard,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.request_limiter = request_limiter
        self.failures = failures
        self.duplicates = duplicates
        self.today = today

    def _user_from_phone(self, raw_phone: str) -> str:
        phone = normalize_phone(raw_phone)
        if phone is None:
            raise RequestRejected(
                "'phone_number' could not be normalized to a valid Brazilian phone."
            )
        key = f"phone:{phone}"
        if self.request_limiter.hit(key):
            raise RateLimitedError("Rate limit exceeded for this phone number.")
        if self.failures.is_blocked(key):
            raise RateLimitedError("Too many failed attempts for this phone. Try again later.")

        profile = self.store.find_profile_by_phone(phone)
        if profile is None:
            self.failures.record_failure(key)
            raise RequestRejected("No user associated with phone number.", status_code=404)
        if not profile.ai_enabled:
            raise RequestRejected(
                "AI/API integration is not enabled for this user.", status_code=403
            )
        return profile.id

    def _user_from_token(self, user_token: str, client_ip: Optional[str]) -> str:
        block_key = f"token:{user_token[:8]}"
        if self.failures.is_blocked(block_key):
            raise RateLimitedError("Too many failed attempts. Try again later.")

        token = self.store.find_active_token(sha256_hex(user_token))
        if token is None:
            self.failures.record_failure(block_key)
            self.store.insert_security_event(
                SecurityEvent(event_type="invalid_user_token", ip_address=client_ip)
            )
            raise RequestRejected("Invalid or revoked user token.", status_code=401)

        if self.request_limiter.hit(f"token:{token.user_id}"):
            raise RateLimitedError()
        return token.user_id

    def _user_from_session(self, access_token: str) -> str:
        user_id = self.store.resolve_access_token(access_token)
        if user_id is None:
            raise RequestRejected("Invalid or expired token.", status_code=401)
        if self.request_limiter.hit(f"jwt:{user_id}"):
            raise RateLimitedError("Rate limit exceeded. Max 30 requests per minute.")
        return user_id

    def resolve_user(
        self,
        body: Dict[str, Any],
        access_token: str,
        user_token: Optional[str],
        client_ip: Optional[str],
    ) -> str:
        raw_phone = body.get("phone_number")
        if raw_phone:
            return self._user_from_phone(str(raw_phone))
        if user_token:
            return self._user_from_token(user_token, client_ip)
        return self._user_from_session(access_token)

    def _resolve_ids(self, user_id: str, values: Dict[str, Any]) -> Tuple[str, str, Optional[str]]:
        person_key = name_key(values["person"])
        person = next(
            (p for p in self.store.list_persons(user_id) if p.is_active and name_key(p.name) == person_key),
            None,
        )
        if person is None:
            raise RequestRejected(f"Person '{values['person']}' not found. Create it first.")

        category_key = name_key(values["category"])
        category = next(
            (
                c
                for c in self.store.list_categories(user_id)
                if c.is_active and c.type == values["type"] and name_key(c.name) == category_key
            ),
            None,
        )
        if category is None:
            raise RequestRejected(
                f"Category '{values['category']}' of type '{values['type'].value}' not found."
            )

        subcategory_id = None
        if values["subcategory"]:
            sub_key = name_key(values["subcategory"])
            sub = next(
                (
                    s
                    for s in self.store.list_subcategories(user_id)
                    if s.is_active and s.category_id == category.id and name_key(s.name) == sub_key
                ),
                None,
            )
            if sub is None:
                raise RequestRejected(
                    f"Subcategory '{values['subcategory']}' not found under '{values['category']}'."
                )
            subcategory_id = sub.id

        return person.id, category.id, subcategory_id

    def ingest(
        self,
        body: Dict[str, Any],
        access_token: str,
        user_token: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> Transaction:
        """
        Create one transaction.

        Raises:
            RequestRejected: identity, limits, payload or lookup failures,
                carrying the HTTP status to answer with
        """
        if self.request_limiter.hit(f"ip:{client_ip or 'unknown'}"):
            raise RateLimitedError()

        user_id = self.resolve_user(body, access_token, user_token, client_ip)

        values, errors = parse_payload(body, self.today())
        if errors:
            raise RequestRejected("Validation failed.", details=errors)

        person_id, category_id, subcategory_id = self._resolve_ids(user_id, values)

        fingerprint = f"{user_id}:{values['amount']}:{values['date']}:{category_id}:{person_id}"
        if self.duplicates.seen(fingerprint):
            raise RequestRejected(
                "Duplicate detected. Same transaction submitted within 30 seconds.",
                status_code=409,
            )

        notes = values["notes"]
        record = Transaction(
            user_id=user_id,
            type=values["type"],
            date=values["date"],
            amount=values["amount"],
            person_id=person_id,
            category_id=category_id,
            subcategory_id=subcategory_id,
            notes=f"{NOTES_PREFIX} {notes}" if notes else NOTES_PREFIX,
        )
        try:
            stored = self.store.insert_transactions([record])[0]
        except StoreError as e:
            logger.error("ingest_insert_failed", user_id=user_id, error=str(e))
            raise RequestRejected("Failed to insert transaction.", status_code=500) from e

        if self.store.get_profile(user_id) is not None:
            self.store.update_profile(user_id, last_activity=utcnow())

        logger.info("transaction_ingested", user_id=user_id, transaction_id=stored.id)
        return stored
