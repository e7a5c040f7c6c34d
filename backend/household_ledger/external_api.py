"""
Read-only financial queries for trusted external automations.

Callers authenticate with the shared admin token (never stored in clear:
both sides are compared as SHA-256 digests) and identify the household by
phone number. Two query types exist:

- ``summary``: balance, income/expense totals, per-category and per-month
  totals, plus asset metrics for the latest and previous month.
- ``transactions``: every transaction (newest first) and every asset record
  flattened into one row shape.
"""

import hmac
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog

from household_ledger.exceptions import RateLimitedError, RequestRejected
from household_ledger.models import Asset, Category, Transaction, TransactionType, utcnow
from household_ledger.phone import normalize_phone, sha256_hex
from household_ledger.ratelimit import RateLimiter
from household_ledger.store import FinanceStore

logger = structlog.get_logger(__name__)

QUERY_TYPES = ("summary", "transactions")
RECORD_LIMIT = 5000


def cents(value: float) -> float:
    return round(value, 2)


def compute_asset_metrics(assets: Iterable[Asset]) -> Dict[str, Any]:
    """Totals of the latest month with records against the month before it."""
    by_month: Dict[str, List[Asset]] = defaultdict(list)
    count = 0
    for asset in assets:
        by_month[asset.date[:7]].append(asset)
        count += 1

    if not by_month:
        return {
            "total_current": 0,
            "total_previous_month": 0,
            "growth_absolute": 0,
            "growth_percentage": 0,
            "distribution_by_category": {},
            "latest_month": None,
            "records_count": 0,
        }

    months = sorted(by_month, reverse=True)
    latest = by_month[months[0]]
    previous = by_month[months[1]] if len(months) > 1 else []

    total_current = sum(a.value for a in latest)
    total_previous = sum(a.value for a in previous)
    distribution: Dict[str, float] = defaultdict(float)
    for asset in latest:
        distribution[asset.category] += asset.value

    growth = total_current - total_previous
    return {
        "total_current": cents(total_current),
        "total_previous_month": cents(total_previous),
        "growth_absolute": cents(growth),
        "growth_percentage": cents(growth / total_previous * 100) if total_previous > 0 else 0,
        "distribution_by_category": {k: cents(v) for k, v in distribution.items()},
        "latest_month": months[0],
        "records_count": count,
    }


def build_financial_summary(
    phone: str, transactions: List[Transaction], categories: List[Category]
) -> Dict[str, Any]:
    names = {c.id: c.name for c in categories}
    income = sum(t.amount for t in transactions if t.type == TransactionType.INCOME)
    expense = sum(t.amount for t in transactions if t.type == TransactionType.EXPENSE)

    per_category: Dict[tuple, Dict[str, Any]] = {}
    per_month: Dict[str, Dict[str, float]] = defaultdict(lambda: {"income": 0.0, "expense": 0.0})
    for t in transactions:
        key = (t.category_id, t.type)
        entry = per_category.setdefault(
            key, {"name": names.get(t.category_id), "type": t.type.value, "total": 0.0, "count": 0}
        )
        entry["total"] += t.amount
        entry["count"] += 1
        per_month[t.date[:7]][t.type.value] += t.amount

    category_rows = sorted(per_category.values(), key=lambda e: e["total"], reverse=True)
    return {
        "phone": phone,
        "balance": cents(income - expense),
        "total_income": cents(income),
        "total_expense": cents(expense),
        "total_transactions": len(transactions),
        "categories": [{**e, "total": cents(e["total"])} for e in category_rows],
        "monthly": [
            {"month": month, "income": cents(v["income"]), "expense": cents(v["expense"])}
            for month, v in sorted(per_month.items())
        ],
    }


class ExternalQueryService:
    def __init__(self, store: FinanceStore, admin_token: str, ip_limiter: RateLimiter):
        self.store = store
        self.admin_token = admin_token
        self.ip_limiter = ip_limiter

    def authorize(self, provided_token: str, client_ip: str) -> None:
        """
        Check the shared admin token, then the per-IP request budget.

        Raises:
            RequestRejected: no admin token configured (500) or wrong token (401)
            RateLimitedError: too many requests from this IP
        """
        if not self.admin_token:
            logger.error("external_api_token_missing")
            raise RequestRejected("Server misconfigured.", status_code=500)
        if not hmac.compare_digest(sha256_hex(provided_token), sha256_hex(self.admin_token)):
            raise RequestRejected("Unauthorized.", status_code=401)
        if self.ip_limiter.hit(f"ip:{client_ip}"):
            raise RateLimitedError("Rate limit exceeded. Try again later.")

    def query(self, body: Dict[str, Any]) -> Dict[str, Any]:
        raw_phone = str(body.get("phone_number") or "")
        query_type = str(body.get("type") or "summary")
        if not raw_phone:
            raise RequestRejected("Missing phone_number.")
        phone = normalize_phone(raw_phone)
        if phone is None:
            raise RequestRejected("Invalid phone number. Could not normalize to Brazilian format.")
        if query_type not in QUERY_TYPES:
            raise RequestRejected("Invalid type. Use 'summary' or 'transactions'.")

        profile = self.store.find_profile_by_phone(phone)
        if profile is None:
            raise RequestRejected("No user found with this phone number.", status_code=404)

        logger.info("external_query", user_id=profile.id, type=query_type)
        if query_type == "summary":
            data = self.summary(profile.id, phone)
        else:
            data = self.transactions(profile.id)
        return {"success": True, "type": query_type, "data": data}

    def summary(self, user_id: str, phone: str) -> Dict[str, Any]:
        return {
            "financial": build_financial_summary(
                phone,
                self.store.list_transactions(user_id),
                self.store.list_categories(user_id),
            ),
            "assets": compute_asset_metrics(self.store.list_assets(user_id)),
            "snapshot_updated_at": utcnow().isoformat(),
        }

    def transactions(self, user_id: str) -> Dict[str, Any]:
        persons = {p.id: p.name for p in self.store.list_persons(user_id)}
        categories = {c.id: c.name for c in self.store.list_categories(user_id)}
        subcategories = {s.id: s.name for s in self.store.list_subcategories(user_id)}

        records = sorted(self.store.list_transactions(user_id), key=lambda t: t.date, reverse=True)
        formatted = [
            {
                "id": t.id,
                "record_type": t.type.value,
                "date": t.date,
                "amount": t.amount,
                "category": categories.get(t.category_id),
                "subcategory": subcategories.get(t.subcategory_id) if t.subcategory_id else None,
                "person": persons.get(t.person_id),
                "notes": t.notes,
                "created_at": _iso(t.created_at),
            }
            for t in records[:RECORD_LIMIT]
        ]

        assets = sorted(self.store.list_assets(user_id), key=lambda a: a.date, reverse=True)
        formatted_assets = [
            {
                "id": a.id,
                "record_type": "asset",
                "date": a.date,
                "amount": a.value,
                "category": a.category,
                "subcategory": None,
                "person": None,
                "notes": None,
                "created_at": _iso(a.created_at),
            }
            for a in assets[:RECORD_LIMIT]
        ]
        return {
            "transactions": formatted,
            "assets": formatted_assets,
            "total_transactions": len(formatted),
            "total_assets": len(formatted_assets),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
