"""
Storage interface for the hosted finance database.

The service never talks to tables directly: everything goes through
FinanceStore so the backing database (hosted REST tables, Postgres, ...) can
be swapped, and tests can run against InMemoryFinanceStore.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from household_ledger.exceptions import StoreError
from household_ledger.models import (
    AIToken,
    Asset,
    Category,
    Goal,
    ImportLog,
    Person,
    Profile,
    SecurityEvent,
    Subcategory,
    Transaction,
    WebhookConfig,
    WebhookLog,
    utcnow,
)


class FinanceStore(ABC):
    """Operations the backend needs from the finance database."""

    # Identity

    @abstractmethod
    def resolve_access_token(self, token: str) -> Optional[str]:
        """Return the user id for a session access token, or None (also for deactivated users)."""

    # Reference data

    @abstractmethod
    def list_persons(self, user_id: str) -> List[Person]:
        pass

    @abstractmethod
    def list_categories(self, user_id: str) -> List[Category]:
        pass

    @abstractmethod
    def list_subcategories(self, user_id: str) -> List[Subcategory]:
        pass

    # Transactions

    @abstractmethod
    def insert_transactions(self, records: List[Transaction]) -> List[Transaction]:
        """
        Insert a batch of transactions as one unit.

        Raises:
            StoreError: the batch was rejected; nothing is considered written
        """

    @abstractmethod
    def list_transactions(self, user_id: str) -> List[Transaction]:
        pass

    # Import audit

    @abstractmethod
    def insert_import_log(self, log: ImportLog) -> ImportLog:
        pass

    @abstractmethod
    def list_import_logs(self, user_id: str) -> List[ImportLog]:
        """Newest first."""

    # Profiles and AI integration

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[Profile]:
        pass

    @abstractmethod
    def find_profile_by_phone(
        self, phone: str, exclude_user_id: Optional[str] = None
    ) -> Optional[Profile]:
        pass

    @abstractmethod
    def list_profiles(self) -> List[Profile]:
        pass

    @abstractmethod
    def update_profile(self, user_id: str, **changes) -> Profile:
        pass

    @abstractmethod
    def delete_user(self, user_id: str) -> None:
        """
        Remove a user and everything they own.

        Raises:
            StoreError: unknown user
        """

    @abstractmethod
    def find_active_token(self, token_hash: str) -> Optional[AIToken]:
        pass

    @abstractmethod
    def has_active_token(self, user_id: str) -> bool:
        pass

    @abstractmethod
    def revoke_tokens(self, user_id: str, revoked_by: Optional[str] = None) -> int:
        """Deactivate every active token of a user; returns how many were revoked."""

    @abstractmethod
    def insert_token(self, token: AIToken) -> AIToken:
        pass

    @abstractmethod
    def active_webhook(self) -> Optional[WebhookConfig]:
        pass

    @abstractmethod
    def insert_webhook_log(self, log: WebhookLog) -> None:
        pass

    @abstractmethod
    def insert_security_event(self, event: SecurityEvent) -> None:
        pass

    # Goals and assets

    @abstractmethod
    def list_goals(self, user_id: str) -> List[Goal]:
        pass

    @abstractmethod
    def list_assets(self, user_id: str) -> List[Asset]:
        pass


def new_id() -> str:
    return str(uuid4())


class InMemoryFinanceStore(FinanceStore):
    """
    Process-local store.

    Enforces the constraints the hosted database enforces on transactions
    (owned person/category, category type matching the transaction type,
    subcategory under its category) so batch rejection behaves the same.
    """

    def __init__(self):
        self.access_tokens: Dict[str, str] = {}
        self.persons: Dict[str, Person] = {}
        self.categories: Dict[str, Category] = {}
        self.subcategories: Dict[str, Subcategory] = {}
        self.transactions: List[Transaction] = []
        self.import_logs: List[ImportLog] = []
        self.profiles: Dict[str, Profile] = {}
        self.ai_tokens: List[AIToken] = []
        self.webhooks: List[WebhookConfig] = []
        self.webhook_logs: List[WebhookLog] = []
        self.security_events: List[SecurityEvent] = []
        self.goals: List[Goal] = []
        self.assets: List[Asset] = []

    # Seeding helpers

    def add_user(
        self, user_id: str, access_token: str, email: str = "", roles: Optional[List[str]] = None
    ) -> Profile:
        self.access_tokens[access_token] = user_id
        profile = Profile(id=user_id, email=email, roles=roles or [])
        self.profiles[user_id] = profile
        return profile

    def add_person(self, person: Person) -> Person:
        self.persons[person.id] = person
        return person

    def add_category(self, category: Category) -> Category:
        self.categories[category.id] = category
        return category

    def add_subcategory(self, subcategory: Subcategory) -> Subcategory:
        self.subcategories[subcategory.id] = subcategory
        return subcategory

    # FinanceStore

    def resolve_access_token(self, token: str) -> Optional[str]:
        user_id = self.access_tokens.get(token)
        profile = self.profiles.get(user_id) if user_id else None
        if profile is None or not profile.is_active:
            return None
        return user_id

    def list_persons(self, user_id: str) -> List[Person]:
        return [p for p in self.persons.values() if p.user_id == user_id]

    def list_categories(self, user_id: str) -> List[Category]:
        return [c for c in self.categories.values() if c.user_id == user_id]

    def list_subcategories(self, user_id: str) -> List[Subcategory]:
        return [s for s in self.subcategories.values() if s.user_id == user_id]

    def _check_transaction(self, record: Transaction) -> None:
        person = self.persons.get(record.person_id)
        if person is None or person.user_id != record.user_id:
            raise StoreError(f"unknown person_id {record.person_id}")
        category = self.categories.get(record.category_id)
        if category is None or category.user_id != record.user_id:
            raise StoreError(f"unknown category_id {record.category_id}")
        if category.type != record.type:
            raise StoreError(
                f"category {category.id} is {category.type.value}, transaction is {record.type.value}"
            )
        if record.subcategory_id is not None:
            sub = self.subcategories.get(record.subcategory_id)
            if sub is None or sub.user_id != record.user_id:
                raise StoreError(f"unknown subcategory_id {record.subcategory_id}")
            if sub.category_id != record.category_id:
                raise StoreError(
                    f"subcategory {sub.id} belongs to {sub.category_id}, not {record.category_id}"
                )

    def insert_transactions(self, records: List[Transaction]) -> List[Transaction]:
        for record in records:
            self._check_transaction(record)
        now = utcnow()
        stored = [r.model_copy(update={"id": new_id(), "created_at": now}) for r in records]
        self.transactions.extend(stored)
        return stored

    def list_transactions(self, user_id: str) -> List[Transaction]:
        return [t for t in self.transactions if t.user_id == user_id]

    def insert_import_log(self, log: ImportLog) -> ImportLog:
        stored = log.model_copy(update={"id": new_id(), "created_at": utcnow()})
        self.import_logs.append(stored)
        return stored

    def list_import_logs(self, user_id: str) -> List[ImportLog]:
        logs = [log for log in self.import_logs if log.user_id == user_id]
        return list(reversed(logs))

    def get_profile(self, user_id: str) -> Optional[Profile]:
        return self.profiles.get(user_id)

    def find_profile_by_phone(
        self, phone: str, exclude_user_id: Optional[str] = None
    ) -> Optional[Profile]:
        for profile in self.profiles.values():
            if profile.phone == phone and profile.id != exclude_user_id:
                return profile
        return None

    def list_profiles(self) -> List[Profile]:
        return list(self.profiles.values())

    def update_profile(self, user_id: str, **changes) -> Profile:
        profile = self.profiles.get(user_id)
        if profile is None:
            raise StoreError(f"unknown profile {user_id}")
        updated = profile.model_copy(update=changes)
        self.profiles[user_id] = updated
        return updated

    def delete_user(self, user_id: str) -> None:
        if self.profiles.pop(user_id, None) is None:
            raise StoreError(f"unknown profile {user_id}")
        self.access_tokens = {t: uid for t, uid in self.access_tokens.items() if uid != user_id}
        for table in (self.persons, self.categories, self.subcategories):
            for key in [k for k, row in table.items() if row.user_id == user_id]:
                del table[key]
        self.transactions = [t for t in self.transactions if t.user_id != user_id]
        self.import_logs = [log for log in self.import_logs if log.user_id != user_id]
        self.ai_tokens = [t for t in self.ai_tokens if t.user_id != user_id]
        self.goals = [g for g in self.goals if g.user_id != user_id]
        self.assets = [a for a in self.assets if a.user_id != user_id]

    def find_active_token(self, token_hash: str) -> Optional[AIToken]:
        for token in self.ai_tokens:
            if token.token_hash == token_hash and token.is_active:
                return token
        return None

    def has_active_token(self, user_id: str) -> bool:
        return any(t.user_id == user_id and t.is_active for t in self.ai_tokens)

    def revoke_tokens(self, user_id: str, revoked_by: Optional[str] = None) -> int:
        now: datetime = utcnow()
        revoked = 0
        for i, token in enumerate(self.ai_tokens):
            if token.user_id == user_id and token.is_active:
                self.ai_tokens[i] = token.model_copy(
                    update={"is_active": False, "revoked_at": now, "revoked_by": revoked_by}
                )
                revoked += 1
        return revoked

    def insert_token(self, token: AIToken) -> AIToken:
        stored = token.model_copy(update={"id": new_id()})
        self.ai_tokens.append(stored)
        return stored

    def active_webhook(self) -> Optional[WebhookConfig]:
        for webhook in self.webhooks:
            if webhook.is_active:
                return webhook
        return None

    def insert_webhook_log(self, log: WebhookLog) -> None:
        self.webhook_logs.append(log)

    def insert_security_event(self, event: SecurityEvent) -> None:
        self.security_events.append(event)

    def list_goals(self, user_id: str) -> List[Goal]:
        return [g for g in self.goals if g.user_id == user_id]

    def list_assets(self, user_id: str) -> List[Asset]:
        return [a for a in self.assets if a.user_id == user_id]
