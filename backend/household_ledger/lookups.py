"""Case-insensitive name → id lookup snapshot shared by validation and commit."""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from household_ledger.models import Category, Person, Subcategory, TransactionType


def name_key(name: str) -> str:
    return name.strip().casefold()


@dataclass(frozen=True)
class LookupTables:
    """
    Active persons, categories of one transaction type, and subcategories.

    Subcategories are keyed by (category id, name): two categories may each
    own a subcategory with the same name.

    Validation and commit must resolve names from the same snapshot so a
    preview that passed cannot resolve differently at commit time.
    """

    persons: Dict[str, str]
    categories: Dict[str, str]
    subcategories: Dict[Tuple[str, str], str]

    @classmethod
    def build(
        cls,
        persons: Iterable[Person],
        categories: Iterable[Category],
        subcategories: Iterable[Subcategory],
        transaction_type: TransactionType,
    ) -> "LookupTables":
        return cls(
            persons={name_key(p.name): p.id for p in persons if p.is_active},
            categories={
                name_key(c.name): c.id
                for c in categories
                if c.is_active and c.type == transaction_type
            },
            subcategories={
                (s.category_id, name_key(s.name)): s.id for s in subcategories if s.is_active
            },
        )

    def person_id(self, name: str) -> Optional[str]:
        return self.persons.get(name_key(name))

    def category_id(self, name: str) -> Optional[str]:
        return self.categories.get(name_key(name))

    def subcategory_id(self, name: str, category_id: Optional[str]) -> Optional[str]:
        return self.subcategories.get((category_id or "", name_key(name)))

    def has_subcategory(self, name: str) -> bool:
        """True when any category owns an active subcategory with this name."""
        key = name_key(name)
        return any(sub_key == key for _, sub_key in self.subcategories)
