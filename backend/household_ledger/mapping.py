"""
Column-to-field mapping for spreadsheet imports.

Each input column maps to at most one logical field or is ignored, and each
field is held by at most one column. Assigning a field that another column
already holds moves it: the previous column falls back to ignored.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from household_ledger.exceptions import MappingError

IGNORED = "ignored"


@dataclass(frozen=True)
class FieldDef:
    key: str
    label: str
    required: bool


# Fixed priority order, also used for positional auto-mapping.
FIELDS: List[FieldDef] = [
    FieldDef("date", "Data", True),
    FieldDef("amount", "Valor", True),
    FieldDef("person", "Pessoa", True),
    FieldDef("category", "Categoria", True),
    FieldDef("subcategory", "Subcategoria", False),
    FieldDef("notes", "Observação", False),
]

FIELDS_BY_KEY: Dict[str, FieldDef] = {f.key: f for f in FIELDS}


def field_label(key: str) -> str:
    return FIELDS_BY_KEY[key].label


class ColumnMapping:
    """Mutable mapping state for one import session."""

    def __init__(self, slots: Sequence[str]):
        self._slots = list(slots)
        seen = set()
        for i, key in enumerate(self._slots):
            if key != IGNORED and key not in FIELDS_BY_KEY:
                raise MappingError(f"Campo desconhecido: {key}")
            if key in seen:
                self._slots[i] = IGNORED
            elif key != IGNORED:
                seen.add(key)

    @classmethod
    def auto(cls, column_count: int) -> "ColumnMapping":
        """First N columns take the N fields in priority order; the rest are ignored."""
        return cls(
            [FIELDS[i].key if i < len(FIELDS) else IGNORED for i in range(column_count)]
        )

    def __len__(self) -> int:
        return len(self._slots)

    def to_list(self) -> List[str]:
        return list(self._slots)

    def assign(self, column_index: int, field_key: str) -> "ColumnMapping":
        """
        Map a column to a field, or to IGNORED.

        Raises:
            MappingError: column out of range or unknown field key
        """
        if not 0 <= column_index < len(self._slots):
            raise MappingError(f"Coluna inválida: {column_index}")
        if field_key != IGNORED and field_key not in FIELDS_BY_KEY:
            raise MappingError(f"Campo desconhecido: {field_key}")

        if field_key != IGNORED:
            for i, current in enumerate(self._slots):
                if current == field_key and i != column_index:
                    self._slots[i] = IGNORED
        self._slots[column_index] = field_key
        return self

    def column_for(self, field_key: str) -> Optional[int]:
        for i, current in enumerate(self._slots):
            if current == field_key:
                return i
        return None

    def field_columns(self) -> Dict[str, int]:
        return {key: i for i, key in enumerate(self._slots) if key != IGNORED}

    def missing_required_fields(self) -> List[FieldDef]:
        assigned = set(self._slots)
        return [f for f in FIELDS if f.required and f.key not in assigned]

    def require_complete(self) -> None:
        """Raise MappingError listing the labels of unassigned required fields."""
        missing = [f.label for f in self.missing_required_fields()]
        if missing:
            raise MappingError(
                "Campos obrigatórios não mapeados: " + ", ".join(missing),
                missing_fields=missing,
            )
