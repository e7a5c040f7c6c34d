"""
Row validation for spreadsheet imports.

This module provides an ImportRowValidator class that checks every mapped
cell of every row against the flexible parsers and the caller's lookup
tables, collecting one error per failing cell.
"""

from typing import List, Optional, Sequence

from household_ledger.lookups import LookupTables
from household_ledger.mapping import ColumnMapping, field_label
from household_ledger.models import Cell, RowValidationError
from household_ledger.parsers import cell_text, parse_flexible_amount, parse_flexible_date

# Row numbers are 1-based and the header occupies row 1.
FIRST_DATA_ROW = 2


class ImportRowValidator:
    """
    Validates decoded rows for one mapping and one lookup snapshot.

    Validation never stops early: every row and every mapped field is
    checked so the caller gets the complete list of problems.
    """

    def __init__(self, mapping: ColumnMapping, lookups: LookupTables):
        """
        Args:
            mapping: Current column mapping of the session
            lookups: Active persons/categories/subcategories for the declared type
        """
        self.mapping = mapping
        self.lookups = lookups
        self.columns = mapping.field_columns()

    def _cell(self, row: Sequence[Cell], field_key: str) -> Optional[Cell]:
        col = self.columns.get(field_key)
        if col is None or col >= len(row):
            return None
        return row[col]

    def extract_date(self, row: Sequence[Cell]) -> Optional[str]:
        return parse_flexible_date(self._cell(row, "date"))

    def extract_amount(self, row: Sequence[Cell]) -> Optional[float]:
        return parse_flexible_amount(self._cell(row, "amount"))

    def validate_row(self, row: Sequence[Cell], row_number: int) -> List[RowValidationError]:
        errors: List[RowValidationError] = []

        def add(field_key: str, message: str) -> None:
            errors.append(
                RowValidationError(row=row_number, field=field_label(field_key), message=message)
            )

        if "date" in self.columns:
            raw = cell_text(self._cell(row, "date"))
            if not raw:
                add("date", "Data vazia")
            elif self.extract_date(row) is None:
                add("date", f'Data inválida: "{raw}"')

        if "amount" in self.columns:
            amount = self.extract_amount(row)
            if amount is None or amount <= 0:
                raw = cell_text(self._cell(row, "amount"))
                add("amount", f'Valor inválido: "{raw}"')

        if "person" in self.columns:
            raw = cell_text(self._cell(row, "person"))
            if not raw:
                add("person", "Pessoa vazia")
            elif self.lookups.person_id(raw) is None:
                add("person", f'Pessoa não cadastrada: "{raw}"')

        if "category" in self.columns:
            raw = cell_text(self._cell(row, "category"))
            if not raw:
                add("category", "Categoria vazia")
            elif self.lookups.category_id(raw) is None:
                add("category", f'Categoria não cadastrada: "{raw}"')

        if "subcategory" in self.columns:
            raw = cell_text(self._cell(row, "subcategory"))
            # Subcategory is optional; only a non-empty unknown name is an error.
            # It must belong to the row's category when that one resolves.
            category_id = self.lookups.category_id(cell_text(self._cell(row, "category")))
            if category_id is not None:
                known = self.lookups.subcategory_id(raw, category_id) is not None
            else:
                known = self.lookups.has_subcategory(raw)
            if raw and not known:
                add("subcategory", f'Subcategoria não cadastrada: "{raw}"')

        return errors

    def validate(self, rows: Sequence[Sequence[Cell]]) -> List[RowValidationError]:
        errors: List[RowValidationError] = []
        for i, row in enumerate(rows):
            errors.extend(self.validate_row(row, i + FIRST_DATA_ROW))
        return errors


def validate_rows(
    rows: Sequence[Sequence[Cell]],
    mapping: ColumnMapping,
    lookups: LookupTables,
) -> List[RowValidationError]:
    """Validate all rows; an empty list is the only precondition for commit."""
    return ImportRowValidator(mapping, lookups).validate(rows)
