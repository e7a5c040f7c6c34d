"""
All-or-nothing batch commit of validated import rows.

The committer maps every row to a Transaction with the same LookupTables
snapshot the validator used, submits them as one bulk insert, and writes
exactly one ImportLog for the attempt whatever the outcome.
"""

from typing import List, Optional, Sequence

import structlog

from household_ledger.exceptions import InvalidRowsError, StoreError
from household_ledger.lookups import LookupTables
from household_ledger.mapping import ColumnMapping
from household_ledger.models import (
    Cell,
    ImportLog,
    ImportResult,
    ImportStatus,
    Transaction,
    TransactionType,
)
from household_ledger.parsers import cell_text, parse_flexible_amount, parse_flexible_date
from household_ledger.store import FinanceStore
from household_ledger.validator import validate_rows

logger = structlog.get_logger(__name__)


class BatchCommitter:
    def __init__(self, store: FinanceStore):
        self.store = store

    def build_records(
        self,
        rows: Sequence[Sequence[Cell]],
        mapping: ColumnMapping,
        lookups: LookupTables,
        transaction_type: TransactionType,
        user_id: str,
    ) -> List[Transaction]:
        """Map validated rows to transaction payloads. Rows must have passed validation."""
        columns = mapping.field_columns()

        def text(row: Sequence[Cell], key: str) -> str:
            col = columns.get(key)
            return cell_text(row[col]) if col is not None else ""

        records = []
        for row in rows:
            subcategory = text(row, "subcategory")
            category_id = lookups.category_id(text(row, "category"))
            notes = text(row, "notes")
            records.append(
                Transaction(
                    user_id=user_id,
                    type=transaction_type,
                    date=parse_flexible_date(row[columns["date"]]),
                    amount=parse_flexible_amount(row[columns["amount"]]),
                    person_id=lookups.person_id(text(row, "person")),
                    category_id=category_id,
                    subcategory_id=lookups.subcategory_id(subcategory, category_id) if subcategory else None,
                    notes=notes or None,
                )
            )
        return records

    def _write_log(self, log: ImportLog) -> Optional[ImportLog]:
        try:
            return self.store.insert_import_log(log)
        except StoreError as e:
            logger.error(
                "import_log_write_failed",
                user_id=log.user_id,
                file_name=log.file_name,
                error=str(e),
            )
            return None

    def commit(
        self,
        rows: Sequence[Sequence[Cell]],
        mapping: ColumnMapping,
        lookups: LookupTables,
        transaction_type: TransactionType,
        user_id: str,
        file_name: str,
    ) -> ImportResult:
        """
        Insert every row or none.

        Raises:
            MappingError: a required field is not mapped
            InvalidRowsError: the rows do not validate against ``lookups``
        """
        mapping.require_complete()
        errors = validate_rows(rows, mapping, lookups)
        if errors:
            raise InvalidRowsError(f"{len(errors)} erro(s) de validação. Corrija antes de importar.")

        total = len(rows)
        records = self.build_records(rows, mapping, lookups, transaction_type, user_id)

        error_details = None
        try:
            self.store.insert_transactions(records)
            status = ImportStatus.SUCCESS
            imported = total
        except StoreError as e:
            status = ImportStatus.ERROR
            imported = 0
            error_details = {"message": str(e)}
            logger.error("import_insert_failed", user_id=user_id, file_name=file_name, error=str(e))

        self._write_log(
            ImportLog(
                user_id=user_id,
                type=transaction_type,
                file_name=file_name or "unknown",
                total_records=total,
                imported_records=imported,
                status=status,
                error_details=error_details,
            )
        )

        logger.info(
            "import_committed",
            user_id=user_id,
            file_name=file_name,
            total=total,
            imported=imported,
            status=status.value,
        )
        return ImportResult(
            total=total,
            imported=imported,
            status=status,
            message=error_details["message"] if error_details else None,
        )
