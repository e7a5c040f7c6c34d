"""
Import session workflow: upload → type → mapping → preview → commit.

ImportService ties the decoder, mapper, validator and committer to the
persisted session state and to the finance store's lookup tables.
"""

from typing import Any, Dict, List
from uuid import uuid4

import structlog

from household_ledger.committer import BatchCommitter
from household_ledger.config import ImportSettings
from household_ledger.decoder import check_upload, decode_file
from household_ledger.exceptions import CommitError, MappingError, SessionNotFoundError
from household_ledger.lookups import LookupTables
from household_ledger.mapping import FIELDS, IGNORED, ColumnMapping, field_label
from household_ledger.models import (
    ImportResult,
    ImportSession,
    ImportStatus,
    TransactionType,
)
from household_ledger.parsers import cell_text
from household_ledger.ratelimit import SubmissionThrottle
from household_ledger.sessions import ImportSessionStore
from household_ledger.store import FinanceStore
from household_ledger.tracing import ImportTracer
from household_ledger.validator import FIRST_DATA_ROW, validate_rows

logger = structlog.get_logger(__name__)


def mapping_state(session: ImportSession) -> Dict[str, Any]:
    mapping = ColumnMapping(session.mapping)
    return {
        "mapping": mapping.to_list(),
        "missing_required": [f.label for f in mapping.missing_required_fields()],
    }


def session_summary(session: ImportSession, sample_size: int = 3) -> Dict[str, Any]:
    head = session.rows[:sample_size]
    columns = [
        {
            "index": i,
            "header": header,
            "samples": [cell_text(row[i]) for row in head if cell_text(row[i])],
        }
        for i, header in enumerate(session.headers)
    ]
    return {
        "session_id": session.id,
        "file_name": session.file_name,
        "type": session.type.value if session.type else None,
        "total_rows": len(session.rows),
        "columns": columns,
        "fields": [{"key": f.key, "label": f.label, "required": f.required} for f in FIELDS],
        "result": session.result.model_dump(mode="json") if session.result else None,
        **mapping_state(session),
    }


class ImportService:
    def __init__(
        self,
        store: FinanceStore,
        sessions: ImportSessionStore,
        settings: ImportSettings,
        tracer: ImportTracer,
        throttle: SubmissionThrottle,
    ):
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.tracer = tracer
        self.throttle = throttle

    def lookups(self, user_id: str, transaction_type: TransactionType) -> LookupTables:
        return LookupTables.build(
            self.store.list_persons(user_id),
            self.store.list_categories(user_id),
            self.store.list_subcategories(user_id),
            transaction_type,
        )

    def get(self, user_id: str, session_id: str) -> ImportSession:
        session = self.sessions.load(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError("Importação não encontrada.")
        return session

    def upload(self, user_id: str, file_name: str, data: bytes) -> ImportSession:
        """
        Check, decode and open a new session with the positional auto-mapping.

        Raises:
            FileRejectedError: file-level problems
        """
        ext = check_upload(
            file_name,
            len(data),
            self.settings.allowed_extensions_list,
            self.settings.max_file_size_bytes,
        )
        table = decode_file(data, ext)

        self.sessions.purge_expired(self.settings.session_ttl_hours * 3600)
        session = ImportSession(
            id=uuid4().hex,
            user_id=user_id,
            file_name=file_name,
            headers=table.headers,
            rows=table.rows,
            mapping=ColumnMapping.auto(table.column_count).to_list(),
        )
        self.sessions.save(session)

        trace = self.tracer.create_trace("import_upload", user_id, {"session_id": session.id})
        self.tracer.add_span(
            trace,
            "decode",
            input_text=file_name,
            metadata={"columns": table.column_count, "rows": len(table.rows)},
        )
        self.tracer.end_trace(trace)

        logger.info(
            "import_session_created",
            session_id=session.id,
            user_id=user_id,
            file_name=file_name,
            rows=len(table.rows),
        )
        return session

    def set_type(self, user_id: str, session_id: str, transaction_type: TransactionType) -> ImportSession:
        session = self.get(user_id, session_id)
        session.type = transaction_type
        session.errors = []
        self.sessions.save(session)
        return session

    def assign(self, user_id: str, session_id: str, column_index: int, field_key: str) -> ImportSession:
        session = self.get(user_id, session_id)
        mapping = ColumnMapping(session.mapping).assign(column_index, field_key)
        session.mapping = mapping.to_list()
        session.errors = []
        self.sessions.save(session)
        return session

    def _require_type(self, session: ImportSession) -> TransactionType:
        if session.type is None:
            raise MappingError("Selecione o tipo do arquivo (gastos ou receitas).")
        return session.type

    def preview(self, user_id: str, session_id: str) -> Dict[str, Any]:
        """
        Validate every row and build the preview grid.

        Raises:
            MappingError: type not chosen or required fields unmapped
        """
        session = self.get(user_id, session_id)
        transaction_type = self._require_type(session)
        mapping = ColumnMapping(session.mapping)
        mapping.require_complete()

        errors = validate_rows(session.rows, mapping, self.lookups(user_id, transaction_type))
        session.errors = errors
        self.sessions.save(session)

        trace = self.tracer.create_trace("import_preview", user_id, {"session_id": session.id})
        self.tracer.add_span(
            trace,
            "validate",
            metadata={"rows": len(session.rows), "errors": len(errors)},
        )
        self.tracer.end_trace(trace)

        limit = self.settings.error_display_limit
        active = [(key, col) for col, key in enumerate(mapping.to_list()) if key != IGNORED]
        grid: List[Dict[str, Any]] = [
            {
                "row": i + FIRST_DATA_ROW,
                "values": {field_label(key): cell_text(row[col]) for key, col in active},
            }
            for i, row in enumerate(session.rows[: self.settings.preview_row_limit])
        ]

        logger.info("import_validated", session_id=session.id, errors=len(errors))
        return {
            "session_id": session.id,
            "total_rows": len(session.rows),
            "error_count": len(errors),
            "errors": [e.model_dump() for e in errors[:limit]],
            "remaining_errors": max(0, len(errors) - limit),
            "columns": [field_label(key) for key, _ in active],
            "rows": grid,
        }

    def commit(self, user_id: str, session_id: str) -> ImportResult:
        """
        Commit a validated session once.

        Raises:
            CommitError: throttled or already imported (InvalidRowsError when rows do not validate)
            MappingError: type not chosen or required fields unmapped
        """
        throttle_key = f"commit:{session_id}"
        if not self.throttle.acquire(throttle_key):
            raise CommitError("Importação já em andamento. Aguarde.")
        try:
            session = self.get(user_id, session_id)
            if session.result is not None and session.result.status == ImportStatus.SUCCESS:
                raise CommitError("Este arquivo já foi importado.")

            transaction_type = self._require_type(session)
            committer = BatchCommitter(self.store)
            result = committer.commit(
                session.rows,
                ColumnMapping(session.mapping),
                self.lookups(user_id, transaction_type),
                transaction_type,
                user_id,
                session.file_name,
            )

            session.result = result
            self.sessions.save(session)

            trace = self.tracer.create_trace("import_commit", user_id, {"session_id": session.id})
            self.tracer.add_span(
                trace,
                "commit",
                output_text=result.status.value,
                metadata={"total": result.total, "imported": result.imported},
            )
            self.tracer.end_trace(trace)
            return result
        finally:
            self.throttle.release(throttle_key)
