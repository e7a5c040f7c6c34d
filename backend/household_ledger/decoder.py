"""
Tabular decoding of uploaded CSV and Excel files.

Produces a rectangular grid: one header row plus data rows whose cells are
either trimmed strings or native spreadsheet numbers (floats). Numbers are
kept as numbers so the value parsers can tell a spreadsheet serial date or
amount apart from text that merely looks numeric.
"""

import csv
import io
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import PurePath
from typing import Any, Iterable, List, Optional, Sequence

import openpyxl
import structlog
import xlrd

from household_ledger.exceptions import FileRejectedError
from household_ledger.models import Cell

logger = structlog.get_logger(__name__)

CSV_ENCODINGS = ("utf-8-sig", "cp1252")
CSV_DELIMITERS = ",;\t"


@dataclass
class DecodedTable:
    headers: List[str]
    rows: List[List[Cell]] = field(default_factory=list)

    @property
    def column_count(self) -> int:
        return len(self.headers)


def file_extension(file_name: str) -> str:
    return PurePath(file_name).suffix.lower().lstrip(".")


def check_upload(
    file_name: Optional[str],
    size: int,
    allowed_extensions: Sequence[str],
    max_bytes: int,
) -> str:
    """
    Reject a file before decoding.

    Returns:
        The lower-cased extension of an acceptable file

    Raises:
        FileRejectedError: no name, unsupported extension or over the size ceiling
    """
    if not file_name:
        raise FileRejectedError("Nenhum arquivo enviado.")

    ext = file_extension(file_name)
    if ext not in allowed_extensions:
        raise FileRejectedError("Formato inválido. Use CSV ou Excel (.xlsx/.xls).")

    if size > max_bytes:
        limit_mb = max_bytes // (1024 * 1024)
        raise FileRejectedError(f"Arquivo muito grande. Máximo {limit_mb}MB.")

    if size == 0:
        raise FileRejectedError("Arquivo vazio ou sem dados suficientes.")

    return ext


def _text_cell(value: Any) -> Cell:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).upper()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def _header_text(value: Cell) -> str:
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    return value


def _read_csv(data: bytes) -> List[List[Cell]]:
    text = None
    for encoding in CSV_ENCODINGS:
        try:
            text = data.decode(encoding)
            break
        except UnicodeDecodeError:
            continue
    if text is None:
        raise FileRejectedError(
            "Erro de codificação do arquivo. Salve o CSV em UTF-8."
        )

    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=CSV_DELIMITERS)
        delimiter = dialect.delimiter
    except csv.Error:
        delimiter = ","

    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    return [[cell.strip() for cell in row] for row in reader]


def _read_xlsx(data: bytes) -> List[List[Cell]]:
    wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        sheet = wb.worksheets[0]
        return [[_text_cell(v) for v in row] for row in sheet.iter_rows(values_only=True)]
    finally:
        wb.close()


def _xls_cell(cell: Any, datemode: int) -> Cell:
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return ""
    if cell.ctype == xlrd.XL_CELL_DATE:
        return xlrd.xldate.xldate_as_datetime(cell.value, datemode).date().isoformat()
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return "TRUE" if cell.value else "FALSE"
    return _text_cell(cell.value)


def _read_xls(data: bytes) -> List[List[Cell]]:
    book = xlrd.open_workbook(file_contents=data)
    sheet = book.sheet_by_index(0)
    return [
        [_xls_cell(sheet.cell(r, c), book.datemode) for c in range(sheet.ncols)]
        for r in range(sheet.nrows)
    ]


READERS = {
    "csv": _read_csv,
    "xlsx": _read_xlsx,
    "xls": _read_xls,
}


def build_table(grid: Iterable[Sequence[Cell]]) -> DecodedTable:
    """
    Shape a raw grid into headers plus non-blank data rows.

    The column set is the contiguous run of non-empty header cells starting
    at column 0.
    """
    grid = [list(row) for row in grid]
    if len(grid) < 2:
        raise FileRejectedError("Arquivo vazio ou sem dados suficientes.")

    header_row = [_header_text(_text_cell(v)) for v in grid[0]]
    num_cols = 0
    for header in header_row:
        if header == "":
            break
        num_cols += 1

    if num_cols < 1:
        raise FileRejectedError("Nenhuma coluna encontrada no arquivo.")

    headers = header_row[:num_cols]
    rows: List[List[Cell]] = []
    for raw_row in grid[1:]:
        row = [_text_cell(raw_row[i]) if i < len(raw_row) else "" for i in range(num_cols)]
        if any(cell != "" for cell in row):
            rows.append(row)

    if not rows:
        raise FileRejectedError("Arquivo sem dados (somente cabeçalho).")

    return DecodedTable(headers=headers, rows=rows)


def decode_file(data: bytes, ext: str) -> DecodedTable:
    """
    Decode an uploaded file into a DecodedTable.

    Args:
        data: Raw file contents
        ext: One of csv, xlsx, xls

    Raises:
        FileRejectedError: unreadable or empty content
    """
    reader = READERS.get(ext)
    if reader is None:
        raise FileRejectedError("Formato inválido. Use CSV ou Excel (.xlsx/.xls).")

    try:
        grid = reader(data)
    except FileRejectedError:
        raise
    except Exception as e:
        logger.warning("decode_failed", ext=ext, error=str(e))
        raise FileRejectedError("Erro ao ler arquivo. Verifique o formato.") from e

    table = build_table(grid)
    logger.info(
        "file_decoded",
        ext=ext,
        columns=table.column_count,
        rows=len(table.rows),
    )
    return table
