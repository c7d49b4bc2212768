"""
Streaming CSV/Excel reader for course and staff bulk imports.
Rows are yielded in chunks so large uploads never sit in memory at once.
"""
import csv
import io
from typing import Any, Dict, Iterator, List

from openpyxl import load_workbook

from validators import ValidationError, validate_course_payload, validate_staff_payload

COURSE_COLUMNS = {'name', 'code', 'hours_per_week'}
STAFF_COLUMNS = {'name', 'email'}


def _normalize_header(header) -> str:
    return str(header).strip().lower().replace(' ', '_')


def process_csv_stream(file_stream, chunk_size: int = 1000) -> Iterator[List[Dict[str, Any]]]:
    """
    Yield lists of at most `chunk_size` row dicts from a binary CSV stream.
    Header names are lower-cased, stripped and have spaces turned into underscores.
    """
    text_stream = io.TextIOWrapper(file_stream, encoding='utf-8-sig', newline='')
    reader = csv.DictReader(text_stream)

    chunk = []
    for row in reader:
        chunk.append({_normalize_header(k): (v or '').strip() for k, v in row.items() if k})
        if len(chunk) == chunk_size:
            yield chunk
            chunk = []

    if chunk:
        yield chunk


def process_excel_stream(file_stream, chunk_size: int = 1000) -> Iterator[List[Dict[str, Any]]]:
    """Same as process_csv_stream for the first sheet of an .xlsx workbook (read-only mode)."""
    workbook = load_workbook(file_stream, read_only=True, data_only=True)
    try:
        rows_iter = workbook.active.iter_rows(values_only=True)
        headers = next(rows_iter, None)
        if headers is None:
            return
        headers = [_normalize_header(h) if h else f'column_{i}' for i, h in enumerate(headers)]

        chunk = []
        for values in rows_iter:
            if all(v is None for v in values):
                continue
            chunk.append({h: '' if v is None else str(v).strip() for h, v in zip(headers, values)})
            if len(chunk) == chunk_size:
                yield chunk
                chunk = []

        if chunk:
            yield chunk
    finally:
        workbook.close()


def process_upload_stream(upload_file, chunk_size: int = 1000) -> Iterator[List[Dict[str, Any]]]:
    """Dispatch on the upload's extension. Raises ValueError for anything but CSV or Excel."""
    filename = (upload_file.filename or '').lower()

    if filename.endswith('.csv'):
        yield from process_csv_stream(upload_file.stream, chunk_size)
    elif filename.endswith('.xlsx') or filename.endswith('.xls'):
        yield from process_excel_stream(upload_file.stream, chunk_size)
    else:
        raise ValueError('Unsupported file type. Upload CSV or Excel (.xlsx, .xls) files only.')


def get_missing_columns(available_columns: set, required_columns: set) -> set:
    return required_columns - available_columns


def course_payload_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    payload = {
        'name': row.get('name') or row.get('code'),
        'code': row.get('code'),
        'hours_per_week': row.get('hours_per_week'),
        'preferred_days': row.get('preferred_days'),
    }
    return validate_course_payload(payload)


def staff_payload_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    payload = {
        'name': row.get('name'),
        'email': row.get('email'),
        'designation': row.get('designation'),
        'available_days': row.get('available_days'),
        'available_hours_per_day': row.get('available_hours_per_day'),
    }
    return validate_staff_payload(payload)


def parse_rows(chunk: List[Dict[str, Any]], to_payload, first_row_number: int = 2):
    """
    Validate a chunk of rows. Returns (payloads, errors); a bad row lands in
    `errors` as "Row N: message" and is left out of `payloads`.
    Row numbers count the header as row 1.
    """
    payloads, errors = [], []
    for offset, row in enumerate(chunk):
        try:
            payloads.append(to_payload(row))
        except ValidationError as exc:
            errors.append(f'Row {first_row_number + offset}: {exc}')
    return payloads, errors
