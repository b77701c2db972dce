import io
import json
import logging
import re
import time
import traceback
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd

from app.archive import expand_uploads
from app.config import Config
from app.errors import ComparisonError, InputError, MissingColumnError, ParseError
from app.models import (
    MATCH, MISMATCH, NOT_AVAILABLE,
    CellValue, ComparisonRow, CsvExtraction, ExtractedIdentity, JsonExtraction,
    MissingUserRecord, SkippedFile, SummaryStatistics, UploadedFile,
)

logger = logging.getLogger(__name__)

IdentityResult = Union[ExtractedIdentity, SkippedFile]


# ---------------------------------------------------------------------------
# CSV side
# ---------------------------------------------------------------------------

def normalize_header(name: str) -> str:
    """Lower-case a header and drop underscores and whitespace."""
    return re.sub(r'[_\s]', '', str(name).lower())


def find_column(headers: Sequence[str], candidates: Sequence[str]) -> Optional[str]:
    """
    Resolve the first candidate name present in `headers`.

    Candidates are tried in priority order and compared after normalization,
    so 'email_LkUp' finds a header called 'Email LkUp' or 'EMAILLKUP'.
    Returns the header as written in the file, or None.
    """
    normalized = [(normalize_header(h), h) for h in headers]
    for candidate in candidates:
        target = normalize_header(candidate)
        for norm, header in normalized:
            if norm == target:
                return header
    return None


def read_csv_rows(upload: UploadedFile) -> pd.DataFrame:
    """Parse a whole CSV upload into a DataFrame of string cells."""
    try:
        return pd.read_csv(
            io.BytesIO(upload.content),
            dtype=str,
            index_col=False,
            keep_default_na=False,
            encoding='utf-8-sig',
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError as e:
        raise ParseError(f'CSV parsing error: {str(e)}',
                         f'"{upload.name}" is empty or contains only blank lines.')
    except pd.errors.ParserError as e:
        raise ParseError(f'CSV parsing error: {str(e)}',
                         f'Could not parse "{upload.name}".\n\nError details: CSV parsing error: {str(e)}')
    except UnicodeDecodeError as e:
        raise ParseError(f'CSV parsing error: {str(e)}',
                         f'"{upload.name}" is not UTF-8 text. Please save it as a UTF-8 CSV.')


def resolve_cell(raw) -> CellValue:
    """Classify a CSV cell as embedded JSON object or plain text."""
    text = raw if isinstance(raw, str) else ''
    stripped = text.strip()
    if stripped.startswith('{'):
        try:
            data = json.loads(stripped)
        except ValueError:
            data = None
        if isinstance(data, dict):
            return CellValue(kind='json', raw=text, data=data)
    return CellValue(kind='text', raw=text)


def identity_from_object(obj: dict, identity_key: str) -> Optional[str]:
    value = obj.get(identity_key)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def cell_identity(raw, identity_key: Optional[str] = None) -> Optional[str]:
    """
    Derive an identity from a CSV cell.

    Without `identity_key` the trimmed cell is used as is. With a key, a cell
    holding a JSON object yields the value under that key and any other cell
    falls back to its trimmed text.
    """
    if identity_key is None:
        value = raw.strip() if isinstance(raw, str) else ''
        return value or None

    cell = resolve_cell(raw)
    if cell.kind == 'json':
        return identity_from_object(cell.data, identity_key)
    return cell.raw.strip() or None


def extract_csv_identities(df: pd.DataFrame,
                           identity_candidates: Sequence[str] = Config.EMAIL_COLUMN_CANDIDATES,
                           created_by_candidates: Optional[Sequence[str]] = Config.CREATED_BY_COLUMN_CANDIDATES,
                           identity_key: Optional[str] = None) -> CsvExtraction:
    headers = df.columns.tolist()
    identity_col = find_column(headers, identity_candidates)
    if identity_col is None:
        raise MissingColumnError(
            'Could not find email column in CSV',
            f'Could not find email column in CSV.\n\nLooked for: {", ".join(identity_candidates)}\n'
            f'CSV columns: {", ".join(map(str, headers[:10]))}'
        )
    created_by_col = find_column(headers, created_by_candidates) if created_by_candidates else None

    identities = []
    created_by = {}
    for record in df.to_dict(orient='records'):
        identity = cell_identity(record.get(identity_col), identity_key)
        if not identity:
            continue
        identities.append(identity)
        if created_by_col is not None:
            creator = record.get(created_by_col)
            if isinstance(creator, str) and creator.strip():
                # Last row wins when an identity repeats
                created_by[identity] = creator.strip()

    logger.info("Read %d identities from CSV column %r (created-by column: %r)",
                len(identities), identity_col, created_by_col)
    return CsvExtraction(identities=identities, created_by=created_by)


def inspect_csv_headers(upload: UploadedFile,
                        candidates: Sequence[str] = Config.EMAIL_COLUMN_CANDIDATES) -> Dict:
    """Headers of a CSV upload plus the column that best matches `candidates`."""
    df = read_csv_rows(upload)
    headers = [str(h) for h in df.columns.tolist()]
    return {
        'headers': headers,
        'suggested_column': find_column(headers, candidates),
    }


# ---------------------------------------------------------------------------
# JSON side
# ---------------------------------------------------------------------------

def tally_categories(filenames: Iterable[str],
                     markers: Sequence[Tuple[str, str]] = Config.CATEGORY_MARKERS) -> Dict[str, int]:
    """Count filenames containing each marker. One file may count toward several categories."""
    counts = {name: 0 for name, _ in markers}
    for filename in filenames:
        lowered = filename.lower()
        for name, marker in markers:
            if marker in lowered:
                counts[name] += 1
    return counts


def read_json_identity(upload: UploadedFile, identity_key: str) -> IdentityResult:
    try:
        data = json.loads(upload.text())
    except (ValueError, UnicodeDecodeError) as e:
        return SkippedFile(upload.name, f'Invalid JSON: {str(e)}')

    if not isinstance(data, dict):
        return SkippedFile(upload.name, f'Expected a JSON object, got {type(data).__name__}')
    if identity_key not in data:
        return SkippedFile(upload.name, f'Missing key "{identity_key}"')

    identity = identity_from_object(data, identity_key)
    if identity is None:
        return SkippedFile(upload.name, f'Empty or non-text value for "{identity_key}"')
    return ExtractedIdentity(upload.name, identity)


def extract_json_identities(files: Sequence[UploadedFile],
                            identity_key: str = Config.IDENTITY_KEY,
                            markers: Sequence[Tuple[str, str]] = Config.CATEGORY_MARKERS,
                            inclusion_marker: Optional[str] = Config.INCLUSION_MARKER) -> JsonExtraction:
    """
    Tally filename categories and pull one identity out of each eligible file.

    Only files whose name contains `inclusion_marker` are parsed; pass None to
    parse every file. A file that cannot be used is recorded in `skipped` and
    never stops the loop.
    """
    identities = []
    skipped = []

    for upload in files:
        if inclusion_marker is not None and inclusion_marker not in upload.name.lower():
            continue
        result = read_json_identity(upload, identity_key)
        if isinstance(result, SkippedFile):
            logger.warning("Skipping %s: %s", result.filename, result.reason)
            skipped.append(result)
        else:
            identities.append(result)

    category_counts = tally_categories((f.name for f in files), markers)
    logger.info("Extracted %d identities from %d JSON file(s), %d skipped",
                len(identities), len(files), len(skipped))
    return JsonExtraction(identities=identities, skipped=skipped, category_counts=category_counts)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def count_identities(identities: Iterable[str]) -> Dict[str, int]:
    return dict(Counter(identities))


def compare_identities(csv_identities: Sequence[str], json_identities: Sequence[str],
                       created_by: Optional[Dict[str, str]] = None,
                       category_counts: Optional[Dict[str, int]] = None
                       ) -> Tuple[List[ComparisonRow], SummaryStatistics]:
    """
    Full outer join of two identity multisets on identity.

    Every identity from either side gets exactly one row, sorted ascending,
    with a count of 0 for the side it is missing from.
    """
    created_by = created_by or {}
    csv_counts = count_identities(csv_identities)
    json_counts = count_identities(json_identities)

    rows = []
    for user in sorted(set(csv_counts) | set(json_counts)):
        csv_count = csv_counts.get(user, 0)
        json_count = json_counts.get(user, 0)
        rows.append(ComparisonRow(
            user=user,
            created_by=created_by.get(user, NOT_AVAILABLE),
            csv_count=csv_count,
            json_count=json_count,
            mismatched=csv_count - json_count,
            status=MATCH if csv_count == json_count else MISMATCH,
        ))

    category_fields = {f'{name}_count': count for name, count in (category_counts or {}).items()}
    summary = SummaryStatistics(
        total_csv_count=sum(csv_counts.values()),
        total_json_count=sum(json_counts.values()),
        **category_fields
    )
    return rows, summary


def compare_missing_users(csv_identities: Iterable[str], extraction: JsonExtraction) -> Dict:
    """Check each JSON file's user against the set of CSV users."""
    known_users = set(csv_identities)
    matching_count = 0
    missing_users = []

    for item in extraction.identities:
        if item.identity in known_users:
            matching_count += 1
        else:
            missing_users.append(MissingUserRecord(item.identity, item.filename))

    return {
        'total_files': len(extraction.identities) + len(extraction.skipped),
        'matching_count': matching_count,
        'missing_users': missing_users,
    }


def group_missing_users(records: Iterable[MissingUserRecord]) -> List[Dict]:
    groups = {}
    for record in records:
        groups.setdefault(record.current_user, []).append(record.filename)
    return [
        {'user': user, 'files': files, 'count': len(files)}
        for user, files in sorted(groups.items())
    ]


def summarize_details(details: Sequence[Dict]) -> Dict:
    mismatch_count = sum(1 for row in details if row['status'] == MISMATCH)
    return {
        'total_users': len(details),
        'match_count': len(details) - mismatch_count,
        'mismatch_count': mismatch_count,
    }


def paginate_rows(rows: Sequence, page: int, per_page: int) -> Dict:
    """Slice `rows` for one page; out-of-range pages are clamped."""
    total_pages = max(1, -(-len(rows) // per_page))
    page = min(max(page, 1), total_pages)
    start = (page - 1) * per_page
    return {
        'rows': list(rows[start:start + per_page]),
        'page': page,
        'per_page': per_page,
        'total_pages': total_pages,
        'total_rows': len(rows),
    }


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

def _error_result(error: Exception) -> Dict:
    if isinstance(error, ComparisonError):
        return error.to_dict()
    return {
        'error': 'Processing error',
        'details': f'An unexpected error occurred:\n\n{str(error)}\n\nPlease check your file format and try again.',
        'traceback': traceback.format_exc()
    }


def load_and_compare_uploads(csv_upload: Optional[UploadedFile], json_uploads: Sequence[UploadedFile],
                             identity_candidates: Sequence[str] = Config.EMAIL_COLUMN_CANDIDATES,
                             created_by_candidates: Sequence[str] = Config.CREATED_BY_COLUMN_CANDIDATES,
                             identity_key: str = Config.IDENTITY_KEY,
                             markers: Sequence[Tuple[str, str]] = Config.CATEGORY_MARKERS,
                             inclusion_marker: Optional[str] = Config.INCLUSION_MARKER) -> Dict:
    """Run the per-user count reconciliation and return a JSON-ready result or an error dict."""
    start = time.perf_counter()
    try:
        if csv_upload is None or not json_uploads:
            raise InputError('Please upload both CSV file and JSON files')

        json_files = expand_uploads(json_uploads)
        csv_data = extract_csv_identities(read_csv_rows(csv_upload), identity_candidates, created_by_candidates)
        json_data = extract_json_identities(json_files, identity_key, markers, inclusion_marker)

        rows, summary = compare_identities(
            csv_data.identities, json_data.identity_values, csv_data.created_by, json_data.category_counts
        )
    except Exception as e:
        logger.warning("Comparison failed: %s", e)
        return _error_result(e)

    details = [row.to_dict() for row in rows]
    processing_time = time.perf_counter() - start
    logger.info("Compared %d users in %.2fs", len(details), processing_time)
    return {
        'details': details,
        'summary': summary.to_dict(),
        'stats': dict(summarize_details(details), json_file_count=len(json_files),
                      skipped_count=len(json_data.skipped)),
        'skipped_files': [item.to_dict() for item in json_data.skipped],
        'processing_time': processing_time,
    }


def load_and_find_missing_users(csv_upload: Optional[UploadedFile], json_uploads: Sequence[UploadedFile],
                                csv_column: str, json_key: str) -> Dict:
    """Run the missing-user workflow: which JSON files name a user absent from the CSV."""
    start = time.perf_counter()
    try:
        if csv_upload is None or not json_uploads:
            raise InputError('Please upload both CSV file and JSON files')
        csv_column = (csv_column or '').strip()
        json_key = (json_key or '').strip()
        if not csv_column:
            raise InputError('CSV column name is required')
        if not json_key:
            raise InputError('JSON key name is required')

        json_files = expand_uploads(json_uploads)
        csv_data = extract_csv_identities(read_csv_rows(csv_upload), [csv_column], None, identity_key=json_key)
        json_data = extract_json_identities(json_files, json_key, inclusion_marker=None)
        comparison = compare_missing_users(csv_data.identities, json_data)
    except Exception as e:
        logger.warning("User comparison failed: %s", e)
        return _error_result(e)

    missing = comparison['missing_users']
    processing_time = time.perf_counter() - start
    logger.info("Checked %d JSON file(s): %d matching, %d missing in %.2fs",
                comparison['total_files'], comparison['matching_count'], len(missing), processing_time)
    return {
        'total_files': comparison['total_files'],
        'matching_count': comparison['matching_count'],
        'missing_count': len(missing),
        'missing_users': [record.to_dict() for record in missing],
        'grouped': group_missing_users(missing),
        'skipped_files': [item.to_dict() for item in json_data.skipped],
        'processing_time': processing_time,
    }
