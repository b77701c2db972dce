import io
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence

import pandas as pd
from openpyxl.styles import PatternFill

from app.models import MATCH, MISMATCH, ComparisonRow, SummaryStatistics

DETAILS_SHEET = 'Comparison_Details'
SUMMARY_SHEET = 'Summary'
DETAILS_COLUMNS = ['User', 'CreatedBy0', 'Bo (CSV Count)', 'Blop (JSON Count)', 'Mismatched', 'Status']
MISSING_USERS_FILENAME = 'missing_users_summary.csv'

MISMATCH_FILL = PatternFill(start_color='FF9999', end_color='FF9999', fill_type='solid')

# (label, SummaryStatistics field) in sheet order
SUMMARY_METRICS = [
    ('Total CSV Count (Sum of Bo)', 'total_csv_count'),
    ('Total JSON Count (Sum of Blop)', 'total_json_count'),
    ("Files containing 'Nearmiss'", 'nearmiss_count'),
    ("Files containing 'Hazard'", 'hazard_count'),
    ("Files containing 'HarmInjury'", 'harm_injury_count'),
    ("Files containing 'Product'", 'product_count'),
    ("Files containing 'SalesDelivery'", 'sales_delivery_count'),
]


def comparison_filename(today: Optional[date] = None) -> str:
    return f"comparison_result_{(today or datetime.now(timezone.utc).date()).isoformat()}.xlsx"


def details_frame(rows: Sequence[ComparisonRow]) -> pd.DataFrame:
    return pd.DataFrame(
        [[row.user, row.created_by, row.csv_count, row.json_count, row.mismatched,
          'Match' if row.status == MATCH else 'Mismatch'] for row in rows],
        columns=DETAILS_COLUMNS
    )


def summary_frame(summary: SummaryStatistics) -> pd.DataFrame:
    return pd.DataFrame(
        [{'Metric': label, 'Value': getattr(summary, attr)} for label, attr in SUMMARY_METRICS],
        columns=['Metric', 'Value']
    )


def build_comparison_workbook(rows: Sequence[ComparisonRow], summary: SummaryStatistics) -> io.BytesIO:
    """
    Write the comparison as an xlsx workbook with a details and a summary sheet.

    Every cell of a mismatched row in the details sheet is filled red.
    """
    output = io.BytesIO()
    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        details_frame(rows).to_excel(writer, sheet_name=DETAILS_SHEET, index=False)
        summary_frame(summary).to_excel(writer, sheet_name=SUMMARY_SHEET, index=False)

        ws = writer.sheets[DETAILS_SHEET]
        for r_idx, row in enumerate(rows, start=2):  # row 1 is the header
            if row.status != MISMATCH:
                continue
            for c_idx in range(1, len(DETAILS_COLUMNS) + 1):
                ws.cell(row=r_idx, column=c_idx).fill = MISMATCH_FILL

    output.seek(0)
    return output


def build_missing_users_csv(groups: List[Dict]) -> io.BytesIO:
    df = pd.DataFrame(
        [[group['user'], group['count'], '; '.join(group['files'])] for group in groups],
        columns=['User Email', 'File Count', 'Files']
    )
    output = io.BytesIO(df.to_csv(index=False).encode('utf-8'))
    output.seek(0)
    return output
