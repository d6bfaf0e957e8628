import json
import logging
import pandas as pd
from typing import Any, Iterable
from pathlib import Path
from openpyxl.styles import PatternFill, Font
from openpyxl.styles.numbers import BUILTIN_FORMATS

from shark_launcher.log.handler import DiagnosticEvent, SEVERITY_ERROR, SEVERITY_WARN

log = logging.getLogger(__name__)

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="4F81BD", end_color="4F81BD", fill_type="solid")
YELLOW_FILL = PatternFill(start_color="FFFFA0", end_color="FFFFA0", fill_type="solid")
RED_FILL = PatternFill(start_color="FF9696", end_color="FF9696", fill_type="solid")
TEXT_FORMAT = BUILTIN_FORMATS[49]  # '@' (Text format)

COLUMNS = ["Timestamp", "Severity", "Source", "Message", "Data"]


def escape_formula(value: Any) -> Any:
    """
    Prepends a single quote to a string if it starts with a character
    that Excel might interpret as a formula, to prevent formula injection.

    :param value: The value to check and potentially escape.
    :return: The escaped string or the original value if no escape was needed.
    """
    if isinstance(value, str) and value.startswith(('=', '-', '+', '@')):
        return f"'{value}"
    return value


def events_to_dataframe(events: Iterable[DiagnosticEvent]) -> pd.DataFrame:
    """
    Builds a DataFrame from diagnostic events, oldest first.

    :param events: The diagnostic events to tabulate.
    :return: DataFrame with one row per event.
    """
    rows = [
        {
            "Timestamp": pd.to_datetime(event.timestamp, unit="s"),
            "Severity": event.severity,
            "Source": event.source,
            "Message": event.message,
            "Data": json.dumps(event.data, default=str) if event.data else "",
        }
        for event in events
    ]
    return pd.DataFrame(rows, columns=COLUMNS)


def sanitize_log_data(df: pd.DataFrame) -> pd.DataFrame:
    """Sanitize text columns to prevent Excel formula injection."""
    for col in ['Source', 'Message', 'Data']:
        df[col] = df[col].apply(escape_formula)
    return df


def style_header(ws):
    for cell in ws[1]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL


def apply_row_styling(ws, severity_col_idx: int):
    """
    Colours rows by diagnostic severity.

    :param ws: Excel worksheet.
    :param severity_col_idx: 1-based index of the severity column.
    """
    fill_map = {SEVERITY_WARN: YELLOW_FILL, SEVERITY_ERROR: RED_FILL}

    for row in ws.iter_rows(min_row=2, max_row=ws.max_row):
        fill_to_apply = fill_map.get(row[severity_col_idx - 1].value)
        if fill_to_apply:
            for cell in row:
                cell.fill = fill_to_apply

        for cell in row[1:]:
            cell.number_format = TEXT_FORMAT


def adjust_column_widths(ws):
    column_widths = {}
    for row in ws.iter_rows():
        for i, cell in enumerate(row):
            if cell.value:
                column_widths[i] = max(column_widths.get(i, 0), len(str(cell.value)))

    for i, width in column_widths.items():
        # Very long child output lines would make the sheet unusable.
        ws.column_dimensions[ws.cell(row=1, column=i + 1).column_letter].width = min(width + 2, 120)


def export_diagnostics_to_excel(events: Iterable[DiagnosticEvent], output_path: Path) -> bool:
    """
    Exports diagnostic events to a styled Excel file.

    Features include auto-sized columns, row colouring by severity,
    and protection against Excel formula injection.

    :param events: The diagnostic events to export.
    :param output_path: The file path where the Excel file will be saved.
    :return: True if a file was written, False otherwise.
    """
    df = events_to_dataframe(events)
    if df.empty:
        log.warning("No diagnostic entries to export.")
        return False

    df = sanitize_log_data(df)

    log.info(f"Writing {len(df)} diagnostic entries to Excel file: {output_path}")
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
            df.to_excel(writer, index=False, sheet_name='Diagnostics')
            ws = writer.sheets['Diagnostics']

            style_header(ws)
            apply_row_styling(ws, df.columns.get_loc('Severity') + 1)
            adjust_column_widths(ws)
    except Exception as e:
        log.error(f"An error occurred while writing or styling the Excel file: {e}")
        return False

    log.info(f"Export successful. File saved to: {output_path.resolve()}")
    return True
