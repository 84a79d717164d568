import logging
from typing import Any, Dict, List, Sequence

from fastapi import Response

logger = logging.getLogger(__name__)

_SPECIAL_CHARS = (",", '"', "\n", "\r")


def escape_csv_value(value: Any) -> str:
    """
    Escape a single value for CSV. Values containing a comma, double quote
    or line break are enclosed in double quotes, with embedded quotes doubled.
    None becomes an empty field.
    """
    text = "" if value is None else str(value)
    if any(ch in text for ch in _SPECIAL_CHARS):
        return '"' + text.replace('"', '""') + '"'
    return text


def export_data_to_csv(rows: Sequence[Dict[str, Any]]) -> str:
    """
    Build an RFC-4180 CSV document from a list of flat dicts.

    The header row is taken from the keys of the first row; rows are
    separated by CRLF. An empty input produces an empty string.
    """
    if not rows:
        logger.warning("No data provided to export to CSV.")
        return ""

    headers = list(rows[0].keys())
    lines = [",".join(escape_csv_value(h) for h in headers)]
    for row in rows:
        lines.append(",".join(escape_csv_value(row.get(h)) for h in headers))
    return "\r\n".join(lines)


def csv_response(rows: List[Dict[str, Any]], filename: str) -> Response:
    return Response(
        content=export_data_to_csv(rows),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
