"""CSV downloads of report rows."""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from itertools import chain
from typing import Callable, Iterable, Mapping, Sequence

from flask import Response, stream_with_context


@dataclass(frozen=True)
class CsvExport:
    """A named download: the report rows to fetch and the columns to keep.

    ``columns`` pairs a row key with its header. Rows come from the report
    helpers, which already render money as 2-decimal strings and dates as ISO
    strings, so cells only need ``None`` blanked out.
    """

    filename: str
    columns: Sequence[tuple[str, str]]
    fetch_rows: Callable[..., Iterable[Mapping]]
    filterable: bool = False

    @property
    def headers(self) -> list[str]:
        return [header for _, header in self.columns]

    def encode_row(self, row: Mapping) -> list[str]:
        cells = []
        for key, _ in self.columns:
            value = row.get(key)
            cells.append("" if value is None else str(value))
        return cells

    def _lines(self, rows: Iterable[Mapping]):
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        for cells in chain([self.headers], (self.encode_row(row) for row in rows)):
            writer.writerow(cells)
            yield buffer.getvalue()
            buffer.seek(0)
            buffer.truncate(0)

    def response(self, rows: Iterable[Mapping]) -> Response:
        response = Response(stream_with_context(self._lines(rows)), mimetype="text/csv")
        response.headers["Content-Disposition"] = f'attachment; filename="{self.filename}"'
        return response
