"""vevpd.output - 時刻歴の CSV エクスポート."""

from vevpd.output.export_csv import HISTORY_HEADER, export_history_csv

__all__ = [
    "HISTORY_HEADER",
    "export_history_csv",
]
