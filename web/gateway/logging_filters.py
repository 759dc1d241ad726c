"""Logging filter that stamps records with request context.

Formatters can rely on ``%(request_id)s`` and ``%(user_id)s`` being
present on every record, with ``-`` when there is no request in flight.
"""

from logging import Filter, LogRecord

from .identity import USER_ID_CTX
from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` and ``user_id`` to log records.

    Values already set through ``extra=`` are left alone.
    """

    def filter(self, record: LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = REQUEST_ID_CTX.get()
        if not hasattr(record, "user_id"):
            record.user_id = USER_ID_CTX.get()
        return True
