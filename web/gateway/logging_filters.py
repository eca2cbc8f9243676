"""Logging filter that stamps the current request id on every record.

Added to the console handler in ``config.settings.LOGGING`` so the JSON
formatter can always reference ``%(request_id)s``. Management commands and
other code running outside a request get ``"-"``.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    A value already present on the record (passed through ``extra=``) is
    left untouched, so callers that process work on behalf of another
    request can log under that id.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
