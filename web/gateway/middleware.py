"""Gateway middleware: request correlation, payload limits and access logs.

``RequestIdMiddleware`` ensures every incoming HTTP request carries a
request identifier. The id is read from the incoming ``X-Request-ID``
header when the client (or an upstream proxy) provides one, or generated
server-side otherwise. It is stored on the ``request`` object and in the
``REQUEST_ID_CTX`` context variable so the logging filter and the outbound
HTTP adapters can pick it up without passing it explicitly.

``ApiSizeLimitMiddleware`` rejects oversized ``/api/`` bodies before any
view parses them, and ``AccessLogMiddleware`` writes one structured line
per request.
"""

import contextvars
import logging
import time
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")

logger = logging.getLogger("gateway.access")


class RequestIdMiddleware(MiddlewareMixin):
    """Sets and returns a per-request identifier.

    Attributes:
        HEADER (str): Incoming header name as found in ``request.META``.
        RESPONSE_HEADER (str): Header added to every response.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        """Attach ``request.request_id`` and publish it to the ContextVar.

        Args:
            request: Django HttpRequest instance.
        """
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        """Echo the request id on the response and reset the ContextVar."""
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
            request._request_id_token = None
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Answers 413 for ``/api/`` requests above ``settings.API_MAX_BYTES``."""

    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        limit = getattr(settings, "API_MAX_BYTES", 1024 * 1024)
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > limit:
            logger.warning("payload rejected", extra={"path": request.path, "content_length": int(clen)})
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None


class AccessLogMiddleware(MiddlewareMixin):
    def process_request(self, request):
        request._started_at = time.monotonic()

    def process_response(self, request, response):
        started = getattr(request, "_started_at", None)
        duration_ms = round((time.monotonic() - started) * 1000, 2) if started else None
        logger.info(
            "request handled",
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response
