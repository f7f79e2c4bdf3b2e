"""Request-scoped middleware for the storefront API.

``RequestIdMiddleware`` gives every request a correlation id: the client's
``X-Request-Id`` is reused when it looks sane, otherwise a UUIDv4 is
generated. The id is stored on ``request.request_id`` and in
``REQUEST_ID_CTX`` so log filters and outbound HTTP clients can pick it up
without it being threaded through call signatures. Responses echo it in
``X-Request-ID``.

``ApiSizeLimitMiddleware`` rejects oversized ``/api/`` bodies with 413
before they reach a view.
"""

import contextvars
import os
import re
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(64 * 1024)))
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


class RequestIdMiddleware(MiddlewareMixin):
    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER, "")
        if not _REQUEST_ID_RE.match(rid):
            rid = str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        # error handlers may hand us a request without the attribute
        response[self.RESPONSE_HEADER] = getattr(request, "request_id", REQUEST_ID_CTX.get())
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Cart and checkout payloads are small; anything larger is refused."""

    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None
