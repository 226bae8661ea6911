"""
Middleware components for the tracking engine HTTP host.
"""

from middleware.request_id import REQUEST_ID_HEADER, RequestIDMiddleware, request_id_var

__all__ = [
    "REQUEST_ID_HEADER",
    "RequestIDMiddleware",
    "request_id_var",
]
