"""
Middleware package.
"""
from shop_mirror.middleware.error_handler import ErrorHandlerMiddleware
from shop_mirror.middleware.request_id import RequestIdMiddleware

__all__ = [
    "ErrorHandlerMiddleware",
    "RequestIdMiddleware",
]
