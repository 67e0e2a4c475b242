"""
Mock utilities for testing the subscription service.
"""

from .gateway import MockPaymentGateway, TEST_SECRET

__all__ = [
    "MockPaymentGateway",
    "TEST_SECRET",
]
