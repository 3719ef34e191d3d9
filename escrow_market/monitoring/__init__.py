"""Monitoring and observability package.

``HealthCheck`` lives in ``escrow_market.monitoring.health``; it depends on the
escrow core, which itself records into ``metrics`` here.
"""
from .logging import setup_logging
from .metrics import metrics

__all__ = ["metrics", "setup_logging"]
