"""Monitoring and observability package."""
from .health import HealthCheck
from .logging import log_context, setup_logging
from .metrics import metrics

__all__ = ["metrics", "log_context", "setup_logging", "HealthCheck"]
