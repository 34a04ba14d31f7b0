"""
erp_config -- YAML-driven engine settings.

Responsibility:
    Provides ``load_settings()``, the single way to obtain engine settings.
    The kernel never reads configuration files or environment variables;
    the composition root (``erp_services.context.build_context``) passes
    plain values down to each engine.
"""

from erp_config.loader import load_settings, load_yaml_file, parse_settings
from erp_config.schema import (
    ApprovalSettings,
    AutomationSettings,
    CreditSettings,
    DatabaseSettings,
    ErpSettings,
    LoggingSettings,
    RetrySettings,
)

__all__ = [
    "load_settings",
    "load_yaml_file",
    "parse_settings",
    "ErpSettings",
    "DatabaseSettings",
    "LoggingSettings",
    "RetrySettings",
    "AutomationSettings",
    "ApprovalSettings",
    "CreditSettings",
]
