"""Static remediation catalog: command templates, tiers, risk classes."""

from .loader import RemediationCatalog, StepTemplate, load_catalog, parse_catalog

__all__ = ["RemediationCatalog", "StepTemplate", "load_catalog", "parse_catalog"]
