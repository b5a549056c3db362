"""
Configuration management for sitesnap.
"""

from .config_loader import RepositoryRecord, RepositoryResolution, SitesnapConfig

__all__ = ["SitesnapConfig", "RepositoryRecord", "RepositoryResolution"]
