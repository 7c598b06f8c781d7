# pm/src/pm/__init__.py
"""
This package contains the install-verification pipeline for signed package
archives: fetching into a local cache, manifest trust checks, content
verification and the final atomic commit onto the install root.
"""

from .exceptions import PmError
from .models import PackageMeta
from .packaging.orchestrator import InstallReport, Installer

__all__ = [
    "InstallReport",
    "Installer",
    "PackageMeta",
    "PmError",
]
