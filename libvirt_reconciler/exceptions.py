"""
Custom exceptions for libvirt-reconciler.

This module defines the two error classes the reconciler distinguishes:
validation errors, raised in aggregate before any hypervisor call, and
operational errors, raised by the hypervisor client and recorded per resource.
"""

from typing import List


class ReconcilerError(Exception):
    """Base exception for all libvirt-reconciler errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class HypervisorConnectionError(ReconcilerError):
    """Raised when the libvirt connection fails or is lost."""
    pass


class HypervisorOperationError(ReconcilerError):
    """Raised when a libvirt operation fails."""
    pass


class HypervisorPermissionError(ReconcilerError):
    """Raised when a mutating call is attempted on a read-only connection."""
    pass


class ResourceNotFoundError(ReconcilerError):
    """Raised when a requested libvirt resource is not found."""
    pass


class UnsupportedChangeError(ReconcilerError):
    """Raised when a live resource cannot be brought in line without recreating it."""
    pass


class ConfigurationError(ReconcilerError):
    """Raised when configuration or topology input is invalid or missing."""
    pass


class TopologyValidationError(ReconcilerError):
    """Raised when a desired state fails validation.

    Carries every issue found, not just the first one.
    """

    def __init__(self, issues: List["ValidationIssue"]):  # noqa: F821
        self.issues = list(issues)
        summary = "; ".join(str(issue) for issue in self.issues)
        super().__init__(
            f"Desired state failed validation with {len(self.issues)} issue(s): {summary}",
            details={"issues": [issue.model_dump(mode="json") for issue in self.issues]},
        )
