"""
Exceptions raised synchronously by the onboarding core.

Anything raised from here means the request never left the host. Failures
reported by a device after a request was accepted are delivered through the
request's completion instead (see results.py).
"""

from __future__ import annotations


class OnboardingError(Exception):
    """Base exception for onboarding errors."""
    pass


class SelectionError(OnboardingError):
    """Device selection was out of range or names an unknown device."""
    pass


class AceValidationError(OnboardingError):
    """ACE failed local validation and was not submitted."""
    pass


class RoleChainError(OnboardingError):
    """Role chain is empty or malformed."""
    pass


class TrustAnchorError(OnboardingError):
    """Trust anchor bytes are not an X.509 certificate."""
    pass


class InitializationError(OnboardingError):
    """Storage or SDK initialization failed. Fatal at startup."""
    pass


class RequestRejectedError(OnboardingError):
    """The provisioning SDK declined to issue a request."""

    def __init__(self, operation: str, code: int):
        self.operation = operation
        self.code = code
        super().__init__(f"SDK rejected {operation} (code {code})")
