"""
Custom Exceptions for Cloud-Sweep
=================================

This module defines the error taxonomy used throughout the audit engine.
Every error kind can be raised as an exception and, apart from
:class:`ConfigError`, captured into an :class:`~cloudsweep.core.models.ErrorRecord`
on the audit run instead of aborting it.

Exception Hierarchy
-------------------
::

    CloudSweepError (base)
    ├── ConfigError
    ├── ProviderError
    │   ├── CredentialsError
    │   ├── ResourceNotFoundError
    │   └── TransientProviderError
    │       ├── RateLimitError
    │       └── ProviderTimeoutError
    ├── PolicyError
    ├── PrecheckFailed
    └── PartialFailure

Example
-------
>>> from cloudsweep.core.exceptions import ProviderError, TransientProviderError
>>>
>>> try:
...     adapter.list_resources("us-east-1")
... except TransientProviderError as e:
...     print(f"Retry later: {e}")
... except ProviderError as e:
...     print(f"Provider error: {e}")
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)


class CloudSweepError(Exception):
    """
    Base exception for all Cloud-Sweep errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    details : dict, optional
        Additional context about the error.

    Example
    -------
    >>> raise CloudSweepError("Something went wrong", details={"code": 500})
    """

    #: Name of the error kind this exception maps to in an audit run.
    kind = "CloudSweepError"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message

    @staticmethod
    def _with_context(details: Optional[Dict[str, Any]], **context: Any) -> Dict[str, Any]:
        """Copy ``details`` and add every non-empty context value."""
        merged = dict(details or {})
        merged.update({key: value for key, value in context.items() if value})
        return merged

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for serialization.

        Returns
        -------
        dict
            Dictionary representation of the error.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(CloudSweepError):
    """
    Raised when configuration is missing or invalid.

    Always fatal: the run aborts before any provider call is made.

    Example
    -------
    >>> raise ConfigError(
    ...     "Unknown provider 'oracle'",
    ...     details={"allowed": ["aws", "gcp", "azure"]}
    ... )
    """

    kind = "ConfigError"


# =============================================================================
# Provider Exceptions
# =============================================================================


class ProviderError(CloudSweepError):
    """
    Raised when a call to a cloud provider fails.

    Parameters
    ----------
    message : str
        Human-readable error message.
    provider : str, optional
        Provider that raised the error (aws, gcp, azure).
    region : str, optional
        Region where the error occurred.
    service : str, optional
        Provider service involved (e.g. 'ec2').
    code : str, optional
        Provider error code (e.g. 'RequestLimitExceeded').
    details : dict, optional
        Additional context about the error.
    """

    kind = "ProviderError"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        region: Optional[str] = None,
        service: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.provider = provider
        self.region = region
        self.service = service
        self.code = code
        super().__init__(
            message,
            self._with_context(details, provider=provider, region=region, service=service, code=code),
        )


class CredentialsError(ProviderError):
    """
    Raised when provider credentials are invalid, missing, or expired.

    Example
    -------
    >>> raise CredentialsError(
    ...     "AWS credentials not found",
    ...     details={"hint": "Run 'aws configure' to set up credentials"}
    ... )
    """

    pass


class ResourceNotFoundError(ProviderError):
    """Raised when the target resource no longer exists."""

    pass


class TransientProviderError(ProviderError):
    """
    Raised for provider failures that are worth retrying.

    Only read-only listing calls are retried; mutations never are.
    """

    pass


class RateLimitError(TransientProviderError):
    """Raised when the provider throttles the caller."""

    pass


class ProviderTimeoutError(TransientProviderError):
    """Raised when a provider call times out or the endpoint is unreachable."""

    pass


# =============================================================================
# Engine Exceptions
# =============================================================================


class PolicyError(CloudSweepError):
    """
    Raised when a rule predicate fails on a resource.

    The engine skips that resource/rule pair and keeps classifying.

    Example
    -------
    >>> raise PolicyError(
    ...     "Predicate raised KeyError('ingress_rules')",
    ...     rule_name="ssh-open-to-internet",
    ...     resource_id="sg-123456",
    ... )
    """

    kind = "PolicyError"

    def __init__(
        self,
        message: str,
        rule_name: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.rule_name = rule_name
        self.resource_id = resource_id
        super().__init__(
            message, self._with_context(details, rule_name=rule_name, resource_id=resource_id)
        )


class PrecheckFailed(CloudSweepError):
    """
    Raised when the reversible artifact for a destructive action can't be created.

    The destructive action is then not attempted.

    Example
    -------
    >>> raise PrecheckFailed(
    ...     "Snapshot creation failed",
    ...     resource_id="vol-123456",
    ... )
    """

    kind = "PrecheckFailed"

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.resource_id = resource_id
        super().__init__(message, self._with_context(details, resource_id=resource_id))


class PartialFailure(CloudSweepError):
    """
    Raised when one (kind, region) pair could not be listed.

    The run continues with the pairs that succeeded.
    """

    kind = "PartialFailure"

    def __init__(
        self,
        message: str,
        region: Optional[str] = None,
        resource_kind: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.region = region
        self.resource_kind = resource_kind
        super().__init__(
            message, self._with_context(details, region=region, resource_kind=resource_kind)
        )


# =============================================================================
# Provider Error Mapping
# =============================================================================

THROTTLING_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "RequestThrottled",
        "SlowDown",
    }
)

CREDENTIAL_CODES = frozenset(
    {
        "AuthFailure",
        "InvalidClientTokenId",
        "SignatureDoesNotMatch",
        "UnauthorizedOperation",
        "AccessDenied",
        "AccessDeniedException",
        "ExpiredToken",
    }
)

TIMEOUT_CODES = frozenset({"RequestTimeout", "RequestTimeoutException"})


def is_not_found_code(code: str) -> bool:
    """
    Check whether a provider error code means the resource is gone.

    Parameters
    ----------
    code : str
        Provider error code (e.g. 'InvalidVolume.NotFound').

    Returns
    -------
    bool
        True for any ``*.NotFound`` / ``*NotFound`` style code.
    """
    return code.endswith("NotFound")


def classify_client_error(
    exc: Exception,
    provider: str = "aws",
    region: Optional[str] = None,
    service: Optional[str] = None,
) -> ProviderError:
    """
    Map a botocore exception onto the provider error taxonomy.

    Parameters
    ----------
    exc : Exception
        The exception raised by boto3/botocore.
    provider : str, default="aws"
        Provider name recorded on the error.
    region : str, optional
        Region of the failed call.
    service : str, optional
        Service of the failed call.

    Returns
    -------
    ProviderError
        The most specific matching error class.

    Example
    -------
    >>> try:
    ...     ec2.describe_volumes()
    ... except ClientError as e:
    ...     raise classify_client_error(e, region="us-east-1", service="ec2")
    """
    if isinstance(exc, ProviderError):
        return exc

    kwargs: Dict[str, Any] = {"provider": provider, "region": region, "service": service}

    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message", str(exc))
        if code in THROTTLING_CODES:
            return RateLimitError(message, code=code, **kwargs)
        if code in TIMEOUT_CODES:
            return ProviderTimeoutError(message, code=code, **kwargs)
        if code in CREDENTIAL_CODES:
            return CredentialsError(message, code=code, **kwargs)
        if is_not_found_code(code):
            return ResourceNotFoundError(message, code=code, **kwargs)
        return ProviderError(message, code=code, **kwargs)

    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError)):
        return ProviderTimeoutError(str(exc), code="Timeout", **kwargs)

    if isinstance(exc, NoCredentialsError):
        return CredentialsError("AWS credentials not found", **kwargs)

    return ProviderError(str(exc), **kwargs)
