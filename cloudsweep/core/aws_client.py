"""
AWS Client Module
=================

boto3 session holder shared by every AWS adapter of a run.

One ``AWSClient`` is created per audit (in the home region). Adapters ask
it for the client of the region they list through :meth:`AWSClient.regional`,
which hands out one cached, per-region ``AWSClient`` so a region's boto3
session and EC2 client are built once no matter how many kinds list there.

Classes
-------
AWSClient
    Lazy boto3 session, cached service clients, per-region children.

Example
-------
>>> from cloudsweep.core.aws_client import AWSClient
>>>
>>> client = AWSClient(profile="production")
>>> client.caller_identity()["account"]
'123456789012'
>>> ec2 = client.regional("eu-west-1").get_ec2_client()

Notes
-----
boto3 sessions are not thread-safe to create from; each regional child owns
its own session and client creation is serialized with a lock.

Two clients exist per service. Read calls go through a client with
botocore's adaptive retries (listing adds :mod:`cloudsweep.core.retry` on
top). Mutations go through a client that makes exactly one attempt, so a
throttled or failed delete, snapshot or revoke is never replayed.

See Also
--------
boto3 : AWS SDK for Python
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    NoRegionError,
    ProfileNotFound,
)

from cloudsweep import __version__
from cloudsweep.core.exceptions import (
    CredentialsError,
    ProviderError,
    classify_client_error,
)

# Module logger
logger = logging.getLogger(__name__)

# Region used for account-level calls (STS, region discovery)
HOME_REGION = "us-east-1"

CREDENTIALS_HINT = (
    "Configure credentials using 'aws configure' or set "
    "AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY environment variables"
)


class AWSClient:
    """
    boto3 session and service clients for one region.

    Parameters
    ----------
    region : str, default="us-east-1"
        Region of this client's session.
    profile : str, optional
        Named profile from the shared credentials/config files.
    max_retries : int, default=3
        botocore retry attempts (adaptive mode).
    timeout : int, default=30
        Connect and read timeout in seconds.

    Raises
    ------
    CredentialsError
        When the profile or credentials can't be found (on first use).
    ProviderError
        When the session or a client can't be created.
    """

    def __init__(
        self,
        region: str = HOME_REGION,
        profile: Optional[str] = None,
        max_retries: int = 3,
        timeout: int = 30,
    ) -> None:
        self.region = region
        self.profile = profile
        self.max_retries = max_retries
        self.timeout = timeout
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[Tuple[str, bool], Any] = {}
        self._children: Dict[str, AWSClient] = {}
        self._lock = threading.Lock()
        self._config = Config(
            retries={"max_attempts": max_retries, "mode": "adaptive"},
            connect_timeout=timeout,
            read_timeout=timeout,
            user_agent_extra=f"cloudsweep/{__version__}",
        )
        self._mutation_config = self._config.merge(
            Config(retries={"total_max_attempts": 1, "mode": "standard"})
        )
        logger.debug("Initialized AWSClient region=%s profile=%s", region, profile)

    # =========================================================================
    # Session and Clients
    # =========================================================================

    @property
    def session(self) -> boto3.Session:
        """The boto3 session, created on first access."""
        if self._session is None:
            self._session = self._create_session()
        return self._session

    def _create_session(self) -> boto3.Session:
        kwargs: Dict[str, Any] = {"region_name": self.region}
        if self.profile:
            kwargs["profile_name"] = self.profile
        try:
            return boto3.Session(**kwargs)
        except ProfileNotFound:
            raise CredentialsError(
                f"AWS profile '{self.profile}' not found",
                provider="aws",
                details={
                    "profile": self.profile,
                    "hint": "Check ~/.aws/credentials and ~/.aws/config for available profiles",
                },
            )

    def client(self, service_name: str, mutating: bool = False) -> Any:
        """
        Get the cached boto3 client of ``service_name``.

        Parameters
        ----------
        service_name : str
            boto3 service name ('ec2', 'sts', ...).
        mutating : bool, default=False
            Return the single-attempt client used for mutations.

        Raises
        ------
        CredentialsError
            If no credentials can be found.
        ProviderError
            If the client can't be created (bad region, broken config).
        """
        key = (service_name, mutating)
        with self._lock:
            cached = self._clients.get(key)
            if cached is not None:
                return cached
            config = self._mutation_config if mutating else self._config
            try:
                created = self.session.client(service_name, config=config)
            except NoCredentialsError:
                raise CredentialsError(
                    "AWS credentials not found",
                    provider="aws",
                    details={"hint": CREDENTIALS_HINT},
                )
            except NoRegionError:
                raise ProviderError(
                    f"Invalid or missing region: {self.region}",
                    provider="aws",
                    region=self.region,
                    details={"hint": "Specify a valid AWS region like 'us-east-1'"},
                )
            except BotoCoreError as e:
                raise ProviderError(
                    f"Failed to create {service_name} client: {e}",
                    provider="aws",
                    service=service_name,
                    region=self.region,
                )
            self._clients[key] = created
            logger.debug(
                "Created %s%s client for %s", service_name, " mutation" if mutating else "", self.region
            )
            return created

    def get_ec2_client(self, mutating: bool = False) -> Any:
        """EC2 client of this client's region."""
        return self.client("ec2", mutating=mutating)

    def get_sts_client(self) -> Any:
        return self.client("sts")

    def regional(self, region: str) -> AWSClient:
        """
        Cached child client for ``region`` (``self`` for its own region).

        Example
        -------
        >>> client.regional("eu-west-1") is client.regional("eu-west-1")
        True
        """
        if region == self.region:
            return self
        with self._lock:
            child = self._children.get(region)
            if child is None:
                child = self.with_region(region)
                self._children[region] = child
            return child

    def with_region(self, region: str) -> AWSClient:
        """New, uncached client for ``region`` with the same profile and retry settings."""
        return AWSClient(
            region=region,
            profile=self.profile,
            max_retries=self.max_retries,
            timeout=self.timeout,
        )

    # =========================================================================
    # Account Operations
    # =========================================================================

    def caller_identity(self) -> Dict[str, str]:
        """
        Identity behind the credentials (STS GetCallerIdentity).

        Returns
        -------
        dict
            ``account``, ``arn`` and ``user_id``.

        Raises
        ------
        CredentialsError
            If credentials are missing, invalid or expired.
        """
        try:
            response = self.get_sts_client().get_caller_identity()
        except NoCredentialsError:
            raise CredentialsError("AWS credentials not found", provider="aws", details={"hint": CREDENTIALS_HINT})
        except ClientError as e:
            error = classify_client_error(e, region=self.region, service="sts")
            if isinstance(error, CredentialsError):
                raise error
            raise CredentialsError(
                "Invalid AWS credentials",
                provider="aws",
                code=error.code,
                details={"hint": "Check your access key and secret key"},
            )
        return {
            "account": response["Account"],
            "arn": response["Arn"],
            "user_id": response["UserId"],
        }

    def describe_regions(self) -> List[str]:
        """
        Regions enabled for the account, sorted.

        Raises
        ------
        ProviderError
            If the call fails (classified).
        """
        try:
            response = self.get_ec2_client().describe_regions(AllRegions=False)
        except (ClientError, BotoCoreError) as e:
            raise classify_client_error(e, region=self.region, service="ec2")
        regions = sorted(r["RegionName"] for r in response["Regions"])
        logger.info("Discovered %d enabled AWS regions", len(regions))
        return regions

    # =========================================================================
    # Context Manager
    # =========================================================================

    def __enter__(self) -> AWSClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Drop cached sessions and clients, children included."""
        with self._lock:
            self._clients.clear()
            self._children.clear()
            self._session = None

    def __repr__(self) -> str:
        """Return string representation of the client."""
        return f"AWSClient(region='{self.region}', profile={self.profile!r}, max_retries={self.max_retries})"
