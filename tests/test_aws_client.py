"""
Tests for the AWS Client module.
"""

import pytest

from cloudsweep.core.aws_client import AWSClient
from cloudsweep.core.exceptions import CredentialsError


class TestAWSClient:
    """Tests for AWSClient class."""

    def test_client_initialization(self, mock_aws_environment):
        """Test basic client initialization."""
        client = AWSClient(region="us-east-1")
        assert client.region == "us-east-1"
        assert client.profile is None

    def test_client_with_profile(self, mock_aws_environment):
        """Test client initialization with profile."""
        client = AWSClient(region="us-west-2", profile="test-profile")
        assert client.region == "us-west-2"
        assert client.profile == "test-profile"

    def test_clients_are_cached(self, mock_aws_environment):
        """Test that service clients are created once."""
        client = AWSClient(region="us-east-1")
        assert client.get_ec2_client() is client.get_ec2_client()
        assert client.get_sts_client() is not None

    def test_regional_children_are_cached(self, mock_aws_environment):
        """Test that one child client exists per region."""
        client = AWSClient(region="us-east-1", profile=None, timeout=10)
        child = client.regional("eu-west-1")

        assert client.regional("us-east-1") is client
        assert client.regional("eu-west-1") is child
        assert child.timeout == 10
        assert child.get_ec2_client().meta.region_name == "eu-west-1"

    def test_caller_identity(self, mock_aws_environment):
        """Test the STS identity fields."""
        identity = AWSClient().caller_identity()
        assert set(identity) == {"account", "arn", "user_id"}
        assert identity["arn"].startswith("arn:aws:")

    def test_account_id(self, mock_aws_environment):
        """Test that the account id is 12 digits."""
        account_id = AWSClient(region="us-east-1").caller_identity()["account"]
        assert len(account_id) == 12
        assert account_id.isdigit()

    def test_mutation_client_makes_one_attempt(self, mock_aws_environment):
        """Test that mutations go through a client without retries."""
        client = AWSClient(region="us-east-1", max_retries=5)
        mutating = client.get_ec2_client(mutating=True)

        assert mutating is not client.get_ec2_client()
        assert mutating is client.get_ec2_client(mutating=True)
        assert mutating.meta.config.retries["total_max_attempts"] == 1
        assert mutating.meta.config.read_timeout == client.timeout

    def test_describe_regions(self, mock_aws_environment):
        """Test region discovery."""
        regions = AWSClient(region="us-east-1").describe_regions()
        assert "us-east-1" in regions
        assert regions == sorted(regions)

    def test_with_region(self, mock_aws_environment):
        """Test creating client for different region."""
        client = AWSClient(region="us-east-1", profile="test", max_retries=5)
        new_client = client.with_region("eu-west-1")

        assert new_client.region == "eu-west-1"
        assert new_client.profile == "test"
        assert new_client.max_retries == 5
        assert client.region == "us-east-1"

    def test_retry_config(self, mock_aws_environment):
        """Test that retry configuration is applied."""
        client = AWSClient(region="us-east-1", max_retries=5, timeout=60)
        assert client._config.retries["max_attempts"] == 5
        assert client._config.retries["mode"] == "adaptive"
        assert client._config.read_timeout == 60

    def test_context_manager_drops_clients(self, mock_aws_environment):
        """Test that leaving the context clears cached clients."""
        with AWSClient(region="us-east-1") as client:
            client.get_ec2_client()
            assert client._clients
        assert client._clients == {}


class TestAWSClientErrors:
    """Tests for AWSClient error handling."""

    def test_invalid_profile_error(self, aws_credentials, monkeypatch, tmp_path):
        """Test that an unknown profile becomes a CredentialsError."""
        monkeypatch.setenv("AWS_CONFIG_FILE", str(tmp_path / "config"))
        monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(tmp_path / "credentials"))
        client = AWSClient(region="us-east-1", profile="nonexistent-profile-xyz")

        with pytest.raises(CredentialsError) as exc_info:
            client.get_ec2_client()
        assert exc_info.value.details["profile"] == "nonexistent-profile-xyz"
