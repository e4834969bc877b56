"""
Pytest configuration and shared fixtures for testing.
"""

import boto3
import pytest
from moto import mock_aws

from cloudsweep.core.aws_client import AWSClient
from cloudsweep.cost.estimator import CostEstimator, PriceTable

from fakes import NOW


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_PROFILE", raising=False)


@pytest.fixture
def mock_aws_environment(aws_credentials):
    """Create a mocked AWS environment."""
    with mock_aws():
        yield


@pytest.fixture
def aws_client(mock_aws_environment):
    """Create an AWSClient instance for testing."""
    return AWSClient(region="us-east-1")


@pytest.fixture
def ec2_client(mock_aws_environment):
    """Create a boto3 EC2 client for setting up test resources."""
    return boto3.client("ec2", region_name="us-east-1")


@pytest.fixture
def vpc(ec2_client):
    """Create a VPC for testing."""
    response = ec2_client.create_vpc(CidrBlock="10.0.0.0/16")
    return response["Vpc"]["VpcId"]


@pytest.fixture
def subnet(ec2_client, vpc):
    """Create a subnet for testing."""
    response = ec2_client.create_subnet(
        VpcId=vpc,
        CidrBlock="10.0.1.0/24",
        AvailabilityZone="us-east-1a",
    )
    return response["Subnet"]["SubnetId"]


@pytest.fixture
def security_group(ec2_client, vpc):
    """Create a security group for testing."""
    response = ec2_client.create_security_group(
        GroupName="test-sg",
        Description="Test security group",
        VpcId=vpc,
    )
    return response["GroupId"]


@pytest.fixture
def now():
    """Fixed reference time."""
    return NOW


@pytest.fixture
def price_table():
    """Small price table independent of the bundled files."""
    return PriceTable.from_dict(
        {
            "version": "test-1",
            "prices": {
                "aws": {
                    "volume": {"unit": "gb_month", "default": "0.10", "by_type": {"gp3": "0.08"}},
                    "address": {"unit": "flat_month", "default": "3.65"},
                    "snapshot": {"unit": "gb_month", "default": "0.05"},
                },
            },
        }
    )


@pytest.fixture
def estimator(price_table):
    """Cost estimator over the test price table."""
    return CostEstimator(price_table)
