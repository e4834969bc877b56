"""
Tests for configuration loading.
"""

import json

import pytest

from cloudsweep.core.config import AuditConfig, load_config, read_environment
from cloudsweep.core.exceptions import ConfigError
from cloudsweep.core.models import Mode, OutputFormat, Provider, ResourceKind, Severity


class TestAuditConfig:
    """Tests for AuditConfig defaults and validation."""

    def test_defaults(self):
        """Test default configuration values."""
        config = AuditConfig()
        assert config.provider is Provider.AWS
        assert config.mode is Mode.REPORT_ONLY
        assert config.min_severity is Severity.LOW
        assert config.concurrency_listing == 8
        assert config.concurrency_action == 2
        assert config.regions == ()

    def test_gcp_needs_project(self):
        """Test that GCP without a project is rejected."""
        with pytest.raises(ConfigError, match="project"):
            AuditConfig(provider=Provider.GCP).validate()

    def test_azure_needs_subscription(self):
        """Test that Azure without a subscription is rejected."""
        with pytest.raises(ConfigError, match="subscription"):
            AuditConfig(provider=Provider.AZURE).validate()

    def test_concurrency_must_be_positive(self):
        """Test concurrency validation."""
        with pytest.raises(ConfigError):
            AuditConfig(concurrency_listing=0).validate()

    def test_replace_coerces_values(self):
        """Test that replace parses raw strings."""
        config = AuditConfig().replace(mode="applyForce", kinds="volume,address")
        assert config.mode is Mode.APPLY_FORCE
        assert config.kinds == (ResourceKind.VOLUME, ResourceKind.ADDRESS)


class TestLoadConfig:
    """Tests for load_config precedence and parsing."""

    def test_overrides_beat_environment(self):
        """Test that explicit overrides take precedence."""
        config = load_config(
            env={"CLOUDSWEEP_MODE": "dryRun"},
            overrides={"mode": "applyForce"},
        )
        assert config.mode is Mode.APPLY_FORCE

    def test_none_overrides_are_ignored(self):
        """Test that unset CLI options don't clear other sources."""
        config = load_config(env={"CLOUDSWEEP_MIN_SEVERITY": "high"}, overrides={"min_severity": None})
        assert config.min_severity is Severity.HIGH

    def test_environment_values(self):
        """Test CLOUDSWEEP_* variables."""
        config = load_config(
            env={
                "CLOUDSWEEP_REGIONS": "us-east-1, eu-west-1",
                "CLOUDSWEEP_CONCURRENCY_LISTING": "4",
                "CLOUDSWEEP_PRICE_TABLE_VERSION": "2024.1",
                "CLOUDSWEEP_FORMAT": "json",
            }
        )
        assert config.regions == ("us-east-1", "eu-west-1")
        assert config.concurrency_listing == 4
        assert config.cost_price_table_version == "2024.1"
        assert config.output_format is OutputFormat.JSON

    def test_legacy_environment(self):
        """Test the GCP_PROJECT and AZURE_SUBSCRIPTION names."""
        values = read_environment({"GCP_PROJECT": "proj-1", "AZURE_SUBSCRIPTION": "sub-1"})
        assert values["project"] == "proj-1"
        assert values["subscription_id"] == "sub-1"

    @pytest.mark.parametrize("value,mode", [("true", Mode.DRY_RUN), ("false", Mode.APPLY_WITH_CONFIRM)])
    def test_dry_run_variable(self, value, mode):
        """Test DRY_RUN mapping to a mode."""
        assert load_config(env={"DRY_RUN": value}).mode is mode

    def test_mode_variable_wins_over_dry_run(self):
        """Test that CLOUDSWEEP_MODE takes precedence over DRY_RUN."""
        config = load_config(env={"DRY_RUN": "true", "CLOUDSWEEP_MODE": "reportOnly"})
        assert config.mode is Mode.REPORT_ONLY

    def test_invalid_dry_run(self):
        """Test that a garbled DRY_RUN is a config error."""
        with pytest.raises(ConfigError):
            load_config(env={"DRY_RUN": "maybe"})

    def test_invalid_mode(self):
        """Test that an unknown mode is a config error."""
        with pytest.raises(ConfigError, match="mode"):
            load_config(env={}, overrides={"mode": "yolo"})

    def test_config_file(self, tmp_path):
        """Test camelCase keys in a JSON file."""
        path = tmp_path / "audit.json"
        path.write_text(
            json.dumps(
                {
                    "provider": "gcp",
                    "project": "my-project",
                    "minSeverity": "medium",
                    "actionKinds": ["volume"],
                    "snapshotRetentionDays": 60,
                }
            )
        )
        config = load_config(config_file=str(path), env={})
        assert config.provider is Provider.GCP
        assert config.min_severity is Severity.MEDIUM
        assert config.action_kinds == (ResourceKind.VOLUME,)
        assert config.snapshot_retention_days == 60

    def test_unknown_key_in_file(self, tmp_path):
        """Test that unknown file keys are rejected."""
        path = tmp_path / "audit.json"
        path.write_text(json.dumps({"colour": "blue"}))
        with pytest.raises(ConfigError, match="colour"):
            load_config(config_file=str(path), env={})

    def test_missing_file(self, tmp_path):
        """Test that a missing config file is a config error."""
        with pytest.raises(ConfigError, match="not found"):
            load_config(config_file=str(tmp_path / "missing.json"), env={})
