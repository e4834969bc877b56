"""
Cloud-Sweep: Policy-Driven Cloud Resource Audit & Remediation
=============================================================

Enumerates resources from AWS, GCP or Azure, classifies them against
rules, estimates their monthly cost and optionally remediates them under
a dry-run / confirm discipline.

Modules
-------
core
    Data model, configuration, errors, logging, orchestrator
adapters
    Provider adapters (one per provider and resource kind)
policy
    Built-in rules and the policy engine
cost
    Price tables and the cost estimator
actions
    Action executor
reporters
    Output formatters (table, JSON, summary) and run history

Example
-------
>>> from cloudsweep.core.config import load_config
>>> from cloudsweep.core.orchestrator import AuditOrchestrator
>>>
>>> config = load_config(overrides={"provider": "aws", "regions": ["us-east-1"]})
>>> run = AuditOrchestrator(config).run()
>>> print(f"{len(run.findings)} findings, ${run.total_estimated_monthly_savings}/month")

Notes
-----
Requires provider credentials configured the SDK way:
- AWS: environment variables, ~/.aws/credentials or an IAM role
- GCP: Application Default Credentials
- Azure: DefaultAzureCredential (environment, managed identity, az login)
"""

__version__ = "0.1.0"
__license__ = "MIT"

from cloudsweep.core.config import AuditConfig
from cloudsweep.core.models import AuditRun, Finding, Mode, Provider, Resource

__all__ = [
    "__version__",
    "__license__",
    "AuditConfig",
    "AuditRun",
    "Finding",
    "Mode",
    "Provider",
    "Resource",
]
