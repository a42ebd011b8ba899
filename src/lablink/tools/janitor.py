"""
Orphaned cloud resource cleanup after a fleet teardown.

Terraform destroy normally removes everything, but an interrupted run can
leave client instances, the client security group and the client key pair
behind. The janitor makes one pass over the resources the client fleet
creates under its exact names and reports what it removed and what it could
not. The allocator's own resources are never touched.
"""

from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field

from ..logging import EventType, get_logger

ACTIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]

# Bounded wait for stray instances to release their security group
TERMINATION_WAIT_DELAY = 5
TERMINATION_WAIT_ATTEMPTS = 24


def client_instance_pattern(suffix: str) -> str:
    return f"lablink-vm-{suffix}-*"


def client_security_group_name(suffix: str) -> str:
    return f"lablink_client_{suffix}_sg"


def client_key_pair_name(suffix: str) -> str:
    return f"lablink_key_pair_client_{suffix}"


class CleanupReport(BaseModel):
    """Resources removed (or, in dry-run mode, that would be removed)."""

    removed: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)
    dry_run: bool = False


class ResourceJanitor:
    """Single-pass EC2 cleanup of one fleet's client resources. Failures are collected, not retried."""

    def __init__(
        self,
        region: str,
        ec2_client: Optional[Any] = None,
        dry_run: bool = False,
        wait_delay: int = TERMINATION_WAIT_DELAY,
        wait_attempts: int = TERMINATION_WAIT_ATTEMPTS,
    ):
        self.region = region
        self.dry_run = dry_run
        self.wait_delay = wait_delay
        self.wait_attempts = wait_attempts
        self._ec2 = ec2_client
        self.logger = get_logger("lablink.janitor")

    @property
    def ec2(self):
        if self._ec2 is None:
            self._ec2 = boto3.client("ec2", region_name=self.region)
        return self._ec2

    def cleanup(self, fleet_suffix: str) -> CleanupReport:
        if not fleet_suffix:
            raise ValueError("fleet_suffix must not be empty")

        report = CleanupReport(dry_run=self.dry_run)
        # Security groups cannot be deleted while a live instance still uses them
        terminated = self._cleanup_instances(fleet_suffix, report)
        self._wait_for_termination(terminated, report)
        self._cleanup_security_group(fleet_suffix, report)
        self._cleanup_key_pair(fleet_suffix, report)

        self.logger.log_event(
            EventType.CLEANUP,
            f"{'Would remove' if self.dry_run else 'Removed'} {len(report.removed)} orphaned "
            f"resources for fleet {fleet_suffix} ({len(report.failures)} failures)",
            fleet=fleet_suffix,
            metadata=report.model_dump(),
        )
        return report

    def _cleanup_instances(self, suffix: str, report: CleanupReport) -> List[str]:
        try:
            response = self.ec2.describe_instances(
                Filters=[
                    {"Name": "tag:Name", "Values": [client_instance_pattern(suffix)]},
                    {"Name": "instance-state-name", "Values": ACTIVE_INSTANCE_STATES},
                ]
            )
        except (BotoCoreError, ClientError) as e:
            report.failures["instances"] = str(e)
            return []

        terminated = []
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                instance_id = instance["InstanceId"]
                if self._remove(
                    f"instance:{instance_id}",
                    report,
                    lambda: self.ec2.terminate_instances(InstanceIds=[instance_id]),
                ):
                    terminated.append(instance_id)
        return terminated

    def _wait_for_termination(self, instance_ids: List[str], report: CleanupReport) -> None:
        if not instance_ids or self.dry_run:
            return
        try:
            self.ec2.get_waiter("instance_terminated").wait(
                InstanceIds=instance_ids,
                WaiterConfig={"Delay": self.wait_delay, "MaxAttempts": self.wait_attempts},
            )
        except (BotoCoreError, ClientError) as e:
            # WaiterError is a BotoCoreError
            self.logger.warning(
                f"Stray instances did not terminate in time: {e}",
                metadata={"instance_ids": instance_ids},
            )
            report.failures["instances:wait"] = str(e)

    def _cleanup_security_group(self, suffix: str, report: CleanupReport) -> None:
        name = client_security_group_name(suffix)
        try:
            response = self.ec2.describe_security_groups(
                Filters=[{"Name": "group-name", "Values": [name]}]
            )
        except (BotoCoreError, ClientError) as e:
            report.failures["security_groups"] = str(e)
            return

        for group in response.get("SecurityGroups", []):
            if group.get("GroupName") != name:
                continue
            group_id = group["GroupId"]
            self._remove(
                f"security_group:{group_id}",
                report,
                lambda: self.ec2.delete_security_group(GroupId=group_id),
            )

    def _cleanup_key_pair(self, suffix: str, report: CleanupReport) -> None:
        name = client_key_pair_name(suffix)
        try:
            response = self.ec2.describe_key_pairs(
                Filters=[{"Name": "key-name", "Values": [name]}]
            )
        except (BotoCoreError, ClientError) as e:
            report.failures["key_pairs"] = str(e)
            return

        for key_pair in response.get("KeyPairs", []):
            if key_pair.get("KeyName") != name:
                continue
            self._remove(
                f"key_pair:{name}",
                report,
                lambda: self.ec2.delete_key_pair(KeyName=name),
            )

    def _remove(self, resource: str, report: CleanupReport, delete) -> bool:
        if self.dry_run:
            report.removed.append(resource)
            return True
        try:
            delete()
        except (BotoCoreError, ClientError) as e:
            self.logger.warning(f"Failed to remove {resource}: {e}", metadata={"resource": resource})
            report.failures[resource] = str(e)
            return False
        report.removed.append(resource)
        return True
