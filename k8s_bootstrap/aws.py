#!/usr/bin/env python3
"""
@format
boto3 adapters for the external collaborators.

    ParameterStore  — SSM Parameter Store (bootstrap parameters)
    DynamoTable     — DynamoDB table with conditional writes (locks, members)
    ObjectStore     — S3 bucket holding etcd snapshots
    FleetManager    — Auto Scaling, EC2 and ELBv2 (instance health, lifecycle, targets)
    CommandChannel  — SSM Run Command against a specific instance

The rest of the package talks to AWS only through these classes, which
keeps the coordination logic testable with in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from k8s_bootstrap.common import log_info, log_warn
from k8s_bootstrap.retry import RetriableError, poll_until


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


# =============================================================================
# SSM Parameter Store
# =============================================================================

class ParameterStore:
    """SSM parameters addressed relative to the cluster prefix."""

    def __init__(self, client, prefix: str):
        self._ssm = client
        self.prefix = prefix.rstrip("/")

    def name(self, key: str) -> str:
        return key if key.startswith("/") else f"{self.prefix}/{key}"

    def get(self, key: str, *, decrypt: bool = False) -> Optional[str]:
        """Return the parameter value, or None if it does not exist."""
        try:
            response = self._ssm.get_parameter(Name=self.name(key), WithDecryption=decrypt)
        except ClientError as exc:
            if _error_code(exc) == "ParameterNotFound":
                return None
            raise
        return response["Parameter"]["Value"]

    def put(self, key: str, value: str, *, secure: bool = False) -> None:
        self._ssm.put_parameter(
            Name=self.name(key),
            Value=value,
            Type="SecureString" if secure else "String",
            Overwrite=True,
        )

    def delete(self, key: str) -> None:
        try:
            self._ssm.delete_parameter(Name=self.name(key))
        except ClientError as exc:
            if _error_code(exc) != "ParameterNotFound":
                raise


# =============================================================================
# DynamoDB
# =============================================================================

class DynamoTable:
    """Thin wrapper over a boto3 DynamoDB Table resource."""

    def __init__(self, table):
        self._table = table

    @property
    def name(self) -> str:
        return self._table.name

    def put_if_absent(self, item: dict, key_attribute: str) -> bool:
        """
        Insert ``item`` only if no row with the same key exists.

        Returns:
            True if the row was written, False if one already existed.
        """
        try:
            self._table.put_item(
                Item=item,
                ConditionExpression=Attr(key_attribute).not_exists(),
            )
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                return False
            raise
        return True

    def put(self, item: dict) -> None:
        self._table.put_item(Item=item)

    def get(self, key: dict) -> Optional[dict]:
        response = self._table.get_item(Key=key, ConsistentRead=True)
        return response.get("Item")

    def delete(self, key: dict) -> None:
        self._table.delete_item(Key=key)

    def delete_if_matches(self, key: dict, expected: dict) -> bool:
        """
        Delete the row only if every attribute in ``expected`` still matches.

        Returns:
            True if deleted, False if the row changed or vanished.
        """
        condition = None
        for attribute, value in expected.items():
            clause = Attr(attribute).eq(value)
            condition = clause if condition is None else condition & clause
        try:
            if condition is None:
                self._table.delete_item(Key=key)
            else:
                self._table.delete_item(Key=key, ConditionExpression=condition)
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                return False
            raise
        return True

    def update(self, key: dict, values: dict) -> None:
        """SET each attribute in ``values`` on the row identified by ``key``."""
        names = {f"#a{i}": attr for i, attr in enumerate(values)}
        placeholders = {f":v{i}": value for i, value in enumerate(values.values())}
        expression = "SET " + ", ".join(f"#a{i} = :v{i}" for i in range(len(values)))
        self._table.update_item(
            Key=key,
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=placeholders,
        )

    def query_index(self, index_name: str, attribute: str, value: str) -> list[dict]:
        return self._query_all(IndexName=index_name,
                               KeyConditionExpression=Key(attribute).eq(value))

    def query_partition(self, attribute: str, value: str) -> list[dict]:
        return self._query_all(KeyConditionExpression=Key(attribute).eq(value))

    def _query_all(self, **kwargs) -> list[dict]:
        items: list[dict] = []
        while True:
            response = self._table.query(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key


# =============================================================================
# S3
# =============================================================================

class ObjectStore:
    """S3 bucket access for etcd snapshots."""

    def __init__(self, client, bucket: str):
        self._s3 = client
        self.bucket = bucket

    def download(self, key: str, path: str) -> None:
        log_info(f"Downloading s3://{self.bucket}/{key} to {path}")
        self._s3.download_file(self.bucket, key, path)

    def upload(self, path: str, key: str, metadata: Optional[dict] = None) -> None:
        log_info(f"Uploading {path} to s3://{self.bucket}/{key}")
        extra = {"Metadata": metadata} if metadata else None
        self._s3.upload_file(path, self.bucket, key, ExtraArgs=extra)

    def latest(self, prefix: str) -> Optional[str]:
        """Return the most recently modified key under ``prefix``, or None."""
        paginator = self._s3.get_paginator("list_objects_v2")
        newest = None
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                if newest is None or obj["LastModified"] > newest["LastModified"]:
                    newest = obj
        return newest["Key"] if newest else None


# =============================================================================
# Auto Scaling / EC2 / ELBv2
# =============================================================================

class FleetManager:
    """Instance health, lifecycle hooks and load balancer targets."""

    def __init__(self, autoscaling, ec2, elbv2, asg_name: str,
                 target_group_name: str = ""):
        self._autoscaling = autoscaling
        self._ec2 = ec2
        self._elbv2 = elbv2
        self.asg_name = asg_name
        self.target_group_name = target_group_name
        self._target_group_arn: Optional[str] = None

    def healthy_instances(self) -> list[str]:
        """Instance ids that are InService in the group and running in EC2."""
        response = self._autoscaling.describe_auto_scaling_groups(
            AutoScalingGroupNames=[self.asg_name]
        )
        in_service = [
            instance["InstanceId"]
            for group in response.get("AutoScalingGroups", [])
            for instance in group.get("Instances", [])
            if instance.get("LifecycleState") == "InService"
        ]
        if not in_service:
            return []

        described = self._ec2.describe_instances(
            InstanceIds=in_service,
            Filters=[{"Name": "instance-state-name", "Values": ["running"]}],
        )
        return [
            instance["InstanceId"]
            for reservation in described.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]

    def describe_instance(self, instance_id: str) -> Optional[dict]:
        try:
            response = self._ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as exc:
            if _error_code(exc) == "InvalidInstanceID.NotFound":
                return None
            raise
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        return None

    def complete_lifecycle_action(self, *, hook_name: str, asg_name: str,
                                  instance_id: str, token: Optional[str],
                                  result: str) -> None:
        """
        Complete a lifecycle action with CONTINUE or ABANDON.

        The action token can go stale if the hook was heartbeated elsewhere;
        on failure the call is repeated once addressed by instance id only.
        """
        params = {
            "LifecycleHookName": hook_name,
            "AutoScalingGroupName": asg_name,
            "InstanceId": instance_id,
            "LifecycleActionResult": result,
        }
        try:
            if token:
                self._autoscaling.complete_lifecycle_action(
                    LifecycleActionToken=token, **params
                )
            else:
                self._autoscaling.complete_lifecycle_action(**params)
        except ClientError as exc:
            if not token:
                raise
            log_warn(
                "Lifecycle completion with token failed, retrying without token",
                instance_id=instance_id,
                error=str(exc),
            )
            self._autoscaling.complete_lifecycle_action(**params)
        log_info(f"✓ Lifecycle action completed: {result}", instance_id=instance_id)

    def record_lifecycle_heartbeat(self, *, hook_name: str, asg_name: str,
                                   instance_id: str, token: Optional[str]) -> bool:
        """Extend the hook's heartbeat timeout. Returns False if the call failed."""
        params = {
            "LifecycleHookName": hook_name,
            "AutoScalingGroupName": asg_name,
            "InstanceId": instance_id,
        }
        if token:
            params["LifecycleActionToken"] = token
        try:
            self._autoscaling.record_lifecycle_action_heartbeat(**params)
        except ClientError as exc:
            log_warn("⚠ Lifecycle heartbeat failed", instance_id=instance_id,
                     error=str(exc))
            return False
        return True

    def target_group_arn(self) -> str:
        if self._target_group_arn is None:
            response = self._elbv2.describe_target_groups(Names=[self.target_group_name])
            self._target_group_arn = response["TargetGroups"][0]["TargetGroupArn"]
        return self._target_group_arn

    def register_target(self, instance_id: str, port: int) -> None:
        self._elbv2.register_targets(
            TargetGroupArn=self.target_group_arn(),
            Targets=[{"Id": instance_id, "Port": port}],
        )

    def deregister_target(self, instance_id: str, port: int) -> None:
        self._elbv2.deregister_targets(
            TargetGroupArn=self.target_group_arn(),
            Targets=[{"Id": instance_id, "Port": port}],
        )


# =============================================================================
# SSM Run Command
# =============================================================================

class CommandError(RetriableError):
    """A remote command failed, timed out or could not be delivered."""

    def __init__(self, message: str, *, status: str = "", stdout: str = "",
                 stderr: str = "", retriable: Optional[bool] = None):
        super().__init__(message, retriable=retriable)
        self.status = status
        self.stdout = stdout
        self.stderr = stderr


@dataclass
class CommandResult:
    status: str
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.status == "Success"


_TERMINAL_STATUSES = frozenset({"Success", "Failed", "Cancelled", "TimedOut", "Undeliverable", "Terminated"})


class CommandChannel:
    """Run shell commands on instances through SSM Run Command."""

    def __init__(self, client, *, poll_interval: float = 5,
                 sleep: Optional[Callable[[float], None]] = None):
        self._ssm = client
        self.poll_interval = poll_interval
        self._sleep = sleep

    def run(self, instance_id: str, command: str, timeout: int = 60,
            description: str = "") -> CommandResult:
        """
        Run ``command`` on ``instance_id`` and wait for it to finish.

        Raises:
            CommandError: On a non-Success terminal status or when the
                command does not finish within ``timeout`` seconds.
        """
        label = description or command.split()[0]
        response = self._ssm.send_command(
            InstanceIds=[instance_id],
            DocumentName="AWS-RunShellScript",
            Parameters={"commands": [command], "executionTimeout": [str(timeout)]},
            TimeoutSeconds=max(timeout, 30),
        )
        command_id = response["Command"]["CommandId"]
        log_info(f"Sent remote command: {label}", instance_id=instance_id,
                 command_id=command_id)

        def check() -> Optional[dict]:
            try:
                invocation = self._ssm.get_command_invocation(
                    CommandId=command_id, InstanceId=instance_id
                )
            except ClientError as exc:
                if _error_code(exc) == "InvocationDoesNotExist":
                    return None
                raise
            return invocation if invocation.get("Status") in _TERMINAL_STATUSES else None

        invocation = poll_until(
            check,
            timeout=timeout,
            interval=self.poll_interval,
            description=f"remote command {label} on {instance_id}",
            sleep=self._sleep,
        )
        if invocation is None:
            raise CommandError(f"{label} on {instance_id} timed out after {timeout}s",
                               status="TimedOut")

        result = CommandResult(
            status=invocation["Status"],
            stdout=invocation.get("StandardOutputContent", ""),
            stderr=invocation.get("StandardErrorContent", ""),
        )
        if not result.ok:
            raise CommandError(
                f"{label} on {instance_id} finished with status {result.status}",
                status=result.status,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result


# =============================================================================
# Service Bundle
# =============================================================================

@dataclass
class Services:
    """Every external collaborator a lifecycle component may need."""
    params: ParameterStore
    locks: DynamoTable
    members: DynamoTable
    objects: ObjectStore
    fleet: FleetManager
    commands: CommandChannel

    @classmethod
    def from_config(cls, cfg) -> "Services":
        session = boto3.session.Session(region_name=cfg.aws_region)
        dynamodb = session.resource("dynamodb")
        ssm = session.client("ssm")
        return cls(
            params=ParameterStore(ssm, cfg.ssm_prefix),
            locks=DynamoTable(dynamodb.Table(cfg.lock_table)),
            members=DynamoTable(dynamodb.Table(cfg.members_table)),
            objects=ObjectStore(session.client("s3"), cfg.backup_bucket),
            fleet=FleetManager(
                session.client("autoscaling"),
                session.client("ec2"),
                session.client("elbv2"),
                cfg.control_plane_asg,
                cfg.target_group_name,
            ),
            commands=CommandChannel(ssm),
        )
