from __future__ import annotations

"""
boto3 adapter for the local cloud emulator (LocalStack-compatible endpoint).

Env:
- DEVENV_EMULATOR_URL (e.g. http://localhost:4566)  required
- AWS_REGION, AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY

Public:
- class Boto3Emulator: exists(desc) -> bool / create(desc) -> None
- async def wait_for_emulator(url, services, policy) -> None
"""

import json
from typing import Any, Dict, Iterable, List, Optional, Protocol

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import ClientError

from devenv.core.config import require, settings
from devenv.core.errors import DevenvError
from devenv.core.logging import get_logger
from devenv.kernel.retry import AttemptsExhausted, RetryPolicy, poll_until
from devenv.provisioning.resources import (
    KeyValueTable,
    LogGroup,
    ObjectStore,
    Parameter,
    Queue,
    Secret,
    Topic,
)

log = get_logger(__name__)

# resource kind -> emulator service family (health endpoint keys)
SERVICE_FOR_KIND: Dict[str, str] = {
    "object_store": "s3",
    "kv_table": "dynamodb",
    "queue": "sqs",
    "secret": "secretsmanager",
    "parameter": "ssm",
    "topic": "sns",
    "log_group": "logs",
}

_READY_STATES = ("available", "running")

_NOT_FOUND = {
    "404",
    "NoSuchBucket",
    "NotFound",
    "ResourceNotFoundException",
    "AWS.SimpleQueueService.NonExistentQueue",
    "QueueDoesNotExist",
    "ParameterNotFound",
}

_ALREADY_EXISTS = {
    "BucketAlreadyOwnedByYou",
    "ResourceInUseException",
    "ResourceExistsException",
    "ParameterAlreadyExists",
    "ResourceAlreadyExistsException",
    "QueueAlreadyExists",
}


class EmulatorBackend(Protocol):
    def exists(self, desc: Any) -> bool: ...
    def create(self, desc: Any) -> None: ...


class EmulatorUnavailable(DevenvError):
    title = "Cloud emulator unavailable"
    default_code = "E_EMULATOR"


def _code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


async def wait_for_emulator(url: str, services: Iterable[str], policy: RetryPolicy) -> None:
    """Poll <url>/_localstack/health until every wanted service is available/running."""
    wanted = sorted(set(services))
    health_url = url.rstrip("/") + "/_localstack/health"

    async def _ready() -> bool:
        async with httpx.AsyncClient(timeout=policy.timeout) as x:
            r = await x.get(health_url)
        r.raise_for_status()
        states = (r.json() or {}).get("services", {})
        missing = [s for s in wanted if states.get(s) not in _READY_STATES]
        if missing:
            log.debug("emulator services not ready: %s", ", ".join(missing))
        return not missing

    try:
        n = await poll_until(_ready, policy, label="emulator")
    except AttemptsExhausted as e:
        raise EmulatorUnavailable(
            f"{health_url} did not report {', '.join(wanted) or 'ready'} within {e.attempts} attempt(s)",
            meta={"url": health_url, "services": wanted},
        ) from e
    log.info("emulator ready after %d attempt(s): %s", n, ", ".join(wanted))


class Boto3Emulator:
    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        session: Optional[boto3.session.Session] = None,
    ) -> None:
        self.endpoint_url = endpoint_url or require("DEVENV_EMULATOR_URL")
        self.region = region or settings.AWS_REGION
        self._session = session or boto3.session.Session(
            aws_access_key_id=access_key or settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=secret_key or settings.AWS_SECRET_ACCESS_KEY,
            region_name=self.region,
        )
        self._clients: Dict[str, Any] = {}

    def client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self._session.client(
                service,
                endpoint_url=self.endpoint_url,
                config=Config(retries={"max_attempts": 2, "mode": "standard"}, connect_timeout=5, read_timeout=15),
            )
        return self._clients[service]

    # ---------- dispatch ----------

    def exists(self, desc: Any) -> bool:
        try:
            return getattr(self, f"_exists_{desc.kind}")(desc)
        except ClientError as e:
            if _code(e) in _NOT_FOUND:
                return False
            raise

    def create(self, desc: Any) -> None:
        try:
            getattr(self, f"_create_{desc.kind}")(desc)
        except ClientError as e:
            if _code(e) in _ALREADY_EXISTS:
                log.info("%s %s already exists (created concurrently)", desc.kind, desc.name)
                return
            raise
        log.info("created %s %s", desc.kind, desc.name)

    # ---------- object stores ----------

    def _exists_object_store(self, d: ObjectStore) -> bool:
        self.client("s3").head_bucket(Bucket=d.name)
        return True

    def _create_object_store(self, d: ObjectStore) -> None:
        kw: Dict[str, Any] = {"Bucket": d.name}
        if self.region != "us-east-1":
            kw["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        self.client("s3").create_bucket(**kw)

    # ---------- key-value tables ----------

    def _exists_kv_table(self, d: KeyValueTable) -> bool:
        self.client("dynamodb").describe_table(TableName=d.name)
        return True

    def _create_kv_table(self, d: KeyValueTable) -> None:
        attrs: Dict[str, str] = {}

        def key_schema(hash_key, range_key) -> List[Dict[str, str]]:
            schema = [{"AttributeName": hash_key.name, "KeyType": "HASH"}]
            attrs[hash_key.name] = hash_key.type
            if range_key is not None:
                schema.append({"AttributeName": range_key.name, "KeyType": "RANGE"})
                attrs[range_key.name] = range_key.type
            return schema

        kw: Dict[str, Any] = {
            "TableName": d.name,
            "KeySchema": key_schema(d.hash_key, d.range_key),
            "BillingMode": "PAY_PER_REQUEST",
        }
        if d.indexes:
            kw["GlobalSecondaryIndexes"] = [
                {
                    "IndexName": ix.name,
                    "KeySchema": key_schema(ix.hash_key, ix.range_key),
                    "Projection": {"ProjectionType": ix.projection},
                }
                for ix in d.indexes
            ]
        kw["AttributeDefinitions"] = [
            {"AttributeName": n, "AttributeType": t} for n, t in attrs.items()
        ]
        self.client("dynamodb").create_table(**kw)

    # ---------- queues ----------

    def _exists_queue(self, d: Queue) -> bool:
        self.client("sqs").get_queue_url(QueueName=d.name)
        return True

    def _queue_arn(self, name: str) -> str:
        sqs = self.client("sqs")
        url = sqs.get_queue_url(QueueName=name)["QueueUrl"]
        attrs = sqs.get_queue_attributes(QueueUrl=url, AttributeNames=["QueueArn"])
        return attrs["Attributes"]["QueueArn"]

    def _create_queue(self, d: Queue) -> None:
        attributes = dict(d.attributes)
        if d.redrive is not None:
            attributes["RedrivePolicy"] = json.dumps(
                {
                    "deadLetterTargetArn": self._queue_arn(d.redrive.target),
                    "maxReceiveCount": str(d.redrive.max_receive_count),
                }
            )
        kw: Dict[str, Any] = {"QueueName": d.name}
        if attributes:
            kw["Attributes"] = attributes
        self.client("sqs").create_queue(**kw)

    # ---------- secrets / parameters ----------

    def _exists_secret(self, d: Secret) -> bool:
        self.client("secretsmanager").describe_secret(SecretId=d.name)
        return True

    def _create_secret(self, d: Secret) -> None:
        payload = d.payload if isinstance(d.payload, str) else json.dumps(d.payload, separators=(",", ":"))
        self.client("secretsmanager").create_secret(Name=d.name, SecretString=payload)

    def _exists_parameter(self, d: Parameter) -> bool:
        self.client("ssm").get_parameter(Name=d.name)
        return True

    def _create_parameter(self, d: Parameter) -> None:
        self.client("ssm").put_parameter(Name=d.name, Value=d.value, Type=d.type, Overwrite=False)

    # ---------- topics / log groups ----------

    def _exists_topic(self, d: Topic) -> bool:
        suffix = f":{d.name}"
        for page in self.client("sns").get_paginator("list_topics").paginate():
            if any(t["TopicArn"].endswith(suffix) for t in page.get("Topics", [])):
                return True
        return False

    def _create_topic(self, d: Topic) -> None:
        self.client("sns").create_topic(Name=d.name)

    def _exists_log_group(self, d: LogGroup) -> bool:
        res = self.client("logs").describe_log_groups(logGroupNamePrefix=d.name)
        return any(g.get("logGroupName") == d.name for g in res.get("logGroups", []))

    def _create_log_group(self, d: LogGroup) -> None:
        self.client("logs").create_log_group(logGroupName=d.name)
