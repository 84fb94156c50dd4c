from __future__ import annotations

"""
Resource manifest models.

Every descriptor is identified by (kind, name). Cross-references (a queue's
redrive target) are expressed by name and resolved into dependency levels so
that targets always exist before the resources that point at them.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Tuple, Union

from pydantic import BaseModel, Field, model_validator

from devenv.core.errors import ConfigurationError


class ObjectStore(BaseModel):
    kind: Literal["object_store"] = "object_store"
    name: str = Field(..., min_length=3, max_length=63)


class KeyAttribute(BaseModel):
    name: str
    type: Literal["S", "N", "B"] = "S"


class SecondaryIndex(BaseModel):
    name: str
    hash_key: KeyAttribute
    range_key: Optional[KeyAttribute] = None
    projection: Literal["ALL", "KEYS_ONLY"] = "ALL"


class KeyValueTable(BaseModel):
    kind: Literal["kv_table"] = "kv_table"
    name: str
    hash_key: KeyAttribute
    range_key: Optional[KeyAttribute] = None
    indexes: List[SecondaryIndex] = Field(default_factory=list)


class RedrivePolicy(BaseModel):
    target: str = Field(..., description="Name of the dead-letter queue")
    max_receive_count: int = Field(default=3, ge=1)


class Queue(BaseModel):
    kind: Literal["queue"] = "queue"
    name: str
    redrive: Optional[RedrivePolicy] = None
    attributes: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _no_self_redrive(self) -> "Queue":
        if self.redrive and self.redrive.target == self.name:
            raise ValueError(f"queue {self.name} cannot redrive to itself")
        return self


class Secret(BaseModel):
    kind: Literal["secret"] = "secret"
    name: str
    payload: Union[str, Dict[str, Any]]


class Parameter(BaseModel):
    kind: Literal["parameter"] = "parameter"
    name: str
    value: str
    type: Literal["String", "StringList", "SecureString"] = "String"


class Topic(BaseModel):
    kind: Literal["topic"] = "topic"
    name: str


class LogGroup(BaseModel):
    kind: Literal["log_group"] = "log_group"
    name: str


ResourceDescriptor = Annotated[
    Union[ObjectStore, KeyValueTable, Queue, Secret, Parameter, Topic, LogGroup],
    Field(discriminator="kind"),
]

Key = Tuple[str, str]


def key_of(desc: Any) -> Key:
    return (desc.kind, desc.name)


def label(desc: Any) -> str:
    return f"{desc.kind}:{desc.name}"


def references(desc: Any) -> List[Key]:
    """Resources that must exist before `desc` can be created."""
    if isinstance(desc, Queue) and desc.redrive is not None:
        return [("queue", desc.redrive.target)]
    return []


class ResourceManifest(BaseModel):
    resources: List[ResourceDescriptor] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique(self) -> "ResourceManifest":
        seen: Set[Key] = set()
        for r in self.resources:
            k = key_of(r)
            if k in seen:
                raise ValueError(f"duplicate resource {label(r)}")
            seen.add(k)
        return self


def dependency_levels(resources: List[Any]) -> List[List[Any]]:
    """
    Group resources into levels; everything a resource references lives in an
    earlier level. Manifest order is kept inside a level.
    """
    by_key = {key_of(r): r for r in resources}
    deps: Dict[Key, Set[Key]] = {}
    for r in resources:
        refs = set(references(r))
        missing = [k for k in refs if k not in by_key]
        if missing:
            raise ConfigurationError(
                f"{label(r)} references undeclared resource(s): "
                + ", ".join(f"{k}:{n}" for k, n in missing),
                code="E_RESOURCE_REF",
            )
        deps[key_of(r)] = refs

    levels: List[List[Any]] = []
    done: Set[Key] = set()
    pending = [key_of(r) for r in resources]
    while pending:
        ready = [k for k in pending if deps[k] <= done]
        if not ready:
            raise ConfigurationError(
                "resource reference cycle: " + ", ".join(f"{k}:{n}" for k, n in pending),
                code="E_RESOURCE_CYCLE",
            )
        levels.append([by_key[k] for k in ready])
        done.update(ready)
        pending = [k for k in pending if k not in done]
    return levels
