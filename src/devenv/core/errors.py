from __future__ import annotations
from typing import Optional, Dict, Any, List


class DevenvError(Exception):
    """Base class for every failure the bootstrapper surfaces to the operator."""

    title: str = "Bootstrap operation failed"
    default_code: str = "E_DEVENV"
    exit_code: int = 1

    def __init__(
        self,
        detail: str = "",
        *,
        code: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code or self.default_code
        self.meta = meta

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "title": self.title,
            "detail": self.detail,
            "code": self.code,
        }
        if self.meta is not None:
            data["meta"] = self.meta
        return data

    def __str__(self) -> str:
        return f"{self.title} ({self.code}): {self.detail}"


class ConfigurationError(DevenvError):
    """Malformed or cyclic manifest, missing required environment variable."""

    title = "Configuration error"
    default_code = "E_CONFIG"
    exit_code = 2


class ServiceUnhealthy(DevenvError):
    title = "Service unhealthy"
    default_code = "E_UNHEALTHY"

    def __init__(self, service: str, detail: str = "", **kw: Any) -> None:
        self.service = service
        meta = dict(kw.pop("meta", None) or {})
        meta.setdefault("service", service)
        super().__init__(detail or f"service {service!r} failed its health probe", meta=meta, **kw)


class ResourceFailure:
    """A single resource that could not be provisioned."""

    __slots__ = ("name", "kind", "cause")

    def __init__(self, name: str, kind: str, cause: str) -> None:
        self.name = name
        self.kind = kind
        self.cause = cause

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "kind": self.kind, "cause": self.cause}

    def __repr__(self) -> str:
        return f"ResourceFailure({self.kind}:{self.name}: {self.cause})"


class ResourceProvisioningError(DevenvError):
    title = "Resource provisioning failed"
    default_code = "E_PROVISION"

    def __init__(self, failures: List[ResourceFailure], report: Any = None) -> None:
        self.failures = list(failures)
        self.report = report
        names = ", ".join(f"{f.kind}:{f.name} ({f.cause})" for f in self.failures)
        super().__init__(
            f"{len(self.failures)} resource(s) failed: {names}",
            meta={"failures": [f.to_dict() for f in self.failures]},
        )


class FirewallApplicationError(DevenvError):
    title = "Firewall application failed"
    default_code = "E_FIREWALL"


class ValidationFailure(DevenvError):
    title = "Connection validation failed"
    default_code = "E_VALIDATION"
