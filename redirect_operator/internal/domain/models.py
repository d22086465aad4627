from typing import Any, Dict, FrozenSet, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

GROUP = "kube.ibotty.net"
VERSION = "v1alpha1"
PLURAL = "redirects"
KIND = "Redirect"


class ObjectKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore")


class ObjectMeta(_CamelModel):
    name: Optional[str] = None
    namespace: Optional[str] = None
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    generation: Optional[int] = None
    deletion_timestamp: Optional[str] = None
    finalizers: List[str] = Field(default_factory=list)


class RedirectTo(_CamelModel):
    uri: str
    include_request_uri: bool = True


class RedirectIngressTLS(_CamelModel):
    enabled: bool = True
    secret_name: Optional[str] = None


class RedirectIngress(_CamelModel):
    enabled: bool = True
    # An absent tls block means no TLS; a present block is enabled unless it says otherwise
    tls: RedirectIngressTLS = Field(default_factory=lambda: RedirectIngressTLS(enabled=False))
    ingress_class_name: Optional[str] = None
    annotations: Optional[Dict[str, str]] = None
    labels: Optional[Dict[str, str]] = None


class RedirectSpec(_CamelModel):
    hosts: FrozenSet[str] = frozenset()
    to: RedirectTo
    ingress: RedirectIngress = Field(default_factory=RedirectIngress)


class RedirectStatusIngress(_CamelModel):
    name: str = ""
    namespace: str = ""


class RedirectStatus(_CamelModel):
    ingress: RedirectStatusIngress = Field(default_factory=RedirectStatusIngress)


class Redirect(_CamelModel):
    """A user-declared redirect: a set of hosts and where to send them."""

    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: RedirectSpec
    status: Optional[RedirectStatus] = None

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Redirect":
        return cls.model_validate(obj)

    @property
    def name(self) -> Optional[str]:
        return self.metadata.name

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.namespace

    def key(self) -> ObjectKey:
        return ObjectKey(self.metadata.namespace or "", self.metadata.name or "")

    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def claims_host(self, host: str) -> bool:
        return host in self.spec.hosts
