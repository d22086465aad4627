import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from kubernetes import client
from kubernetes.client import ApiException

from redirect_operator.internal.leader.election import LeaseBackend

logger = logging.getLogger(__name__)


class KubernetesLeaseBackend(LeaseBackend):
    """Lease stored in a coordination.k8s.io/v1 Lease object.

    Updates go through replace with the read resourceVersion, so two replicas
    racing for an expired lease cannot both win: the loser gets a 409.
    """

    def __init__(self, coordination_api: client.CoordinationV1Api, name: str, namespace: str,
                 request_timeout: float = 10.0):
        self.api = coordination_api
        self.name = name
        self.namespace = namespace
        self.request_timeout = request_timeout

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _read(self) -> Optional[client.V1Lease]:
        try:
            return self.api.read_namespaced_lease(self.name, self.namespace, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def _replace(self, lease: client.V1Lease) -> bool:
        try:
            self.api.replace_namespaced_lease(self.name, self.namespace, lease, _request_timeout=self.request_timeout)
            return True
        except ApiException as e:
            if e.status == 409:
                logger.debug(f"Lost update race on lease {self.namespace}/{self.name}.")
                return False
            raise

    @staticmethod
    def _expired(spec: client.V1LeaseSpec, now: datetime) -> bool:
        if not spec.holder_identity:
            return True
        last_renewal = spec.renew_time or spec.acquire_time
        if last_renewal is None or not spec.lease_duration_seconds:
            return True
        return now >= last_renewal + timedelta(seconds=spec.lease_duration_seconds)

    def try_acquire(self, holder: str, lease_duration: float) -> bool:
        now = self._now()
        duration_seconds = math.ceil(lease_duration)
        lease = self._read()
        if lease is None:
            body = client.V1Lease(
                metadata=client.V1ObjectMeta(name=self.name, namespace=self.namespace),
                spec=client.V1LeaseSpec(
                    holder_identity=holder,
                    lease_duration_seconds=duration_seconds,
                    acquire_time=now,
                    renew_time=now,
                    lease_transitions=0,
                ),
            )
            try:
                self.api.create_namespaced_lease(self.namespace, body, _request_timeout=self.request_timeout)
                return True
            except ApiException as e:
                if e.status == 409:
                    return False
                raise

        spec = lease.spec or client.V1LeaseSpec()
        if spec.holder_identity != holder:
            if not self._expired(spec, now):
                return False
            logger.info(f"Lease {self.namespace}/{self.name} held by '{spec.holder_identity}' has expired, taking over.")
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
            spec.acquire_time = now
        spec.holder_identity = holder
        spec.renew_time = now
        spec.lease_duration_seconds = duration_seconds
        lease.spec = spec
        return self._replace(lease)

    def renew(self, holder: str, lease_duration: float) -> bool:
        lease = self._read()
        if lease is None or lease.spec is None or lease.spec.holder_identity != holder:
            return False
        lease.spec.renew_time = self._now()
        lease.spec.lease_duration_seconds = math.ceil(lease_duration)
        return self._replace(lease)

    def release(self, holder: str) -> None:
        lease = self._read()
        if lease is None or lease.spec is None or lease.spec.holder_identity != holder:
            return
        lease.spec.holder_identity = None
        lease.spec.lease_duration_seconds = 1
        lease.spec.renew_time = self._now()
        self._replace(lease)
