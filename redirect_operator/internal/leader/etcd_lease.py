import logging
import math

import etcd3

from redirect_operator.internal.leader.election import LeaseBackend

logger = logging.getLogger(__name__)

KEY_PREFIX = '/redirect-operator/leases/'


def parse_endpoints(etcd_endpoints):
    """
    Parses etcd endpoints into (host, port) tuples.
    Args:
        etcd_endpoints (list): Endpoints such as ['http://localhost:2379'] or ['localhost:2379'].
    Returns:
        list: (host, port) tuples; invalid entries are skipped.
    """
    endpoints = []
    for endpoint in etcd_endpoints:
        try:
            netloc = endpoint.split('//', 1)[1] if '//' in endpoint else endpoint
            host, port = netloc.rsplit(':', 1)
            endpoints.append((host, int(port)))
        except ValueError:
            logger.warning(f"Invalid etcd endpoint format: {endpoint}. Expected 'http://host:port'. Skipping.")
    return endpoints


class EtcdLeaseBackend(LeaseBackend):
    """Lease stored as an etcd key bound to an etcd lease.

    The key only exists while its etcd lease is alive, so a holder that stops
    refreshing loses the key after the TTL without anyone deleting it.
    """

    def __init__(self, etcd_endpoints, lease_name, etcd_client=None, timeout=None):
        self.etcd_endpoints = parse_endpoints(etcd_endpoints)
        if not self.etcd_endpoints:
            logger.error("No valid etcd endpoints provided. Falling back to localhost:2379.")
            self.etcd_endpoints.append(('localhost', 2379))

        self.key = f"{KEY_PREFIX}{lease_name}"
        self.timeout = timeout
        self.etcd = etcd_client
        self._lease = None

    def _connect(self):
        last_error = None
        for host, port in self.etcd_endpoints:
            try:
                etcd = etcd3.client(host=host, port=port, timeout=self.timeout)
                etcd.status()  # Test the connection
                logger.info(f"Successfully connected to etcd at {host}:{port}")
                self.etcd = etcd
                return etcd
            except Exception as e:
                last_error = e
                logger.warning(f"Failed to connect to etcd at {host}:{port}: {e}")
        raise ConnectionError(f"Failed to connect to any etcd endpoint. Last error: {last_error}")

    def _client(self):
        if self.etcd is None:
            return self._connect()
        return self.etcd

    def _holder(self, etcd):
        value, _ = etcd.get(self.key)
        return value.decode('utf-8') if value is not None else None

    def try_acquire(self, holder, lease_duration):
        etcd = self._client()
        try:
            if self._lease is not None and self._holder(etcd) == holder:
                return self.renew(holder, lease_duration)

            lease = etcd.lease(ttl=max(1, math.ceil(lease_duration)))
            succeeded, _ = etcd.transaction(
                compare=[etcd.transactions.version(self.key) == 0],
                success=[etcd.transactions.put(self.key, holder, lease=lease)],
                failure=[],
            )
            if succeeded:
                self._lease = lease
                logger.info(f"Acquired etcd lease key {self.key} with lease ID {lease.id}")
                return True
            lease.revoke()
            return False
        except etcd3.exceptions.ConnectionFailedError:
            self.etcd = None  # Force reconnect
            raise

    def renew(self, holder, lease_duration):
        etcd = self._client()
        try:
            if self._lease is None or self._holder(etcd) != holder:
                return False
            responses = self._lease.refresh()
            return bool(responses) and responses[0].TTL > 0
        except etcd3.exceptions.ConnectionFailedError:
            self.etcd = None
            raise

    def release(self, holder):
        etcd = self._client()
        try:
            etcd.transaction(
                compare=[etcd.transactions.value(self.key) == holder],
                success=[etcd.transactions.delete(self.key)],
                failure=[],
            )
            if self._lease is not None:
                self._lease.revoke()
        finally:
            self._lease = None
