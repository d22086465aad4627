"""Lease-based leader election

Only the replica holding the lease reconciles. Leases can live in a
coordination.k8s.io Lease or in etcd.
"""

from .election import LeaseBackend, LeaseHandle, acquire

__all__ = ['LeaseBackend', 'LeaseHandle', 'acquire']
