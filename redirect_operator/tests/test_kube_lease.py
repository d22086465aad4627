from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from kubernetes import client

from redirect_operator.internal.leader.kube_lease import KubernetesLeaseBackend
from redirect_operator.tests.factories import api_error


def make_lease(holder, renewed_seconds_ago, duration=15, transitions=0):
    renew_time = datetime.now(timezone.utc) - timedelta(seconds=renewed_seconds_ago)
    return client.V1Lease(
        metadata=client.V1ObjectMeta(name="lock", namespace="ops", resource_version="5"),
        spec=client.V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=duration,
            acquire_time=renew_time,
            renew_time=renew_time,
            lease_transitions=transitions,
        ),
    )


def make_backend(api):
    return KubernetesLeaseBackend(api, "lock", "ops")


def test_creates_missing_lease():
    api = MagicMock()
    api.read_namespaced_lease.side_effect = api_error(404)

    assert make_backend(api).try_acquire("a", 15)

    body = api.create_namespaced_lease.call_args.args[1]
    assert body.spec.holder_identity == "a"
    assert body.spec.lease_duration_seconds == 15


def test_create_race_lost():
    api = MagicMock()
    api.read_namespaced_lease.side_effect = api_error(404)
    api.create_namespaced_lease.side_effect = api_error(409)

    assert not make_backend(api).try_acquire("a", 15)


def test_does_not_take_fresh_lease_from_other_holder():
    api = MagicMock()
    api.read_namespaced_lease.return_value = make_lease("b", renewed_seconds_ago=1)

    assert not make_backend(api).try_acquire("a", 15)
    api.replace_namespaced_lease.assert_not_called()


def test_takes_over_expired_lease():
    api = MagicMock()
    api.read_namespaced_lease.return_value = make_lease("b", renewed_seconds_ago=60, transitions=2)

    assert make_backend(api).try_acquire("a", 15)

    replaced = api.replace_namespaced_lease.call_args.args[2]
    assert replaced.spec.holder_identity == "a"
    assert replaced.spec.lease_transitions == 3
    # Optimistic concurrency: the read resourceVersion goes back with the update
    assert replaced.metadata.resource_version == "5"


def test_conflicting_update_loses():
    api = MagicMock()
    api.read_namespaced_lease.return_value = make_lease("b", renewed_seconds_ago=60)
    api.replace_namespaced_lease.side_effect = api_error(409)

    assert not make_backend(api).try_acquire("a", 15)


def test_renew_only_by_holder():
    api = MagicMock()
    api.read_namespaced_lease.return_value = make_lease("b", renewed_seconds_ago=1)
    backend = make_backend(api)

    assert not backend.renew("a", 15)
    assert backend.renew("b", 15)


def test_release_clears_holder():
    api = MagicMock()
    api.read_namespaced_lease.return_value = make_lease("a", renewed_seconds_ago=1)

    make_backend(api).release("a")

    replaced = api.replace_namespaced_lease.call_args.args[2]
    assert replaced.spec.holder_identity is None
