from kubernetes.client import ApiException

from redirect_operator.internal.domain.models import Redirect


def redirect_obj(name="example", namespace="default", hosts=("example.com",), uri="https://dest.example",
                 include_request_uri=None, ingress=None, finalizers=None, deleting=False, resource_version="1"):
    """Builds a Redirect the way the API server returns it."""
    to = {"uri": uri}
    if include_request_uri is not None:
        to["includeRequestUri"] = include_request_uri
    spec = {"hosts": list(hosts), "to": to}
    if ingress is not None:
        spec["ingress"] = ingress
    metadata = {"name": name, "namespace": namespace, "resourceVersion": resource_version}
    if finalizers is not None:
        metadata["finalizers"] = list(finalizers)
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    return {"apiVersion": "kube.ibotty.net/v1alpha1", "kind": "Redirect", "metadata": metadata, "spec": spec}


def make_redirect(**kwargs) -> Redirect:
    return Redirect.from_dict(redirect_obj(**kwargs))


class FakeKubeApi:
    """In-memory stand-in for KubeApi. Set `fail[method] = ApiException(...)` to make a call fail."""

    def __init__(self):
        self.ingresses = {}
        self.redirect_patches = []
        self.status_patches = []
        self.applied = []
        self.deleted = []
        self.fail = {}

    def _maybe_fail(self, method):
        error = self.fail.get(method)
        if error is not None:
            raise error

    async def patch_redirect(self, namespace, name, operations):
        self._maybe_fail('patch_redirect')
        self.redirect_patches.append((namespace, name, operations))
        return {}

    async def patch_redirect_status(self, namespace, name, status):
        self._maybe_fail('patch_redirect_status')
        self.status_patches.append((namespace, name, status))
        return {}

    async def apply_ingress(self, namespace, body):
        self._maybe_fail('apply_ingress')
        self.applied.append((namespace, body))
        self.ingresses[(namespace, body.metadata.name)] = body
        return body

    async def read_ingress(self, namespace, name):
        self._maybe_fail('read_ingress')
        return self.ingresses.get((namespace, name))

    async def delete_ingress(self, namespace, name):
        self._maybe_fail('delete_ingress')
        self.deleted.append((namespace, name))
        return self.ingresses.pop((namespace, name), None) is not None


def api_error(status):
    return ApiException(status=status, reason=f"HTTP {status}")
