import asyncio
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

import urllib3
from kubernetes import client, config, watch
from kubernetes.client import ApiException

from redirect_operator.internal.domain.models import GROUP, PLURAL, VERSION

logger = logging.getLogger(__name__)

FIELD_MANAGER = "redirect.kube.ibotty.net"

JSON_PATCH = "application/json-patch+json"
MERGE_PATCH = "application/merge-patch+json"
APPLY_PATCH = "application/apply-patch+yaml"


def load_kube_config():
    """Loads in-cluster credentials, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration.")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded Kubernetes configuration from kubeconfig.")


class RedirectWatchSource:
    """List and watch Redirect objects, in one namespace or cluster-wide."""

    def __init__(self, custom_api: client.CustomObjectsApi, namespace: Optional[str] = None):
        self.custom_api = custom_api
        self.namespace = namespace or None
        self._active_watch: Optional[watch.Watch] = None

    def _list_call(self):
        if self.namespace:
            return self.custom_api.list_namespaced_custom_object, (GROUP, VERSION, self.namespace, PLURAL)
        return self.custom_api.list_cluster_custom_object, (GROUP, VERSION, PLURAL)

    def list(self) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        func, args = self._list_call()
        result = func(*args)
        resource_version = (result.get('metadata') or {}).get('resourceVersion')
        return result.get('items') or [], resource_version

    def watch(self, resource_version: Optional[str], timeout_seconds: int) -> Iterator[Dict[str, Any]]:
        func, args = self._list_call()
        w = watch.Watch()
        self._active_watch = w
        try:
            yield from w.stream(
                func,
                *args,
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
                allow_watch_bookmarks=True,
            )
        finally:
            w.stop()
            if self._active_watch is w:
                self._active_watch = None

    def stop(self):
        active = self._active_watch
        if active is not None:
            active.stop()
            # Watch.stop() is only checked between events; closing the response unblocks a pending read
            response = getattr(active, '_resp', None)
            if response is not None:
                response.close()


class KubeApi:
    """Async facade over the blocking Kubernetes client.

    Every call runs on the default thread pool and is bounded twice: by the
    client's own request timeout and by an asyncio deadline, so a hung call
    frees its reconciliation slot. Transport failures and deadlines surface
    as ApiException (status 0) so callers have a single error type to handle.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None, timeout: float = 10.0):
        self.custom = client.CustomObjectsApi(api_client)
        self.networking = client.NetworkingV1Api(api_client)
        self.timeout = timeout

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, _request_timeout=self.timeout, **kwargs),
                timeout=self.timeout + 1,
            )
        except asyncio.TimeoutError as e:
            raise ApiException(status=0, reason=f"{fn.__name__} timed out after {self.timeout}s") from e
        except urllib3.exceptions.HTTPError as e:
            raise ApiException(status=0, reason=f"{fn.__name__} failed: {e}") from e

    async def patch_redirect(self, namespace: str, name: str, operations: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._call(
            self.custom.patch_namespaced_custom_object,
            GROUP, VERSION, namespace, PLURAL, name, operations,
            _content_type=JSON_PATCH,
        )

    async def patch_redirect_status(self, namespace: str, name: str, status: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call(
            self.custom.patch_namespaced_custom_object_status,
            GROUP, VERSION, namespace, PLURAL, name, {"status": status},
            _content_type=MERGE_PATCH,
        )

    async def apply_ingress(self, namespace: str, body: client.V1Ingress):
        """Server-side applies the Ingress as this operator's field manager."""
        return await self._call(
            self.networking.patch_namespaced_ingress,
            body.metadata.name, namespace, body,
            field_manager=FIELD_MANAGER,
            _content_type=APPLY_PATCH,
        )

    async def read_ingress(self, namespace: str, name: str):
        """Returns the Ingress, or None when it does not exist."""
        try:
            return await self._call(self.networking.read_namespaced_ingress, name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def delete_ingress(self, namespace: str, name: str) -> bool:
        """Deletes the Ingress. Returns False if it was already gone."""
        try:
            await self._call(self.networking.delete_namespaced_ingress, name, namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"Ingress {namespace}/{name} already absent.")
                return False
            raise
