import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Union

from kubernetes.client import ApiException

from redirect_operator.internal.domain.models import Redirect
from redirect_operator.internal.reconciler.action import Action
from redirect_operator.internal.reconciler.errors import (
    AddFinalizerFailed,
    ApplyFailed,
    CleanupFailed,
    InvalidFinalizer,
    ReconcileError,
    RemoveFinalizerFailed,
    UnnamedObject,
)

logger = logging.getLogger(__name__)

FINALIZER = "redirect.kube.ibotty.net/cleanup"

# <dns subdomain>/<name>, as accepted by the API server for finalizers
_QUALIFIED_NAME = re.compile(
    r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*'
    r'/[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$'
)


@dataclass(frozen=True)
class Apply:
    redirect: Redirect


@dataclass(frozen=True)
class Cleanup:
    redirect: Redirect


FinalizerEvent = Union[Apply, Cleanup]


def finalizer_event(redirect: Redirect) -> FinalizerEvent:
    """Objects marked for deletion are cleaned up; everything else is applied."""
    if redirect.is_deleting():
        return Cleanup(redirect)
    return Apply(redirect)


def add_finalizer_patch(finalizers: List[str], finalizer_name: str) -> List[Dict[str, Any]]:
    # The test op makes the patch fail if someone else changed the list meanwhile;
    # the API server does not deduplicate finalizers.
    if not finalizers:
        return [
            {"op": "test", "path": "/metadata/finalizers", "value": None},
            {"op": "add", "path": "/metadata/finalizers", "value": [finalizer_name]},
        ]
    return [
        {"op": "test", "path": "/metadata/finalizers", "value": list(finalizers)},
        {"op": "add", "path": "/metadata/finalizers/-", "value": finalizer_name},
    ]


def remove_finalizer_patch(finalizers: List[str], finalizer_name: str) -> List[Dict[str, Any]]:
    index = finalizers.index(finalizer_name)
    path = f"/metadata/finalizers/{index}"
    return [
        {"op": "test", "path": path, "value": finalizer_name},
        {"op": "remove", "path": path},
    ]


async def finalizer(api, finalizer_name: str, redirect: Redirect,
                    reconcile: Callable[[FinalizerEvent], Awaitable[Action]]) -> Action:
    """
    Runs apply or cleanup for a Redirect, keeping our finalizer in place while
    we own external state for it.

    Args:
        api: KubeApi used for the finalizer patches.
        finalizer_name: Qualified finalizer name.
        redirect: Current state of the object.
        reconcile: Coroutine function handling an Apply or Cleanup event.

    Returns:
        Action: The action returned by `reconcile`, or await-change when a
        deleting object no longer carries our finalizer.

    Raises:
        FinalizerError: Subclass describing which step failed.
    """
    if not _QUALIFIED_NAME.match(finalizer_name):
        raise InvalidFinalizer(finalizer_name)
    if not redirect.name or not redirect.namespace:
        raise UnnamedObject()

    event = finalizer_event(redirect)
    finalizers = redirect.metadata.finalizers

    if isinstance(event, Apply):
        if not redirect.has_finalizer(finalizer_name):
            try:
                await api.patch_redirect(redirect.namespace, redirect.name,
                                         add_finalizer_patch(finalizers, finalizer_name))
                logger.debug(f"Added finalizer {finalizer_name} to {redirect.key()}")
            except ApiException as e:
                raise AddFinalizerFailed(e) from e
        try:
            return await reconcile(event)
        except ReconcileError as e:
            raise ApplyFailed(e) from e

    if not redirect.has_finalizer(finalizer_name):
        # Being deleted and nothing left for us to do
        return Action.await_change()

    try:
        action = await reconcile(event)
    except ReconcileError as e:
        raise CleanupFailed(e) from e

    try:
        await api.patch_redirect(redirect.namespace, redirect.name,
                                 remove_finalizer_patch(finalizers, finalizer_name))
        logger.debug(f"Removed finalizer {finalizer_name} from {redirect.key()}")
    except ApiException as e:
        raise RemoveFinalizerFailed(e) from e
    return action
