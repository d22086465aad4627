import logging
from dataclasses import dataclass

from kubernetes.client import ApiException

from redirect_operator.internal.domain.models import Redirect, RedirectStatus, RedirectStatusIngress
from redirect_operator.internal.kube.client import KubeApi
from redirect_operator.internal.reconciler.action import Action
from redirect_operator.internal.reconciler.errors import (
    RoutingObjectCreateFailed,
    RoutingObjectDeleteFailed,
    StatusUpdateFailed,
)
from redirect_operator.internal.reconciler.finalizer import FINALIZER, Apply, FinalizerEvent, finalizer
from redirect_operator.internal.reconciler.ingress import ingress_for_redirect, ingress_name_for_redirect

logger = logging.getLogger(__name__)

DEFAULT_REQUEUE_SECONDS = 300.0


@dataclass
class Context:
    """Shared state handed to every reconciliation."""

    api: KubeApi
    self_namespace: str
    self_service_name: str
    requeue_seconds: float = DEFAULT_REQUEUE_SECONDS


async def reconcile(redirect: Redirect, ctx: Context) -> Action:
    async def handle(event: FinalizerEvent) -> Action:
        if isinstance(event, Apply):
            return await apply(event.redirect, ctx)
        return await cleanup(event.redirect, ctx)

    return await finalizer(ctx.api, FINALIZER, redirect, handle)


async def apply(redirect: Redirect, ctx: Context) -> Action:
    """
    Brings the Ingress in line with the Redirect and records it in the status.

    Applying is idempotent: the Ingress is server-side applied with a fixed
    field manager, and the status patch always carries the full status.
    """
    logger.info(f'Reconciling Redirect "{redirect.name}" in {redirect.namespace}')
    ingress_name = ingress_name_for_redirect(redirect)

    if redirect.spec.ingress.enabled:
        ingress = ingress_for_redirect(redirect, ctx.self_namespace, ctx.self_service_name)
        try:
            await ctx.api.apply_ingress(ctx.self_namespace, ingress)
        except ApiException as e:
            raise RoutingObjectCreateFailed(e) from e
        status = RedirectStatus(ingress=RedirectStatusIngress(name=ingress_name, namespace=ctx.self_namespace))
    else:
        await _delete_stale_ingress(ctx, ingress_name)
        status = RedirectStatus()

    try:
        await ctx.api.patch_redirect_status(
            redirect.namespace, redirect.name, status.model_dump(by_alias=True))
    except ApiException as e:
        raise StatusUpdateFailed(e) from e

    return Action.requeue(ctx.requeue_seconds)


async def _delete_stale_ingress(ctx: Context, ingress_name: str):
    try:
        existing = await ctx.api.read_ingress(ctx.self_namespace, ingress_name)
        if existing is None:
            return
        await ctx.api.delete_ingress(ctx.self_namespace, ingress_name)
        logger.info(f"Deleted Ingress {ctx.self_namespace}/{ingress_name}, routing is disabled for its Redirect.")
    except ApiException as e:
        raise RoutingObjectDeleteFailed(e) from e


async def cleanup(redirect: Redirect, ctx: Context) -> Action:
    logger.info(f'Cleaning up Redirect "{redirect.name}" in {redirect.namespace}')
    ingress_name = ingress_name_for_redirect(redirect)
    try:
        # Already gone is fine
        await ctx.api.delete_ingress(ctx.self_namespace, ingress_name)
    except ApiException as e:
        raise RoutingObjectDeleteFailed(e) from e
    return Action.requeue(ctx.requeue_seconds)
