import argparse
import asyncio
import contextlib
import functools
import logging
import signal

import uvicorn
from kubernetes import client

from redirect_operator.api.ops_app import create_ops_app
from redirect_operator.api.redirect_app import create_redirect_app
from redirect_operator.config import AppConfig
from redirect_operator.internal.kube.client import KubeApi, RedirectWatchSource, load_kube_config
from redirect_operator.internal.leader.election import LeaseBackend, LeaseHandle
from redirect_operator.internal.leader.etcd_lease import EtcdLeaseBackend
from redirect_operator.internal.leader.kube_lease import KubernetesLeaseBackend
from redirect_operator.internal.reconciler.controller import Context, reconcile
from redirect_operator.internal.reconciler.driver import Controller
from redirect_operator.internal.store.reflector import Reflector
from redirect_operator.metrics import Metrics

logger = logging.getLogger(__name__)


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to the operator, so two can share a loop."""

    def install_signal_handlers(self):
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_lease_backend(app_config: AppConfig, api_client: client.ApiClient) -> LeaseBackend:
    backend = app_config.get_lease_backend()
    if backend == 'etcd':
        return EtcdLeaseBackend(app_config.get_etcd_endpoints(), app_config.get_lease_name(),
                                timeout=app_config.get_api_timeout_seconds())
    if backend != 'kubernetes':
        raise ValueError(f"Unknown lease backend {backend!r}, expected 'kubernetes' or 'etcd'")
    return KubernetesLeaseBackend(
        client.CoordinationV1Api(api_client),
        app_config.get_lease_name(),
        app_config.get_lease_namespace(),
        request_timeout=app_config.get_api_timeout_seconds(),
    )


def build_server(app, app_config: AppConfig, port: int) -> _Server:
    # log_config=None keeps uvicorn on the root logging setup from AppConfig
    return _Server(uvicorn.Config(app, host=app_config.get_listen_host(), port=port, log_config=None))


async def run_operator(app_config: AppConfig):
    load_kube_config()
    api_client = client.ApiClient()
    metrics = Metrics()

    source = RedirectWatchSource(client.CustomObjectsApi(api_client), app_config.get_watch_namespace())
    reflector = Reflector(source)

    leader = LeaseHandle(
        build_lease_backend(app_config, api_client),
        app_config.get_identity(),
        lease_duration=app_config.get_lease_duration_seconds(),
        renew_interval=app_config.get_lease_renew_interval_seconds(),
        retry_interval=app_config.get_lease_retry_interval_seconds(),
        max_renew_failures=app_config.get_max_renew_failures(),
    )

    ctx = Context(
        api=KubeApi(api_client, timeout=app_config.get_api_timeout_seconds()),
        self_namespace=app_config.get_self_namespace(),
        self_service_name=app_config.get_self_service_name(),
        requeue_seconds=app_config.get_requeue_seconds(),
    )
    controller = Controller(
        reflector.store,
        functools.partial(reconcile, ctx=ctx),
        leader,
        metrics,
        concurrency=app_config.get_reconcile_concurrency(),
        error_requeue_seconds=app_config.get_error_requeue_seconds(),
    )
    reflector.subscribe(controller.notify)
    leader.on_started_leading(controller.notify_all)

    redirect_server = build_server(create_redirect_app(reflector.store, metrics), app_config,
                                   app_config.get_redirect_port())
    ops_server = build_server(create_ops_app(metrics, reflector.ready.is_set), app_config,
                              app_config.get_ops_port())

    stop_event = asyncio.Event()

    def shutdown(signum):
        logger.info(f"Shutdown signal received ({signal.Signals(signum).name}). Stopping redirect operator...")
        stop_event.set()
        redirect_server.should_exit = True
        ops_server.should_exit = True

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, shutdown, signum)

    logger.info(f"Starting redirect operator as {leader.identity} "
                f"(namespace: {app_config.get_watch_namespace() or 'all'}, lease backend: {app_config.get_lease_backend()})")
    controller_task = asyncio.create_task(controller.run(stop_event))
    reflector.start()
    leader.start()
    try:
        await asyncio.gather(redirect_server.serve(), ops_server.serve(), controller_task)
    finally:
        stop_event.set()
        redirect_server.should_exit = True
        ops_server.should_exit = True
        await asyncio.to_thread(reflector.stop)
        await asyncio.to_thread(leader.shutdown)
        logger.info("Redirect operator stopped.")


def main(argv=None):
    parser = argparse.ArgumentParser(description='Kubernetes operator serving Redirect resources.')
    parser.add_argument('--config', help='Path to the YAML configuration file.')
    args = parser.parse_args(argv)

    app_config = AppConfig(config_path=args.config)
    try:
        asyncio.run(run_operator(app_config))
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting.")


if __name__ == '__main__':
    main()
