import argparse

import yaml

from redirect_operator.config import (
    CONFIG_FILE_NAME,
    DEFAULT_LEASE_NAME,
    DEFAULT_OPS_PORT,
    DEFAULT_REDIRECT_PORT,
    DEFAULT_SELF_NAMESPACE,
    DEFAULT_SELF_SERVICE_NAME,
)


def generate_operator_config(lease_backend='kubernetes', watch_namespace=None, etcd_endpoints=None):
    config = {
        'log_level': 'INFO',
        'self_namespace': DEFAULT_SELF_NAMESPACE,
        'self_service_name': DEFAULT_SELF_SERVICE_NAME,
        'http': {
            'host': '0.0.0.0',
            'redirect_port': DEFAULT_REDIRECT_PORT,
            'ops_port': DEFAULT_OPS_PORT,
        },
        'leader_election': {
            'backend': lease_backend,
            'lease_name': DEFAULT_LEASE_NAME,
            'lease_duration_seconds': 15,
            'renew_interval_seconds': 5,
            'retry_interval_seconds': 2,
            'max_renew_failures': 3,
        },
        'controller': {
            'concurrency': 2,
            'requeue_seconds': 300,
            'error_requeue_seconds': 1,
            'api_timeout_seconds': 10,
        },
    }
    if watch_namespace:
        config['watch_namespace'] = watch_namespace
    if lease_backend == 'etcd':
        config['etcd'] = {'endpoints': etcd_endpoints or ['http://localhost:2379']}
    return config


def write_operator_config(config, output=CONFIG_FILE_NAME):
    with open(output, 'w') as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)


def main(argv=None):
    parser = argparse.ArgumentParser(description=f'Generate a sample {CONFIG_FILE_NAME} for the redirect operator.')
    parser.add_argument('--lease-backend', choices=['kubernetes', 'etcd'], default='kubernetes',
                        help='Where the leader election lease is stored.')
    parser.add_argument('--watch-namespace', help='Only watch Redirects in this namespace.')
    parser.add_argument('--etcd-endpoint', action='append', dest='etcd_endpoints',
                        help='etcd endpoint such as http://localhost:2379 (repeatable).')
    parser.add_argument('--output', default=CONFIG_FILE_NAME, help='File to write.')
    args = parser.parse_args(argv)

    config = generate_operator_config(args.lease_backend, args.watch_namespace, args.etcd_endpoints)
    write_operator_config(config, args.output)
    print(f"Generated {args.output} using the {args.lease_backend} lease backend.")


if __name__ == '__main__':
    main()
