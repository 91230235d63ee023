"""Run a single volume-snapshot backup reconciliation pass.

Exit codes::

    0  every snapshot is ready and the instance was released
    1  the pass failed
    2  configuration or authentication error
    3  work is in progress; call again after the printed delay
"""

from __future__ import annotations

import argparse
from dataclasses import replace
import logging
import sys

from .config import AppConfig, validate_config
from .k8s import (
    KubernetesAuthenticationError,
    list_instance_volumes,
    load_kubernetes_clients,
    read_backup,
    read_instance,
)
from .orchestrator import BackupOrchestrator

EXIT_COMPLETE = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_REQUEUE = 3

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Volume snapshot backup reconciliation pass")
    parser.add_argument("-n", "--namespace", required=True, help="Namespace of the cluster and backup")
    parser.add_argument("--cluster", required=True, help="Cluster name")
    parser.add_argument("--backup", required=True, help="Backup name")
    parser.add_argument("--pod", required=True, help="Instance pod to snapshot")
    parser.add_argument(
        "--no-fence",
        action="store_true",
        help="Do not fence the instance; the caller guarantees it is already fenced",
    )
    parser.add_argument(
        "--strict-volume-matching",
        action="store_true",
        help="Require one ready snapshot per current volume before completing",
    )
    parser.add_argument("--kubeconfig", help="Path to kubeconfig file")
    parser.add_argument("--context", help="Kubeconfig context to use")
    parser.add_argument("--in-cluster", action="store_true", help="Use in-cluster service account credentials")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, base: AppConfig | None = None) -> AppConfig:
    config = base or AppConfig()
    if args.no_fence:
        config = replace(config, fence_instance=False)
    if args.strict_volume_matching:
        config = replace(config, strict_volume_matching=True)
    return config


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = build_config(args)
        validate_config(config)
    except ValueError as error:
        print(f"Invalid configuration: {error}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=args.kubeconfig,
            context=args.context,
            in_cluster=args.in_cluster,
        )
    except KubernetesAuthenticationError as error:
        logger.error("%s", error)
        return EXIT_CONFIG_ERROR

    orchestrator = BackupOrchestrator.from_config(clients, config)
    try:
        timeout = config.request_timeout_seconds
        cluster = orchestrator.cluster_store.get_cluster(args.namespace, args.cluster)
        backup = read_backup(clients, namespace=args.namespace, name=args.backup, request_timeout_seconds=timeout)
        target, pod = read_instance(
            clients,
            namespace=args.namespace,
            pod_name=args.pod,
            request_timeout_seconds=timeout,
        )
        volumes = list_instance_volumes(clients, pod=pod, request_timeout_seconds=timeout)
        result = orchestrator.execute(cluster, backup, target, volumes)
    except Exception as error:  # pylint: disable=broad-except
        logger.error("backup %s/%s failed: %s", args.namespace, args.backup, error)
        return EXIT_FAILED

    if result is None:
        print(f"backup {args.namespace}/{args.backup} complete")
        return EXIT_COMPLETE
    print(f"backup {args.namespace}/{args.backup} in progress; requeue after {result.requeue_after_seconds}s")
    return EXIT_REQUEUE


if __name__ == "__main__":
    sys.exit(main())
