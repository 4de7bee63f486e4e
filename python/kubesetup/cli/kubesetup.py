#!/usr/bin/env python3
"""
kubesetup/cli/kubesetup.py

Command-line entry point for deploying and upgrading kubeadm clusters over SSH.
Example usage:

    kubesetup deploy \
       --control-planes root@10.0.0.1,root@10.0.0.2,root@10.0.0.3 \
       --workers 10.0.0.10,10.0.0.11 \
       --ha-vip 10.0.0.100

    kubesetup upgrade --control-planes 10.0.0.1 --workers 10.0.0.10 \
       --kubernetes-version 1.32.3

    kubesetup bundle --output setup-k8s.sh --distro debian

Settings come from DEPLOY_* environment variables, then the optional
--config YAML file, then command-line flags (highest precedence).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional, Tuple, Union

import aiofiles

from kubesetup.deployment.deploy import ClusterDeployer, describe_deploy_plan
from kubesetup.deployment.session import session_scope
from kubesetup.deployment.upgrade import ClusterUpgrader, describe_upgrade_plan
from kubesetup.models.cluster_deploy import (
    DeploymentReport,
    DeployOptions,
    HealthReport,
    UpgradeOptions,
    UpgradeReport,
)
from kubesetup.models.errors import DeploymentAborted, UpgradeAborted, ValidationError
from kubesetup.models.node import ClusterTopology
from kubesetup.models.settings import ClusterFile, DeploySettings
from kubesetup.models.ssh import HostKeyPolicy
from kubesetup.models.validator import build_model
from kubesetup.utils.bundle import ENTRY_SUBCOMMANDS, Bundler
from kubesetup.utils.distro import registered_distros

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
LOG_TAIL_LINES = 20

NodeLists = Tuple[Union[str, List[str]], Union[str, List[str]]]


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


async def _load_cluster_file(path: Optional[str]) -> ClusterFile:
    if not path:
        return ClusterFile()
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            text = await f.read()
    except OSError as exc:
        raise ValidationError(f"cannot read cluster file {path}: {exc}") from exc
    return ClusterFile.from_yaml(text)


def _settings(args: argparse.Namespace, cluster: ClusterFile) -> DeploySettings:
    """Environment < cluster file < flags."""
    overrides: Dict[str, Any] = {}
    if cluster.ssh_user is not None:
        overrides["ssh_user"] = cluster.ssh_user
    if cluster.ssh_port is not None:
        overrides["ssh_port"] = cluster.ssh_port
    for field in (
        "ssh_user",
        "ssh_port",
        "ssh_key",
        "ssh_password",
        "ssh_password_file",
        "ssh_known_hosts",
        "ssh_host_key_check",
        "persist_known_hosts",
        "remote_timeout",
        "poll_interval",
        "collect_diagnostics",
        "diagnostics_dir",
    ):
        value = getattr(args, field, None)
        if value is not None:
            overrides[field] = value
    return build_model(DeploySettings, **overrides)


def _node_lists(args: argparse.Namespace, cluster: ClusterFile) -> NodeLists:
    control_planes = args.control_planes if args.control_planes is not None else cluster.control_planes
    workers = args.workers if args.workers is not None else cluster.workers
    if not control_planes:
        raise ValidationError("--control-planes is required (on the command line or in --config)")
    return control_planes, workers


def _deploy_options(args: argparse.Namespace, cluster: ClusterFile) -> DeployOptions:
    fields = cluster.options.model_dump(exclude_none=True)
    for field in (
        "cri",
        "kubernetes_version",
        "pod_network_cidr",
        "service_cidr",
        "proxy_mode",
        "ha_vip",
        "ha_interface",
        "control_plane_endpoint",
        "swap_enabled",
        "kubeadm_config_patch",
    ):
        value = getattr(args, field, None)
        if value is not None:
            fields[field] = value
    return build_model(DeployOptions, **fields)


def _print_failure(failed: Any) -> None:
    print(f"  failed:        {failed.node} during {failed.step}: {failed.error}")
    if failed.log:
        tail = failed.log.rstrip().splitlines()[-LOG_TAIL_LINES:]
        print("  remote log (last lines):")
        for line in tail:
            print(f"    {line}")


def _health_line(health: HealthReport) -> str:
    if health.nodes is None:
        nodes = "node list unavailable"
    else:
        ready = len(health.nodes) - len(health.not_ready)
        nodes = f"{ready}/{len(health.nodes)} node(s) Ready"
    return f"API server {'ready' if health.api_ready else 'NOT ready'}, {nodes}"


def _print_extras(health: Optional[HealthReport], diagnostics_dir: Optional[str]) -> None:
    if health is not None:
        print(f"  health:        {_health_line(health)}")
    if diagnostics_dir:
        print(f"  diagnostics:   {diagnostics_dir}")


def print_deploy_report(report: DeploymentReport) -> None:
    print(f"Deployment {'succeeded' if report.ok else 'FAILED'} (state: {report.state.value})")
    print(f"  succeeded:     {', '.join(report.succeeded) or '-'}")
    if report.failed is not None:
        _print_failure(report.failed)
    if report.not_attempted:
        print(f"  not attempted: {', '.join(report.not_attempted)}")
    _print_extras(report.health, report.diagnostics_dir)


def print_upgrade_report(report: UpgradeReport) -> None:
    print(f"Upgrade {'succeeded' if report.ok else 'FAILED'} ({report.plan})")
    print(f"  completed hops: {', '.join(report.completed_hops) or '-'}")
    print(f"  succeeded:     {', '.join(report.succeeded) or '-'}")
    if report.failed is not None:
        _print_failure(report.failed)
        if report.rolled_back is not None:
            print(f"  rolled back:   {'yes' if report.rolled_back else 'no (rollback failed)'}")
    if report.not_attempted:
        print(f"  not attempted: {', '.join(report.not_attempted)}")
    _print_extras(report.health, report.diagnostics_dir)


async def _run_deploy(args: argparse.Namespace) -> None:
    """
    Handler for the 'deploy' subcommand:
      1) Merge settings and validate everything locally
      2) Open the session (preflight every node)
      3) Deploy and print the report
    """
    cluster = await _load_cluster_file(args.config)
    settings = _settings(args, cluster)
    options = _deploy_options(args, cluster)
    control_planes, workers = _node_lists(args, cluster)

    topology = ClusterTopology.from_lists(
        control_planes, workers, default_user=settings.ssh_user, port=settings.ssh_port
    )
    options.check_files()
    if args.dry_run:
        print("Dry run; no node will be contacted.")
        for idx, step in enumerate(describe_deploy_plan(topology, options), 1):
            print(f"  {idx}. {step}")
        return
    options.check_topology(topology)

    async with session_scope(control_planes, workers, settings) as session:
        report = await ClusterDeployer(session, Bundler(), options).deploy()
    print_deploy_report(report)
    if not report.ok:
        raise DeploymentAborted("deployment did not complete", report)


async def _run_upgrade(args: argparse.Namespace) -> None:
    """
    Handler for the 'upgrade' subcommand:
      1) Open the session (preflight every node)
      2) Read the current version and plan the hops
      3) Execute (unless --dry-run) and print the report
    """
    cluster = await _load_cluster_file(args.config)
    settings = _settings(args, cluster)
    control_planes, workers = _node_lists(args, cluster)
    options = build_model(
        UpgradeOptions,
        target_version=args.kubernetes_version,
        skip_drain=args.skip_drain,
        no_rollback=args.no_rollback,
    )

    async with session_scope(control_planes, workers, settings) as session:
        upgrader = ClusterUpgrader(session, Bundler(), options)
        plan = await upgrader.plan()
        if args.dry_run:
            print("Dry run; nothing will be changed.")
            for idx, step in enumerate(describe_upgrade_plan(plan, session.topology), 1):
                print(f"  {idx}. {step}")
            return
        report = await upgrader.execute(plan)
    print_upgrade_report(report)
    if not report.ok:
        raise UpgradeAborted("upgrade did not complete", report)


async def _run_bundle(args: argparse.Namespace) -> None:
    """Handler for the 'bundle' subcommand: writes a bundle for inspection."""
    bundle = Bundler().build(args.subcommand or list(ENTRY_SUBCOMMANDS), families=args.distro)
    path = await bundle.write(args.output)
    print(f"Bundle written to {path} (sha256 {bundle.sha256})")


def _add_node_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--control-planes",
        default=None,
        help="Comma-separated control-plane nodes, [user@]host; the first one bootstraps the cluster.",
    )
    parser.add_argument(
        "--workers",
        default=None,
        help="Comma-separated worker nodes, [user@]host.",
    )


def _add_ssh_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--ssh-user", default=None, help="Default SSH user (default: root).")
    parser.add_argument("--ssh-port", type=int, default=None, help="SSH port (default: 22).")
    parser.add_argument("--ssh-key", default=None, help="Private key; auto-discovered in ~/.ssh if omitted.")
    parser.add_argument(
        "--ssh-password",
        default=None,
        help="SSH password (prefer DEPLOY_SSH_PASSWORD or --ssh-password-file).",
    )
    parser.add_argument(
        "--ssh-password-file",
        default=None,
        help="File holding the SSH password; must be mode 600 or 400.",
    )
    parser.add_argument("--ssh-known-hosts", default=None, help="known_hosts file to seed from.")
    parser.add_argument(
        "--ssh-host-key-check",
        choices=[p.value for p in HostKeyPolicy],
        default=None,
        help="StrictHostKeyChecking policy (default: accept-new).",
    )
    parser.add_argument(
        "--persist-known-hosts",
        default=None,
        help="Write the session's known_hosts here when done.",
    )
    parser.add_argument(
        "--remote-timeout",
        type=int,
        default=None,
        help="Seconds a single remote step may run (default: 600).",
    )
    parser.add_argument(
        "--poll-interval",
        type=int,
        default=None,
        help="Seconds between completion checks (default: 10).",
    )


def _add_general_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default=None, help="YAML cluster file.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Show what would be done without changing anything.",
    )
    parser.add_argument(
        "--collect-diagnostics",
        action="store_true",
        default=None,
        help="On failure, save the failing node's journals, cluster events and disk/memory usage locally.",
    )
    parser.add_argument(
        "--diagnostics-dir",
        default=None,
        help="Where --collect-diagnostics writes (default: the system temp directory).",
    )
    parser.add_argument("--verbose", "-v", action="store_true", default=False, help="Debug logging.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kubesetup",
        description="Deploy and upgrade kubeadm Kubernetes clusters over SSH.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy = subparsers.add_parser("deploy", help="Deploy a new cluster.")
    _add_node_args(deploy)
    _add_ssh_args(deploy)
    deploy.add_argument("--ha-vip", default=None, help="Virtual IP for multi-control-plane clusters.")
    deploy.add_argument("--ha-interface", default=None, help="Interface for the VIP (auto-detected).")
    deploy.add_argument("--cri", choices=["containerd", "crio"], default=None, help="Container runtime.")
    deploy.add_argument("--kubernetes-version", default=None, help="MAJOR.MINOR to install.")
    deploy.add_argument("--pod-network-cidr", default=None, help="Pod network CIDR.")
    deploy.add_argument("--service-cidr", default=None, help="Service CIDR.")
    deploy.add_argument(
        "--proxy-mode",
        choices=["iptables", "ipvs", "nftables"],
        default=None,
        help="kube-proxy mode.",
    )
    deploy.add_argument(
        "--control-plane-endpoint",
        default=None,
        help="API server endpoint (default: <ha-vip>:6443 when HA).",
    )
    deploy.add_argument(
        "--swap-enabled",
        action="store_true",
        default=None,
        help="Keep swap enabled and configure kubelet for it.",
    )
    deploy.add_argument(
        "--kubeadm-config-patch",
        default=None,
        help="YAML file appended to the kubeadm init configuration on the first control plane.",
    )
    _add_general_args(deploy)
    deploy.set_defaults(func=_run_deploy)

    upgrade = subparsers.add_parser("upgrade", help="Upgrade an existing cluster.")
    _add_node_args(upgrade)
    _add_ssh_args(upgrade)
    upgrade.add_argument(
        "--kubernetes-version",
        required=True,
        help="Target version, MAJOR.MINOR.PATCH.",
    )
    upgrade.add_argument("--skip-drain", action="store_true", default=False, help="Do not drain nodes.")
    upgrade.add_argument(
        "--no-rollback",
        action="store_true",
        default=False,
        help="Leave a failed node as it is instead of reinstalling its previous packages.",
    )
    _add_general_args(upgrade)
    upgrade.set_defaults(func=_run_upgrade)

    bundle = subparsers.add_parser("bundle", help="Write a bundle to disk for inspection.")
    bundle.add_argument("--output", required=True, help="Where to write the bundle.")
    bundle.add_argument(
        "--distro",
        action="append",
        choices=[p.family for p in registered_distros()],
        default=None,
        help="Distro family to include; repeatable (default: all).",
    )
    bundle.add_argument(
        "--subcommand",
        action="append",
        choices=list(ENTRY_SUBCOMMANDS),
        default=None,
        help="Orchestrator subcommand to include; repeatable (default: all).",
    )
    bundle.add_argument("--verbose", "-v", action="store_true", default=False, help="Debug logging.")
    bundle.set_defaults(func=_run_bundle)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point for the 'kubesetup' CLI.
    Subcommands:
      - deploy: deploy a new cluster
      - upgrade: upgrade an existing cluster
      - bundle: write a bundle to disk
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        asyncio.run(args.func(args))
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("Interrupted; cleanup has run.", file=sys.stderr)
        sys.exit(130)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
