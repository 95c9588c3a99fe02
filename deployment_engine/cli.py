# deployment_engine/cli.py
"""
Operator CLI.

Exit codes:
    0  success
    1  partial (some services or domains did not converge)
    2  configuration invalid
    3  precondition failed (control plane or proxy unreachable, rollout in
       progress, proxy rejected the routes, nothing to roll back to)
"""

import argparse
import json
import logging
import signal
import sys
from typing import List, Optional

from pydantic import ValidationError

from deployment_engine.config import EngineSettings
from deployment_engine.container import Container, build_container
from deployment_engine.core.errors import (
    ConfigError,
    PersistenceError,
    PreconditionError,
    ReloadRejected,
    RollbackUnavailableError,
)
from deployment_engine.core.models import RolloutRecord, RolloutStatus, ServiceKind

logger = logging.getLogger(__name__)


EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_CONFIG_INVALID = 2
EXIT_PRECONDITION_FAILED = 3


# ============================================
# COMMANDS
# ============================================

def cmd_validate(container: Container, args) -> int:
    topology = container.topology
    for environment in topology.environments:
        if not environment.enabled:
            print(f"{environment.name}: disabled")
            continue
        specs = container.composer.compose(environment)
        print(f"{environment.name}: {', '.join(f'{s.kind.value}x{s.replicas}' for s in specs)}")
    print(f"domains: {', '.join(sorted(topology.domain_map())) or '-'}")
    return EXIT_SUCCESS


def cmd_rollout(container: Container, args) -> int:
    def _cancel(signum, frame):
        logger.info(f"Received signal {signum}, cancelling rollout of '{args.environment}'...")
        container.service.cancel(args.environment)

    previous = {sig: signal.signal(sig, _cancel) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        record = container.service.rollout(args.environment)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return _report_rollout(record, args.json)


def cmd_rollback(container: Container, args) -> int:
    record = container.service.rollback(args.environment, args.service)
    return _report_rollout(record, args.json)


def cmd_status(container: Container, args) -> int:
    record = container.service.status(args.environment)
    if record is None:
        print(f"no rollout recorded for '{args.environment}'")
        return EXIT_SUCCESS
    return _report_rollout(record, args.json)


def cmd_cert_pass(container: Container, args) -> int:
    result = container.service.certificate_pass()
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"issued:  {', '.join(result.issued) or '-'}")
        print(f"renewed: {', '.join(result.renewed) or '-'}")
        print(f"skipped: {', '.join(result.skipped) or '-'}")
        for domain, reason in sorted(result.failed.items()):
            print(f"failed:  {domain} ({reason})")
        print(f"reloaded: {'yes' if result.reloaded else 'no'}")
    return EXIT_SUCCESS if result.is_success else EXIT_PARTIAL


def cmd_certificates(container: Container, args) -> int:
    records = [record.to_dict() for record in container.service.certificates()]
    print(json.dumps(records, indent=2))
    return EXIT_SUCCESS


def cmd_routes(container: Container, args) -> int:
    if args.apply:
        container.service.apply_routes(reason="operator")
        for route in container.service.routes():
            scheme = "https" if route.https else "http"
            print(f"{scheme}://{route.domain} -> {route.environment} ({route.upstream})")
        return EXIT_SUCCESS

    print(container.service.render_routes(), end="")
    return EXIT_SUCCESS


def _report_rollout(record: RolloutRecord, as_json: bool) -> int:
    if as_json:
        print(json.dumps(record.to_dict(), indent=2))
    else:
        print(f"rollout {record.rollout_id} ({record.action}) of '{record.environment}': {record.status.value}")
        for identity, outcome in sorted(record.services.items()):
            line = f"  {identity:<28} {outcome.operation:<7} {outcome.state.value}"
            if outcome.error_message:
                line += f"  ({outcome.error_message})"
            print(line)
        if record.error_message:
            print(f"  error: {record.error_message}")

    if record.status == RolloutStatus.PARTIAL or record.error_message:
        return EXIT_PARTIAL
    return EXIT_SUCCESS


COMMANDS = {
    "validate": cmd_validate,
    "rollout": cmd_rollout,
    "rollback": cmd_rollback,
    "status": cmd_status,
    "cert-pass": cmd_cert_pass,
    "certificates": cmd_certificates,
    "routes": cmd_routes,
}


# ============================================
# ENTRY POINT
# ============================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deployment-engine",
        description="Roll out and operate the staging/production stacks of one host",
    )
    parser.add_argument("--config", "-c", help="Topology YAML file (default: ENGINE_TOPOLOGY_PATH)")
    parser.add_argument("--agent-url", help="Runtime agent URL (default: ENGINE_AGENT_URL)")
    parser.add_argument("--storage", choices=["postgres", "memory"], help="Record storage")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Resolve and compose the topology without touching anything")

    rollout_parser = subparsers.add_parser("rollout", help="Converge one environment")
    rollout_parser.add_argument("environment", help="Environment name")
    rollout_parser.add_argument("--json", action="store_true", help="JSON output")

    rollback_parser = subparsers.add_parser("rollback", help="Re-apply the previous revision of one service")
    rollback_parser.add_argument("environment", help="Environment name")
    rollback_parser.add_argument("service", choices=[kind.value for kind in ServiceKind])
    rollback_parser.add_argument("--json", action="store_true", help="JSON output")

    status_parser = subparsers.add_parser("status", help="Latest rollout of an environment")
    status_parser.add_argument("environment", help="Environment name")
    status_parser.add_argument("--json", action="store_true", help="JSON output")

    cert_parser = subparsers.add_parser("cert-pass", help="Run one certificate issuance/renewal pass")
    cert_parser.add_argument("--json", action="store_true", help="JSON output")

    subparsers.add_parser("certificates", help="List certificate records")

    routes_parser = subparsers.add_parser("routes", help="Render the proxy configuration")
    routes_parser.add_argument("--apply", action="store_true", help="Install and hot-reload it")

    return parser


def main(argv: Optional[List[str]] = None, container: Optional[Container] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        if container is None:
            overrides = {
                key: value
                for key, value in (
                    ("topology_path", args.config),
                    ("agent_url", args.agent_url),
                    ("storage", args.storage),
                )
                if value is not None
            }
            container = build_container(EngineSettings(**overrides))

        return COMMANDS[args.command](container, args)

    except (ConfigError, ValidationError) as e:
        logger.error(f"❌ Configuration invalid: {e}")
        return EXIT_CONFIG_INVALID
    except (PreconditionError, ReloadRejected, RollbackUnavailableError, PersistenceError) as e:
        logger.error(f"❌ {e}")
        return EXIT_PRECONDITION_FAILED


if __name__ == "__main__":
    sys.exit(main())
