"""Command line entry point.

    cert-agent [run]       renew on a fixed interval until SIGINT/SIGTERM
    cert-agent once        single pass; exit status 1 if any domain set failed
    cert-agent status      print the persisted renewal status
    cert-agent clear NAME  clear the operator-intervention flag of a domain set
    cert-agent version     print the version
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
from typing import Optional, Sequence

from pydantic import ValidationError

from cert_agent import __version__
from cert_agent.adapters.outbound.file_certificate_store import FileCertificateStore
from cert_agent.application.agent import CertAgent
from cert_agent.domain.errors import CertAgentError, ConfigurationError
from cert_agent.infrastructure.config import Config, get_config
from cert_agent.infrastructure.logging import get_logger, setup_logging
from cert_agent.infrastructure.metrics import CertAgentMetrics, get_metrics, setup_metrics
from cert_agent.infrastructure.tracing import setup_tracing, shutdown_tracing

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cert-agent",
        description="Short-lived certificate renewal agent for Step CA",
    )
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument("--log-format", choices=["json", "console"], help="Override the log format")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run as a daemon (default)")
    sub.add_parser("once", help="Run a single pass and exit")
    sub.add_parser("status", help="Print the persisted renewal status")
    clear = sub.add_parser("clear", help="Clear the operator-intervention flag")
    clear.add_argument("name", help="Domain set name")
    sub.add_parser("version", help="Print the version")
    return parser


def _setup_observability(config: Config, args: argparse.Namespace, serve_metrics: bool) -> Optional[CertAgentMetrics]:
    setup_logging(
        level=args.log_level or config.observability.log_level,
        log_format=args.log_format or config.observability.log_format,
    )
    setup_tracing(
        service_name=config.observability.otel_service_name,
        otlp_endpoint=config.observability.otel_endpoint,
        sample_ratio=config.observability.otel_sample_ratio,
    )
    if not config.server.enable_metrics:
        return None
    if serve_metrics:
        return setup_metrics(port=config.server.metrics_port)
    return get_metrics()


def _install_signal_handlers(agent: CertAgent) -> None:
    def handle(signum, frame):
        agent.stop()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def cmd_run(config: Config, args: argparse.Namespace) -> int:
    metrics = _setup_observability(config, args, serve_metrics=True)
    agent = CertAgent.from_config(config, metrics=metrics)
    agent.initialize()
    _install_signal_handlers(agent)
    try:
        agent.run_daemon()
    finally:
        shutdown_tracing()
    return EXIT_OK


def cmd_once(config: Config, args: argparse.Namespace) -> int:
    metrics = _setup_observability(config, args, serve_metrics=False)
    agent = CertAgent.from_config(config, metrics=metrics)
    agent.initialize()
    try:
        failed = agent.run_once()
    finally:
        agent.shutdown()
        shutdown_tracing()
    return EXIT_FAILED if failed else EXIT_OK


def cmd_status(config: Config, args: argparse.Namespace) -> int:
    store = FileCertificateStore(config.storage.cert_dir, config.storage.dir_mode)
    print(json.dumps(store.read_status(), indent=2, sort_keys=True))
    return EXIT_OK


def cmd_clear(config: Config, args: argparse.Namespace) -> int:
    store = FileCertificateStore(config.storage.cert_dir, config.storage.dir_mode)
    if store.clear_intervention(args.name):
        print(f"cleared intervention flag for {args.name}")
        return EXIT_OK
    print(f"{args.name}: no intervention flag set", file=sys.stderr)
    return EXIT_FAILED


COMMANDS = {
    "run": cmd_run,
    "once": cmd_once,
    "status": cmd_status,
    "clear": cmd_clear,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    if command == "version":
        print(f"cert-agent {__version__}")
        return EXIT_OK

    try:
        config = get_config()
    except ValidationError as e:
        print(f"invalid configuration:\n{e}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        return COMMANDS[command](config, args)
    except ConfigurationError as e:
        print(f"invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except CertAgentError as e:
        get_logger(__name__).error("command_failed", command=command, error=str(e))
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
