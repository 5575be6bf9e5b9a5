"""
Cloud Relay entrypoint.

CLI:
  cloud-relay run      -> one registration/relay pass; stays up while bridged
  cloud-relay status   -> print provider and registration state
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as pkg_version

from cloud_relay.core.log_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)


def get_version_string() -> str:
    try:
        return pkg_version("cloud-relay")
    except PackageNotFoundError:
        return "0.0.0+dev"


@dataclass
class Runtime:
    shutdown: threading.Event


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def build_orchestrator(cfg, paths, store):
    """Wire the orchestrator for cfg; nothing connects until run()."""
    from cloud_relay.certs import load_device_identity
    from cloud_relay.core.supervisor import SupervisorClient
    from cloud_relay.local_broker import LocalBrokerConnector
    from cloud_relay.messengers import create_messenger
    from cloud_relay.orchestrator import RelayOrchestrator
    from cloud_relay.provisioning import create_provisioner

    messenger = create_messenger(cfg, store=store, certs_dir=paths.certs_dir)
    connector = LocalBrokerConnector(
        cfg.local_mqtt_host,
        cfg.local_mqtt_port,
        max_tries=cfg.local_retries,
        retry_delay_s=cfg.local_retry_delay_s,
        client_id=f"cloud-relay-{cfg.device_uuid[:8]}",
    )
    supervisor = SupervisorClient(cfg.supervisor_address, cfg.supervisor_api_key)

    return RelayOrchestrator(
        messenger,
        connector,
        provisioner_factory=lambda: create_provisioner(
            cfg, store=store, supervisor=supervisor, certs_dir=paths.certs_dir
        ),
        identity_loader=lambda require_x509: load_device_identity(cfg, require_x509=require_x509),
    )


def run_relay() -> int:
    """
    Run one state-machine pass. While bridged, block until SIGINT/SIGTERM.
    Returns process exit code.
    """
    # Lazy imports keep `--version` free of runtime env/config.
    from cloud_relay.config import load_config
    from cloud_relay.core.credential_store import CredentialStore
    from cloud_relay.errors import RelayError
    from cloud_relay.orchestrator import RunOutcome
    from cloud_relay.paths import ensure_dirs, get_paths

    try:
        cfg = load_config()
        paths = get_paths()
        ensure_dirs(paths)
        store = CredentialStore(str(paths.credentials_path))
        store.load()
        orchestrator = build_orchestrator(cfg, paths, store)
    except (RelayError, OSError) as exc:
        logger.error("Cannot start relay: %s", exc)
        return 1

    logger.info("============================================================")
    logger.info("Cloud Relay")
    logger.info("Version: %s", cfg.version)
    logger.info("Device: %s  Provider: %s", cfg.device_uuid, cfg.cloud_provider)
    logger.info("============================================================")

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    outcome = orchestrator.run()
    logger.info("Run outcome: %s", outcome.value)

    if outcome is RunOutcome.BRIDGED:
        logger.info("Relay running (shutdown via SIGINT/SIGTERM)")
        try:
            while not rt.shutdown.is_set():
                rt.shutdown.wait(0.5)
        finally:
            orchestrator.shutdown()

    return 1 if outcome is RunOutcome.FAILED else 0


def show_status() -> int:
    from cloud_relay.config import load_config
    from cloud_relay.core.credential_store import CredentialStore
    from cloud_relay.errors import RelayError
    from cloud_relay.messengers import create_messenger
    from cloud_relay.paths import get_paths

    try:
        cfg = load_config()
        paths = get_paths()
        store = CredentialStore(str(paths.credentials_path))
        messenger = create_messenger(cfg, store=store, certs_dir=paths.certs_dir)
        state = messenger.registration_state()
    except RelayError as exc:
        logger.error("Cannot determine status: %s", exc)
        return 1

    print(f"provider: {cfg.cloud_provider}")
    print(f"provisioning: {cfg.provision_protocol}")
    print(f"registration: {state.value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cloud-relay")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)
    sub.add_parser("run", help="Check registration, provision or relay")
    sub.add_parser("status", help="Print registration state and exit")
    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        raise SystemExit(run_relay())

    if args.cmd == "status":
        raise SystemExit(show_status())

    raise SystemExit(2)


if __name__ == "__main__":
    main()
