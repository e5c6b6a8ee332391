"""Command-line interface for ingresskeeper."""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from .errors import ConfigurationError
from .logging_config import setup_logging, get_logger
from .models import ControllerConfig

logger = get_logger(__name__)

CONFIG_SEARCH_PATHS = [
    Path("ingresskeeper.yaml"),
    Path("config.yaml"),
    Path("/etc/ingresskeeper/config.yaml"),
]


def find_config() -> Optional[Path]:
    """Return the first configuration file found in the usual locations."""
    for path in CONFIG_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def load_config(path: Optional[str] = None) -> ControllerConfig:
    """Load controller configuration from YAML.

    Args:
        path: Explicit configuration file. When omitted the usual locations
            are searched and defaults are used if none exists.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")
    else:
        config_path = find_config()
        if config_path is None:
            logger.warning("No configuration file found, using defaults")
            return ControllerConfig()

    try:
        logger.debug("Loading configuration file", config_path=str(config_path))
        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}
        controller_config = ControllerConfig(**config_data)
    except (OSError, yaml.YAMLError, ValidationError, TypeError) as e:
        raise ConfigurationError(f"Invalid configuration file {config_path}: {e}") from e

    logger.info("Configuration loaded successfully",
                config_path=str(config_path),
                namespace=controller_config.namespace,
                config_artifact=controller_config.config_path)
    return controller_config


def _load_or_exit(path: Optional[str]) -> ControllerConfig:
    try:
        return load_config(path)
    except ConfigurationError as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)


def run_command(args: argparse.Namespace) -> None:
    """Run the ingress controller until interrupted."""
    from .controller import IngressController

    setup_logging(args.verbose)
    controller_config = _load_or_exit(args.config)
    if args.namespace:
        controller_config.namespace = args.namespace

    print(f"Starting ingresskeeper for namespace {controller_config.namespace}")
    controller = IngressController(controller_config)
    controller.run_forever()
    logger.info("Controller exited", **controller.status())


def resolve_command(args: argparse.Namespace) -> None:
    """Resolve the namespace's ingresses once and print the routing configuration."""
    from .controller import IngressController
    from .errors import PersistenceError

    setup_logging(args.verbose)
    controller_config = _load_or_exit(args.config)
    if args.namespace:
        controller_config.namespace = args.namespace
    if args.ingress:
        controller_config.ingress_name = args.ingress

    controller = IngressController(controller_config)
    try:
        results = controller.resolve_once()
    except Exception as e:
        print(f"Error resolving ingresses: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        controller.kube.disconnect()

    if args.write:
        if len(results) != 1:
            print(f"--write needs exactly one ingress, found {len(results)}. Use --ingress.", file=sys.stderr)
            sys.exit(1)
        configuration = next(iter(results.values()))
        try:
            controller.publisher.publish(configuration)
        except PersistenceError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"Routing configuration written to {controller.publisher.path}")
        return

    data = {name: configuration.to_document() for name, configuration in results.items()}
    print(json.dumps(data, indent=2))


def init_config_command(args: argparse.Namespace) -> None:
    """Generate a sample configuration file."""
    sample_config = ControllerConfig(
        kubeconfig_path="~/.kube/config",
        context="dev-cluster",
    ).model_dump()

    config_yaml = yaml.dump(sample_config, default_flow_style=False, sort_keys=False)

    if args.output:
        output_path = Path(args.output)
        output_path.write_text(config_yaml)
        print(f"Sample configuration written to {output_path}")
    else:
        print("Sample configuration:\n")
        print(config_yaml)


def validate_config_command(args: argparse.Namespace) -> None:
    """Validate a configuration file."""
    try:
        controller_config = load_config(args.config)
    except ConfigurationError as e:
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(1)

    print(f"✓ Configuration file {args.config} is valid")
    print("\nConfiguration summary:")
    print(f"  Namespace: {controller_config.namespace}")
    print(f"  Ingress: {controller_config.ingress_name or 'all'}")
    print(f"  Artifact: {controller_config.config_path}")
    print(f"  Command: {' '.join(controller_config.command)}")
    print(f"  Working directory: {controller_config.working_dir}")
    print(f"  Backoff: {controller_config.backoff.initial_delay}s to {controller_config.backoff.max_delay}s")


def version_command(args: argparse.Namespace) -> None:
    """Show version information."""
    from . import __version__
    print(f"ingresskeeper {__version__}")


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="ingresskeeper: Kubernetes ingress reconciler for a supervised routing process",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Watch ingresses and endpoints and supervise the routing process")
    run_parser.add_argument("--config", "-c", help="Configuration file path")
    run_parser.add_argument("--namespace", "-n", help="Namespace to watch (overrides configuration)")
    run_parser.set_defaults(func=run_command)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve ingresses once and print the routing configuration")
    resolve_parser.add_argument("--config", "-c", help="Configuration file path")
    resolve_parser.add_argument("--namespace", "-n", help="Namespace to read (overrides configuration)")
    resolve_parser.add_argument("--ingress", "-i", help="Only resolve this ingress")
    resolve_parser.add_argument(
        "--write",
        action="store_true",
        help="Publish the result to the configured artifact path instead of printing it"
    )
    resolve_parser.set_defaults(func=resolve_command)

    init_parser = subparsers.add_parser("init-config", help="Generate a sample configuration file")
    init_parser.add_argument("--output", "-o", help="Output file path (default: stdout)")
    init_parser.set_defaults(func=init_config_command)

    validate_parser = subparsers.add_parser("validate-config", help="Validate a configuration file")
    validate_parser.add_argument("--config", "-c", required=True, help="Configuration file path")
    validate_parser.set_defaults(func=validate_config_command)

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=version_command)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
