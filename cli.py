"""CLI entry point for idam-simulator.

Runs the simulator locally so services under test can authenticate against it.
"""
import argparse
import sys

from config import load_config


VERSION = "1.0.0"


def cmd_start(args) -> int:
    """Start the simulator in the foreground."""
    try:
        config = load_config(
            args.config,
            host=args.host,
            port=args.port,
            issuer=args.issuer,
            seed_file=args.seed,
        )
    except (OSError, ValueError) as e:
        print(f"[ERROR] Invalid configuration: {e}", file=sys.stderr)
        return 2

    from main import run

    print("\n" + "=" * 60)
    print("  IDAM Simulator")
    print("=" * 60)
    print(f"  Listening: http://{config.host}:{config.port}")
    print(f"  Issuer:    {config.issuer}")
    print(f"  Discovery: {config.issuer}/.well-known/openid-configuration")
    if config.seed_file:
        print(f"  Seed file: {config.seed_file}")
    print("=" * 60 + "\n")

    run(config)
    return 0


def cmd_version(args) -> int:
    print(f"idam-simulator v{VERSION}")
    return 0


# ============== Main Entry Point ==============

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="idam-simulator",
        description="IDAM Simulator - in-memory OAuth2/OIDC provider for integration tests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  start     Start the simulator (default)
  version   Show version

Examples:
  idam-simulator start --port 5000
  idam-simulator start --seed accounts.json
"""
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="start",
        choices=["start", "version"],
        help="Command to run (default: start)"
    )
    parser.add_argument("--host", help="Interface to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: 5000)")
    parser.add_argument("--issuer", help="Issuer URL placed in tokens and discovery")
    parser.add_argument("--seed", help="JSON file of accounts to pre-load")
    parser.add_argument("--config", help="JSON config file")
    return parser


def main(argv=None) -> int:
    """Main entry point for CLI."""
    args = build_parser().parse_args(argv)
    if args.command == "version":
        return cmd_version(args)
    return cmd_start(args)


if __name__ == "__main__":
    sys.exit(main())
