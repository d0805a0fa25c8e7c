#!/usr/bin/env python3
"""
Research Orchestrator Entry Point.

Runs the research orchestrator with its HTTP API for the dashboard.

Usage:
    python run_orchestrator.py --provider-url http://localhost:8800
    python run_orchestrator.py --provider-url http://localhost:8800 --full-spectrum

Prerequisites:
    - A research service must be listening at --provider-url
"""

import asyncio
import signal
import sys
from pathlib import Path

# Ensure project root is in path
project_root = Path(__file__).parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


async def main():
    """Run the research orchestrator with HTTP API."""
    import argparse
    from research_orchestrator.api import run_with_api
    from research_orchestrator.config import load_config
    from research_orchestrator.errors import ConfigError
    from research_orchestrator.main import Orchestrator
    from research_orchestrator.providers import HttpResearchProvider

    parser = argparse.ArgumentParser(
        description="Research Orchestrator - scheduled AI research for the bot fleet",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_orchestrator.py --provider-url http://localhost:8800
    python run_orchestrator.py --config config.yaml --full-spectrum
    python run_orchestrator.py --api-port 9002          # Custom API port
        """
    )

    parser.add_argument(
        "--config",
        default="config.yaml",
        help="YAML config with a research_orchestrator section (default: config.yaml)"
    )
    parser.add_argument(
        "--data-dir",
        default="data/research_orchestrator",
        help="Directory for state persistence (default: data/research_orchestrator)"
    )
    parser.add_argument(
        "--provider-url",
        default="http://localhost:8800",
        help="Research service URL (default: http://localhost:8800)"
    )
    parser.add_argument(
        "--full-spectrum",
        action="store_true",
        help="Enable full spectrum mode on startup"
    )
    parser.add_argument(
        "--api-host",
        default="127.0.0.1",
        help="HTTP API host (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=9002,
        help="HTTP API port (default: 9002)"
    )

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("Starting Research Orchestrator...")
    print(f"  Config: {args.config}")
    print(f"  Data dir: {args.data_dir}")
    print(f"  Provider URL: {args.provider_url}")
    print(f"  Full spectrum: {'enabled' if args.full_spectrum else 'unchanged'}")
    print(f"  API: http://{args.api_host}:{args.api_port}")
    print()

    provider = HttpResearchProvider(
        args.provider_url,
        request_timeout=config.retry.job_timeout_seconds,
    )
    orchestrator = Orchestrator(
        provider=provider,
        config=config,
        data_dir=args.data_dir,
    )

    if args.full_spectrum:
        orchestrator.initialize()
        orchestrator.set_full_spectrum(True)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    await run_with_api(
        orchestrator=orchestrator,
        host=args.api_host,
        port=args.api_port,
        stop_event=stop_event,
    )


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested...")
