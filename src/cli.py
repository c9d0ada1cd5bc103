"""CLI entry point for PesaSync.

Commands:
    pesasync ingest FILE --token TOKEN        Ingest a JSON upload (single record or batch)
    pesasync scan [--since ISO8601]           Run the fraud scanner
    pesasync review list                      List open review items
    pesasync review resolve ID RESOLUTION     Resolve a review item (accepted|rejected)
    pesasync device register DEVICE_ID        Register a device and print its token
    pesasync device deactivate DEVICE_ID      Deactivate a device
    pesasync status                           Transaction and review counts
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on PESA_LOG_LEVEL env var."""
    level = os.environ.get("PESA_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from src.config import Config

    config_dir = os.environ.get("PESA_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("PESA_MIGRATIONS_DIR", default))


def _get_repo():
    """Create a Repository connected to the configured database, schema applied."""
    from src.database.repository import Repository

    db_path = os.environ.get("PESA_DB_PATH", "pesasync.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _make_claude_fn(config):
    """Create a Claude API callback for classification.

    Returns a callable (system: str, prompt: str) -> str, or None if
    ANTHROPIC_API_KEY is not set. The client enforces the configured
    classifier timeout.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None

    try:
        import anthropic

        client = anthropic.Anthropic(
            api_key=api_key,
            timeout=config.classifier_timeout,
            max_retries=1,
        )

        def claude_fn(system: str, prompt: str) -> str:
            response = client.messages.create(
                model=config.classifier_model,
                max_tokens=config.classifier_max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
            return response.content[0].text

        return claude_fn
    except Exception as e:
        logging.getLogger(__name__).warning("Claude API not available: %s", e)
        return None


def _get_classifier(config, repo):
    """ProviderClassifier when an API key is configured, else the fallback."""
    from src.categorize.classifier import FallbackClassifier, ProviderClassifier

    claude_fn = _make_claude_fn(config)
    if claude_fn is None:
        logger.info("ANTHROPIC_API_KEY not set, using fallback classifier")
        return FallbackClassifier(config)
    return ProviderClassifier(claude_fn, repo, config)


def _get_gateway(config, repo):
    from src.database.dedup import DedupEngine
    from src.devices.registry import DeviceRegistry
    from src.ingest.gateway import IngestionGateway

    return IngestionGateway(
        repo=repo,
        registry=DeviceRegistry(repo),
        dedup=DedupEngine(repo),
        classifier=_get_classifier(config, repo),
        config=config,
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


# ── Command handlers ─────────────────────────────────────


def cmd_ingest(args: argparse.Namespace) -> int:
    """Ingest an upload body read from a JSON file."""
    from src.devices.registry import AuthenticationError
    from src.ingest.records import ValidationError

    filepath = args.file.resolve()
    if not filepath.exists():
        print(f"Error: File not found: {filepath}")
        return 1
    try:
        body = json.loads(filepath.read_text())
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in {filepath}: {e}")
        return 1

    config = _get_config()
    repo = _get_repo()
    gateway = _get_gateway(config, repo)
    try:
        if isinstance(body, dict) and "records" in body:
            report = gateway.ingest_batch(args.token, body["records"])
            _print_json(report.to_dict())
            return 0
        outcome = gateway.ingest(args.token, body)
        _print_json(outcome.to_dict())
        return 0
    except (AuthenticationError, ValidationError) as e:
        _print_json({"success": False, "error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Ingest failed")
        _print_json({"success": False, "error": str(e)})
        return 1
    finally:
        repo.close()


def cmd_scan(args: argparse.Namespace) -> int:
    """Run the fraud scanner over the recent window."""
    from src.fraud.scanner import FraudScanner

    window_start = None
    if args.since:
        try:
            window_start = datetime.fromisoformat(args.since)
        except ValueError:
            print(f"Error: --since must be ISO 8601, got {args.since!r}")
            return 1

    config = _get_config()
    repo = _get_repo()
    try:
        scanner = FraudScanner(repo, _get_classifier(config, repo), config)
        result = scanner.scan(window_start)
        _print_json(result.to_dict())
        return 0
    finally:
        repo.close()


def cmd_review(args: argparse.Namespace) -> int:
    sub = getattr(args, "review_command", None)
    if sub == "list":
        return _cmd_review_list(args)
    if sub == "resolve":
        return _cmd_review_resolve(args)
    print("Usage: pesasync review {list,resolve}")
    return 1


def _cmd_review_list(args: argparse.Namespace) -> int:
    """List open review items, most urgent first."""
    from src.database.queries import list_open_reviews

    repo = _get_repo()
    try:
        items = list_open_reviews(repo.conn, limit=args.limit)
    finally:
        repo.close()

    if not items:
        print("No items pending review.")
        return 0

    print(f"Items pending review ({len(items)}):")
    print("-" * 80)
    for r in items:
        conf = r["ai_metadata"].get("confidence")
        conf_str = f"{conf:.0%}" if isinstance(conf, (int, float)) else "n/a"
        amount = f"{r['amount']:>12,.2f}" if r["amount"] is not None else f"{'n/a':>12}"
        print(
            f"  {r['id']}  {r['priority']:<8}  {r['reason']:<16}"
            f"  {r['transaction_type']:<11} {amount}  {conf_str}"
        )
    return 0


_NUMERIC_FIELDS = {"amount", "balance"}


def _parse_updates(pairs: list[str] | None) -> dict:
    updates: dict = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"Expected FIELD=VALUE, got {pair!r}")
        key, value = pair.split("=", 1)
        key = key.strip()
        if key in _NUMERIC_FIELDS:
            updates[key] = float(value)
        else:
            updates[key] = value or None
    return updates


def _cmd_review_resolve(args: argparse.Namespace) -> int:
    """Resolve one review item."""
    from src.review.resolution import (
        ReviewAlreadyResolvedError,
        ReviewNotFoundError,
        resolve_review,
    )

    try:
        updates = _parse_updates(args.set)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    repo = _get_repo()
    try:
        result = resolve_review(
            repo, args.review_id, args.resolution, updates or None,
        )
    except (ReviewNotFoundError, ReviewAlreadyResolvedError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()

    _print_json(result.to_dict())
    return 0


def cmd_device(args: argparse.Namespace) -> int:
    from src.devices.registry import DeviceRegistry

    sub = getattr(args, "device_command", None)
    if sub not in ("register", "deactivate"):
        print("Usage: pesasync device {register,deactivate}")
        return 1

    repo = _get_repo()
    try:
        registry = DeviceRegistry(repo)
        if sub == "register":
            client, token = registry.register(args.device_id, args.name)
            print(f"Registered {client.device_id} (client {client.id})")
            print(f"Token: {token}")
            return 0
        if not registry.deactivate(args.device_id):
            print(f"Error: Device '{args.device_id}' not found.")
            return 1
        print(f"Deactivated {args.device_id}.")
        return 0
    finally:
        repo.close()


def cmd_status(args: argparse.Namespace) -> int:
    """Display system status counts."""
    from src.database.queries import get_status_counts

    repo = _get_repo()
    try:
        counts = get_status_counts(repo.conn)
    finally:
        repo.close()

    print("PesaSync Status")
    print("=" * 40)
    print(f"  Total transactions:  {counts['total_txns']:,}")
    print(f"  Cleaned:             {counts['cleaned']:,}")
    print(f"  Pending review:      {counts['pending_review']:,}")
    print(f"  Rejected:            {counts['rejected']:,}")
    print(f"  Open reviews:        {counts['open_reviews']:,}")
    print(f"    fraud_suspicion:   {counts['open_fraud_reviews']:,}")
    print(f"  Active devices:      {counts['active_devices']:,}")
    print(f"  Last sync:           {counts['last_sync_at'] or 'never'}")
    return 0


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "ingest": cmd_ingest,
    "scan": cmd_scan,
    "review": cmd_review,
    "device": cmd_device,
    "status": cmd_status,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="pesasync",
        description="PesaSync M-PESA ingestion and review service",
    )
    subparsers = parser.add_subparsers(dest="command")

    # ingest
    ingest_p = subparsers.add_parser("ingest", help="Ingest a JSON upload body")
    ingest_p.add_argument("file", type=Path, help="JSON file: one record or {\"records\": [...]}")
    ingest_p.add_argument("--token", required=True, help="Device token")

    # scan
    scan_p = subparsers.add_parser("scan", help="Run the fraud scanner")
    scan_p.add_argument("--since", help="Window start (ISO 8601), default last 24h")

    # review
    review_p = subparsers.add_parser("review", help="List or resolve review items")
    review_sub = review_p.add_subparsers(dest="review_command")
    list_p = review_sub.add_parser("list", help="List open review items")
    list_p.add_argument("--limit", type=int, default=50)
    resolve_p = review_sub.add_parser("resolve", help="Resolve a review item")
    resolve_p.add_argument("review_id", help="Review item ID")
    resolve_p.add_argument("resolution", choices=["accepted", "rejected"])
    resolve_p.add_argument(
        "--set", action="append", metavar="FIELD=VALUE",
        help="Correct a transaction field (repeatable)",
    )

    # device
    device_p = subparsers.add_parser("device", help="Manage registered devices")
    device_sub = device_p.add_subparsers(dest="device_command")
    register_p = device_sub.add_parser("register", help="Register a device")
    register_p.add_argument("device_id", help="Device identifier")
    register_p.add_argument("--name", help="Display name")
    deactivate_p = device_sub.add_parser("deactivate", help="Deactivate a device")
    deactivate_p.add_argument("device_id", help="Device identifier")

    # status
    subparsers.add_parser("status", help="Show transaction and review counts")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
