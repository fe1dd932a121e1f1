#!/usr/bin/env python3
"""
Migrate Docker images from a source registry to a destination registry.

Each image is copied blob by blob over the registry HTTP API: the config blob,
then the layers in manifest order, then the manifest. Blobs the destination
already has are skipped, and images whose manifest digest already matches at
the destination are skipped entirely, so re-running a migration is safe.

Workflow:
1. Verify connectivity to both registries
2. Resolve each requested image from the source registry
3. Dry run (default): report which images need copying
4. Apply: copy images concurrently, one worker per CPU, sharing the rate limit
5. Generate a migration summary report

Usage examples:
  # See which images would be copied (dry-run)
  python migrate_images.py --src-registry src.example.com --dest-registry dst.example.com --images app:v1,app:v2

  # Copy images listed in a file, capped at 10 MB/s overall
  python migrate_images.py --images-file images.txt --rate-limit 10000000 --apply

  # Force (skip confirmation)
  python migrate_images.py --images app:v1 --apply --force
"""

import argparse
import sys
from concurrent.futures import CancelledError
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

# Add parent directory to path for imports
_parent_dir = Path(__file__).parent.parent.absolute()
if str(_parent_dir) not in sys.path:
    sys.path.insert(0, str(_parent_dir))

from wormhole.config_manager import config_manager
from wormhole.error_utils import ActionableError
from wormhole.health_checks import HealthChecker
from wormhole.image import Image, parse_image_reference
from wormhole.logging_utils import get_logger, log_exception, setup_logging
from wormhole.migration_engine import MigrationEngine
from wormhole.registry_client import RegistryClient
from wormhole.report_utils import format_failure_table, save_json, sizeof_fmt
from wormhole.worker_pool import WorkerPool

logger = get_logger(__name__)


def read_image_list(images: Optional[str], images_file: Optional[str]) -> List[Tuple[str, str]]:
    """Collect (repository, reference) pairs from --images and --images-file.

    Blank lines and lines starting with '#' in the file are ignored. Duplicates
    are dropped, keeping the first occurrence.
    """
    entries = []
    if images:
        entries.extend(part for part in images.split(",") if part.strip())
    if images_file:
        with open(images_file, "r") as f:
            for line in f:
                line = line.split("#", 1)[0].strip()
                if line:
                    entries.append(line)

    refs = []
    seen = set()
    for entry in entries:
        ref = parse_image_reference(entry)
        if ref not in seen:
            seen.add(ref)
            refs.append(ref)
    return refs


def confirm_migration(count: int) -> bool:
    """Ask the operator to confirm copying count images."""
    print("\n" + "=" * 60)
    print("WARNING: You are about to PUSH images to the destination registry!")
    print("=" * 60)
    print(f"This will copy {count} images and overwrite differing tags.")
    print("=" * 60)

    while True:
        response = input("Are you sure you want to proceed? (yes/no): ").lower().strip()
        if response in ["yes", "y"]:
            return True
        elif response in ["no", "n"]:
            return False
        else:
            print("Please enter 'yes' or 'no'.")


def resolve_images(source: RegistryClient, refs: List[Tuple[str, str]]) -> Tuple[List[Image], List[dict]]:
    """Fetch each image's manifest from the source registry.

    Returns:
        Tuple of (resolved images, unresolved entries with their error)
    """
    images = []
    unresolved = []
    for i, (repository, reference) in enumerate(refs, 1):
        logger.info(f"  [{i}/{len(refs)}] Resolving {repository}:{reference}...")
        try:
            images.append(source.fetch_image(repository, reference))
        except ActionableError as e:
            logger.error(f"  Could not resolve {repository}:{reference}: {e.message}")
            unresolved.append({"image": f"{repository}:{reference}", "error": e.message})
    return images, unresolved


def parse_arguments(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="Migrate Docker images from one registry to another",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Dry run
  python migrate_images.py --src-registry src:5000 --dest-registry dst:5000 --images app:v1

  # Copy with a global 10 MB/s budget split across workers
  python migrate_images.py --images-file images.txt --rate-limit 10000000 --apply
        """,
    )

    parser.add_argument("--images", help="Comma-separated list of images (repo[:tag] or repo@digest)")
    parser.add_argument("--images-file", help="File with one image per line ('#' starts a comment)")
    parser.add_argument("--src-registry", help="Source registry URL (default: from config)")
    parser.add_argument("--dest-registry", help="Destination registry URL (default: from config)")
    parser.add_argument(
        "--rate-limit",
        type=float,
        help="Global transfer rate limit in bytes/sec, divided evenly across workers (default: from config)",
    )
    parser.add_argument("--workers", type=int, help="Number of workers (default: logical CPU count)")
    parser.add_argument(
        "--queue-size",
        type=int,
        help="Maximum submissions waiting for a worker, 0 = unbounded (default: from config)",
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Actually copy images (default: dry-run showing what would be copied)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report what would be copied, even when security.dry_run_by_default is false",
    )
    parser.add_argument("--force", action="store_true", help="Skip confirmation prompt when using --apply")
    parser.add_argument("--skip-health-checks", action="store_true", help="Do not ping the registries first")
    parser.add_argument("--output", help="Output file for migration report (default: reports/migration-report.json)")
    parser.add_argument("--timestamp", action="store_true", help="Append a timestamp to the report filename")
    parser.add_argument("--show-config", action="store_true", help="Print the effective configuration and exit")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")

    args = parser.parse_args(argv)
    if args.show_config:
        return args
    if args.apply and args.dry_run:
        parser.error("--apply and --dry-run are mutually exclusive")
    if not args.images and not args.images_file:
        parser.error("one of --images or --images-file is required")
    if args.rate_limit is not None and args.rate_limit <= 0:
        parser.error("--rate-limit must be a positive number of bytes/sec")
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be at least 1")
    if args.queue_size is not None and args.queue_size < 0:
        parser.error("--queue-size must be non-negative")
    return args


def resolve_dry_run(apply: bool, dry_run: bool) -> bool:
    """--dry-run and --apply win; otherwise security.dry_run_by_default decides."""
    if dry_run:
        return True
    if apply:
        return False
    return bool(config_manager.is_dry_run_by_default())


def build_client(url: Optional[str], side: str) -> RegistryClient:
    client = RegistryClient.from_config(config_manager, side)
    if url:
        insecure = client.base_url.startswith("http://")
        client = RegistryClient(
            url,
            insecure=insecure,
            tls_verify=client.tls_verify,
            timeout=client.timeout,
            chunk_size=client.chunk_size,
        )
    return client


def run_dry_run(engine: MigrationEngine, images: List[Image]) -> dict:
    """Check every image and count how many would be copied."""
    results = {"would_copy": [], "up_to_date": [], "failed": []}
    for i, image in enumerate(images, 1):
        try:
            needs_copy = engine.check(image)
        except ActionableError as e:
            logger.error(f"  [{i}/{len(images)}] Check failed for {image}: {e.message}")
            results["failed"].append({"image": str(image), "error": e.message})
            continue
        if needs_copy:
            size = sizeof_fmt(image.manifest.total_size)
            logger.info(f"  [{i}/{len(images)}] Would copy {image} ({size}, {len(image.manifest.layers)} layers)")
            results["would_copy"].append(str(image))
        else:
            logger.info(f"  [{i}/{len(images)}] Up to date: {image}")
            results["up_to_date"].append(str(image))
    return results


def run_migration(engine: MigrationEngine, images: List[Image], workers: Optional[int], queue_size: int,
                  rate_limit: Optional[float]) -> WorkerPool:
    """Submit every image to a worker pool and wait for all of them."""
    pool = WorkerPool(engine, size=workers, queue_size=queue_size)
    pool.configure(rate_limit)
    with pool:
        futures = [pool.submit(image) for image in images]
        for image, future in zip(images, futures):
            try:
                result = future.result()
                status = "copied" if result.copied else "up to date"
                logger.info(f"  [ok] {image} ({status})")
            except CancelledError:
                logger.warning(f"  [cancelled] {image}")
            except Exception:
                # Already recorded on pool.failures and logged by the worker
                logger.debug(f"  [err] {image}")
    return pool


def main(argv: Optional[List[str]] = None):
    args = parse_arguments(argv)
    setup_logging(args.log_level)

    if args.show_config:
        config_manager.print_config()
        return

    src_client = build_client(args.src_registry, "source")
    dest_client = build_client(args.dest_registry, "destination")
    rate_limit = args.rate_limit if args.rate_limit is not None else config_manager.get_rate_limit()
    workers = args.workers or config_manager.get_pool_size()
    queue_size = args.queue_size if args.queue_size is not None else config_manager.get_queue_size()
    output_file = args.output or config_manager.get_migration_report_path()
    dry_run = resolve_dry_run(args.apply, args.dry_run)

    try:
        # Print mode banner
        logger.info("=" * 60)
        if dry_run:
            logger.info("   IMAGE MIGRATION - DRY RUN MODE")
            logger.info("   No images will be copied. Use --apply to execute.")
        else:
            logger.info("   IMAGE MIGRATION - APPLY MODE")
            logger.warning("   Images WILL be pushed to the destination registry!")
        logger.info("=" * 60)
        logger.info(f"Source registry:      {src_client.registry_url}")
        logger.info(f"Destination registry: {dest_client.registry_url}")
        logger.info(f"Rate limit:           {f'{sizeof_fmt(rate_limit)}/s' if rate_limit else 'unthrottled'}")
        logger.info("")

        if not args.skip_health_checks:
            checker = HealthChecker(src_client, dest_client, config_manager)
            results = checker.run_all_checks()
            if not all(r.status for r in results):
                checker.print_health_report(results)
                logger.error("Health checks failed, aborting migration")
                sys.exit(1)

        refs = read_image_list(args.images, args.images_file)
        if not refs:
            logger.info("No images requested. Nothing to migrate.")
            sys.exit(0)

        logger.info(f"Resolving {len(refs)} images from the source registry...")
        images, unresolved = resolve_images(src_client, refs)

        engine = MigrationEngine(src_client, dest_client, chunk_size=config_manager.get_chunk_size())

        report = {
            "summary": {"requested": len(refs), "resolved": len(images), "unresolved": len(unresolved),
                        "dry_run": dry_run},
            "unresolved": unresolved,
            "metadata": {
                "source_registry": src_client.registry_url,
                "dest_registry": dest_client.registry_url,
                "rate_limit": rate_limit,
                "timestamp": datetime.now().isoformat(),
            },
        }

        failed = len(unresolved)
        if dry_run:
            check_results = run_dry_run(engine, images)
            report["check"] = check_results
            report["summary"]["would_copy"] = len(check_results["would_copy"])
            failed += len(check_results["failed"])
        elif images:
            if not args.force and config_manager.requires_confirmation():
                if not confirm_migration(len(images)):
                    logger.info("Operation cancelled by user")
                    sys.exit(0)

            pool = run_migration(engine, images, workers, queue_size, rate_limit)
            results = pool.results
            failures = pool.failures
            report["summary"].update({
                "workers": pool.size,
                "worker_rate_limit": pool.worker_rate_limit,
                "copied": sum(1 for r in results if r.copied),
                "up_to_date": sum(1 for r in results if not r.copied),
                "failed": len(failures),
                "bytes_uploaded": sum(r.bytes_uploaded for r in results),
            })
            report["results"] = [r.to_dict() for r in results]
            report["failures"] = [f.to_dict() for f in failures]
            failed += len(failures)

            if failures:
                logger.error("Failed migrations:\n" + format_failure_table(failures))

        output_file = save_json(output_file, report, timestamp=args.timestamp)

        # Print summary
        summary = report["summary"]
        logger.info("")
        logger.info("=" * 60)
        logger.info(f"   {'DRY RUN ' if dry_run else ''}MIGRATION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Images requested: {summary['requested']}")
        if dry_run:
            logger.info(f"Would copy:       {summary.get('would_copy', 0)}")
        else:
            logger.info(f"Copied:           {summary.get('copied', 0)}")
            logger.info(f"Up to date:       {summary.get('up_to_date', 0)}")
            logger.info(f"Transferred:      {sizeof_fmt(summary.get('bytes_uploaded', 0))}")
        if failed:
            logger.info(f"Failed:           {failed}")
        logger.info(f"\nReport saved to: {output_file}")

        if dry_run:
            logger.info("")
            logger.info("No changes were made. Use --apply to execute the migration.")

        if failed:
            sys.exit(1)

    except KeyboardInterrupt:
        logger.warning("\nMigration interrupted by user")
        logger.info("Re-run the same command to continue; images already copied will be skipped")
        sys.exit(1)
    except ActionableError as e:
        logger.error(f"\nMigration failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"\nMigration failed: {e}")
        log_exception(logger, "Error in migration", exc_info=e)
        sys.exit(1)


if __name__ == "__main__":
    main()
