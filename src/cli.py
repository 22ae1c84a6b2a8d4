#!/usr/bin/env python3
"""CLI entry point for release-driver.

Noun-action subcommands:
- release:  release-driver release run -c release.yaml [--pipeline deploy --tag 41]
- version:  release-driver version allocate -c release.yaml
- manifest: release-driver manifest patch --repo-dir DIR --file PATH --service S --tag T
- cluster:  release-driver cluster reconcile -c release.yaml [--tag T] [--manifest PATH]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from allocator import allocator_for
from config import ConfigError, load_release_config
from errors import ReleaseError
from pipelines import ReleaseExecutor, get_pipeline, list_pipelines

NOUN_COMMANDS = {
    "release": "Run or preview a release pipeline (run/plan)",
    "version": "Build identifier allocation (allocate)",
    "manifest": "GitOps manifest operations (patch)",
    "cluster": "Cluster operations (reconcile)",
}

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool, json_output: bool = False) -> None:
    """Configure logging; with --json-output logs go to stderr."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr if json_output else sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _common_parser(prog: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=f'release-driver {prog}', description=description)
    parser.add_argument('--config', '-c', help='Path to release.yaml')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    return parser


def _load_config(args):
    """Load config or exit with a readable error."""
    try:
        return load_release_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        raise SystemExit(2) from e


def release_main(action: str, argv: list) -> int:
    """Handle 'release run' and 'release plan'."""
    parser = _common_parser(f'release {action}', 'Run a release pipeline')
    parser.add_argument('--pipeline', '-p', default='release',
                        help=f'Pipeline to run. Available: {", ".join(list_pipelines())}')
    parser.add_argument('--tag', help='Existing image tag (required by the deploy pipeline)')
    parser.add_argument('--skip', action='append', default=[], metavar='STAGE',
                        help='Skip a stage (repeatable)')
    parser.add_argument('--timeout', type=int, help='Overall pipeline timeout in seconds')
    parser.add_argument('--json-output', action='store_true',
                        help='Output the report as JSON to stdout (logs to stderr)')
    args = parser.parse_args(argv)

    _setup_logging(args.verbose, args.json_output)
    config = _load_config(args)

    try:
        pipeline = get_pipeline(args.pipeline)
    except ValueError as e:
        logger.error(str(e))
        return 2

    context = {}
    if args.tag:
        context['image_tag'] = args.tag
    elif args.pipeline == 'deploy':
        logger.error("The deploy pipeline requires --tag")
        return 2

    executor = ReleaseExecutor(
        pipeline,
        config,
        skip_stages=args.skip,
        timeout=args.timeout,
        dry_run=(action == 'plan'),
        context=context,
    )
    executor.run()
    if action == 'plan':
        return 0

    report = executor.report
    if args.json_output:
        print(json.dumps(report.to_dict(executor.context), indent=2))
    elif abort := report.first_abort:
        logger.error(f"Release failed at stage '{abort.name}' ({abort.error_kind or 'failed'}): {abort.message}")
    for note in report.advisories:
        logger.warning(f"Advisory: {note}")
    return report.exit_code


def version_main(argv: list) -> int:
    """Handle 'version allocate'."""
    parser = _common_parser('version allocate', 'Allocate the next build identifier')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, json_output=True)
    config = _load_config(args)

    try:
        build_id = allocator_for(config.name, config.state_dir, config.version_source,
                                 config.version_env_var).allocate()
    except ReleaseError as e:
        logger.error(f"{e.kind}: {e}")
        return 1
    print(build_id)
    return 0


def manifest_main(argv: list) -> int:
    """Handle 'manifest patch' on an existing checkout."""
    from manifest_patch import ManifestPatcher

    parser = argparse.ArgumentParser(prog='release-driver manifest patch',
                                     description='Patch an image tag and push the commit')
    parser.add_argument('--repo-dir', required=True, help='Manifest repository working tree')
    parser.add_argument('--branch', default='main', help='Branch to push to')
    parser.add_argument('--file', required=True, help='Manifest path relative to the repo')
    parser.add_argument('--service', required=True, help='Service (image) name')
    parser.add_argument('--tag', required=True, help='New image tag')
    parser.add_argument('--verbose', '-v', action='store_true')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    patcher = ManifestPatcher(Path(args.repo_dir), args.branch)
    try:
        commit = patcher.patch_and_commit(args.file, args.service, args.tag)
    except ReleaseError as e:
        logger.error(f"{e.kind}: {e}")
        return 1
    print(commit.sha)
    return 0


def cluster_main(argv: list) -> int:
    """Handle 'cluster reconcile'."""
    from actions.deploy import make_reconciler
    from publisher import ImageReference

    parser = _common_parser('cluster reconcile', 'Reconcile the workload to an image tag')
    parser.add_argument('--tag', help='Image tag to converge on (default: the tag the manifest pins)')
    parser.add_argument('--manifest', help='Manifest used to create the workload if absent')
    parser.add_argument('--timeout', type=int, help='Rollout timeout in seconds')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)
    if not args.tag and not args.manifest:
        parser.error('one of --tag or --manifest is required')
    config = _load_config(args)

    desired = str(ImageReference(config.registry_uri, config.name, args.tag)) if args.tag else None
    try:
        result = make_reconciler(config).reconcile(
            config.namespace,
            config.workload,
            Path(args.manifest) if args.manifest else desired,
            args.timeout or config.rollout_timeout,
            desired_image=desired,
        )
    except ReleaseError as e:
        logger.error(f"{e.kind}: {e}")
        return 1
    print(f"{result.outcome}: {' -> '.join(result.transitions)}")
    return 0


def _usage() -> None:
    print("Usage: release-driver <noun> <action> [options]")
    print()
    print("Nouns:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<10} {desc}")


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to the noun-specific handler.

    Args:
        noun: The noun command (e.g., "release")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    action = argv[0] if argv else ''
    rest = argv[1:]

    if noun == "release" and action in ("run", "plan"):
        return release_main(action, rest)
    if noun == "version" and action == "allocate":
        return version_main(rest)
    if noun == "manifest" and action == "patch":
        return manifest_main(rest)
    if noun == "cluster" and action == "reconcile":
        return cluster_main(rest)

    print(f"Error: Unknown command '{noun} {action}'".rstrip())
    _usage()
    return 1


def main(argv=None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] in ('-h', '--help'):
        _usage()
        return 0 if argv else 1
    if argv[0] not in NOUN_COMMANDS:
        print(f"Error: Unknown noun '{argv[0]}'")
        _usage()
        return 1
    return dispatch_noun(argv[0], argv[1:])


if __name__ == '__main__':
    sys.exit(main())
