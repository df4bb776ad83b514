#!/usr/bin/env python3
"""gdm CLI - reconcile release branches and open the release pull request."""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Fail fast on unsupported interpreter version
if sys.version_info < (3, 10):
    print(f"gdm requires Python 3.10+; found {sys.version.split()[0]}", file=sys.stderr)
    sys.exit(1)

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CONFIG = 2
EXIT_REPOSITORY = 3


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="gdm",
        description="Reconcile release branches and open the release pull request",
    )
    ap.add_argument(
        "-p", "--path",
        default=os.getcwd(),
        help="Repository working copy (default: current directory)",
    )

    # Lets -p appear after the subcommand too
    path_after = argparse.ArgumentParser(add_help=False)
    path_after.add_argument("-p", "--path", default=argparse.SUPPRESS, help=argparse.SUPPRESS)

    sub = ap.add_subparsers(dest="cmd")

    p_release = sub.add_parser("release", parents=[path_after], help="Create a new release")
    p_release.add_argument("base", help="Base branch used to create a release")
    p_release.add_argument("target", help="Target branch used to create a release")
    p_release.add_argument("-r", "--remote", help="Remote name (default: origin or config)")
    p_release.add_argument("--dry-run", action="store_true", help="Assemble the release without opening a pull request")
    p_release.add_argument("--draft", action="store_true", default=None, help="Open the pull request as a draft")

    p_status = sub.add_parser("status", parents=[path_after], help="Show where a branch exists and how it compares")
    p_status.add_argument("branch", help="Branch name")
    p_status.add_argument("-r", "--remote", help="Remote name (default: origin or config)")

    p_config = sub.add_parser("config", help="Show configuration or store credentials")
    config_sub = p_config.add_subparsers(dest="config_cmd")

    p_config_show = config_sub.add_parser("show", parents=[path_after], help="Show resolved configuration")
    p_config_show.add_argument("--sources", action="store_true", help="Show config source files")

    p_config_creds = config_sub.add_parser(
        "credentials", help="Store tokens in ~/.gdm/credentials.toml"
    )
    p_config_creds.add_argument("--git-username", help="Username sent with the git token")
    p_config_creds.add_argument("--git-token", help="Token for fetch and push")
    p_config_creds.add_argument("--azure-token", help="Azure DevOps personal access token")

    return ap


def _open(args: argparse.Namespace):
    """Load config and open the repository; exits on failure."""
    from pathlib import Path

    from .config_loader import ConfigError, load_config
    from .credentials import git_credential_supplier
    from .git_provider import GitPythonProvider, RepositoryError

    path = Path(args.path).expanduser()
    try:
        config = load_config(path)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG)

    if args.remote:
        config = config.model_copy(
            update={"remote": config.remote.model_copy(update={"name": args.remote})}
        )

    try:
        git = GitPythonProvider.open(
            path,
            remote=config.remote.name,
            credentials=git_credential_supplier(),
            timeout=config.git.timeout_seconds,
        )
    except RepositoryError as e:
        print(f"Repository error: {e}", file=sys.stderr)
        sys.exit(EXIT_REPOSITORY)
    return config, git


async def _release(args: argparse.Namespace) -> int:
    from .credentials import get_work_tracking_token
    from .git_provider import RepositoryError
    from .observability import get_logger
    from .pipeline import ReleaseAborted, ReleasePipeline
    from .workitems import WorkTrackingClient

    config, git = _open(args)
    if args.draft is not None:
        config = config.model_copy(
            update={"release": config.release.model_copy(update={"draft": args.draft})}
        )

    logger = get_logger()
    client = None
    if config.work_tracking.enabled:
        token = get_work_tracking_token()
        if token:
            client = WorkTrackingClient(config.work_tracking, token, logger.child("work_tracking"))
        else:
            logger.warning("Work tracking configured but no token found (set GDM_AZURE_TOKEN)")

    if client is None and not args.dry_run:
        print(
            "Work tracking is not configured; pass --dry-run or set work_tracking in .gdm/config.toml",
            file=sys.stderr,
        )
        return EXIT_CONFIG

    pipeline = ReleasePipeline(git, config, logger, work_tracking=client, dry_run=args.dry_run)
    try:
        context = await pipeline.run(args.base, args.target)
    except ReleaseAborted as e:
        print(f"Release aborted: {e}", file=sys.stderr)
        return EXIT_ABORTED
    except RepositoryError as e:
        print(f"Repository error: {e}", file=sys.stderr)
        return EXIT_REPOSITORY
    finally:
        if client is not None:
            await client.aclose()

    print(context.title)
    print(f"  {context.target_name} is {context.ahead} ahead, {context.behind} behind {context.base_name}")
    print(f"  Tickets: {', '.join(f'#{i}' for i in context.ids) if context.ids else 'none'}")
    if context.pull_request is not None:
        print(f"  Pull request: {context.pull_request.web_url or context.pull_request.url}")
    else:
        print("  Dry run: no pull request created")
    return EXIT_OK


async def _status(args: argparse.Namespace) -> int:
    from .git_provider import RepositoryError
    from .observability import get_logger
    from .pipeline import ReleaseAborted, ReleasePipeline

    config, git = _open(args)
    pipeline = ReleasePipeline(git, config, get_logger(), dry_run=True)
    try:
        state, divergence = await pipeline.inspect(args.branch)
    except ReleaseAborted as e:
        print(f"Status aborted: {e}", file=sys.stderr)
        return EXIT_ABORTED
    except RepositoryError as e:
        print(f"Repository error: {e}", file=sys.stderr)
        return EXIT_REPOSITORY

    print(f"{args.branch}: {state.value}")
    if divergence is not None:
        print(f"  local is {divergence.value} {config.remote.name}/{args.branch}")
    return EXIT_OK


def _config_show(args: argparse.Namespace) -> int:
    from pathlib import Path

    import tomlkit

    from .config_loader import ConfigError, get_config_paths, load_config

    path = Path(args.path).expanduser()
    if args.sources:
        print("Config sources:")
        for name, source in get_config_paths(path).items():
            if source is None:
                print(f"  - {name}: (no .gdm directory found)")
            elif source.exists():
                print(f"  + {name}: {source}")
            else:
                print(f"  x {name}: {source} (not found)")
        print("GDM_* environment variables override all files.")
        return EXIT_OK

    try:
        config = load_config(path)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    doc = tomlkit.document()
    doc.add(tomlkit.comment(" gdm configuration (resolved)"))
    doc.add(tomlkit.nl())
    for section, values in config.model_dump().items():
        doc.add(section, values)
    print(tomlkit.dumps(doc))
    return EXIT_OK


def _config_credentials(args: argparse.Namespace) -> int:
    from .credentials import load_credentials, save_credentials

    if args.git_username is None and args.git_token is None and args.azure_token is None:
        print("Nothing to store; pass --git-username, --git-token or --azure-token", file=sys.stderr)
        return EXIT_CONFIG

    creds = load_credentials()
    git = creds.git.model_copy(
        update={
            k: v
            for k, v in (("username", args.git_username), ("token", args.git_token))
            if v is not None
        }
    )
    work_tracking = creds.work_tracking
    if args.azure_token is not None:
        work_tracking = work_tracking.model_copy(update={"token": args.azure_token})

    path = save_credentials(creds.model_copy(update={"git": git, "work_tracking": work_tracking}))
    print(f"Credentials saved to {path}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    ap = _build_parser()
    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(EXIT_OK)

    if args.cmd == "release":
        sys.exit(asyncio.run(_release(args)))

    if args.cmd == "status":
        sys.exit(asyncio.run(_status(args)))

    if args.cmd == "config":
        if args.config_cmd == "show":
            sys.exit(_config_show(args))
        if args.config_cmd == "credentials":
            sys.exit(_config_credentials(args))
        print("Usage: gdm config {show|credentials}")
        sys.exit(EXIT_CONFIG)

    ap.print_help()
    sys.exit(EXIT_CONFIG)


if __name__ == "__main__":
    main()
