#!/usr/bin/env python3
"""multibranch CLI - reconcile branch projects from the command line."""
from __future__ import annotations

import argparse
import sys
import time

# Fail fast on unsupported interpreter version
if sys.version_info < (3, 10):
    print(f"multibranch requires Python 3.10+; found {sys.version.split()[0]}", file=sys.stderr)
    sys.exit(1)


class PrintingScheduler:
    """Build scheduler that only reports what it would build."""

    def schedule(self, child, causes, actions) -> bool:
        reason = ", ".join(getattr(c, "description", type(c).__name__) for c in causes)
        print(f"build {child.display_name} ({reason})")
        child.last_build_time = time.time()
        return True


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(
        prog="multibranch",
        description="Keep branch projects in step with the branches of one or more repositories",
    )

    sub = ap.add_subparsers(dest="cmd")

    p_mangle = sub.add_parser("mangle", help="Print the encoded child name of each branch name")
    p_mangle.add_argument("names", nargs="+", help="Branch names")

    p_scan = sub.add_parser("scan", help="Scan git repositories as the sources of one container")
    p_scan.add_argument("repos", nargs="+", help="Repository paths, highest priority first")
    p_scan.add_argument("--name", help="Container name (default: first repository's directory name)")
    p_scan.add_argument("--state-dir", help="Persist branch projects here (default: in memory only)")
    p_scan.add_argument("--no-tags", action="store_true", help="Do not report tags")
    p_scan.add_argument("--project-path", help="Project directory for config discovery")

    p_unlock = sub.add_parser("unlock", help="Clear a container's advisory lock (debugging)")
    p_unlock.add_argument("state_dir", help="Container state directory")
    p_unlock.add_argument("--force", action="store_true", help="Remove lock even if active")

    # Config commands
    p_config = sub.add_parser("config", help="Configuration management")
    config_sub = p_config.add_subparsers(dest="config_cmd")

    p_config_show = config_sub.add_parser("show", help="Show resolved configuration as JSON")
    p_config_show.add_argument("--project-path", help="Project directory for config discovery")
    p_config_show.add_argument("--sources", action="store_true", help="Show config source files")

    p_config_validate = config_sub.add_parser("validate", help="Validate configuration files")
    p_config_validate.add_argument("--project-path", help="Project directory for config discovery")

    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(0)

    if args.cmd == "mangle":
        from .mangler import mangle

        for name in args.names:
            print(f"{name}\t{mangle(name)}")
        sys.exit(0)

    if args.cmd == "scan":
        from pathlib import Path
        from .config_loader import ConfigError, load_config
        from .container import MultiBranchContainer
        from .errors import MultibranchError
        from .git_source import GitRepositorySource
        from .model import BranchSource
        from .observability import TaskLog, apply_logging_config

        try:
            config = load_config(Path(args.project_path) if args.project_path else None)
        except ConfigError as e:
            print(f"Config error: {e}", file=sys.stderr)
            sys.exit(1)
        apply_logging_config(config.logging)

        sources = [
            BranchSource(
                GitRepositorySource(
                    Path(repo),
                    include_tags=not args.no_tags,
                    tag_prefixes=config.reconcile.tag_prefixes,
                )
            )
            for repo in args.repos
        ]
        name = args.name or Path(args.repos[0]).resolve().name
        container = MultiBranchContainer.from_config(
            name,
            sources,
            config,
            scheduler=PrintingScheduler(),
            state_dir=Path(args.state_dir) if args.state_dir else None,
        )
        log = TaskLog(sys.stdout)
        try:
            outcome = container.scan(log)
        except MultibranchError as e:
            print(f"Scan failed: {e}", file=sys.stderr)
            sys.exit(1)
        sys.exit(1 if outcome.failed_sources and len(outcome.failed_sources) == len(sources) else 0)

    if args.cmd == "unlock":
        from pathlib import Path
        from .constants import LOCK_FILE_NAME
        from .lock import AdvisoryLock

        lock_path = Path(args.state_dir) / LOCK_FILE_NAME
        if not lock_path.exists():
            print(f"No lock at {lock_path}")
            sys.exit(0)
        lock = AdvisoryLock(lock_path)
        info = lock.get_lock_info() or {}
        if not lock._is_stale() and not args.force:
            print(f"Lock is active (pid={info.get('pid', '?')}, since {info.get('time', '?')}); use --force", file=sys.stderr)
            sys.exit(1)
        lock_path.unlink(missing_ok=True)
        print(f"Removed lock {lock_path}")
        sys.exit(0)

    if args.cmd == "config":
        from pathlib import Path
        import json as json_module

        if not args.config_cmd:
            print("Usage: multibranch config {show|validate}")
            sys.exit(0)

        from .config_loader import ConfigError, get_config_paths, load_config

        project_path = Path(args.project_path) if args.project_path else None

        if args.config_cmd == "show":
            if args.sources:
                paths = get_config_paths(project_path)
                print("Config sources (in priority order):")
                print()
                for name, path in paths.items():
                    if path and path.exists():
                        print(f"  ✓ {name}: {path}")
                    elif path:
                        print(f"  ✗ {name}: {path} (not found)")
                    else:
                        print(f"  - {name}: (not applicable)")
                print()
                print("Environment variables override all file configs.")
                sys.exit(0)

            try:
                config = load_config(project_path)
            except ConfigError as e:
                print(f"❌ Config error: {e}", file=sys.stderr)
                sys.exit(1)
            print(json_module.dumps(config.model_dump(), indent=2))
            sys.exit(0)

        if args.config_cmd == "validate":
            try:
                config = load_config(project_path)
            except ConfigError as e:
                print(f"  ❌ {e}", file=sys.stderr)
                sys.exit(1)
            print("✓ Configuration is valid.")
            if config.dead_branches.prune and config.dead_branches.num_to_keep == -1 and config.dead_branches.days_to_keep == -1:
                print("  ⚠ prune is on but no limit is set; dead branches are kept.")
            sys.exit(0)


if __name__ == "__main__":
    main()
