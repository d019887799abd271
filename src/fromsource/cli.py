"""fromsource CLI: rebuild a package and its dependencies from source."""

import argparse
import sys
from importlib.metadata import version as get_version, PackageNotFoundError
from pathlib import Path


def _load_settings(args, **overrides):
    from .settings import Settings

    return Settings.load(
        args.settings,
        work_dir=args.work_dir,
        sdists_repo=args.sdists_repo,
        wheels_repo=args.wheels_repo,
        cache_dir=args.cache_dir,
        cache_url=args.cache_url,
        index_url=args.index_url,
        pre_built=args.pre_built,
        stop_on_first_failure=args.stop_on_first_failure,
        allow_prereleases=args.pre,
        **overrides,
    )


def _print_failures(failures) -> None:
    for failure in failures:
        print(f"Error: {failure.requirement}: {failure.error}", file=sys.stderr)


def _print_report(report, label: str, quiet: bool) -> None:
    for key in report.failed:
        print(f"Error: {key}: {report.errors[key]}", file=sys.stderr)
    if quiet:
        return
    status = "OK" if report.ok else "FAILED"
    print(f"[{status}] {label} complete")
    print(f"  Built: {len(report.succeeded)}")
    if report.failed:
        print(f"  Failed: {', '.join(report.failed)}")
    if report.skipped:
        print(f"  Skipped: {', '.join(report.skipped)}")


def main():
    """Main CLI entry point for fromsource commands."""
    try:
        fromsource_version = get_version("fromsource")
    except PackageNotFoundError:
        fromsource_version = "dev"

    parser = argparse.ArgumentParser(
        prog="fromsource",
        description="fromsource: build a package and its whole dependency tree from source"
    )
    parser.add_argument("--version", action="version", version=f"fromsource {fromsource_version}")

    # Common arguments
    parent_parser = argparse.ArgumentParser(add_help=False)
    parent_parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress all non-error output."
    )
    parent_parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Log progress (-v) or debug details (-vv) to stderr."
    )
    parent_parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Write logs to this file instead of stderr"
    )

    # Settings shared by the commands that build
    settings_parser = argparse.ArgumentParser(add_help=False)
    settings_parser.add_argument("--settings", type=Path, default=None, help="JSON settings file")
    settings_parser.add_argument("--work-dir", type=Path, default=None, help="Work directory (default: work-dir)")
    settings_parser.add_argument("--sdists-repo", type=Path, default=None, help="Where sdists are kept")
    settings_parser.add_argument("--wheels-repo", type=Path, default=None, help="Where built wheels are kept")
    settings_parser.add_argument("--cache-dir", type=Path, default=None, help="Local artifact cache directory")
    settings_parser.add_argument("--cache-url", default=None, help="Read-only remote artifact cache")
    settings_parser.add_argument("--index-url", default=None, help="Simple index to resolve versions from")
    settings_parser.add_argument(
        "--pre-built",
        action="append",
        default=None,
        metavar="NAME",
        help="Use an existing artifact for this package instead of building it (repeatable)"
    )
    settings_parser.add_argument(
        "--stop-on-first-failure",
        action="store_true",
        default=None,
        help="Stop after the first failed top-level requirement or build"
    )
    settings_parser.add_argument(
        "--pre",
        action="store_true",
        default=None,
        help="Allow pre-release versions"
    )

    requirements_parser = argparse.ArgumentParser(add_help=False)
    requirements_parser.add_argument(
        "-r", "--requirements-file",
        dest="requirements_files",
        type=Path,
        action="append",
        default=[],
        help="Requirements file (repeatable)"
    )
    requirements_parser.add_argument(
        "-c", "--constraints",
        type=Path,
        action="append",
        default=[],
        help="Constraints file (repeatable)"
    )
    requirements_parser.add_argument("requirements", nargs="*", help="Requirements, e.g. 'flit_core>=3.9'")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    bootstrap_parser = subparsers.add_parser(
        "bootstrap",
        help="Resolve and build requirements and everything they need",
        parents=[parent_parser, settings_parser, requirements_parser]
    )
    bootstrap_parser.add_argument(
        "--sdist-only",
        action="store_true",
        default=None,
        help="Build source distributions only (discovery mode)"
    )
    bootstrap_parser.add_argument(
        "--no-warm-start",
        action="store_true",
        help="Ignore graph.json from a previous run"
    )

    bootstrap_parallel_parser = subparsers.add_parser(
        "bootstrap-parallel",
        help="Discover the graph building sdists only, then build wheels in parallel",
        parents=[parent_parser, settings_parser, requirements_parser]
    )
    bootstrap_parallel_parser.add_argument("-m", "--max-workers", type=int, default=None, help="Worker count")

    build_parallel_parser = subparsers.add_parser(
        "build-parallel",
        help="Build every package of a graph.json with a worker pool",
        parents=[parent_parser, settings_parser]
    )
    build_parallel_parser.add_argument("graph", type=Path, help="Path to graph.json")
    build_parallel_parser.add_argument("-m", "--max-workers", type=int, default=None, help="Worker count")

    build_sequence_parser = subparsers.add_parser(
        "build-sequence",
        help="Build packages one at a time in build-order.json order",
        parents=[parent_parser, settings_parser]
    )
    build_sequence_parser.add_argument("build_order", type=Path, help="Path to build-order.json")

    stats_parser = subparsers.add_parser(
        "stats",
        help="Summarize a build-order.json",
        parents=[parent_parser]
    )
    stats_parser.add_argument("build_order", type=Path, help="Path to build-order.json")
    stats_parser.add_argument("requirements_file", type=Path, nargs="?", default=None,
                              help="Requirements file to check against the build order")
    stats_parser.add_argument("--json", action="store_true", help="Print stats as JSON")

    why_parser = subparsers.add_parser(
        "why",
        help="Explain why a package is part of a graph",
        parents=[parent_parser]
    )
    why_parser.add_argument("graph", type=Path, help="Path to graph.json")
    why_parser.add_argument("name", help="Package name")

    graph_parser = subparsers.add_parser(
        "graph",
        help="Graph inspection commands",
    )
    graph_subparsers = graph_parser.add_subparsers(dest="graph_command", help="Graph commands")
    graph_check_parser = graph_subparsers.add_parser(
        "check",
        help="Detect and classify cycles (exit 1 on build-time cycles)",
        parents=[parent_parser]
    )
    graph_check_parser.add_argument("graph", type=Path, help="Path to graph.json")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    from .logging_config import configure_logging, verbosity_to_level

    configure_logging(
        verbosity_to_level(getattr(args, "verbose", 0), getattr(args, "quiet", False)),
        getattr(args, "log_file", None),
    )

    if args.command in ("bootstrap", "bootstrap-parallel"):
        try:
            from . import api
            from .kernel.requirements import Constraints

            overrides = {}
            if args.command == "bootstrap":
                overrides["sdist_only"] = args.sdist_only
            settings = _load_settings(args, **overrides)

            constraints = Constraints()
            for path in args.constraints:
                constraints.add_file(path)
            reqs = api.load_requirements(args.requirements_files, args.requirements, constraints)
            if not reqs:
                print("Error: no requirements given (use -r FILE or list requirements)", file=sys.stderr)
                sys.exit(1)

            if args.command == "bootstrap":
                result = api.bootstrap(
                    reqs, settings, constraints=constraints, warm_start=not args.no_warm_start
                )
                _print_failures(result.failures)
                if not args.quiet:
                    status = "OK" if result.ok else "FAILED"
                    print(f"[{status}] Bootstrap complete")
                    print(f"  Packages: {len(result.graph)}")
                    print(f"  Graph: {settings.graph_path}")
                    print(f"  Build order: {settings.build_order_path}")
                    print(f"  Constraints: {settings.constraints_path}")
                    if result.install_cycles:
                        print(f"  Install-time cycles: {len(result.install_cycles)}")
                sys.exit(0 if result.ok else 1)

            run = api.bootstrap_parallel(
                reqs, settings, constraints=constraints, max_workers=args.max_workers
            )
            _print_failures(run.discovery.failures)
            if run.report is not None:
                _print_report(run.report, "Parallel build", args.quiet)
            elif not args.quiet:
                print("[FAILED] Discovery failed, nothing was built")
            sys.exit(0 if run.ok else 1)
        except (FileNotFoundError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    elif args.command == "build-parallel":
        try:
            from .api import build_parallel

            settings = _load_settings(args)
            report = build_parallel(args.graph, settings, max_workers=args.max_workers)
            _print_report(report, "Parallel build", args.quiet)
            sys.exit(0 if report.ok else 1)
        except (FileNotFoundError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    elif args.command == "build-sequence":
        try:
            from .api import build_sequence

            settings = _load_settings(args)
            report = build_sequence(args.build_order, settings)
            _print_report(report, "Build sequence", args.quiet)
            sys.exit(0 if report.ok else 1)
        except (FileNotFoundError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    elif args.command == "stats":
        try:
            from .api import load_requirements, stats
            from ._internal.canonical_json import canonical_dumps

            reqs = load_requirements([args.requirements_file]) if args.requirements_file else None
            result = stats(args.build_order, reqs)
            if args.json:
                print(canonical_dumps(result.model_dump(), indent=2))
            elif not args.quiet:
                print(f"Packages: {result.total}")
                print(f"  Built from source: {result.built}")
                print(f"  Pre-built: {result.prebuilt}")
                for edge_type, count in result.by_type.items():
                    print(f"  {edge_type}: {count}")
                if result.missing_requirements:
                    print(f"  Missing: {', '.join(result.missing_requirements)}")
            sys.exit(1 if result.missing_requirements else 0)
        except (FileNotFoundError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    elif args.command == "why":
        try:
            from .api import why

            chains = why(args.graph, args.name)
            if not args.quiet:
                for key, chain in chains.items():
                    print(key)
                    if not chain:
                        print("  (not reachable from the top level)")
                    for edge in chain:
                        parent = edge.parent_key or "(top level)"
                        print(f"  {parent} -> {edge.child_key} [{edge.edge_type.value}: {edge.requirement}]")
        except KeyError as e:
            print(f"Error: {e.args[0]}", file=sys.stderr)
            sys.exit(1)
        except (FileNotFoundError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    elif args.command == "graph" and args.graph_command == "check":
        try:
            from .api import check_graph

            check = check_graph(args.graph)
            for cycle in check.build_cycles:
                print(f"Error: build-time cycle: {cycle.describe()}", file=sys.stderr)
            if not args.quiet:
                status = "OK" if check.ok else "FAILED"
                print(f"[{status}] Graph check complete")
                print(f"  Packages: {check.packages}")
                print(f"  Edges: {check.edges}")
                print(f"  Build-time cycles: {len(check.build_cycles)}")
                print(f"  Install-time cycles: {len(check.install_cycles)}")
                for cycle in check.install_cycles:
                    print(f"    {cycle.describe()}")
            sys.exit(0 if check.ok else 1)
        except (FileNotFoundError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    elif args.command == "graph":
        graph_parser.print_help()
        sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
