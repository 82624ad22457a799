from __future__ import annotations

import argparse
import json
import logging
import os
import shlex
import subprocess
import sys
import textwrap
from pathlib import Path
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from rich.console import Console

from ._version import __version__
from .cache import ArchiveCache
from .client import RegistryClient
from .config import (
    DEFAULT_TIMEOUT_S,
    Config,
    ProjectConfig,
    config_path,
    load_config,
    load_project_config,
    save_config,
)
from .exceptions import ConfigError, PpmError, PpmHTTPError
from .installer import InstallReport, Installer
from .progress import InstallProgress
from .registry import NpmRegistry


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def _merge_cfg(base: Config, args: argparse.Namespace, project: ProjectConfig) -> Config:
    # CLI overrides env, env overrides ppm.json, ppm.json overrides the user config.
    registry_url = (
        getattr(args, "registry", None) or os.getenv("PPM_REGISTRY_URL") or project.registry_url or base.registry_url
    )
    timeout_s = getattr(args, "timeout_s", None) or os.getenv("PPM_TIMEOUT_S") or base.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = DEFAULT_TIMEOUT_S
    return Config(registry_url=registry_url, timeout_s=timeout_s_f)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ppm",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Prisma Package Manager (ppm): install npm registry packages into node_modules.",
        epilog=textwrap.dedent(
            """\
            Examples:
              $ ppm install lodash
              $ ppm install @babel/core@^7
              $ ppm uninstall lodash
              $ ppm list
              $ ppm update lodash
              $ ppm upgrade
              $ ppm run start

            Environment variables:
              PPM_REGISTRY_URL, PPM_TIMEOUT_S, PPM_CONFIG_PATH
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser, *, top_level: bool = False) -> None:
        # Accepted before and after the subcommand; the subcommand copy must not
        # clobber a value given before it, hence SUPPRESS there.
        default: Any = None if top_level else argparse.SUPPRESS
        parser.add_argument("--registry", default=default, help="Registry base URL (default: npmjs)")
        parser.add_argument("--timeout-s", type=float, default=default, help="HTTP timeout in seconds")
        parser.add_argument(
            "--project-dir",
            default="." if top_level else argparse.SUPPRESS,
            help="Project directory holding ppm.json, prisma.lock and node_modules (default: .)",
        )

    _add_runtime_overrides(p, top_level=True)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Log progress (-v) or debug output (-vv)")
    p.add_argument("--version", action="version", version=f"ppm {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    install = sub.add_parser(
        "install",
        aliases=["i"],
        help="Install a package with its dependencies, or everything in prisma.lock",
    )
    _add_runtime_overrides(install)
    install.add_argument("package", nargs="?", help="name, name@version, name@^major or name@~major.minor")
    install.add_argument("--strict", action="store_true", help="Exit 1 if any dependency failed to install")
    install.add_argument("--json", action="store_true", help="Output JSON")
    install.add_argument("--no-progress", action="store_true", help="Do not show the progress display")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Uninstall a package and prune unused ones")
    _add_runtime_overrides(uninstall)
    uninstall.add_argument("package", help="Package name")
    uninstall.add_argument("--json", action="store_true", help="Output JSON")

    update = sub.add_parser("update", help="Update a package to the latest version")
    _add_runtime_overrides(update)
    update.add_argument("package", help="Package name")
    update.add_argument("--json", action="store_true", help="Output JSON")
    update.add_argument("--no-progress", action="store_true", help="Do not show the progress display")

    upgrade = sub.add_parser("upgrade", help="Upgrade all packages in prisma.lock to their latest versions")
    _add_runtime_overrides(upgrade)
    upgrade.add_argument("--json", action="store_true", help="Output JSON")
    upgrade.add_argument("--no-progress", action="store_true", help="Do not show the progress display")

    lst = sub.add_parser("list", aliases=["ls"], help="List installed packages")
    _add_runtime_overrides(lst)
    lst.add_argument("--json", action="store_true", help="Output JSON")

    run = sub.add_parser("run", help="Run a script defined in package.json (like npm run)")
    _add_runtime_overrides(run)
    run.add_argument("script", help="Script name")
    run.add_argument("args", nargs=argparse.REMAINDER, help="Extra arguments passed to the script")

    cache = sub.add_parser("cache", help="Inspect the archive cache configured in ppm.json")
    _add_runtime_overrides(cache)
    cache_sub = cache.add_subparsers(dest="subcmd", required=True)
    cache_sub.add_parser("path", help="Print the cache directory")
    cache_sub.add_parser("list", help="List cached archives")
    cache_sub.add_parser("clear", help="Delete cached archives")

    cfg = sub.add_parser("config", help="Manage user config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry-url", help="Default registry base URL")
    cfg_set.add_argument("--timeout-s", type=float, help="Default HTTP timeout in seconds")

    return p


def _project(args: argparse.Namespace) -> ProjectConfig:
    return load_project_config(Path(getattr(args, "project_dir", ".")))


def _make_client(args: argparse.Namespace, project: ProjectConfig) -> RegistryClient:
    cfg = _merge_cfg(load_config(), args, project)
    return RegistryClient(registry_url=cfg.registry_url, timeout_s=cfg.timeout_s)


def _make_installer(
    client: RegistryClient, project: ProjectConfig, progress: InstallProgress | None = None
) -> Installer:
    cache = ArchiveCache(project.cache_dir) if project.cache_dir is not None else None
    return Installer(project_dir=project.root, source=NpmRegistry(client), cache=cache, progress=progress)


@contextmanager
def _install_progress(args: argparse.Namespace) -> Iterator[InstallProgress | None]:
    # Only on an interactive stderr, and never mixed with --json or -v log lines.
    console = Console(stderr=True)
    if args.json or args.no_progress or args.verbose or not console.is_terminal:
        yield None
        return
    with InstallProgress(console) as progress:
        yield progress


def _report_payload(report: InstallReport) -> dict[str, Any]:
    return {
        "root": report.root,
        "root_version": report.root_version,
        "installed": [
            {"name": p.name, "version": p.version, "depth": p.depth, "from_cache": p.from_cache}
            for p in report.installed
        ],
        "satisfied": list(report.satisfied),
        "failures": [
            {"name": f.name, "specifier": f.specifier, "kind": f.kind.value, "message": f.message, "depth": f.depth}
            for f in report.failures
        ],
        "lock_path": str(report.lock_path),
    }


def _print_report(report: InstallReport) -> None:
    for pkg in report.installed:
        suffix = " (cached)" if pkg.from_cache else ""
        print(f"installed: {pkg.name}@{pkg.version}{suffix}")
    for name in report.satisfied:
        print(f"already installed: {name}")
    for failure in report.failures:
        print(f"error: {failure.specifier}: {failure.message}", file=sys.stderr)
    if report.root is not None and report.root_version is not None and not report.root_failed:
        print(f"Installed {report.root}@{report.root_version} and dependencies.")


def _exit_code(reports: list[InstallReport], *, strict: bool = False) -> int:
    for report in reports:
        if report.root_failed:
            return 1
        if strict and report.failures:
            return 1
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    project = _project(args)
    client = _make_client(args, project)
    try:
        if not args.package and not Installer(project_dir=project.root).installed():
            print("No packages in prisma.lock to install.")
            return 0
        with _install_progress(args) as progress:
            installer = _make_installer(client, project, progress)
            if args.package:
                report = installer.install(args.package)
            else:
                report = installer.install_all()
    finally:
        client.close()

    if args.json:
        print(json.dumps(_report_payload(report), indent=2, sort_keys=True))
    else:
        _print_report(report)
        if report.root is None and not report.failures:
            print("All packages from prisma.lock installed.")
    return _exit_code([report], strict=args.strict)


def cmd_uninstall(args: argparse.Namespace) -> int:
    project = _project(args)
    installer = Installer(project_dir=project.root)
    result = installer.uninstall(args.package)

    if args.json:
        payload = {
            "name": result.name,
            "removed": result.removed,
            "pruned": list(result.pruned),
            "lock_path": str(result.lock_path),
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    if result.pruned:
        n = len(result.pruned)
        print(f"Pruned {n} unused dependenc{'y' if n == 1 else 'ies'}.")
    if result.removed:
        print(f"Uninstalled {result.name}")
    else:
        print(f"{result.name} is not installed.")
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    project = _project(args)
    client = _make_client(args, project)
    try:
        with _install_progress(args) as progress:
            report = _make_installer(client, project, progress).update(args.package)
    finally:
        client.close()

    if args.json:
        print(json.dumps(_report_payload(report), indent=2, sort_keys=True))
    else:
        _print_report(report)
        if not report.root_failed:
            print(f"Updated {report.root} to latest version.")
    return _exit_code([report])


def cmd_upgrade(args: argparse.Namespace) -> int:
    project = _project(args)
    client = _make_client(args, project)
    try:
        if not Installer(project_dir=project.root).installed():
            print("No packages in prisma.lock to upgrade.")
            return 0
        with _install_progress(args) as progress:
            reports = _make_installer(client, project, progress).upgrade()
    finally:
        client.close()

    if args.json:
        print(json.dumps([_report_payload(r) for r in reports], indent=2, sort_keys=True))
    else:
        for report in reports:
            _print_report(report)
        if not any(r.root_failed for r in reports):
            print("All packages upgraded to latest versions.")
    return _exit_code(reports)


def cmd_list(args: argparse.Namespace) -> int:
    project = _project(args)
    entries = Installer(project_dir=project.root).installed()

    if args.json:
        print(json.dumps(entries, indent=2, sort_keys=True))
        return 0
    if not entries:
        print("No packages installed.")
        return 0
    print("Installed packages:")
    for name in sorted(entries):
        print(f"- {name}@{entries[name]}")
    return 0


def _script_command(project: ProjectConfig, script: str, extra: list[str]) -> str:
    manifest = project.manifest_path
    if not manifest.is_file():
        raise PpmError(f"No package.json found in {project.root}.")
    try:
        pkg = json.loads(manifest.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigError(f"Failed to parse {manifest}: {e}") from e
    scripts = pkg.get("scripts") if isinstance(pkg, dict) else None
    if not isinstance(scripts, dict) or not isinstance(scripts.get(script), str):
        raise PpmError(f"Script '{script}' not found in package.json.")
    return " ".join([scripts[script], *(shlex.quote(a) for a in extra)])


def cmd_run(args: argparse.Namespace) -> int:
    project = _project(args)
    command = _script_command(project, args.script, list(args.args or []))
    proc = subprocess.run(command, shell=True, cwd=project.root)
    return proc.returncode


def cmd_cache(args: argparse.Namespace) -> int:
    project = _project(args)
    if project.cache_dir is None:
        print("Caching is disabled. Set customSettings.cacheDirectory in ppm.json to enable it.")
        return 0
    cache = ArchiveCache(project.cache_dir)

    if args.subcmd == "path":
        print(str(cache.root))
        return 0
    if args.subcmd == "list":
        rows = [["FILE", "BYTES"]]
        for p in cache.entries():
            rows.append([p.name, str(p.stat().st_size)])
        _print_table(rows)
        return 0
    if args.subcmd == "clear":
        removed = cache.clear()
        print(f"Removed {removed} cached archive(s).")
        return 0

    raise AssertionError("unreachable")


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        print(json.dumps(cfg.__dict__, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            registry_url=args.registry_url or cfg.registry_url,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def _format_http_error(err: PpmHTTPError) -> str:
    if err.status_code == 404:
        return "HTTP 404 Not Found."
    body = err.body.strip()
    if body:
        return f"HTTP {err.status_code} {body[:200]}"
    return f"HTTP {err.status_code}"


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd == "upgrade":
            return cmd_upgrade(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "run":
            return cmd_run(args)
        if args.cmd == "cache":
            return cmd_cache(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except PpmHTTPError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except PpmError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
