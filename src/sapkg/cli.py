from __future__ import annotations  # Python 3.6+ compatibility

"""sapkg CLI - cache-aware, security-gated package installs into venvs and containers"""

import argparse
import logging
import platform
import sys
from typing import List

from packaging.utils import canonicalize_name

from . import __version__
from .common_utils import format_size, safe_print
from .core import ConfigManager, SaCore
from .errors import ConfigurationError, SapkgError, VulnerabilityFeedError
from .i18n import _
from .isolation import temp_environment_name
from .isolation.local import LIST_FORMATS
from .models import AcquisitionOutcome, AcquisitionResult, BatchResult, EnvironmentTarget, PackageRequest

logger = logging.getLogger("sapkg")

OUTCOME_ICONS = {
    AcquisitionOutcome.SERVED_FROM_CACHE: "⚡",
    AcquisitionOutcome.INSTALLED: "✅",
    AcquisitionOutcome.NO_MIRROR_AVAILABLE: "🪞",
    AcquisitionOutcome.FETCH_FAILED: "🌐",
    AcquisitionOutcome.BLOCKED_BY_SECURITY: "🛡️",
    AcquisitionOutcome.INSTALL_FAILED: "❌",
    AcquisitionOutcome.CANCELLED: "⏹️",
}


def print_header(title):
    safe_print("\n" + "=" * 60)
    safe_print(f"  {title}")
    safe_print("=" * 60)


def print_result(result: AcquisitionResult):
    icon = OUTCOME_ICONS.get(result.outcome, "•")
    version = f"=={result.version}" if result.version else ""
    line = f"{icon} {result.request.name}{version}: {result.outcome.value}"
    if result.error:
        line += f" ({result.error})"
    safe_print(line)
    if result.outcome == AcquisitionOutcome.BLOCKED_BY_SECURITY:
        for vuln in result.vulnerabilities:
            safe_print(f"   • {vuln.severity.upper()} {vuln.id} [{vuln.version_range}]: {vuln.description}")
        safe_print(_("   Use --skip-security to install anyway."))


def print_batch(batch: BatchResult) -> int:
    for result in batch.results:
        print_result(result)
    if len(batch.results) > 1 or not batch.ok:
        safe_print(_("\n📦 {}").format(batch.summary()))
    if not batch.ok and len(batch.results) > 1:
        failed = ", ".join(r.request.name for r in batch.failed)
        safe_print(_("❌ Some packages failed: {}").format(failed))
    return 0 if batch.ok else 1


def _require_docker(core: SaCore):
    if not core.config_manager.get("docker_enabled", True):
        raise ConfigurationError("Docker support is disabled (config key 'docker_enabled')")
    if not core.environments.containers.available():
        raise ConfigurationError("The 'docker' executable was not found on PATH")


def _target_from_args(core: SaCore, args) -> EnvironmentTarget:
    container = getattr(args, "container", None)
    if container:
        _require_docker(core)
        return EnvironmentTarget.container(container, getattr(args, "image", None) or core.docker_image)
    return EnvironmentTarget.local(getattr(args, "venv", None) or core.venv_path)


def cmd_add(core: SaCore, args) -> int:
    target = _target_from_args(core, args)
    requests = [
        PackageRequest.parse(
            spec,
            target,
            mirror=args.mirror,
            skip_security=args.skip_security,
            refresh_cache=args.refresh_cache,
        )
        for spec in args.packages
    ]
    for request in requests:
        safe_print(_("📦 Adding package '{}'").format(request.spec))
    return print_batch(core.pipeline.acquire_many(requests))


def cmd_remove(core: SaCore, args) -> int:
    safe_print(_("🗑️  Removing package '{}'").format(args.package))
    if args.clean_cache:
        dropped = core.cache.remove_all(canonicalize_name(args.package))
        safe_print(_("   Removed {} cached version(s)").format(dropped))
    core.environments.local.uninstall_from_local(args.venv or core.venv_path, args.package)
    safe_print(_("✅ Successfully removed '{}'").format(args.package))
    return 0


def cmd_list(core: SaCore, args) -> int:
    safe_print(_("📋 Listing installed packages..."))
    safe_print(core.environments.local.list_installed(args.venv or core.venv_path, args.format).rstrip())
    return 0


def cmd_run(core: SaCore, args) -> int:
    if args.docker:
        _require_docker(core)
        containers = core.environments.containers
        env_name = temp_environment_name()
        target = EnvironmentTarget.container(env_name, args.docker_image or core.docker_image)
        try:
            result = core.pipeline.acquire(PackageRequest.parse(args.with_package, target))
            print_result(result)
            if not result.ok:
                return 1
            executed = containers.exec_in_container(env_name, ["python"] + args.script)
            return 0 if executed.ok else executed.exit_code
        finally:
            try:
                containers.remove_container(env_name)
            except SapkgError as e:
                logger.warning("Could not remove temporary image %s: %s", env_name, e)

    venv = args.venv or core.venv_path
    result = core.pipeline.acquire(PackageRequest.parse(args.with_package, EnvironmentTarget.local(venv)))
    print_result(result)
    if not result.ok:
        return 1
    if not args.script:
        return 0
    returncode = core.environments.local.run_in_local(venv, args.script)
    if returncode == 0:
        safe_print(_("✅ Script executed successfully"))
    return returncode


def cmd_cache(core: SaCore, args) -> int:
    cache = core.cache
    if args.cache_action == "clear":
        safe_print(_("🧹 Clearing package cache..."))
        cache.clear_all()
        safe_print(_("✅ Cache cleared successfully"))
    elif args.cache_action == "stats":
        count, size = cache.stats()
        safe_print(_("📊 Cache Statistics:"))
        safe_print(_("  Cached packages: {}").format(count))
        safe_print(_("  Total size: {}").format(format_size(size)))
        safe_print(_("  Cache directory: {}").format(cache.cache_dir))
    elif args.cache_action == "verify":
        safe_print(_("🔍 Verifying cache integrity..."))
        report = cache.verify()
        for name, version in report.stale:
            safe_print(_("  ⚠️  {}=={}: artifact missing").format(name, version))
        for name, version in report.corrupt:
            safe_print(_("  ❌ {}=={}: hash mismatch").format(name, version))
        for orphan in report.orphans:
            safe_print(_("  🗑️  orphan file: {}").format(orphan.name))
        safe_print(_("✅ Checked {} entries").format(report.checked))
        return 0 if report.healthy else 1
    elif args.cache_action == "optimize":
        safe_print(_("⚡ Optimizing cache storage..."))
        report = cache.optimize()
        safe_print(
            _("✅ Purged {} stale entries, {} orphan files ({})").format(
                len(report.stale) + len(report.corrupt),
                len(report.orphans),
                format_size(report.bytes_reclaimed),
            )
        )
    return 0


def cmd_security(core: SaCore, args) -> int:
    index = core.vulnerabilities
    if args.security_action == "update":
        safe_print(_("🔄 Updating vulnerability database..."))
        try:
            count = index.refresh()
        except VulnerabilityFeedError as e:
            safe_print(_("❌ Update failed, keeping previous database: {}").format(e))
            return 1
        safe_print(_("✅ Vulnerability database updated successfully ({} advisories)").format(count))
    elif args.security_action == "scan":
        safe_print(_("🔒 Scanning package '{}'...").format(args.package))
        found = index.scan(canonicalize_name(args.package), args.version)
        if not found:
            safe_print(_("✅ No vulnerabilities found"))
            return 0
        safe_print(_("⚠️  Found {} vulnerabilities:").format(len(found)))
        for vuln in found:
            safe_print(f"  • {vuln.severity.upper()} {vuln.id}: {vuln.description}")
        return 1
    elif args.security_action == "policy":
        safe_print(_("🛡️  Security Policy:"))
        policy = core.pipeline.policy
        for line in policy.describe():
            safe_print(f"  • {line}")
    return 0


def cmd_mirror(core: SaCore, args) -> int:
    registry = core.mirrors
    if args.mirror_action == "add":
        registry.add(args.name, args.url, set_default=args.default)
        safe_print(_("✅ Mirror '{}' added successfully").format(args.name))
    elif args.mirror_action == "remove":
        if registry.remove(args.name) == 0:
            safe_print(_("⚠️  No mirror named '{}'").format(args.name))
            return 1
        safe_print(_("✅ Mirror '{}' removed successfully").format(args.name))
    elif args.mirror_action == "list":
        safe_print(_("🪞 Configured Mirrors:"))
        for i, mirror in enumerate(registry.list_mirrors(), start=1):
            default = "default" if mirror.is_default else ""
            active = "active" if mirror.is_active else "inactive"
            safe_print(f"  {i}. {mirror.name} ({default}) [{active}] - {mirror.url}")
    elif args.mirror_action == "test":
        names = [args.name] if args.name else [m.name for m in registry.list_mirrors()]
        all_ok = True
        for name in names:
            reachable = registry.test(name)
            all_ok = all_ok and reachable
            safe_print(f"  {'✅' if reachable else '❌'} {name}")
        return 0 if all_ok else 1
    return 0


def cmd_docker(core: SaCore, args) -> int:
    _require_docker(core)
    containers = core.environments.containers
    if args.docker_action == "create":
        containers.create_container(args.name, args.image or core.docker_image, args.requirements)
        safe_print(_("✅ Environment '{}' created successfully").format(args.name))
    elif args.docker_action == "list":
        safe_print(_("🐳 Docker Environments:"))
        for i, name in enumerate(containers.list_containers(), start=1):
            safe_print(f"  {i}. {name}")
    elif args.docker_action == "remove":
        containers.remove_container(args.name)
        safe_print(_("✅ Environment '{}' removed").format(args.name))
    elif args.docker_action == "exec":
        result = containers.exec_in_container(args.name, args.command)
        return 0 if result.ok else result.exit_code
    return 0


def cmd_config(core: SaCore, args) -> int:
    manager = core.config_manager
    if args.config_action == "set":
        manager.set(args.key, _coerce(args.value))
        safe_print(_("✅ {} = {}").format(args.key, manager.get(args.key)))
    else:
        print_header(_("sapkg configuration ({})").format(manager.config_path))
        for key in sorted(manager.config):
            safe_print(f"  {key}: {manager.config[key]}")
    return 0


def _coerce(value: str):
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def cmd_version(args) -> int:
    safe_print(_("🚀 sapkg - Super Accelerated Python Package Manager"))
    safe_print(_("Version: {}").format(__version__))
    safe_print(_("Platform: {}").format(platform.system().lower()))
    safe_print(_("Architecture: {}").format(platform.machine()))
    return 0


def create_parser():
    parser = argparse.ArgumentParser(
        prog="sa",
        description=_("Super Accelerated Python Package Manager"),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help=_("Enable debug logging"))
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_target_options(p):
        p.add_argument("--venv", help=_("Virtual environment path (default: config venv_path)"))
        p.add_argument("--container", help=_("Install into this docker image instead of a venv"))
        p.add_argument("--image", help=_("Base image used when the container does not exist yet"))

    add_parser = subparsers.add_parser("add", help=_("Add packages to the environment"))
    add_parser.add_argument("packages", nargs="+", help=_("Package specs (name or name==version)"))
    add_parser.add_argument("--skip-security", action="store_true", help=_("Skip security scanning"))
    add_parser.add_argument("--mirror", help=_("Use a specific mirror"))
    add_parser.add_argument("--refresh-cache", action="store_true", help=_("Ignore the cache"))
    add_target_options(add_parser)

    install_parser = subparsers.add_parser("install", help=_("Install a single package"))
    install_parser.add_argument("packages", nargs=1, help=_("Package spec"))
    install_parser.add_argument("--skip-security", action="store_true", help=_("Skip security scanning"))
    install_parser.add_argument("--mirror", help=_("Use a specific mirror"))
    install_parser.add_argument("--refresh-cache", action="store_true", help=_("Ignore the cache"))
    add_target_options(install_parser)

    remove_parser = subparsers.add_parser("remove", help=_("Remove a package from the environment"))
    remove_parser.add_argument("package")
    remove_parser.add_argument("--clean-cache", action="store_true", help=_("Also drop cached artifacts"))
    remove_parser.add_argument("--venv", help=_("Virtual environment path"))

    uninstall_parser = subparsers.add_parser("uninstall", help=_("Uninstall a package (alias of remove)"))
    uninstall_parser.add_argument("package")
    uninstall_parser.add_argument("--clean-cache", action="store_true", help=_("Also drop cached artifacts"))
    uninstall_parser.add_argument("--venv", help=_("Virtual environment path"))

    list_parser = subparsers.add_parser("list", help=_("List packages installed in the environment"))
    list_parser.add_argument(
        "--format", choices=LIST_FORMATS, default="columns", help=_("Output format (default: columns)")
    )
    list_parser.add_argument("--venv", help=_("Virtual environment path"))

    run_parser = subparsers.add_parser("run", help=_("Run a Python script with a dependency"))
    run_parser.add_argument("--with", dest="with_package", required=True, help=_("Dependency to install first"))
    run_parser.add_argument("--docker", action="store_true", help=_("Run in a throwaway container"))
    run_parser.add_argument("--docker-image", help=_("Base image for --docker"))
    run_parser.add_argument("--venv", help=_("Virtual environment path"))
    run_parser.add_argument("script", nargs=argparse.REMAINDER, help=_("Script and arguments"))

    cache_parser = subparsers.add_parser("cache", help=_("Cache management"))
    cache_sub = cache_parser.add_subparsers(dest="cache_action", required=True)
    cache_sub.add_parser("clear", help=_("Clear all cached packages"))
    cache_sub.add_parser("stats", help=_("Show cache statistics"))
    cache_sub.add_parser("verify", help=_("Verify cache integrity"))
    cache_sub.add_parser("optimize", help=_("Purge stale entries and orphan files"))

    security_parser = subparsers.add_parser("security", help=_("Security scanning"))
    security_sub = security_parser.add_subparsers(dest="security_action", required=True)
    scan_parser = security_sub.add_parser("scan", help=_("Scan a package for vulnerabilities"))
    scan_parser.add_argument("package")
    scan_parser.add_argument("--version", default="latest")
    security_sub.add_parser("update", help=_("Update vulnerability database"))
    security_sub.add_parser("policy", help=_("Show security policy"))

    mirror_parser = subparsers.add_parser("mirror", help=_("Mirror configuration"))
    mirror_sub = mirror_parser.add_subparsers(dest="mirror_action", required=True)
    mirror_add = mirror_sub.add_parser("add", help=_("Add a new mirror"))
    mirror_add.add_argument("name")
    mirror_add.add_argument("url")
    mirror_add.add_argument("--default", action="store_true", help=_("Set as default"))
    mirror_remove = mirror_sub.add_parser("remove", help=_("Remove a mirror"))
    mirror_remove.add_argument("name")
    mirror_sub.add_parser("list", help=_("List configured mirrors"))
    mirror_test = mirror_sub.add_parser("test", help=_("Test mirror connectivity"))
    mirror_test.add_argument("name", nargs="?")

    docker_parser = subparsers.add_parser("docker", help=_("Docker environments"))
    docker_sub = docker_parser.add_subparsers(dest="docker_action", required=True)
    docker_create = docker_sub.add_parser("create", help=_("Create a Docker environment"))
    docker_create.add_argument("name")
    docker_create.add_argument("--image", help=_("Base image"))
    docker_create.add_argument("-r", "--requirements", help=_("Requirements file"))
    docker_sub.add_parser("list", help=_("List Docker environments"))
    docker_remove = docker_sub.add_parser("remove", help=_("Remove a Docker environment"))
    docker_remove.add_argument("name")
    docker_exec = docker_sub.add_parser("exec", help=_("Execute a command in an environment"))
    docker_exec.add_argument("name")
    docker_exec.add_argument("command", nargs=argparse.REMAINDER)

    config_parser = subparsers.add_parser("config", help=_("View or edit configuration"))
    config_sub = config_parser.add_subparsers(dest="config_action", required=True)
    config_sub.add_parser("show", help=_("Show configuration"))
    config_set = config_sub.add_parser("set", help=_("Set a configuration value"))
    config_set.add_argument("key")
    config_set.add_argument("value")

    subparsers.add_parser("version", help=_("Show the sapkg version"))
    return parser


COMMANDS = {
    "add": cmd_add,
    "install": cmd_add,
    "remove": cmd_remove,
    "uninstall": cmd_remove,
    "list": cmd_list,
    "run": cmd_run,
    "cache": cmd_cache,
    "security": cmd_security,
    "mirror": cmd_mirror,
    "docker": cmd_docker,
    "config": cmd_config,
}


def main(argv: List[str] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command == "version":
        return cmd_version(args)

    try:
        config_manager = ConfigManager()
        _.set_language(config_manager.get("language", "en"))
        core = SaCore(config_manager)
    except ConfigurationError as e:
        safe_print(_("❌ Configuration error: {}").format(e), file=sys.stderr)
        return 1

    try:
        return COMMANDS[args.command](core, args)
    except SapkgError as e:
        safe_print(f"❌ {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        safe_print(_("\n⏹️  Interrupted"), file=sys.stderr)
        return 130
    finally:
        core.close()


if __name__ == "__main__":
    sys.exit(main())
