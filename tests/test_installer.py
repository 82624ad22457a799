import io
import json
import shutil
import tarfile
import tempfile
import unittest
from contextlib import contextmanager
from pathlib import Path

from ppm.cache import ArchiveCache
from ppm.exceptions import ConfigError, PackageNotFoundError, PpmHTTPError, PpmNetworkError
from ppm.installer import FailureKind, InstallPhase, Installer
from ppm.registry import RegistryMetadata, VersionInfo
from ppm.versions import sort_versions


def _tarball(files: dict[str, str | bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, content in files.items():
            data = content if isinstance(content, bytes) else content.encode("utf-8")
            info = tarfile.TarInfo(f"package/{name}")
            info.size = len(data)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class _BrokenStream(io.RawIOBase):
    """Returns a prefix of the body, then fails like a dropped connection."""

    def __init__(self, prefix: bytes) -> None:
        self._prefix = prefix

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if not self._prefix:
            raise PpmNetworkError("Download failed: connection reset")
        n = min(len(buffer), len(self._prefix))
        buffer[:n] = self._prefix[:n]
        self._prefix = self._prefix[n:]
        return n


class FakeRegistry:
    """packages[name][version] -> declared dependencies."""

    def __init__(self, packages: dict[str, dict[str, dict[str, str]]], *, latest: dict[str, str] | None = None) -> None:
        self.packages = packages
        self.latest = dict(latest or {})
        self.metadata_calls: list[str] = []
        self.tarball_calls: list[str] = []
        self.on_metadata = None

    @staticmethod
    def url(name: str, version: str) -> str:
        return f"https://registry.test/{name}/-/{version}.tgz"

    def archive(self, name: str, version: str) -> bytes:
        manifest = {"name": name, "version": version, "dependencies": self.packages[name][version]}
        return _tarball({"package.json": json.dumps(manifest), "index.js": f"// {name}@{version}\n"})

    def get_metadata(self, name: str) -> RegistryMetadata:
        self.metadata_calls.append(name)
        if self.on_metadata is not None:
            self.on_metadata(name)
        if name not in self.packages:
            raise PackageNotFoundError(name)
        versions = {
            v: VersionInfo(version=v, tarball_url=self.url(name, v), dependencies=dict(deps))
            for v, deps in self.packages[name].items()
        }
        latest = self.latest.get(name) or sort_versions(list(versions))[0]
        return RegistryMetadata(name=name, dist_tags={"latest": latest}, versions=versions)

    @contextmanager
    def open_tarball(self, url: str):
        self.tarball_calls.append(url)
        for name, versions in self.packages.items():
            for version in versions:
                if self.url(name, version) == url:
                    yield io.BytesIO(self.archive(name, version))
                    return
        raise PpmHTTPError(404, "missing tarball")


def _lock(root: Path) -> dict:
    return json.loads((root / "prisma.lock").read_text(encoding="utf-8"))


class TestInstall(unittest.TestCase):
    def test_leaf_install_writes_exact_lock_and_flat_contents(self) -> None:
        repo = FakeRegistry({"pkg": {"1.0.0": {}, "1.1.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            report = Installer(project_dir=root, source=repo).install("pkg")

            self.assertTrue(report.ok)
            self.assertEqual(report.root, "pkg")
            self.assertEqual(report.root_version, "1.1.0")
            self.assertEqual(_lock(root), {"dependencies": {"pkg": "1.1.0"}})
            pkg_dir = root / "node_modules" / "pkg"
            self.assertEqual(sorted(p.name for p in pkg_dir.iterdir()), ["index.js", "package.json"])

    def test_same_session_installs_once(self) -> None:
        repo = FakeRegistry({"pkg": {"1.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            installer = Installer(project_dir=Path(td), source=repo)
            session: set[str] = set()

            first = installer.install("pkg", session=session)
            second = installer.install("pkg", session=session)

            self.assertEqual(len(first.installed), 1)
            self.assertEqual(second.installed, ())
            self.assertEqual(second.satisfied, ())
            self.assertEqual(repo.metadata_calls, ["pkg"])
            self.assertEqual(len(repo.tarball_calls), 1)

    def test_locked_package_is_not_refetched(self) -> None:
        repo = FakeRegistry({"pkg": {"1.0.0": {}, "2.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            installer = Installer(project_dir=Path(td), source=repo)
            installer.install("pkg@1.0.0")

            # Lock entries satisfy any later range, even one they do not match.
            report = installer.install("pkg@^2")

            self.assertEqual(report.satisfied, ("pkg",))
            self.assertEqual(report.root_version, "1.0.0")
            self.assertEqual(repo.metadata_calls, ["pkg"])

    def test_dependencies_install_depth_first_in_declaration_order(self) -> None:
        repo = FakeRegistry(
            {
                "app": {"1.0.0": {"b": "^1", "c": "1.0.0"}},
                "b": {"1.0.0": {"d": "~1.0"}},
                "c": {"1.0.0": {}},
                "d": {"1.0.0": {}, "1.1.0": {}},
            }
        )
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            report = Installer(project_dir=root, source=repo).install("app")

            self.assertEqual([p.name for p in report.installed], ["app", "b", "d", "c"])
            self.assertEqual([p.depth for p in report.installed], [0, 1, 2, 1])
            self.assertEqual(
                _lock(root)["dependencies"],
                {"app": "1.0.0", "b": "1.0.0", "c": "1.0.0", "d": "1.0.0"},
            )

    def test_shared_dependency_keeps_first_visited_version(self) -> None:
        repo = FakeRegistry(
            {
                "app": {"1.0.0": {"b": "1.0.0", "c": "^1"}},
                "c": {"1.0.0": {"b": "^2"}},
                "b": {"1.0.0": {}, "2.0.0": {}},
            }
        )
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            Installer(project_dir=root, source=repo).install("app")
            self.assertEqual(_lock(root)["dependencies"]["b"], "1.0.0")

    def test_circular_dependencies_terminate(self) -> None:
        repo = FakeRegistry({"a": {"1.0.0": {"b": "1.0.0"}}, "b": {"1.0.0": {"a": "1.0.0"}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            report = Installer(project_dir=root, source=repo).install("a")

            self.assertEqual([p.name for p in report.installed], ["a", "b"])
            self.assertEqual(repo.metadata_calls, ["a", "b"])
            self.assertEqual(_lock(root)["dependencies"], {"a": "1.0.0", "b": "1.0.0"})

    def test_broken_branch_does_not_stop_siblings(self) -> None:
        repo = FakeRegistry(
            {
                "app": {"1.0.0": {"ghost": "1.0.0", "old": "^9", "ok": "^1"}},
                "old": {"1.0.0": {}},
                "ok": {"1.0.0": {}},
            }
        )
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            report = Installer(project_dir=root, source=repo).install("app")

            self.assertFalse(report.ok)
            self.assertFalse(report.root_failed)
            kinds = {f.name: f.kind for f in report.failures}
            self.assertEqual(kinds, {"ghost": FailureKind.NOT_FOUND, "old": FailureKind.NOT_FOUND})
            self.assertIn("Available versions: 1.0.0", next(f.message for f in report.failures if f.name == "old"))
            self.assertEqual(_lock(root)["dependencies"], {"app": "1.0.0", "ok": "1.0.0"})
            self.assertTrue((root / "node_modules" / "ok" / "package.json").is_file())

    def test_root_failure_leaves_no_lock(self) -> None:
        repo = FakeRegistry({"pkg": {"1.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            report = Installer(project_dir=root, source=repo).install("pkg@2.0.0")

            self.assertTrue(report.root_failed)
            self.assertIsNone(report.root_version)
            self.assertFalse((root / "prisma.lock").exists())

    def test_scoped_package_layout(self) -> None:
        repo = FakeRegistry({"@scope/pkg": {"1.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            cache = ArchiveCache(root / ".ppm-cache")
            Installer(project_dir=root, source=repo, cache=cache).install("@scope/pkg@1.0.0")

            self.assertTrue((root / "node_modules" / "@scope" / "pkg" / "package.json").is_file())
            self.assertTrue((root / ".ppm-cache" / "@scope__pkg-1.0.0.tgz").is_file())
            self.assertEqual(_lock(root)["dependencies"], {"@scope/pkg": "1.0.0"})

    def test_malformed_lock_fails_before_any_work(self) -> None:
        repo = FakeRegistry({"pkg": {"1.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "prisma.lock").write_text("{oops", encoding="utf-8")
            with self.assertRaises(ConfigError):
                Installer(project_dir=root, source=repo).install("pkg")
            self.assertEqual(repo.metadata_calls, [])

    def test_malformed_dependency_manifest_is_reported(self) -> None:
        repo = FakeRegistry({"pkg": {"1.0.0": {}}})
        repo.archive = lambda name, version: _tarball({"package.json": "{broken"})  # type: ignore[method-assign]
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            report = Installer(project_dir=root, source=repo).install("pkg")

            self.assertEqual([p.name for p in report.installed], ["pkg"])
            self.assertEqual([f.kind for f in report.failures], [FailureKind.CONFIG])
            self.assertEqual(_lock(root)["dependencies"], {"pkg": "1.0.0"})

    def test_undecodable_dependency_manifest_is_reported(self) -> None:
        repo = FakeRegistry({"app": {"1.0.0": {"dep": "1.0.0"}}, "dep": {"1.0.0": {}}, "next": {"1.0.0": {}}})
        original = repo.archive

        def _archive(name: str, version: str) -> bytes:
            if name == "dep":
                return _tarball({"package.json": b'{"description": "caf\xe9"}'})
            return original(name, version)

        repo.archive = _archive  # type: ignore[method-assign]
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            installer = Installer(project_dir=root, source=repo)
            report = installer.install("app")

            self.assertFalse(report.root_failed)
            self.assertEqual([(f.name, f.kind, f.depth) for f in report.failures], [("dep", FailureKind.CONFIG, 1)])
            self.assertEqual(_lock(root)["dependencies"], {"app": "1.0.0", "dep": "1.0.0"})
            # Later installs are unaffected.
            self.assertTrue(installer.install("next").ok)

    def test_invalid_dependency_name_fails_only_that_dependency(self) -> None:
        repo = FakeRegistry({"app": {"1.0.0": {"a/b/c": "1.0.0", "ok": "1.0.0"}}, "ok": {"1.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            report = Installer(project_dir=root, source=repo).install("app")

            self.assertFalse(report.root_failed)
            self.assertEqual([p.name for p in report.installed], ["app", "ok"])
            self.assertEqual([(f.name, f.specifier, f.depth) for f in report.failures], [("a/b/c", "a/b/c@1.0.0", 1)])
            self.assertEqual(_lock(root)["dependencies"], {"app": "1.0.0", "ok": "1.0.0"})

    def test_progress_phases_are_reported_per_package(self) -> None:
        repo = FakeRegistry({"app": {"1.0.0": {"ghost": "1.0.0"}}})
        events: list[tuple[str, InstallPhase, str | None]] = []
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            installer = Installer(
                project_dir=root,
                source=repo,
                cache=ArchiveCache(root / "cache"),
                progress=lambda name, phase, version: events.append((name, phase, version)),
            )
            installer.install("app")

        self.assertEqual(
            events,
            [
                ("app", InstallPhase.METADATA, None),
                ("app", InstallPhase.DOWNLOAD, "1.0.0"),
                ("app", InstallPhase.EXTRACT, "1.0.0"),
                ("app", InstallPhase.DONE, "1.0.0"),
                ("ghost", InstallPhase.METADATA, None),
                ("ghost", InstallPhase.FAILED, None),
            ],
        )

    def test_cache_hit_skips_download_phase(self) -> None:
        repo = FakeRegistry({"pkg": {"1.0.0": {}}})
        phases: list[InstallPhase] = []
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            cache = ArchiveCache(root / "cache")
            Installer(project_dir=root, source=repo, cache=cache).install("pkg")
            shutil.rmtree(root / "node_modules")

            Installer(
                project_dir=root,
                source=repo,
                cache=cache,
                progress=lambda name, phase, version: phases.append(phase),
            ).install_all()

        self.assertEqual(phases, [InstallPhase.METADATA, InstallPhase.EXTRACT, InstallPhase.DONE])

    def test_concurrent_writers_are_not_coordinated(self) -> None:
        # Single-writer assumption: a second installer writing the same lock while the
        # first one is mid-walk loses its entry when the first one persists.
        repo = FakeRegistry({"a": {"1.0.0": {}}, "b": {"1.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            first = Installer(project_dir=root, source=repo)
            other = Installer(project_dir=root, source=FakeRegistry({"b": {"1.0.0": {}}}))

            def _interleave(name: str) -> None:
                if name == "a":
                    other.install("b")

            repo.on_metadata = _interleave
            first.install("a")

            self.assertEqual(_lock(root)["dependencies"], {"a": "1.0.0"})
            self.assertTrue((root / "node_modules" / "b").is_dir())


class TestCache(unittest.TestCase):
    def test_cached_archive_is_reused_without_download(self) -> None:
        repo = FakeRegistry({"pkg": {"1.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            installer = Installer(project_dir=root, source=repo, cache=ArchiveCache(root / "cache"))
            installer.install("pkg")
            pkg_dir = root / "node_modules" / "pkg"
            before = {p.name: p.read_bytes() for p in pkg_dir.iterdir()}
            self.assertEqual(len(repo.tarball_calls), 1)

            shutil.rmtree(pkg_dir)
            report = installer.install_all()

            self.assertTrue(report.ok)
            self.assertTrue(report.installed[0].from_cache)
            self.assertEqual(len(repo.tarball_calls), 1)
            self.assertEqual({p.name: p.read_bytes() for p in pkg_dir.iterdir()}, before)

    def test_failed_download_leaves_no_cache_file(self) -> None:
        class _FlakyRegistry(FakeRegistry):
            @contextmanager
            def open_tarball(self, url: str):
                if "/flaky/" not in url:
                    with super().open_tarball(url) as stream:
                        yield stream
                    return
                self.tarball_calls.append(url)
                yield _BrokenStream(self.archive("flaky", "1.0.0")[:10])

        repo = _FlakyRegistry(
            {"app": {"1.0.0": {"flaky": "1.0.0", "ok": "1.0.0"}}, "flaky": {"1.0.0": {}}, "ok": {"1.0.0": {}}}
        )
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            cache_dir = root / "cache"
            report = Installer(project_dir=root, source=repo, cache=ArchiveCache(cache_dir)).install("app")

            self.assertFalse(report.root_failed)
            self.assertEqual([(f.name, f.kind, f.depth) for f in report.failures], [("flaky", FailureKind.NETWORK, 1)])
            self.assertEqual(sorted(p.name for p in cache_dir.iterdir()), ["app-1.0.0.tgz", "ok-1.0.0.tgz"])
            self.assertEqual(_lock(root)["dependencies"], {"app": "1.0.0", "ok": "1.0.0"})
            self.assertFalse((root / "node_modules" / "flaky").exists())

    def test_without_cache_every_install_downloads(self) -> None:
        repo = FakeRegistry({"pkg": {"1.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            installer = Installer(project_dir=root, source=repo)
            installer.install("pkg")
            shutil.rmtree(root / "node_modules" / "pkg")

            installer.install_all()

            self.assertEqual(len(repo.tarball_calls), 2)
            self.assertTrue((root / "node_modules" / "pkg" / "index.js").is_file())


class TestInstallAll(unittest.TestCase):
    def test_restores_missing_packages_at_locked_versions(self) -> None:
        repo = FakeRegistry({"a": {"1.0.0": {}, "2.0.0": {}}, "b": {"1.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "prisma.lock").write_text(
                json.dumps({"dependencies": {"a": "1.0.0", "b": "1.0.0"}}), encoding="utf-8"
            )
            (root / "node_modules" / "b").mkdir(parents=True)

            report = Installer(project_dir=root, source=repo).install_all()

            self.assertIsNone(report.root)
            self.assertEqual([(p.name, p.version) for p in report.installed], [("a", "1.0.0")])
            self.assertEqual(report.satisfied, ("b",))
            self.assertEqual(_lock(root)["dependencies"], {"a": "1.0.0", "b": "1.0.0"})


class TestUninstall(unittest.TestCase):
    def test_uninstall_removes_entry_and_prunes_orphans(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "prisma.lock").write_text(
                json.dumps({"dependencies": {"a": "1.0.0", "b": "1.0.0"}}), encoding="utf-8"
            )
            for name in ("a", "b", "c"):
                d = root / "node_modules" / name
                d.mkdir(parents=True)
                (d / "package.json").write_text("{}", encoding="utf-8")

            result = Installer(project_dir=root).uninstall("a")

            self.assertTrue(result.removed)
            self.assertEqual(result.pruned, ("c",))
            self.assertFalse((root / "node_modules" / "a").exists())
            self.assertFalse((root / "node_modules" / "c").exists())
            self.assertTrue((root / "node_modules" / "b" / "package.json").exists())
            self.assertEqual(_lock(root), {"dependencies": {"b": "1.0.0"}})

    def test_prune_looks_inside_scopes(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "prisma.lock").write_text(json.dumps({"dependencies": {"@s/keep": "1.0.0"}}), encoding="utf-8")
            for name in ("@s/keep", "@s/drop", "@t/gone"):
                (root / "node_modules" / name).mkdir(parents=True)
            (root / "node_modules" / ".bin").mkdir()

            result = Installer(project_dir=root).uninstall("missing")

            self.assertFalse(result.removed)
            self.assertEqual(result.pruned, ("@s/drop", "@t/gone"))
            self.assertTrue((root / "node_modules" / "@s" / "keep").is_dir())
            self.assertFalse((root / "node_modules" / "@t").exists())
            self.assertTrue((root / "node_modules" / ".bin").is_dir())

    def test_uninstall_scoped_package_removes_empty_scope(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "prisma.lock").write_text(json.dumps({"dependencies": {"@s/x": "1.0.0"}}), encoding="utf-8")
            (root / "node_modules" / "@s" / "x").mkdir(parents=True)

            result = Installer(project_dir=root).uninstall("@s/x")

            self.assertTrue(result.removed)
            self.assertFalse((root / "node_modules" / "@s").exists())
            self.assertEqual(_lock(root), {"dependencies": {}})


class TestUpdate(unittest.TestCase):
    def test_update_replaces_with_latest(self) -> None:
        repo = FakeRegistry({"a": {"1.0.0": {}, "2.0.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            installer = Installer(project_dir=root, source=repo)
            installer.install("a@1.0.0")
            (root / "node_modules" / "a" / "leftover.txt").write_text("x", encoding="utf-8")

            report = installer.update("a")

            self.assertEqual(report.root_version, "2.0.0")
            self.assertEqual(_lock(root)["dependencies"], {"a": "2.0.0"})
            self.assertFalse((root / "node_modules" / "a" / "leftover.txt").exists())

    def test_upgrade_targets_each_locked_name(self) -> None:
        repo = FakeRegistry({"a": {"1.0.0": {}, "1.5.0": {}}, "b": {"0.1.0": {}, "0.2.0": {}}})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            installer = Installer(project_dir=root, source=repo)
            installer.install("a@1.0.0")
            installer.install("b@0.1.0")

            reports = installer.upgrade()

            self.assertEqual([(r.root, r.root_version) for r in reports], [("a", "1.5.0"), ("b", "0.2.0")])
            self.assertEqual(_lock(root)["dependencies"], {"a": "1.5.0", "b": "0.2.0"})

    def test_upgrade_with_empty_lock(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(Installer(project_dir=Path(td), source=FakeRegistry({})).upgrade(), [])


if __name__ == "__main__":
    unittest.main()
