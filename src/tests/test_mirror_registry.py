"""MirrorRegistry: defaults, persistence, single default, reachability check."""

from __future__ import annotations

import json
from pathlib import Path

import requests

from conftest import FakeResponse, FakeSession
from sapkg.installation.mirror_registry import DEFAULT_MIRROR_NAME, DEFAULT_MIRROR_URL, MirrorRegistry


class TestDefaults:
    def test_fresh_registry_has_active_default_pypi(self, registry: MirrorRegistry) -> None:
        default = registry.default_mirror()
        assert default.name == DEFAULT_MIRROR_NAME
        assert default.url == DEFAULT_MIRROR_URL
        assert default.is_active

    def test_corrupt_file_falls_back_to_defaults(self, tmp_path: Path) -> None:
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        (config_dir / "mirrors.json").write_text("{not json", encoding="utf-8")

        registry = MirrorRegistry(config_dir, session=FakeSession())

        assert [m.name for m in registry.list_mirrors()] == [DEFAULT_MIRROR_NAME]

    def test_empty_list_falls_back_to_defaults(self, tmp_path: Path) -> None:
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        (config_dir / "mirrors.json").write_text("[]", encoding="utf-8")

        registry = MirrorRegistry(config_dir, session=FakeSession())

        assert registry.default_mirror().name == DEFAULT_MIRROR_NAME


class TestMutation:
    def test_add_persists_across_instances(self, registry: MirrorRegistry) -> None:
        registry.add("tuna", "https://pypi.tuna.tsinghua.edu.cn/simple/")

        reloaded = MirrorRegistry(registry.config_dir, session=FakeSession())
        assert reloaded.get("tuna").url == "https://pypi.tuna.tsinghua.edu.cn/simple/"
        assert reloaded.default_mirror().name == DEFAULT_MIRROR_NAME

    def test_new_default_clears_the_old_one(self, registry: MirrorRegistry) -> None:
        registry.add("corp", "https://pypi.corp.example/simple/", set_default=True)
        registry.add("backup", "https://backup.example/simple/", set_default=True)

        defaults = [m.name for m in registry.list_mirrors() if m.is_default]
        assert defaults == ["backup"]
        stored = json.loads(registry.config_path.read_text(encoding="utf-8"))
        assert [m["name"] for m in stored if m["is_default"]] == ["backup"]

    def test_remove_returns_count(self, registry: MirrorRegistry) -> None:
        registry.add("corp", "https://pypi.corp.example/simple/")
        assert registry.remove("corp") == 1
        assert registry.remove("corp") == 0
        assert registry.get("corp") is None

    def test_removing_the_default_leaves_no_default(self, registry: MirrorRegistry) -> None:
        registry.remove(DEFAULT_MIRROR_NAME)
        assert registry.default_mirror() is None

    def test_inactive_default_is_not_selected(self, registry: MirrorRegistry) -> None:
        assert registry.set_active(DEFAULT_MIRROR_NAME, False)
        assert registry.default_mirror() is None

    def test_set_default_with_duplicate_names_flags_one(self, registry: MirrorRegistry) -> None:
        registry.add("corp", "https://a.example/simple/")
        registry.add("corp", "https://b.example/simple/")

        assert registry.set_default("corp")

        defaults = [(m.name, m.url) for m in registry.list_mirrors() if m.is_default]
        assert defaults == [("corp", "https://a.example/simple/")]
        assert registry.default_mirror() is registry.get("corp")

    def test_set_default_unknown_mirror(self, registry: MirrorRegistry) -> None:
        assert not registry.set_default("nope")
        assert registry.default_mirror().name == DEFAULT_MIRROR_NAME


class TestReachability:
    def test_reachable_mirror(self, registry: MirrorRegistry, fake_session: FakeSession) -> None:
        fake_session.routes[DEFAULT_MIRROR_URL] = FakeResponse(200)

        assert registry.test(DEFAULT_MIRROR_NAME)
        assert registry.get(DEFAULT_MIRROR_NAME).last_tested is not None
        assert fake_session.calls == [("HEAD", DEFAULT_MIRROR_URL)]

    def test_error_status_is_unreachable(self, registry: MirrorRegistry, fake_session: FakeSession) -> None:
        fake_session.routes[DEFAULT_MIRROR_URL] = FakeResponse(503)
        assert not registry.test(DEFAULT_MIRROR_NAME)

    def test_network_failure_is_false_not_an_exception(
        self, registry: MirrorRegistry, fake_session: FakeSession
    ) -> None:
        fake_session.routes[DEFAULT_MIRROR_URL] = requests.Timeout("slow")
        assert not registry.test(DEFAULT_MIRROR_NAME)

    def test_unknown_mirror_is_false(self, registry: MirrorRegistry) -> None:
        assert not registry.test("missing")

    def test_test_all(self, registry: MirrorRegistry, fake_session: FakeSession) -> None:
        registry.add("down", "https://down.example/simple/")
        fake_session.routes[DEFAULT_MIRROR_URL] = FakeResponse(200)

        assert registry.test_all() == [(DEFAULT_MIRROR_NAME, True), ("down", False)]
