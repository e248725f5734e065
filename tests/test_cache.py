"""Tests for FsCache: initial load, reload on notification, fail-safe reload, close, concurrency."""

import os
import threading
from unittest.mock import patch

import pytest

from meshconfig.cache import Cache, FsCache, StaticCache, new_cache_from_file
from meshconfig.config.loader import apply_mesh_config
from meshconfig.config.schemas import default_mesh_config
from meshconfig.errors import CloseError, RegistrationError
from tests._helpers import VALID_MESH_YAML, wait_until


def _notify(watcher, path) -> None:
    """Deliver one change notification and wait until the cache has handled it."""
    assert watcher.inject_event(str(path))
    assert watcher.wait_idle(5.0)


def _replace(path, text: str) -> None:
    """Write text to a sibling file and rename it over path, so readers never see a partial file."""
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


def test_initial_load_reads_file(mesh_file, fake_watcher):
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        assert cache.get() == apply_mesh_config(VALID_MESH_YAML, default_mesh_config())
        assert fake_watcher.added == [str(mesh_file)]
        assert cache.running
    finally:
        cache.close()


def test_invalid_initial_content_falls_back_to_default(tmp_path, fake_watcher):
    """Construction succeeds and get() returns exactly the default when the file is malformed."""
    p = tmp_path / "mesh"
    p.write_text("ingressClass: [broken", encoding="utf-8")
    cache = new_cache_from_file(p, watcher=fake_watcher)
    try:
        assert cache.get() == default_mesh_config()
    finally:
        cache.close()


def test_unreadable_initial_file_falls_back_to_default(tmp_path, fake_watcher):
    """Registration is the watcher's call; a read failure afterwards only logs."""
    p = tmp_path / "mesh"
    cache = new_cache_from_file(p, watcher=fake_watcher)
    try:
        assert cache.get() is default_mesh_config()
    finally:
        cache.close()


def test_custom_default_is_used(tmp_path, fake_watcher):
    base = default_mesh_config().model_copy(update={"root_namespace": "custom"})
    p = tmp_path / "mesh"
    p.write_text("ingressClass: nginx", encoding="utf-8")
    cache = new_cache_from_file(p, watcher=fake_watcher, default=base)
    try:
        assert cache.default is base
        assert cache.get().root_namespace == "custom"
        assert cache.get().ingress_class == "nginx"
    finally:
        cache.close()


def test_reload_on_notification(mesh_file, fake_watcher):
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        mesh_file.write_text("ingressClass: traefik\nenableTracing: false\n", encoding="utf-8")
        _notify(fake_watcher, mesh_file)
        cfg = cache.get()
        assert cfg.ingress_class == "traefik"
        assert cfg.enable_tracing is False
        assert cfg == apply_mesh_config("ingressClass: traefik\nenableTracing: false\n", default_mesh_config())
    finally:
        cache.close()


def test_no_reload_without_notification(mesh_file, fake_watcher):
    """The cache only rereads the file when the watcher says so."""
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        before = cache.get()
        mesh_file.write_text("ingressClass: traefik", encoding="utf-8")
        assert cache.get() is before
    finally:
        cache.close()


def test_invalid_update_keeps_previous_value(mesh_file, fake_watcher):
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        v1 = cache.get()
        assert v1.ingress_class == "nginx"
        mesh_file.write_text("proxyListenPort: -1", encoding="utf-8")
        _notify(fake_watcher, mesh_file)
        assert cache.get() is v1
    finally:
        cache.close()


def test_deleted_file_keeps_previous_value(mesh_file, fake_watcher):
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        v1 = cache.get()
        mesh_file.unlink()
        _notify(fake_watcher, mesh_file)
        assert cache.get() is v1
    finally:
        cache.close()


def test_recovers_after_bad_write(mesh_file, fake_watcher):
    """A later good write replaces the retained value."""
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        mesh_file.write_text("{{{", encoding="utf-8")
        _notify(fake_watcher, mesh_file)
        assert cache.get().ingress_class == "nginx"
        mesh_file.write_text("ingressClass: contour", encoding="utf-8")
        _notify(fake_watcher, mesh_file)
        assert cache.get().ingress_class == "contour"
    finally:
        cache.close()


def test_reload_same_content_is_observably_unchanged(mesh_file, fake_watcher):
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        first = cache.get()
        _notify(fake_watcher, mesh_file)
        second = cache.get()
        _notify(fake_watcher, mesh_file)
        assert second == first
        assert cache.get() == first
    finally:
        cache.close()


def test_reload_returns_whether_value_was_replaced(mesh_file, fake_watcher):
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        assert cache.reload() is True
        mesh_file.write_text("nope: [", encoding="utf-8")
        assert cache.reload() is False
    finally:
        cache.close()


def test_notifications_processed_in_order(mesh_file, fake_watcher):
    """Several writes in a row converge to the last one."""
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        for name in ("a", "b", "c"):
            mesh_file.write_text(f"ingressClass: {name}", encoding="utf-8")
            assert fake_watcher.inject_event(str(mesh_file))
        assert fake_watcher.wait_idle(5.0)
        assert cache.get().ingress_class == "c"
    finally:
        cache.close()


def test_registration_error_creates_no_cache(tmp_path):
    """Missing file with the real watcher: the constructor raises and nothing is built."""
    missing = tmp_path / "cfg" / "mesh.yaml"
    with patch("meshconfig.cache.FsCache") as fs_cache:
        with pytest.raises(RegistrationError) as exc_info:
            new_cache_from_file(missing)
    fs_cache.assert_not_called()
    assert exc_info.value.path == str(missing)


def test_registration_error_from_injected_watcher(mesh_file, fake_watcher):
    fake_watcher.add(str(mesh_file))
    with pytest.raises(RegistrationError):
        new_cache_from_file(mesh_file, watcher=fake_watcher)


def test_close_stops_reloads(mesh_file, fake_watcher):
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    v1 = cache.get()
    cache.close()
    assert wait_until(lambda: not cache.running)
    mesh_file.write_text("ingressClass: after-close", encoding="utf-8")
    assert fake_watcher.inject_event(str(mesh_file)) is False
    assert cache.reload() is False
    assert cache.get() is v1


def test_close_error_propagates_and_thread_still_stops(mesh_file, fake_watcher):
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    v1 = cache.get()
    fake_watcher.close_error = OSError("busy")
    with pytest.raises(CloseError):
        cache.close()
    assert wait_until(lambda: not cache.running)
    mesh_file.write_text("ingressClass: after-close", encoding="utf-8")
    cache.reload()
    assert cache.get() is v1


def test_close_owned_watcher(mesh_file):
    """A cache that created its own FileWatcher closes it."""
    cache = new_cache_from_file(mesh_file, debounce=0.05)
    watcher = cache._watcher
    cache.close()
    assert watcher._closed
    assert not cache.running


def test_context_manager_closes(mesh_file, fake_watcher):
    with new_cache_from_file(mesh_file, watcher=fake_watcher) as cache:
        assert cache.running
    assert not cache.running


def test_concurrent_get_during_reloads(tmp_path, fake_watcher):
    """Readers only ever see values produced by a complete load."""
    p = tmp_path / "mesh"
    contents = [f"ingressClass: c{i}\nrootNamespace: ns{i}\n" for i in range(5)]
    valid = {apply_mesh_config(c, default_mesh_config()) for c in contents}
    valid.add(default_mesh_config())
    p.write_text(contents[0], encoding="utf-8")
    cache = new_cache_from_file(p, watcher=fake_watcher)
    seen = set()
    errors = []
    stop = threading.Event()

    def reader():
        try:
            while not stop.is_set():
                cfg = cache.get()
                seen.add(cfg)
                # ingress class and namespace are always written together
                assert cfg.ingress_class[1:] == cfg.root_namespace[2:] or cfg == default_mesh_config()
        except AssertionError as e:
            errors.append(e)

    readers = [threading.Thread(target=reader) for _ in range(8)]
    for t in readers:
        t.start()
    try:
        for i in range(50):
            _replace(p, contents[i % len(contents)])
            fake_watcher.inject_event(str(p))
            if i % 10 == 0:
                cache.reload()
        assert fake_watcher.wait_idle(10.0)
    finally:
        stop.set()
        for t in readers:
            t.join(5.0)
        cache.close()
    assert not errors
    assert seen
    assert all(cfg in valid for cfg in seen)


def test_fs_cache_and_static_cache_are_caches(mesh_file, fake_watcher):
    cfg = apply_mesh_config("ingressClass: static", default_mesh_config())
    static = StaticCache(cfg)
    assert isinstance(static, Cache)
    assert static.get() is cfg
    assert StaticCache().get() is default_mesh_config()
    with new_cache_from_file(mesh_file, watcher=fake_watcher) as cache:
        assert isinstance(cache, FsCache)
        assert isinstance(cache, Cache)
        assert cache.path == str(mesh_file)


@pytest.mark.parametrize("bad", ["connectTimeout: .inf", "trustDomainAliases: &x [*x]"])
def test_bad_write_does_not_stop_later_reloads(mesh_file, fake_watcher, bad):
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        v1 = cache.get()
        mesh_file.write_text(bad, encoding="utf-8")
        _notify(fake_watcher, mesh_file)
        assert cache.running
        assert cache.get() is v1
        mesh_file.write_text("ingressClass: later", encoding="utf-8")
        _notify(fake_watcher, mesh_file)
        assert cache.get().ingress_class == "later"
    finally:
        cache.close()


@pytest.mark.parametrize("bad", ["connectTimeout: .inf", "trustDomainAliases: &x [*x]"])
def test_bad_initial_content_still_builds_cache(tmp_path, fake_watcher, bad):
    p = tmp_path / "mesh"
    p.write_text(bad, encoding="utf-8")
    cache = new_cache_from_file(p, watcher=fake_watcher)
    try:
        assert cache.get() is default_mesh_config()
        assert cache.running
    finally:
        cache.close()


def test_unexpected_reload_error_keeps_thread_running(mesh_file, fake_watcher):
    """Any exception from a reload is logged; the next notification is still handled."""
    cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        v1 = cache.get()
        with patch("meshconfig.cache.read_mesh_config", side_effect=RuntimeError("boom")):
            _notify(fake_watcher, mesh_file)
        assert cache.running
        assert cache.get() is v1
        mesh_file.write_text("ingressClass: recovered", encoding="utf-8")
        _notify(fake_watcher, mesh_file)
        assert cache.get().ingress_class == "recovered"
    finally:
        cache.close()


def test_construction_only_raises_registration_error(mesh_file, fake_watcher):
    """An unexpected error during the initial load leaves the default in place."""
    with patch("meshconfig.cache.read_mesh_config", side_effect=RuntimeError("boom")):
        cache = new_cache_from_file(mesh_file, watcher=fake_watcher)
    try:
        assert cache.get() is default_mesh_config()
        assert cache.running
    finally:
        cache.close()
