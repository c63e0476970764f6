"""
Test agi-driver binary discovery.
"""

import pytest

from agi_sdk.driver import locator
from agi_sdk.driver.locator import (
    PlatformId,
    find_binary_path,
    get_binary_filename,
    get_platform_id,
    is_binary_available,
)


@pytest.fixture
def empty_search(monkeypatch, tmp_path):
    """No override, no bundled binary, nothing in cwd or on PATH."""
    monkeypatch.delenv("AGI_DRIVER_PATH", raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(locator, "_PACKAGE_DIR", tmp_path / "pkg")
    monkeypatch.setattr(locator.shutil, "which", lambda name: None)
    return tmp_path


class TestPlatform:
    def test_binary_filename(self):
        assert get_binary_filename(PlatformId.WINDOWS_X64) == "agi-driver.exe"
        assert get_binary_filename(PlatformId.LINUX_X64) == "agi-driver"
        assert get_binary_filename(PlatformId.DARWIN_ARM64) == "agi-driver"

    def test_platform_mapping(self, monkeypatch):
        monkeypatch.setattr(locator.sys, "platform", "darwin")
        monkeypatch.setattr(locator.platform, "machine", lambda: "arm64")
        assert get_platform_id() == PlatformId.DARWIN_ARM64

        monkeypatch.setattr(locator.platform, "machine", lambda: "x86_64")
        assert get_platform_id() == PlatformId.DARWIN_X64

        monkeypatch.setattr(locator.sys, "platform", "linux")
        assert get_platform_id() == PlatformId.LINUX_X64

    def test_unsupported_platform(self, monkeypatch):
        monkeypatch.setattr(locator.sys, "platform", "sunos5")
        with pytest.raises(RuntimeError):
            get_platform_id()


class TestFindBinaryPath:
    """Search order: override, bundled, package dir, cwd, PATH."""

    def test_env_override(self, empty_search, monkeypatch):
        binary = empty_search / "custom-driver"
        binary.write_text("")
        monkeypatch.setenv("AGI_DRIVER_PATH", str(binary))
        assert find_binary_path() == str(binary)

    def test_env_override_missing(self, empty_search, monkeypatch):
        monkeypatch.setenv("AGI_DRIVER_PATH", str(empty_search / "missing"))
        with pytest.raises(FileNotFoundError):
            find_binary_path()

    def test_bundled_before_cwd(self, empty_search):
        filename = get_binary_filename()
        bundled = empty_search / "pkg" / "bin" / get_platform_id().value / filename
        bundled.parent.mkdir(parents=True)
        bundled.write_text("")
        (empty_search / filename).write_text("")

        assert find_binary_path() == str(bundled)

    def test_cwd(self, empty_search):
        local = empty_search / get_binary_filename()
        local.write_text("")
        assert find_binary_path().endswith(get_binary_filename())

    def test_path_lookup(self, empty_search, monkeypatch):
        monkeypatch.setattr(locator.shutil, "which", lambda name: f"/usr/local/bin/{name}")
        assert find_binary_path() == f"/usr/local/bin/{get_binary_filename()}"

    def test_not_found(self, empty_search):
        with pytest.raises(FileNotFoundError) as exc_info:
            find_binary_path()
        assert "AGI_DRIVER_PATH" in str(exc_info.value)
        assert is_binary_available() is False
