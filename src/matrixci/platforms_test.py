from __future__ import annotations

import pytest

from matrixci.errors import InfrastructureError
from matrixci.platforms import PlatformResolver, host_family


def test_linux_host_serves_ubuntu_labels():
    r = PlatformResolver(platform="linux")
    assert r.supports("ubuntu-latest")
    assert r.supports("ubuntu-20.04")
    assert r.supports("local")
    assert not r.supports("macos-latest")
    assert not r.supports("windows-latest")


def test_extra_labels():
    r = PlatformResolver(["gpu", " arm64 "], platform="darwin")
    assert r.supports("macos-latest")
    assert r.supports("gpu")
    assert r.supports("arm64")
    assert not r.supports("ubuntu-latest")


def test_resolve_unavailable_platform():
    with pytest.raises(InfrastructureError) as exc:
        PlatformResolver(platform="linux").resolve("test (windows)", "windows-latest")
    assert exc.value.details["runs_on"] == "windows-latest"
    assert "infrastructure" in str(exc.value)


@pytest.mark.parametrize("raw,family", [("linux", "linux"), ("linux2", "linux"), ("darwin", "darwin"), ("win32", "win32")])
def test_host_family(raw, family):
    assert host_family(raw) == family
