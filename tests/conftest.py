import pytest


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep every test away from the real registry, config and home directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("NETFORGE_REGISTRY", str(tmp_path / "registry.yml"))
    monkeypatch.delenv("NETFORGE_CONFIG", raising=False)
    return tmp_path


@pytest.fixture
def registry_path(isolated_env):
    return isolated_env / "registry.yml"
