"""Root pytest configuration for oci-repack tests."""
import pytest

from oci_repack.settings import Settings
from oci_repack.storage.engine import CasEngine, create_layout

from tests.helpers.images import BASE_ENTRIES, build_image, make_layer_tar


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "root: mark test as requiring root privileges"
    )


# Keep the developer's environment out of settings
@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    """Automatically clear oci-repack environment variables."""
    for name in ("OCI_REPACK_COMPRESSION", "OCI_REPACK_ZSTD_LEVEL", "OCI_REPACK_DIGEST_ALGORITHM",
                 "OCI_REPACK_DEFAULT_TAG", "OCI_REPACK_SNAPSHOT_KEYWORDS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OCI_REPACK_FSYNC", "false")


@pytest.fixture
def settings():
    """Standard test settings."""
    return Settings(fsync=False)


@pytest.fixture
def layout(tmp_path, settings):
    """Empty image layout."""
    return create_layout(tmp_path / "image", settings)


@pytest.fixture
def engine(layout, settings):
    """Open engine on the empty layout."""
    with CasEngine.open(layout, settings) as eng:
        yield eng


@pytest.fixture
def base_image(engine):
    """Single-layer image tagged 'latest'."""
    return build_image(engine, "latest", [make_layer_tar(BASE_ENTRIES)])


@pytest.fixture
def base_layout(layout, settings):
    """Image layout holding the base image as 'latest', with the engine closed."""
    with CasEngine.open(layout, settings) as eng:
        build_image(eng, "latest", [make_layer_tar(BASE_ENTRIES)])
    return layout
