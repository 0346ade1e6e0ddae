from pathlib import Path
import pytest
import yaml


ROOT = Path(__file__).parent.parent


def pytest_addoption(parser):
    parser.addoption(
        "--registry-dir",
        default=str(ROOT / "registries" / "gmdn"),
        help="Path to registry directory containing config.yaml and reference/",
    )


@pytest.fixture(scope="session")
def registry_dir(request):
    return Path(request.config.getoption("--registry-dir")).resolve()


@pytest.fixture(scope="session")
def registry_config(registry_dir):
    config_path = registry_dir / "config.yaml"
    with open(config_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


@pytest.fixture(scope="session")
def raw_patterns(registry_dir, registry_config):
    path = registry_dir / registry_config["paths"]["patterns"]
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


@pytest.fixture(scope="session")
def patterns(registry_dir, registry_config):
    from classify_devices import load_patterns
    return load_patterns(registry_dir / registry_config["paths"]["patterns"])


@pytest.fixture
def tmp_registry(tmp_path, registry_dir):
    """Copy of the registry config that writes its outputs under tmp_path."""
    config = {
        "registry": {"name": "GMDN"},
        "paths": {
            "input": str(registry_dir / "data" / "input" / "gmdn_terms.txt"),
            "patterns": str(registry_dir / "reference" / "patterns.yaml"),
            "output_dir": str(tmp_path / "output"),
            "output_prefix": "devices",
        },
        "report": {"sample_size": 5},
    }
    config_path = tmp_path / "config.yaml"
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config, f)
    return config_path
