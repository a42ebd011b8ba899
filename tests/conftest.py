import pytest

from lablink.metrics import get_metrics
from lablink.models.api import NewVm
from lablink.persistence import DatabaseManager
from lablink.registry import VmRegistry


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset_metrics()
    yield
    get_metrics().reset_metrics()


@pytest.fixture
def db():
    manager = DatabaseManager("sqlite:///:memory:")
    manager.initialize_database()
    yield manager
    manager.close()


@pytest.fixture
def file_db(tmp_path):
    """File-backed database for tests that use several connections at once."""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'lablink.db'}")
    manager.initialize_database()
    yield manager
    manager.close()


@pytest.fixture
def registry(db):
    return VmRegistry(db)


def new_vms(count, fleet="default", prefix="i-"):
    """Build NewVm records named like the client VMs Terraform creates."""
    return [
        NewVm(
            id=f"{prefix}{fleet}{n:04d}",
            fleet=fleet,
            instance_name=f"lablink-vm-{fleet}-{n}",
            address=f"10.0.0.{n}",
        )
        for n in range(1, count + 1)
    ]


@pytest.fixture
def make_vms():
    return new_vms
