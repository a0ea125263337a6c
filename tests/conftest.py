import asyncio, importlib.util, os, sys
import pytest
from fastapi.testclient import TestClient

# Ensure the package and tools are importable from a source checkout
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

from medaudit import main
from medaudit.config import Settings
from medaudit.db import Database
from medaudit.models import PatientMetadata
from medaudit.service import RecordService
from medaudit.signing import KeyRef, LocalEd25519Oracle, SigningClient

KEY_NAME = "test_record_key"


def blob(size: int, seed: int = 0) -> bytes:
    """Deterministic content of `size` bytes; different seeds give different content."""
    return bytes((i * 31 + seed) % 256 for i in range(size))


def run(coro):
    return asyncio.run(coro)


def load_tool(name: str):
    """Import a script from tools/ by path."""
    path = os.path.join(ROOT, "tools", f"{name}.py")
    spec = importlib.util.spec_from_file_location(f"medaudit_tools_{name}", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def make_service(settings: Settings, oracle, **kwargs) -> RecordService:
    signer = SigningClient(oracle, KeyRef(KEY_NAME), timeout_seconds=settings.signing_timeout_seconds)
    return RecordService(settings, Database(settings.db_path), signer, **kwargs)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "medaudit.db"),
        signing_key_path=None,
        signing_key_name=KEY_NAME,
        signing_timeout_seconds=2.0,
        classifier_bucket_mode="numeric",
        audit_mirror_backend="none",
    )


@pytest.fixture
def oracle():
    return LocalEd25519Oracle.generate(KEY_NAME)


@pytest.fixture
def service(settings, oracle):
    svc = make_service(settings, oracle)
    yield svc
    svc.close()


@pytest.fixture
def metadata():
    return PatientMetadata(
        anonymized_id="P001",
        age_range="40-50",
        study_type="chest-xray",
        acquisition_date="2024-01-01",
    )


@pytest.fixture
def client(service):
    # Startup is not triggered: the service comes from the override
    main.app.dependency_overrides[main.get_service] = lambda: service
    main.create_limiter.reset()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
