from __future__ import annotations

import pytest

from dancer.ml.classifier import ClassificationService
from dancer.ml.engine import InferenceEngine
from dancer.store.configuration import ConfigurationRepository
from tests.fakes import FakeModelManager, FakeSession, make_configuration


@pytest.fixture()
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def fake_manager(fake_session: FakeSession) -> FakeModelManager:
    return FakeModelManager(fake_session)


@pytest.fixture()
def configuration() -> ConfigurationRepository:
    return ConfigurationRepository(initial=make_configuration())


@pytest.fixture()
def service(fake_manager: FakeModelManager, configuration: ConfigurationRepository) -> ClassificationService:
    return ClassificationService(
        engine_factory=lambda: InferenceEngine(fake_manager, "dancer_balanced"),
        configuration=configuration,
    )
