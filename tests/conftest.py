"""
Pytest fixtures for the Experiment Engine tests.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture
def settings():
    """Settings with small sampling budgets so statistical tests run fast."""
    from experiment_engine.config.settings import (
        AnalysisSettings,
        BanditSettings,
        Settings,
        StorageSettings,
    )

    return Settings(
        analysis=AnalysisSettings(
            bootstrap_iterations=400,
            bootstrap_chunk_size=100,
            bayesian_draws=5000,
        ),
        bandit=BanditSettings(thompson_draws=2000),
        storage=StorageSettings(backend="memory"),
    )


@pytest.fixture
def storage():
    """Create a fresh in-memory storage backend."""
    from experiment_engine.storage.memory import InMemoryExperimentStorage

    return InMemoryExperimentStorage(lock_stripes=16)


@pytest.fixture
def service(storage, settings):
    """Experimentation service over the fresh in-memory storage."""
    from experiment_engine.engine.service import ExperimentationService

    return ExperimentationService(storage=storage, settings=settings)


@pytest.fixture
def ab_config():
    """Two-arm test configuration with a binary primary goal."""
    return {
        "test_id": "checkout_button",
        "name": "Checkout button color",
        "variants": [
            {"variant_id": "control", "name": "Blue", "is_control": True, "weight": 0.5},
            {"variant_id": "treatment", "name": "Green", "weight": 0.5},
        ],
        "primary_goal": {"goal_id": "purchase", "name": "Purchase"},
        "secondary_goals": [
            {"goal_id": "revenue", "name": "Revenue", "metric_type": "continuous"},
        ],
        "minimum_sample_size": 100,
        "tags": ["checkout"],
    }


@pytest.fixture
def running_test(service, ab_config):
    """The two-arm test, created and started."""
    test = service.create_test(ab_config)
    service.start_test(test.test_id)
    return service.get_test(test.test_id)
