import pytest

from ecs_downscaler.config import Config


@pytest.fixture
def make_config():
    def _make_config(**overrides):
        values = {
            "cluster": "prod",
            "service": "web",
            "asg": "prod-ecs",
            "desired_count": 10,
            "task_count_detect": False,
            "wait_delay": 0,
            "wait_max_attempts": 3,
        }
        values.update(overrides)
        return Config(**values)
    return _make_config
