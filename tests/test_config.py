import pytest

from mac_throttle.config import DEFAULT_ROOT_PROCESSES, DEFAULT_USER_PROCESSES, ConfigError, ThrottleConfig


def test_defaults():
    config = ThrottleConfig()
    assert config.target_nice == 20
    assert config.interval == 30.0
    assert config.user_processes == DEFAULT_USER_PROCESSES
    assert config.root_processes == DEFAULT_ROOT_PROCESSES
    assert config.watched_names == DEFAULT_USER_PROCESSES + DEFAULT_ROOT_PROCESSES


def test_from_env_overrides():
    config = ThrottleConfig.from_env(
        {
            "THROTTLE_NICE": "19",
            "THROTTLE_INTERVAL": "5",
            "THROTTLE_USER_PROCESSES": "alpha beta",
            "THROTTLE_ROOT_PROCESSES": "gamma",
            "THROTTLE_LOG_FILE": "/var/log/throttle.log",
            "THROTTLE_WORKERS": "2",
            "THROTTLE_EVICT_STALE": "no",
        }
    )
    assert config.target_nice == 19
    assert config.interval == 5.0
    assert config.user_processes == ("alpha", "beta")
    assert config.root_processes == ("gamma",)
    assert config.log_file == "/var/log/throttle.log"
    assert config.workers == 2
    assert config.evict_stale is False
    assert config.status_file is None


def test_from_env_empty_mapping_gives_defaults():
    assert ThrottleConfig.from_env({}) == ThrottleConfig()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"interval": 0},
        {"command_timeout": -1},
        {"workers": 0},
        {"user_processes": ("mds",), "root_processes": ("mds",)},
    ],
)
def test_invalid_config_rejected(kwargs):
    with pytest.raises(ConfigError):
        ThrottleConfig(**kwargs)


def test_config_is_immutable():
    config = ThrottleConfig()
    with pytest.raises(AttributeError):
        config.target_nice = 0


@pytest.mark.parametrize("key", ["THROTTLE_NICE", "THROTTLE_INTERVAL", "THROTTLE_WORKERS", "THROTTLE_COMMAND_TIMEOUT"])
def test_malformed_numbers_rejected(key):
    with pytest.raises(ConfigError, match=key):
        ThrottleConfig.from_env({key: "soon"})
