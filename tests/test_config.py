import pytest

from flowci.config import EngineConfig


def test_defaults_from_empty_environment():
    config = EngineConfig.from_env({})
    assert config.workers >= 1
    assert config.fail_fast is True
    assert config.grace_period == 10.0
    assert config.timeout is None
    assert config.max_matrix == 256
    assert config.shell == "/bin/sh"


def test_values_from_environment():
    config = EngineConfig.from_env({
        "FLOWCI_WORKERS": "3",
        "FLOWCI_FAIL_FAST": "no",
        "FLOWCI_GRACE_PERIOD": "2.5",
        "FLOWCI_TIMEOUT": "600",
        "FLOWCI_MAX_MATRIX": "16",
        "FLOWCI_SHELL": "/bin/bash",
    })
    assert config == EngineConfig(
        workers=3, fail_fast=False, grace_period=2.5, timeout=600.0, max_matrix=16, shell="/bin/bash"
    )


@pytest.mark.parametrize("name,value", [("FLOWCI_FAIL_FAST", "maybe"), ("FLOWCI_WORKERS", "many")])
def test_bad_values_raise(name, value):
    with pytest.raises(ValueError):
        EngineConfig.from_env({name: value})


def test_override_ignores_unset_options():
    base = EngineConfig(workers=4, fail_fast=True)
    changed = base.override(workers=None, fail_fast=False, timeout=None)
    assert changed.workers == 4
    assert changed.fail_fast is False
    assert base.fail_fast is True
