import pytest

from ember.ember_config import EngineConfig
from ember.ember_errors import RecursionLimit
from ember.ember_runtime import Engine


@pytest.fixture(autouse=True)
def _no_env_override(monkeypatch):
    monkeypatch.delenv("EMBER_MAX_CALL_LEVELS", raising=False)


def test_defaults():
    config = EngineConfig()
    assert config.max_call_levels == 64
    assert config.max_variadic_args == 16
    assert config.strict_variables is True


def test_invalid_values():
    with pytest.raises(ValueError):
        EngineConfig(max_call_levels=0)
    with pytest.raises(ValueError):
        EngineConfig(max_variadic_args=-1)


def test_from_mapping_ignores_unknown_keys():
    config = EngineConfig.from_mapping({"max-call-levels": 10, "colour": "blue"})
    assert config.max_call_levels == 10
    assert EngineConfig.from_mapping(None) == EngineConfig()


def test_from_yaml_string_and_file(tmp_path):
    config = EngineConfig.from_yaml("engine:\n  max_call_levels: 5\n  strict_variables: false\n")
    assert config.max_call_levels == 5
    assert config.strict_variables is False

    path = tmp_path / "ember.yaml"
    path.write_text("max_variadic_args: 3\n", encoding="utf-8")
    assert EngineConfig.from_yaml(path).max_variadic_args == 3
    assert EngineConfig.from_yaml(str(path)).max_variadic_args == 3


def test_from_yaml_rejects_non_mappings():
    with pytest.raises(ValueError):
        EngineConfig.from_yaml("- 1\n- 2\n")


def test_environment_override(monkeypatch):
    monkeypatch.setenv("EMBER_MAX_CALL_LEVELS", "7")
    assert EngineConfig().with_env().max_call_levels == 7
    assert Engine().config.max_call_levels == 7

    monkeypatch.setenv("EMBER_MAX_CALL_LEVELS", "many")
    with pytest.raises(ValueError):
        EngineConfig().with_env()


def test_engine_uses_the_configured_limit():
    engine = Engine(EngineConfig.from_mapping({"max_call_levels": 3}))
    src = "fn d(n) { if n == 0 { 0 } else { d(n - 1) } }\n"
    assert engine.eval(src + "d(2)") == 0
    with pytest.raises(RecursionLimit):
        engine.eval(src + "d(3)")
