import pytest
from pydantic import ValidationError

from ollamakoppler.config import (
    AdapterConfig,
    BackendConfig,
    ChatSettings,
    EnhancedOptions,
    ObjectGenerationOptions,
    load_config,
)
from ollamakoppler.provider import create_provider


def test_defaults_without_config_file(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("OLLAMAKOPPLER_BASE_URL", raising=False)

    cfg = load_config(str(tmp_path / "missing.yaml"))

    assert cfg.backend.base_url == "http://127.0.0.1:11434"
    assert cfg.backend.connect_retries == 0
    assert cfg.enhanced.min_response_length == 10
    assert cfg.enhanced.max_synthesis_attempts == 2
    assert cfg.enhanced.synthesis_timeout_ms == 3000
    assert cfg.logging is not None and cfg.logging.level == "INFO"


def test_yaml_values_and_env_overrides(tmp_path, monkeypatch) -> None:
    path = tmp_path / "ollamakoppler.yaml"
    path.write_text(
        "backend:\n"
        "  base_url: http://gpu-box:11434\n"
        "  headers:\n"
        "    X-Team: ml\n"
        "default_model: llama3.2\n"
        "chat:\n"
        "  reasoning: true\n"
        "  options:\n"
        "    num_ctx: 8192\n"
        "enhanced:\n"
        "  min_response_length: 20\n"
        "logging:\n"
        "  json: true\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("OLLAMAKOPPLER_API_KEY", "token")
    monkeypatch.setenv("OLLAMAKOPPLER_SYNTHESIS_TIMEOUT_MS", "1500")
    monkeypatch.setenv("OLLAMAKOPPLER_ENABLE_SYNTHESIS", "off")
    monkeypatch.setenv("OLLAMAKOPPLER_LOG_LEVEL", "debug")

    cfg = load_config(str(path))

    assert cfg.backend.base_url == "http://gpu-box:11434"
    assert cfg.backend.headers == {"X-Team": "ml"}
    assert cfg.backend.api_key == "token"
    assert cfg.default_model == "llama3.2"
    assert cfg.chat.reasoning is True
    assert cfg.chat.options == {"num_ctx": 8192}
    assert cfg.enhanced.min_response_length == 20
    assert cfg.enhanced.synthesis_timeout_ms == 1500
    assert cfg.enhanced.enable_synthesis is False
    assert cfg.logging.json_logs is True
    assert cfg.logging.level == "debug"


def test_config_path_from_environment(tmp_path, monkeypatch) -> None:
    path = tmp_path / "custom.yaml"
    path.write_text("default_model: qwen3\n", encoding="utf-8")
    monkeypatch.setenv("OLLAMAKOPPLER_CONFIG", str(path))

    assert load_config().default_model == "qwen3"


def test_non_mapping_yaml_root_is_rejected(tmp_path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Config root must be object"):
        load_config(str(path))


def test_backend_config_validation() -> None:
    with pytest.raises(ValidationError):
        BackendConfig(base_url="localhost:11434")
    with pytest.raises(ValidationError):
        BackendConfig.model_validate({"base_url": "http://x", "unknown": 1})
    with pytest.raises(ValidationError):
        BackendConfig().base_url = "http://other"  # type: ignore[misc]


def test_enhanced_options_validation() -> None:
    with pytest.raises(ValidationError):
        EnhancedOptions(max_synthesis_attempts=0)
    with pytest.raises(ValidationError):
        EnhancedOptions(min_response_length=-1)
    with pytest.raises(ValidationError):
        EnhancedOptions(synthesis_timeout_ms=0)
    assert EnhancedOptions(synthesis_timeout_ms=1500).synthesis_timeout_seconds == 1.5


def test_object_generation_options_validation() -> None:
    with pytest.raises(ValidationError):
        ObjectGenerationOptions(max_retries=0)
    with pytest.raises(ValidationError):
        ChatSettings(object_generation={"retries": 2})
    assert ChatSettings(object_generation={"max_retries": 5}).object_generation.max_retries == 5


def test_create_provider_uses_backend_and_chat_sections() -> None:
    cfg = AdapterConfig.model_validate(
        {"backend": {"base_url": "http://gpu-box:11434"}, "chat": {"structured_outputs": True}}
    )

    provider = create_provider(cfg)
    model = provider.chat("llama3.2")

    assert provider.config.base_url == "http://gpu-box:11434"
    assert model.settings.structured_outputs is True
    assert model.model_id == "llama3.2"
