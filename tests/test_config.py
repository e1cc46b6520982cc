"""
Tests for configuration loading and the client registry

Tests cover:
- YAML loading and recursive merging
- Typed engine settings with partial sections
- Remote URL resolution order
- Local model listing
- Client factory dispatch and per-model client reuse
"""

import pytest

from conftest import CountingLoader
from euconform_bias.models.local_hf import LocalInferenceClient
from euconform_bias.models.registry import (
    DEFAULT_LOCAL_MODELS,
    InferenceClientRegistry,
    create_inference_client,
    create_remote_server,
    list_local_models,
)
from euconform_bias.models.remote_server import RemoteInferenceClient, RemoteServer
from euconform_bias.models.schema import Backend, CalculationMethod
from euconform_bias.utils.config import (
    REMOTE_URL_ENV,
    EngineSettings,
    get_remote_base_url,
    load_engine_settings,
    load_models_config,
    load_yaml,
    merge_configs,
    save_yaml,
)
from euconform_bias.utils.numerics import pseudo_logprob_from_latency


# =============================================================================
# YAML
# =============================================================================


class TestYaml:
    def test_save_and_load(self, tmp_path):
        path = tmp_path / "engine.yaml"
        save_yaml({"scoring": {"batch_size": 5}}, path)

        assert load_yaml(path) == {"scoring": {"batch_size": 5}}

    def test_empty_file_is_empty_dict(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")

        assert load_yaml(path) == {}

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml(tmp_path / "missing.yaml")

    def test_missing_optional_config_is_empty(self, tmp_path):
        assert load_models_config(tmp_path / "models.yaml") == {}

    def test_merge_is_recursive(self):
        merged = merge_configs(
            {"cache": {"success_ttl_seconds": 86400, "error_ttl_seconds": 300}, "device": "cpu"},
            {"cache": {"error_ttl_seconds": 60}},
            {"device": "cuda"},
        )

        assert merged == {"cache": {"success_ttl_seconds": 86400, "error_ttl_seconds": 60}, "device": "cuda"}


# =============================================================================
# Engine settings
# =============================================================================


class TestEngineSettings:
    def test_defaults(self):
        settings = EngineSettings.from_dict(None)

        assert settings.cache.success_ttl_seconds == 86400
        assert settings.cache.error_ttl_seconds == 300
        assert settings.detection.probe_timeout == 5.0
        assert settings.detection.max_attempts == 3
        assert settings.scoring.batch_size == 10
        assert settings.seed == 42

    def test_partial_sections_and_unknown_keys(self):
        settings = EngineSettings.from_dict(
            {"scoring": {"batch_size": 4, "not_a_setting": True}, "sampling": {"seed": 7}, "device": "cpu"}
        )

        assert settings.scoring.batch_size == 4
        assert settings.scoring.strong_threshold == 0.3
        assert settings.seed == 7
        assert settings.device == "cpu"

    def test_round_trip_through_file(self, tmp_path):
        original = EngineSettings.from_dict({"detection": {"probe_timeout": 2.5}})
        path = tmp_path / "engine.yaml"
        save_yaml(original.to_dict(), path)

        assert load_engine_settings(path) == original

    def test_local_override_merged(self, tmp_path, monkeypatch):
        monkeypatch.setenv("EUCONFORM_HOME", str(tmp_path))
        save_yaml({"scoring": {"batch_size": 10, "strong_threshold": 0.3}}, tmp_path / "configs" / "engine.yaml")
        save_yaml({"scoring": {"batch_size": 2}}, tmp_path / "configs" / "engine.local.yaml")

        settings = load_engine_settings()

        assert settings.scoring.batch_size == 2
        assert settings.scoring.strong_threshold == 0.3

    def test_bundled_config_loads(self):
        settings = load_engine_settings()
        assert settings.scoring.overall_preference_threshold == 55.0


class TestRemoteUrl:
    def test_env_wins(self, monkeypatch):
        monkeypatch.setenv(REMOTE_URL_ENV, "http://gpu-box:11434/")
        assert get_remote_base_url({"remote": {"base_url": "http://other:1"}}) == "http://gpu-box:11434"

    def test_config_then_default(self, monkeypatch):
        monkeypatch.delenv(REMOTE_URL_ENV, raising=False)

        assert get_remote_base_url({"remote": {"base_url": "http://other:1/"}}) == "http://other:1"
        assert get_remote_base_url({}) == "http://localhost:11434"

    def test_create_remote_server(self, monkeypatch):
        monkeypatch.delenv(REMOTE_URL_ENV, raising=False)

        server = create_remote_server({"remote": {"base_url": "http://ollama.test", "request_timeout": 12}})

        assert isinstance(server, RemoteServer)
        assert server.base_url == "http://ollama.test"
        assert server.timeout == 12.0

    def test_explicit_url_keeps_configured_timeout(self, monkeypatch):
        monkeypatch.setenv(REMOTE_URL_ENV, "http://env-box:11434")

        server = create_remote_server(
            {"remote": {"base_url": "http://ollama.test", "request_timeout": 90}},
            base_url="http://gpu-box:11434",
        )

        assert server.base_url == "http://gpu-box:11434"
        assert server.timeout == 90.0


# =============================================================================
# Registry
# =============================================================================


class TestLocalModels:
    def test_bundled_list(self):
        assert [m["id"] for m in list_local_models()][:2] == ["distilgpt2", "gpt2"]

    def test_builtin_fallback(self):
        assert list_local_models({}) == DEFAULT_LOCAL_MODELS

    def test_entries_without_id_skipped(self):
        models = list_local_models({"local_models": [{"id": "gpt2"}, {"name": "nameless"}]})
        assert [m["id"] for m in models] == ["gpt2"]


class TestClientFactory:
    def test_local_dispatch(self):
        client = create_inference_client(Backend.LOCAL, "distilgpt2", loader=CountingLoader())
        assert isinstance(client, LocalInferenceClient)

    def test_remote_dispatch(self, fake_ollama):
        server = RemoteServer("http://ollama.test", transport=fake_ollama.transport())

        client = create_inference_client("remote", "llama3.2:1b", server=server, method=CalculationMethod.EXACT_LOGPROB)

        assert isinstance(client, RemoteInferenceClient)
        assert client.method == CalculationMethod.EXACT_LOGPROB

    def test_remote_requires_server(self):
        with pytest.raises(ValueError):
            create_inference_client(Backend.REMOTE, "llama3.2:1b")

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_inference_client("cloud", "gpt-4")


class TestInferenceClientRegistry:
    @pytest.mark.asyncio
    async def test_local_client_shared(self):
        loader = CountingLoader()
        registry = InferenceClientRegistry(loader=loader)

        first = registry.get_client(Backend.LOCAL, "distilgpt2")
        second = registry.get_client("local", "distilgpt2")
        await first.get_log_prob("eins zwei")
        await second.get_log_prob("drei vier")

        assert first is second
        assert loader.calls == 1
        await registry.close()

    @pytest.mark.asyncio
    async def test_remote_clients_keyed_by_method(self, fake_ollama):
        server = RemoteServer("http://ollama.test", transport=fake_ollama.transport())

        async with InferenceClientRegistry(server=server) as registry:
            exact = registry.get_client(Backend.REMOTE, "llama3.2:1b", CalculationMethod.EXACT_LOGPROB)
            fallback = registry.get_client(Backend.REMOTE, "llama3.2:1b", CalculationMethod.LATENCY_FALLBACK)

            assert exact is not fallback
            assert registry.get_client(Backend.REMOTE, "llama3.2:1b", CalculationMethod.EXACT_LOGPROB) is exact

        assert server._client is None

    def test_latency_epsilon_reaches_remote_clients(self, fake_ollama):
        server = RemoteServer("http://ollama.test", transport=fake_ollama.transport())
        registry = InferenceClientRegistry(server=server, latency_epsilon=1e-3)

        client = registry.get_client(Backend.REMOTE, "mistral:latest", CalculationMethod.LATENCY_FALLBACK)

        assert client.latency_epsilon == 1e-3

    @pytest.mark.asyncio
    async def test_latency_epsilon_shapes_fallback_score(self, fake_ollama):
        fake_ollama.prompt_eval["Der Mann ist Ingenieur."] = (10, 1e9)
        server = RemoteServer("http://ollama.test", transport=fake_ollama.transport())

        async with InferenceClientRegistry(server=server, latency_epsilon=0.1) as registry:
            client = registry.get_client(Backend.REMOTE, "mistral:latest", CalculationMethod.LATENCY_FALLBACK)
            score = await client.get_log_prob("Der Mann ist Ingenieur.")

        assert score == pytest.approx(pseudo_logprob_from_latency(0.1, 0.1))
