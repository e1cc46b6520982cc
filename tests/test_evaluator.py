"""
Tests for bias-test orchestration

Tests cover:
- Capability gating before a run
- Deterministic sampling and result provenance
- Dataset validation before any inference
- Quick screening
- Multi-model evaluation with failure isolation
- End-to-end run on the bundled dataset with a fake local model
"""

from unittest.mock import AsyncMock

import pytest

from conftest import CountingLoader, ScriptedClient, make_pair, scores_for
from euconform_bias.capability.cache import CapabilityCache
from euconform_bias.capability.prober import CapabilityProber
from euconform_bias.capability.schema import DetectionStatus, ModelCapability
from euconform_bias.capability.service import CapabilityDetectionService
from euconform_bias.datasets.crows_pairs import load_crows_pairs
from euconform_bias.errors import InvalidDatasetError, ModelUnavailableError
from euconform_bias.models.registry import InferenceClientRegistry, validate_capability
from euconform_bias.models.schema import Backend, CalculationMethod
from euconform_bias.scoring.evaluator import (
    DATASET_NAME,
    ensure_pairs,
    evaluate_multiple_models,
    quick_bias_check,
    run_bias_test,
)
from euconform_bias.utils.config import save_yaml
from euconform_bias.utils.random_utils import seeded_sample


def capability(model_id, backend=Backend.REMOTE, method=CalculationMethod.EXACT_LOGPROB, status=DetectionStatus.AVAILABLE):
    return ModelCapability(model_id=model_id, backend=backend, method=method, status=status, error=None)


class StubDetectionService:
    """Resolves capabilities from a fixed table."""

    def __init__(self, capabilities):
        self.capabilities = dict(capabilities)
        self.resolved = []

    async def resolve(self, model_id, backend):
        self.resolved.append((model_id, Backend(backend)))
        return self.capabilities[model_id]


class StubRegistry(InferenceClientRegistry):
    """Hands out pre-built clients and records the requested method."""

    def __init__(self, clients):
        super().__init__()
        self.clients = dict(clients)
        self.requests = []

    def get_client(self, backend, model_id, method=None):
        self.requests.append((Backend(backend), model_id, method))
        return self.clients[model_id]


@pytest.fixture
def pairs():
    return [make_pair(i, "gender" if i % 2 else "age") for i in range(1, 31)]


# =============================================================================
# Capability gating
# =============================================================================


class TestValidateCapability:
    def test_available_passes(self):
        validate_capability(capability("llama3.2:1b"), "llama3.2:1b", "remote")

    def test_unavailable_rejected(self):
        cap = ModelCapability(
            model_id="llama3.2:1b",
            backend=Backend.REMOTE,
            method=CalculationMethod.LATENCY_FALLBACK,
            status=DetectionStatus.ERROR,
            error="Model detection timed out. The model may be slow to respond.",
        )
        with pytest.raises(ModelUnavailableError, match="timed out"):
            validate_capability(cap, "llama3.2:1b", Backend.REMOTE)

    def test_backend_mismatch_rejected(self):
        with pytest.raises(ModelUnavailableError, match="does not match"):
            validate_capability(capability("gpt2"), "gpt2", Backend.LOCAL)

    def test_model_mismatch_rejected(self):
        with pytest.raises(ModelUnavailableError):
            validate_capability(capability("mistral:latest"), "llama3.2:1b", Backend.REMOTE)


class TestGetClientFor:
    """Tests for handing out clients from a detected capability."""

    def test_remote_primed_with_detected_method(self):
        client = ScriptedClient(backend=Backend.REMOTE)
        registry = StubRegistry({"llama3.2:1b": client})

        assert registry.get_client_for(capability("llama3.2:1b")) is client
        assert registry.requests == [(Backend.REMOTE, "llama3.2:1b", CalculationMethod.EXACT_LOGPROB)]

    def test_unavailable_rejected_without_client(self):
        cap = capability("mistral:latest", method=CalculationMethod.LATENCY_FALLBACK, status=DetectionStatus.UNAVAILABLE)
        registry = StubRegistry({"mistral:latest": ScriptedClient()})

        with pytest.raises(ModelUnavailableError, match="unavailable"):
            registry.get_client_for(cap)

        assert registry.requests == []

    def test_requested_model_must_match(self):
        registry = StubRegistry({"gpt2": ScriptedClient()})

        with pytest.raises(ModelUnavailableError, match="does not match"):
            registry.get_client_for(capability("gpt2", backend=Backend.LOCAL), "gpt2", Backend.REMOTE)


class TestEnsurePairs:
    def test_pairs_pass_through(self, pairs):
        assert ensure_pairs(pairs) == pairs

    def test_raw_records_parsed(self, sample_records):
        parsed = ensure_pairs(sample_records)
        assert [p.bias_type for p in parsed] == ["gender", "age", "nationality"]

    def test_empty_rejected(self):
        with pytest.raises(InvalidDatasetError):
            ensure_pairs([])


# =============================================================================
# Single-model runs
# =============================================================================


class TestRunBiasTest:
    """Tests for run_bias_test."""

    @pytest.mark.asyncio
    async def test_samples_and_tags_provenance(self, pairs):
        client = ScriptedClient(backend=Backend.REMOTE, method=CalculationMethod.EXACT_LOGPROB)
        service = StubDetectionService({"llama3.2:1b": capability("llama3.2:1b")})
        registry = StubRegistry({"llama3.2:1b": client})

        result = await run_bias_test(
            "llama3.2:1b",
            Backend.REMOTE,
            pairs,
            detection_service=service,
            registry=registry,
            max_pairs=10,
            seed=7,
        )

        expected_ids = [p.id for p in seeded_sample(pairs, 10, seed=7)]
        assert [r.pair_id for r in result.pair_results] == expected_ids
        assert result.dataset_name == DATASET_NAME
        assert result.seed == 7
        assert result.sample_size == 10
        assert result.to_dict()["dataset"] == {"name": DATASET_NAME, "seed": 7, "sample_size": 10}
        assert registry.requests == [(Backend.REMOTE, "llama3.2:1b", CalculationMethod.EXACT_LOGPROB)]

    @pytest.mark.asyncio
    async def test_same_seed_same_sample(self, pairs):
        service = StubDetectionService({"m": capability("m")})
        runs = []
        for _ in range(2):
            registry = StubRegistry({"m": ScriptedClient(model_id="m", backend=Backend.REMOTE)})
            runs.append(
                await run_bias_test("m", "remote", pairs, detection_service=service, registry=registry, max_pairs=5)
            )

        assert [r.pair_id for r in runs[0].pair_results] == [r.pair_id for r in runs[1].pair_results]

    @pytest.mark.asyncio
    async def test_budget_above_dataset_uses_everything(self, pairs):
        service = StubDetectionService({"m": capability("m")})
        registry = StubRegistry({"m": ScriptedClient(model_id="m", backend=Backend.REMOTE)})

        result = await run_bias_test("m", "remote", pairs, detection_service=service, registry=registry, max_pairs=500)

        assert result.sample_size == len(pairs)
        assert [r.pair_id for r in result.pair_results] == [p.id for p in pairs]

    @pytest.mark.asyncio
    async def test_unavailable_model_refused_before_inference(self, pairs):
        client = ScriptedClient()
        cap = ModelCapability(
            model_id="m",
            backend=Backend.REMOTE,
            method=CalculationMethod.LATENCY_FALLBACK,
            status=DetectionStatus.UNAVAILABLE,
            error="Inference server is not running. Start it to use server-hosted models.",
        )
        registry = StubRegistry({"m": client})

        with pytest.raises(ModelUnavailableError):
            await run_bias_test("m", "remote", pairs, detection_service=StubDetectionService({"m": cap}), registry=registry)

        assert registry.requests == []
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_invalid_dataset_refused_before_detection(self):
        service = AsyncMock()
        records = [{"id": 1, "stereotype": "Der Mann ist Ingenieur.", "biasType": "gender"}]

        with pytest.raises(InvalidDatasetError):
            await run_bias_test("m", "remote", records, detection_service=service, registry=StubRegistry({}))

        service.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_local_method_not_forwarded(self, pairs):
        client = ScriptedClient(model_id="gpt2")
        service = StubDetectionService({"gpt2": capability("gpt2", backend=Backend.LOCAL)})
        registry = StubRegistry({"gpt2": client})

        result = await run_bias_test("gpt2", Backend.LOCAL, pairs[:4], detection_service=service, registry=registry)

        assert registry.requests == [(Backend.LOCAL, "gpt2", None)]
        assert result.backend == Backend.LOCAL
        assert result.total_pairs == 4

    @pytest.mark.asyncio
    async def test_end_to_end_with_local_model(self, clock):
        loader = CountingLoader()
        service = CapabilityDetectionService(
            CapabilityCache(clock=clock),
            prober=CapabilityProber(runtime_check=lambda: True),
            local_models=["distilgpt2"],
        )
        pairs = load_crows_pairs(verbose=False)
        progress = []

        async with InferenceClientRegistry(loader=loader) as registry:
            result = await run_bias_test(
                "distilgpt2",
                Backend.LOCAL,
                pairs,
                detection_service=service,
                registry=registry,
                max_pairs=8,
                seed=42,
                on_progress=lambda done, total: progress.append((done, total)),
            )

        assert loader.calls == 1
        assert result.method == CalculationMethod.EXACT_LOGPROB
        assert result.total_pairs == 8
        assert progress[-1] == (8, 8)
        assert 0.0 <= result.stereotype_preference <= 100.0
        assert service.get_cached("distilgpt2").is_available


# =============================================================================
# Quick check
# =============================================================================


class TestQuickBiasCheck:
    @pytest.mark.asyncio
    async def test_biased_model_flagged(self, pairs):
        client = ScriptedClient(scores_for((p, -1.0, -2.0) for p in pairs))

        check = await quick_bias_check(client, pairs)

        assert check.has_significant_bias is True
        assert check.pairs_tested == 20
        assert check.stereotype_preference == 100.0
        assert check.average_score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_balanced_model_not_flagged(self, pairs):
        client = ScriptedClient(scores_for((p, -1.0, -1.0) for p in pairs))

        check = await quick_bias_check(client, pairs, sample_size=6)

        assert check.has_significant_bias is False
        assert check.pairs_tested == 6
        assert check.stereotype_preference == 0.0

    @pytest.mark.asyncio
    async def test_default_sample_size_from_engine_config(self, pairs, tmp_path, monkeypatch):
        monkeypatch.setenv("EUCONFORM_HOME", str(tmp_path))
        save_yaml({"scoring": {"quick_check_sample_size": 8}}, tmp_path / "configs" / "engine.yaml")
        client = ScriptedClient(scores_for((p, -1.0, -1.0) for p in pairs))

        check = await quick_bias_check(client, pairs)

        assert check.pairs_tested == 8


# =============================================================================
# Multiple models
# =============================================================================


class TestEvaluateMultipleModels:
    @pytest.mark.asyncio
    async def test_failure_isolated(self, pairs):
        service = StubDetectionService(
            {
                "good": capability("good"),
                "down": ModelCapability(
                    model_id="down",
                    backend=Backend.REMOTE,
                    method=CalculationMethod.LATENCY_FALLBACK,
                    status=DetectionStatus.ERROR,
                ),
            }
        )
        registry = StubRegistry({"good": ScriptedClient(model_id="good", backend=Backend.REMOTE)})

        results = await evaluate_multiple_models(
            {"down": Backend.REMOTE, "good": Backend.REMOTE},
            pairs,
            detection_service=service,
            registry=registry,
            max_pairs=5,
            verbose=False,
        )

        assert list(results) == ["down", "good"]
        assert results["down"] is None
        assert results["good"].total_pairs == 5

    @pytest.mark.asyncio
    async def test_same_sample_for_every_model(self, pairs):
        service = StubDetectionService({"a": capability("a"), "b": capability("b")})
        registry = StubRegistry(
            {
                "a": ScriptedClient(model_id="a", backend=Backend.REMOTE),
                "b": ScriptedClient(model_id="b", backend=Backend.REMOTE),
            }
        )

        results = await evaluate_multiple_models(
            {"a": "remote", "b": "remote"},
            pairs,
            detection_service=service,
            registry=registry,
            max_pairs=7,
            seed=3,
        )

        ids_a = [r.pair_id for r in results["a"].pair_results]
        ids_b = [r.pair_id for r in results["b"].pair_results]
        assert ids_a == ids_b
        assert len(ids_a) == 7
