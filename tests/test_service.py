import asyncio
from dataclasses import replace

import pytest

from conftest import FakeCompletion, FakeEmbedder, text_vector
from twinlearn.config import Settings
from twinlearn.core.service import TwinService
from twinlearn.errors import InvalidInputError
from twinlearn.learning.model_store import TrainingLog


async def test_turn_without_conversation_creates_one(service):
    result = await service.turn("u1", None, "Hello")

    assert result.conversation_id.startswith("u1-")
    assert [s["id"] for s in service.list_conversations("u1")] == [result.conversation_id]


async def test_batch_train_embeds_texts_and_skips_failures(settings, clock, model_store):
    service = TwinService(
        settings=settings,
        completion=FakeCompletion(),
        embedder=FakeEmbedder(fail_texts={"broken"}),
        model_store=model_store,
        clock=clock,
    )
    outcome = await service.batch_train(
        "u1",
        [
            {"text": "great answer", "label": 1},
            {"text": "broken", "label": 1},
            {"text": "poor answer", "label": 0},
        ],
    )

    assert outcome["trained"] == 2
    assert outcome["avg_loss"] > 0
    assert "u1" in model_store

    model = await service.registry.get("u1")
    assert model.train_steps == settings.batch_epochs


async def test_batch_train_with_nothing_embeddable(settings, clock, model_store):
    service = TwinService(
        settings=settings,
        completion=FakeCompletion(),
        embedder=FakeEmbedder(fail_all=True),
        model_store=model_store,
        clock=clock,
    )
    outcome = await service.batch_train("u1", [{"text": "a", "label": 1}])

    assert outcome == {"trained": 0, "avg_loss": 0.0}
    assert len(service.registry) == 0


async def test_batch_train_rejects_malformed_samples(service):
    with pytest.raises(InvalidInputError):
        await service.batch_train("u1", [{"label": 1}])
    with pytest.raises(InvalidInputError):
        await service.batch_train("u1", [{"text": "a", "label": float("inf")}])
    with pytest.raises(InvalidInputError):
        await service.batch_train("", [{"text": "a", "label": 1}])


async def test_retrain_without_log_is_a_no_op(service):
    assert await service.retrain_from_log("u1") == {"trained": 0, "avg_loss": 0.0}


async def test_status_reports_real_reachability(settings, clock, model_store):
    healthy = TwinService(
        settings=settings,
        completion=FakeCompletion(),
        embedder=FakeEmbedder(),
        model_store=model_store,
        clock=clock,
    )
    status = await healthy.status()
    assert status["operational"] is True
    assert status["completion"]["available"] is True
    assert status["settings"]["temperatures"] == [0.3, 0.6, 0.9]

    degraded = TwinService(
        settings=settings,
        completion=FakeCompletion(available=False),
        embedder=FakeEmbedder(),
        model_store=model_store,
        clock=clock,
    )
    status = await degraded.status()
    assert status["operational"] is False
    assert status["completion"]["available"] is False
    assert status["embedding"]["available"] is True


async def test_status_counts_resident_state(service):
    await service.turn("u1", "c1", "Hello")
    status = await service.status()

    assert status["conversations"] == 1
    assert status["models"] == 1
    assert status["pending_interactions"] == 1


async def test_maintenance_sweeps_sessions_interactions_and_models(service, clock, model_store):
    result = await service.turn("u1", "c1", "Hello")
    await service.feedback(result.response_id, 1.0)
    await service.turn("u1", "c1", "Again")
    await service.registry.wait_pending()

    assert await service.run_maintenance() == {"sessions": 0, "interactions": 0, "models": 0}

    clock.advance(3601)
    swept = await service.run_maintenance()

    assert swept == {"sessions": 1, "interactions": 1, "models": 1}
    assert len(service.conversations) == 0
    assert len(service.interactions) == 0
    assert len(service.registry) == 0
    assert (await service.registry.get("u1")).train_steps == 1


async def test_stop_flushes_trained_models(service, model_store):
    await service.start()
    result = await service.turn("u1", "c1", "Hello")
    await service.feedback_ingestor.batch_train("u1", [(text_vector("x"), 1.0)])
    await service.feedback(result.response_id, 1.0)

    await service.stop()

    assert "u1" in model_store
    assert service.registry.pending == 0


async def test_stop_waits_for_calls_of_abandoned_turns(settings, clock, model_store):
    gate = asyncio.Event()
    completion = FakeCompletion(gate=gate)
    service = TwinService(
        settings=settings,
        completion=completion,
        embedder=FakeEmbedder(),
        model_store=model_store,
        clock=clock,
    )
    turn = asyncio.create_task(service.turn("u1", "c1", "Hello"))
    while len(completion.calls) < 3:
        await asyncio.sleep(0)
    turn.cancel()
    with pytest.raises(asyncio.CancelledError):
        await turn

    stopping = asyncio.create_task(service.stop())
    await asyncio.sleep(0.01)
    assert not stopping.done()

    gate.set()
    await stopping
    assert completion.finished == 3
    assert service.orchestrator.inflight == 0


async def test_periodic_maintenance_runs_in_background(settings, clock, model_store):
    service = TwinService(
        settings=replace(settings, sweep_interval=0.01),
        completion=FakeCompletion(),
        embedder=FakeEmbedder(),
        model_store=model_store,
        clock=clock,
    )
    await service.turn("u1", "c1", "Hello")
    clock.advance(3601)

    await service.start()
    for _ in range(100):
        if len(service.conversations) == 0:
            break
        await asyncio.sleep(0.01)
    await service.stop()

    assert len(service.conversations) == 0


async def test_delete_user_data(settings, clock, model_store, tmp_path):
    log = TrainingLog(str(tmp_path / "log"))
    service = TwinService(
        settings=settings,
        completion=FakeCompletion(),
        embedder=FakeEmbedder(),
        model_store=model_store,
        training_log=log,
        clock=clock,
    )
    result = await service.turn("u1", "c1", "Hello")
    await service.feedback(result.response_id, 1.0)
    await service.turn("u2", "c2", "Hi")
    await service.registry.wait_pending()

    await service.delete_user_data("u1")

    assert "u1" not in model_store
    assert "u1" not in service.registry
    assert log.read("u1") == []
    assert service.list_conversations("u1") == []
    assert service.list_conversations("u2") != []


def test_default_temperatures_and_validation():
    settings = Settings(base_temperature=0.3, temperature_step=0.3, candidate_count=3)
    assert settings.temperatures == [0.3, 0.6, 0.9]

    with pytest.raises(ValueError):
        Settings(max_history=0)
    with pytest.raises(ValueError):
        Settings(hidden_units=())
    with pytest.raises(ValueError):
        Settings(learning_rate=-1)
