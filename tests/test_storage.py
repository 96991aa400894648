import json
import threading

import pytest
import redis

from rpslab import EngineConfig, EngineContext, GameBrain
from rpslab.mixer import HedgeMixer
from rpslab.records import StoredPredictorModelState
from rpslab.storage import (
    FileRepository,
    MemoryRepository,
    ModelStore,
    RedisRepository,
    fresh_model_state,
    get_repository,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FailingRepository(MemoryRepository):
    def set(self, key, value):
        raise OSError("disk full")


class UnreadableRepository(MemoryRepository):
    def get(self, key):
        raise OSError("permission denied")


class HookedRepository(MemoryRepository):
    """Runs `before_write` once, inside the next `set`, then optionally fails it."""

    def __init__(self, fail=False):
        super().__init__()
        self.before_write = None
        self.fail = fail

    def set(self, key, value):
        hook, self.before_write = self.before_write, None
        if hook is not None:
            hook()
            if self.fail:
                raise OSError("connection reset")
        super().set(key, value)


class FakeRedis:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        json.dumps([1, 2, 3]),
        json.dumps({"profileId": "p1", "modelVersion": 3, "roundsSeen": 4}),
        json.dumps({"profileId": "p1", "modelVersion": 3, "roundsSeen": 4,
                    "state": {"eta": 0.4, "weights": [1.0], "experts": []}}),
    ],
)
def test_malformed_record_falls_back_to_fresh(raw):
    repo = MemoryRepository()
    repo.set(ModelStore.key("p1"), raw)
    record = ModelStore(repo).load("p1")
    assert record.profile_id == "p1"
    assert record.model_version == 1
    assert record.rounds_seen == 0
    assert record.state["weights"]


def test_record_of_another_profile_is_not_used():
    repo = MemoryRepository()
    other = fresh_model_state("p2", model_version=5)
    repo.set(ModelStore.key("p1"), json.dumps(other.to_dict()))
    assert ModelStore(repo).load("p1").model_version == 1


def test_save_is_buffered_until_flush():
    repo = MemoryRepository()
    store = ModelStore(repo)
    record = fresh_model_state("p1", model_version=2)
    record.rounds_seen = 7
    store.save(record)
    assert repo.get(ModelStore.key("p1")) is None
    assert store.dirty
    assert store.load("p1").rounds_seen == 7
    assert store.flush() is True
    assert not store.dirty
    assert store.flush() is False
    loaded = StoredPredictorModelState.from_dict(json.loads(repo.get(ModelStore.key("p1"))))
    assert loaded.model_version == 2
    assert loaded.rounds_seen == 7


def test_flush_if_due_waits_for_debounce():
    clock = FakeClock()
    repo = MemoryRepository()
    store = ModelStore(repo, debounce_s=0.25, clock=clock)
    assert store.flush_if_due() is False
    store.save(fresh_model_state("p1"))
    clock.now = 0.1
    assert store.flush_if_due() is False
    clock.now = 0.3
    assert store.flush_if_due() is True
    assert repo.get(ModelStore.key("p1")) is not None


def test_failed_write_stays_buffered():
    store = ModelStore(FailingRepository())
    store.save(fresh_model_state("p1"))
    assert store.flush() is False
    assert store.dirty


def test_remove_is_staged():
    repo = MemoryRepository()
    store = ModelStore(repo)
    store.save(fresh_model_state("p1"))
    store.flush()
    store.remove("p1")
    assert not store.exists("p1")
    assert repo.get(ModelStore.key("p1")) is not None
    store.flush()
    assert repo.get(ModelStore.key("p1")) is None


def test_file_repository(tmp_path):
    repo = FileRepository(str(tmp_path / "state"))
    assert repo.get("rps:model:a") is None
    repo.set("rps:model:a", "{}")
    assert repo.get("rps:model:a") == "{}"
    repo.remove("rps:model:a")
    assert repo.get("rps:model:a") is None


def test_redis_repository_with_client():
    client = FakeRedis()
    store = ModelStore(RedisRepository(client=client))
    store.save(fresh_model_state("p1"))
    store.flush()
    assert ModelStore.key("p1") in client.data
    assert ModelStore(RedisRepository(client=client)).load("p1").profile_id == "p1"


def test_get_repository(tmp_path):
    assert isinstance(get_repository("memory"), MemoryRepository)
    assert isinstance(get_repository("file", str(tmp_path)), FileRepository)
    # nothing listens on port 1
    fallback = get_repository("redis", str(tmp_path), "redis://127.0.0.1:1/0")
    assert isinstance(fallback, FileRepository)


def test_out_of_range_expert_parameter_is_reinitialized():
    state = HedgeMixer(eta=0.4).to_dict()
    for e in state["experts"]:
        if e["type"] == "PeriodicExpert":
            e["minPeriod"] = 0
    repo = MemoryRepository()
    repo.set(ModelStore.key("p1"), json.dumps({
        "profileId": "p1", "modelVersion": 4, "updatedAt": "2026-01-01T00:00:00+00:00",
        "roundsSeen": 20, "state": state,
    }))
    record = ModelStore(repo).load("p1")
    assert record.model_version == 1
    assert record.rounds_seen == 0

    brain = GameBrain(EngineContext(EngineConfig(), repository=repo), random_seed=1)
    for move in ["rock", "paper", "scissors"] * 3:
        _, meta = brain.predict("p1")
        brain.feedback("p1", move)
    assert meta["roundsSeen"] == 8


def test_save_during_flush_is_kept_for_the_next_flush():
    repo = HookedRepository()
    store = ModelStore(repo)
    seen = []

    def request_thread():
        # the record being written is still visible while it is in flight
        seen.append(store.load("p1").rounds_seen)
        newer = fresh_model_state("p1")
        newer.rounds_seen = 9
        store.save(newer)
        store.save(fresh_model_state("p2"))

    record = fresh_model_state("p1")
    record.rounds_seen = 7
    store.save(record)
    repo.before_write = request_thread
    assert store.flush() is True
    assert seen == [7]
    assert store.dirty
    assert json.loads(repo.get(ModelStore.key("p1")))["roundsSeen"] == 7
    assert store.load("p1").rounds_seen == 9

    assert store.flush() is True
    assert json.loads(repo.get(ModelStore.key("p1")))["roundsSeen"] == 9
    assert repo.get(ModelStore.key("p2")) is not None
    assert not store.dirty


def test_failed_write_does_not_clobber_a_newer_save():
    repo = HookedRepository(fail=True)
    store = ModelStore(repo)
    store.save(fresh_model_state("p1", model_version=1))

    def request_thread():
        store.save(fresh_model_state("p1", model_version=2))

    repo.before_write = request_thread
    assert store.flush() is False
    assert store.load("p1").model_version == 2
    assert store.flush() is True
    assert json.loads(repo.get(ModelStore.key("p1")))["modelVersion"] == 2


def test_concurrent_saves_and_flushes_keep_the_latest_record():
    repo = MemoryRepository()
    store = ModelStore(repo, debounce_s=0.0)
    stop = threading.Event()

    def flusher():
        while not stop.is_set():
            store.flush_if_due()

    worker = threading.Thread(target=flusher)
    worker.start()
    try:
        for i in range(300):
            record = fresh_model_state(f"p{i % 10}")
            record.rounds_seen = i
            store.save(record)
    finally:
        stop.set()
        worker.join()
    store.flush()
    for j in range(10):
        stored = json.loads(repo.get(ModelStore.key(f"p{j}")))
        assert stored["roundsSeen"] == 290 + j


def test_unreadable_backend_reads_as_missing():
    store = ModelStore(UnreadableRepository())
    assert store.exists("p1") is False
    assert store.load("p1").model_version == 1
    store.save(fresh_model_state("p1", model_version=3))
    assert store.exists("p1") is True
    assert store.load("p1").model_version == 3


def test_unreachable_redis_reads_as_missing():
    class DownRedis(FakeRedis):
        def get(self, key):
            raise redis.ConnectionError("connection refused")

    store = ModelStore(RedisRepository(client=DownRedis()))
    assert store.exists("p1") is False
    assert store.load("p1").rounds_seen == 0


def test_fork_survives_an_unreadable_backend():
    brain = GameBrain(EngineContext(EngineConfig(), repository=UnreadableRepository()), random_seed=1)
    record = brain.fork("a", "b", carry_over=True)
    assert record.profile_id == "b"
    assert record.model_version == 2
    assert record.rounds_seen == 0
